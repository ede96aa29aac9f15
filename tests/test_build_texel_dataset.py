"""Tests for raw sample loading and feature dataset building."""

import json
import stat
import sys

import pytest

from sprt_tuner.position import Move, replay, standard_position
from sprt_tuner.tuning.build_texel_dataset import (
    DatasetMissing,
    TermsBinaryExtractor,
    append_feature_rows,
    build_feature_rows,
    load_feature_rows,
    load_raw_samples,
    result_to_white_score,
)

FAKE_TERMS = """\
import json
import sys

print("piece_count,tempo")
for line in sys.stdin:
    line = line.strip()
    if line.startswith("{"):
        pieces = json.loads(line)["position"]["board"]["pieces"]
        if len(pieces) == 31:
            print("ERR unsupported")
            continue
        print(f"{len(pieces)},1")
    else:
        print(f"{line.split()[0].count('/') + 1},1")
"""


def sample(position, token="1-0"):
    return {
        "move_history": [],
        "side_to_move": position.turn,
        "ply_index": 0,
        "piece_count": position.piece_count(),
        "position": position.to_dict(),
        "result_token": token,
    }


@pytest.fixture
def terms_bin(tmp_path):
    path = tmp_path / "eval_terms"
    path.write_text(f"#!{sys.executable}\n" + FAKE_TERMS, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


class FakeExtractor:
    def __init__(self):
        self.seen = []

    def extract(self, samples):
        self.seen.extend(samples)
        return [{"n": float(s["piece_count"])} if s["result_token"] != "0-1" else None for s in samples]


class TestResults:
    def test_white_scores(self):
        assert result_to_white_score("1-0") == 1.0
        assert result_to_white_score("0-1") == 0.0
        assert result_to_white_score("1/2-1/2") == 0.5
        with pytest.raises(ValueError):
            result_to_white_score("*")


class TestRawSamples:
    def test_skips_unfinished_and_malformed(self, tmp_path):
        path = tmp_path / "samples.jsonl"
        pos = standard_position()
        path.write_text(
            "\n".join([
                json.dumps(sample(pos)),
                json.dumps(sample(pos, token=None)),
                "garbage",
                json.dumps({"result_token": "1-0"}),
            ]) + "\n",
            encoding="utf-8",
        )
        samples, skipped = load_raw_samples(path)
        assert len(samples) == 1
        assert skipped == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(DatasetMissing):
            load_raw_samples(tmp_path / "none.jsonl")


class TestBuildRows:
    def test_dedupe_by_position(self):
        a = standard_position()
        b = replay(a, [Move.parse("7,1>6,3"), Move.parse("7,8>6,6"), Move.parse("6,3>7,1"), Move.parse("6,6>7,8")])
        c = replay(a, [Move.parse("5,2>5,4")])
        extractor = FakeExtractor()

        rows = build_feature_rows([sample(a), sample(b, "1/2-1/2"), sample(c, "1/2-1/2")], extractor)

        assert len(extractor.seen) == 2
        assert rows == [{"features": {"n": 32.0}, "result": 1.0}, {"features": {"n": 32.0}, "result": 0.5}]

    def test_no_dedupe_and_failed_extraction(self):
        a = standard_position()
        rows = build_feature_rows([sample(a), sample(a, "0-1"), sample(a, "1/2-1/2")], FakeExtractor(), dedupe=False)
        assert [r["result"] for r in rows] == [1.0, 0.5]

    def test_append_only(self, tmp_path):
        path = tmp_path / "out" / "features.jsonl"
        append_feature_rows(path, [{"features": {"a": 1.0}, "result": 1.0}])
        append_feature_rows(path, [{"features": {"a": 2.0}, "result": 0.0}])
        rows, skipped = load_feature_rows(path)
        assert [r["features"]["a"] for r in rows] == [1.0, 2.0]
        assert skipped == 0
        assert path.read_text(encoding="utf-8").count("\n") == 2


class TestTermsBinary:
    def test_json_input_with_err_lines(self, terms_bin):
        full = standard_position()
        captured = replay(full, [Move.parse("5,2>5,4"), Move.parse("4,7>4,5"), Move.parse("5,4>4,5")])
        out = TermsBinaryExtractor(terms_bin).extract([sample(full), sample(captured), sample(full)])
        assert out == [{"piece_count": 32.0, "tempo": 1.0}, None, {"piece_count": 32.0, "tempo": 1.0}]

    def test_fen_input(self, terms_bin):
        out = TermsBinaryExtractor(terms_bin, "fen").extract([sample(standard_position())])
        assert out == [{"piece_count": 8.0, "tempo": 1.0}]

    def test_missing_binary(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TermsBinaryExtractor(tmp_path / "nope").extract([])

    def test_unknown_format(self, terms_bin):
        with pytest.raises(ValueError):
            TermsBinaryExtractor(terms_bin, "pgn")
