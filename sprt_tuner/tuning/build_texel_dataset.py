#!/usr/bin/env python3
"""Turn raw trial samples into a Texel feature dataset.

Input: JSONL of finished TexelSample records written by sprt-match.
Output: JSONL rows appended to the dataset, one per line:
  {"features": {name: value, ...}, "result": white_score}

result is the final game score from White's perspective:
  1-0=1.0, 1/2-1/2=0.5, 0-1=0.0

Feature values come from an external terms binary. It reads one position
per line on stdin (JSON snapshot or FEN), prints a CSV header naming the
features, then exactly one line per input: comma-separated values, or a
line starting with ERR when the position could not be evaluated.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Iterable, Iterator

from .. import config
from ..position import Position, position_fen, repetition_key

RESULT_TO_WHITE_SCORE = {
    "1-0": 1.0,
    "0-1": 0.0,
    "1/2-1/2": 0.5,
}


class DatasetMissing(FileNotFoundError):
    pass


def result_to_white_score(token: str) -> float:
    try:
        return RESULT_TO_WHITE_SCORE[token]
    except KeyError:
        raise ValueError(f"unknown result token: {token!r}") from None


def iter_json_lines(path: Path) -> Iterator[Any]:
    """Parsed JSON per non-blank line; malformed lines come back as None."""
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                yield None


def load_raw_samples(path: Path) -> tuple[list[dict[str, Any]], int]:
    if not path.exists():
        raise DatasetMissing(f"samples file not found: {path}")
    samples: list[dict[str, Any]] = []
    skipped = 0
    for obj in iter_json_lines(path):
        if (
            not isinstance(obj, dict)
            or obj.get("result_token") not in RESULT_TO_WHITE_SCORE
            or not isinstance(obj.get("position"), dict)
        ):
            skipped += 1
            continue
        samples.append(obj)
    return samples, skipped


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_feature_rows(path: Path) -> tuple[list[dict[str, Any]], int]:
    if not path.exists():
        raise DatasetMissing(f"Dataset file not found: {path}")
    rows: list[dict[str, Any]] = []
    skipped = 0
    for obj in iter_json_lines(path):
        if not isinstance(obj, dict):
            skipped += 1
            continue
        features = obj.get("features")
        if not isinstance(features, dict) or not _is_number(obj.get("result")):
            skipped += 1
            continue
        if not all(_is_number(v) for v in features.values()):
            skipped += 1
            continue
        rows.append(obj)
    return rows, skipped


def append_feature_rows(path: Path, records: Iterable[dict[str, Any]]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with path.open("a", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, separators=(",", ":")))
            f.write("\n")
            written += 1
    return written


def encode_sample(sample: dict[str, Any], input_format: str) -> str:
    if input_format == "fen":
        return position_fen(Position.from_dict(sample["position"]))
    snapshot = {
        "position": sample["position"],
        "move_history": sample.get("move_history") or [],
        "side_to_move": sample.get("side_to_move"),
    }
    return json.dumps(snapshot, separators=(",", ":"))


class TermsBinaryExtractor:
    def __init__(self, terms_bin: Path, input_format: str = "json"):
        if input_format not in ("json", "fen"):
            raise ValueError(f"unknown input format: {input_format}")
        self.terms_bin = terms_bin
        self.input_format = input_format

    def extract(self, samples: list[dict[str, Any]]) -> list[dict[str, float] | None]:
        """Feature maps aligned with ``samples``; None where extraction failed."""
        if not self.terms_bin.exists():
            raise FileNotFoundError(f"terms binary not found: {self.terms_bin}")

        out: list[dict[str, float] | None] = [None] * len(samples)
        sent: list[int] = []

        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tf:
            for i, sample in enumerate(samples):
                try:
                    line = encode_sample(sample, self.input_format)
                except (KeyError, ValueError):
                    continue
                tf.write(line)
                tf.write("\n")
                sent.append(i)
            temp_path = Path(tf.name)

        try:
            with temp_path.open("r", encoding="utf-8") as f_in:
                proc = subprocess.Popen(
                    [str(self.terms_bin)],
                    stdin=f_in,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )

                assert proc.stdout is not None
                header_line = proc.stdout.readline().strip()
                if not header_line:
                    stderr = proc.stderr.read() if proc.stderr else ""
                    proc.wait()
                    raise RuntimeError(f"terms binary produced no header. stderr={stderr}")
                header = [x.strip() for x in header_line.split(",")]

                for idx, line in zip(sent, proc.stdout):
                    line = line.strip()
                    if not line or line.startswith("ERR"):
                        continue
                    parts = line.split(",")
                    if len(parts) != len(header):
                        continue
                    try:
                        out[idx] = {name: float(v) for name, v in zip(header, parts)}
                    except ValueError:
                        continue

                # Drain anything left so the process can exit.
                proc.stdout.read()
                stderr = proc.stderr.read() if proc.stderr is not None else ""
                rc = proc.wait()
                if rc != 0:
                    raise RuntimeError(f"terms binary exited with {rc}. stderr={stderr}")
        finally:
            temp_path.unlink(missing_ok=True)

        return out


def build_feature_rows(samples: list[dict[str, Any]], extractor, dedupe: bool = True) -> list[dict[str, Any]]:
    kept: list[dict[str, Any]] = []
    seen: set[str] = set()
    for sample in samples:
        if dedupe:
            try:
                key = repetition_key(Position.from_dict(sample["position"]))
            except (KeyError, TypeError, ValueError):
                continue
            if key in seen:
                continue
            seen.add(key)
        kept.append(sample)

    rows: list[dict[str, Any]] = []
    for sample, features in zip(kept, extractor.extract(kept)):
        if features is None:
            continue
        rows.append({"features": features, "result": result_to_white_score(sample["result_token"])})
    return rows


def main() -> None:
    parser = argparse.ArgumentParser(description="Build Texel feature dataset from trial samples")
    parser.add_argument("--samples", default=str(config.SAMPLES_FILE), help="Raw samples JSONL from sprt-match")
    parser.add_argument("--out", default=str(config.FEATURES_FILE), help="Feature dataset JSONL (appended)")
    parser.add_argument("--terms-bin", required=True, help="Feature extraction binary")
    parser.add_argument("--input-format", choices=["json", "fen"], default="json")
    parser.add_argument(
        "--dedupe",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Deduplicate positions by repetition key (default: enabled)",
    )
    args = parser.parse_args()

    try:
        samples, skipped = load_raw_samples(Path(args.samples))
        print(f"[dataset] loaded samples={len(samples)} skipped={skipped}", flush=True)
        extractor = TermsBinaryExtractor(Path(args.terms_bin), args.input_format)
        rows = build_feature_rows(samples, extractor, dedupe=args.dedupe)
        written = append_feature_rows(Path(args.out), rows)
    except (FileNotFoundError, RuntimeError) as ex:
        print(f"[dataset] Fatal: {ex}", flush=True)
        sys.exit(1)

    print(f"[dataset] Done. rows={written} output={args.out}", flush=True)


if __name__ == "__main__":
    main()
