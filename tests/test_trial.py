"""Tests for the game trial runner."""

import itertools

import pytest

from conftest import ScriptedEngine, knight_shuffle, roles, rook_climber, sparse_position
from sprt_tuner.engines import MoveReply
from sprt_tuner.position import BLACK, WHITE, Move, Piece, Position
from sprt_tuner.trial import (
    TrialConfig,
    clock_move_time,
    parse_time_control,
    play_trial,
    should_sample,
    winner_from_white_eval,
)


def fake_clock(step_s):
    counter = itertools.count()
    return lambda: next(counter) * step_s


class TestHelpers:
    def test_parse_time_control(self):
        assert parse_time_control("1+0.08") == (1000, 80)
        assert parse_time_control("10") == (10000, 0)
        with pytest.raises(ValueError):
            parse_time_control("fast")

    def test_clock_move_time(self):
        assert clock_move_time(60000, 1000) == 3500
        assert clock_move_time(100, 0) == 10
        assert clock_move_time(-50, 0) == 10

    def test_sampling_window(self):
        assert not should_sample(8, 32, 0)
        assert should_sample(12, 32, 0)
        assert not should_sample(13, 32, 0)
        assert not should_sample(124, 32, 0)
        assert not should_sample(12, 4, 0)
        assert not should_sample(12, 32, 32)

    def test_winner_from_white_eval(self):
        assert winner_from_white_eval(1500, 1500) == WHITE
        assert winner_from_white_eval(-1600, 1500) == BLACK
        assert winner_from_white_eval(1499, 1500) is None


class TestTermination:
    def test_no_move_after_opening(self):
        cfg = TrialConfig(max_moves=1, opening_move=Move.parse("5,2>5,4"), new_plays_white=False)
        new = ScriptedEngine([None])
        old = ScriptedEngine([])

        result = play_trial(cfg, roles(new, old))

        assert result.result == "loss"
        assert result.reason == "no_move"
        assert result.plies == 1
        assert result.samples == []
        assert result.result_token == "1-0"
        assert old.calls == []
        assert result.log.splitlines()[0] == "W: 5,2>5,4"
        assert "failed to return a move" in result.log

    def test_threefold_on_third_occurrence(self):
        result = play_trial(TrialConfig(), roles(ScriptedEngine(fn=knight_shuffle), ScriptedEngine(fn=knight_shuffle)))
        assert result.result == "draw"
        assert result.reason == "threefold"
        assert result.plies == 8
        assert result.result_token == "1/2-1/2"

    def test_fifty_move_at_hundredth_quiet_ply(self):
        cfg = TrialConfig(start=sparse_position(), max_moves=200)
        result = play_trial(cfg, roles(ScriptedEngine(fn=rook_climber()), ScriptedEngine(fn=rook_climber())))
        assert result.reason == "fifty_move"
        assert result.result == "draw"
        assert result.plies == 100
        assert result.samples == []

    def test_illegal_move_not_recorded(self):
        new = ScriptedEngine(["4,4>4,5"])
        result = play_trial(TrialConfig(), roles(new, ScriptedEngine()))
        assert result.result == "loss"
        assert result.reason == "illegal_move"
        assert result.plies == 0
        assert result.moves == []
        assert "W: 4,4>4,5" not in result.log

    def test_moving_opponent_piece_is_illegal(self):
        new = ScriptedEngine(["5,7>5,5"])
        result = play_trial(TrialConfig(), roles(new, ScriptedEngine()))
        assert result.reason == "illegal_move"
        assert result.result_token == "0-1"

    def test_unusable_reply_is_no_move(self):
        new = ScriptedEngine([MoveReply(None, None)])
        result = play_trial(TrialConfig(), roles(new, ScriptedEngine()))
        assert result.reason == "no_move"
        assert result.result == "loss"

    def test_time_forfeit(self):
        cfg = TrialConfig(base_time_ms=100)
        new = ScriptedEngine(["5,2>5,4"])
        result = play_trial(cfg, roles(new, ScriptedEngine()), clock=fake_clock(0.5))
        assert result.reason == "time_forfeit"
        assert result.result == "loss"
        assert result.plies == 0
        assert new.calls[0][1] == 10

    def test_clock_budget_uses_remaining_time(self):
        cfg = TrialConfig(base_time_ms=60000, increment_ms=1000, max_moves=2)
        new, old = ScriptedEngine(["5,2>5,4"]), ScriptedEngine(["5,7>5,5"])
        result = play_trial(cfg, roles(new, old), clock=fake_clock(0.0))
        assert result.reason == "max_moves"
        assert new.calls[0][1] == 3500
        assert old.calls[0][1] == 3500

    def test_fixed_move_time_without_clock(self):
        new = ScriptedEngine([None])
        play_trial(TrialConfig(time_per_move_ms=250), roles(new, ScriptedEngine()))
        assert new.calls[0][1] == 250

    def test_king_capture_ends_game(self):
        start = Position()
        start.place(Piece(1, 1, "k", WHITE))
        start.place(Piece(5, 1, "r", WHITE))
        start.place(Piece(5, 8, "k", BLACK))
        start.place(Piece(8, 8, "r", BLACK))
        result = play_trial(TrialConfig(start=start), roles(ScriptedEngine(["5,1>5,8"]), ScriptedEngine()))
        assert result.reason == "checkmate"
        assert result.result == "win"
        assert result.result_token == "1-0"

    def test_bare_kings_is_draw(self):
        start = Position()
        start.place(Piece(1, 1, "k", WHITE))
        start.place(Piece(2, 1, "r", BLACK))
        start.place(Piece(8, 8, "k", BLACK))
        result = play_trial(TrialConfig(start=start), roles(ScriptedEngine(["1,1>2,1"]), ScriptedEngine()))
        assert result.reason == "insufficient_material"
        assert result.result == "draw"

    def test_max_moves(self):
        cfg = TrialConfig(start=sparse_position(), max_moves=30)
        result = play_trial(cfg, roles(ScriptedEngine(fn=rook_climber()), ScriptedEngine(fn=rook_climber())))
        assert result.reason == "max_moves"
        assert result.plies == 30


class TestAdjudication:
    def test_both_engines_agree(self):
        # Evals are side-to-move relative: +2000 for White, -2000 from Black = White winning.
        cfg = TrialConfig(start=sparse_position(), max_moves=60)
        new = ScriptedEngine(fn=rook_climber(eval_cp=2000))
        old = ScriptedEngine(fn=rook_climber(eval_cp=-2000))
        result = play_trial(cfg, roles(new, old))
        assert result.reason == "material_adjudication"
        assert result.result == "win"
        assert result.plies == 20
        assert result.last_evals == {"new": 2000, "old": 2000}
        assert "+2000 cp for White" in result.log

    def test_disagreement_keeps_playing(self):
        cfg = TrialConfig(start=sparse_position(), max_moves=30)
        new = ScriptedEngine(fn=rook_climber(eval_cp=2000))
        old = ScriptedEngine(fn=rook_climber(eval_cp=0))
        result = play_trial(cfg, roles(new, old))
        assert result.reason == "max_moves"

    def test_threshold_never_below_default(self):
        cfg = TrialConfig(start=sparse_position(), max_moves=60, material_threshold_cp=100)
        new = ScriptedEngine(fn=rook_climber(eval_cp=1000))
        old = ScriptedEngine(fn=rook_climber(eval_cp=-1000))
        result = play_trial(cfg, roles(new, old))
        assert result.material_threshold == 1500
        assert result.reason == "max_moves"

    def test_higher_threshold_respected(self):
        cfg = TrialConfig(start=sparse_position(), max_moves=30, material_threshold_cp=3000)
        new = ScriptedEngine(fn=rook_climber(eval_cp=2000))
        old = ScriptedEngine(fn=rook_climber(eval_cp=-2000))
        result = play_trial(cfg, roles(new, old))
        assert result.reason == "max_moves"


class TestSamples:
    def test_samples_stamped_with_result(self):
        extra = (Piece(10, 10, "n", WHITE), Piece(20, 20, "n", BLACK))
        cfg = TrialConfig(start=sparse_position(extra), max_moves=60, new_plays_white=False)
        new = ScriptedEngine(fn=rook_climber(eval_cp=-2000))
        old = ScriptedEngine(fn=rook_climber(eval_cp=2000))

        result = play_trial(cfg, roles(new, old))

        assert result.reason == "material_adjudication"
        assert result.result == "loss"
        assert [s.ply_index for s in result.samples] == [12, 16]
        assert all(s.result_token == "1-0" for s in result.samples)
        assert all(s.side_to_move == WHITE for s in result.samples)
        first = result.samples[0].to_dict()
        assert first["piece_count"] == 6
        assert len(first["move_history"]) == 12
