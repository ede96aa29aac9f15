"""One game between the "new" and "old" roles.

The runner owns the authoritative position. Each ply it rebuilds the role's
input from the original start position plus the move history, applies the
returned move locally and checks the termination rules in a fixed order:
time forfeit, missing move, illegal move, threefold repetition, fifty-move
rule, material terminality, eval adjudication and finally the ply budget.
Positions are sampled along the way for Texel tuning and stamped with the
game result once it is known.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from . import config
from .engines import ROLE_NEW, ROLE_OLD, GameInput, MoveProvider
from .position import (
    BLACK,
    WHITE,
    Move,
    Position,
    apply_move,
    color_name,
    is_terminal_by_material,
    opposite,
    repetition_key,
    standard_position,
)

RESULT_TOKENS = {WHITE: "1-0", BLACK: "0-1", None: "1/2-1/2"}


@dataclass(frozen=True)
class TrialConfig:
    new_plays_white: bool = True
    max_moves: int = config.MAX_MOVES
    time_per_move_ms: int = config.TIME_PER_MOVE_MS
    base_time_ms: int = 0
    increment_ms: int = 0
    material_threshold_cp: int | None = None
    opening_move: Move | None = None
    start: Position | None = None
    game_index: int = 0

    @property
    def has_clocks(self) -> bool:
        return self.base_time_ms > 0


@dataclass
class TexelSample:
    move_history: list[dict[str, Any]]
    side_to_move: str
    ply_index: int
    piece_count: int
    position: dict[str, Any]
    result_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "move_history": self.move_history,
            "side_to_move": self.side_to_move,
            "ply_index": self.ply_index,
            "piece_count": self.piece_count,
            "position": self.position,
            "result_token": self.result_token,
        }


@dataclass
class TrialResult:
    result: str  # win / loss / draw for the "new" role
    reason: str
    log: str
    result_token: str
    new_plays_white: bool
    plies: int
    game_index: int = 0
    material_threshold: int | None = None
    moves: list[Move] = field(default_factory=list)
    samples: list[TexelSample] = field(default_factory=list)
    last_evals: dict[str, int | None] = field(default_factory=dict)


def parse_time_control(text: str) -> tuple[int, int]:
    """"1+0.08" -> (1000, 80) milliseconds; a bare "10" has no increment."""
    base_s, _, inc_s = text.strip().partition("+")
    try:
        base = float(base_s)
        inc = float(inc_s) if inc_s else 0.0
    except ValueError:
        raise ValueError(f"bad time control: {text!r}") from None
    if base < 0 or inc < 0:
        raise ValueError(f"bad time control: {text!r}")
    return int(round(base * 1000)), int(round(inc * 1000))


def clock_move_time(clock_ms: int, increment_ms: int) -> int:
    return max(config.MIN_MOVE_TIME_MS, int(round(max(0, clock_ms) / 20 + increment_ms / 2)))


def should_sample(ply: int, piece_count: int, collected: int) -> bool:
    return (
        config.SAMPLE_MIN_PLY <= ply <= config.SAMPLE_MAX_PLY
        and ply % config.SAMPLE_EVERY == 0
        and piece_count > config.SAMPLE_MIN_PIECES
        and collected < config.MAX_SAMPLES_PER_GAME
    )


def winner_from_white_eval(score: int, threshold: int) -> str | None:
    if score >= threshold:
        return WHITE
    if score <= -threshold:
        return BLACK
    return None


def material_winner(position: Position, mover: str) -> str:
    holders = {p.owner for p in position.pieces.values() if p.is_royal()}
    if len(holders) == 1:
        return holders.pop()
    return mover


def play_trial(
    cfg: TrialConfig,
    roles: Mapping[str, MoveProvider],
    clock: Callable[[], float] = time.perf_counter,
) -> TrialResult:
    start = cfg.start.copy() if cfg.start is not None else standard_position()
    position = start
    new_color = WHITE if cfg.new_plays_white else BLACK
    threshold = max(config.MATERIAL_THRESHOLD_CP, cfg.material_threshold_cp or 0)

    lines: list[str] = []
    history: list[Move] = []
    samples: list[TexelSample] = []
    repetitions: Counter[str] = Counter()

    have_clocks = cfg.has_clocks
    increment = max(0, cfg.increment_ms)
    clocks = {WHITE: cfg.base_time_ms, BLACK: cfg.base_time_ms}

    # Last search eval per role, White-relative centipawns.
    last_eval: dict[str, int | None] = {ROLE_NEW: None, ROLE_OLD: None}

    def record_repetition() -> int:
        key = repetition_key(position)
        repetitions[key] += 1
        return repetitions[key]

    def finish(winner: str | None, reason: str) -> TrialResult:
        token = RESULT_TOKENS[winner]
        for s in samples:
            s.result_token = token
        if winner is None:
            result = "draw"
        else:
            result = "win" if winner == new_color else "loss"
        return TrialResult(
            result=result,
            reason=reason,
            log="\n".join(lines),
            result_token=token,
            new_plays_white=cfg.new_plays_white,
            plies=len(history),
            game_index=cfg.game_index,
            material_threshold=threshold,
            moves=list(history),
            samples=samples,
            last_evals=dict(last_eval),
        )

    record_repetition()

    if cfg.opening_move is not None:
        side = position.turn
        position = apply_move(position, cfg.opening_move)
        lines.append(f"{'W' if side == WHITE else 'B'}: {cfg.opening_move}")
        history.append(cfg.opening_move)
        record_repetition()

    for _ in range(cfg.max_moves):
        side = position.turn
        role = ROLE_NEW if side == new_color else ROLE_OLD

        ply = len(history)
        if should_sample(ply, position.piece_count(), len(samples)):
            samples.append(TexelSample(
                move_history=[m.to_dict() for m in history],
                side_to_move=side,
                ply_index=ply,
                piece_count=position.piece_count(),
                position=position.to_dict(),
            ))

        if have_clocks:
            search_ms = clock_move_time(clocks[side], increment)
        else:
            search_ms = cfg.time_per_move_ms

        game_input = GameInput(start, tuple(history))
        t0 = clock()
        reply = roles[role].get_move(game_input, search_ms)

        if have_clocks:
            elapsed = max(0, int(round((clock() - t0) * 1000)))
            remaining = clocks[side] - elapsed
            clocks[side] = max(0, remaining) + increment
            if remaining < 0:
                lines.append(f"# Time forfeit: {color_name(side)} flagged on time.")
                return finish(opposite(side), "time_forfeit")

        if reply is None or not reply.is_usable():
            lines.append(f"# Engine {role} failed to return a move.")
            return finish(opposite(side), "no_move")

        if reply.eval_cp is not None:
            last_eval[role] = reply.eval_cp if side == WHITE else -reply.eval_cp

        move = reply.to_move()
        try:
            position = apply_move(position, move)
        except ValueError as ex:
            # The rejected move stays out of the log and history so both replay.
            lines.append(f"# Illegal move from {role}: {move} ({ex})")
            return finish(opposite(side), "illegal_move")

        lines.append(f"{'W' if side == WHITE else 'B'}: {move}")
        history.append(move)

        if record_repetition() >= config.REPETITION_LIMIT:
            return finish(None, "threefold")

        if position.halfmove_clock >= config.FIFTY_MOVE_PLIES:
            return finish(None, "fifty_move")

        state = is_terminal_by_material(position)
        if state.over:
            if state.reason == "draw":
                return finish(None, "insufficient_material")
            return finish(material_winner(position, side), "checkmate")

        new_eval, old_eval = last_eval[ROLE_NEW], last_eval[ROLE_OLD]
        if len(history) >= config.ADJUDICATION_MIN_PLY and new_eval is not None and old_eval is not None:
            new_winner = winner_from_white_eval(new_eval, threshold)
            if new_winner is not None and new_winner == winner_from_white_eval(old_eval, threshold):
                eval_cp = min(new_eval, old_eval) if new_winner == WHITE else max(new_eval, old_eval)
                lines.append(
                    f"# Game adjudicated by material: ~{int(eval_cp):+d} cp for {color_name(new_winner)} "
                    f"(threshold {threshold} cp, both engines agree)"
                )
                lines.append(f"# Engines: new={color_name(new_color)}, old={color_name(opposite(new_color))}")
                return finish(new_winner, "material_adjudication")

    return finish(None, "max_moves")
