"""Move-request interface used by game trials, plus a UCI implementation.

Every ply a role receives the original start position and the full move
history, never a running board, so a provider can be stateless between
calls. Any object with ``get_move(game_input, time_ms)`` and ``close()``
can play.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence

import chess
import chess.engine

from .position import (
    Move,
    Position,
    replay,
    square_from_chess,
    square_to_chess,
    to_board,
)

ROLE_NEW = "new"
ROLE_OLD = "old"
ROLES = (ROLE_NEW, ROLE_OLD)

MATE_SCORE = 100_000


@dataclass(frozen=True)
class GameInput:
    start: Position
    move_history: tuple[Move, ...] = ()

    def current(self) -> Position:
        return replay(self.start, self.move_history)

    def to_board(self) -> chess.Board:
        board = to_board(self.start)
        for m in self.move_history:
            promotion = chess.PIECE_SYMBOLS.index(m.promotion) if m.promotion else None
            board.push(chess.Move(square_to_chess(m.from_sq), square_to_chess(m.to_sq), promotion=promotion))
        return board

    def to_dict(self) -> dict[str, Any]:
        data = self.start.to_dict()
        data["move_history"] = [m.to_dict() for m in self.move_history]
        return data


@dataclass(frozen=True)
class MoveReply:
    from_sq: str | None
    to_sq: str | None
    promotion: str | None = None
    eval_cp: int | None = None  # side-to-move perspective

    def is_usable(self) -> bool:
        return bool(self.from_sq) and bool(self.to_sq)

    def to_move(self) -> Move:
        return Move(self.from_sq, self.to_sq, self.promotion)  # type: ignore[arg-type]


class MoveProvider:
    name = "engine"

    def get_move(self, game_input: GameInput, time_ms: int) -> MoveReply | None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# Builds the role -> provider map inside a worker.
EngineFactory = Callable[[], "dict[str, MoveProvider]"]


class UciEngine(MoveProvider):
    """A UCI engine process driven through python-chess.

    ``options`` are sent with ``configure`` once at startup, which is how
    two parameter sets of the same binary are pitted against each other.
    """

    def __init__(self, command: str | Sequence[str], options: dict[str, Any] | None = None,
                 name: str | None = None):
        self.command = command if isinstance(command, str) else list(command)
        self.options = dict(options or {})
        self.name = name or (command if isinstance(command, str) else " ".join(command))
        self._engine: chess.engine.SimpleEngine | None = None

    def open(self) -> UciEngine:
        if self._engine is None:
            engine = chess.engine.SimpleEngine.popen_uci(self.command)
            if self.options:
                engine.configure(self.options)
            self._engine = engine
        return self

    def get_move(self, game_input: GameInput, time_ms: int) -> MoveReply | None:
        engine = self.open()._engine
        assert engine is not None
        board = game_input.to_board()
        try:
            result = engine.play(board, chess.engine.Limit(time=time_ms / 1000.0), info=chess.engine.INFO_SCORE)
        except chess.engine.EngineError:
            # Dead process or a bestmove python-chess rejects as illegal.
            return None
        if result.move is None:
            return None

        eval_cp = None
        score = result.info.get("score")
        if score is not None:
            eval_cp = score.pov(board.turn).score(mate_score=MATE_SCORE)

        move = result.move
        return MoveReply(
            from_sq=square_from_chess(move.from_square),
            to_sq=square_from_chess(move.to_square),
            promotion=chess.piece_symbol(move.promotion) if move.promotion else None,
            eval_cp=eval_cp,
        )

    def close(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            try:
                engine.quit()
            except Exception:
                pass


def uci_engine_factory(
    new_command: str | Sequence[str],
    old_command: str | Sequence[str],
    new_options: dict[str, Any] | None = None,
    old_options: dict[str, Any] | None = None,
) -> EngineFactory:
    def factory() -> dict[str, MoveProvider]:
        new = UciEngine(new_command, new_options, name=ROLE_NEW).open()
        try:
            old = UciEngine(old_command, old_options, name=ROLE_OLD).open()
        except BaseException:
            new.close()
            raise
        return {ROLE_NEW: new, ROLE_OLD: old}

    return factory
