"""Shared fakes for trial, worker and pool tests. No engine binaries needed."""

import threading

import pytest

from sprt_tuner.engines import ROLE_NEW, ROLE_OLD, MoveProvider, MoveReply
from sprt_tuner.position import BLACK, WHITE, Move, Piece, Position


class ScriptedEngine(MoveProvider):
    """Replies from a fixed list, or from ``fn(game_input, time_ms)``."""

    def __init__(self, replies=None, fn=None, name="scripted"):
        self.replies = list(replies or [])
        self.fn = fn
        self.name = name
        self.calls = []
        self.closed = False

    def get_move(self, game_input, time_ms):
        self.calls.append((game_input, time_ms))
        if self.fn is not None:
            return self.fn(game_input, time_ms)
        if not self.replies:
            return None
        reply = self.replies.pop(0)
        if isinstance(reply, str):
            move = Move.parse(reply)
            return MoveReply(move.from_sq, move.to_sq, move.promotion)
        return reply

    def close(self):
        self.closed = True


KNIGHT_SHUFFLE = ["7,1>6,3", "7,8>6,6", "6,3>7,1", "6,6>7,8"]


def knight_shuffle(game_input, time_ms):
    move = Move.parse(KNIGHT_SHUFFLE[len(game_input.move_history) % 4])
    return MoveReply(move.from_sq, move.to_sq)


def rook_climber(eval_cp=None):
    """Moves the side to move's rook one rank up each turn."""
    def fn(game_input, time_ms):
        pos = game_input.current()
        for piece in pos.pieces.values():
            if piece.owner == pos.turn and piece.piece_type == "r":
                return MoveReply(piece.square, f"{piece.x},{piece.y + 1}", eval_cp=eval_cp)
        return None
    return fn


def sparse_position(extra=()):
    pos = Position()
    for piece in (
        Piece(1, 1, "k", WHITE),
        Piece(3, 1, "r", WHITE),
        Piece(100, 100, "k", BLACK),
        Piece(60, 1, "r", BLACK),
        *extra,
    ):
        pos.place(piece)
    return pos


def roles(new, old):
    return {ROLE_NEW: new, ROLE_OLD: old}


@pytest.fixture
def shuffler_factory():
    return lambda: roles(ScriptedEngine(fn=knight_shuffle), ScriptedEngine(fn=knight_shuffle))


@pytest.fixture
def release():
    """Event that blocking fakes wait on; always set at teardown."""
    event = threading.Event()
    yield event
    event.set()
