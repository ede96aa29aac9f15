"""Board state for game trials: pieces on integer squares, move application,
material terminality and repetition keys.

Squares are "x,y" strings with 1-based file/rank integers. The board is
unbounded, so only the classical 8x8 subset can be converted to a
python-chess board.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, NamedTuple

import chess

WHITE = "w"
BLACK = "b"

PIECE_NAMES = {
    "p": "pawn",
    "n": "knight",
    "b": "bishop",
    "r": "rook",
    "q": "queen",
    "k": "king",
    "g": "guard",
    "rq": "royal_queen",
    "h": "hawk",
    "c": "chancellor",
    "a": "archbishop",
    "am": "amazon",
    "ca": "camel",
    "gi": "giraffe",
    "z": "zebra",
    "nr": "knightrider",
    "ce": "centaur",
    "rc": "royal_centaur",
    "hu": "huygen",
    "ro": "rose",
}
ROYAL_TYPES = frozenset({"k", "rq", "rc"})

# Castling looks this many files past the king's destination for its rook.
CASTLING_SEARCH_LIMIT = 16


class IllegalMove(ValueError):
    """Move rejected by turn/occupancy rules. The position is left untouched."""


def parse_square(square: str) -> tuple[int, int]:
    try:
        x_s, y_s = square.split(",")
        return int(x_s), int(y_s)
    except (AttributeError, ValueError):
        raise ValueError(f"bad square: {square!r}") from None


def format_square(x: int, y: int) -> str:
    return f"{x},{y}"


def opposite(color: str) -> str:
    return BLACK if color == WHITE else WHITE


def color_name(color: str) -> str:
    return "White" if color == WHITE else "Black"


@dataclass(frozen=True)
class Piece:
    x: int
    y: int
    piece_type: str
    owner: str

    @property
    def square(self) -> str:
        return format_square(self.x, self.y)

    def is_royal(self) -> bool:
        return self.piece_type in ROYAL_TYPES


@dataclass(frozen=True)
class Move:
    from_sq: str
    to_sq: str
    promotion: str | None = None

    def __str__(self) -> str:
        text = f"{self.from_sq}>{self.to_sq}"
        if self.promotion:
            text += f"={self.promotion}"
        return text

    @classmethod
    def parse(cls, text: str) -> Move:
        """Parse "5,2>5,4" or "5,7>5,8=q"."""
        body, _, promo = text.strip().partition("=")
        src, sep, dst = body.partition(">")
        if not sep:
            raise ValueError(f"bad move: {text!r}")
        parse_square(src)
        parse_square(dst)
        return cls(src.strip(), dst.strip(), promo.strip().lower() or None)

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.from_sq, "to": self.to_sq, "promotion": self.promotion}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Move:
        src = data.get("from")
        dst = data.get("to")
        if not isinstance(src, str) or not isinstance(dst, str):
            raise ValueError(f"move needs 'from' and 'to': {data!r}")
        return cls(src, dst, data.get("promotion") or None)


class MaterialState(NamedTuple):
    over: bool
    reason: str | None = None


@dataclass
class Position:
    pieces: dict[tuple[int, int], Piece] = field(default_factory=dict)
    turn: str = WHITE
    special_rights: set[str] = field(default_factory=set)
    move_history: list[Move] = field(default_factory=list)
    halfmove_clock: int = 0
    fullmove_number: int = 1

    def copy(self) -> Position:
        return Position(
            pieces=dict(self.pieces),
            turn=self.turn,
            special_rights=set(self.special_rights),
            move_history=list(self.move_history),
            halfmove_clock=self.halfmove_clock,
            fullmove_number=self.fullmove_number,
        )

    def piece_at(self, square: str) -> Piece | None:
        return self.pieces.get(parse_square(square))

    def piece_count(self) -> int:
        return len(self.pieces)

    def royal_count(self) -> int:
        return sum(1 for p in self.pieces.values() if p.is_royal())

    def place(self, piece: Piece) -> None:
        self.pieces[(piece.x, piece.y)] = piece

    def to_dict(self) -> dict[str, Any]:
        pieces = [
            {"x": str(p.x), "y": str(p.y), "piece_type": p.piece_type, "player": p.owner}
            for _, p in sorted(self.pieces.items())
        ]
        return {
            "board": {"pieces": pieces},
            "turn": self.turn,
            "special_rights": sorted(self.special_rights),
            "halfmove_clock": self.halfmove_clock,
            "fullmove_number": self.fullmove_number,
            "move_history": [m.to_dict() for m in self.move_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Position:
        pos = cls(
            turn=data.get("turn", WHITE),
            special_rights=set(data.get("special_rights") or ()),
            move_history=[Move.from_dict(m) for m in data.get("move_history") or ()],
            halfmove_clock=int(data.get("halfmove_clock") or 0),
            fullmove_number=int(data.get("fullmove_number") or 1),
        )
        for raw in data["board"]["pieces"]:
            owner = raw.get("player", raw.get("color"))
            piece = Piece(int(raw["x"]), int(raw["y"]), str(raw["piece_type"]).lower(), owner)
            if (piece.x, piece.y) in pos.pieces:
                raise ValueError(f"two pieces on {piece.square}")
            pos.place(piece)
        return pos


def standard_position() -> Position:
    pos = Position()
    back_rank = ["r", "n", "b", "q", "k", "b", "n", "r"]
    for color, home, pawn_rank in ((WHITE, 1, 2), (BLACK, 8, 7)):
        for file, piece_type in enumerate(back_rank, start=1):
            pos.place(Piece(file, home, piece_type, color))
            pos.place(Piece(file, pawn_rank, "p", color))
            pos.special_rights.add(format_square(file, pawn_rank))
        for file in (1, 5, 8):
            pos.special_rights.add(format_square(file, home))
    return pos


def apply_move(position: Position, move: Move) -> Position:
    fx, fy = parse_square(move.from_sq)
    tx, ty = parse_square(move.to_sq)

    mover = position.pieces.get((fx, fy))
    if mover is None:
        raise IllegalMove(f"no piece at {move.from_sq}")
    if mover.owner != position.turn:
        raise IllegalMove(
            f"{color_name(position.turn)} to move but piece at {move.from_sq} "
            f"is {color_name(mover.owner)}"
        )
    if (fx, fy) == (tx, ty):
        raise IllegalMove(f"null move on {move.from_sq}")

    nxt = position.copy()
    del nxt.pieces[(fx, fy)]
    nxt.pieces.pop((tx, ty), None)

    # King displaced more than one file along its rank: castle with the first
    # allied rook found beyond the destination.
    dx = tx - fx
    if mover.piece_type == "k" and ty == fy and abs(dx) > 1:
        step = 1 if dx > 0 else -1
        rx = tx + step
        while abs(rx - tx) <= CASTLING_SEARCH_LIMIT:
            other = nxt.pieces.get((rx, fy))
            if other is not None:
                landing = (tx - step, fy)
                if other.owner == mover.owner and other.piece_type == "r" and landing not in nxt.pieces:
                    del nxt.pieces[(rx, fy)]
                    nxt.place(replace(other, x=landing[0], y=landing[1]))
                    nxt.special_rights.discard(format_square(rx, fy))
                break
            rx += step

    piece_type = move.promotion.lower() if move.promotion else mover.piece_type
    nxt.place(Piece(tx, ty, piece_type, mover.owner))
    nxt.special_rights.discard(move.from_sq)
    nxt.special_rights.discard(move.to_sq)

    if is_pawn_move_or_capture(position, move):
        nxt.halfmove_clock = 0
    else:
        nxt.halfmove_clock += 1
    if mover.owner == BLACK:
        nxt.fullmove_number += 1

    nxt.turn = opposite(position.turn)
    nxt.move_history.append(move)
    return nxt


def replay(start: Position, moves: Iterable[Move]) -> Position:
    pos = start
    for move in moves:
        pos = apply_move(pos, move)
    return pos


def is_pawn_move_or_capture(position: Position, move: Move) -> bool:
    mover = position.pieces.get(parse_square(move.from_sq))
    if mover is not None and mover.piece_type == "p":
        return True
    return parse_square(move.to_sq) in position.pieces


def is_terminal_by_material(position: Position) -> MaterialState:
    # Stand-in for mate detection; engines signal real mates by returning no move.
    if position.royal_count() < 2:
        return MaterialState(True, "checkmate")
    if position.piece_count() <= 2:
        return MaterialState(True, "draw")
    return MaterialState(False)


def repetition_key(position: Position) -> str:
    parts = sorted(f"{p.owner}{p.piece_type}{p.x},{p.y}" for p in position.pieces.values())
    text = position.turn + "|" + ";".join(parts)
    return hashlib.blake2b(text.encode("utf-8"), digest_size=16).hexdigest()


def to_board(position: Position) -> chess.Board:
    """Classical 8x8 positions only; raises ValueError for anything else."""
    board = chess.Board.empty()
    for (x, y), piece in position.pieces.items():
        if not (1 <= x <= 8 and 1 <= y <= 8):
            raise ValueError(f"square {piece.square} is off the 8x8 board")
        if piece.piece_type not in chess.PIECE_SYMBOLS[1:]:
            raise ValueError(f"piece type {piece.piece_type!r} has no python-chess equivalent")
        symbol = piece.piece_type.upper() if piece.owner == WHITE else piece.piece_type
        board.set_piece_at(chess.square(x - 1, y - 1), chess.Piece.from_symbol(symbol))

    board.turn = chess.WHITE if position.turn == WHITE else chess.BLACK

    castling = chess.BB_EMPTY
    for color, rank in ((WHITE, 1), (BLACK, 8)):
        king = position.pieces.get((5, rank))
        if king is None or king.piece_type != "k" or king.owner != color:
            continue
        if format_square(5, rank) not in position.special_rights:
            continue
        for file in (1, 8):
            rook = position.pieces.get((file, rank))
            if rook is not None and rook.piece_type == "r" and rook.owner == color \
                    and format_square(file, rank) in position.special_rights:
                castling |= chess.BB_SQUARES[chess.square(file - 1, rank - 1)]
    board.castling_rights = castling
    board.halfmove_clock = position.halfmove_clock
    board.fullmove_number = position.fullmove_number
    return board


def position_fen(position: Position) -> str:
    return to_board(position).fen()


def square_from_chess(square: chess.Square) -> str:
    return format_square(chess.square_file(square) + 1, chess.square_rank(square) + 1)


def square_to_chess(square: str) -> chess.Square:
    x, y = parse_square(square)
    if not (1 <= x <= 8 and 1 <= y <= 8):
        raise ValueError(f"square {square} is off the 8x8 board")
    return chess.square(x - 1, y - 1)
