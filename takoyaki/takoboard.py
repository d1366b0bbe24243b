#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki board state machine: apply recorded moves, canonicalize positions.

Boards are python-chess boards, but wrapped in an immutable BoardState: the
engine never mutates a state it handed out, Apply() always gives a new one.
"""

import enum
import re
from typing import Callable, Generator, Iterable, Optional, Union

import chess

from takoyaki import takobase
from takoyaki import takozobrist

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


STANDARD_CHESS_FEN: str = chess.STARTING_FEN
MAX_PLY: int = (1 << 16) - 1  # ply must fit the packed Occurrence

_MOVE_NUMBER: re.Pattern[str] = re.compile(r'^\d+\.+')
_NAG: re.Pattern[str] = re.compile(r'^\$\d+$')
_BARE_PROMOTION: re.Pattern[str] = re.compile(r'^((?:[a-h]x)?[a-h][18])([NBRQnbrq])$')
_RESULTS: set[str] = {'1-0', '0-1', '1/2-1/2', '½-½', '*'}

# strip check/mate marks and annotation glyphs from the end of a SAN
_StripSANSuffix: Callable[[str], str] = lambda s: s.rstrip('+#!?')


class IngestErrorCategory(enum.Flag):
  """Why a game could not be ingested."""
  # ATTENTION: DO NOT REORDER LIST! Values are persisted in build reports.
  MALFORMED_MOVE = 1 << 0      # move text is not chess notation at all
  ILLEGAL_MOVE = 1 << 1        # move is not legal in the position
  AMBIGUOUS_NOTATION = 1 << 2  # SAN matches more than one legal move
  INVALID_POSITION = 1 << 3    # starting FEN is invalid
  EMPTY_GAME = 1 << 4          # game with no moves
  DUPLICATE_GAME = 1 << 5      # game id already indexed
  # <<== add new stuff to the end!


class IngestError(takobase.Error):
  """A game could not be replayed; the game is skipped, ingestion continues."""

  def __init__(
      self, message: str, category: IngestErrorCategory, ply: Optional[int] = None) -> None:
    super().__init__(message)
    self.category: IngestErrorCategory = category
    self.ply: Optional[int] = ply


class MalformedMoveError(IngestError):
  """Move text cannot be parsed as a move."""

  def __init__(self, message: str, ply: Optional[int] = None) -> None:
    super().__init__(message, IngestErrorCategory.MALFORMED_MOVE, ply=ply)


class IllegalMoveError(IngestError):
  """Move is not legal in the given state."""

  def __init__(self, message: str, ply: Optional[int] = None) -> None:
    super().__init__(message, IngestErrorCategory.ILLEGAL_MOVE, ply=ply)


class AmbiguousNotationError(IngestError):
  """Move text matches more than one legal move in the given state."""

  def __init__(self, message: str, ply: Optional[int] = None) -> None:
    super().__init__(message, IngestErrorCategory.AMBIGUOUS_NOTATION, ply=ply)


class BoardState:
  """Immutable chess position plus the (optional) line of moves replayed from it.

  Equality is position identity: placement, side to move, castling rights and
  en passant target. Counters and `line` are ignored. The en passant target is
  only kept when a pawn of the side to move stands ready to capture, which is
  exactly what the Zobrist key hashes.
  """

  __slots__ = ('_board', '_identity', 'line')

  def __init__(self, board: chess.Board, line: Iterable[str] = ()) -> None:
    """Constructor. `board` is copied, the caller may keep mutating its own."""
    self._board: chess.Board = board.copy(stack=False)
    self._identity: str = ' '.join(self._board.fen(en_passant='xfen').split()[:4])
    self.line: tuple[str, ...] = tuple(line)

  @classmethod
  def FromFEN(cls, fen: str = STANDARD_CHESS_FEN) -> 'BoardState':
    """Build from FEN. Raises ValueError on invalid FEN."""
    return cls(chess.Board(fen))

  @property
  def identity(self) -> str:
    """The first 4 FEN fields (placement, turn, castling, e.p.): what position equality uses."""
    return self._identity

  @property
  def fen(self) -> str:
    return self._board.fen(en_passant='xfen')

  @property
  def turn(self) -> chess.Color:
    return self._board.turn

  @property
  def castling(self) -> tuple[bool, bool, bool, bool]:
    """(white king side, white queen side, black king side, black queen side)."""
    return (self._board.has_kingside_castling_rights(chess.WHITE),
            self._board.has_queenside_castling_rights(chess.WHITE),
            self._board.has_kingside_castling_rights(chess.BLACK),
            self._board.has_queenside_castling_rights(chess.BLACK))

  @property
  def ep_square(self) -> Optional[chess.Square]:
    return self._board.ep_square if self._board.has_pseudo_legal_en_passant() else None

  @property
  def halfmove_clock(self) -> int:
    return self._board.halfmove_clock

  @property
  def fullmove_number(self) -> int:
    return self._board.fullmove_number

  def PieceAt(self, square: chess.Square) -> Optional[chess.Piece]:
    """Piece on `square`, or None if empty."""
    return self._board.piece_at(square)

  def Placement(self) -> dict[chess.Square, chess.Piece]:
    """{square: piece} for every occupied square."""
    return self._board.piece_map()

  def Board(self) -> chess.Board:
    """A fresh mutable copy of the underlying board."""
    return self._board.copy(stack=False)

  def WithLine(self, line: Iterable[str]) -> 'BoardState':
    """Same position, carrying `line`."""
    return BoardState(self._board, line=line)

  def __eq__(self, other: object) -> bool:
    if not isinstance(other, BoardState):
      return NotImplemented
    return self._identity == other._identity

  def __hash__(self) -> int:
    return hash(self._identity)

  def __repr__(self) -> str:
    return f'BoardState({self.fen!r})'


def NormalizeMoveText(text: str) -> str:
  """Lexical normalization of one move token: '12.Nf3+!' -> 'Nf3', '0-0' -> 'O-O'.

  Returns '' for tokens that carry no move (bare move numbers, NAGs, results).
  """
  token: str = text.strip()
  token = _MOVE_NUMBER.sub('', token)
  if not token or token in _RESULTS or _NAG.match(token):
    return ''
  token = _StripSANSuffix(token)
  if token in ('0-0', 'o-o'):
    token = 'O-O'
  elif token in ('0-0-0', 'o-o-o'):
    token = 'O-O-O'
  if (promotion := _BARE_PROMOTION.match(token)):
    token = f'{promotion.group(1)}={promotion.group(2).upper()}'
  return token


def CanonicalSAN(board: chess.Board, move: chess.Move) -> str:
  """Canonical SAN of a legal `move` in `board`: python-chess SAN minus check marks."""
  return _StripSANSuffix(board.san(move))


def ParseMove(board: chess.Board, move: Union[str, chess.Move], ply: Optional[int] = None) -> chess.Move:
  """Resolve `move` (SAN, long algebraic, or chess.Move) into a legal move in `board`.

  Raises:
    MalformedMoveError: not move notation (or a null move)
    IllegalMoveError: not legal in `board`
    AmbiguousNotationError: SAN matches more than one legal move
  """
  where: str = f' at ply {ply}' if ply is not None else ''
  if isinstance(move, chess.Move):
    if not move or not board.is_legal(move):
      raise IllegalMoveError(f'Illegal move {move.uci()}{where} in {board.fen()!r}', ply=ply)
    return move
  san: str = NormalizeMoveText(move)
  if not san:
    raise MalformedMoveError(f'Not a move: {move!r}{where}', ply=ply)
  try:
    parsed: chess.Move = board.parse_san(san)
  except chess.AmbiguousMoveError as err:
    raise AmbiguousNotationError(
        f'Ambiguous move {move!r}{where} in {board.fen()!r}: {err}', ply=ply) from err
  except chess.IllegalMoveError as err:
    raise IllegalMoveError(f'Illegal move {move!r}{where} in {board.fen()!r}: {err}', ply=ply) from err
  except (chess.InvalidMoveError, ValueError) as err:
    raise MalformedMoveError(f'Malformed move {move!r}{where}: {err}', ply=ply) from err
  if not parsed:
    raise MalformedMoveError(f'Null move {move!r}{where} is not allowed', ply=ply)
  return parsed


def Apply(state: BoardState, move: Union[str, chess.Move]) -> BoardState:
  """Pure state transition: `state` + `move` -> new state. `state` is not touched.

  Raises:
    MalformedMoveError, IllegalMoveError, AmbiguousNotationError (see ParseMove)
  """
  board: chess.Board = state.Board()
  board.push(ParseMove(board, move))
  return BoardState(board)


def CanonicalKey(state: BoardState) -> takozobrist.Zobrist:
  """Canonical 128 bit position key; deterministic and blind to move counters."""
  return takozobrist.ZobristFromBoard(state._board)  # pylint: disable=protected-access


def StartingBoard(starting_fen: Optional[str] = None, game_id: Optional[int] = None) -> chess.Board:
  """Board for a game start. Raises IngestError on invalid FEN."""
  try:
    board = chess.Board(starting_fen or STANDARD_CHESS_FEN)
  except ValueError as err:
    raise IngestError(
        f'Invalid starting FEN {starting_fen!r} (game {game_id}): {err}',
        IngestErrorCategory.INVALID_POSITION, ply=0) from err
  if (status := board.status()) != chess.STATUS_VALID:
    raise IngestError(
        f'Invalid starting position ({status!r}) {starting_fen!r} (game {game_id})',
        IngestErrorCategory.INVALID_POSITION, ply=0)
  return board


def IterateMoves(
    moves: Iterable[Union[str, chess.Move]],
    starting_fen: Optional[str] = None) -> Generator[tuple[int, str, BoardState], None, None]:
  """Replays a move list, yielding useful information for every position reached.

  Args:
    moves: the recorded moves, in order
    starting_fen: (default None == standard chess) the initial position

  Yields:
    (ply, canonical_san, state_after_move), ply counting from 1

  Raises:
    IngestError (or subclass) if the start or any move is invalid; `ply` is set
  """
  board: chess.Board = StartingBoard(starting_fen)
  for n_ply, move in enumerate(moves):
    if n_ply >= MAX_PLY:
      raise IngestError(
          f'Game longer than {MAX_PLY} plies', IngestErrorCategory.MALFORMED_MOVE, ply=n_ply)
    parsed: chess.Move = ParseMove(board, move, ply=n_ply + 1)
    san: str = CanonicalSAN(board, parsed)
    board.push(parsed)
    yield (n_ply + 1, san, BoardState(board))
