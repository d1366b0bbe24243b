#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki 128 bit Zobrist hashing: the canonical position key.

The key covers [BOARD, TURN, CASTLING RIGHTS, EN PASSANT SQUARES] and nothing
else: halfmove and fullmove counters never influence it. We use the polyglot
hasher from python-chess, but over our own 128 bit random table, so that
collisions are improbable (never impossible: users of the key must verify).
"""

import hashlib
from typing import Any, Callable

import chess
import chess.polyglot

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


ZOBRIST_BITS: int = 128
ZOBRIST_BYTES: int = ZOBRIST_BITS // 8
_TABLE_SIZE: int = 781  # 12*64 pieces + 4 castling + 8 en passant files + 1 turn
# ATTENTION: changing the seed changes every key and invalidates every index on disk!
_TABLE_SEED: str = 'takoyaki-zobrist-v1'


class Zobrist(int):
  """A 128 bit Zobrist position key. Renders as 32 hex chars."""

  def __new__(cls, value: int) -> 'Zobrist':
    if not isinstance(value, int) or isinstance(value, bool):
      raise ValueError(f'Zobrist must be initialized with int, got {value!r}')
    if not 0 <= value < (1 << ZOBRIST_BITS):
      raise ValueError(f'Zobrist out of range: {value!r}')
    return super().__new__(cls, value)

  def __str__(self) -> str:
    return f'{int(self):032x}'

  def __repr__(self) -> str:
    return f'Zobrist("{self}")'

  def __eq__(self, other: Any) -> bool:
    if isinstance(other, str):
      return str(self) == other.strip().lower()
    if isinstance(other, int):
      return int(self) == int(other)
    return False

  def __ne__(self, other: Any) -> bool:
    return not self.__eq__(other)

  def __hash__(self) -> int:
    return int.__hash__(self)


def ZobristGenerateTable() -> list[int]:
  """Deterministic table of 781 random 128 bit integers, derived from SHA-256 of a fixed seed."""
  table: list[int] = []
  for i in range(_TABLE_SIZE):
    digest: bytes = hashlib.sha256(f'{_TABLE_SEED}/{i}'.encode('utf-8')).digest()
    table.append(int.from_bytes(digest[:ZOBRIST_BYTES], 'big'))
  return table


_ZOBRIST_TABLE: list[int] = ZobristGenerateTable()


def MakeHasher() -> Callable[[chess.Board], int]:
  """A polyglot hasher over our 128 bit table; call it with a chess.Board."""
  return chess.polyglot.ZobristHasher(_ZOBRIST_TABLE)


_HASHER: Callable[[chess.Board], int] = MakeHasher()


def ZobristFromBoard(board: chess.Board) -> Zobrist:
  """Key of a python-chess board."""
  return Zobrist(_HASHER(board))


def ZobristFromFEN(fen: str) -> Zobrist:
  """Key of a FEN position. Raises ValueError on invalid FEN."""
  return ZobristFromBoard(chess.Board(fen))


def ZobristFromHash(hex_hash: str) -> Zobrist:
  """Parse a 32 hex char string back into a Zobrist."""
  hex_hash = hex_hash.strip().lower()
  if len(hex_hash) != ZOBRIST_BITS // 4:
    raise ValueError(f'Zobrist hash must be {ZOBRIST_BITS // 4} hex chars: {hex_hash!r}')
  return Zobrist(int(hex_hash, 16))


def KeyBytes(key: int) -> bytes:
  """Fixed width (16 bytes, big-endian) encoding, so byte order == integer order."""
  return int(key).to_bytes(ZOBRIST_BYTES, 'big')


def ZobristFromBytes(data: bytes) -> Zobrist:
  """Inverse of KeyBytes()."""
  if len(data) != ZOBRIST_BYTES:
    raise ValueError(f'Zobrist bytes must have length {ZOBRIST_BYTES}: {data!r}')
  return Zobrist(int.from_bytes(data, 'big'))


STARTING_POSITION_HASH: Zobrist = ZobristFromBoard(chess.Board())
