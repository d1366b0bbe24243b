#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki postings: occurrences, sorted postings lists, set algebra and compression.

An Occurrence (game_id, ply) is stored packed into one int: `game_id << 16 | ply`,
so integer order is exactly (game_id, ply) order and all set algebra can work on
plain sorted ints.

Compressed format (all ints are unsigned LEB128 varints):

  [count] [n_blocks]
  n_blocks * ([first value of block] [byte length of block body])
  n_blocks * [block body]

Blocks hold BLOCK_SIZE values (the last one may hold fewer); the body has the
deltas between consecutive values of the block, the first value lives in the
block table. Find() binary searches the block table and decodes one block only.
"""

import bisect
import heapq
from typing import Generator, Iterable, Iterator, NamedTuple, Optional

from takoyaki import takobase

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


PLY_BITS: int = 16
_PLY_MASK: int = (1 << PLY_BITS) - 1
BLOCK_SIZE: int = 128


class PostingsError(takobase.Error):
  """Postings are out of order or corrupt."""


class Occurrence(NamedTuple):
  """One moment in one game: the position after `ply` half-moves of game `game_id`."""
  game_id: int
  ply: int

  def __str__(self) -> str:
    return f'({self.game_id}, {self.ply})'


def Pack(game_id: int, ply: int) -> int:
  """(game_id, ply) -> packed int, order preserving."""
  if game_id < 0 or not 0 <= ply <= _PLY_MASK:
    raise ValueError(f'Invalid occurrence: game {game_id}, ply {ply}')
  return (game_id << PLY_BITS) | ply


def Unpack(packed: int) -> Occurrence:
  """Packed int -> Occurrence."""
  return Occurrence(packed >> PLY_BITS, packed & _PLY_MASK)


def GameOf(packed: int) -> int:
  return packed >> PLY_BITS


def PlyOf(packed: int) -> int:
  return packed & _PLY_MASK


def _Varint(value: int, out: bytearray) -> None:
  if value < 0:
    raise ValueError(f'Varints are unsigned: {value}')
  while value >= 0x80:
    out.append((value & 0x7f) | 0x80)
    value >>= 7
  out.append(value)


def EncodeVarint(value: int) -> bytes:
  out = bytearray()
  _Varint(value, out)
  return bytes(out)


def DecodeVarint(data: bytes, offset: int) -> tuple[int, int]:
  """Decode one varint at `offset`. Returns (value, next_offset)."""
  value: int = 0
  shift: int = 0
  while True:
    if offset >= len(data):
      raise PostingsError('Truncated varint')
    byte: int = data[offset]
    offset += 1
    value |= (byte & 0x7f) << shift
    if not byte & 0x80:
      return (value, offset)
    shift += 7


class CompressedPostings:
  """Block compressed, delta encoded sorted sequence of packed occurrences."""

  def __init__(self, data: bytes) -> None:
    """Constructor. `data` is the encoded blob (see module docs); only the block table is parsed."""
    self._data: bytes = bytes(data)
    self._count, offset = DecodeVarint(self._data, 0)
    n_blocks, offset = DecodeVarint(self._data, offset)
    if n_blocks != (self._count + BLOCK_SIZE - 1) // BLOCK_SIZE:
      raise PostingsError(f'Corrupt postings: {self._count} values in {n_blocks} blocks')
    self._firsts: list[int] = []
    lengths: list[int] = []
    for _ in range(n_blocks):
      first, offset = DecodeVarint(self._data, offset)
      length, offset = DecodeVarint(self._data, offset)
      self._firsts.append(first)
      lengths.append(length)
    self._starts: list[int] = []
    for length in lengths:
      self._starts.append(offset)
      offset += length
    if offset != len(self._data):
      raise PostingsError(f'Corrupt postings: expected {offset} bytes, got {len(self._data)}')

  @staticmethod
  def Encode(values: Iterable[int]) -> bytes:
    """Encode strictly increasing non-negative ints. Raises PostingsError if not increasing."""
    ordered: list[int] = list(values)
    table = bytearray()
    bodies = bytearray()
    n_blocks: int = 0
    for start in range(0, len(ordered), BLOCK_SIZE):
      block: list[int] = ordered[start:start + BLOCK_SIZE]
      body = bytearray()
      for previous, current in zip(block, block[1:]):
        if current <= previous:
          raise PostingsError(f'Postings must be strictly increasing: {previous} then {current}')
        _Varint(current - previous, body)
      if start and block[0] <= ordered[start - 1]:
        raise PostingsError(
            f'Postings must be strictly increasing: {ordered[start - 1]} then {block[0]}')
      _Varint(block[0], table)
      _Varint(len(body), table)
      bodies.extend(body)
      n_blocks += 1
    header = bytearray()
    _Varint(len(ordered), header)
    _Varint(n_blocks, header)
    return bytes(header + table + bodies)

  @property
  def data(self) -> bytes:
    return self._data

  def __len__(self) -> int:
    return self._count

  def _DecodeBlock(self, block: int) -> list[int]:
    values: list[int] = [self._firsts[block]]
    n_values: int = min(BLOCK_SIZE, self._count - block * BLOCK_SIZE)
    offset: int = self._starts[block]
    for _ in range(n_values - 1):
      delta, offset = DecodeVarint(self._data, offset)
      values.append(values[-1] + delta)
    return values

  def __iter__(self) -> Iterator[int]:
    for block in range(len(self._firsts)):
      yield from self._DecodeBlock(block)

  def FindBlock(self, value: int) -> Optional[int]:
    """Index of the only block that may hold `value`, or None if `value` precedes everything."""
    block: int = bisect.bisect_right(self._firsts, value) - 1
    return block if block >= 0 else None

  def Find(self, value: int) -> Optional[int]:
    """Position of `value` in the sequence, or None if absent."""
    block: Optional[int] = self.FindBlock(value)
    if block is None:
      return None
    values: list[int] = self._DecodeBlock(block)
    i: int = bisect.bisect_left(values, value)
    if i < len(values) and values[i] == value:
      return block * BLOCK_SIZE + i
    return None

  def __contains__(self, value: object) -> bool:
    return isinstance(value, int) and self.Find(value) is not None


class PostingsList:
  """Immutable sorted list of packed occurrences. Iterating gives Occurrence objects."""

  __slots__ = ('_packed',)

  def __init__(self, packed: Iterable[int] = (), presorted: bool = False) -> None:
    """Constructor.

    Args:
      packed: packed occurrences
      presorted: (default False) if True, `packed` is trusted to be strictly increasing
    """
    values: tuple[int, ...] = tuple(packed)
    if not presorted:
      values = tuple(sorted(set(values)))
    self._packed: tuple[int, ...] = values

  @classmethod
  def FromOccurrences(cls, occurrences: Iterable[Occurrence]) -> 'PostingsList':
    return cls(Pack(g, p) for g, p in occurrences)

  @classmethod
  def Decode(cls, data: bytes) -> 'PostingsList':
    return cls(CompressedPostings(data), presorted=True)

  def Encode(self) -> bytes:
    return CompressedPostings.Encode(self._packed)

  @property
  def packed(self) -> tuple[int, ...]:
    return self._packed

  def __len__(self) -> int:
    return len(self._packed)

  def __bool__(self) -> bool:
    return bool(self._packed)

  def __iter__(self) -> Iterator[Occurrence]:
    return (Unpack(p) for p in self._packed)

  def __contains__(self, occurrence: object) -> bool:
    if not isinstance(occurrence, tuple) or len(occurrence) != 2:
      return False
    packed: int = Pack(*occurrence)
    i: int = bisect.bisect_left(self._packed, packed)
    return i < len(self._packed) and self._packed[i] == packed

  def __eq__(self, other: object) -> bool:
    if isinstance(other, PostingsList):
      return self._packed == other._packed
    return NotImplemented

  def __hash__(self) -> int:
    return hash(self._packed)

  def __repr__(self) -> str:
    return f'PostingsList({[tuple(o) for o in self]!r})'


def Intersect(a: Iterable[int], b: Iterable[int]) -> Generator[int, None, None]:
  """Sorted intersection of two sorted streams (merge join)."""
  it_a, it_b = iter(a), iter(b)
  try:
    x, y = next(it_a), next(it_b)
    while True:
      if x == y:
        yield x
        x, y = next(it_a), next(it_b)
      elif x < y:
        x = next(it_a)
      else:
        y = next(it_b)
  except StopIteration:
    return


def IntersectAll(streams: list[Iterable[int]]) -> Iterable[int]:
  """Sorted intersection of many sorted streams; shortest lists should come first."""
  if not streams:
    raise ValueError('Cannot intersect zero streams')
  result: Iterable[int] = streams[0]
  for stream in streams[1:]:
    result = Intersect(result, stream)
  return result


def Union(*streams: Iterable[int]) -> Generator[int, None, None]:
  """Sorted, deduplicated union of sorted streams."""
  last: Optional[int] = None
  for value in heapq.merge(*streams):
    if value != last:
      yield value
      last = value


def Difference(a: Iterable[int], b: Iterable[int]) -> Generator[int, None, None]:
  """Sorted `a` minus sorted `b`."""
  it_b = iter(b)
  y: Optional[int] = next(it_b, None)
  for x in a:
    while y is not None and y < x:
      y = next(it_b, None)
    if y is None or x != y:
      yield x


def Merge(*streams: Iterable[int]) -> Generator[int, None, None]:
  """k-way merge of sorted streams that must be disjoint.

  Raises:
    PostingsError: if a value repeats (duplicate occurrence) or a stream is out of order
  """
  last: Optional[int] = None
  for value in heapq.merge(*streams):
    if last is not None and value <= last:
      raise PostingsError(f'Duplicate or out of order occurrence {Unpack(value)} in merge')
    yield value
    last = value
