#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki position encoder: exact keys, lossy pattern features, position patterns.

A pattern feature is a coarse fact about a position ("white knight on c3",
"material is KQRRvkqr", ...). Many positions share a feature, so features only
produce candidates: every candidate must be re-checked with Pattern.Matches().

Pattern features are rendered as 'kind:value' strings, kinds are:
  ps    piece on square, value like 'Nc3' (white) or 'nc6' (black)
  occ   square occupied by any piece, value like 'c3'
  cnt   at least n pieces of a kind, value like 'N2' (two or more white knights)
  mat   exact material signature, value like 'KQRvkqr'
  turn  side to move, 'w' or 'b'
"""

import dataclasses
import re
from typing import Iterable, NamedTuple, Optional, Union

import chess

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takozobrist

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


FEATURE_KINDS: tuple[str, ...] = ('ps', 'occ', 'cnt', 'mat', 'turn')
ALL_FEATURE_KINDS: frozenset[str] = frozenset(FEATURE_KINDS)
BASELINE_FEATURE_KINDS: frozenset[str] = frozenset({'ps', 'mat'})

# material signature order: white pieces, 'v', black pieces
WHITE_SYMBOLS: str = 'KQRBNP'
BLACK_SYMBOLS: str = 'kqrbnp'
PIECE_SYMBOLS: str = WHITE_SYMBOLS + BLACK_SYMBOLS
ANY_PIECE: frozenset[str] = frozenset(PIECE_SYMBOLS)
EMPTY_SQUARE: str = '.'

_SQUARE_TOKEN: re.Pattern[str] = re.compile(
    r'^(\[(?P<alts>[KQRBNPkqrbnp.]+)\]|(?P<one>[KQRBNPkqrbnp*?.-]))(?P<square>[a-h][1-8])$')
_MATERIAL_TOKEN: re.Pattern[str] = re.compile(r'^(?P<symbol>[KQRBNPkqrbnp])(?P<op>==|=|>=|<=|>|<)(?P<n>\d+)$')
_SIGNATURE_TOKEN: re.Pattern[str] = re.compile(r'^material=(?P<signature>[KQRBNPkqrbnpv]+)$', re.IGNORECASE)
_CASTLING_FIELD: re.Pattern[str] = re.compile(r'^(-|[KQkqA-Ha-h]+)$')
_MAX_COUNT: int = 64


class PatternError(takobase.Error):
  """Structural problem in a position pattern; `offset` is where, inside the pattern text."""

  def __init__(self, message: str, offset: int = 0) -> None:
    super().__init__(f'{message} (at offset {offset})')
    self.message: str = message
    self.offset: int = offset


class PatternFeature(NamedTuple):
  """One lossy position descriptor."""
  kind: str
  value: str

  def __str__(self) -> str:
    return f'{self.kind}:{self.value}'

  def Key(self) -> bytes:
    """Index key bytes."""
    return str(self).encode('utf-8')

  @classmethod
  def FromKey(cls, key: Union[bytes, str]) -> 'PatternFeature':
    """Inverse of Key() (also accepts the 'kind:value' string)."""
    text: str = key.decode('utf-8') if isinstance(key, bytes) else key
    kind, sep, value = text.partition(':')
    if not sep or kind not in ALL_FEATURE_KINDS or not value:
      raise ValueError(f'Invalid pattern feature: {text!r}')
    return cls(kind, value)


def ExactKeyOf(state: takoboard.BoardState) -> takozobrist.Zobrist:
  """Exact position key (the canonical key)."""
  return takoboard.CanonicalKey(state)


def MaterialCounts(state: takoboard.BoardState) -> dict[str, int]:
  """{piece_symbol: count} over all 12 symbols (zeros included)."""
  counts: dict[str, int] = {s: 0 for s in PIECE_SYMBOLS}
  for piece in state.Placement().values():
    counts[piece.symbol()] += 1
  return counts


def MaterialSignature(counts: dict[str, int]) -> str:
  """Canonical signature: 'KQRRBBNNPPPPPPPPvkqrrbbnnpppppppp' for the starting material."""
  return (''.join(s * counts.get(s, 0) for s in WHITE_SYMBOLS) + 'v' +
          ''.join(s * counts.get(s, 0) for s in BLACK_SYMBOLS))


def _SideName(color: chess.Color) -> str:
  return 'w' if color == chess.WHITE else 'b'


def PatternFeaturesOf(
    state: takoboard.BoardState,
    kinds: Iterable[str] = ALL_FEATURE_KINDS) -> set[PatternFeature]:
  """Every feature `state` exhibits, for the enabled feature `kinds`."""
  kinds = frozenset(kinds)
  features: set[PatternFeature] = set()
  placement: dict[chess.Square, chess.Piece] = state.Placement()
  for square, piece in placement.items():
    if 'ps' in kinds:
      features.add(PatternFeature('ps', f'{piece.symbol()}{chess.square_name(square)}'))
    if 'occ' in kinds:
      features.add(PatternFeature('occ', chess.square_name(square)))
  if 'cnt' in kinds or 'mat' in kinds:
    counts: dict[str, int] = MaterialCounts(state)
    if 'cnt' in kinds:
      for symbol, n in counts.items():
        features.update(PatternFeature('cnt', f'{symbol}{i}') for i in range(1, n + 1))
    if 'mat' in kinds:
      features.add(PatternFeature('mat', MaterialSignature(counts)))
  if 'turn' in kinds:
    features.add(PatternFeature('turn', _SideName(state.turn)))
  return features


@dataclasses.dataclass(frozen=True)
class SquareConstraint:
  """Allowed contents of one square: piece symbols and/or EMPTY_SQUARE."""
  square: chess.Square
  allowed: frozenset[str]

  def Matches(self, piece: Optional[chess.Piece]) -> bool:
    return (piece.symbol() if piece else EMPTY_SQUARE) in self.allowed

  def __str__(self) -> str:
    name: str = chess.square_name(self.square)
    if self.allowed == ANY_PIECE:
      return f'*{name}'
    if self.allowed == {EMPTY_SQUARE}:
      return f'-{name}'
    if len(self.allowed) == 1:
      return f'{next(iter(self.allowed))}{name}'
    return f'[{"".join(sorted(self.allowed))}]{name}'


@dataclasses.dataclass(frozen=True)
class Pattern:
  """A partial position predicate.

  Attributes:
    squares: square constraints, sorted by square
    turn: side to move, or None for either
    material: ((symbol, min, max), ...) for every bounded piece symbol, max None == unbounded
    text: the source text
  """
  squares: tuple[SquareConstraint, ...]
  turn: Optional[chess.Color]
  material: tuple[tuple[str, int, Optional[int]], ...]
  text: str

  @property
  def signature(self) -> Optional[str]:
    """The exact material signature, if the bounds pin all 12 piece counts."""
    bounds: dict[str, tuple[int, Optional[int]]] = {s: (lo, hi) for s, lo, hi in self.material}
    if len(bounds) != len(PIECE_SYMBOLS) or any(lo != hi for lo, hi in bounds.values()):
      return None
    return MaterialSignature({s: lo for s, (lo, _) in bounds.items()})

  def Matches(self, state: takoboard.BoardState) -> bool:
    """True if `state` satisfies every constraint (this is the ground truth check)."""
    if self.turn is not None and state.turn != self.turn:
      return False
    for constraint in self.squares:
      if not constraint.Matches(state.PieceAt(constraint.square)):
        return False
    if self.material:
      counts: dict[str, int] = MaterialCounts(state)
      for symbol, low, high in self.material:
        if counts[symbol] < low or (high is not None and counts[symbol] > high):
          return False
    return True

  def RequiredFeatureGroups(
      self, kinds: Iterable[str] = ALL_FEATURE_KINDS) -> tuple[frozenset[PatternFeature], ...]:
    """Feature groups every matching state exhibits: AND of groups, OR inside a group.

    Only features of enabled `kinds` are used. Constraints that no enabled kind
    can express produce no group (they are left to verification).
    """
    kinds = frozenset(kinds)
    groups: set[frozenset[PatternFeature]] = set()
    for constraint in self.squares:
      if EMPTY_SQUARE in constraint.allowed:
        continue  # emptiness is not indexed
      name: str = chess.square_name(constraint.square)
      if 'ps' in kinds and (constraint.allowed != ANY_PIECE or 'occ' not in kinds):
        groups.add(frozenset(PatternFeature('ps', f'{s}{name}') for s in constraint.allowed))
      elif 'occ' in kinds:
        groups.add(frozenset({PatternFeature('occ', name)}))
    if self.turn is not None and 'turn' in kinds:
      groups.add(frozenset({PatternFeature('turn', _SideName(self.turn))}))
    signature: Optional[str] = self.signature
    if signature is not None and 'mat' in kinds:
      groups.add(frozenset({PatternFeature('mat', signature)}))
    if 'cnt' in kinds:
      for symbol, low, _ in self.material:
        if low > 0:
          groups.add(frozenset({PatternFeature('cnt', f'{symbol}{low}')}))
    return tuple(sorted(groups, key=lambda g: sorted(str(f) for f in g)))

  def __str__(self) -> str:
    return self.text


class _PatternBuilder:
  """Accumulates constraints while parsing, checking consistency as it goes."""

  def __init__(self, text: str) -> None:
    self.text: str = text
    self.squares: dict[chess.Square, SquareConstraint] = {}
    self.offsets: dict[chess.Square, int] = {}
    self.turn: Optional[chess.Color] = None
    self.low: dict[str, int] = {}
    self.high: dict[str, int] = {}
    self.has_signature: bool = False

  def Square(self, square: chess.Square, allowed: frozenset[str], offset: int) -> None:
    if square in self.squares:
      raise PatternError(f'Square {chess.square_name(square)} constrained twice', offset)
    self.squares[square] = SquareConstraint(square, allowed)
    self.offsets[square] = offset

  def Turn(self, color: chess.Color, offset: int) -> None:
    if self.turn is not None:
      raise PatternError('Side to move given twice', offset)
    self.turn = color

  def Bound(self, symbol: str, op: str, n: int, offset: int) -> None:
    low, high = {
        '=': (n, n), '==': (n, n), '>=': (n, None), '>': (n + 1, None),
        '<=': (0, n), '<': (0, n - 1)}[op]
    if high is not None and high < 0:
      raise PatternError(f'Impossible material count {symbol}{op}{n}', offset)
    if low > _MAX_COUNT:
      raise PatternError(f'Impossible material count {symbol}{op}{n}', offset)
    self.low[symbol] = max(self.low.get(symbol, 0), low)
    if high is not None:
      self.high[symbol] = min(self.high.get(symbol, high), high)
    if symbol in self.high and self.low.get(symbol, 0) > self.high[symbol]:
      raise PatternError(f'Contradictory material constraints for {symbol!r}', offset)

  def Signature(self, signature: str, offset: int) -> None:
    if self.has_signature:
      raise PatternError('Material signature given twice', offset)
    self.has_signature = True
    if signature.count('v') > 1 or signature.count('V') > 1:
      raise PatternError(f'Invalid material signature {signature!r}', offset)
    counts: dict[str, int] = {s: 0 for s in PIECE_SYMBOLS}
    for symbol in signature.replace('v', '').replace('V', ''):
      counts[symbol] += 1
    for symbol, n in counts.items():
      self.Bound(symbol, '=', n, offset)

  def Build(self) -> Pattern:
    # pieces on squares must fit the material upper bounds
    forced: dict[str, int] = {}
    for square, constraint in self.squares.items():
      offset: int = self.offsets[square]
      if not any(s == EMPTY_SQUARE or self.high.get(s, 1) > 0 for s in constraint.allowed):
        raise PatternError(
            f'No piece allowed on {chess.square_name(square)} fits the material constraints', offset)
      if len(constraint.allowed) != 1 or EMPTY_SQUARE in constraint.allowed:
        continue
      symbol: str = next(iter(constraint.allowed))
      forced[symbol] = forced.get(symbol, 0) + 1
      if symbol in self.high and forced[symbol] > self.high[symbol]:
        raise PatternError(
            f'{forced[symbol]} squares require {symbol!r} but material allows at most '
            f'{self.high[symbol]}', offset)
    symbols: list[str] = sorted(set(self.low) | set(self.high), key=PIECE_SYMBOLS.index)
    return Pattern(
        squares=tuple(self.squares[s] for s in sorted(self.squares)),
        turn=self.turn,
        material=tuple((s, self.low.get(s, 0), self.high.get(s)) for s in symbols),
        text=self.text)


def _ParseBoardField(builder: _PatternBuilder, board: str, offset: int) -> bool:
  """Parse a FEN-like board field into `builder`. Returns True if it has no wildcards."""
  ranks: list[str] = board.split('/')
  if len(ranks) != 8:
    raise PatternError(f'Board pattern must have 8 ranks, got {len(ranks)}', offset)
  exact: bool = True
  position: int = offset
  for rank_index, rank in enumerate(ranks):
    file: int = 0
    for char in rank:
      if file >= 8:
        raise PatternError(f'Rank {8 - rank_index} has more than 8 squares', position)
      square: chess.Square = chess.square(file, 7 - rank_index)
      if char.isdigit():
        n_empty: int = int(char)
        if not 1 <= n_empty <= 8 - file:
          raise PatternError(f'Invalid empty run {char!r} in rank {8 - rank_index}', position)
        for i in range(n_empty):
          builder.Square(square + i, frozenset({EMPTY_SQUARE}), position)
        file += n_empty
      elif char in PIECE_SYMBOLS:
        builder.Square(square, frozenset({char}), position)
        file += 1
      elif char == '*':
        builder.Square(square, ANY_PIECE, position)
        exact = False
        file += 1
      elif char == '?':
        exact = False
        file += 1
      else:
        raise PatternError(f'Invalid board character {char!r}', position)
      position += 1
    if file != 8:
      raise PatternError(f'Rank {8 - rank_index} has {file} squares, expected 8', position)
    position += 1  # the '/'
  return exact


def _ParseToken(builder: _PatternBuilder, token: str, offset: int) -> None:
  """Parse one pattern token into `builder`."""
  if token in ('w', 'b'):
    builder.Turn(chess.WHITE if token == 'w' else chess.BLACK, offset)
    return
  if (match := _SQUARE_TOKEN.match(token)):
    square: chess.Square = chess.parse_square(match.group('square'))
    allowed: frozenset[str]
    if match.group('alts'):
      allowed = frozenset(match.group('alts'))
    else:
      one: str = match.group('one')
      allowed = {
          '*': ANY_PIECE,
          '?': ANY_PIECE | {EMPTY_SQUARE},
          '-': frozenset({EMPTY_SQUARE}),
          '.': frozenset({EMPTY_SQUARE}),
      }.get(one, frozenset({one}))
    builder.Square(square, allowed, offset)
    return
  if (match := _MATERIAL_TOKEN.match(token)):
    builder.Bound(match.group('symbol'), match.group('op'), int(match.group('n')), offset)
    return
  if (match := _SIGNATURE_TOKEN.match(token)):
    builder.Signature(match.group('signature'), offset)
    return
  raise PatternError(f'Unknown pattern token {token!r}', offset)


def ParsePosition(text: str) -> Union[takoboard.BoardState, Pattern]:
  """Parse a position argument.

  A full FEN (board without wildcards, side to move and castling field, plus
  optional e.p. and counters) gives an exact target BoardState. Anything else
  is parsed as a Pattern: an optional board field (8 ranks separated by '/',
  using piece letters, digits, '?' for anything and '*' for any piece) followed
  by tokens like 'Nc3', '[NB]c3', '-c3', '*c3', 'w', 'N=2', 'q>=1',
  'material=KQRkqr'.

  Raises:
    PatternError: on structural problems (offset relative to `text`)
  """
  tokens: list[tuple[int, str]] = [(m.start(), m.group()) for m in re.finditer(r'\S+', text)]
  if not tokens:
    raise PatternError('Empty position pattern', 0)
  builder = _PatternBuilder(text.strip())
  if '/' in tokens[0][1]:
    offset, board = tokens[0]
    exact: bool = _ParseBoardField(builder, board, offset)
    if (exact and len(tokens) >= 3 and tokens[1][1] in ('w', 'b') and
        _CASTLING_FIELD.match(tokens[2][1])):
      # a real FEN
      if len(tokens) > 6:
        raise PatternError(f'Too many FEN fields: {len(tokens)}', tokens[6][0])
      try:
        return takoboard.BoardState(chess.Board(' '.join(t for _, t in tokens)))
      except ValueError as err:
        raise PatternError(f'Malformed FEN: {err}', offset) from err
    tokens = tokens[1:]
  for offset, token in tokens:
    _ParseToken(builder, token, offset)
  return builder.Build()
