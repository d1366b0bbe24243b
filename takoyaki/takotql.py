#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki Query Language (TQL): lexer, parser, semantic checks and query plans.

Grammar (keywords are case-insensitive, AND binds tighter than OR, NOT tightest):

  query    := or_expr EOF
  or_expr  := and_expr ('OR' and_expr)*
  and_expr := not_expr ('AND' not_expr)*
  not_expr := 'NOT' not_expr | primary
  primary  := '(' or_expr ')' | atom
  atom     := 'position' '(' STRING ')'
            | 'sequence' '(' STRING ')'
            | 'meta' '(' (IDENT | STRING) ',' STRING ',' (STRING | NUMBER) ')'

Examples:

  position("Nc3") AND sequence("e4 e5 ... Bb5")
  meta(result, "=", "1-0") AND NOT position("r1bqkbnr/pppp1ppp/2n5/4p3/4P3/5N2/PPPP1PPP/RNBQKB1R w KQkq - 2 3")
  sequence("1.e4 c5 2.Nf3 * 3.d4") OR (position("K=1 k=1 material=KRPvkr") AND meta("white elo", ">=", 2500))
"""

import dataclasses
import re
import typing
from typing import Any, NamedTuple, Optional

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takozobrist

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


DEFAULT_MAX_GAP: int = 8
DEFAULT_CANCEL_CHECK_EVERY: int = 1000
DEFAULT_REPLAY_CACHE_GAMES: int = 64

META_OPERATORS: tuple[str, ...] = ('=', '!=', '<', '<=', '>', '>=', '~')
GAP: str = '...'
WILDCARD: str = '*'

_SAN: re.Pattern[str] = re.compile(
    r'^([NBRQK][a-h]?[1-8]?x?[a-h][1-8]|[a-h](x[a-h])?[1-8](=[NBRQ])?|O-O(-O)?)$')
_DISAMBIGUATED_SAN: re.Pattern[str] = re.compile(r'^[NBRQK]([a-h]|[1-8]|[a-h][1-8])x?[a-h][1-8]$')
_NUMBER: re.Pattern[str] = re.compile(r'-?\d+(\.\d+)?')
_IDENT: re.Pattern[str] = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_ESCAPES: dict[str, str] = {'n': '\n', 't': '\t'}


@dataclasses.dataclass(frozen=True)
class QueryConfig:
  """Query time knobs.

  Attributes:
    max_gap: most moves a '...' gap in a sequence can skip
    cancel_check_every: stream steps/verifications between cancellation checks
    replay_cache_games: games whose replay cursor the executor keeps
  """
  max_gap: int = DEFAULT_MAX_GAP
  cancel_check_every: int = DEFAULT_CANCEL_CHECK_EVERY
  replay_cache_games: int = DEFAULT_REPLAY_CACHE_GAMES

  def __post_init__(self) -> None:
    if self.max_gap < 0 or self.cancel_check_every < 1 or self.replay_cache_games < 1:
      raise ValueError(f'Invalid query config: {self!r}')


class QueryError(takobase.Error):
  """A query that cannot be compiled; `position` is the offset in the query text."""

  def __init__(self, message: str, position: int, text: str = '') -> None:
    self.message: str = message
    self.position: int = position
    self.line: int = text.count('\n', 0, position) + 1
    self.column: int = position - (text.rfind('\n', 0, position) + 1) + 1
    super().__init__(f'{message} at line {self.line}, column {self.column} (offset {position})')


class QuerySyntaxError(QueryError):
  """Malformed query text."""


class QuerySemanticError(QueryError):
  """Well formed query that does not make sense (impossible pattern, bad sequence, bad operator)."""


class Token(NamedTuple):
  kind: str  # IDENT, STRING, NUMBER, LPAREN, RPAREN, COMMA, EOF
  value: str
  position: int


def Tokenize(text: str) -> list[Token]:
  """Lexer. Raises QuerySyntaxError on bad characters or unterminated strings."""
  tokens: list[Token] = []
  i: int = 0
  while i < len(text):
    char: str = text[i]
    if char.isspace():
      i += 1
    elif char in '(),':
      tokens.append(Token({'(': 'LPAREN', ')': 'RPAREN', ',': 'COMMA'}[char], char, i))
      i += 1
    elif char in '"\'':
      start: int = i
      value: list[str] = []
      i += 1
      while True:
        if i >= len(text):
          raise QuerySyntaxError('Unterminated string', start, text)
        if text[i] == '\\':
          if i + 1 >= len(text):
            raise QuerySyntaxError('Unterminated string', start, text)
          value.append(_ESCAPES.get(text[i + 1], text[i + 1]))
          i += 2
        elif text[i] == char:
          i += 1
          break
        else:
          value.append(text[i])
          i += 1
      tokens.append(Token('STRING', ''.join(value), start))
    elif (match := _NUMBER.match(text, i)):
      tokens.append(Token('NUMBER', match.group(), i))
      i = match.end()
    elif (match := _IDENT.match(text, i)):
      tokens.append(Token('IDENT', match.group(), i))
      i = match.end()
    else:
      raise QuerySyntaxError(f'Unexpected character {char!r}', i, text)
  tokens.append(Token('EOF', '', len(text)))
  return tokens


# AST ##############################################################################################


@dataclasses.dataclass(frozen=True)
class PositionAtom:
  text: str
  position: int


@dataclasses.dataclass(frozen=True)
class SequenceAtom:
  text: str
  position: int


@dataclasses.dataclass(frozen=True)
class MetaAtom:
  key: str
  op: str
  value: str
  position: int
  op_position: int


@dataclasses.dataclass(frozen=True)
class And:
  children: tuple['Node', ...]


@dataclasses.dataclass(frozen=True)
class Or:
  children: tuple['Node', ...]


@dataclasses.dataclass(frozen=True)
class Not:
  child: 'Node'


Node = typing.Union[PositionAtom, SequenceAtom, MetaAtom, And, Or, Not]


class _Parser:
  """Recursive descent parser over the token list."""

  def __init__(self, text: str) -> None:
    self.text: str = text
    self.tokens: list[Token] = Tokenize(text)
    self.i: int = 0
    self.open_parens: list[int] = []  # positions of '(' not yet closed

  @property
  def token(self) -> Token:
    return self.tokens[self.i]

  def _IsKeyword(self, keyword: str) -> bool:
    return self.token.kind == 'IDENT' and self.token.value.upper() == keyword

  def _Fail(self, expected: str) -> QuerySyntaxError:
    if self.token.kind == 'EOF' and self.open_parens:
      return QuerySyntaxError('Unclosed parenthesis', self.open_parens[-1], self.text)
    found: str = 'end of query' if self.token.kind == 'EOF' else repr(self.token.value)
    return QuerySyntaxError(f'Expected {expected}, found {found}', self.token.position, self.text)

  def _Expect(self, kind: str, expected: str) -> Token:
    if self.token.kind != kind:
      raise self._Fail(expected)
    token: Token = self.token
    self.i += 1
    if kind == 'LPAREN':
      self.open_parens.append(token.position)
    elif kind == 'RPAREN':
      self.open_parens.pop()
    return token

  def Parse(self) -> Node:
    if self.token.kind == 'EOF':
      raise QuerySyntaxError('Empty query', 0, self.text)
    node: Node = self._Or()
    if self.token.kind != 'EOF':
      if self.token.kind == 'RPAREN':
        raise QuerySyntaxError('Unbalanced closing parenthesis', self.token.position, self.text)
      raise self._Fail("'AND', 'OR' or end of query")
    return node

  def _Or(self) -> Node:
    children: list[Node] = [self._And()]
    while self._IsKeyword('OR'):
      self.i += 1
      children.append(self._And())
    if len(children) == 1:
      return children[0]
    return Or(tuple(c for child in children for c in (child.children if isinstance(child, Or) else (child,))))

  def _And(self) -> Node:
    children: list[Node] = [self._Not()]
    while self._IsKeyword('AND'):
      self.i += 1
      children.append(self._Not())
    if len(children) == 1:
      return children[0]
    return And(tuple(c for child in children for c in (child.children if isinstance(child, And) else (child,))))

  def _Not(self) -> Node:
    if self._IsKeyword('NOT'):
      self.i += 1
      child: Node = self._Not()
      return child.child if isinstance(child, Not) else Not(child)
    return self._Primary()

  def _Primary(self) -> Node:
    if self.token.kind == 'LPAREN':
      self._Expect('LPAREN', "'('")
      node: Node = self._Or()
      self._Expect('RPAREN', "')'")
      return node
    if self.token.kind != 'IDENT':
      raise self._Fail('an atom or \'(\'')
    name: Token = self.token
    kind: str = name.value.lower()
    if kind not in ('position', 'sequence', 'meta'):
      if name.value.upper() in ('AND', 'OR', 'NOT'):
        raise self._Fail('an atom or \'(\'')
      raise QuerySyntaxError(f'Unknown atom {name.value!r}', name.position, self.text)
    self.i += 1
    self._Expect('LPAREN', "'('")
    if kind == 'meta':
      if self.token.kind not in ('IDENT', 'STRING'):
        raise self._Fail('a metadata key')
      key: Token = self.token
      self.i += 1
      self._Expect('COMMA', "','")
      op: Token = self._Expect('STRING', 'an operator string')
      self._Expect('COMMA', "','")
      if self.token.kind not in ('STRING', 'NUMBER'):
        raise self._Fail('a string or number value')
      value: Token = self.token
      self.i += 1
      self._Expect('RPAREN', "')'")
      return MetaAtom(key.value, op.value, value.value, name.position, op.position)
    argument: Token = self._Expect('STRING', 'a string')
    self._Expect('RPAREN', "')'")
    if kind == 'position':
      return PositionAtom(argument.value, argument.position)
    return SequenceAtom(argument.value, argument.position)


def Parse(text: str) -> Node:
  """TQL text -> AST. Raises QuerySyntaxError."""
  return _Parser(text).Parse()


# PLAN #############################################################################################


@dataclasses.dataclass(frozen=True)
class ExactLookup:
  """Exact position: lookup the key, verify identity (collisions)."""
  key: takozobrist.Zobrist
  target: takoboard.BoardState

  def Describe(self) -> str:
    return f'ExactLookup({self.key}, {self.target.identity!r})'


@dataclasses.dataclass(frozen=True)
class PatternLookup:
  """Partial position: AND of OR feature groups gives candidates, verify the pattern."""
  groups: tuple[frozenset[takoencode.PatternFeature], ...]
  pattern: takoencode.Pattern

  def Describe(self) -> str:
    groups: str = ' AND '.join(
        '(' + ' OR '.join(sorted(str(f) for f in g)) + ')' if len(g) > 1 else str(next(iter(g)))
        for g in self.groups) or '<all positions>'
    return f'PatternLookup({groups}; verify {str(self.pattern)!r})'


@dataclasses.dataclass(frozen=True)
class SequenceLookup:
  """Move sequence: runs of moves ('*' == any move) separated by gaps of 0..max_gap moves.

  Attributes:
    segments: the runs; each move is SAN (maybe with a redundant origin), or None for a wildcard
    max_gap: most moves a gap can skip
    lookup: sequence key looked up for candidate begin plies (None == all plies)
    lookup_offset: where the looked up moves start inside the first run
    lookup_length: how many moves the lookup covers
  """
  segments: tuple[tuple[Optional[str], ...], ...]
  max_gap: int
  lookup: Optional[str]
  lookup_offset: int
  lookup_length: int
  text: str

  @property
  def fixed_length(self) -> Optional[int]:
    """Number of moves matched, if the sequence has no gaps."""
    return len(self.segments[0]) if len(self.segments) == 1 else None

  @property
  def lossless(self) -> bool:
    """True if the index lookup alone answers the atom (no verification)."""
    return (self.fixed_length is not None and self.lookup is not None and
            self.lookup_offset == 0 and self.lookup_length == len(self.segments[0]))

  def Describe(self) -> str:
    lookup: str = (f'lookup {self.lookup!r} at +{self.lookup_offset}'
                   if self.lookup is not None else 'all plies')
    return (f'SequenceLookup({self.text!r}; {lookup}; '
            f'{"exact" if self.lossless else "verify by replay"})')


@dataclasses.dataclass(frozen=True)
class MetaFilter:
  """All plies of the games whose metadata `key` compares `op` to `value`."""
  key: str
  op: str
  value: str

  def Matches(self, metadata: dict[str, str]) -> bool:
    """Compare. Numeric if both sides are plain decimals, '~' is a case-insensitive substring."""
    actual: Optional[str] = metadata.get(self.key)
    if actual is None:
      return self.op == '!='
    if self.op == '~':
      return self.value.lower() in actual.lower()
    left: Any = actual
    right: Any = self.value
    if _NUMBER.fullmatch(actual) and _NUMBER.fullmatch(self.value):
      left, right = float(actual), float(self.value)
    return {
        '=': lambda a, b: a == b, '!=': lambda a, b: a != b,
        '<': lambda a, b: a < b, '<=': lambda a, b: a <= b,
        '>': lambda a, b: a > b, '>=': lambda a, b: a >= b,
    }[self.op](left, right)

  def Describe(self) -> str:
    return f'MetaFilter({self.key} {self.op} {self.value!r})'


@dataclasses.dataclass(frozen=True)
class Universe:
  """Every indexed occurrence."""

  def Describe(self) -> str:
    return 'Universe'


@dataclasses.dataclass(frozen=True)
class Intersect:
  children: tuple['PlanNode', ...]

  def Describe(self) -> str:
    return 'Intersect'


@dataclasses.dataclass(frozen=True)
class Union:
  children: tuple['PlanNode', ...]

  def Describe(self) -> str:
    return 'Union'


@dataclasses.dataclass(frozen=True)
class Difference:
  left: 'PlanNode'
  right: 'PlanNode'

  def Describe(self) -> str:
    return 'Difference'


@dataclasses.dataclass(frozen=True)
class Filter:
  """Verification point: pending checks of the child stream are run here, lazily."""
  child: 'PlanNode'

  def Describe(self) -> str:
    return 'Filter(verify)'


@dataclasses.dataclass(frozen=True)
class Limit:
  child: 'PlanNode'
  count: int

  def Describe(self) -> str:
    return f'Limit({self.count})'


PlanNode = typing.Union[
    ExactLookup, PatternLookup, SequenceLookup, MetaFilter, Universe,
    Intersect, Union, Difference, Filter, Limit]
LEAF_NODES: tuple[type, ...] = (ExactLookup, PatternLookup, SequenceLookup, MetaFilter, Universe)


def Children(node: PlanNode) -> tuple[PlanNode, ...]:
  """Child plan nodes of `node`, in order."""
  if isinstance(node, (Intersect, Union)):
    return node.children
  if isinstance(node, Difference):
    return (node.left, node.right)
  if isinstance(node, (Filter, Limit)):
    return (node.child,)
  return ()


@dataclasses.dataclass(frozen=True)
class QueryPlan:
  """A compiled query. Never mutated; WithLimit() gives a new plan."""
  root: PlanNode
  text: str
  index_config: takoindex.IndexConfig
  query_config: QueryConfig

  def WithLimit(self, count: int) -> 'QueryPlan':
    if count < 0:
      raise ValueError(f'Invalid limit {count}')
    root: PlanNode = self.root.child if isinstance(self.root, Limit) else self.root
    return dataclasses.replace(self, root=Limit(root, count))

  def Explain(self) -> str:
    """Indented rendering of the plan tree."""
    lines: list[str] = []

    def _Render(node: PlanNode, depth: int) -> None:
      lines.append('  ' * depth + node.Describe())
      for child in Children(node):
        _Render(child, depth + 1)

    _Render(self.root, 0)
    return '\n'.join(lines)


def IsDisambiguated(move: str) -> bool:
  """Piece move with an origin file and/or rank, like 'Ngf3': only a board can tell its canonical SAN."""
  return bool(_DISAMBIGUATED_SAN.match(move))


def ParseSequence(
    text: str, position: int = 0, query_text: str = '') -> list[list[Optional[str]]]:
  """Sequence text -> runs of moves (None == wildcard), split at '...' gaps.

  Raises:
    QuerySemanticError: empty sequence, bad move, gap not between 2 runs
  """
  segments: list[list[Optional[str]]] = [[]]
  for match in re.finditer(r'\S+', text):
    raw: str = match.group()
    offset: int = position + 1 + match.start()
    if raw == GAP:
      if not segments[-1]:
        raise QuerySemanticError('A gap must be between two runs of moves', offset, query_text)
      segments.append([])
      continue
    if raw == WILDCARD:
      segments[-1].append(None)
      continue
    move: str = takoboard.NormalizeMoveText(raw)
    if not move:
      continue  # move numbers
    if not _SAN.match(move):
      raise QuerySemanticError(f'Invalid move {raw!r} in sequence', offset, query_text)
    segments[-1].append(move)
  if segments == [[]]:
    raise QuerySemanticError('Empty sequence', position, query_text)
  if not segments[-1]:
    raise QuerySemanticError('A gap must be between two runs of moves', position, query_text)
  return segments


def _LowerSequence(
    atom: SequenceAtom, text: str, index_config: takoindex.IndexConfig,
    query_config: QueryConfig) -> SequenceLookup:
  segments: list[list[Optional[str]]] = ParseSequence(atom.text, atom.position, text)
  # longest run of concrete moves in the first segment is what we look up;
  # disambiguated moves ('Ngf3') are never looked up, they are resolved by replay
  best: tuple[int, int] = (0, 0)  # (length, offset)
  run_start: int = 0
  for i, move in enumerate(segments[0] + [None]):
    if move is None or IsDisambiguated(move):
      if i - run_start > best[0]:
        best = (i - run_start, run_start)
      run_start = i + 1
  lookup: Optional[str] = None
  length: int = min(best[0], index_config.max_sequence_length)
  if length:
    lookup = ' '.join(m for m in segments[0][best[1]:best[1] + length] if m is not None)
  return SequenceLookup(
      segments=tuple(tuple(s) for s in segments), max_gap=query_config.max_gap,
      lookup=lookup, lookup_offset=best[1] if lookup is not None else 0,
      lookup_length=length, text=atom.text)


def _LowerPosition(atom: PositionAtom, text: str, index_config: takoindex.IndexConfig) -> PlanNode:
  try:
    parsed: typing.Union[takoboard.BoardState, takoencode.Pattern] = takoencode.ParsePosition(atom.text)
  except takoencode.PatternError as err:
    raise QuerySemanticError(
        f'Invalid position pattern: {err.message}', atom.position + 1 + err.offset, text) from err
  if isinstance(parsed, takoboard.BoardState):
    return ExactLookup(takoencode.ExactKeyOf(parsed), parsed)
  return PatternLookup(parsed.RequiredFeatureGroups(index_config.pattern_features), parsed)


def _LowerMeta(atom: MetaAtom, text: str) -> MetaFilter:
  if atom.op not in META_OPERATORS:
    raise QuerySemanticError(
        f'Invalid meta operator {atom.op!r}, use one of {", ".join(META_OPERATORS)}',
        atom.op_position, text)
  key: str = atom.key.strip().lower()
  if not key:
    raise QuerySemanticError('Empty meta key', atom.position, text)
  return MetaFilter(key, atom.op, atom.value)


def Lower(
    node: Node, text: str, index_config: takoindex.IndexConfig, query_config: QueryConfig) -> PlanNode:
  """AST -> plan tree (without the root Filter). Raises QuerySemanticError."""
  if isinstance(node, PositionAtom):
    return _LowerPosition(node, text, index_config)
  if isinstance(node, SequenceAtom):
    return _LowerSequence(node, text, index_config, query_config)
  if isinstance(node, MetaAtom):
    return _LowerMeta(node, text)
  if isinstance(node, Or):
    return Union(tuple(Lower(c, text, index_config, query_config) for c in node.children))
  if isinstance(node, Not):
    return Difference(Universe(), Lower(node.child, text, index_config, query_config))
  # AND: positives are intersected, NOT children subtracted
  positives: list[PlanNode] = [
      Lower(c, text, index_config, query_config) for c in node.children if not isinstance(c, Not)]
  negatives: list[PlanNode] = [
      Lower(c.child, text, index_config, query_config) for c in node.children if isinstance(c, Not)]
  result: PlanNode
  if not positives:
    result = Universe()
  elif len(positives) == 1:
    result = positives[0]
  else:
    result = Intersect(tuple(positives))
  if negatives:
    result = Difference(result, negatives[0] if len(negatives) == 1 else Union(tuple(negatives)))
  return result


def Compile(
    text: str, index_config: Optional[takoindex.IndexConfig] = None,
    query_config: Optional[QueryConfig] = None) -> QueryPlan:
  """TQL text -> QueryPlan.

  Args:
    text: the query
    index_config: (default None == defaults) configuration of the index the plan will run on
    query_config: (default None == defaults) query knobs

  Raises:
    QuerySyntaxError: malformed text
    QuerySemanticError: impossible pattern, bad sequence or bad meta operator
  """
  index_config = index_config or takoindex.IndexConfig()
  query_config = query_config or QueryConfig()
  ast: Node = Parse(text)
  return QueryPlan(
      root=Filter(Lower(ast, text, index_config, query_config)), text=text,
      index_config=index_config, query_config=query_config)
