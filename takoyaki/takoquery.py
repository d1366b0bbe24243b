#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki query executor and query API.

Every plan node is evaluated as a lazy stream of (packed occurrence, requirement)
sorted by occurrence. The requirement is the verification still pending for that
occurrence (None if the node already knows it holds): set algebra combines
requirements (AND for intersections, OR for unions, AND NOT for differences) and
only the root Filter evaluates them, by replaying games. So verification only
ever runs for candidates that survived all of the set algebra, and only until the
limit is filled: all streams being sorted, nothing pulled later can come before
a result already confirmed.
"""

import collections
import heapq
import itertools
import logging
import threading
from typing import Callable, Generator, Iterable, Iterator, NamedTuple, Optional, Union

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takopostings
from takoyaki import takosource
from takoyaki import takotql

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


class QueryCancelledError(takobase.Error):
  """The query was cancelled through its CancellationToken."""


class CancellationToken:
  """Cooperative cancellation flag, safe to set from another thread."""

  def __init__(self) -> None:
    self._event = threading.Event()

  def Cancel(self) -> None:
    self._event.set()

  @property
  def cancelled(self) -> bool:
    return self._event.is_set()

  def Check(self) -> None:
    """Raises QueryCancelledError if cancelled."""
    if self._event.is_set():
      raise QueryCancelledError('Query cancelled')


class _Verify(NamedTuple):
  """Pending check of a lossy leaf, for one occurrence."""
  node: Union[takotql.ExactLookup, takotql.PatternLookup, takotql.SequenceLookup]


class _All(NamedTuple):
  requirements: tuple['Requirement', ...]


class _Any(NamedTuple):
  requirements: tuple['Requirement', ...]


class _Not(NamedTuple):
  requirement: 'Requirement'


Requirement = Union[None, _Verify, _All, _Any, _Not]
_Stream = Iterator[tuple[int, Requirement]]


def _And(a: Requirement, b: Requirement) -> Requirement:
  if a is None:
    return b
  if b is None:
    return a
  return _All((a, b))


class _ReplayCursor:
  """Replay state of one game: the start (with the whole line) and a forward moving cursor."""

  def __init__(self, start: takoboard.BoardState) -> None:
    self.start: takoboard.BoardState = start
    self.moves: tuple[str, ...] = start.line
    self.state: takoboard.BoardState = start.WithLine(())
    self.ply: int = 0

  def StateAt(self, ply: int) -> takoboard.BoardState:
    if ply < self.ply:
      self.state, self.ply = self.start.WithLine(()), 0
    while self.ply < ply:
      self.state = takoboard.Apply(self.state, self.moves[self.ply])
      self.ply += 1
    return self.state

  def Resolves(self, ply: int, move: str) -> bool:
    """Is SAN `move` (any origin disambiguation allowed) the move played at `ply`?"""
    board = self.StateAt(ply).Board()
    try:
      return takoboard.ParseMove(board, move) == takoboard.ParseMove(board, self.moves[ply], ply=ply)
    except takoboard.IngestError:
      return False


class _ReplayCache:
  """LRU of replay cursors, so each game is fetched from the move source once per query."""

  def __init__(self, source: takosource.MoveSource, snapshot: takoindex.Snapshot, max_games: int) -> None:
    self._source: takosource.MoveSource = source
    self._snapshot: takoindex.Snapshot = snapshot
    self._max_games: int = max_games
    self._cursors: collections.OrderedDict[int, _ReplayCursor] = collections.OrderedDict()
    self.replays: int = 0

  def Cursor(self, game_id: int) -> _ReplayCursor:
    if game_id in self._cursors:
      self._cursors.move_to_end(game_id)
      return self._cursors[game_id]
    try:
      n_plies: int = self._snapshot.Game(game_id).n_plies
      start: takoboard.BoardState = self._source.Replay(game_id, 0, n_plies)
    except (KeyError, ValueError, takoboard.IngestError) as err:
      raise takoindex.IndexUnavailableError(
          f'Game {game_id} of the index cannot be replayed from the move source: {err}') from err
    if len(start.line) != n_plies:
      raise takoindex.IndexUnavailableError(
          f'Game {game_id} has {len(start.line)} plies in the move source, {n_plies} in the index')
    self.replays += 1
    cursor = _ReplayCursor(start)
    self._cursors[game_id] = cursor
    if len(self._cursors) > self._max_games:
      self._cursors.popitem(last=False)
    return cursor

  def StateAt(self, game_id: int, ply: int) -> takoboard.BoardState:
    return self.Cursor(game_id).StateAt(ply)


# (ply, move) -> is `move` the one played at `ply`? for moves not spelled as in the game
_MoveResolver = Callable[[int, str], bool]


def _RunMatches(
    moves: tuple[str, ...], begin: int, run: tuple[Optional[str], ...],
    resolve: Optional[_MoveResolver] = None) -> bool:
  """Does `run` (None == any move) match `moves` starting at index `begin`?"""
  if begin + len(run) > len(moves):
    return False
  for i, move in enumerate(run):
    if move is None or move == moves[begin + i]:
      continue
    if resolve is None or not takotql.IsDisambiguated(move) or not resolve(begin + i, move):
      return False
  return True


def SequenceEnds(
    moves: tuple[str, ...], begin: int,
    segments: tuple[tuple[Optional[str], ...], ...], max_gap: int,
    resolve: Optional[_MoveResolver] = None) -> set[int]:
  """Plies where a match of `segments` (runs separated by gaps of 0..max_gap moves) starting at `begin` ends.

  Moves are compared as text; `resolve` (if given) decides disambiguated moves that differ.
  """
  positions: set[int] = {begin}
  for n_segment, run in enumerate(segments):
    if n_segment:
      positions = {p + gap for p in positions for gap in range(max_gap + 1) if p + gap <= len(moves)}
    positions = {p + len(run) for p in positions if _RunMatches(moves, p, run, resolve)}
    if not positions:
      break
  return positions


class QueryExecutor:
  """Evaluates QueryPlans over one Snapshot, verifying through a MoveSource."""

  def __init__(
      self, snapshot: takoindex.Snapshot, source: takosource.MoveSource,
      query_config: Optional[takotql.QueryConfig] = None) -> None:
    self.snapshot: takoindex.Snapshot = snapshot
    self.source: takosource.MoveSource = source
    self.config: takotql.QueryConfig = query_config or takotql.QueryConfig()
    self._cache = _ReplayCache(source, snapshot, self.config.replay_cache_games)
    self._cancel: Optional[CancellationToken] = None
    self._steps: int = 0
    self.verifications: int = 0

  def _CheckCancel(self) -> None:
    if self._cancel is not None:
      self._cancel.Check()

  def _Tick(self) -> None:
    self._steps += 1
    if not self._steps % self.config.cancel_check_every:
      self._CheckCancel()

  def _Ticking(self, stream: _Stream) -> _Stream:
    for item in stream:
      self._Tick()
      yield item

  def StateAt(self, occurrence: tuple[int, int]) -> takoboard.BoardState:
    """True BoardState of an indexed occurrence (replayed through the move source)."""
    return self._cache.StateAt(*occurrence)

  # verification #################################################################################

  def _Verify(self, node: Union[takotql.ExactLookup, takotql.PatternLookup, takotql.SequenceLookup],
              packed: int) -> bool:
    self.verifications += 1
    self._Tick()
    game_id, ply = takopostings.Unpack(packed)
    if isinstance(node, takotql.ExactLookup):
      return self._cache.StateAt(game_id, ply) == node.target
    if isinstance(node, takotql.PatternLookup):
      return node.pattern.Matches(self._cache.StateAt(game_id, ply))
    # fixed length sequence, `ply` is where it ends
    length: Optional[int] = node.fixed_length
    if length is None:
      raise ValueError(f'Sequences with gaps are never verified lazily: {node!r}')
    cursor: _ReplayCursor = self._cache.Cursor(game_id)
    return _RunMatches(cursor.moves, ply - length, node.segments[0], cursor.Resolves)

  def _Evaluate(self, requirement: Requirement, packed: int) -> bool:
    if requirement is None:
      return True
    if isinstance(requirement, _Verify):
      return self._Verify(requirement.node, packed)
    if isinstance(requirement, _All):
      return all(self._Evaluate(r, packed) for r in requirement.requirements)
    if isinstance(requirement, _Any):
      return any(self._Evaluate(r, packed) for r in requirement.requirements)
    return not self._Evaluate(requirement.requirement, packed)

  # leaves #######################################################################################

  def _Exact(self, node: takotql.ExactLookup) -> _Stream:
    requirement = _Verify(node)
    return ((p, requirement) for p in self.snapshot.exact.Lookup(node.key).packed)

  def _Pattern(self, node: takotql.PatternLookup) -> _Stream:
    requirement = _Verify(node)
    if not node.groups:
      return ((p, requirement) for p in self.snapshot.Universe())
    postings: list[takopostings.PostingsList] = [
        self.snapshot.pattern.CandidatesFor(group, 'OR') for group in node.groups]
    postings.sort(key=len)
    return ((p, requirement) for p in takopostings.IntersectAll([p.packed for p in postings]))

  def _Meta(self, node: takotql.MetaFilter) -> _Stream:
    for game_id, entry in self.snapshot.Games():
      if node.Matches(entry.metadata):
        start: int = takopostings.Pack(game_id, 0)
        for packed in range(start, start + entry.n_plies + 1):
          yield (packed, None)

  def _SequenceBegins(self, node: takotql.SequenceLookup) -> Iterator[int]:
    """Candidate begin plies (packed), in order."""
    if node.lookup is None:
      return self.snapshot.Universe()
    offset: int = node.lookup_offset
    return (p - offset for p in self.snapshot.sequence.Lookup(node.lookup).packed
            if takopostings.PlyOf(p) >= offset)

  def _Sequence(self, node: takotql.SequenceLookup) -> _Stream:
    length: Optional[int] = node.fixed_length
    if length is not None:
      # lazy: end ply is begin + length, verify later (unless the lookup said it all)
      requirement: Requirement = None if node.lossless else _Verify(node)
      for begin in self._SequenceBegins(node):
        game_id, ply = takopostings.Unpack(begin)
        if ply + length <= self.snapshot.Game(game_id).n_plies:
          yield (begin + length, requirement)
      return
    # with gaps: ends are not a function of the begins, so match eagerly, one game at a time
    for game_id, begins in itertools.groupby(self._SequenceBegins(node), key=takopostings.GameOf):
      cursor: Optional[_ReplayCursor] = None
      ends: set[int] = set()
      for begin in begins:
        ply: int = takopostings.PlyOf(begin)
        if ply >= self.snapshot.Game(game_id).n_plies:
          continue
        if cursor is None:
          cursor = self._cache.Cursor(game_id)
        self.verifications += 1
        self._Tick()
        ends.update(SequenceEnds(cursor.moves, ply, node.segments, node.max_gap, cursor.Resolves))
      for end in sorted(ends):
        yield (takopostings.Pack(game_id, end), None)

  # set algebra ##################################################################################

  def _Intersect(self, a: _Stream, b: _Stream) -> _Stream:
    try:
      (x, rx), (y, ry) = next(a), next(b)
      while True:
        if x == y:
          yield (x, _And(rx, ry))
          (x, rx), (y, ry) = next(a), next(b)
        elif x < y:
          x, rx = next(a)
        else:
          y, ry = next(b)
    except StopIteration:
      return

  def _Union(self, streams: list[_Stream]) -> _Stream:
    merged: Iterator[tuple[int, Requirement]] = heapq.merge(*streams, key=lambda item: item[0])
    for packed, group in itertools.groupby(merged, key=lambda item: item[0]):
      requirements: list[Requirement] = [r for _, r in group]
      if any(r is None for r in requirements):
        yield (packed, None)
      else:
        yield (packed, requirements[0] if len(requirements) == 1 else _Any(tuple(requirements)))

  def _Difference(self, left: _Stream, right: _Stream) -> _Stream:
    y: Optional[tuple[int, Requirement]] = next(right, None)
    for x, rx in left:
      while y is not None and y[0] < x:
        y = next(right, None)
      if y is None or y[0] != x:
        yield (x, rx)
      elif y[1] is not None:
        # on both sides, but the right side is not sure: x survives if the right check fails
        yield (x, _And(rx, _Not(y[1])))

  def _Filter(self, stream: _Stream) -> _Stream:
    for packed, requirement in stream:
      if self._Evaluate(requirement, packed):
        yield (packed, None)

  def _Open(self, node: takotql.PlanNode) -> _Stream:
    """Open the stream of `node` (cancellation is checked before opening every node)."""
    self._CheckCancel()
    if isinstance(node, takotql.ExactLookup):
      return self._Ticking(self._Exact(node))
    if isinstance(node, takotql.PatternLookup):
      return self._Ticking(self._Pattern(node))
    if isinstance(node, takotql.SequenceLookup):
      return self._Ticking(self._Sequence(node))
    if isinstance(node, takotql.MetaFilter):
      return self._Ticking(self._Meta(node))
    if isinstance(node, takotql.Universe):
      return self._Ticking((p, None) for p in self.snapshot.Universe())
    if isinstance(node, takotql.Intersect):
      stream: _Stream = self._Open(node.children[0])
      for child in node.children[1:]:
        stream = self._Intersect(stream, self._Open(child))
      return stream
    if isinstance(node, takotql.Union):
      return self._Union([self._Open(c) for c in node.children])
    if isinstance(node, takotql.Difference):
      return self._Difference(self._Open(node.left), self._Open(node.right))
    if isinstance(node, takotql.Filter):
      return self._Filter(self._Open(node.child))
    if isinstance(node, takotql.Limit):
      return itertools.islice(self._Open(node.child), node.count)
    raise ValueError(f'Unknown plan node {node!r}')

  def Stream(
      self, plan: takotql.QueryPlan,
      cancel: Optional[CancellationToken] = None) -> Generator[takopostings.Occurrence, None, None]:
    """Lazily confirmed results of `plan`, in (game_id, ply) order."""
    self._cancel = cancel
    for packed, requirement in self._Open(plan.root):
      if requirement is not None and not self._Evaluate(requirement, packed):
        continue  # plan without a root Filter
      yield takopostings.Unpack(packed)

  def Execute(
      self, plan: takotql.QueryPlan, limit: Optional[int] = None,
      cancel: Optional[CancellationToken] = None) -> list[takopostings.Occurrence]:
    """Run `plan`.

    Args:
      plan: compiled query
      limit: (default None == no limit) most results to return; evaluation stops once filled
      cancel: (default None) cancellation token

    Returns:
      confirmed occurrences, ordered by (game_id, ply)

    Raises:
      takoindex.IndexUnavailableError: missing/corrupt segment or source/index mismatch
      QueryCancelledError: `cancel` was triggered
    """
    if limit is not None:
      plan = plan.WithLimit(limit)
    results: list[takopostings.Occurrence] = list(self.Stream(plan, cancel=cancel))
    logging.debug('Query %r: %d results, %d verifications, %d games replayed',
                  plan.text, len(results), self.verifications, self._cache.replays)
    return results


class SearchHit(NamedTuple):
  """One result; `state` and `metadata` only when resolved."""
  occurrence: takopostings.Occurrence
  state: Optional[takoboard.BoardState] = None
  metadata: Optional[dict[str, str]] = None


def Search(
    store: takoindex.IndexStore, source: takosource.MoveSource, tql: str,
    limit: Optional[int] = None, generation: Optional[int] = None, resolve: bool = False,
    cancel: Optional[CancellationToken] = None,
    query_config: Optional[takotql.QueryConfig] = None) -> list[SearchHit]:
  """The query API: compile and run `tql` against a generation of `store`.

  Args:
    store: the index
    source: the games (for verification and resolving)
    tql: query text
    limit: (default None == all) most results
    generation: (default None == current) generation to query; older ones must still be held
    resolve: (default False) if True also fetch the BoardState and metadata of each result
    cancel: (default None) cancellation token
    query_config: (default None == defaults) query knobs

  Raises:
    takotql.QuerySyntaxError, takotql.QuerySemanticError: bad query
    takoindex.IndexUnavailableError: index problem
    QueryCancelledError: cancelled
  """
  with store.Acquire(generation) as snapshot:
    plan: takotql.QueryPlan = takotql.Compile(tql, snapshot.config, query_config)
    executor = QueryExecutor(snapshot, source, query_config)
    occurrences: list[takopostings.Occurrence] = executor.Execute(plan, limit=limit, cancel=cancel)
    if not resolve:
      return [SearchHit(o) for o in occurrences]
    return [SearchHit(o, executor.StateAt(o), source.Metadata(o.game_id)) for o in occurrences]


def CandidateCount(snapshot: takoindex.Snapshot, features: Iterable[takoencode.PatternFeature]) -> int:
  """Number of pattern index candidates (before verification) for the AND of `features`."""
  return len(snapshot.pattern.CandidatesFor(features, 'AND'))
