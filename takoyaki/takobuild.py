#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki indexer: replays games into exact, pattern and move-sequence postings.

Build: games are cut into shards of consecutive games, each shard is indexed
(in a worker process, or inline if there is only one worker) into a partial
segment, and a k-way merge gives the corpus segment that is published as a new
base generation. A bad game is skipped and reported; a shard that blows up is
retried a few times; a merge inconsistency fails the whole build and leaves the
previous generation serving.
"""

import dataclasses
import logging
import multiprocessing
from typing import Any, Generator, Iterable, Iterator, NamedTuple, Optional

import tqdm

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takopostings
from takoyaki import takosource
from takoyaki import takozobrist

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


class GameError(NamedTuple):
  """A game that was skipped."""
  game_id: int
  category: takoboard.IngestErrorCategory
  message: str


@dataclasses.dataclass
class BuildReport:
  """What a build/ingestion did."""
  games: int = 0        # games indexed
  positions: int = 0    # positions indexed (ply 0 included)
  shards: int = 0       # shards processed
  retries: int = 0      # shard retries needed
  generation: Optional[int] = None  # generation published, if any
  errors: list[GameError] = dataclasses.field(default_factory=list)

  def __str__(self) -> str:
    return (f'{self.games} games, {self.positions} positions, {len(self.errors)} skipped games, '
            f'{self.shards} shards, {self.retries} retries, generation {self.generation}')


class _ShardResult(NamedTuple):
  shard_n: int
  segment: Optional[takoindex.Segment]
  errors: list[GameError]
  failure: Optional[str]  # unexpected exception, shard can be retried
  fatal: Optional[str]    # IndexBuildError, build must stop


def SequenceKey(moves: Iterable[str]) -> str:
  """Canonical SANs -> sequence key."""
  return ' '.join(moves)


def IndexGame(segment: takoindex.Segment, game: takosource.Game, config: takoindex.IndexConfig) -> int:
  """Replay `game` and insert all its positions into `segment`. Returns the number of plies.

  The game is fully replayed before anything is inserted, so a bad game leaves
  `segment` untouched.

  Raises:
    takoboard.IngestError: game cannot be replayed (skip it)
    takoindex.IndexBuildError: out of order insert or duplicate game (fatal)
  """
  if game.parse_error:
    raise takoboard.MalformedMoveError(game.parse_error)
  if not game.moves:
    raise takoboard.IngestError('Game has no moves', takoboard.IngestErrorCategory.EMPTY_GAME)
  states: list[takoboard.BoardState] = [
      takoboard.BoardState(takoboard.StartingBoard(game.starting_fen, game_id=game.game_id))]
  sans: list[str] = []
  for _, san, state in takoboard.IterateMoves(game.moves, starting_fen=game.starting_fen):
    sans.append(san)
    states.append(state)
  # we have a valid game, insert everything
  segment.AddGame(game.game_id, len(sans), game.metadata)
  for ply, state in enumerate(states):
    packed: int = takopostings.Pack(game.game_id, ply)
    segment.exact.Insert(takozobrist.KeyBytes(takoencode.ExactKeyOf(state)), packed)
    for feature in sorted(takoencode.PatternFeaturesOf(state, config.pattern_features)):
      segment.pattern.Insert(feature.Key(), packed)
    for length in range(1, min(config.max_sequence_length, len(sans) - ply) + 1):
      segment.sequence.Insert(SequenceKey(sans[ply:ply + length]).encode('utf-8'), packed)
  return len(sans)


def _IndexShard(
    games: list[takosource.Game], config: takoindex.IndexConfig) -> tuple[
        takoindex.Segment, list[GameError]]:
  """Index one shard of games (sorted by id) into a new partial segment."""
  segment = takoindex.Segment()
  errors: list[GameError] = []
  for game in games:
    try:
      IndexGame(segment, game, config)
    except takoboard.IngestError as err:
      errors.append(GameError(game.game_id, err.category, str(err)))
  return (segment, errors)


def _ShardTask(args: tuple[int, list[takosource.Game], takoindex.IndexConfig]) -> _ShardResult:
  """Worker entry point: never raises, so the pool keeps going and we can retry."""
  shard_n, games, config = args
  try:
    segment, errors = _IndexShard(games, config)
    return _ShardResult(shard_n, segment, errors, None, None)
  except takoindex.IndexBuildError as err:
    return _ShardResult(shard_n, None, [], None, f'{err}')
  except Exception as err:  # pylint: disable=broad-except
    return _ShardResult(shard_n, None, [], f'{type(err).__name__}: {err}', None)


def _Shards(
    games: Iterator[takosource.Game], shard_size: int) -> Generator[list[takosource.Game], None, None]:
  """Cut the game stream into shards of `shard_size` games, each sorted by game id.

  Raises:
    takoindex.IndexBuildError: duplicate game id
  """
  seen: set[int] = set()
  shard: list[takosource.Game] = []
  for game in games:
    if game.game_id in seen:
      raise takoindex.IndexBuildError(f'Duplicate game id {game.game_id} in source')
    seen.add(game.game_id)
    shard.append(game)
    if len(shard) >= shard_size:
      yield sorted(shard, key=lambda g: g.game_id)
      shard = []
  if shard:
    yield sorted(shard, key=lambda g: g.game_id)


class Indexer:
  """Builds and updates the indexes of an IndexStore."""

  def __init__(
      self, store: takoindex.IndexStore, config: Optional[takoindex.IndexConfig] = None,
      num_workers: int = 1) -> None:
    """Constructor.

    Args:
      store: the index store to publish into
      config: (default None == store config) index configuration for full builds
      num_workers: (default 1) worker processes; 1 means everything runs inline
    """
    if num_workers < 1:
      raise ValueError(f'Invalid number of workers: {num_workers}')
    self.store: takoindex.IndexStore = store
    self.config: takoindex.IndexConfig = config or store.config
    self.num_workers: int = num_workers

  def _LogErrors(self, errors: list[GameError], report: BuildReport) -> None:
    for error in errors:
      logging.warning('Skipped game %d (%s): %s', error.game_id, error.category.name, error.message)
    report.errors.extend(errors)

  def _RetryShard(self, result: _ShardResult, shard: list[takosource.Game], report: BuildReport) -> _ShardResult:
    """Re-run a failed shard inline, up to `shard_retries` times."""
    for attempt in range(1, self.config.shard_retries + 1):
      if result.failure is None:
        break
      logging.warning('Shard #%d failed (%s), retry %d/%d',
                      result.shard_n, result.failure, attempt, self.config.shard_retries)
      report.retries += 1
      result = _ShardTask((result.shard_n, shard, self.config))
    return result

  @takobase.Timed('takoyaki build')  # type:ignore
  def Build(
      self, source: takosource.MoveSource,
      sources: Optional[list[dict[str, Any]]] = None) -> BuildReport:
    """Full re-index of `source`, published as a new base generation.

    Args:
      source: the games
      sources: (default None) source descriptions to record in the manifest

    Returns:
      BuildReport (with the new generation)

    Raises:
      takoindex.IndexBuildError: merge inconsistency or shard failed too many times;
          nothing is published and the previous generation stays authoritative
    """
    report = BuildReport()
    local: bool = self.num_workers == 1
    pending: dict[int, list[takosource.Game]] = {}  # shards in flight, for retries
    partials: list[takoindex.Segment] = []

    def _Tasks() -> Generator[tuple[int, list[takosource.Game], takoindex.IndexConfig], None, None]:
      for shard_n, shard in enumerate(_Shards(source.AllGames(), self.config.shard_size)):
        pending[shard_n] = shard
        yield (shard_n, shard, self.config)

    logging.info('Indexing with %d worker(s), shards of %d games, config %r',
                 self.num_workers, self.config.shard_size, self.config)
    progress_bar: tqdm.tqdm = tqdm.tqdm(
        mininterval=1.0, miniters=1, unit='gm', smoothing=0.4, colour='green')
    pool: Optional[Any] = None if local else multiprocessing.Pool(self.num_workers)
    try:
      results: Iterable[_ShardResult] = (
          map(_ShardTask, _Tasks()) if pool is None else pool.imap(_ShardTask, _Tasks()))
      for result in results:
        shard: list[takosource.Game] = pending.pop(result.shard_n)
        result = self._RetryShard(result, shard, report)
        if result.fatal is not None:
          raise takoindex.IndexBuildError(f'Shard #{result.shard_n}: {result.fatal}')
        if result.failure is not None or result.segment is None:
          raise takoindex.IndexBuildError(
              f'Shard #{result.shard_n} failed {self.config.shard_retries + 1} times: {result.failure}')
        self._LogErrors(result.errors, report)
        partials.append(result.segment)
        report.shards += 1
        report.games += len(result.segment.games)
        report.positions += result.segment.n_plies
        progress_bar.update(len(shard))
    finally:
      progress_bar.close()
      if pool is not None:
        pool.terminate()
        pool.join()
    logging.info('Merging %d shard segments...', len(partials))
    merged: takoindex.Segment = takoindex.MergeSegments(partials)
    report.generation = self.store.PublishBase(merged, self.config, sources=sources)
    logging.info('Build done: %s', report)
    return report

  @takobase.Timed('takoyaki ingest')  # type:ignore
  def Ingest(
      self, games: Iterable[takosource.Game],
      sources: Optional[list[dict[str, Any]]] = None) -> BuildReport:
    """Incremental ingestion: index `games` into a new recent segment on top of the current generation.

    Games already indexed (same id) are skipped and reported as DUPLICATE_GAME.
    Ingestion always uses the configuration the index was built with.
    """
    report = BuildReport()
    config: takoindex.IndexConfig = self.store.config
    with self.store.Acquire() as snapshot:
      known: set[int] = set(snapshot.GameIds())
    segment = takoindex.Segment()
    for game in tqdm.tqdm(
        sorted(games, key=lambda g: g.game_id), mininterval=1.0, unit='gm', colour='green'):
      if game.game_id in known:
        self._LogErrors([GameError(
            game.game_id, takoboard.IngestErrorCategory.DUPLICATE_GAME,
            f'Game {game.game_id} already indexed')], report)
        continue
      known.add(game.game_id)
      try:
        report.positions += IndexGame(segment, game, config) + 1
        report.games += 1
      except takoboard.IngestError as err:
        self._LogErrors([GameError(game.game_id, err.category, str(err))], report)
    report.shards = 1
    if not segment.games:
      logging.info('No new games to ingest')
      return report
    report.generation = self.store.AppendRecent(segment, sources=sources)
    logging.info('Ingest done: %s', report)
    return report

  def Fold(self) -> int:
    """Merge base and recent segments into a new base. Returns the generation."""
    logging.info('Folding recent segments %r into base %r', self.store.recent, self.store.base)
    return self.store.Fold()
