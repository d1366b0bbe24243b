#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki indexes: exact position, pattern and move-sequence postings, segments and snapshots.

Storage is log structured. A generation is an immutable set of segments (one
base segment, plus any recent segments appended by incremental ingestion)
listed in the manifest. Publishing writes new segment directories first, then
atomically replaces the manifest, so readers always see a complete generation.

Index directory layout:

  <index_dir>/MANIFEST.json
  <index_dir>/seg-000001/exact.tki      Zobrist key (16 bytes) -> postings
  <index_dir>/seg-000001/pattern.tki    pattern feature 'kind:value' -> postings
  <index_dir>/seg-000001/sequence.tki   sequence key 'e4 e5 Nf3' -> postings
  <index_dir>/seg-000001/games.json     game table (plies and metadata)

Each .tki file: magic 'TAKOSEG', version byte, kind byte, varint entry count,
then entries sorted by key (varint key length, key, varint blob length, blob
with takopostings compressed postings), then a big-endian CRC32 of all of the
preceding bytes.
"""

import dataclasses
import heapq
import json
import logging
import os
import os.path
import shutil
import threading
import zlib
from typing import Any, Generator, Iterable, Iterator, NamedTuple, Optional, Union

from takoyaki import takobase
from takoyaki import takoencode
from takoyaki import takopostings
from takoyaki import takozobrist

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


FORMAT_VERSION: int = 1
MANIFEST_NAME: str = 'MANIFEST.json'
GAMES_FILE: str = 'games.json'
SEGMENT_MAGIC: bytes = b'TAKOSEG'
SEGMENT_VERSION: int = 1
_SEGMENT_PREFIX: str = 'seg-'

# ATTENTION: DO NOT CHANGE the kind bytes, they are persisted!
INDEX_KINDS: dict[str, tuple[int, str]] = {
    'exact': (1, 'exact.tki'),
    'pattern': (2, 'pattern.tki'),
    'sequence': (3, 'sequence.tki'),
}

DEFAULT_MAX_SEQUENCE_LENGTH: int = 8
DEFAULT_SHARD_SIZE: int = 1000
DEFAULT_SHARD_RETRIES: int = 2


class IndexBuildError(takobase.Error):
  """Merge inconsistency: duplicate/out-of-order occurrence, duplicate game, failed shard."""


class IndexUnavailableError(takobase.Error):
  """Missing or corrupt segment, or an unavailable generation."""


@dataclasses.dataclass(frozen=True)
class IndexConfig:
  """Index configuration. Persisted in the manifest, queries use the persisted one.

  Attributes:
    max_sequence_length: longest move run indexed in the move-sequence index (0 == disabled)
    pattern_features: enabled pattern feature kinds, must include 'ps' and 'mat'
    shard_size: games per indexing shard
    shard_retries: times a failed shard is retried before the build fails
  """
  max_sequence_length: int = DEFAULT_MAX_SEQUENCE_LENGTH
  pattern_features: frozenset[str] = takoencode.ALL_FEATURE_KINDS
  shard_size: int = DEFAULT_SHARD_SIZE
  shard_retries: int = DEFAULT_SHARD_RETRIES

  def __post_init__(self) -> None:
    object.__setattr__(self, 'pattern_features', frozenset(self.pattern_features))
    if not 0 <= self.max_sequence_length <= 64:
      raise ValueError(f'Invalid max_sequence_length: {self.max_sequence_length}')
    if unknown := self.pattern_features - takoencode.ALL_FEATURE_KINDS:
      raise ValueError(f'Unknown pattern feature kinds: {sorted(unknown)}')
    if missing := takoencode.BASELINE_FEATURE_KINDS - self.pattern_features:
      raise ValueError(f'Pattern features must include {sorted(missing)}')
    if self.shard_size < 1 or self.shard_retries < 0:
      raise ValueError(f'Invalid shard parameters: {self.shard_size}/{self.shard_retries}')

  def ToJSON(self) -> dict[str, Any]:
    return {
        'max_sequence_length': self.max_sequence_length,
        'pattern_features': [k for k in takoencode.FEATURE_KINDS if k in self.pattern_features],
        'shard_size': self.shard_size,
        'shard_retries': self.shard_retries,
    }

  @classmethod
  def FromJSON(cls, data: dict[str, Any]) -> 'IndexConfig':
    return cls(
        max_sequence_length=int(data['max_sequence_length']),
        pattern_features=frozenset(data['pattern_features']),
        shard_size=int(data.get('shard_size', DEFAULT_SHARD_SIZE)),
        shard_retries=int(data.get('shard_retries', DEFAULT_SHARD_RETRIES)))


class GameEntry(NamedTuple):
  """Game table row: number of plies played and (normalized) metadata."""
  n_plies: int
  metadata: dict[str, str]


class PostingsMap:
  """Sorted map of key bytes -> postings, for one index kind of one segment.

  While building, postings are plain lists of packed occurrences. Loaded maps
  keep the compressed blobs and only decode on lookup.
  """

  def __init__(self, kind: str) -> None:
    if kind not in INDEX_KINDS:
      raise ValueError(f'Unknown index kind {kind!r}')
    self.kind: str = kind
    self._entries: dict[bytes, Union[list[int], bytes]] = {}
    self._frozen: bool = False

  def __len__(self) -> int:
    return len(self._entries)

  def __contains__(self, key: bytes) -> bool:
    return key in self._entries

  @property
  def frozen(self) -> bool:
    return self._frozen

  def Freeze(self) -> None:
    """No more inserts after this."""
    self._frozen = True

  def Insert(self, key: bytes, packed: int) -> None:
    """Append one packed occurrence to `key`. Must be strictly after the last one for `key`."""
    if self._frozen:
      raise IndexBuildError(f'{self.kind} postings are frozen, cannot insert')
    postings = self._entries.setdefault(key, [])
    if not isinstance(postings, list):
      raise IndexBuildError(f'{self.kind} postings for {key!r} are compressed, cannot insert')
    if postings and packed <= postings[-1]:
      raise IndexBuildError(
          f'Out of order/duplicate {self.kind} insert for {key!r}: '
          f'{takopostings.Unpack(packed)} after {takopostings.Unpack(postings[-1])}')
    postings.append(packed)

  def Packed(self, key: bytes) -> Iterable[int]:
    """Sorted packed occurrences for `key` (empty if absent)."""
    postings: Union[list[int], bytes, None] = self._entries.get(key)
    if postings is None:
      return ()
    if isinstance(postings, list):
      return postings
    try:
      return takopostings.CompressedPostings(postings)
    except takopostings.PostingsError as err:
      raise IndexUnavailableError(f'Corrupt {self.kind} postings for {key!r}: {err}') from err

  def Lookup(self, key: bytes) -> takopostings.PostingsList:
    return takopostings.PostingsList(self.Packed(key), presorted=True)

  def Keys(self) -> list[bytes]:
    return sorted(self._entries)

  def Serialize(self) -> bytes:
    """Deterministic file bytes (see module docs)."""
    out = bytearray(SEGMENT_MAGIC)
    out.append(SEGMENT_VERSION)
    out.append(INDEX_KINDS[self.kind][0])
    out += takopostings.EncodeVarint(len(self._entries))
    for key in self.Keys():
      postings: Union[list[int], bytes] = self._entries[key]
      blob: bytes = (takopostings.CompressedPostings.Encode(postings)
                     if isinstance(postings, list) else postings)
      out += takopostings.EncodeVarint(len(key))
      out += key
      out += takopostings.EncodeVarint(len(blob))
      out += blob
    out += zlib.crc32(out).to_bytes(4, 'big')
    return bytes(out)

  @classmethod
  def Parse(cls, data: bytes, kind: str, origin: str = '?') -> 'PostingsMap':
    """Parse file bytes. Raises IndexUnavailableError on any corruption."""
    postings_map = cls(kind)
    header_len: int = len(SEGMENT_MAGIC) + 2
    if len(data) < header_len + 5 or not data.startswith(SEGMENT_MAGIC):
      raise IndexUnavailableError(f'Not a takoyaki segment file: {origin!r}')
    if zlib.crc32(data[:-4]) != int.from_bytes(data[-4:], 'big'):
      raise IndexUnavailableError(f'CRC mismatch in segment file {origin!r}')
    if data[len(SEGMENT_MAGIC)] != SEGMENT_VERSION:
      raise IndexUnavailableError(
          f'Unsupported segment version {data[len(SEGMENT_MAGIC)]} in {origin!r}')
    if data[len(SEGMENT_MAGIC) + 1] != INDEX_KINDS[kind][0]:
      raise IndexUnavailableError(f'Segment file {origin!r} is not of kind {kind!r}')
    body: bytes = data[:-4]
    try:
      count, offset = takopostings.DecodeVarint(body, header_len)
      last_key: Optional[bytes] = None
      for _ in range(count):
        key_len, offset = takopostings.DecodeVarint(body, offset)
        key: bytes = body[offset:offset + key_len]
        offset += key_len
        blob_len, offset = takopostings.DecodeVarint(body, offset)
        blob: bytes = body[offset:offset + blob_len]
        offset += blob_len
        if len(key) != key_len or len(blob) != blob_len or (last_key is not None and key <= last_key):
          raise IndexUnavailableError(f'Corrupt entry {key!r} in segment file {origin!r}')
        postings_map._entries[key] = blob
        last_key = key
    except takopostings.PostingsError as err:
      raise IndexUnavailableError(f'Corrupt segment file {origin!r}: {err}') from err
    if offset != len(body):
      raise IndexUnavailableError(f'Trailing bytes in segment file {origin!r}')
    postings_map.Freeze()
    return postings_map

  @classmethod
  def Merge(cls, maps: list['PostingsMap'], kind: str) -> 'PostingsMap':
    """k-way merge of disjoint maps. Raises IndexBuildError on duplicate occurrences."""
    merged = cls(kind)
    for key in sorted(set().union(*(m._entries for m in maps))):
      try:
        merged._entries[key] = list(takopostings.Merge(*(m.Packed(key) for m in maps if key in m)))
      except takopostings.PostingsError as err:
        raise IndexBuildError(f'Merge failed for {kind} key {key!r}: {err}') from err
    return merged


class Segment:
  """One immutable unit of the index: the 3 postings maps plus the game table."""

  def __init__(self, segment_id: str = '') -> None:
    self.segment_id: str = segment_id
    self.maps: dict[str, PostingsMap] = {kind: PostingsMap(kind) for kind in INDEX_KINDS}
    self.games: dict[int, GameEntry] = {}
    self._frozen: bool = False

  @property
  def exact(self) -> PostingsMap:
    return self.maps['exact']

  @property
  def pattern(self) -> PostingsMap:
    return self.maps['pattern']

  @property
  def sequence(self) -> PostingsMap:
    return self.maps['sequence']

  @property
  def frozen(self) -> bool:
    return self._frozen

  def Freeze(self) -> None:
    """No more inserts nor games after this."""
    for postings_map in self.maps.values():
      postings_map.Freeze()
    self._frozen = True

  @property
  def n_plies(self) -> int:
    """Number of indexed positions (plies + 1 per game, ply 0 included)."""
    return sum(g.n_plies + 1 for g in self.games.values())

  def AddGame(self, game_id: int, n_plies: int, metadata: dict[str, str]) -> None:
    if self._frozen:
      raise IndexBuildError(f'Segment {self.segment_id!r} is frozen, cannot add game {game_id}')
    if game_id in self.games:
      raise IndexBuildError(f'Duplicate game id {game_id}')
    self.games[game_id] = GameEntry(n_plies, dict(metadata))

  def Universe(self) -> Generator[int, None, None]:
    """Every packed occurrence of this segment, in order."""
    for game_id in sorted(self.games):
      start: int = takopostings.Pack(game_id, 0)
      yield from range(start, start + self.games[game_id].n_plies + 1)

  def Save(self, directory: str) -> None:
    """Write the segment files into (existing) `directory`."""
    for kind, (_, file_name) in INDEX_KINDS.items():
      with open(os.path.join(directory, file_name), 'wb') as file_obj:
        file_obj.write(self.maps[kind].Serialize())
    games: list[dict[str, Any]] = [
        {'id': game_id, 'plies': entry.n_plies, 'meta': entry.metadata}
        for game_id, entry in sorted(self.games.items())]
    with open(os.path.join(directory, GAMES_FILE), 'wt', encoding='utf-8') as file_obj:
      json.dump({'format_version': FORMAT_VERSION, 'games': games},
                file_obj, sort_keys=True, indent=1, ensure_ascii=False)

  @classmethod
  def Load(cls, directory: str, segment_id: str) -> 'Segment':
    """Load a segment directory. Raises IndexUnavailableError if missing/corrupt."""
    segment = cls(segment_id)
    try:
      for kind, (_, file_name) in INDEX_KINDS.items():
        file_path: str = os.path.join(directory, file_name)
        with open(file_path, 'rb') as file_obj:
          segment.maps[kind] = PostingsMap.Parse(file_obj.read(), kind, origin=file_path)
      with open(os.path.join(directory, GAMES_FILE), 'rt', encoding='utf-8') as file_obj:
        games: dict[str, Any] = json.load(file_obj)
      for game in games['games']:
        segment.AddGame(int(game['id']), int(game['plies']), game['meta'])
    except (OSError, ValueError, KeyError, TypeError, IndexBuildError) as err:
      raise IndexUnavailableError(f'Cannot load segment {segment_id!r} from {directory!r}: {err}') from err
    segment.Freeze()
    return segment


def MergeSegments(segments: list[Segment], segment_id: str = '') -> Segment:
  """k-way merge of segments over disjoint games into a new segment.

  Raises:
    IndexBuildError: on duplicate game ids or duplicate occurrences
  """
  merged = Segment(segment_id)
  for segment in segments:
    for game_id, entry in segment.games.items():
      merged.AddGame(game_id, entry.n_plies, entry.metadata)
  for kind in INDEX_KINDS:
    merged.maps[kind] = PostingsMap.Merge([s.maps[kind] for s in segments], kind)
  return merged


class _IndexView:
  """An index kind over a stack of segment maps; Insert() goes to the last map, if writable."""

  def __init__(self, maps: list[PostingsMap], writable: bool = True) -> None:
    self._maps: list[PostingsMap] = maps
    self.writable: bool = writable

  def _Lookup(self, key: bytes) -> takopostings.PostingsList:
    streams: list[Iterable[int]] = [m.Packed(key) for m in self._maps if key in m]
    if not streams:
      return takopostings.PostingsList()
    if len(streams) == 1:
      return takopostings.PostingsList(streams[0], presorted=True)
    return takopostings.PostingsList(takopostings.Union(*streams), presorted=True)

  def _Insert(self, key: bytes, occurrence: tuple[int, int]) -> None:
    if not self.writable:
      raise IndexBuildError('Index view is read-only')
    if not self._maps:
      raise IndexBuildError('No writable segment')
    self._maps[-1].Insert(key, takopostings.Pack(*occurrence))


class ExactPositionIndex(_IndexView):
  """Exact position key -> occurrences."""

  def Lookup(self, key: int) -> takopostings.PostingsList:
    return self._Lookup(takozobrist.KeyBytes(key))

  def Insert(self, key: int, occurrence: tuple[int, int]) -> None:
    self._Insert(takozobrist.KeyBytes(key), occurrence)


class PatternPositionIndex(_IndexView):
  """Pattern feature -> occurrences of positions exhibiting it."""

  def Lookup(self, feature: takoencode.PatternFeature) -> takopostings.PostingsList:
    return self._Lookup(feature.Key())

  def Insert(self, feature: takoencode.PatternFeature, occurrence: tuple[int, int]) -> None:
    self._Insert(feature.Key(), occurrence)

  def CandidatesFor(
      self, features: Iterable[takoencode.PatternFeature],
      combinator: str = 'AND') -> takopostings.PostingsList:
    """Intersection ('AND') or union ('OR') of the postings of `features`."""
    postings: list[takopostings.PostingsList] = [self.Lookup(f) for f in sorted(set(features))]
    if not postings:
      raise ValueError('CandidatesFor() needs at least one feature')
    if combinator == 'AND':
      postings.sort(key=len)
      return takopostings.PostingsList(
          takopostings.IntersectAll([p.packed for p in postings]), presorted=True)
    if combinator == 'OR':
      return takopostings.PostingsList(
          takopostings.Union(*(p.packed for p in postings)), presorted=True)
    raise ValueError(f'Invalid combinator {combinator!r}')


class MoveSequenceIndex(_IndexView):
  """Sequence key (canonical SANs joined by spaces) -> occurrences of the ply where the run begins."""

  def __init__(self, maps: list[PostingsMap], max_length: int, writable: bool = True) -> None:
    super().__init__(maps, writable=writable)
    self.max_length: int = max_length

  def Lookup(self, sequence_key: str) -> takopostings.PostingsList:
    return self._Lookup(sequence_key.encode('utf-8'))

  def Insert(self, sequence_key: str, occurrence: tuple[int, int]) -> None:
    if len(sequence_key.split()) > self.max_length:
      raise IndexBuildError(f'Sequence {sequence_key!r} longer than {self.max_length}')
    self._Insert(sequence_key.encode('utf-8'), occurrence)


class Snapshot:
  """A consistent, read-only view of one generation. Use as a context manager to release it."""

  def __init__(
      self, generation: int, segments: list[Segment], config: IndexConfig,
      store: Optional['IndexStore'] = None) -> None:
    self.generation: int = generation
    self.segments: list[Segment] = segments
    self.config: IndexConfig = config
    self._store: Optional[IndexStore] = store
    self._released: bool = False
    self.exact = ExactPositionIndex([s.exact for s in segments], writable=False)
    self.pattern = PatternPositionIndex([s.pattern for s in segments], writable=False)
    self.sequence = MoveSequenceIndex(
        [s.sequence for s in segments], config.max_sequence_length, writable=False)
    self._games: dict[int, GameEntry] = {}
    for segment in segments:
      self._games.update(segment.games)

  def __enter__(self) -> 'Snapshot':
    return self

  def __exit__(self, *unused_args: Any) -> None:
    self.Release()

  def Release(self) -> None:
    if not self._released and self._store is not None:
      self._store._Release(self.generation)  # pylint: disable=protected-access
    self._released = True

  @property
  def n_games(self) -> int:
    return len(self._games)

  @property
  def n_positions(self) -> int:
    return sum(g.n_plies + 1 for g in self._games.values())

  def GameIds(self) -> list[int]:
    return sorted(self._games)

  def Game(self, game_id: int) -> GameEntry:
    """Game table entry. Raises KeyError if the game is not indexed."""
    return self._games[game_id]

  def Games(self) -> Iterator[tuple[int, GameEntry]]:
    return iter(sorted(self._games.items()))

  def Universe(self) -> Iterator[int]:
    """Every indexed packed occurrence, in order."""
    return heapq.merge(*(s.Universe() for s in self.segments))


class IndexStore:
  """Manifest + segments, on disk (or in memory if `index_dir` is None).

  Thread safe. Readers Acquire() a Snapshot and keep it for their whole query;
  CollectGarbage() never deletes segments of a generation still held.
  Note: holds are tracked per process.
  """

  def __init__(
      self, index_dir: Optional[str] = None, config: Optional[IndexConfig] = None,
      readonly: bool = False) -> None:
    """Open or create the index.

    Args:
      index_dir: (default None) directory; None means a purely in-memory index
      config: (default None == defaults) config for a NEW index; existing ones keep theirs
      readonly: (default False) if True nothing is ever written
    """
    self._lock = threading.RLock()
    self._readonly: bool = bool(readonly)
    self.index_dir: Optional[str] = index_dir.strip() if index_dir is not None else None
    if self.index_dir is not None and not self.index_dir:
      raise ValueError('Empty index dir')
    self._memory_segments: dict[str, Segment] = {}  # in-memory store (also caches loaded ones)
    self._generations: dict[int, tuple[list[str], IndexConfig]] = {}
    self._holds: dict[int, int] = {}
    self._manifest: dict[str, Any] = {
        'format_version': FORMAT_VERSION,
        'generation': 0,
        'base': [],
        'recent': [],
        'next_segment': 1,
        'config': (config or IndexConfig()).ToJSON(),
        'sources': [],
    }
    if self.index_dir is not None:
      if os.path.exists(self._ManifestPath()):
        self._LoadManifest()
        logging.info('Opened %sindex in %r, generation %d',
                     'READONLY ' if self._readonly else '', self.index_dir, self.generation)
        if config is not None and config != self.config:
          logging.warning('Index in %r has config %r; ignoring requested %r',
                          self.index_dir, self.config, config)
      else:
        if self._readonly:
          raise IndexUnavailableError(f'No index in {self.index_dir!r} and READONLY do not mix')
        if not os.path.exists(self.index_dir):
          os.makedirs(self.index_dir)
          logging.info('Created empty index dir %r', self.index_dir)
        self._WriteManifest()
        logging.info('Created new index in %r', self.index_dir)
    self._generations[self.generation] = (self._SegmentIds(), self.config)

  @property
  def is_readonly(self) -> bool:
    return self._readonly

  @property
  def generation(self) -> int:
    return int(self._manifest['generation'])

  @property
  def config(self) -> IndexConfig:
    return IndexConfig.FromJSON(self._manifest['config'])

  @property
  def base(self) -> list[str]:
    return list(self._manifest['base'])

  @property
  def recent(self) -> list[str]:
    return list(self._manifest['recent'])

  @property
  def sources(self) -> list[dict[str, Any]]:
    """Registered game sources, like [{'path': '/x/y.pgn', 'first_id': 1, 'n_games': 10}]."""
    return [dict(s) for s in self._manifest['sources']]

  def _SegmentIds(self) -> list[str]:
    return list(self._manifest['base']) + list(self._manifest['recent'])

  def _ManifestPath(self) -> str:
    if self.index_dir is None:
      raise IndexUnavailableError('In-memory index has no manifest')
    return os.path.join(self.index_dir, MANIFEST_NAME)

  def _LoadManifest(self) -> None:
    try:
      with open(self._ManifestPath(), 'rt', encoding='utf-8') as file_obj:
        manifest: dict[str, Any] = json.load(file_obj)
      if manifest.get('format_version') != FORMAT_VERSION:
        raise IndexUnavailableError(
            f'Unsupported index format {manifest.get("format_version")!r} in {self.index_dir!r}')
      IndexConfig.FromJSON(manifest['config'])
      for field in ('generation', 'base', 'recent', 'next_segment', 'sources'):
        if field not in manifest:
          raise IndexUnavailableError(f'Manifest in {self.index_dir!r} has no {field!r}')
    except (OSError, ValueError, KeyError, TypeError) as err:
      raise IndexUnavailableError(f'Cannot read manifest in {self.index_dir!r}: {err}') from err
    self._manifest = manifest

  def _WriteManifest(self) -> None:
    if self.index_dir is None or self._readonly:
      return
    temp_path: str = self._ManifestPath() + '.tmp'
    with open(temp_path, 'wt', encoding='utf-8') as file_obj:
      json.dump(self._manifest, file_obj, sort_keys=True, indent=2)
    os.replace(temp_path, self._ManifestPath())

  def Refresh(self) -> None:
    """Re-read the manifest from disk, to see generations published by other processes."""
    if self.index_dir is None:
      return
    with self._lock:
      self._LoadManifest()
      self._generations.setdefault(self.generation, (self._SegmentIds(), self.config))

  def _NewSegmentId(self) -> str:
    segment_id: str = f'{_SEGMENT_PREFIX}{int(self._manifest["next_segment"]):06d}'
    self._manifest['next_segment'] = int(self._manifest['next_segment']) + 1
    return segment_id

  def _WriteSegment(self, segment: Segment) -> str:
    """Give `segment` a new id and persist it. Returns the id."""
    segment.segment_id = self._NewSegmentId()
    if self.index_dir is not None:
      final_dir: str = os.path.join(self.index_dir, segment.segment_id)
      temp_dir: str = final_dir + '.tmp'
      if os.path.exists(temp_dir):
        shutil.rmtree(temp_dir)
      os.makedirs(temp_dir)
      segment.Save(temp_dir)
      os.replace(temp_dir, final_dir)
      logging.info('Wrote segment %r: %d games, %d positions, %d/%d/%d exact/pattern/sequence keys',
                   segment.segment_id, len(segment.games), segment.n_plies,
                   len(segment.exact), len(segment.pattern), len(segment.sequence))
    segment.Freeze()
    self._memory_segments[segment.segment_id] = segment
    return segment.segment_id

  def _Publish(self) -> int:
    self._manifest['generation'] = self.generation + 1
    self._generations[self.generation] = (self._SegmentIds(), self.config)
    self._WriteManifest()
    logging.info('Published generation %d: base %r, recent %r',
                 self.generation, self._manifest['base'], self._manifest['recent'])
    return self.generation

  def _CheckWritable(self) -> None:
    if self._readonly:
      raise IndexBuildError('Index is READONLY')

  def PublishBase(
      self, segment: Segment, config: IndexConfig,
      sources: Optional[list[dict[str, Any]]] = None) -> int:
    """Publish `segment` as the new base (dropping any recent segments). Returns the new generation."""
    with self._lock:
      self._CheckWritable()
      segment_id: str = self._WriteSegment(segment)
      self._manifest['base'] = [segment_id]
      self._manifest['recent'] = []
      self._manifest['config'] = config.ToJSON()
      self._manifest['sources'] = list(sources or [])
      return self._Publish()

  def AppendRecent(self, segment: Segment, sources: Optional[list[dict[str, Any]]] = None) -> int:
    """Publish `segment` as a recent segment on top of the current ones. Returns the new generation."""
    with self._lock:
      self._CheckWritable()
      segment_id: str = self._WriteSegment(segment)
      self._manifest['recent'] = list(self._manifest['recent']) + [segment_id]
      self._manifest['sources'] = list(self._manifest['sources']) + list(sources or [])
      return self._Publish()

  def Fold(self) -> int:
    """Merge base and recent segments into a new base generation. Returns the generation."""
    with self._lock:
      self._CheckWritable()
      if not self._manifest['recent']:
        logging.info('Nothing to fold in generation %d', self.generation)
        return self.generation
      segments: list[Segment] = [self._GetSegment(s) for s in self._SegmentIds()]
      merged: Segment = MergeSegments(segments)
      segment_id: str = self._WriteSegment(merged)
      self._manifest['base'] = [segment_id]
      self._manifest['recent'] = []
      return self._Publish()

  def _GetSegment(self, segment_id: str) -> Segment:
    if segment_id in self._memory_segments:
      return self._memory_segments[segment_id]
    if self.index_dir is None:
      raise IndexUnavailableError(f'Segment {segment_id!r} is not available')
    segment: Segment = Segment.Load(os.path.join(self.index_dir, segment_id), segment_id)
    self._memory_segments[segment_id] = segment
    logging.info('Loaded segment %r: %d games', segment_id, len(segment.games))
    return segment

  def Acquire(self, generation: Optional[int] = None) -> Snapshot:
    """Hold a generation (default: current) and return its Snapshot.

    Raises:
      IndexUnavailableError: generation is not available, or a segment is missing/corrupt
    """
    with self._lock:
      if generation is None:
        generation = self.generation
      if generation not in self._generations:
        raise IndexUnavailableError(
            f'Generation {generation} is not available (current is {self.generation})')
      if generation != self.generation and not self._holds.get(generation):
        raise IndexUnavailableError(
            f'Generation {generation} was superseded by {self.generation} and is not held')
      segment_ids, config = self._generations[generation]
      segments: list[Segment] = [self._GetSegment(s) for s in segment_ids]
      self._holds[generation] = self._holds.get(generation, 0) + 1
      return Snapshot(generation, segments, config, store=self)

  def _Release(self, generation: int) -> None:
    with self._lock:
      self._holds[generation] = self._holds.get(generation, 1) - 1
      if self._holds[generation] <= 0:
        del self._holds[generation]

  def CollectGarbage(self) -> list[str]:
    """Delete segments not referenced by the current generation nor by held ones. Returns deleted ids."""
    if self._readonly:
      logging.warning('Index %r is READONLY, not collecting garbage', self.index_dir)
      return []
    with self._lock:
      live: set[int] = {self.generation} | set(self._holds)
      for generation in list(self._generations):
        if generation not in live:
          del self._generations[generation]
      referenced: set[str] = set()
      for generation in live:
        referenced.update(self._generations[generation][0])
      candidates: set[str] = set(self._memory_segments)
      if self.index_dir is not None:
        candidates.update(
            name for name in os.listdir(self.index_dir)
            if name.startswith(_SEGMENT_PREFIX) and
            os.path.isdir(os.path.join(self.index_dir, name)))
      deleted: list[str] = []
      for name in sorted(candidates):
        if name in referenced or name.removesuffix('.tmp') in referenced:
          continue
        self._memory_segments.pop(name, None)
        if self.index_dir is not None:
          path: str = os.path.join(self.index_dir, name)
          if os.path.exists(path):
            shutil.rmtree(path)
        deleted.append(name)
        logging.info('Garbage collected segment %r', name)
      return deleted

  def Check(self) -> Generator[str, None, None]:
    """Load and verify every segment of the current generation, yielding report lines.

    Raises:
      IndexUnavailableError: on the first problem found
    """
    with self.Acquire() as snapshot:
      yield f'Generation {snapshot.generation}, config {self.config!r}'
      for segment in snapshot.segments:
        for kind in INDEX_KINDS:
          for key in segment.maps[kind].Keys():
            postings: Iterable[int] = segment.maps[kind].Packed(key)
            for packed in postings:
              game_id, ply = takopostings.Unpack(packed)
              if game_id not in segment.games or ply > segment.games[game_id].n_plies:
                raise IndexUnavailableError(
                    f'Segment {segment.segment_id!r} {kind} key {key!r} points to '
                    f'non-existing occurrence {(game_id, ply)}')
        yield (f'Segment {segment.segment_id!r}: {len(segment.games)} games, '
               f'{segment.n_plies} positions, {len(segment.exact)} exact keys, '
               f'{len(segment.pattern)} pattern keys, {len(segment.sequence)} sequence keys: OK')
      yield f'Total: {snapshot.n_games} games, {snapshot.n_positions} positions: OK'
