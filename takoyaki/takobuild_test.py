#!/usr/bin/python3 -bb
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
# pylint: disable=invalid-name,protected-access
"""takobuild.py unittest."""

import logging
import os
import os.path
# import pdb
import tempfile
from typing import Any
import unittest
from unittest import mock

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takobuild
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takosource

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_Game = takosource.Game
_CATEGORY = takoboard.IngestErrorCategory

_GOOD_GAMES: list[takosource.Game] = [
    _Game(1, ('e4', 'c5', 'Nf3'), {'result': '1-0'}),
    _Game(2, ('e4', 'e5', 'Nf3', 'Nc6'), {'result': '0-1'}),
    _Game(3, ('d4', 'd5'), {'result': '1/2-1/2'}),
]
_BAD_GAMES: list[takosource.Game] = [
    _Game(4, ('e4', 'e5', 'Ke3')),
    _Game(5, ()),
    _Game(6, (), parse_error='No PGN game found'),
]


class TestTakoBuild(unittest.TestCase):
  """Tests for takobuild.py."""

  def test_IndexGame(self) -> None:
    """Test."""
    config = takoindex.IndexConfig()
    segment = takoindex.Segment()
    self.assertEqual(takobuild.IndexGame(segment, _GOOD_GAMES[1], config), 4)
    self.assertEqual(segment.games[2], takoindex.GameEntry(4, {'result': '0-1'}))
    self.assertEqual(len(segment.exact), 5)
    self.assertListEqual(
        sorted(k.decode('utf-8') for k in segment.sequence.Keys()),
        sorted(['e4', 'e4 e5', 'e4 e5 Nf3', 'e4 e5 Nf3 Nc6', 'e5', 'e5 Nf3', 'e5 Nf3 Nc6',
                'Nf3', 'Nf3 Nc6', 'Nc6']))
    self.assertListEqual(list(segment.sequence.Lookup(b'e5 Nf3')), [(2, 1)])
    self.assertListEqual(list(segment.pattern.Lookup(b'ps:Nf3')), [(2, 3), (2, 4)])
    self.assertListEqual(list(segment.pattern.Lookup(b'turn:b')), [(2, 1), (2, 3)])
    start_key: bytes = takoencode.PatternFeature('mat', 'KQRRBBNNPPPPPPPPvkqrrbbnnpppppppp').Key()
    self.assertEqual(len(segment.pattern.Lookup(start_key)), 5)
    # a bad game leaves the segment untouched
    for game, category in zip(_BAD_GAMES, (_CATEGORY.ILLEGAL_MOVE, _CATEGORY.EMPTY_GAME, _CATEGORY.MALFORMED_MOVE)):
      with self.assertRaises(takoboard.IngestError) as ctx:
        takobuild.IndexGame(segment, game, config)
      self.assertEqual(ctx.exception.category, category)
    self.assertListEqual(sorted(segment.games), [2])
    self.assertEqual(len(segment.exact), 5)
    # a shorter max sequence length, and fewer pattern features
    small = takoindex.Segment()
    takobuild.IndexGame(small, _GOOD_GAMES[1], takoindex.IndexConfig(
        max_sequence_length=1, pattern_features={'ps', 'mat'}))
    self.assertEqual(len(small.sequence), 4)
    self.assertFalse(small.pattern.Lookup(b'turn:b'))

  def test_Shards(self) -> None:
    """Test."""
    games: list[takosource.Game] = [_GOOD_GAMES[2], _GOOD_GAMES[0], _GOOD_GAMES[1]]
    self.assertListEqual(
        [[g.game_id for g in shard] for shard in takobuild._Shards(iter(games), 2)], [[1, 3], [2]])
    with self.assertRaisesRegex(takoindex.IndexBuildError, 'Duplicate game id 1'):
      list(takobuild._Shards(iter(games + [_GOOD_GAMES[0]]), 2))

  def test_Build(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    indexer = takobuild.Indexer(store, config=takoindex.IndexConfig(shard_size=2))
    report: takobuild.BuildReport = indexer.Build(
        takosource.MemoryMoveSource(_GOOD_GAMES + _BAD_GAMES), sources=[{'path': 'memory'}])
    self.assertEqual(report.games, 3)
    self.assertEqual(report.positions, 12)
    self.assertEqual(report.shards, 3)
    self.assertEqual(report.retries, 0)
    self.assertEqual(report.generation, 1)
    self.assertListEqual(
        [(e.game_id, e.category) for e in report.errors],
        [(4, _CATEGORY.ILLEGAL_MOVE), (5, _CATEGORY.EMPTY_GAME), (6, _CATEGORY.MALFORMED_MOVE)])
    self.assertEqual(str(report), '3 games, 12 positions, 3 skipped games, 3 shards, 0 retries, generation 1')
    self.assertEqual(store.config.shard_size, 2)
    self.assertListEqual(store.sources, [{'path': 'memory'}])
    with store.Acquire() as snapshot:
      self.assertListEqual(snapshot.GameIds(), [1, 2, 3])
      self.assertListEqual(list(snapshot.sequence.Lookup('e4')), [(1, 0), (2, 0)])
      start_key: int = takoboard.CanonicalKey(takoboard.BoardState.FromFEN())
      self.assertListEqual(list(snapshot.exact.Lookup(start_key)), [(1, 0), (2, 0), (3, 0)])
    with self.assertRaises(ValueError):
      takobuild.Indexer(store, num_workers=0)

  def test_Build_Idempotent(self) -> None:
    """Test."""
    source = takosource.MemoryMoveSource(_GOOD_GAMES + _BAD_GAMES)
    with tempfile.TemporaryDirectory() as temp_dir:
      contents: list[dict[str, bytes]] = []
      for n, (shard_size, workers) in enumerate(((1000, 1), (1, 1), (2, 2))):
        index_dir: str = os.path.join(temp_dir, f'index-{n}')
        store = takoindex.IndexStore(index_dir)
        takobuild.Indexer(
            store, config=takoindex.IndexConfig(shard_size=shard_size), num_workers=workers).Build(source)
        segment_dir: str = os.path.join(index_dir, store.base[0])
        files: dict[str, bytes] = {}
        for file_name in sorted(os.listdir(segment_dir)):
          with open(os.path.join(segment_dir, file_name), 'rb') as file_obj:
            files[file_name] = file_obj.read()
        contents.append(files)
      self.assertSetEqual(set(contents[0]), {'exact.tki', 'pattern.tki', 'sequence.tki', 'games.json'})
      self.assertDictEqual(contents[0], contents[1])
      self.assertDictEqual(contents[0], contents[2])

  def test_Build_Retry(self) -> None:
    """Test."""
    real_index_shard = takobuild._IndexShard
    calls: list[int] = []

    def _Flaky(games: list[takosource.Game], config: takoindex.IndexConfig) -> Any:
      calls.append(len(games))
      if len(calls) == 1:
        raise RuntimeError('worker died')
      return real_index_shard(games, config)

    store = takoindex.IndexStore()
    with mock.patch.object(takobuild, '_IndexShard', side_effect=_Flaky):
      report: takobuild.BuildReport = takobuild.Indexer(store).Build(
          takosource.MemoryMoveSource(_GOOD_GAMES))
    self.assertEqual(report.retries, 1)
    self.assertEqual(report.games, 3)
    self.assertListEqual(calls, [3, 3])
    self.assertEqual(store.generation, 1)

  def test_Build_Failures(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    with mock.patch.object(takobuild, '_IndexShard', side_effect=RuntimeError('always')) as mock_shard:
      with self.assertRaisesRegex(takoindex.IndexBuildError, 'failed 3 times'):
        takobuild.Indexer(store).Build(takosource.MemoryMoveSource(_GOOD_GAMES))
    self.assertEqual(mock_shard.call_count, 3)
    self.assertEqual(store.generation, 0)  # nothing published
    with mock.patch.object(
        takobuild, '_IndexShard', side_effect=takoindex.IndexBuildError('bad merge')) as mock_shard:
      with self.assertRaisesRegex(takoindex.IndexBuildError, 'bad merge'):
        takobuild.Indexer(store).Build(takosource.MemoryMoveSource(_GOOD_GAMES))
    self.assertEqual(mock_shard.call_count, 1)  # fatal, no retries
    self.assertEqual(store.generation, 0)
    # duplicate game ids in the source
    chain = takosource.ChainMoveSource([
        takosource.MemoryMoveSource(_GOOD_GAMES), takosource.MemoryMoveSource(_GOOD_GAMES[:1])])
    with self.assertRaisesRegex(takoindex.IndexBuildError, 'Duplicate game id 1'):
      takobuild.Indexer(store).Build(chain)
    self.assertEqual(store.generation, 0)

  def test_Ingest_Fold(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    indexer = takobuild.Indexer(store)
    indexer.Build(takosource.MemoryMoveSource(_GOOD_GAMES[:2]))
    report: takobuild.BuildReport = indexer.Ingest(
        [_GOOD_GAMES[2], _GOOD_GAMES[0], _BAD_GAMES[0]], sources=[{'path': 'more'}])
    self.assertEqual(report.games, 1)
    self.assertEqual(report.positions, 3)
    self.assertEqual(report.generation, 2)
    self.assertListEqual(
        [(e.game_id, e.category) for e in report.errors],
        [(1, _CATEGORY.DUPLICATE_GAME), (4, _CATEGORY.ILLEGAL_MOVE)])
    self.assertEqual(len(store.recent), 1)
    self.assertListEqual(store.sources, [{'path': 'more'}])
    with store.Acquire() as snapshot:
      self.assertListEqual(snapshot.GameIds(), [1, 2, 3])
      self.assertListEqual(list(snapshot.sequence.Lookup('Nf3')), [(1, 2), (2, 2)])
    # nothing new: nothing published
    self.assertIsNone(indexer.Ingest([_GOOD_GAMES[2]]).generation)
    self.assertEqual(store.generation, 2)
    # fold
    self.assertEqual(indexer.Fold(), 3)
    self.assertListEqual(store.recent, [])
    with store.Acquire() as snapshot:
      self.assertListEqual(snapshot.GameIds(), [1, 2, 3])
      self.assertEqual(len(snapshot.segments), 1)


SUITE: unittest.TestSuite = unittest.TestLoader().loadTestsFromTestCase(TestTakoBuild)


if __name__ == '__main__':
  logging.basicConfig(level=logging.INFO, format=takobase.LOG_FORMAT)  # set this as default
  unittest.main()
