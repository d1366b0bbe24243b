#!/usr/bin/python3 -bb
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
# pylint: disable=invalid-name,protected-access
"""takoindex.py unittest."""

import json
import logging
import os
import os.path
# import pdb
import tempfile
import unittest

from takoyaki import takobase
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takopostings

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_P = takopostings.Pack


def _Segment(games: dict[int, int], key: bytes = b'ps:Nc3') -> takoindex.Segment:
  """A segment with `games` ({game_id: n_plies}), every position under the pattern `key`."""
  segment = takoindex.Segment()
  for game_id, n_plies in sorted(games.items()):
    segment.AddGame(game_id, n_plies, {'white': f'player{game_id}'})
    for ply in range(n_plies + 1):
      segment.pattern.Insert(key, _P(game_id, ply))
      segment.exact.Insert(bytes(16), _P(game_id, ply))
    segment.sequence.Insert(b'e4', _P(game_id, 0))
  return segment


class TestTakoIndex(unittest.TestCase):
  """Tests for takoindex.py."""

  def test_IndexConfig(self) -> None:
    """Test."""
    config = takoindex.IndexConfig()
    self.assertEqual(config.max_sequence_length, 8)
    self.assertEqual(config.pattern_features, takoencode.ALL_FEATURE_KINDS)
    self.assertEqual(takoindex.IndexConfig.FromJSON(config.ToJSON()), config)
    self.assertDictEqual(
        takoindex.IndexConfig(max_sequence_length=3, pattern_features={'mat', 'ps'}).ToJSON(),
        {'max_sequence_length': 3, 'pattern_features': ['ps', 'mat'], 'shard_size': 1000, 'shard_retries': 2})
    with self.assertRaisesRegex(ValueError, 'must include'):
      takoindex.IndexConfig(pattern_features={'ps', 'occ'})
    with self.assertRaisesRegex(ValueError, 'Unknown'):
      takoindex.IndexConfig(pattern_features={'ps', 'mat', 'foo'})
    with self.assertRaises(ValueError):
      takoindex.IndexConfig(max_sequence_length=-1)
    with self.assertRaises(ValueError):
      takoindex.IndexConfig(shard_size=0)

  def test_PostingsMap(self) -> None:
    """Test."""
    postings_map = takoindex.PostingsMap('pattern')
    postings_map.Insert(b'b', _P(1, 0))
    postings_map.Insert(b'a', _P(1, 1))
    postings_map.Insert(b'a', _P(2, 0))
    with self.assertRaises(takoindex.IndexBuildError):
      postings_map.Insert(b'a', _P(1, 5))  # out of order
    with self.assertRaises(takoindex.IndexBuildError):
      postings_map.Insert(b'a', _P(2, 0))  # duplicate
    self.assertEqual(len(postings_map), 2)
    self.assertListEqual(postings_map.Keys(), [b'a', b'b'])
    self.assertListEqual(list(postings_map.Lookup(b'a')), [(1, 1), (2, 0)])
    self.assertFalse(postings_map.Lookup(b'zz'))
    with self.assertRaises(ValueError):
      takoindex.PostingsMap('bogus')
    # serialization is deterministic and round trips
    data: bytes = postings_map.Serialize()
    self.assertTrue(data.startswith(b'TAKOSEG\x01\x02'))
    self.assertEqual(data, postings_map.Serialize())
    loaded = takoindex.PostingsMap.Parse(data, 'pattern')
    self.assertTrue(loaded.frozen)
    self.assertListEqual(list(loaded.Lookup(b'a')), [(1, 1), (2, 0)])
    self.assertListEqual(list(loaded.Lookup(b'b')), [(1, 0)])
    self.assertEqual(loaded.Serialize(), data)
    with self.assertRaises(takoindex.IndexBuildError):
      loaded.Insert(b'c', _P(3, 0))
    loaded._frozen = False
    with self.assertRaisesRegex(takoindex.IndexBuildError, 'compressed'):
      loaded.Insert(b'a', _P(3, 0))  # compressed blob, not a list
    self.assertListEqual(list(loaded.Lookup(b'a')), [(1, 1), (2, 0)])

  def test_PostingsMap_Corruption(self) -> None:
    """Test."""
    postings_map = takoindex.PostingsMap('exact')
    postings_map.Insert(b'k' * 16, _P(1, 2))
    data: bytes = postings_map.Serialize()
    flipped = bytearray(data)
    flipped[12] ^= 0xFF
    for bad, message in (
        (b'', 'Not a takoyaki'),
        (b'XXXXXXX' + data[7:], 'Not a takoyaki'),
        (bytes(flipped), 'CRC'),
        (data[:-1], 'CRC'),
    ):
      with self.assertRaisesRegex(takoindex.IndexUnavailableError, message):
        takoindex.PostingsMap.Parse(bad, 'exact')
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'not of kind'):
      takoindex.PostingsMap.Parse(data, 'sequence')

  def test_Segment_SaveLoad(self) -> None:
    """Test."""
    segment: takoindex.Segment = _Segment({1: 3, 2: 1})
    self.assertEqual(segment.n_plies, 6)
    self.assertListEqual(list(segment.Universe()), [_P(1, 0), _P(1, 1), _P(1, 2), _P(1, 3), _P(2, 0), _P(2, 1)])
    with self.assertRaises(takoindex.IndexBuildError):
      segment.AddGame(1, 5, {})
    with tempfile.TemporaryDirectory() as temp_dir:
      segment.Save(temp_dir)
      self.assertSetEqual(
          set(os.listdir(temp_dir)), {'exact.tki', 'pattern.tki', 'sequence.tki', 'games.json'})
      with open(os.path.join(temp_dir, 'games.json'), 'rt', encoding='utf-8') as file_obj:
        self.assertDictEqual(json.load(file_obj), {
            'format_version': 1,
            'games': [{'id': 1, 'plies': 3, 'meta': {'white': 'player1'}},
                      {'id': 2, 'plies': 1, 'meta': {'white': 'player2'}}]})
      loaded: takoindex.Segment = takoindex.Segment.Load(temp_dir, 'seg-x')
      self.assertEqual(loaded.segment_id, 'seg-x')
      self.assertDictEqual(loaded.games, segment.games)
      for kind in takoindex.INDEX_KINDS:
        self.assertEqual(loaded.maps[kind].Serialize(), segment.maps[kind].Serialize())
      os.remove(os.path.join(temp_dir, 'sequence.tki'))
      with self.assertRaises(takoindex.IndexUnavailableError):
        takoindex.Segment.Load(temp_dir, 'seg-x')

  def test_MergeSegments(self) -> None:
    """Test."""
    merged: takoindex.Segment = takoindex.MergeSegments([_Segment({3: 1}), _Segment({1: 1, 2: 0})])
    self.assertListEqual(sorted(merged.games), [1, 2, 3])
    self.assertListEqual(
        list(merged.pattern.Lookup(b'ps:Nc3')), [(1, 0), (1, 1), (2, 0), (3, 0), (3, 1)])
    self.assertListEqual(list(merged.sequence.Lookup(b'e4')), [(1, 0), (2, 0), (3, 0)])
    with self.assertRaises(takoindex.IndexBuildError):
      takoindex.MergeSegments([_Segment({1: 1}), _Segment({1: 2})])  # same game twice

  def test_Snapshot_Views(self) -> None:
    """Test."""
    snapshot = takoindex.Snapshot(
        7, [_Segment({1: 1}), _Segment({2: 2}, key=b'ps:Nf3')], takoindex.IndexConfig())
    self.assertEqual(snapshot.n_games, 2)
    self.assertEqual(snapshot.n_positions, 5)
    self.assertListEqual(snapshot.GameIds(), [1, 2])
    self.assertEqual(snapshot.Game(2).n_plies, 2)
    with self.assertRaises(KeyError):
      snapshot.Game(3)
    self.assertListEqual(list(snapshot.Universe()), [_P(1, 0), _P(1, 1), _P(2, 0), _P(2, 1), _P(2, 2)])
    nc3 = takoencode.PatternFeature('ps', 'Nc3')
    nf3 = takoencode.PatternFeature('ps', 'Nf3')
    self.assertListEqual(list(snapshot.pattern.Lookup(nc3)), [(1, 0), (1, 1)])
    self.assertEqual(len(snapshot.pattern.CandidatesFor([nc3, nf3], 'OR')), 5)
    self.assertEqual(len(snapshot.pattern.CandidatesFor([nc3, nf3], 'AND')), 0)
    self.assertEqual(len(snapshot.pattern.CandidatesFor([nc3], 'AND')), 2)
    with self.assertRaises(ValueError):
      snapshot.pattern.CandidatesFor([], 'AND')
    with self.assertRaises(ValueError):
      snapshot.pattern.CandidatesFor([nc3], 'XOR')
    self.assertListEqual(list(snapshot.exact.Lookup(0)), [(1, 0), (1, 1), (2, 0), (2, 1), (2, 2)])
    self.assertListEqual(list(snapshot.sequence.Lookup('e4')), [(1, 0), (2, 0)])
    with self.assertRaises(takoindex.IndexBuildError):
      snapshot.sequence.Insert('e4 e5 Nf3 Nc6 Bb5 a6 Ba4 Nf6 O-O', (9, 0))  # longer than 8
    with self.assertRaisesRegex(takoindex.IndexBuildError, 'read-only'):
      snapshot.sequence.Insert('e4 e5', (9, 0))

  def test_Snapshot_ReadOnly(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    segment: takoindex.Segment = _Segment({1: 1})
    self.assertFalse(segment.frozen)
    store.PublishBase(segment, store.config)
    self.assertTrue(segment.frozen)
    self.assertTrue(all(m.frozen for m in segment.maps.values()))
    with self.assertRaises(takoindex.IndexBuildError):
      segment.AddGame(2, 1, {})
    with self.assertRaises(takoindex.IndexBuildError):
      segment.exact.Insert(bytes(16), _P(99, 0))
    nc3 = takoencode.PatternFeature('ps', 'Nc3')
    with store.Acquire() as snapshot:
      self.assertFalse(snapshot.exact.writable)
      with self.assertRaisesRegex(takoindex.IndexBuildError, 'read-only'):
        snapshot.exact.Insert(0, (99, 0))
      with self.assertRaisesRegex(takoindex.IndexBuildError, 'read-only'):
        snapshot.pattern.Insert(nc3, (99, 0))
      with self.assertRaisesRegex(takoindex.IndexBuildError, 'read-only'):
        snapshot.sequence.Insert('e4', (99, 0))
    # the published generation is unchanged for the next reader
    with store.Acquire() as snapshot:
      self.assertListEqual(list(snapshot.exact.Lookup(0)), [(1, 0), (1, 1)])
      self.assertListEqual(list(snapshot.pattern.Lookup(nc3)), [(1, 0), (1, 1)])
      self.assertListEqual(list(snapshot.sequence.Lookup('e4')), [(1, 0)])
      self.assertListEqual(snapshot.GameIds(), [1])
    # a stand-alone view still takes inserts
    view = takoindex.ExactPositionIndex([takoindex.PostingsMap('exact')])
    view.Insert(5, (3, 1))
    self.assertListEqual(list(view.Lookup(5)), [(3, 1)])

  def test_IndexStore_Memory(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    self.assertEqual(store.generation, 0)
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'no manifest'):
      store._ManifestPath()
    with store.Acquire() as empty:
      self.assertEqual(empty.n_games, 0)
    self.assertEqual(store.PublishBase(_Segment({1: 1}), store.config, sources=[{'path': 'a'}]), 1)
    self.assertListEqual(store.base, ['seg-000001'])
    self.assertListEqual(store.sources, [{'path': 'a'}])
    old: takoindex.Snapshot = store.Acquire()  # hold generation 1
    self.assertEqual(store.AppendRecent(_Segment({2: 1})), 2)
    self.assertListEqual(store.recent, ['seg-000002'])
    with store.Acquire() as snapshot:
      self.assertEqual(snapshot.generation, 2)
      self.assertListEqual(snapshot.GameIds(), [1, 2])
    # readers of generation 1 still see generation 1, and it can be re-acquired while held
    self.assertListEqual(old.GameIds(), [1])
    with store.Acquire(1) as again:
      self.assertListEqual(again.GameIds(), [1])
    self.assertEqual(store.Fold(), 3)
    self.assertListEqual(store.base, ['seg-000003'])
    self.assertListEqual(store.recent, [])
    self.assertEqual(store.Fold(), 3)  # nothing to fold
    # garbage collection spares the held generation 1
    self.assertListEqual(store.CollectGarbage(), ['seg-000002'])
    old.Release()
    old.Release()  # idempotent
    self.assertListEqual(store.CollectGarbage(), ['seg-000001'])
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'not available'):
      store.Acquire(1)
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'not available'):
      store.Acquire(99)
    with store.Acquire() as snapshot:
      self.assertListEqual(snapshot.GameIds(), [1, 2])

  def test_IndexStore_Superseded(self) -> None:
    """Test."""
    store = takoindex.IndexStore()
    store.PublishBase(_Segment({1: 1}), store.config)
    store.PublishBase(_Segment({2: 1}), store.config)
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'superseded'):
      store.Acquire(1)

  def test_IndexStore_Disk(self) -> None:
    """Test."""
    with tempfile.TemporaryDirectory() as temp_dir:
      index_dir: str = os.path.join(temp_dir, 'index')
      with self.assertRaises(takoindex.IndexUnavailableError):
        takoindex.IndexStore(index_dir, readonly=True)  # nothing there
      config = takoindex.IndexConfig(max_sequence_length=4)
      store = takoindex.IndexStore(index_dir, config=config)
      self.assertTrue(os.path.exists(os.path.join(index_dir, 'MANIFEST.json')))
      store.PublishBase(_Segment({1: 2}), config, sources=[{'path': 'x.pgn', 'first_id': 1, 'n_games': 1}])
      store.AppendRecent(_Segment({5: 1}))
      self.assertSetEqual(
          set(os.listdir(index_dir)), {'MANIFEST.json', 'seg-000001', 'seg-000002'})
      # re-open, read only
      reopened = takoindex.IndexStore(index_dir, readonly=True)
      self.assertTrue(reopened.is_readonly)
      self.assertEqual(reopened.generation, 2)
      self.assertEqual(reopened.config, config)
      self.assertListEqual(reopened.sources, [{'path': 'x.pgn', 'first_id': 1, 'n_games': 1}])
      with reopened.Acquire() as snapshot:
        self.assertListEqual(snapshot.GameIds(), [1, 5])
        self.assertListEqual(list(snapshot.sequence.Lookup('e4')), [(1, 0), (5, 0)])
      lines: list[str] = list(reopened.Check())
      self.assertTrue(lines[-1].startswith('Total: 2 games, 5 positions: OK'))
      with self.assertRaises(takoindex.IndexBuildError):
        reopened.Fold()
      # the writer folds, the reader sees it after Refresh()
      store.Fold()
      reopened.Refresh()
      self.assertEqual(reopened.generation, 3)
      self.assertListEqual(reopened.base, ['seg-000003'])
      # a reader never collects garbage
      self.assertListEqual(reopened.CollectGarbage(), [])
      self.assertSetEqual(
          set(os.listdir(index_dir)), {'MANIFEST.json', 'seg-000001', 'seg-000002', 'seg-000003'})
      with reopened.Acquire() as snapshot:
        self.assertListEqual(snapshot.GameIds(), [1, 5])
      self.assertListEqual(store.CollectGarbage(), ['seg-000001', 'seg-000002'])
      self.assertSetEqual(set(os.listdir(index_dir)), {'MANIFEST.json', 'seg-000003'})
      # corrupt the segment: a new process cannot load it
      with open(os.path.join(index_dir, 'seg-000003', 'pattern.tki'), 'r+b') as file_obj:
        file_obj.seek(10)
        file_obj.write(b'\xff\xff\xff')
      with self.assertRaises(takoindex.IndexUnavailableError):
        takoindex.IndexStore(index_dir).Acquire()

  def test_IndexStore_BadManifest(self) -> None:
    """Test."""
    with tempfile.TemporaryDirectory() as temp_dir:
      with open(os.path.join(temp_dir, 'MANIFEST.json'), 'wt', encoding='utf-8') as file_obj:
        file_obj.write('{"format_version": 99}')
      with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'Unsupported index format'):
        takoindex.IndexStore(temp_dir)
      with open(os.path.join(temp_dir, 'MANIFEST.json'), 'wt', encoding='utf-8') as file_obj:
        file_obj.write('not json')
      with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'Cannot read manifest'):
        takoindex.IndexStore(temp_dir)


SUITE: unittest.TestSuite = unittest.TestLoader().loadTestsFromTestCase(TestTakoIndex)


if __name__ == '__main__':
  logging.basicConfig(level=logging.INFO, format=takobase.LOG_FORMAT)  # set this as default
  unittest.main()
