#!/usr/bin/python3 -bb
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
# pylint: disable=invalid-name,protected-access
"""takoquery.py unittest."""

import logging
# import pdb
import unittest

from takoyaki import takobase
from takoyaki import takoboard
from takoyaki import takobuild
from takoyaki import takoencode
from takoyaki import takoindex
from takoyaki import takopostings
from takoyaki import takoquery
from takoyaki import takosource
from takoyaki import takotql

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_Game = takosource.Game

# only game #2 reaches the position after 1.e4 e5 2.Nf3
_GAMES: list[takosource.Game] = [
    _Game(1, ('d4', 'd5', 'c4'), {'result': '1/2-1/2', 'white': 'alpha', 'whiteelo': '2400'}),
    _Game(2, ('e4', 'e5', 'Nf3', 'Nc6'), {'result': '0-1', 'white': 'beta', 'whiteelo': '2510'}),
    _Game(3, ('e4', 'c5', 'Nf3'), {'result': '1-0', 'white': 'Alphonse'}),
]


def _Index(
    games: list[takosource.Game],
    config: takoindex.IndexConfig = takoindex.IndexConfig()) -> tuple[takoindex.IndexStore,
                                                                      takosource.MemoryMoveSource]:
  source = takosource.MemoryMoveSource(games)
  store = takoindex.IndexStore()
  takobuild.Indexer(store, config=config).Build(source)
  return (store, source)


def _Occurrences(hits: list[takoquery.SearchHit]) -> list[tuple[int, int]]:
  return [tuple(h.occurrence) for h in hits]  # type:ignore


class TestTakoQuery(unittest.TestCase):
  """Tests for takoquery.py."""

  def setUp(self) -> None:
    """Set up."""
    self.store, self.source = _Index(_GAMES)

  def _Search(self, tql: str, **kwargs) -> list[tuple[int, int]]:
    return _Occurrences(takoquery.Search(self.store, self.source, tql, **kwargs))

  def test_SequenceEnds(self) -> None:
    """Test."""
    moves: tuple[str, ...] = ('e4', 'e5', 'Nf3', 'Nc6', 'Bb5')
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4', 'e5'),), 8), {2})
    self.assertSetEqual(takoquery.SequenceEnds(moves, 1, (('e4', 'e5'),), 8), set())
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4', None, 'Nf3'),), 8), {3})
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4',), ('Bb5',)), 8), {5})
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4',), ('Bb5',)), 2), set())
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4',), (None,)), 1), {2, 3})
    self.assertSetEqual(takoquery.SequenceEnds(moves, 3, (('Nc6', 'Bb5', 'a6'),), 8), set())
    # a move spelled differently from the game only matches through the resolver
    self.assertSetEqual(takoquery.SequenceEnds(moves, 0, (('e4', 'e5', 'Ngf3'),), 8), set())
    self.assertSetEqual(
        takoquery.SequenceEnds(moves, 0, (('e4', 'e5', 'Ngf3'),), 8, lambda ply, _: ply == 2), {3})
    self.assertSetEqual(
        takoquery.SequenceEnds(moves, 0, (('e4', 'd5'),), 8, lambda *_: True), set())  # not disambiguated

  def test_Sequence(self) -> None:
    """Test."""
    self.assertListEqual(self._Search('sequence("e4 e5 Nf3")'), [(2, 3)])
    self.assertListEqual(self._Search('sequence("1.e4 e5 2.Nf3")'), [(2, 3)])
    self.assertListEqual(self._Search('sequence("e4")'), [(2, 1), (3, 1)])
    self.assertListEqual(self._Search('sequence("Nf3")'), [(2, 3), (3, 3)])
    self.assertListEqual(self._Search('sequence("e4 * Nf3")'), [(2, 3), (3, 3)])
    self.assertListEqual(self._Search('sequence("* d5")'), [(1, 2)])
    self.assertListEqual(self._Search('sequence("Nc6 Bb5")'), [])
    self.assertListEqual(self._Search('sequence("Nc6 *")'), [])  # beyond the end of the game
    # gaps
    self.assertListEqual(self._Search('sequence("e4 ... Nf3")'), [(2, 3), (3, 3)])
    self.assertListEqual(
        self._Search('sequence("e4 ... Nf3")', query_config=takotql.QueryConfig(max_gap=0)), [])
    self.assertListEqual(self._Search('sequence("d4 ... c4")'), [(1, 3)])
    self.assertListEqual(self._Search('sequence("* ... Nc6")'), [(2, 4)])

  def test_Sequence_Disambiguated(self) -> None:
    """Test."""
    for tql in ('sequence("e4 e5 Nf3")', 'sequence("e4 e5 Ngf3")',
                'sequence("1.e4 e5 2.Ng1f3")', 'sequence("e4 e5 N1f3")'):
      self.assertListEqual(self._Search(tql), [(2, 3)], msg=tql)
    self.assertListEqual(self._Search('sequence("Ngf3")'), [(2, 3), (3, 3)])
    self.assertListEqual(self._Search('sequence("e4 e5 Ngf3 Nbc6")'), [(2, 4)])
    self.assertListEqual(self._Search('sequence("e4 ... Ngf3 Nc6")'), [(2, 4)])
    self.assertListEqual(self._Search('sequence("e4 e5 Nbf3")'), [])  # not the knight that moved
    self.assertListEqual(self._Search('sequence("e4 e5 Ngf3 Nbd7")'), [])  # illegal

  def test_Sequence_LongerThanIndexed(self) -> None:
    """Test."""
    store, source = _Index(_GAMES, takoindex.IndexConfig(max_sequence_length=2))
    for tql, segments in (
        ('sequence("e4 e5 Nf3 Nc6")', (('e4', 'e5', 'Nf3', 'Nc6'),)),
        ('sequence("e4 * Nf3")', (('e4', None, 'Nf3'),)),
        ('sequence("e5 Nf3 ... Nc6")', (('e5', 'Nf3'), ('Nc6',))),
    ):
      # brute force: every begin ply of every game
      expected: list[tuple[int, int]] = sorted(
          (g.game_id, end) for g in _GAMES for begin in range(len(g.moves))
          for end in takoquery.SequenceEnds(g.moves, begin, segments, takotql.DEFAULT_MAX_GAP))
      self.assertListEqual(_Occurrences(takoquery.Search(store, source, tql)), expected, msg=tql)
    # no sequence index at all: still answered, by replaying everything
    store, source = _Index(_GAMES, takoindex.IndexConfig(max_sequence_length=0))
    self.assertListEqual(_Occurrences(takoquery.Search(store, source, 'sequence("e4 e5 Nf3")')), [(2, 3)])

  def test_Exact(self) -> None:
    """Test."""
    with self.store.Acquire() as snapshot:
      executor = takoquery.QueryExecutor(snapshot, self.source)
      for game in _GAMES:
        state = takoboard.BoardState.FromFEN()
        for ply in range(len(game.moves) + 1):
          if ply:
            state = takoboard.Apply(state, game.moves[ply - 1])
          results: list[takopostings.Occurrence] = executor.Execute(
              takotql.Compile(f'position("{state.fen}")', snapshot.config))
          self.assertIn((game.game_id, ply), results)
          for result in results:
            self.assertEqual(executor.StateAt(result), state)
    # the starting position is the first position of every game
    self.assertListEqual(
        self._Search('position("rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1")'),
        [(1, 0), (2, 0), (3, 0)])
    # transposition: different move orders, same position
    store, source = _Index([
        _Game(1, ('Nf3', 'Nf6', 'Nc3')), _Game(2, ('Nc3', 'Nf6', 'Nf3'))])
    self.assertListEqual(
        _Occurrences(takoquery.Search(
            store, source, 'position("r1bqkb1r/pppppppp/5n2/8/8/2N2N2/PPPPPPPP/R1BQKB1R b KQkq - 3 2")')),
        [])  # no game loses the b8 knight
    self.assertListEqual(
        _Occurrences(takoquery.Search(
            store, source, 'position("rnbqkb1r/pppppppp/5n2/8/8/2N2N2/PPPPPPPP/R1BQKB1R b KQkq - 3 2")')),
        [(1, 3), (2, 3)])

  def test_Pattern(self) -> None:
    """Test."""
    self.assertListEqual(self._Search('position("Nf3")'), [(2, 3), (2, 4), (3, 3)])
    self.assertListEqual(self._Search('position("Nf3 b")'), [(2, 3), (3, 3)])
    # overlapping OR: each occurrence once
    self.assertListEqual(
        self._Search('position("Nf3") OR position("Nf3 b") OR sequence("Nf3")'),
        [(2, 3), (2, 4), (3, 3)])
    self.assertListEqual(self._Search('position("Pc4 pd5")'), [(1, 3)])
    self.assertListEqual(self._Search('position("-e2 -d2")'), [])
    self.assertListEqual(self._Search('position("-e2 pe5")'), [(2, 2), (2, 3), (2, 4)])
    self.assertListEqual(self._Search('position("p=7 b")'), [])
    self.assertListEqual(self._Search('position("n>=1 nc6")'), [(2, 4)])
    self.assertListEqual(self._Search('position("*c5 w")'), [(3, 2)])
    # nothing indexable: every position is a candidate
    self.assertListEqual(self._Search('position("?a1 -d4 -e4")'), [(1, 0), (2, 0), (3, 0)])

  def test_Meta_Not(self) -> None:
    """Test."""
    self.assertListEqual(self._Search('meta(result, "=", "1-0")'), [(3, 0), (3, 1), (3, 2), (3, 3)])
    self.assertListEqual(
        self._Search('meta("WhiteElo", ">", 2450) AND sequence("e4")'), [(2, 1)])
    self.assertListEqual(
        self._Search('meta(white, "~", "alph") AND position("Nf3")'), [(3, 3)])
    self.assertListEqual(
        self._Search('sequence("e4") AND NOT meta(result, "=", "1-0")'), [(2, 1)])
    not_nf3: list[tuple[int, int]] = self._Search('NOT position("Nf3")')
    self.assertEqual(len(not_nf3), 13 - 3)
    self.assertNotIn((2, 3), not_nf3)
    self.assertIn((2, 2), not_nf3)
    # a verified right side: only sure matches are subtracted
    self.assertListEqual(
        self._Search('position("Nf3") AND NOT position("Nf3 w")'), [(2, 3), (3, 3)])
    self.assertListEqual(
        self._Search('(position("Nf3") OR sequence("d4")) AND NOT meta(white, "=", "beta")'),
        [(1, 1), (3, 3)])

  def test_Limit_Laziness(self) -> None:
    """Test."""
    self.assertListEqual(self._Search('NOT position("Nf3")', limit=2), [(1, 0), (1, 1)])
    self.assertListEqual(self._Search('NOT position("Nf3")', limit=0), [])
    with self.store.Acquire() as snapshot:
      executor = takoquery.QueryExecutor(snapshot, self.source)
      plan: takotql.QueryPlan = takotql.Compile('position("Nf3")', snapshot.config)
      self.assertListEqual(executor.Execute(plan, limit=1), [(2, 3)])
      self.assertEqual(executor.verifications, 1)
      executor = takoquery.QueryExecutor(snapshot, self.source)
      self.assertEqual(len(executor.Execute(plan)), 3)
      self.assertEqual(executor.verifications, 3)
      self.assertEqual(executor._cache.replays, 2)  # each game replayed once
      # lossless sequence lookups need no replay at all
      executor = takoquery.QueryExecutor(snapshot, self.source)
      executor.Execute(takotql.Compile('sequence("e4 e5")', snapshot.config))
      self.assertEqual(executor.verifications, 0)
      self.assertEqual(executor._cache.replays, 0)

  def test_Cancellation(self) -> None:
    """Test."""
    token = takoquery.CancellationToken()
    self.assertFalse(token.cancelled)
    token.Check()
    token.Cancel()
    self.assertTrue(token.cancelled)
    with self.assertRaises(takoquery.QueryCancelledError):
      token.Check()
    with self.assertRaises(takoquery.QueryCancelledError):
      takoquery.Search(self.store, self.source, 'position("Nf3")', cancel=token)
    # mid-stream
    with self.store.Acquire() as snapshot:
      executor = takoquery.QueryExecutor(
          snapshot, self.source, takotql.QueryConfig(cancel_check_every=1))
      token = takoquery.CancellationToken()
      stream = executor.Stream(takotql.Compile('NOT position("Nf3")', snapshot.config), cancel=token)
      self.assertEqual(next(stream), (1, 0))
      token.Cancel()
      with self.assertRaises(takoquery.QueryCancelledError):
        next(stream)

  def test_Search_Resolve(self) -> None:
    """Test."""
    hits: list[takoquery.SearchHit] = takoquery.Search(
        self.store, self.source, 'sequence("e4 e5 Nf3")', resolve=True)
    self.assertEqual(len(hits), 1)
    self.assertEqual(hits[0].occurrence, takopostings.Occurrence(2, 3))
    self.assertEqual(
        hits[0].state, takoboard.BoardState.FromFEN(
            'rnbqkbnr/pppp1ppp/8/4p3/4P3/5N2/PPPP1PPP/RNBQKB1R b KQkq - 1 2'))
    self.assertDictEqual(hits[0].metadata or {}, _GAMES[1].metadata)
    self.assertIsNone(takoquery.Search(self.store, self.source, 'sequence("e4 e5 Nf3")')[0].state)
    with self.assertRaises(takotql.QuerySyntaxError):
      takoquery.Search(self.store, self.source, 'position(')

  def test_Generations(self) -> None:
    """Test."""
    old: takoindex.Snapshot = self.store.Acquire()
    takobuild.Indexer(self.store).Ingest([_Game(4, ('e4', 'e5', 'Nf3', 'Nf6'))])
    self.source.Add(_Game(4, ('e4', 'e5', 'Nf3', 'Nf6')))
    self.assertListEqual(self._Search('sequence("e4 e5 Nf3")'), [(2, 3), (4, 3)])
    self.assertListEqual(self._Search('sequence("e4 e5 Nf3")', generation=1), [(2, 3)])
    old.Release()
    with self.assertRaises(takoindex.IndexUnavailableError):
      self._Search('sequence("e4 e5 Nf3")', generation=1)

  def test_Source_Mismatch(self) -> None:
    """Test."""
    missing = takosource.MemoryMoveSource([_GAMES[0], _GAMES[2]])
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'Game 2'):
      takoquery.Search(self.store, missing, 'position("Nf3")')
    shorter = takosource.MemoryMoveSource([_GAMES[0], _Game(2, ('e4', 'e5')), _GAMES[2]])
    with self.assertRaisesRegex(takoindex.IndexUnavailableError, 'Game 2'):
      takoquery.Search(self.store, shorter, 'position("Nf3")')

  def test_CandidateCount(self) -> None:
    """Test."""
    F = takoencode.PatternFeature
    with self.store.Acquire() as snapshot:
      features: list[takoencode.PatternFeature] = [F('ps', 'Nf3'), F('turn', 'b'), F('ps', 'pe5')]
      counts: list[int] = [
          takoquery.CandidateCount(snapshot, features[:n]) for n in range(1, len(features) + 1)]
      self.assertListEqual(counts, [3, 2, 1])
      for pattern_text in ('Nf3', 'Nf3 b', 'Nf3 b pe5', 'Nf3 b pe5 Pe4'):
        pattern = takoencode.ParsePosition(pattern_text)
        assert isinstance(pattern, takoencode.Pattern)  # nosec
        # every verified match was a candidate
        matches: int = len(takoquery.Search(self.store, self.source, f'position("{pattern_text}")'))
        candidates: int = len(snapshot.pattern.CandidatesFor(
            [f for g in pattern.RequiredFeatureGroups() for f in g], 'AND'))
        self.assertLessEqual(matches, candidates, msg=pattern_text)


SUITE: unittest.TestSuite = unittest.TestLoader().loadTestsFromTestCase(TestTakoQuery)


if __name__ == '__main__':
  logging.basicConfig(level=logging.INFO, format=takobase.LOG_FORMAT)  # set this as default
  unittest.main()
