#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki search.

takosearch.py

Runs one TQL query against a Takoyaki index and prints the matching
(game, ply) occurrences. The games are read back (for verification) from the
PGN files registered in the index manifest.

Typical usage:
  ./takosearch.py -q 'sequence("e4 e5 Nf3") AND meta(result, "=", "1-0")'
  ./takosearch.py -q 'position("Nc3 Nf3 b")' -l 20 -b True
  ./takosearch.py -q 'position("K=1 k=1 material=KRPvkr")' -e True

Optional arguments:
  -x/--index : The index directory (default: ~/.takoyaki/index).
  -q/--query : The TQL query.
  -l/--limit : Most results to print (0 == no limit).
  -g/--generation : Query an older generation (if still available).
  -b/--board : If "True", also print the board and game headers of each result.
  -e/--explain : If "True", only print the query plan.
"""

import argparse
import logging
# import pdb
from typing import Optional

from takoyaki import takobase
from takoyaki import takoindex
from takoyaki import takoingest
from takoyaki import takoquery
from takoyaki import takosource
from takoyaki import takotql

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_DEFAULT_LIMIT: int = 100


def SourceForStore(store: takoindex.IndexStore) -> takosource.ChainMoveSource:
  """Re-open the PGN sources registered in the manifest of `store`."""
  return takosource.ChainMoveSource(
      takosource.PGNMoveSource(s['path'], first_game_id=int(s['first_id'])) for s in store.sources)


def _PrintHit(hit: takoquery.SearchHit, print_board: bool) -> None:
  print(f'game {hit.occurrence.game_id}, ply {hit.occurrence.ply}')
  if print_board and hit.state is not None:
    print(f'  {hit.state.fen}')
    if hit.metadata:
      print('  ' + ', '.join(f'{k}: {v}' for k, v in sorted(hit.metadata.items())))
    print()
    print(hit.state.Board().unicode(empty_square='·'))
    print()


def Main() -> None:
  """Main TakoSearch."""
  # parse the input arguments, do some basic checks
  parser: argparse.ArgumentParser = argparse.ArgumentParser()
  parser.add_argument(
      '-x', '--index', type=str, default=takoingest.DEFAULT_INDEX_DIR,
      help=f'index directory (default: {takoingest.DEFAULT_INDEX_DIR!r})')
  parser.add_argument(
      '-q', '--query', type=str, default='',
      help='TQL query, like \'position("Nc3") AND sequence("e4 e5")\'')
  parser.add_argument(
      '-l', '--limit', type=int, default=_DEFAULT_LIMIT,
      help=f'Maximum number of results; 0 == infinite (default: {_DEFAULT_LIMIT})')
  parser.add_argument(
      '-g', '--generation', type=int, default=0,
      help='Generation to query (default: 0 == current)')
  parser.add_argument(
      '-b', '--board', type=bool, default=False,
      help='If "True" will show the board and game headers of each result (default: False)')
  parser.add_argument(
      '-e', '--explain', type=bool, default=False,
      help='If "True" will only show the query plan (default: False)')
  args: argparse.Namespace = parser.parse_args()
  query: str = args.query.strip()
  if not query:
    raise ValueError('must have -q/--query')
  if args.limit < 0:
    raise ValueError(f'Invalid limit {args.limit}')
  # start
  print(f'{takobase.TERM_BLUE}{takobase.TERM_BOLD}***********************************************')
  print(f'**              {takobase.TERM_LIGHT_RED}Takoyaki search{takobase.TERM_BLUE}              **')
  print('**   balparda@gmail.com (Daniel Balparda)    **')
  print(f'***********************************************{takobase.TERM_END}')
  success_message: str = f'{takobase.TERM_WARNING}premature end? user paused?'
  source: Optional[takosource.ChainMoveSource] = None
  try:
    # creates objects
    store = takoindex.IndexStore(args.index.strip(), readonly=True)
    print()
    with takobase.Timer() as op_timer:
      if args.explain:
        print(takotql.Compile(query, store.config).Explain())
      else:
        source = SourceForStore(store)
        hits: list[takoquery.SearchHit] = takoquery.Search(
            store, source, query, limit=args.limit or None,
            generation=args.generation or None, resolve=bool(args.board))
        for hit in hits:
          _PrintHit(hit, bool(args.board))
        print()
        print(f'{len(hits)} results{" (limit reached)" if args.limit and len(hits) >= args.limit else ""}')
    print()
    print(f'Executed in {takobase.TERM_GREEN}{op_timer.readable}{takobase.TERM_END}')
    print()
    success_message = f'{takobase.TERM_GREEN}success'
  except Exception as err:
    success_message = f'{takobase.TERM_FAIL}error: {err}'
    raise
  finally:
    if source is not None:
      source.Close()
    print(f'{takobase.TERM_BLUE}{takobase.TERM_BOLD}THE END: {success_message}{takobase.TERM_END}')


if __name__ == '__main__':
  logging.basicConfig(level=logging.INFO, format=takobase.LOG_FORMAT)  # set this as default
  Main()
