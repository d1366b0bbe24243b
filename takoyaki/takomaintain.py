#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki maintain index.

takomaintain.py

This module performs various maintenance tasks on a Takoyaki index via
subcommands:

Subcommands:
  1) "print"
     Prints the manifest and the indexed games.
     -p/--games <N>  : how many games to print (default 1000; 0 => no limit)

  2) "fold"
     Merges the recent segments (from incremental ingestion) into a new base.

  3) "gc"
     Deletes segments no longer referenced by the current generation.

  4) "check"
     Loads every segment of the current generation and verifies checksums and postings.

You can run:
  ./takomaintain.py print -p 20
  ./takomaintain.py fold
  ./takomaintain.py gc
  ./takomaintain.py check

In all commands, you can pass:
  -x/--index dir      : The index directory (default: ~/.takoyaki/index).
  -r/--readonly bool  : If True, do not change the index.
"""

import argparse
import logging
# import pdb

from takoyaki import takobase
from takoyaki import takobuild
from takoyaki import takoindex
from takoyaki import takoingest

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_DEFAULT_LINES_PRINTED: int = 1000


def _PrintIndex(store: takoindex.IndexStore, max_games: int) -> None:
  print(f'Generation {store.generation}: base {store.base}, recent {store.recent}')
  print(f'Config: {store.config!r}')
  for source in store.sources:
    print(f'Source {source["path"]!r}: {source["n_games"]} games from id {source["first_id"]}')
  print()
  with store.Acquire() as snapshot:
    print(f'{snapshot.n_games} games, {snapshot.n_positions} positions')
    print()
    for i, (game_id, entry) in enumerate(snapshot.Games()):
      if max_games and i >= max_games:
        print()
        print(f'Reached games limit: {i}')
        break
      headers: str = ', '.join(f'{k}: {v}' for k, v in sorted(entry.metadata.items()))
      print(f'{game_id}: {entry.n_plies} plies; {headers}')


def Main() -> None:
  """Main TakoMaintain."""
  # parse the input arguments, add subparser for `command`
  parser: argparse.ArgumentParser = argparse.ArgumentParser()
  command_arg_subparsers = parser.add_subparsers(dest='command')
  # "print" command
  print_parser: argparse.ArgumentParser = command_arg_subparsers.add_parser(
      'print', help='Print index manifest and games')
  print_parser.add_argument(
      '-p', '--games', type=int, default=_DEFAULT_LINES_PRINTED,
      help='Maximum number of games to print; 0 == infinite '
           f'(default: {_DEFAULT_LINES_PRINTED})')
  # "fold" command
  command_arg_subparsers.add_parser('fold', help='Merge recent segments into the base')
  # "gc" command
  command_arg_subparsers.add_parser('gc', help='Delete unreferenced segments')
  # "check" command
  command_arg_subparsers.add_parser('check', help='Run index check')
  # ALL commands
  parser.add_argument(
      '-x', '--index', type=str, default=takoingest.DEFAULT_INDEX_DIR,
      help=f'index directory (default: {takoingest.DEFAULT_INDEX_DIR!r})')
  parser.add_argument(
      '-r', '--readonly', type=bool, default=False,
      help='If "True" will not change the index (default: False)')
  args: argparse.Namespace = parser.parse_args()
  index_readonly = bool(args.readonly)
  # start
  print(f'{takobase.TERM_BLUE}{takobase.TERM_BOLD}***********************************************')
  print(f'**        {takobase.TERM_LIGHT_RED}Takoyaki Maintain Index{takobase.TERM_BLUE}            **')
  print('**   balparda@gmail.com (Daniel Balparda)    **')
  print(f'***********************************************{takobase.TERM_END}')
  success_message: str = f'{takobase.TERM_WARNING}premature end? user paused?'
  try:
    # creates objects
    store = takoindex.IndexStore(args.index.strip(), readonly=index_readonly)
    # execute the index commands
    print()
    with takobase.Timer() as op_timer:
      # "print" command
      if args.command == 'print':
        _PrintIndex(store, args.games)
      # "fold" command
      elif args.command == 'fold':
        print(f'Folding recent segments {store.recent} into base {store.base}')
        generation: int = takobuild.Indexer(store).Fold()
        print(f'Now at generation {generation}')
      # "gc" command
      elif args.command == 'gc':
        print('Starting segment garbage collection')
        deleted: list[str] = store.CollectGarbage()
        print(f'{len(deleted)} segments deleted: {deleted}')
      # "check" command
      elif args.command == 'check':
        print('Starting index check')
        for line in store.Check():
          print(line)
        print('Index check ended')
      # no valid command
      else:
        parser.print_help()
      print()
      print()
    print(f'Executed in {takobase.TERM_GREEN}{op_timer.readable}{takobase.TERM_END}')
    print()
    success_message = f'{takobase.TERM_GREEN}success'
  except Exception as err:
    success_message = f'{takobase.TERM_FAIL}error: {err}'
    raise
  finally:
    print(f'{takobase.TERM_BLUE}{takobase.TERM_BOLD}THE END: {success_message}{takobase.TERM_END}')


if __name__ == '__main__':
  logging.basicConfig(level=logging.INFO, format=takobase.LOG_FORMAT)  # set this as default
  Main()
