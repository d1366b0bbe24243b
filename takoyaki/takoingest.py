#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki ingest PGNs.

takoingest.py

This module indexes PGN files (plain, .zip or .7z, from a local file or a
directory) into a Takoyaki index. By default it does a full build, replacing
whatever the index had; with -a/--append the games are added incrementally on
top of the current generation (their game ids continue after the indexed ones).

Typical usage:
  ./takoingest.py -x /path/to/index -f /path/to/local/games.pgn
    - Reads a local .pgn file and builds the index from it.

  ./takoingest.py -x /path/to/index -d /path/to/pgnfiles/ -n 8
    - Recursively reads all .pgn/.zip/.7z files in the directory
      and indexes them with 8 worker processes.

  ./takoingest.py -x /path/to/index -f /path/to/new-games.pgn -a True
    - Appends the new games to the existing index.

Optional arguments:
  -x/--index : The index directory (default: ~/.takoyaki/index).
  -f/--file : A single local PGN file.
  -d/--dir : A directory containing multiple PGN files.
  -n/--workers : Number of worker processes for full builds.
  -m/--maxsequence : Longest move run indexed (new indexes/full builds only).
  -a/--append : If set to True, ingest incrementally instead of rebuilding.
"""

import argparse
import logging
import os
import os.path
# import pdb
from typing import Any, Optional

from takoyaki import takobase
from takoyaki import takobuild
from takoyaki import takoindex
from takoyaki import takosource

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


DEFAULT_INDEX_DIR: str = os.path.join(os.path.expanduser('~'), '.takoyaki', 'index')
_PGN_EXTENSIONS: tuple[str, ...] = ('.pgn', '.zip', '.7z')


def _FilesFromDirectory(dir_path: str) -> list[str]:
  """All PGN files (and archives) under `dir_path`, in a stable order."""
  file_paths: list[str] = []
  for dirpath, _, filenames in sorted(os.walk(dir_path)):
    logging.info('Reading files from %r', dirpath)
    for file_name in sorted(filenames):
      if file_name.lower().endswith(_PGN_EXTENSIONS):
        file_paths.append(os.path.join(dirpath, file_name))
  return file_paths


def _SourcesFor(file_paths: list[str], first_game_id: int) -> tuple[
    takosource.ChainMoveSource, list[dict[str, Any]]]:
  """One PGNMoveSource per file, with consecutive game ids, plus their manifest records."""
  sources: list[takosource.PGNMoveSource] = []
  records: list[dict[str, Any]] = []
  next_id: int = first_game_id
  for file_path in file_paths:
    source = takosource.PGNMoveSource(os.path.abspath(file_path), first_game_id=next_id)
    sources.append(source)
    records.append({'path': os.path.abspath(file_path), 'first_id': next_id, 'n_games': source.n_games})
    next_id += source.n_games
  return (takosource.ChainMoveSource(sources), records)


def Main() -> None:
  """Main TakoIngest."""
  # parse the input arguments, do some basic checks
  parser: argparse.ArgumentParser = argparse.ArgumentParser()
  parser.add_argument(
      '-x', '--index', type=str, default=DEFAULT_INDEX_DIR,
      help=f'index directory (default: {DEFAULT_INDEX_DIR!r})')
  parser.add_argument(
      '-f', '--file', type=str, default='',
      help='local file to load from (default: empty)')
  parser.add_argument(
      '-d', '--dir', type=str, default='',
      help='local dir to load from (default: empty)')
  parser.add_argument(
      '-n', '--workers', type=int, default=1,
      help='number of worker processes for full builds (default: 1 == no extra processes)')
  parser.add_argument(
      '-m', '--maxsequence', type=int, default=takoindex.DEFAULT_MAX_SEQUENCE_LENGTH,
      help='longest move run in the move-sequence index, for full builds '
           f'(default: {takoindex.DEFAULT_MAX_SEQUENCE_LENGTH})')
  parser.add_argument(
      '-a', '--append', type=bool, default=False,
      help='If "True" will ingest incrementally on top of the current index (default: False)')
  args: argparse.Namespace = parser.parse_args()
  index_dir: str = args.index.strip()
  local_file_path: str = args.file.strip()
  local_dir_path: str = args.dir.strip()
  if not local_file_path and not local_dir_path:
    raise ValueError('must have -f/--file or -d/--dir to load from')
  if not index_dir:
    raise ValueError('must have -x/--index')
  append = bool(args.append)
  # start
  print(f'{takobase.TERM_BLUE}{takobase.TERM_BOLD}***********************************************')
  print(f'**         {takobase.TERM_LIGHT_RED}Takoyaki ingest PGNs{takobase.TERM_BLUE}              **')
  print('**   balparda@gmail.com (Daniel Balparda)    **')
  print(f'***********************************************{takobase.TERM_END}')
  success_message: str = f'{takobase.TERM_WARNING}premature end? user paused?'
  source: Optional[takosource.ChainMoveSource] = None
  try:
    # creates objects
    file_paths: list[str] = [local_file_path] if local_file_path else _FilesFromDirectory(local_dir_path)
    if not file_paths:
      raise ValueError(f'No PGN files found in {local_dir_path!r}')
    config = takoindex.IndexConfig(max_sequence_length=args.maxsequence)
    store = takoindex.IndexStore(index_dir, config=config)
    first_game_id: int = 1
    if append:
      with store.Acquire() as snapshot:
        game_ids: list[int] = snapshot.GameIds()
      first_game_id = max(
          [int(s['first_id']) + int(s['n_games']) for s in store.sources] + [g + 1 for g in game_ids] + [1])
    source, records = _SourcesFor(file_paths, first_game_id)
    indexer = takobuild.Indexer(store, config=config, num_workers=args.workers)
    # execute the indexing
    print()
    with takobase.Timer() as op_timer:
      report: takobuild.BuildReport = (
          indexer.Ingest(source.AllGames(), sources=records) if append else
          indexer.Build(source, sources=records))
      print()
      print(f'Indexed: {report}')
      for error in report.errors:
        print(f'  skipped game {error.game_id} ({error.category.name}): {error.message}')
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
