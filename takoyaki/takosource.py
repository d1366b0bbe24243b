#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki move sources: where games come from, and how to replay them for verification.

The engine only needs 2 things from a source: all the games (to index them) and
a way to replay a game into a BoardState (to verify candidates). Here we have an
in-memory source, a PGN files source (plain, .zip or .7z) and a source that
chains others together.
"""

import abc
import dataclasses
import io
import logging
import os
import os.path
import tempfile
import zipfile
from typing import IO, Any, Callable, Generator, Iterable, Iterator, Optional, Union

import chess
import chess.pgn
import py7zr

from takoyaki import takoboard

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


_EMPTY_HEADER_VALUES: set[str] = {
    '?', '??', '???', '????',
    'x', 'xx', 'xxx', 'xxxx',
    '-', '--', '---', '----',
    '*', '**', '***', '****',
    '#', '##', '###', '####',
    '.', '..', '...', '....',
    '????.??.??', 'xxxx.xx.xx', '####.##.##',
    '????.??', 'xxxx.xx', '####.##',
    'n/a', 'unknown', 'none', 'no',
    'no date', 'no name', 'no event',
}
_DATE_ENDING: Callable[[str], bool] = lambda y: any(
    y.endswith(x) for x in ('.??', '.xx', '.XX', '.**', '.##'))


@dataclasses.dataclass(frozen=True)
class Game:
  """A recorded game.

  Attributes:
    game_id: unique positive id
    moves: the move texts, in order (SAN is expected, anything Apply() takes works)
    metadata: {key: value}, keys in lowercase
    starting_fen: (default None == standard chess) the initial position
    parse_error: (default None) if the source could not even read the moves, why
  """
  game_id: int
  moves: tuple[str, ...]
  metadata: dict[str, str] = dataclasses.field(default_factory=dict)
  starting_fen: Optional[str] = None
  parse_error: Optional[str] = None


class MoveSource(abc.ABC):
  """Interface of a source of games."""

  @abc.abstractmethod
  def AllGames(self) -> Iterator[Game]:
    """Lazy, restartable iteration of all games (each call starts over)."""

  @abc.abstractmethod
  def Replay(self, game_id: int, from_ply: int, to_ply: int) -> takoboard.BoardState:
    """Replay `game_id`.

    Returns:
      the BoardState at `from_ply`, with `line` holding the canonical SAN of the
      moves played from `from_ply` up to `to_ply` (clamped at the game end)

    Raises:
      KeyError: unknown game
      ValueError: `from_ply` outside the game
      takoboard.IngestError: the game cannot be replayed
    """

  @abc.abstractmethod
  def Metadata(self, game_id: int) -> dict[str, str]:
    """Game metadata (for display). Raises KeyError on unknown game."""

  def HasGame(self, game_id: int) -> bool:
    try:
      self.Metadata(game_id)
      return True
    except KeyError:
      return False


class GameMoveSource(MoveSource):
  """A source that can fetch any single Game by id; implements Replay() and Metadata() over GetGame()."""

  @abc.abstractmethod
  def GetGame(self, game_id: int) -> Game:
    """The Game. Raises KeyError on unknown game."""

  def Replay(self, game_id: int, from_ply: int, to_ply: int) -> takoboard.BoardState:
    game: Game = self.GetGame(game_id)
    if not 0 <= from_ply <= len(game.moves):
      raise ValueError(f'Game {game_id} has {len(game.moves)} plies, cannot replay from {from_ply}')
    to_ply = min(max(to_ply, from_ply), len(game.moves))
    board: chess.Board = takoboard.StartingBoard(game.starting_fen, game_id=game_id)
    line: list[str] = []
    for n_ply, move_text in enumerate(game.moves[:to_ply]):
      move: chess.Move = takoboard.ParseMove(board, move_text, ply=n_ply + 1)
      if n_ply >= from_ply:
        line.append(takoboard.CanonicalSAN(board, move))
      board.push(move)
    # the state is at `to_ply` now, rewind to `from_ply`
    for _ in range(len(line)):
      board.pop()
    return takoboard.BoardState(board, line=line)

  def Metadata(self, game_id: int) -> dict[str, str]:
    return dict(self.GetGame(game_id).metadata)


class MemoryMoveSource(GameMoveSource):
  """Games held in memory."""

  def __init__(self, games: Iterable[Game] = ()) -> None:
    self._games: dict[int, Game] = {}
    for game in games:
      self.Add(game)

  def Add(self, game: Game) -> None:
    if game.game_id in self._games:
      raise ValueError(f'Duplicate game id {game.game_id}')
    self._games[game.game_id] = game

  def __len__(self) -> int:
    return len(self._games)

  def AllGames(self) -> Iterator[Game]:
    return (self._games[i] for i in sorted(self._games))

  def GetGame(self, game_id: int) -> Game:
    try:
      return self._games[game_id]
    except KeyError:
      raise KeyError(f'Unknown game {game_id}') from None

  def HasGame(self, game_id: int) -> bool:
    return game_id in self._games


def NormalizedHeaders(headers: Iterable[tuple[str, str]]) -> dict[str, str]:
  """Only parsed/relevant content: lowercase keys, no empty/default values, no '.??' date endings."""
  normalized: dict[str, str] = {}
  for k, v in headers:
    v = v.strip()
    v = v[:-3] if _DATE_ENDING(v) else v
    v = v[:-3] if _DATE_ENDING(v) else v  # second time to take care of '1992.??.??'
    if not v or v.lower() in _EMPTY_HEADER_VALUES:
      continue  # skip any empty or default value
    normalized[k.lower()] = v
  return normalized


class _MainlineVisitor(chess.pgn.BaseVisitor[Game]):
  """Collects headers and the mainline move texts of one game, without validating them.

  Moves are only checked at replay time (takoboard.ParseMove), so an illegal
  move is kept as text and the game gets its proper error category there.
  """

  def __init__(self, game_id: int) -> None:
    self._game_id: int = game_id
    self._headers: list[tuple[str, str]] = []
    self._moves: list[str] = []
    self._in_move: bool = False
    self._parse_error: Optional[str] = None

  def visit_header(self, tagname: str, tagvalue: str) -> None:
    self._headers.append((tagname, tagvalue))

  def begin_variation(self) -> chess.pgn.SkipType:
    return chess.pgn.SKIP  # only the mainline matters

  def parse_san(self, board: chess.Board, san: str) -> chess.Move:
    if (token := takoboard.NormalizeMoveText(san)):
      self._moves.append(token)
    self._in_move = True
    move: chess.Move = super().parse_san(board, san)
    self._in_move = False
    return move

  def handle_error(self, error: Exception) -> None:
    if self._in_move:
      # read_game() drops the rest of the mainline; the bad move text is the last one kept
      self._in_move = False
      logging.debug('Game %d, ply %d: %s', self._game_id, len(self._moves), error)
      return
    self._parse_error = str(error)  # bad FEN or variant: the game is unreadable

  def result(self) -> Game:
    metadata: dict[str, str] = NormalizedHeaders(self._headers)
    starting_fen: Optional[str] = metadata.pop('fen', None)
    metadata.pop('setup', None)
    return Game(
        game_id=self._game_id, moves=tuple(self._moves), metadata=metadata,
        starting_fen=starting_fen, parse_error=self._parse_error)


def ParsePGNGame(pgn: str, game_id: int) -> Game:
  """Parse the text of one PGN game (the first game in `pgn`, if there are many).

  A text with no game, or with a header that makes it unreadable (bad FEN),
  gives a Game with `parse_error` set.
  """
  game: Optional[Game] = chess.pgn.read_game(
      io.StringIO(pgn), Visitor=lambda: _MainlineVisitor(game_id))
  if game is None:
    return Game(game_id=game_id, moves=(), parse_error='No PGN game found')
  return game


def _UnzipZipFile(in_file: Union[str, IO[bytes]], out_file: IO[Any]) -> None:
  """Unzips `in_file` to `out_file`. Raises BadZipFile if error."""
  logging.info('Unzipping file as ZIP')
  with zipfile.ZipFile(in_file, 'r') as zip_ref:
    # for simplicity, assume there's only one PGN inside.
    pgn_file_name: str = zip_ref.namelist()[0]
    with zip_ref.open(pgn_file_name) as pgn_file:
      out_file.write(pgn_file.read())


def _UnzipSevenZFile(in_file: str, out_file: IO[Any]) -> None:
  logging.info('Unzipping file as 7z')
  with py7zr.SevenZipFile(in_file, mode='r') as svz_ref:
    files: Optional[dict[str, IO[Any]]] = svz_ref.read()
    if files:
      if len(files) > 1:
        raise NotImplementedError('7z file had more than one file')
      for _, file_obj in files.items():
        out_file.write(file_obj.read())
        break


def _SplitPGN(file_path: str) -> Generator[tuple[int, int], None, None]:
  """A very rough splitting of a PGN file into individual games, yields (start_offset, end_offset)."""
  start: Optional[int] = None
  end: int = 0
  saw_game: bool = False
  offset: int = 0
  with open(file_path, 'rb') as file_in:
    for raw_line in file_in:
      line: bytes = raw_line.strip()
      line_start: int = offset
      offset += len(raw_line)
      if not line:
        continue
      if line.startswith(b'['):
        # we have a header line
        if start is not None and saw_game:
          # we have a header+game in the lines, so we output it and restart
          yield (start, end)
          start, saw_game = None, False
      else:
        saw_game = True
      if start is None:
        start = line_start
      end = offset
  # if file didn't end with an empty line, you may have a last game to process:
  if start is not None:
    yield (start, end)


class PGNMoveSource(GameMoveSource):
  """Games from PGN files; game ids are sequential, in file order, from `first_game_id`.

  Archives (.zip, .7z) are extracted to a temporary file, removed by Close().
  """

  def __init__(self, paths: Union[str, list[str]], first_game_id: int = 1) -> None:
    """Constructor.

    Args:
      paths: one path or a list of paths (.pgn, .zip or .7z)
      first_game_id: (default 1) id of the first game of the first file
    """
    self.paths: list[str] = [paths] if isinstance(paths, str) else list(paths)
    if not self.paths:
      raise ValueError('No PGN paths given')
    if first_game_id < 1:
      raise ValueError(f'Invalid first game id {first_game_id}')
    self.first_game_id: int = first_game_id
    self._extracted: dict[str, str] = {}  # {archive path: extracted temp path}
    self._offsets: Optional[dict[int, tuple[str, int, int]]] = None  # {game_id: (path, start, end)}

  def __enter__(self) -> 'PGNMoveSource':
    return self

  def __exit__(self, *unused_args: Any) -> None:
    self.Close()

  def Close(self) -> None:
    """Remove any extracted temporary files."""
    for temp_path in self._extracted.values():
      if os.path.exists(temp_path):
        os.remove(temp_path)
    self._extracted = {}

  def _PlainPath(self, path: str) -> str:
    """Path to a plain PGN for `path`, extracting archives once."""
    lower_path: str = path.lower()
    if not lower_path.endswith(('.zip', '.7z')):
      return path
    if path not in self._extracted:
      fd, temp_path = tempfile.mkstemp(prefix='takoyaki-', suffix='.pgn')
      with os.fdopen(fd, 'wb') as out_file:
        if lower_path.endswith('.zip'):
          _UnzipZipFile(path, out_file)
        else:
          _UnzipSevenZFile(path, out_file)
      self._extracted[path] = temp_path
    return self._extracted[path]

  def _Scan(self) -> Generator[tuple[int, str, int, int], None, None]:
    """Yields (game_id, plain_path, start, end) for every game, recording offsets."""
    offsets: dict[int, tuple[str, int, int]] = {}
    game_id: int = self.first_game_id
    for path in self.paths:
      plain_path: str = self._PlainPath(path)
      logging.info('Reading PGN %r', path)
      for start, end in _SplitPGN(plain_path):
        offsets[game_id] = (plain_path, start, end)
        yield (game_id, plain_path, start, end)
        game_id += 1
    self._offsets = offsets

  def _Offsets(self) -> dict[int, tuple[str, int, int]]:
    if self._offsets is None:
      self._offsets = {game_id: (path, start, end) for game_id, path, start, end in self._Scan()}
    return self._offsets

  @property
  def n_games(self) -> int:
    return len(self._Offsets())

  def _ReadGame(self, game_id: int, path: str, start: int, end: int) -> Game:
    with open(path, 'rb') as file_in:
      file_in.seek(start)
      pgn: str = file_in.read(end - start).decode('utf-8', errors='replace')
    return ParsePGNGame(pgn, game_id)

  def AllGames(self) -> Iterator[Game]:
    for game_id, path, start, end in self._Scan():
      yield self._ReadGame(game_id, path, start, end)

  def GetGame(self, game_id: int) -> Game:
    offsets: dict[int, tuple[str, int, int]] = self._Offsets()
    if game_id not in offsets:
      raise KeyError(f'Unknown game {game_id}')
    return self._ReadGame(game_id, *offsets[game_id])

  def HasGame(self, game_id: int) -> bool:
    return game_id in self._Offsets()


class ChainMoveSource(MoveSource):
  """Several sources, with disjoint game ids, as one."""

  def __init__(self, sources: Iterable[MoveSource]) -> None:
    self.sources: list[MoveSource] = list(sources)

  def AllGames(self) -> Iterator[Game]:
    for source in self.sources:
      yield from source.AllGames()

  def _SourceFor(self, game_id: int) -> MoveSource:
    for source in self.sources:
      if source.HasGame(game_id):
        return source
    raise KeyError(f'Unknown game {game_id}')

  def Replay(self, game_id: int, from_ply: int, to_ply: int) -> takoboard.BoardState:
    return self._SourceFor(game_id).Replay(game_id, from_ply, to_ply)

  def Metadata(self, game_id: int) -> dict[str, str]:
    return self._SourceFor(game_id).Metadata(game_id)

  def HasGame(self, game_id: int) -> bool:
    return any(s.HasGame(game_id) for s in self.sources)

  def Close(self) -> None:
    for source in self.sources:
      if isinstance(source, PGNMoveSource):
        source.Close()
