#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki shared base: root exception, logging format, timers and terminal helpers."""

import functools
import logging
import time
from typing import Any, Callable, Optional, TypeVar

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)


# log format used by every `__main__` entry point
LOG_FORMAT: str = '%(asctime)-15s: %(module)s/%(funcName)s/%(lineno)d: %(message)s'

# terminal colors
TERM_BLUE = '\033[94m'
TERM_GREEN = '\033[92m'
TERM_WARNING = '\033[93m'
TERM_FAIL = '\033[91m'
TERM_LIGHT_RED = '\033[91m'
TERM_END = '\033[0m'
TERM_BOLD = '\033[1m'

_F = TypeVar('_F', bound=Callable[..., Any])


class Error(Exception):
  """Base takoyaki exception."""


def HumanizedSeconds(seconds: float) -> str:
  """Elapsed time in a readable unit: 0.0012 -> '1.200 ms', 3700 -> '1.03 h'."""
  if seconds < 0:
    raise ValueError(f'Negative time: {seconds}')
  if seconds == 0:
    return '0.00 s'
  if seconds < 0.001:
    return f'{seconds * 1000000.0:0.3f} µs'
  if seconds < 1.0:
    return f'{seconds * 1000.0:0.3f} ms'
  if seconds < 60.0:
    return f'{seconds:0.2f} s'
  if seconds < 3600.0:
    return f'{seconds / 60.0:0.2f} min'
  if seconds < 86400.0:
    return f'{seconds / 3600.0:0.2f} h'
  return f'{seconds / 86400.0:0.2f} days'


class Timer:
  """Context manager that measures wall time; `readable` has the humanized value."""

  def __init__(self) -> None:
    self.start: Optional[float] = None
    self.end: Optional[float] = None

  def __enter__(self) -> 'Timer':
    self.start = time.perf_counter()
    return self

  def __exit__(self, *unused_args: Any) -> None:
    self.end = time.perf_counter()

  @property
  def elapsed(self) -> float:
    """Seconds elapsed; if still running, up to now."""
    if self.start is None:
      raise Error('Timer was never started')
    return (time.perf_counter() if self.end is None else self.end) - self.start

  @property
  def readable(self) -> str:
    return HumanizedSeconds(self.elapsed)


def Timed(message: str) -> Callable[[_F], _F]:
  """Decorator that logs how long the decorated call took."""

  def _Decorator(func: _F) -> _F:

    @functools.wraps(func)
    def _Wrapper(*args: Any, **kwargs: Any) -> Any:
      with Timer() as timer:
        result: Any = func(*args, **kwargs)
      logging.info('%s: executed in %s', message, timer.readable)
      return result

    return _Wrapper  # type:ignore

  return _Decorator
