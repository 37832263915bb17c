"""Timing utilities for analyses and progress reporting.

These helpers provide wall-clock timing of blocks and the human-readable
elapsed / remaining time strings attached to progress snapshots.
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass
from typing import Callable, Generator, Tuple, TypeVar

T = TypeVar("T")

CALCULATING = "Calculating..."


@dataclass
class TimerResult:
    """Result of a timed execution block.

    Attributes
    ----------
    seconds : float
        Elapsed wall-clock time in seconds.
    """

    seconds: float


@contextlib.contextmanager
def timer() -> Generator[TimerResult, None, None]:
    """Context manager for wall-clock timing.

    Example
    -------
    >>> with timer() as t:
    ...     do_work()
    >>> print(t.seconds)
    """

    start = time.perf_counter()
    result = TimerResult(seconds=0.0)
    try:
        yield result
    finally:
        end = time.perf_counter()
        result.seconds = float(end - start)


def time_function(func: Callable[[], T]) -> Tuple[T, TimerResult]:
    """Time a zero-argument function and return its result and timing."""

    with timer() as t:
        value = func()
    return value, t


def format_elapsed(seconds: float) -> str:
    """Format a duration as ``"1h 2m 3s"``, ``"2m 5s"`` or ``"4s"``.

    Non-positive or missing durations format as ``"0s"``.
    """

    if not seconds or seconds < 0:
        return "0s"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def estimate_remaining(current: int, total: int, elapsed_seconds: float) -> str:
    """Extrapolate the remaining time from the completion rate so far.

    Parameters
    ----------
    current, total:
        Completed and total work units.
    elapsed_seconds:
        Wall-clock time spent on the ``current`` completed units.

    Returns
    -------
    str
        ``"Calculating..."`` until a rate is known, otherwise ``"42s"``,
        ``"7m"`` or ``"2h 5m"``.
    """

    if current <= 0 or total <= 0 or elapsed_seconds <= 0:
        return CALCULATING

    remaining = max(total - current, 0) * elapsed_seconds / current
    if remaining < 60:
        return f"{round(remaining)}s"
    if remaining < 3600:
        return f"{round(remaining / 60)}m"
    hours, rest = divmod(remaining, 3600)
    return f"{int(hours)}h {round(rest / 60)}m"
