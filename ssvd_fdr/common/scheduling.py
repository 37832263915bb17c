"""Cooperative scheduling, cancellation and progress reporting.

Long analyses run as coroutines on a single event loop. They hand control
back at explicit yield points (between permutation batches and every few
hundred SSVD iterations) and poll the cancellation signal at batch and level
boundaries. Both operations go through a :class:`Scheduler`, and the
scheduler together with the progress sink travels in an
:class:`AnalysisContext` passed to every operation; there is no module-level
state.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ssvd_fdr.common.errors import AnalysisCancelled


class CancellationToken:
    """Cancellation flag set by the caller and polled by the analysis.

    Parameters
    ----------
    predicate:
        Optional extra callable; the token reports cancelled as soon as
        either :meth:`cancel` was called or the predicate returns true.
    """

    def __init__(self, predicate: Optional[Callable[[], bool]] = None) -> None:
        # Event rather than a bare bool so the flag may be set from another thread.
        self._event = threading.Event()
        self._predicate = predicate

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._predicate is not None and bool(self._predicate())


class Scheduler(ABC):
    """Yield-point and cancellation-check operations used by the algorithms."""

    @abstractmethod
    async def yield_point(self) -> None:
        """Suspend the current coroutine so the host can run other work."""

    @abstractmethod
    def is_cancelled(self) -> bool:
        """Return whether the caller asked the analysis to stop."""


class CooperativeScheduler(Scheduler):
    """Scheduler for a single asyncio event loop."""

    def __init__(self, token: Optional[CancellationToken] = None) -> None:
        self.token = token if token is not None else CancellationToken()

    async def yield_point(self) -> None:
        await asyncio.sleep(0)

    def is_cancelled(self) -> bool:
        return self.token.cancelled


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update: ``current`` of ``total`` work units done."""

    current: int
    total: int
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total, "message": self.message}


ProgressSink = Callable[[ProgressEvent], None]


class AnalysisContext:
    """Scheduler and progress sink shared by one analysis request.

    Parameters
    ----------
    scheduler:
        Yield/cancellation provider; defaults to a :class:`CooperativeScheduler`
        with a fresh token.
    progress:
        Optional callable receiving :class:`ProgressEvent` instances.
    """

    def __init__(self, scheduler: Optional[Scheduler] = None, progress: Optional[ProgressSink] = None) -> None:
        self.scheduler = scheduler if scheduler is not None else CooperativeScheduler()
        self.progress = progress

    @classmethod
    def from_token(cls, token: CancellationToken, progress: Optional[ProgressSink] = None) -> "AnalysisContext":
        return cls(scheduler=CooperativeScheduler(token), progress=progress)

    @property
    def cancelled(self) -> bool:
        return self.scheduler.is_cancelled()

    async def checkpoint(self) -> None:
        await self.scheduler.yield_point()

    def raise_if_cancelled(self, partial: Optional[Dict[str, Any]] = None) -> None:
        """Raise :class:`AnalysisCancelled` carrying ``partial`` if cancellation was requested."""

        if self.scheduler.is_cancelled():
            raise AnalysisCancelled(partial=partial)

    def report(self, current: int, total: int, message: str) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(current=current, total=total, message=message))
