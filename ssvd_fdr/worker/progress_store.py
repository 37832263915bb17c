"""Progress snapshots for display and background resumption.

Stores only receive snapshots; nothing in the analysis reads them back, and a
store that fails to write is logged and otherwise ignored.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ssvd_fdr.common.logging_utils import append_jsonl, get_logger
from ssvd_fdr.common.scheduling import ProgressEvent
from ssvd_fdr.common.timing import estimate_remaining, format_elapsed

logger = get_logger(__name__)


def build_snapshot(
    event: ProgressEvent,
    now: float,
    started_at: Optional[float] = None,
    analysis_data: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Expand a progress event into a display snapshot.

    Parameters
    ----------
    event:
        The progress event being reported.
    now:
        Current wall-clock time in seconds since the epoch.
    started_at:
        When the analysis started; enables elapsed and remaining time.
    analysis_data:
        Request summary (grid size, permutations, matrix size).
    """

    percentage = round(event.current / event.total * 100) if event.total > 0 else 0
    elapsed = now - started_at if started_at is not None else 0.0
    snapshot: Dict[str, Any] = {
        "current": event.current,
        "total": event.total,
        "message": event.message,
        "timestamp": now,
        "percentage": percentage,
        "estimated_time_remaining": estimate_remaining(event.current, event.total, elapsed),
        "analysis_data": dict(analysis_data or {}),
    }
    if started_at is not None:
        snapshot["elapsed_time"] = elapsed
        snapshot["elapsed_time_formatted"] = format_elapsed(elapsed)
    return snapshot


class ProgressStore(ABC):
    """Destination for progress snapshots."""

    @abstractmethod
    def save(self, snapshot: Mapping[str, Any]) -> None:
        """Persist one snapshot; implementations must not raise."""


class MemoryProgressStore(ProgressStore):
    """Keep snapshots in a list, newest last."""

    def __init__(self) -> None:
        self.snapshots: List[Dict[str, Any]] = []

    def save(self, snapshot: Mapping[str, Any]) -> None:
        self.snapshots.append(dict(snapshot))

    @property
    def latest(self) -> Optional[Dict[str, Any]]:
        return self.snapshots[-1] if self.snapshots else None


class JsonlProgressStore(ProgressStore):
    """Append snapshots to a JSONL file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, snapshot: Mapping[str, Any]) -> None:
        try:
            append_jsonl(self.path, snapshot)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Progress storage failed: %s", exc)
