"""Worker boundary: command dispatch, events and progress persistence."""

from ssvd_fdr.worker.handler import AnalysisWorker
from ssvd_fdr.worker.progress_store import JsonlProgressStore, MemoryProgressStore, ProgressStore, build_snapshot

__all__ = [
    "AnalysisWorker",
    "JsonlProgressStore",
    "MemoryProgressStore",
    "ProgressStore",
    "build_snapshot",
]
