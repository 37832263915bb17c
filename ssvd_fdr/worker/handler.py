"""Command/event boundary around the eFDR engine.

The host sends messages ``{"type", "id", "data"}`` and receives events
through an ``emit`` callable:

- ``progress``: ``{current, total, message}``, repeatedly during a run;
- exactly one terminal event per run: ``result``, ``error``
  (``{message, kind, trace}``) or ``cancelled`` (with the partial results);
- ``pong`` for a liveness check and ``cancelled`` acknowledging a cancel.

Every progress event is also handed to an optional progress store as a
display snapshot; the analysis never reads it back.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from typing import Any, Callable, Dict, Mapping, Optional, Set

import numpy as np

from ssvd_fdr.common.config import DEFAULT_BATCH_SIZE, Command, PermutationScheme
from ssvd_fdr.common.errors import AnalysisCancelled, InvalidInput, UnknownCommand
from ssvd_fdr.common.logging_utils import get_logger
from ssvd_fdr.common.scheduling import AnalysisContext, CancellationToken, ProgressEvent
from ssvd_fdr.fdr.core import estimate_fdr_at_level, sweep_fdr
from ssvd_fdr.ssvd.core import SingularTriplet
from ssvd_fdr.worker.progress_store import ProgressStore, build_snapshot

logger = get_logger(__name__)

Event = Dict[str, Any]
Emit = Callable[[Event], None]

RUN_COMMANDS = {Command.RUN_SWEEP.value, Command.RUN_SINGLE_LEVEL.value}


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise InvalidInput(f"request is missing '{key}'")
    return data[key]


def _parse_triplet(raw: Optional[Mapping[str, Any]]) -> Optional[SingularTriplet]:
    if raw is None:
        return None
    try:
        return SingularTriplet(
            u=np.asarray(raw["u"], dtype=np.float64),
            s=float(raw["s"]),
            v=np.asarray(raw["v"], dtype=np.float64),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidInput(f"initial_svd must provide numeric u, s and v: {exc}") from exc


class AnalysisWorker:
    """Dispatch commands to the eFDR engine and report through events.

    Parameters
    ----------
    emit:
        Callable receiving every outgoing event dictionary.
    store:
        Optional progress store receiving a snapshot per progress event.
    clock:
        Wall-clock source in seconds, replaceable in tests.
    """

    def __init__(self, emit: Emit, store: Optional[ProgressStore] = None, clock: Callable[[], float] = time.time) -> None:
        self.emit = emit
        self.store = store
        self.clock = clock
        # One token per worker: a cancel stops whichever run is active.
        self.token = CancellationToken()

    async def handle(self, message: Mapping[str, Any]) -> None:
        """Process one message; never raises."""

        msg_type = message.get("type")
        msg_id = message.get("id")
        data = message.get("data") or {}
        try:
            try:
                command = Command(msg_type)
            except ValueError:
                raise UnknownCommand(f"Unknown message type: {msg_type}") from None

            if command is Command.RUN_SWEEP:
                await self._run_sweep(msg_id, data)
            elif command is Command.RUN_SINGLE_LEVEL:
                await self._run_single_level(msg_id, data)
            elif command is Command.CANCEL:
                self.token.cancel()
                self.emit({"type": "cancelled", "id": msg_id})
            elif command is Command.LIVENESS_CHECK:
                self.emit({"type": "pong", "id": msg_id})
        except AnalysisCancelled as exc:
            logger.info("Request %s cancelled", msg_id)
            self.emit({"type": "cancelled", "id": msg_id, "data": exc.partial})
        except Exception as exc:
            logger.exception("Request %s failed", msg_id)
            self.emit(
                {
                    "type": "error",
                    "id": msg_id,
                    "data": {
                        "message": str(exc),
                        "kind": getattr(exc, "kind", type(exc).__name__),
                        "trace": traceback.format_exc(),
                    },
                }
            )

    async def serve(self, queue: "asyncio.Queue[Optional[Mapping[str, Any]]]") -> None:
        """Handle messages from ``queue`` until a ``None`` sentinel arrives.

        Runs are started as tasks so that ``cancel`` and ``liveness-check``
        messages are answered while an analysis is in progress.
        """

        running: Set[asyncio.Task] = set()
        self.emit({"type": "ready"})
        while True:
            message = await queue.get()
            if message is None:
                break
            if message.get("type") in RUN_COMMANDS:
                task = asyncio.create_task(self.handle(message))
                running.add(task)
                task.add_done_callback(running.discard)
            else:
                await self.handle(message)
        if running:
            await asyncio.gather(*running)

    def _context(self, msg_id: Any, data: Mapping[str, Any], started_at: float) -> AnalysisContext:
        matrix = data.get("matrix")
        shape = np.shape(matrix) if matrix is not None else (0, 0)
        analysis_data = {
            "alpha_values": data.get("n_alpha"),
            "permutations": data.get("n_perm"),
            "matrix_size": f"{shape[0] if len(shape) > 0 else 0}×{shape[1] if len(shape) > 1 else 0}",
        }

        def on_progress(event: ProgressEvent) -> None:
            self.emit({"type": "progress", "id": msg_id, "data": event.as_dict()})
            if self.store is not None:
                now = self.clock()
                self.store.save(build_snapshot(event, now=now, started_at=started_at, analysis_data=analysis_data))

        return AnalysisContext.from_token(self.token, progress=on_progress)

    def _start(self, data: Mapping[str, Any]) -> float:
        self.token.reset()
        started_at = data.get("analysis_start_time")
        return float(started_at) if started_at is not None else self.clock()

    async def _run_sweep(self, msg_id: Any, data: Mapping[str, Any]) -> None:
        started_at = self._start(data)
        context = self._context(msg_id, data, started_at)
        result = await sweep_fdr(
            _require(data, "matrix"),
            alpha0=float(_require(data, "alpha0")),
            alpha_max=float(_require(data, "alpha_max")),
            n_alpha=int(_require(data, "n_alpha")),
            n_perm=int(_require(data, "n_perm")),
            nsupp=int(_require(data, "nsupp")),
            initial_svd=_parse_triplet(data.get("initial_svd")),
            patterns=data.get("fixed_patterns"),
            scheme=PermutationScheme(data.get("scheme", PermutationScheme.COLUMNS.value)),
            context=context,
            seed=data.get("seed"),
            batch_size=int(data.get("batch_size", DEFAULT_BATCH_SIZE)),
        )
        event_type = "cancelled" if result.cancelled else "result"
        self.emit({"type": event_type, "id": msg_id, "data": result.to_dict()})

    async def _run_single_level(self, msg_id: Any, data: Mapping[str, Any]) -> None:
        started_at = self._start(data)
        context = self._context(msg_id, data, started_at)
        alpha_max = data.get("alpha_max")
        result = await estimate_fdr_at_level(
            _require(data, "matrix"),
            alpha=float(_require(data, "alpha")),
            original_detections=int(_require(data, "original_detections")),
            n_perm=int(_require(data, "n_perm")),
            nsupp=int(_require(data, "nsupp")),
            alpha_max=float(alpha_max) if alpha_max is not None else None,
            patterns=data.get("fixed_patterns"),
            scheme=PermutationScheme(data.get("scheme", PermutationScheme.COLUMNS.value)),
            context=context,
            seed=data.get("seed"),
            batch_size=int(data.get("batch_size", DEFAULT_BATCH_SIZE)),
        )
        self.emit({"type": "result", "id": msg_id, "data": result.to_dict()})
