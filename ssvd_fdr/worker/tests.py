"""Worker command/event tests."""

from __future__ import annotations

import asyncio
import json

import numpy as np

from ssvd_fdr.common.scheduling import CancellationToken, ProgressEvent
from ssvd_fdr.common.timing import CALCULATING
from ssvd_fdr.fdr.experiments import planted_signal_matrix
from ssvd_fdr.worker.handler import AnalysisWorker
from ssvd_fdr.worker.progress_store import JsonlProgressStore, MemoryProgressStore, build_snapshot


def _sweep_request(**overrides):
    data = {
        "matrix": planted_signal_matrix(30, 5, 3, offset=1.0, noise=0.1, seed=0).tolist(),
        "alpha0": 0.1,
        "alpha_max": 0.3,
        "n_alpha": 3,
        "n_perm": 2,
        "nsupp": 3,
        "seed": 0,
        "batch_size": 2,
    }
    data.update(overrides)
    return data


def _handle(worker: AnalysisWorker, message) -> None:
    asyncio.run(worker.handle(message))


def test_liveness_check_answers_pong() -> None:
    events = []
    _handle(AnalysisWorker(events.append), {"type": "liveness-check", "id": 1})
    assert events == [{"type": "pong", "id": 1}]


def test_unknown_command_reports_single_error() -> None:
    events = []
    _handle(AnalysisWorker(events.append), {"type": "bogus", "id": 2})
    assert len(events) == 1
    error = events[0]
    assert error["type"] == "error" and error["id"] == 2
    assert error["data"]["kind"] == "UnknownCommand"
    assert error["data"]["message"] == "Unknown message type: bogus"
    assert "Traceback" in error["data"]["trace"]


def test_cancel_sets_worker_token() -> None:
    events = []
    worker = AnalysisWorker(events.append)
    _handle(worker, {"type": "cancel", "id": 3})
    assert events == [{"type": "cancelled", "id": 3}]
    assert worker.token.cancelled


def test_sweep_emits_progress_then_one_result() -> None:
    events = []
    store = MemoryProgressStore()
    worker = AnalysisWorker(events.append, store=store, clock=lambda: 100.0)
    _handle(worker, {"type": "run-sweep", "id": "s", "data": _sweep_request(analysis_start_time=90.0)})

    assert all(e["id"] == "s" for e in events)
    assert [e["type"] for e in events[:-1]] == ["progress"] * (len(events) - 1)
    result = events[-1]
    assert result["type"] == "result"
    assert len(result["data"]["alpha_values"]) == 3
    assert all(0.0 <= f <= 100.0 for f in result["data"]["fdr_values"])
    assert not result["data"]["cancelled"]

    snapshot = store.latest
    assert len(store.snapshots) == len(events) - 1
    assert snapshot["percentage"] == 100
    assert snapshot["elapsed_time"] == 10.0
    assert snapshot["elapsed_time_formatted"] == "10s"
    assert snapshot["analysis_data"] == {"alpha_values": 3, "permutations": 2, "matrix_size": "30×5"}


def test_single_level_emits_fraction_result() -> None:
    events = []
    data = _sweep_request(alpha=0.3, original_detections=3, n_perm=4)
    _handle(AnalysisWorker(events.append), {"type": "run-single-level", "id": 4, "data": data})

    result = events[-1]
    assert result["type"] == "result"
    assert 0.0 <= result["data"]["efdr"] <= 1.0
    assert result["data"]["n_perm"] == 4
    assert events[0]["data"]["message"] == "Starting permutation testing..."


def test_missing_parameter_reports_invalid_input() -> None:
    events = []
    data = _sweep_request()
    del data["nsupp"]
    _handle(AnalysisWorker(events.append), {"type": "run-sweep", "id": 5, "data": data})
    assert [e["type"] for e in events] == ["error"]
    assert events[0]["data"]["kind"] == "InvalidInput"


def test_malformed_matrix_reports_invalid_input() -> None:
    events = []
    _handle(AnalysisWorker(events.append), {"type": "run-sweep", "id": 6, "data": _sweep_request(matrix=[["a", "b"]])})
    assert events[-1]["type"] == "error"
    assert events[-1]["data"]["kind"] == "InvalidInput"


def test_cancelled_single_level_reports_partial() -> None:
    events = []
    worker = AnalysisWorker(events.append)
    # A predicate survives the reset at the start of each run.
    worker.token = CancellationToken(predicate=lambda: True)
    data = _sweep_request(alpha=0.3, original_detections=3)
    _handle(worker, {"type": "run-single-level", "id": 7, "data": data})

    terminal = events[-1]
    assert terminal["type"] == "cancelled"
    assert terminal["data"]["completed"] == 0
    assert terminal["data"]["original_detections"] == 3


def test_serve_cancel_stops_running_sweep() -> None:
    events = []

    async def scenario() -> None:
        queue: asyncio.Queue = asyncio.Queue()
        sent = False

        def emit(event) -> None:
            nonlocal sent
            events.append(event)
            if event["type"] == "progress" and not sent:
                sent = True
                queue.put_nowait({"type": "cancel", "id": "c"})
                queue.put_nowait(None)

        worker = AnalysisWorker(emit)
        queue.put_nowait({"type": "run-sweep", "id": "run", "data": _sweep_request(batch_size=1)})
        await worker.serve(queue)

    asyncio.run(scenario())

    assert events[0] == {"type": "ready"}
    assert {"type": "cancelled", "id": "c"} in events
    terminal = [e for e in events if e.get("id") == "run" and e["type"] != "progress"]
    assert len(terminal) == 1
    assert terminal[0]["type"] == "cancelled"
    assert terminal[0]["data"]["cancelled"]
    assert len(terminal[0]["data"]["alpha_values"]) < 3


def test_build_snapshot_without_rate() -> None:
    snapshot = build_snapshot(ProgressEvent(current=0, total=0, message="idle"), now=5.0)
    assert snapshot["percentage"] == 0
    assert snapshot["estimated_time_remaining"] == CALCULATING
    assert "elapsed_time" not in snapshot

    snapshot = build_snapshot(ProgressEvent(current=1, total=4, message="a"), now=20.0, started_at=10.0)
    assert snapshot["percentage"] == 25
    assert snapshot["estimated_time_remaining"] == "30s"


def test_jsonl_store_appends_and_tolerates_failures(tmp_path) -> None:
    store = JsonlProgressStore(tmp_path / "progress" / "log.jsonl")
    store.save({"current": np.int64(1), "total": 2, "values": np.array([0.5, 1.0])})
    store.save({"current": 2, "total": 2})
    lines = (tmp_path / "progress" / "log.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["current"] for line in lines] == [1, 2]
    assert json.loads(lines[0])["values"] == [0.5, 1.0]

    # A directory cannot be opened for appending; the failure is only logged.
    JsonlProgressStore(tmp_path).save({"current": 1})


if __name__ == "__main__":  # pragma: no cover - manual execution
    test_liveness_check_answers_pong()
    test_unknown_command_reports_single_error()
    test_sweep_emits_progress_then_one_result()
    print("Worker tests passed.")
