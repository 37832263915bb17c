"""Permutation eFDR tests.

The planted matrices below keep noise rows under ``0.1 * sqrt(cols)`` so that,
at the alphas used, only the planted rows survive thresholding.
"""

from __future__ import annotations

import asyncio
import json

import numpy as np
import pandas as pd
import pytest

from ssvd_fdr.common.config import PermutationScheme, SweepConfig
from ssvd_fdr.common.errors import AnalysisCancelled, InvalidInput
from ssvd_fdr.common.resampling import generate_fixed_patterns
from ssvd_fdr.common.scheduling import AnalysisContext, CancellationToken
from ssvd_fdr.fdr import core as fdr_core
from ssvd_fdr.fdr.core import LevelResult, estimate_fdr_at_level, sweep_fdr
from ssvd_fdr.fdr.experiments import (
    load_matrix,
    main,
    planted_signal_matrix,
    run_fixed_pattern_comparison,
    run_sweep_experiment,
)


def _matrix(rows: int = 40, cols: int = 6, signal_rows: int = 4, seed: int = 0) -> np.ndarray:
    return planted_signal_matrix(rows, cols, signal_rows, offset=1.0, noise=0.1, seed=seed)


def _cancelled_context() -> AnalysisContext:
    token = CancellationToken()
    token.cancel()
    return AnalysisContext.from_token(token)


# ----------------------------------------------------------------------------
# Single level
# ----------------------------------------------------------------------------

def test_single_level_efdr_is_a_bounded_fraction() -> None:
    x = _matrix()
    result = asyncio.run(estimate_fdr_at_level(x, alpha=0.3, original_detections=4, n_perm=6, nsupp=4, seed=0))

    assert 0.0 <= result.efdr <= 1.0
    assert result.pi0 == pytest.approx(36 / 40)
    assert result.n_perm == 6
    assert result.avg_perm_detections == pytest.approx(result.total_perm_detections / 6)
    # alpha_max defaults to 2 * alpha, i.e. a ratio of one half.
    assert result.budget is not None and result.budget.max_iter == 150
    assert result.to_dict()["budget"] == {"max_iter": 150, "tolerance": 0.001}


def test_fixed_row_patterns_keep_the_planted_support() -> None:
    x = _matrix()
    patterns = generate_fixed_patterns(4, x.shape[0], seed=1)
    result = asyncio.run(
        estimate_fdr_at_level(x, alpha=0.3, original_detections=4, n_perm=4, nsupp=4, patterns=patterns)
    )

    # A row permutation only reorders the planted rows, so every trial finds them.
    assert result.avg_perm_detections == pytest.approx(4.0)
    assert result.efdr == pytest.approx(0.9)


def test_single_level_without_detections_has_zero_efdr() -> None:
    result = asyncio.run(estimate_fdr_at_level(_matrix(), alpha=0.3, original_detections=0, n_perm=2, nsupp=4, seed=0))
    assert result.efdr == 0.0


def test_single_level_progress_messages() -> None:
    events = []
    context = AnalysisContext(progress=events.append)
    asyncio.run(
        estimate_fdr_at_level(_matrix(), alpha=0.3, original_detections=4, n_perm=6, nsupp=4, context=context, seed=0)
    )

    assert events[0].current == 0 and events[0].message == "Starting permutation testing..."
    assert events[-1].current == events[-1].total == 6
    assert events[-1].message == "100% complete (6/6 permutations)"
    assert [e.current for e in events] == sorted(e.current for e in events)


def test_single_level_cancelled_before_start() -> None:
    with pytest.raises(AnalysisCancelled) as info:
        asyncio.run(
            estimate_fdr_at_level(
                _matrix(), alpha=0.3, original_detections=4, n_perm=4, nsupp=4, context=_cancelled_context(), seed=0
            )
        )
    assert info.value.partial["completed"] == 0
    assert info.value.partial["n_perm"] == 4


def test_single_level_cancelled_midway_reports_partial_totals() -> None:
    events = []
    token = CancellationToken(predicate=lambda: len(events) >= 2)
    context = AnalysisContext.from_token(token, progress=events.append)

    x = _matrix()
    # Fixed row patterns make every trial detect exactly the four planted rows.
    patterns = generate_fixed_patterns(8, x.shape[0], seed=2)

    with pytest.raises(AnalysisCancelled) as info:
        asyncio.run(
            estimate_fdr_at_level(
                x, alpha=0.3, original_detections=4, n_perm=8, nsupp=4,
                patterns=patterns, context=context, batch_size=2,
            )
        )
    partial = info.value.partial
    assert 0 < partial["completed"] < 8
    assert partial["original_detections"] == 4
    assert partial["failed_trials"] == 0
    assert partial["total_perm_detections"] == 4 * partial["completed"], partial


def test_failed_trials_count_as_zero_detections(monkeypatch) -> None:
    def overflow(*args, **kwargs):
        raise FloatingPointError("overflow in resampled matrix")

    monkeypatch.setattr(fdr_core, "_resample", overflow)
    result = asyncio.run(estimate_fdr_at_level(_matrix(), alpha=0.3, original_detections=4, n_perm=3, nsupp=4, seed=0))

    assert result.failed_trials == 3
    assert result.avg_perm_detections == 0.0
    assert result.efdr == 0.0


def test_invalid_input_inside_a_trial_is_not_swallowed(monkeypatch) -> None:
    def bad(*args, **kwargs):
        raise InvalidInput("bad pattern")

    monkeypatch.setattr(fdr_core, "_resample", bad)
    with pytest.raises(InvalidInput):
        asyncio.run(estimate_fdr_at_level(_matrix(), alpha=0.3, original_detections=4, n_perm=2, nsupp=4, seed=0))


def test_single_level_rejects_bad_parameters() -> None:
    x = _matrix()
    with pytest.raises(InvalidInput):
        asyncio.run(estimate_fdr_at_level(x, alpha=0.3, original_detections=4, n_perm=0, nsupp=4))
    with pytest.raises(InvalidInput):
        asyncio.run(estimate_fdr_at_level(x, alpha=0.3, original_detections=4, n_perm=2, nsupp=41))
    with pytest.raises(InvalidInput):
        asyncio.run(estimate_fdr_at_level(x, alpha=-1.0, original_detections=4, n_perm=2, nsupp=4))
    with pytest.raises(InvalidInput):
        asyncio.run(
            estimate_fdr_at_level(x, alpha=0.3, original_detections=4, n_perm=2, nsupp=4, patterns=[list(range(40))])
        )


# ----------------------------------------------------------------------------
# Sweep
# ----------------------------------------------------------------------------

def test_sweep_shapes_bounds_and_gradients() -> None:
    events = []
    result = asyncio.run(
        sweep_fdr(
            _matrix(), alpha0=0.05, alpha_max=0.5, n_alpha=4, n_perm=3, nsupp=4,
            context=AnalysisContext(progress=events.append), seed=1,
        )
    )

    assert not result.cancelled
    assert result.alpha_values == pytest.approx([0.05, 0.2, 0.35, 0.5])
    assert len(result.results) == 4
    assert result.total_runs == 4 * (1 + 3)
    assert all(0.0 <= f <= 100.0 for f in result.fdr_values)
    assert result.gradients[0] == 0
    counts = result.detection_counts
    for i in range(1, len(counts)):
        assert result.gradients[i] == counts[i - 1] - counts[i]
    # Above the noise level only the planted rows remain.
    assert counts[-1] == 4

    assert events[-1].current == events[-1].total == result.total_runs
    assert events[0].message.startswith("Alpha 1/4")
    assert events[0].message.endswith("Original run")

    payload = result.to_dict()
    assert payload["fdr_values"] == result.fdr_values
    assert payload["results"][0]["alpha"] == result.alpha_values[0]

    frame = result.to_frame()
    assert list(frame.columns) == ["alpha", "detection_count", "avg_perm_detections", "efdr", "gradient",
                                   "failed_trials", "failed"]
    assert len(frame) == 4


def test_sweep_cancelled_before_start_is_empty() -> None:
    result = asyncio.run(
        sweep_fdr(_matrix(), alpha0=0.1, alpha_max=0.5, n_alpha=3, n_perm=2, nsupp=4, context=_cancelled_context())
    )
    assert result.cancelled
    assert result.alpha_values == []
    assert result.results == []
    assert result.total_runs == 3 * 3


def test_sweep_cancelled_midway_keeps_completed_levels() -> None:
    events = []
    # Level 1 reports three events: the original run and two single-trial batches.
    token = CancellationToken(predicate=lambda: len(events) >= 3)
    context = AnalysisContext.from_token(token, progress=events.append)

    result = asyncio.run(
        sweep_fdr(_matrix(), alpha0=0.1, alpha_max=0.4, n_alpha=4, n_perm=2, nsupp=4,
                  context=context, seed=0, batch_size=1)
    )

    assert result.cancelled
    assert len(result.alpha_values) == len(result.results) == 1
    assert result.alpha_values[0] == pytest.approx(0.1)


def test_fixed_patterns_make_sweeps_repeatable() -> None:
    x = _matrix(seed=5)
    patterns = generate_fixed_patterns(3, x.shape[0], seed=11)

    def run(seed: int) -> fdr_core.SweepResult:
        return asyncio.run(
            sweep_fdr(x, alpha0=0.02, alpha_max=0.3, n_alpha=3, n_perm=3, nsupp=4, patterns=patterns, seed=seed)
        )

    first, second = run(3), run(8)
    assert [r.avg_perm_detections for r in first.results] == [r.avg_perm_detections for r in second.results]
    assert len(first.fdr_values) == len(second.fdr_values) == 3


def test_column_null_separates_signal_from_noise() -> None:
    """eFDR should rise from the smallest to the largest alpha on a planted matrix."""

    ordered = 0
    runs = 5
    for seed in range(runs):
        x = planted_signal_matrix(100, 20, 5, offset=0.8, noise=0.1, seed=seed)
        result = asyncio.run(
            sweep_fdr(x, alpha0=0.001, alpha_max=0.1, n_alpha=10, n_perm=5, nsupp=5, seed=seed)
        )
        assert len(result.results) == 10
        assert all(0.0 <= f <= 100.0 for f in result.fdr_values)

        counts = result.detection_counts
        assert counts[0] >= counts[1] >= counts[2], f"seed {seed}: detections {counts[:3]}"
        if result.fdr_values[0] < result.fdr_values[-1]:
            ordered += 1

    assert ordered >= runs - 1, f"eFDR ordered in only {ordered}/{runs} runs"


def test_sweep_failed_original_run_records_worst_case(monkeypatch) -> None:
    async def overflow(*args, **kwargs):
        raise FloatingPointError("overflow")

    monkeypatch.setattr(fdr_core, "ssvd_r1", overflow)
    result = asyncio.run(sweep_fdr(_matrix(), alpha0=0.1, alpha_max=0.2, n_alpha=2, n_perm=2, nsupp=4, seed=0))

    assert not result.cancelled
    assert all(r.failed for r in result.results)
    assert result.fdr_values == [100.0, 100.0]


def test_sweep_failed_permutations_are_scored_as_zero(monkeypatch) -> None:
    def overflow(*args, **kwargs):
        raise FloatingPointError("overflow")

    monkeypatch.setattr(fdr_core, "_resample", overflow)
    result = asyncio.run(sweep_fdr(_matrix(), alpha0=0.2, alpha_max=0.3, n_alpha=2, n_perm=2, nsupp=4, seed=0))

    assert [r.failed_trials for r in result.results] == [2, 2]
    assert result.fdr_values == [0.0, 0.0]


def test_sweep_rejects_bad_parameters() -> None:
    x = _matrix()
    with pytest.raises(InvalidInput):
        asyncio.run(sweep_fdr(x, alpha0=0.1, alpha_max=0.2, n_alpha=1, n_perm=2, nsupp=4))
    with pytest.raises(InvalidInput):
        asyncio.run(sweep_fdr(x, alpha0=0.3, alpha_max=0.2, n_alpha=3, n_perm=2, nsupp=4))
    with pytest.raises(InvalidInput):
        asyncio.run(
            sweep_fdr(x, alpha0=0.1, alpha_max=0.2, n_alpha=3, n_perm=2, nsupp=4,
                      patterns=generate_fixed_patterns(1, 40, seed=0))
        )


def test_within_row_scheme_runs() -> None:
    result = asyncio.run(
        sweep_fdr(_matrix(), alpha0=0.1, alpha_max=0.3, n_alpha=2, n_perm=2, nsupp=4,
                  scheme=PermutationScheme.WITHIN_ROWS, seed=2)
    )
    assert len(result.results) == 2
    assert all(0.0 <= f <= 100.0 for f in result.fdr_values)


def test_level_result_defaults() -> None:
    level = LevelResult(alpha=0.1, detection_count=3, avg_perm_detections=1.0, efdr=30.0, gradient=0)
    assert level.failed_trials == 0 and not level.failed


# ----------------------------------------------------------------------------
# Experiments
# ----------------------------------------------------------------------------

def test_planted_signal_matrix() -> None:
    x = planted_signal_matrix(20, 4, 3, offset=0.8, noise=0.1, seed=0)
    assert x.shape == (20, 4)
    assert np.all(x[:3] > 0.6)
    assert np.all(np.abs(x[3:]) <= 0.1)
    with pytest.raises(InvalidInput):
        planted_signal_matrix(5, 4, 6)


def test_load_matrix(tmp_path) -> None:
    path = tmp_path / "matrix.csv"
    path.write_text("a,b\n1,2\n3,4\n", encoding="utf-8")
    assert np.array_equal(load_matrix(path, header=True), [[1.0, 2.0], [3.0, 4.0]])

    bad = tmp_path / "bad.csv"
    bad.write_text("1,x\n3,4\n", encoding="utf-8")
    with pytest.raises(InvalidInput):
        load_matrix(bad)


def test_sweep_and_comparison_experiments_write_csvs(tmp_path) -> None:
    x = _matrix(rows=30, cols=5, signal_rows=3)
    config = SweepConfig(alpha0=0.1, alpha_max=0.3, n_alpha=2, n_perm=2, nsupp=3, seed=4)

    result = run_sweep_experiment(tmp_path, x, config, progress_log=tmp_path / "progress.jsonl")
    frame = pd.read_csv(tmp_path / "fdr_sweep.csv")
    assert len(frame) == len(result.results) == 2
    assert "runtime_sec" in frame.columns

    lines = (tmp_path / "progress.jsonl").read_text(encoding="utf-8").splitlines()
    assert lines
    assert json.loads(lines[-1])["percentage"] == 100

    rows = run_fixed_pattern_comparison(tmp_path, x, config)
    assert len(rows) == 2
    assert all(r["avg_perm_first"] == r["avg_perm_second"] for r in rows)
    assert (tmp_path / "fdr_fixed_pattern_comparison.csv").exists()


def test_cli_sweep(tmp_path) -> None:
    main([
        "sweep", "--rows", "30", "--cols", "5", "--signal-rows", "3",
        "--alpha0", "0.05", "--alpha-max", "0.3", "--n-alpha", "2", "--n-perm", "2",
        "--patterns", str(tmp_path / "patterns.json"),
        "--output-dir", str(tmp_path),
    ])
    assert (tmp_path / "fdr_sweep.csv").exists()
    assert len(json.loads((tmp_path / "patterns.json").read_text(encoding="utf-8"))) == 2


if __name__ == "__main__":  # pragma: no cover - manual execution
    test_single_level_efdr_is_a_bounded_fraction()
    test_single_level_without_detections_has_zero_efdr()
    test_sweep_shapes_bounds_and_gradients()
    test_sweep_cancelled_before_start_is_empty()
    test_sweep_cancelled_midway_keeps_completed_levels()
    test_fixed_patterns_make_sweeps_repeatable()
    print("eFDR tests passed.")
