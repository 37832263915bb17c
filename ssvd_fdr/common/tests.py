"""Tests for matrix primitives, resampling, metrics, timing and scheduling."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from ssvd_fdr.common.config import IterationBudget, SweepConfig, adaptive_budget
from ssvd_fdr.common.errors import AnalysisCancelled, DimensionMismatch, InvalidInput
from ssvd_fdr.common.matrix_ops import multiply, norm, transpose, validate_matrix
from ssvd_fdr.common.metrics import (
    detection_count,
    empirical_fdr,
    empirical_fdr_percent,
    null_proportion,
    sparsity_fraction,
)
from ssvd_fdr.common.resampling import (
    generate_fixed_patterns,
    load_patterns,
    permute_rows,
    save_patterns,
    shuffle_columns,
    shuffle_within_rows,
    validate_patterns,
)
from ssvd_fdr.common.scheduling import AnalysisContext, CancellationToken, CooperativeScheduler, ProgressEvent
from ssvd_fdr.common.timing import CALCULATING, estimate_remaining, format_elapsed


def test_multiply_matches_numpy_and_rejects_mismatch() -> None:
    rng = np.random.default_rng(0)
    a = rng.normal(size=(4, 3))
    b = rng.normal(size=(3, 2))
    assert np.allclose(multiply(a, b), a @ b)

    with pytest.raises(DimensionMismatch):
        multiply(a, a)
    # DimensionMismatch is an InvalidInput, which callers treat as fatal.
    with pytest.raises(InvalidInput):
        multiply(a, rng.normal(size=(2, 2)))


def test_transpose_and_norm() -> None:
    m = np.arange(6.0).reshape(2, 3)
    assert transpose(m).shape == (3, 2)
    assert transpose(np.empty((0, 3))).shape == (0, 0)
    assert norm(np.zeros(5)) == 0.0
    assert norm(np.array([3.0, 4.0])) == pytest.approx(5.0)


def test_validate_matrix_rejects_bad_input() -> None:
    for bad in ([], [[]], [1.0, 2.0], [[1.0, np.nan]], [["a", "b"]]):
        with pytest.raises(InvalidInput):
            validate_matrix(bad)
    assert validate_matrix([[1, 2], [3, 4]]).dtype == np.float64


def test_permute_rows_with_pattern_is_deterministic() -> None:
    m = np.arange(12.0).reshape(4, 3)
    pattern = [2, 0, 3, 1]
    first = permute_rows(m, pattern)
    second = permute_rows(m, pattern)
    assert np.array_equal(first, second)
    assert np.array_equal(first[0], m[2])
    # The input is never reordered in place.
    assert np.array_equal(m, np.arange(12.0).reshape(4, 3))


def test_random_permutation_keeps_rows() -> None:
    m = np.arange(20.0).reshape(10, 2)
    permuted = permute_rows(m, rng=np.random.default_rng(3))
    assert sorted(map(tuple, permuted)) == sorted(map(tuple, m))


def test_shuffle_columns_keeps_column_contents() -> None:
    m = np.arange(20.0).reshape(5, 4)
    shuffled = shuffle_columns(m, rng=np.random.default_rng(2))
    for col in range(m.shape[1]):
        assert sorted(shuffled[:, col]) == sorted(m[:, col])
    # The input is never shuffled in place.
    assert np.array_equal(m, np.arange(20.0).reshape(5, 4))


def test_shuffle_within_rows_keeps_row_contents() -> None:
    m = np.arange(20.0).reshape(4, 5)
    shuffled = shuffle_within_rows(m, rng=np.random.default_rng(1))
    for row, original in zip(shuffled, m):
        assert sorted(row) == sorted(original)


def test_invalid_pattern_rejected() -> None:
    m = np.zeros((3, 2))
    for bad in ([0, 1], [0, 0, 1], [0.0, 1.0, 2.0], [0, 1, 5]):
        with pytest.raises(InvalidInput):
            permute_rows(m, bad)


def test_fixed_patterns_are_permutations_and_reproducible() -> None:
    patterns = generate_fixed_patterns(5, 12, seed=7)
    again = generate_fixed_patterns(5, 12, seed=7)
    assert len(patterns) == 5
    for p, q in zip(patterns, again):
        assert np.array_equal(np.sort(p), np.arange(12))
        assert np.array_equal(p, q)

    with pytest.raises(InvalidInput):
        validate_patterns(patterns, 6, 12)
    with pytest.raises(InvalidInput):
        validate_patterns(patterns, 5, 11)


def test_pattern_file_preserves_order(tmp_path) -> None:
    patterns = generate_fixed_patterns(3, 8, seed=2)
    path = tmp_path / "nested" / "patterns.json"
    save_patterns(path, patterns)
    loaded = load_patterns(path)
    assert [list(p) for p in loaded] == [list(p) for p in patterns]


def test_detection_metrics() -> None:
    u = np.array([0.0, 1e-9, -0.5, 0.2, 0.0])
    assert detection_count(u) == 2
    assert sparsity_fraction(u) == pytest.approx(0.6)
    assert sparsity_fraction(np.array([])) == 0.0


def test_efdr_bounds() -> None:
    assert null_proportion(100, 5) == pytest.approx(0.95)
    with pytest.raises(InvalidInput):
        null_proportion(10, 11)

    assert empirical_fdr(0.95, 10.0, 0) == 0.0
    assert empirical_fdr(0.95, 50.0, 5) == 1.0
    assert empirical_fdr(1.0, 1.0, 4) == pytest.approx(0.25)
    assert empirical_fdr_percent(0.95, 3.0, 0) == 0.0
    assert empirical_fdr_percent(0.95, 50.0, 5) == 100.0
    assert empirical_fdr_percent(1.0, 1.0, 4) == pytest.approx(25.0)


def test_adaptive_budget_gets_cheaper_with_alpha_ratio() -> None:
    assert adaptive_budget(0.001, 0.1) == IterationBudget(max_iter=400, tolerance=0.01)
    assert adaptive_budget(0.01, 0.1) == IterationBudget(max_iter=350, tolerance=0.01)
    assert adaptive_budget(0.03, 0.1) == IterationBudget(max_iter=250, tolerance=0.005)
    assert adaptive_budget(0.06, 0.1) == IterationBudget(max_iter=150, tolerance=0.001)
    assert adaptive_budget(0.1, 0.1) == IterationBudget(max_iter=50, tolerance=0.001)


def test_alpha_grid_is_linear() -> None:
    config = SweepConfig(alpha0=0.0, alpha_max=1.0, n_alpha=5, n_perm=1, nsupp=0)
    assert config.alpha_grid() == pytest.approx([0.0, 0.25, 0.5, 0.75, 1.0])


def test_format_elapsed() -> None:
    assert format_elapsed(0) == "0s"
    assert format_elapsed(-3) == "0s"
    assert format_elapsed(4.9) == "4s"
    assert format_elapsed(125) == "2m 5s"
    assert format_elapsed(3723) == "1h 2m 3s"


def test_estimate_remaining() -> None:
    assert estimate_remaining(0, 10, 5.0) == CALCULATING
    assert estimate_remaining(5, 10, 0.0) == CALCULATING
    assert estimate_remaining(5, 10, 10.0) == "10s"
    assert estimate_remaining(1, 10, 60.0) == "9m"
    assert estimate_remaining(1, 3, 3600.0) == "2h 0m"


def test_cancellation_token_flag_and_predicate() -> None:
    token = CancellationToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled
    token.reset()
    assert not token.cancelled

    flag = {"stop": False}
    token = CancellationToken(predicate=lambda: flag["stop"])
    assert not token.cancelled
    flag["stop"] = True
    assert token.cancelled


def test_context_reports_and_raises() -> None:
    events = []
    token = CancellationToken()
    context = AnalysisContext(scheduler=CooperativeScheduler(token), progress=events.append)

    context.report(1, 4, "one")
    asyncio.run(context.checkpoint())
    context.raise_if_cancelled()
    assert events == [ProgressEvent(current=1, total=4, message="one")]

    token.cancel()
    with pytest.raises(AnalysisCancelled) as info:
        context.raise_if_cancelled({"completed": 1})
    assert info.value.partial == {"completed": 1}


if __name__ == "__main__":  # pragma: no cover - manual execution
    test_multiply_matches_numpy_and_rejects_mismatch()
    test_transpose_and_norm()
    test_validate_matrix_rejects_bad_input()
    test_permute_rows_with_pattern_is_deterministic()
    test_efdr_bounds()
    test_adaptive_budget_gets_cheaper_with_alpha_ratio()
    print("Common tests passed.")
