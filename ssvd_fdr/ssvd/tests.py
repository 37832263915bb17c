"""SSVD-R1 tests / sanity checks.

Small planted-signal matrices keep these fast; asyncio.run drives the
coroutine API.
"""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from ssvd_fdr.common.config import TerminalState
from ssvd_fdr.common.errors import InvalidInput
from ssvd_fdr.common.scheduling import AnalysisContext, Scheduler
from ssvd_fdr.ssvd.core import power_iteration_svd, soft_threshold, ssvd_r1


class CountingScheduler(Scheduler):
    def __init__(self) -> None:
        self.yields = 0

    async def yield_point(self) -> None:
        self.yields += 1

    def is_cancelled(self) -> bool:
        return False


def _planted(seed: int = 0, rows: int = 60, cols: int = 8, signal: int = 4) -> np.ndarray:
    rng = np.random.default_rng(seed)
    x = rng.uniform(-0.1, 0.1, size=(rows, cols))
    x[:signal] += 1.0
    return x


def test_power_iteration_matches_dominant_singular_pair() -> None:
    """Power iteration should recover numpy's leading singular triplet up to sign."""

    rng = np.random.default_rng(1)
    u_true, _ = np.linalg.qr(rng.normal(size=(40, 5)))
    v_true, _ = np.linalg.qr(rng.normal(size=(6, 5)))
    x = (u_true * np.array([10.0, 3.0, 2.0, 1.0, 0.5])[np.newaxis, :]) @ v_true.T

    triplet = power_iteration_svd(x, seed=2)
    u_ref, s_ref, vt_ref = np.linalg.svd(x, full_matrices=False)

    assert triplet.s == pytest.approx(s_ref[0], rel=1e-6)
    assert abs(triplet.u @ u_ref[:, 0]) == pytest.approx(1.0, abs=1e-6)
    assert abs(triplet.v @ vt_ref[0]) == pytest.approx(1.0, abs=1e-6)
    assert abs(np.linalg.norm(triplet.u) - 1.0) < 1e-9
    assert abs(np.linalg.norm(triplet.v) - 1.0) < 1e-9


def test_power_iteration_zero_matrix_is_degenerate() -> None:
    triplet = power_iteration_svd(np.zeros((5, 3)), seed=0)
    assert triplet.s == 0.0
    assert not np.any(triplet.u)
    assert not np.any(triplet.v)
    assert triplet.degenerate


def test_soft_threshold_is_sign_preserving_and_non_expansive() -> None:
    rng = np.random.default_rng(4)
    x = rng.normal(size=500)
    for alpha in (0.0, 0.1, 0.5, 2.0, 10.0):
        r = soft_threshold(x, alpha)
        assert np.all((np.sign(r) == np.sign(x)) | (r == 0.0))
        assert np.all(np.abs(r) <= np.abs(x))
    assert np.array_equal(soft_threshold(np.array([-3.0, -0.5, 0.0, 0.5, 3.0]), 1.0), [-2.0, 0.0, 0.0, 0.0, 2.0])


def test_zero_alpha_returns_initial_triplet() -> None:
    x = _planted()
    initial = power_iteration_svd(x, seed=5)
    result = asyncio.run(ssvd_r1(x, alpha=0.0, initial_svd=initial))

    assert result.iterations == 1
    assert result.converged
    assert result.errors == [0.0]
    assert result.info.final_error == 0.0
    assert np.allclose(result.u, initial.u)
    assert np.allclose(result.v, initial.v)
    assert result.s == initial.s
    assert result.info.sparsity == pytest.approx(0.0)
    # The returned vectors are copies of the cache.
    result.u[0] = 123.0
    assert initial.u[0] != 123.0


def test_zero_alpha_without_initial_triplet_matches_power_iteration() -> None:
    x = _planted(seed=3)
    result = asyncio.run(ssvd_r1(x, alpha=1e-12, seed=9))
    reference = power_iteration_svd(x, seed=9)
    assert result.iterations == 1 and result.converged
    assert abs(result.u @ reference.u) == pytest.approx(1.0, abs=1e-9)


def test_sparse_vector_recovers_planted_rows() -> None:
    x = _planted()
    initial = power_iteration_svd(x, seed=0)
    initial_u = initial.u.copy()

    result = asyncio.run(ssvd_r1(x, alpha=0.5, initial_svd=initial))

    assert result.converged, f"did not converge: {result.info}"
    assert result.state is TerminalState.CONVERGED
    assert result.detections == 4
    assert set(np.flatnonzero(np.abs(result.u) > 1e-8)) == {0, 1, 2, 3}
    assert abs(np.linalg.norm(result.u) - 1.0) < 1e-9
    assert abs(np.linalg.norm(result.v) - 1.0) < 1e-9
    assert result.s > 0
    assert result.info.non_zeros == 4
    assert result.info.sparsity == pytest.approx(56 / 60)
    assert len(result.errors) == result.iterations
    assert len(result.sparsity_history) == result.iterations
    assert result.singular_values, "singular value must be sampled on convergence"
    # The cached starting triplet is left untouched.
    assert np.array_equal(initial.u, initial_u)


def test_zero_matrix_collapses_immediately() -> None:
    result = asyncio.run(ssvd_r1(np.zeros((10, 4)), alpha=0.05, seed=0))
    assert result.state is TerminalState.ZERO_COLLAPSE
    assert result.converged
    assert result.iterations <= 1
    assert result.s == 0.0
    assert not np.any(result.u)
    assert result.detections == 0


def test_large_alpha_collapses_to_zero_vector() -> None:
    x = _planted()
    result = asyncio.run(ssvd_r1(x, alpha=100.0, seed=1))
    assert result.state is TerminalState.ZERO_COLLAPSE
    assert result.converged
    assert result.info.final_error == 0.0
    assert result.info.sparsity == 1.0


def test_iteration_cap_and_yield_points() -> None:
    scheduler = CountingScheduler()
    x = _planted(seed=2)

    # A negative tolerance can never be met, so the cap decides.
    result = asyncio.run(
        ssvd_r1(x, alpha=0.05, max_iter=250, tolerance=-1.0, context=AnalysisContext(scheduler=scheduler), seed=0)
    )

    assert result.state is TerminalState.MAX_ITER_REACHED
    assert not result.converged
    assert result.iterations == 250
    assert scheduler.yields == 2
    assert len(result.singular_values) == 25


def test_invalid_arguments_raise() -> None:
    x = _planted()
    with pytest.raises(InvalidInput):
        asyncio.run(ssvd_r1(x, alpha=-0.1))
    with pytest.raises(InvalidInput):
        asyncio.run(ssvd_r1(np.empty((0, 3)), alpha=0.1))
    with pytest.raises(InvalidInput):
        asyncio.run(ssvd_r1(x, alpha=0.1, initial_svd=power_iteration_svd(x[:10], seed=0)))


if __name__ == "__main__":  # pragma: no cover - manual execution
    test_power_iteration_matches_dominant_singular_pair()
    test_power_iteration_zero_matrix_is_degenerate()
    test_soft_threshold_is_sign_preserving_and_non_expansive()
    test_zero_alpha_returns_initial_triplet()
    test_sparse_vector_recovers_planted_rows()
    test_zero_matrix_collapses_immediately()
    test_iteration_cap_and_yield_points()
    print("SSVD tests passed.")
