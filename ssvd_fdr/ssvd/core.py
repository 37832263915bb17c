"""Rank-1 sparse SVD (SSVD-R1) core algorithms.

Implements:
- Power iteration for the dominant singular triplet ``(u, s, v)``
- Soft-thresholded power iteration producing a sparse left vector ``u``

The support of the sparse ``u`` defines the detections. Every stopping
condition, including collapse to the zero vector, yields a well-formed
:class:`SsvdResult`; callers read ``converged`` and ``state`` to tell a fixed
point from a best-effort answer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from numpy.typing import NDArray

from ssvd_fdr.common.config import (
    ORIGINAL_BUDGET,
    POWER_ITERATION_MAX_ITER,
    POWER_ITERATION_TOL,
    SINGULAR_VALUE_EVERY,
    YIELD_EVERY,
    ZERO_ALPHA,
    TerminalState,
)
from ssvd_fdr.common.errors import InvalidInput
from ssvd_fdr.common.logging_utils import get_logger
from ssvd_fdr.common.matrix_ops import validate_matrix
from ssvd_fdr.common.metrics import detection_count, sparsity_fraction
from ssvd_fdr.common.resampling import SeedLike, as_generator
from ssvd_fdr.common.scheduling import AnalysisContext

FloatArray = NDArray[np.floating]

logger = get_logger(__name__)


@dataclass
class SingularTriplet:
    """Dominant singular triplet ``(u, s, v)``.

    ``u`` and ``v`` have unit norm unless the triplet is degenerate, in which
    case both are zero and ``s == 0``.
    """

    u: FloatArray
    s: float
    v: FloatArray

    @property
    def degenerate(self) -> bool:
        return self.s == 0.0 and not np.any(self.u)

    def copy(self) -> "SingularTriplet":
        return SingularTriplet(u=self.u.copy(), s=float(self.s), v=self.v.copy())


@dataclass
class ConvergenceInfo:
    """Summary of how an SSVD run ended."""

    final_error: float
    tolerance: float
    sparsity: float
    non_zeros: int


@dataclass
class SsvdResult:
    """Container for SSVD-R1 outputs.

    Attributes
    ----------
    errors:
        ``||u - u_prev||_2`` for every completed iteration.
    sparsity_history:
        Fraction of zero entries of ``u`` after every completed iteration.
    singular_values:
        ``|u^T X v|`` sampled every few iterations and on convergence.
    """

    u: FloatArray
    s: float
    v: FloatArray
    iterations: int
    converged: bool
    state: TerminalState
    errors: List[float] = field(default_factory=list)
    sparsity_history: List[float] = field(default_factory=list)
    singular_values: List[float] = field(default_factory=list)
    info: Optional[ConvergenceInfo] = None

    @property
    def detections(self) -> int:
        """Number of entries of ``u`` above the detection floor."""

        return detection_count(self.u)


def _degenerate_triplet(p: int, n: int) -> SingularTriplet:
    return SingularTriplet(u=np.zeros(p), s=0.0, v=np.zeros(n))


def power_iteration_svd(x: FloatArray, seed: SeedLike = None) -> SingularTriplet:
    """Approximate the dominant singular triplet of ``x`` by power iteration.

    Alternates ``u = X v`` and ``v = X^T u`` with normalisation, starting from
    a random unit ``v``, for at most 50 rounds or until the singular value
    estimate ``||X^T u||`` moves by less than 1e-8.

    Parameters
    ----------
    x:
        Input matrix of shape ``(P, N)``.
    seed:
        Optional seed or Generator for the starting vector.

    Returns
    -------
    SingularTriplet
        Unit ``u`` of length ``P``, unit ``v`` of length ``N`` and
        ``s = ||X^T u||`` from the last round; the zero triplet if ``x``
        annihilates an iterate.

    Notes
    -----
    There is no deflation and no convergence guarantee for near-degenerate
    spectra. The result only seeds the sparse iteration.
    """

    x = validate_matrix(x)
    p, n = x.shape
    rng = as_generator(seed)

    v = rng.uniform(-0.5, 0.5, size=n)
    v_norm = float(np.linalg.norm(v))
    if v_norm == 0.0:
        v = np.full(n, 1.0)
        v_norm = float(np.sqrt(n))
    v = v / v_norm

    u = np.zeros(p)
    s = 0.0
    prev_s = 0.0
    for _ in range(POWER_ITERATION_MAX_ITER):
        u = x @ v
        u_norm = float(np.linalg.norm(u))
        if u_norm == 0.0:
            return _degenerate_triplet(p, n)
        u = u / u_norm

        v = x.T @ u
        s = float(np.linalg.norm(v))
        if s == 0.0:
            return _degenerate_triplet(p, n)
        v = v / s

        if abs(s - prev_s) < POWER_ITERATION_TOL:
            break
        prev_s = s

    return SingularTriplet(u=u, s=s, v=v)


def soft_threshold(x: FloatArray, alpha: float) -> FloatArray:
    """Shrink ``x`` towards zero: ``sign(x) * max(|x| - alpha, 0)``."""

    x = np.asarray(x, dtype=np.float64)
    return np.sign(x) * np.maximum(np.abs(x) - alpha, 0.0)


def _rayleigh(x: FloatArray, u: FloatArray, v: FloatArray) -> float:
    return float(abs(u @ (x @ v)))


async def ssvd_r1(
    matrix: FloatArray,
    alpha: float,
    max_iter: int = ORIGINAL_BUDGET.max_iter,
    tolerance: float = ORIGINAL_BUDGET.tolerance,
    initial_svd: Optional[SingularTriplet] = None,
    context: Optional[AnalysisContext] = None,
    seed: SeedLike = None,
) -> SsvdResult:
    """Compute a sparse rank-1 SVD of ``matrix`` by soft-thresholded power iteration.

    Each round computes ``u = X v``, soft-thresholds it by ``alpha``,
    normalises it, then sets ``v = X^T u / ||X^T u||``. The loop stops when
    ``||u - u_prev||_2 <= tolerance`` or after ``max_iter`` rounds.

    Parameters
    ----------
    matrix:
        Input matrix of shape ``(P, N)``.
    alpha:
        Soft-threshold level (``>= 0``). Values below 1e-10 return the plain
        triplet unchanged.
    max_iter, tolerance:
        Iteration cap and convergence tolerance.
    initial_svd:
        Plain triplet of ``matrix`` to start from; computed by
        :func:`power_iteration_svd` when omitted. It is never modified.
    context:
        Scheduler/progress context; a yield point is awaited every 100 rounds.
    seed:
        Seed or Generator for the power iteration when ``initial_svd`` is
        omitted.

    Returns
    -------
    SsvdResult
        Final triplet, convergence flag, terminal state and trace.
    """

    x = validate_matrix(matrix)
    if not np.isfinite(alpha) or alpha < 0:
        raise InvalidInput(f"alpha must be a non-negative number, got {alpha}")
    if max_iter < 1:
        raise InvalidInput("max_iter must be at least 1")
    p, n = x.shape

    if initial_svd is not None and (initial_svd.u.shape != (p,) or initial_svd.v.shape != (n,)):
        raise InvalidInput(
            f"initial triplet shapes u{initial_svd.u.shape}, v{initial_svd.v.shape} do not fit matrix {x.shape}"
        )

    if abs(alpha) < ZERO_ALPHA:
        if initial_svd is None:
            initial_svd = power_iteration_svd(x, seed=seed)
        start = initial_svd.copy()
        sparsity = sparsity_fraction(start.u)
        return SsvdResult(
            u=start.u,
            s=start.s,
            v=start.v,
            iterations=1,
            converged=True,
            state=TerminalState.CONVERGED,
            errors=[0.0],
            sparsity_history=[sparsity],
            singular_values=[start.s],
            info=ConvergenceInfo(
                final_error=0.0,
                tolerance=tolerance,
                sparsity=sparsity,
                non_zeros=detection_count(start.u),
            ),
        )

    if initial_svd is None:
        initial_svd = power_iteration_svd(x, seed=seed)

    u = initial_svd.u.copy()
    v = initial_svd.v.copy()
    s = float(initial_svd.s)

    errors: List[float] = []
    sparsity_history: List[float] = []
    singular_values: List[float] = []
    error = float("inf")
    iterations = 0
    state = TerminalState.MAX_ITER_REACHED

    while iterations < max_iter and error > tolerance:
        iterations += 1
        u_prev = u

        u = soft_threshold(x @ v, alpha)
        u_norm = float(np.linalg.norm(u))
        if u_norm == 0.0:
            # Everything was thresholded away: the zero vector is the fixed point.
            u = np.zeros(p)
            s = 0.0
            error = 0.0
            state = TerminalState.ZERO_COLLAPSE
            break
        u = u / u_norm

        v = x.T @ u
        v_norm = float(np.linalg.norm(v))
        if v_norm == 0.0:
            state = TerminalState.NUMERICAL_ABORT
            break
        v = v / v_norm

        error = float(np.linalg.norm(u - u_prev))
        errors.append(error)
        sparsity_history.append(sparsity_fraction(u))

        if not np.isfinite(error):
            state = TerminalState.NUMERICAL_ABORT
            break

        if iterations % SINGULAR_VALUE_EVERY == 0 or error <= tolerance:
            s = _rayleigh(x, u, v)
            singular_values.append(s)

        if context is not None and iterations % YIELD_EVERY == 0:
            await context.checkpoint()

    converged = bool(error <= tolerance)
    if converged and state is TerminalState.MAX_ITER_REACHED:
        state = TerminalState.CONVERGED

    final_s = _rayleigh(x, u, v) if state is not TerminalState.ZERO_COLLAPSE and s > 0 else 0.0
    non_zeros = detection_count(u)
    final_sparsity = (p - non_zeros) / float(p)

    logger.debug(
        "SSVD-R1 alpha=%.6g: detections=%d iterations=%d state=%s",
        alpha,
        non_zeros,
        iterations,
        state.value,
    )

    return SsvdResult(
        u=u,
        s=final_s,
        v=v,
        iterations=iterations,
        converged=converged,
        state=state,
        errors=errors,
        sparsity_history=sparsity_history,
        singular_values=singular_values,
        info=ConvergenceInfo(
            final_error=error,
            tolerance=tolerance,
            sparsity=final_sparsity,
            non_zeros=non_zeros,
        ),
    )


def _self_test(seed: int = 0) -> None:
    """Lightweight correctness check on a planted-signal matrix."""

    import asyncio

    rng = np.random.default_rng(seed)
    x = rng.uniform(-0.1, 0.1, size=(60, 8))
    x[:4] += 1.0

    plain = power_iteration_svd(x, seed=seed)
    assert abs(np.linalg.norm(plain.u) - 1.0) < 1e-9

    sparse = asyncio.run(ssvd_r1(x, alpha=0.5, initial_svd=plain))
    assert sparse.detections == 4, f"SSVD self-test failed: {sparse.detections} detections"


if __name__ == "__main__":  # pragma: no cover - manual quick check
    _self_test()
