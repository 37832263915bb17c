"""Permutation-based empirical FDR for SSVD-R1 detections.

Implements:
- ``estimate_fdr_at_level``: null detection counts from ``Nperm`` resampled
  matrices at a single sparsity level, with iteration budgets adapted to how
  close alpha is to the top of its range.
- ``sweep_fdr``: the same estimate over a linear alpha grid, with fixed
  budgets so that detection counts are comparable from one grid point to the
  next.

The eFDR at a level is ``pi0 * mean(null detections) / observed detections``
with ``pi0 = (P - nsupp) / P``. Permutation trials are coroutines awaited in
small batches; a trial that fails arithmetically contributes zero detections,
cancellation is polled before every level and every batch.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, fields
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ssvd_fdr.common.config import (
    DEFAULT_BATCH_SIZE,
    ORIGINAL_BUDGET,
    PERMUTATION_BUDGET,
    IterationBudget,
    PermutationScheme,
    SweepConfig,
    adaptive_budget,
)
from ssvd_fdr.common.errors import AnalysisCancelled, InvalidInput
from ssvd_fdr.common.logging_utils import get_logger
from ssvd_fdr.common.matrix_ops import validate_matrix
from ssvd_fdr.common.metrics import empirical_fdr, empirical_fdr_percent, null_proportion
from ssvd_fdr.common.resampling import (
    SeedLike,
    as_generator,
    permute_rows,
    shuffle_columns,
    shuffle_within_rows,
    validate_patterns,
)
from ssvd_fdr.common.scheduling import AnalysisContext
from ssvd_fdr.ssvd.core import SingularTriplet, power_iteration_svd, ssvd_r1

FloatArray = NDArray[np.floating]

logger = get_logger(__name__)

# Failures of a single trial that are scored as zero detections. Invalid
# input and cancellation are deliberately absent.
TRIAL_FAILURES = (ArithmeticError, np.linalg.LinAlgError)

_SEED_BOUND = 2**32


@dataclass
class LevelResult:
    """Swept-mode statistics for one alpha.

    Attributes
    ----------
    efdr:
        Empirical FDR in percent, in ``[0, 100]``.
    gradient:
        Detections at the previous grid point minus detections here; zero at
        the first point. Informational only.
    failed:
        True when the original-matrix run itself failed and the level was
        recorded with worst-case values.
    """

    alpha: float
    detection_count: int
    avg_perm_detections: float
    efdr: float
    gradient: int
    failed_trials: int = 0
    failed: bool = False


@dataclass
class SweepResult:
    """Outcome of :func:`sweep_fdr`, possibly truncated by cancellation."""

    alpha_values: List[float]
    results: List[LevelResult]
    pi0: float
    total_runs: int
    cancelled: bool = False

    @property
    def fdr_values(self) -> List[float]:
        return [r.efdr for r in self.results]

    @property
    def detection_counts(self) -> List[int]:
        return [r.detection_count for r in self.results]

    @property
    def gradients(self) -> List[int]:
        return [r.gradient for r in self.results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alpha_values": list(self.alpha_values),
            "fdr_values": self.fdr_values,
            "detection_counts": self.detection_counts,
            "gradients": self.gradients,
            "results": [asdict(r) for r in self.results],
            "pi0": self.pi0,
            "total_runs": self.total_runs,
            "cancelled": self.cancelled,
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per completed alpha level."""

        columns = [f.name for f in fields(LevelResult)]
        return pd.DataFrame([asdict(r) for r in self.results], columns=columns)


@dataclass
class SingleLevelResult:
    """Outcome of :func:`estimate_fdr_at_level`; ``efdr`` is a fraction in ``[0, 1]``."""

    alpha: float
    original_detections: int
    avg_perm_detections: float
    efdr: float
    pi0: float
    n_perm: int
    total_perm_detections: int
    failed_trials: int = 0
    budget: Optional[IterationBudget] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _ProgressCounter:
    """Running ``current / total`` count forwarded to the context's sink."""

    def __init__(self, context: AnalysisContext, total: int) -> None:
        self.context = context
        self.total = total
        self.current = 0

    def advance(self, n: int, message: Optional[str] = None) -> None:
        self.current += n
        if message is not None:
            self.context.report(self.current, self.total, message)


def _check_positive(name: str, value: int) -> None:
    if int(value) != value or value < 1:
        raise InvalidInput(f"{name} must be a positive integer, got {value}")


def _resample(
    x: FloatArray,
    scheme: PermutationScheme,
    pattern: Optional[np.ndarray],
    rng: np.random.Generator,
) -> FloatArray:
    if pattern is not None:
        return permute_rows(x, pattern)
    if scheme is PermutationScheme.WITHIN_ROWS:
        return shuffle_within_rows(x, rng)
    if scheme is PermutationScheme.ROWS:
        return permute_rows(x, rng=rng)
    return shuffle_columns(x, rng)


async def _run_trial(
    x: FloatArray,
    alpha: float,
    budget: IterationBudget,
    pattern: Optional[np.ndarray],
    scheme: PermutationScheme,
    trial_seed: int,
    context: AnalysisContext,
    recheck_cancel: bool,
) -> Optional[int]:
    """Detections on one resampled matrix, or ``None`` if the trial failed."""

    if recheck_cancel:
        context.raise_if_cancelled()
    rng = np.random.default_rng(trial_seed)
    try:
        permuted = _resample(x, scheme, pattern, rng)
        result = await ssvd_r1(
            permuted,
            alpha,
            max_iter=budget.max_iter,
            tolerance=budget.tolerance,
            context=context,
            seed=rng,
        )
    except TRIAL_FAILURES as exc:
        logger.warning("Permutation trial failed at alpha=%.6g, scored as 0 detections: %s", alpha, exc)
        return None
    return result.detections


async def _run_batch(
    x: FloatArray,
    alpha: float,
    budget: IterationBudget,
    indices: Sequence[int],
    patterns: Optional[List[np.ndarray]],
    scheme: PermutationScheme,
    rng: np.random.Generator,
    context: AnalysisContext,
    recheck_cancel: bool = False,
    on_trial_done: Optional[Callable[[Optional[int]], None]] = None,
) -> List[Optional[int]]:
    """Await one batch of concurrently pending trials.

    ``on_trial_done`` receives each trial's outcome as soon as it finishes.
    """

    # Fixed-pattern trials are seeded by their index so that repeated sweeps
    # over the same pattern set reproduce each other.
    if patterns is not None:
        seeds = list(indices)
    else:
        seeds = [int(rng.integers(0, _SEED_BOUND)) for _ in indices]

    async def trial(perm: int, trial_seed: int) -> Optional[int]:
        pattern = patterns[perm] if patterns is not None else None
        outcome = await _run_trial(x, alpha, budget, pattern, scheme, trial_seed, context, recheck_cancel)
        if on_trial_done is not None:
            on_trial_done(outcome)
        return outcome

    outcomes = await asyncio.gather(
        *(trial(perm, s) for perm, s in zip(indices, seeds)),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, AnalysisCancelled):
            raise outcome
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return outcomes


def _tally(outcomes: Sequence[Optional[int]]) -> tuple:
    """Sum detections over a batch, counting failed trials as zero."""

    detections = sum(o for o in outcomes if o is not None)
    failures = sum(1 for o in outcomes if o is None)
    return detections, failures


async def estimate_fdr_at_level(
    matrix: FloatArray,
    alpha: float,
    original_detections: int,
    n_perm: int,
    nsupp: int,
    alpha_max: Optional[float] = None,
    patterns: Optional[Sequence[Sequence[int]]] = None,
    scheme: PermutationScheme = PermutationScheme.COLUMNS,
    context: Optional[AnalysisContext] = None,
    seed: SeedLike = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> SingleLevelResult:
    """Estimate the eFDR of ``original_detections`` at a single alpha.

    Parameters
    ----------
    matrix:
        Original matrix of shape ``(P, N)``.
    alpha:
        Sparsity level the detections were obtained at.
    original_detections:
        Detections already observed on ``matrix`` at ``alpha``.
    n_perm:
        Number of permutation trials.
    nsupp:
        Caller's estimate of the number of signal rows.
    alpha_max:
        Top of the alpha range used to scale the trial budgets; defaults to
        ``max(0.01, 2 * alpha)``.
    patterns:
        Optional fixed pattern set; trial ``i`` uses ``patterns[i]``.
    scheme:
        Null resampling scheme for trials without a fixed pattern.
    context:
        Scheduler/progress context.
    seed:
        Seed or Generator for the random trials.
    batch_size:
        Trials pending at once between two yield points.

    Returns
    -------
    SingleLevelResult
        Average null detections and ``eFDR = min(1, pi0 * avg / original)``.

    Raises
    ------
    InvalidInput
        On a malformed matrix or parameters.
    AnalysisCancelled
        When cancellation is observed; ``partial`` holds the totals so far.
    """

    x = validate_matrix(matrix)
    if not np.isfinite(alpha) or alpha < 0:
        raise InvalidInput(f"alpha must be a non-negative number, got {alpha}")
    if original_detections < 0:
        raise InvalidInput("original_detections must be non-negative")
    _check_positive("n_perm", n_perm)
    _check_positive("batch_size", batch_size)
    p = x.shape[0]
    pi0 = null_proportion(p, nsupp)
    scheme = PermutationScheme(scheme)
    fixed = validate_patterns(patterns, n_perm, p) if patterns is not None else None
    context = context if context is not None else AnalysisContext()
    rng = as_generator(seed)

    if alpha_max is None:
        alpha_max = max(0.01, alpha * 2)
    budget = adaptive_budget(alpha, alpha_max)

    logger.info(
        "Running permutations: alpha=%.6f, originalDetections=%d, Nperm=%d (max_iter=%d, tol=%g)",
        alpha,
        original_detections,
        n_perm,
        budget.max_iter,
        budget.tolerance,
    )

    total_perm_detections = 0
    failed_trials = 0
    counter = _ProgressCounter(context, n_perm)
    context.report(0, n_perm, "Starting permutation testing...")

    def trial_done(outcome: Optional[int]) -> None:
        nonlocal total_perm_detections, failed_trials
        # Tallied per trial so that a cancelled run reports detections for
        # exactly the trials it counts as completed.
        if outcome is None:
            failed_trials += 1
        else:
            total_perm_detections += outcome
        previous_bucket = (counter.current * 100 // n_perm) // 5
        counter.advance(1)
        percent = counter.current * 100 // n_perm
        if percent // 5 > previous_bucket or counter.current == n_perm:
            context.report(
                counter.current,
                n_perm,
                f"{percent}% complete ({counter.current}/{n_perm} permutations)",
            )

    def partial() -> Dict[str, Any]:
        return {
            "alpha": alpha,
            "original_detections": original_detections,
            "completed": counter.current,
            "total_perm_detections": total_perm_detections,
            "failed_trials": failed_trials,
            "n_perm": n_perm,
        }

    for batch_start in range(0, n_perm, batch_size):
        context.raise_if_cancelled(partial())
        indices = range(batch_start, min(batch_start + batch_size, n_perm))
        try:
            await _run_batch(
                x, alpha, budget, indices, fixed, scheme, rng, context,
                recheck_cancel=True,
                on_trial_done=trial_done,
            )
        except AnalysisCancelled as exc:
            exc.partial = partial()
            raise
        context.raise_if_cancelled(partial())
        await context.checkpoint()

    avg_perm_detections = total_perm_detections / float(n_perm)
    efdr = empirical_fdr(pi0, avg_perm_detections, original_detections)
    logger.info("Permutations complete: avgPermDetections=%.2f, eFDR=%.4f", avg_perm_detections, efdr)

    return SingleLevelResult(
        alpha=float(alpha),
        original_detections=int(original_detections),
        avg_perm_detections=avg_perm_detections,
        efdr=efdr,
        pi0=pi0,
        n_perm=int(n_perm),
        total_perm_detections=int(total_perm_detections),
        failed_trials=failed_trials,
        budget=budget,
    )


async def _sweep_level(
    x: FloatArray,
    alpha: float,
    level_index: int,
    config: SweepConfig,
    initial_svd: SingularTriplet,
    previous: Optional[LevelResult],
    fixed: Optional[List[np.ndarray]],
    pi0: float,
    rng: np.random.Generator,
    context: AnalysisContext,
    counter: _ProgressCounter,
) -> LevelResult:
    label = f"Alpha {level_index + 1}/{config.n_alpha} (α={alpha:.4f})"
    context.raise_if_cancelled()

    try:
        original = await ssvd_r1(
            x,
            alpha,
            max_iter=ORIGINAL_BUDGET.max_iter,
            tolerance=ORIGINAL_BUDGET.tolerance,
            initial_svd=initial_svd,
            context=context,
        )
    except TRIAL_FAILURES as exc:
        logger.warning("%s: original run failed, recording worst case: %s", label, exc)
        counter.advance(1 + config.n_perm, f"{label}: failed")
        return LevelResult(
            alpha=alpha,
            detection_count=0,
            avg_perm_detections=0.0,
            efdr=100.0,
            gradient=0,
            failed=True,
        )

    original_detections = original.detections
    # A level with no detections is still followed by the remaining levels:
    # detection counts are not monotone in alpha.
    counter.advance(1, f"{label}: Original run")

    total_perm_detections = 0
    failed_trials = 0
    for batch_start in range(0, config.n_perm, config.batch_size):
        context.raise_if_cancelled()
        batch_end = min(batch_start + config.batch_size, config.n_perm)
        outcomes = await _run_batch(
            x, alpha, PERMUTATION_BUDGET, range(batch_start, batch_end), fixed, config.scheme, rng, context,
        )
        detections, failures = _tally(outcomes)
        total_perm_detections += detections
        failed_trials += failures
        counter.advance(batch_end - batch_start, f"{label}: Permutations {batch_start + 1}-{batch_end}")
        await context.checkpoint()

    avg_perm_detections = total_perm_detections / float(config.n_perm)
    gradient = previous.detection_count - original_detections if previous is not None else 0
    level = LevelResult(
        alpha=alpha,
        detection_count=original_detections,
        avg_perm_detections=avg_perm_detections,
        efdr=empirical_fdr_percent(pi0, avg_perm_detections, original_detections),
        gradient=gradient,
        failed_trials=failed_trials,
    )
    logger.info(
        "%s: detections=%d, avgPermDetections=%.2f, eFDR=%.2f%%",
        label,
        level.detection_count,
        level.avg_perm_detections,
        level.efdr,
    )
    return level


async def sweep_fdr(
    matrix: FloatArray,
    alpha0: float,
    alpha_max: float,
    n_alpha: int,
    n_perm: int,
    nsupp: int,
    initial_svd: Optional[SingularTriplet] = None,
    patterns: Optional[Sequence[Sequence[int]]] = None,
    scheme: PermutationScheme = PermutationScheme.COLUMNS,
    context: Optional[AnalysisContext] = None,
    seed: SeedLike = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> SweepResult:
    """Estimate detections and eFDR over a linear alpha grid.

    Parameters
    ----------
    matrix:
        Original matrix of shape ``(P, N)``.
    alpha0, alpha_max:
        Ends of the grid, ``0 <= alpha0 <= alpha_max``.
    n_alpha:
        Number of grid points (at least 2).
    n_perm:
        Permutation trials per grid point.
    nsupp:
        Caller's estimate of the number of signal rows.
    initial_svd:
        Plain triplet of ``matrix``; computed once when omitted and reused as
        the starting point at every grid point.
    patterns:
        Optional fixed pattern set (at least ``n_perm`` patterns) so that
        repeated sweeps resample identically.
    scheme, context, seed, batch_size:
        As for :func:`estimate_fdr_at_level`.

    Returns
    -------
    SweepResult
        Per-level detections, average null detections, eFDR in percent and
        gradients. When cancelled, only fully processed levels are kept and
        ``cancelled`` is set.
    """

    x = validate_matrix(matrix)
    if int(n_alpha) != n_alpha or n_alpha < 2:
        raise InvalidInput(f"n_alpha must be an integer of at least 2, got {n_alpha}")
    _check_positive("n_perm", n_perm)
    _check_positive("batch_size", batch_size)
    if not (np.isfinite(alpha0) and np.isfinite(alpha_max)) or alpha0 < 0 or alpha_max < alpha0:
        raise InvalidInput(f"need 0 <= alpha0 <= alpha_max, got alpha0={alpha0}, alpha_max={alpha_max}")
    p = x.shape[0]
    pi0 = null_proportion(p, nsupp)
    fixed = validate_patterns(patterns, n_perm, p) if patterns is not None else None
    context = context if context is not None else AnalysisContext()
    rng = as_generator(seed)

    config = SweepConfig(
        alpha0=float(alpha0),
        alpha_max=float(alpha_max),
        n_alpha=int(n_alpha),
        n_perm=int(n_perm),
        nsupp=int(nsupp),
        batch_size=int(batch_size),
        scheme=PermutationScheme(scheme),
    )
    alpha_values = config.alpha_grid()
    total_runs = config.n_alpha * (1 + config.n_perm)

    if initial_svd is None:
        initial_svd = power_iteration_svd(x, seed=rng)

    logger.info(
        "eFDR sweep: %d alphas in [%.6g, %.6g], Nperm=%d, pi0=%.4f, fixed patterns=%s",
        config.n_alpha,
        config.alpha0,
        config.alpha_max,
        config.n_perm,
        pi0,
        fixed is not None,
    )

    counter = _ProgressCounter(context, total_runs)
    results: List[LevelResult] = []
    for idx, alpha in enumerate(alpha_values):
        try:
            level = await _sweep_level(
                x, alpha, idx, config, initial_svd,
                results[-1] if results else None,
                fixed, pi0, rng, context, counter,
            )
        except AnalysisCancelled:
            logger.info("eFDR sweep cancelled after %d of %d alphas", len(results), config.n_alpha)
            return SweepResult(
                alpha_values=alpha_values[: len(results)],
                results=results,
                pi0=pi0,
                total_runs=total_runs,
                cancelled=True,
            )
        results.append(level)

    return SweepResult(alpha_values=alpha_values, results=results, pi0=pi0, total_runs=total_runs)
