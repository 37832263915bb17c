"""Configuration dataclasses and shared constants for SSVD/eFDR analyses.

These provide typed containers for analysis parameters so that the engine,
the worker boundary and the experiment runners share a common schema.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np

# Magnitude below which an entry of ``u`` is not counted as a detection.
DETECTION_FLOOR = 1e-8
# Alphas below this are treated as the plain (non-sparse) triplet.
ZERO_ALPHA = 1e-10

POWER_ITERATION_MAX_ITER = 50
POWER_ITERATION_TOL = 1e-8

# SSVD iterations between two cooperative yield points.
YIELD_EVERY = 100
# SSVD iterations between two singular-value samples.
SINGULAR_VALUE_EVERY = 10

DEFAULT_BATCH_SIZE = 4


class PermutationScheme(str, Enum):
    """Null resampling schemes for permutation trials."""

    COLUMNS = "columns"
    ROWS = "rows"
    WITHIN_ROWS = "within_rows"


class TerminalState(str, Enum):
    """How a single SSVD run stopped."""

    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    ZERO_COLLAPSE = "zero_collapse"
    NUMERICAL_ABORT = "numerical_abort"


class Command(str, Enum):
    """Commands accepted at the worker boundary."""

    RUN_SWEEP = "run-sweep"
    RUN_SINGLE_LEVEL = "run-single-level"
    CANCEL = "cancel"
    LIVENESS_CHECK = "liveness-check"


@dataclass(frozen=True)
class IterationBudget:
    """Iteration cap and convergence tolerance for one SSVD run."""

    max_iter: int
    tolerance: float


# Original-matrix runs use the same budget at every grid point so that
# detection counts are comparable across the sweep.
ORIGINAL_BUDGET = IterationBudget(max_iter=1000, tolerance=1e-3)
PERMUTATION_BUDGET = IterationBudget(max_iter=500, tolerance=5e-3)

# (upper bound on alpha / alpha_max, max_iter) checked in order.
ADAPTIVE_MAX_ITER = [(0.05, 400), (0.2, 350), (0.5, 250), (0.75, 150)]
ADAPTIVE_MAX_ITER_FLOOR = 50
ADAPTIVE_TOLERANCE = [(0.2, 0.01), (0.5, 0.005)]
ADAPTIVE_TOLERANCE_FLOOR = 0.001


def adaptive_budget(alpha: float, alpha_max: float) -> IterationBudget:
    """Pick a cheaper budget the closer ``alpha`` gets to ``alpha_max``.

    Parameters
    ----------
    alpha:
        Sparsity level of the permutation trials.
    alpha_max:
        Upper end of the alpha range the level belongs to.

    Returns
    -------
    IterationBudget
        Iteration cap and tolerance for each permutation trial.
    """

    ratio = alpha / alpha_max if alpha_max > 0 else 1.0

    max_iter = ADAPTIVE_MAX_ITER_FLOOR
    for bound, value in ADAPTIVE_MAX_ITER:
        if ratio < bound:
            max_iter = value
            break

    tolerance = ADAPTIVE_TOLERANCE_FLOOR
    for bound, value in ADAPTIVE_TOLERANCE:
        if ratio < bound:
            tolerance = value
            break

    return IterationBudget(max_iter=max_iter, tolerance=tolerance)


@dataclass
class SweepConfig:
    """Parameters of a swept eFDR analysis.

    Attributes
    ----------
    alpha0, alpha_max:
        Ends of the linear alpha grid (inclusive).
    n_alpha:
        Number of grid points, at least 2.
    n_perm:
        Permutation trials per grid point.
    nsupp:
        Caller's estimate of the number of true signal rows; sets
        ``pi0 = (P - nsupp) / P``.
    """

    alpha0: float
    alpha_max: float
    n_alpha: int
    n_perm: int
    nsupp: int
    batch_size: int = DEFAULT_BATCH_SIZE
    seed: Optional[int] = None
    scheme: PermutationScheme = PermutationScheme.COLUMNS

    def alpha_grid(self) -> List[float]:
        """Linearly spaced alphas from ``alpha0`` to ``alpha_max``."""

        return [float(a) for a in np.linspace(self.alpha0, self.alpha_max, num=self.n_alpha)]
