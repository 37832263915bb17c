"""Detection and eFDR metrics.

All functions here work purely on NumPy arrays and are side-effect free.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from ssvd_fdr.common.config import DETECTION_FLOOR
from ssvd_fdr.common.errors import InvalidInput

FloatArray = NDArray[np.floating]


def detection_count(u: FloatArray) -> int:
    """Number of entries of ``u`` whose magnitude exceeds the detection floor."""

    return int(np.count_nonzero(np.abs(u) > DETECTION_FLOOR))


def sparsity_fraction(u: FloatArray) -> float:
    """Fraction of entries of ``u`` that are numerically zero.

    Returns ``0.0`` for an empty vector.
    """

    size = int(np.size(u))
    if size == 0:
        return 0.0
    return (size - detection_count(u)) / float(size)


def null_proportion(row_count: int, nsupp: int) -> float:
    """Compute ``pi0 = (P - nsupp) / P``, the assumed share of null rows.

    Parameters
    ----------
    row_count:
        Number of rows ``P`` of the analysed matrix.
    nsupp:
        Caller-supplied estimate of the number of signal rows.
    """

    if row_count <= 0:
        raise InvalidInput("row_count must be positive")
    if not 0 <= nsupp <= row_count:
        raise InvalidInput(f"nsupp must be between 0 and {row_count}, got {nsupp}")
    return (row_count - nsupp) / float(row_count)


def empirical_fdr(pi0: float, avg_perm_detections: float, original_detections: int) -> float:
    """Empirical FDR as a fraction, ``min(1, pi0 * avg / original)``.

    Zero when there are no original detections.
    """

    if original_detections <= 0:
        return 0.0
    return float(min(1.0, pi0 * avg_perm_detections / float(original_detections)))


def empirical_fdr_percent(pi0: float, avg_perm_detections: float, original_detections: int) -> float:
    """Empirical FDR in percent, capped at 100."""

    if original_detections <= 0:
        return 0.0
    return float(min(100.0, 100.0 * pi0 * avg_perm_detections / float(original_detections)))
