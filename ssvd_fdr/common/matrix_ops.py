"""Dense matrix/vector primitives.

All functions here work purely on NumPy arrays and are side-effect free.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from ssvd_fdr.common.errors import DimensionMismatch, InvalidInput

FloatArray = NDArray[np.floating]


def validate_matrix(x) -> FloatArray:
    """Check that ``x`` is a usable analysis matrix and return it as float64.

    Parameters
    ----------
    x:
        Array-like of shape ``(P, N)``.

    Returns
    -------
    ndarray
        ``x`` as a float64 array (a copy only when a conversion is needed).

    Raises
    ------
    InvalidInput
        If ``x`` is not two-dimensional, has no rows or columns, or holds
        non-finite values.
    """

    try:
        a = np.asarray(x, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"matrix is not numeric: {exc}") from exc
    if a.ndim != 2:
        raise InvalidInput(f"matrix must be 2D, got ndim={a.ndim}")
    if a.shape[0] == 0 or a.shape[1] == 0:
        raise InvalidInput(f"matrix must be non-empty, got shape {a.shape}")
    if not np.all(np.isfinite(a)):
        raise InvalidInput("matrix contains NaN or infinite entries")
    return a


def multiply(a: FloatArray, b: FloatArray) -> FloatArray:
    """Compute the matrix product ``a @ b``.

    Raises
    ------
    DimensionMismatch
        If either operand is not 2D or ``a.shape[1] != b.shape[0]``.
    """

    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.ndim != 2 or b.ndim != 2:
        raise DimensionMismatch("multiply expects 2D arrays for a and b")
    if a.shape[0] == 0 or b.shape[0] == 0 or a.shape[1] != b.shape[0]:
        raise DimensionMismatch(
            f"incompatible shapes for matmul: a{a.shape}, b{b.shape} (a.shape[1] != b.shape[0])"
        )
    return a @ b


def transpose(m: FloatArray) -> FloatArray:
    """Swap rows and columns; an empty input gives an empty ``(0, 0)`` matrix."""

    m = np.asarray(m, dtype=np.float64)
    if m.size == 0:
        return np.empty((0, 0), dtype=np.float64)
    return m.T.copy()


def norm(vector: FloatArray) -> float:
    """Euclidean norm, ``0.0`` for the zero (or empty) vector."""

    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))
