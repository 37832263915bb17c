"""Row resampling for permutation trials.

A permutation trial reorders rows to break the row/signal association while
keeping column statistics intact. Patterns can be drawn fresh for every trial
or generated once as a fixed set, so that two analyses run on exactly the same
resampled matrices.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from ssvd_fdr.common.errors import InvalidInput

FloatArray = NDArray[np.floating]
IntArray = NDArray[np.integer]
SeedLike = Union[None, int, np.random.Generator]


def as_generator(seed: SeedLike) -> np.random.Generator:
    """Return ``seed`` if it already is a Generator, else a new seeded one."""

    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def _check_pattern(pattern: Sequence[int], row_count: int) -> IntArray:
    idx = np.asarray(pattern)
    if idx.ndim != 1 or idx.shape[0] != row_count:
        raise InvalidInput(f"pattern must have length {row_count}, got shape {idx.shape}")
    if not np.issubdtype(idx.dtype, np.integer):
        raise InvalidInput("pattern must contain integer row indices")
    if not np.array_equal(np.sort(idx), np.arange(row_count)):
        raise InvalidInput(f"pattern is not a permutation of 0..{row_count - 1}")
    return idx.astype(np.intp, copy=False)


def permute_rows(
    matrix: FloatArray,
    pattern: Optional[Sequence[int]] = None,
    rng: SeedLike = None,
) -> FloatArray:
    """Return a row-permuted copy of ``matrix``.

    Parameters
    ----------
    matrix:
        Array of shape ``(P, N)``; never modified.
    pattern:
        Optional permutation of ``0..P-1``. Row ``i`` of the result is row
        ``pattern[i]`` of ``matrix``, so the call is deterministic.
    rng:
        Seed or Generator for the uniform random permutation drawn when no
        pattern is given.

    Raises
    ------
    InvalidInput
        If ``pattern`` is not a permutation of the row indices.
    """

    if pattern is not None:
        idx = _check_pattern(pattern, matrix.shape[0])
        return matrix[idx]
    # Generator.permutation is a Fisher-Yates shuffle of the index range.
    return matrix[as_generator(rng).permutation(matrix.shape[0])]


def shuffle_columns(matrix: FloatArray, rng: SeedLike = None) -> FloatArray:
    """Return a copy of ``matrix`` with each column's entries shuffled independently.

    Every column keeps its values, so column marginals are unchanged, while
    the rows they are assembled into no longer share a common pattern.
    """

    return as_generator(rng).permuted(matrix, axis=0)


def shuffle_within_rows(matrix: FloatArray, rng: SeedLike = None) -> FloatArray:
    """Return a copy of ``matrix`` with each row's entries shuffled independently."""

    return as_generator(rng).permuted(matrix, axis=1)


def generate_fixed_patterns(count: int, row_count: int, seed: SeedLike = None) -> List[IntArray]:
    """Draw ``count`` independent uniform permutations of ``0..row_count-1``.

    Parameters
    ----------
    count:
        Number of patterns (usually ``Nperm``).
    row_count:
        Number of matrix rows ``P``.
    seed:
        Optional seed for reproducible pattern sets.
    """

    if count < 0:
        raise InvalidInput("count must be non-negative")
    if row_count <= 0:
        raise InvalidInput("row_count must be positive")
    rng = as_generator(seed)
    return [rng.permutation(row_count) for _ in range(count)]


def validate_patterns(patterns: Sequence[Sequence[int]], count: int, row_count: int) -> List[IntArray]:
    """Check that a fixed pattern set covers ``count`` trials on ``row_count`` rows."""

    if len(patterns) < count:
        raise InvalidInput(f"fixed pattern set has {len(patterns)} patterns, {count} needed")
    return [_check_pattern(p, row_count) for p in patterns[:count]]


def save_patterns(path: Path, patterns: Sequence[Sequence[int]]) -> None:
    """Write a fixed pattern set to ``path`` as JSON."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump([[int(i) for i in p] for p in patterns], f)


def load_patterns(path: Path) -> List[IntArray]:
    """Read a fixed pattern set written by :func:`save_patterns`."""

    with Path(path).open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise InvalidInput(f"{path} does not hold a list of patterns")
    return [np.asarray(p, dtype=np.intp) for p in raw]
