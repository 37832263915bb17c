"""Permutation eFDR package exports."""

from ssvd_fdr.fdr.core import (
    LevelResult,
    SingleLevelResult,
    SweepResult,
    estimate_fdr_at_level,
    sweep_fdr,
)

__all__ = [
    "LevelResult",
    "SingleLevelResult",
    "SweepResult",
    "estimate_fdr_at_level",
    "sweep_fdr",
]
