"""Sparse rank-1 SVD package exports."""

from .core import ConvergenceInfo, SingularTriplet, SsvdResult, power_iteration_svd, soft_threshold, ssvd_r1

__all__ = [
    "ConvergenceInfo",
    "SingularTriplet",
    "SsvdResult",
    "power_iteration_svd",
    "soft_threshold",
    "ssvd_r1",
]
