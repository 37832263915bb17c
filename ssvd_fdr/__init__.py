"""Sparse rank-1 SVD with permutation-based empirical FDR.

Subpackages:

* :mod:`ssvd_fdr.ssvd` - power iteration and soft-thresholded SSVD-R1;
* :mod:`ssvd_fdr.fdr` - permutation eFDR at one sparsity level and across an alpha sweep;
* :mod:`ssvd_fdr.worker` - command/event boundary with progress persistence;
* :mod:`ssvd_fdr.common` - configuration, errors, matrix ops, resampling, scheduling.
"""

__version__ = "0.1.0"
