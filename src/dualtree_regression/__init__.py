"""
Dual-Tree Nadaraya-Watson Regression Package

Approximate Nadaraya-Watson kernel regression over large point sets with
a guaranteed relative error, using dual-tree recursion over ball trees.

Features:
- Finite-difference kernel bounds over node pairs
- Hermite far-field series expansions for the Gaussian kernel
- Monte Carlo pruning with a probability guarantee
- Exact brute-force mode for verification
- Leave-one-out predictions
- sklearn-compatible estimator interface
"""

from dualtree_regression.dualtree import (
    NWRCde,
    TraversalDepthError,
    naive_sums,
)
from dualtree_regression.estimators import DualTreeNadarayaWatson
from dualtree_regression.kernels import (
    EpanechnikovKernel,
    GaussianKernel,
    get_kernel,
)
from dualtree_regression.results import NWRCdeQueryResult
from dualtree_regression.series import (
    FarFieldExpansion,
    HermiteSeries,
    truncation_error,
)
from dualtree_regression.stats import NWRCdeConfig
from dualtree_regression.tree import BallNode, build_ball_tree

__version__ = "0.1.0"

__all__ = [
    # Estimators
    "DualTreeNadarayaWatson",
    "NWRCde",
    "NWRCdeConfig",
    "NWRCdeQueryResult",
    "TraversalDepthError",
    "naive_sums",
    # Kernels
    "GaussianKernel",
    "EpanechnikovKernel",
    "get_kernel",
    # Series expansion
    "FarFieldExpansion",
    "HermiteSeries",
    "truncation_error",
    # Trees
    "BallNode",
    "build_ball_tree",
]
