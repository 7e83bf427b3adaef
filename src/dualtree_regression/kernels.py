"""
Radial kernel functions for dual-tree Nadaraya-Watson regression.

Kernels are evaluated on squared Euclidean distances and are unnormalized
(value 1 at distance 0), since the normalizing constant cancels in the
Nadaraya-Watson ratio. Every kernel is monotone non-increasing in distance,
which is what makes the finite-difference bounds valid.
"""

from typing import Protocol

import numpy as np
from numpy.typing import NDArray


class RadialKernel(Protocol):
    """Kernel strategy consumed by the dual-tree engine."""

    name: str
    bandwidth: float

    def evaluate(self, sq_dist: NDArray[np.floating] | float) -> NDArray[np.floating]: ...

    def bound(self, min_sq_dist: float, max_sq_dist: float) -> tuple[float, float]: ...


class GaussianKernel:
    """
    Gaussian kernel.

    K(d) = exp(-d^2 / (2 h^2))

    Parameters
    ----------
    bandwidth : float
        Kernel scale h, must be positive.
    """

    name = "gaussian"

    def __init__(self, bandwidth: float):
        self.bandwidth = _check_bandwidth(bandwidth)
        self.inv_two_bw_sq = 1.0 / (2.0 * self.bandwidth**2)

    def evaluate(self, sq_dist):
        """
        Evaluate the kernel on squared distances.

        Parameters
        ----------
        sq_dist : float or ndarray
            Squared distances ||q - r||^2

        Returns
        -------
        ndarray
            Kernel values in [0, 1]
        """
        return np.exp(-np.asarray(sq_dist, dtype=np.float64) * self.inv_two_bw_sq)

    def bound(self, min_sq_dist: float, max_sq_dist: float) -> tuple[float, float]:
        """Lower and upper kernel values over a squared distance range."""
        return float(self.evaluate(max_sq_dist)), float(self.evaluate(min_sq_dist))

    def __repr__(self) -> str:
        return f"GaussianKernel(bandwidth={self.bandwidth!r})"


class EpanechnikovKernel:
    """
    Epanechnikov kernel.

    K(d) = 1 - d^2 / h^2 for d <= h, else 0

    Parameters
    ----------
    bandwidth : float
        Support radius h, must be positive.
    """

    name = "epanechnikov"

    def __init__(self, bandwidth: float):
        self.bandwidth = _check_bandwidth(bandwidth)
        self.inv_bw_sq = 1.0 / self.bandwidth**2

    def evaluate(self, sq_dist):
        """
        Evaluate the kernel on squared distances.

        Parameters
        ----------
        sq_dist : float or ndarray
            Squared distances ||q - r||^2

        Returns
        -------
        ndarray
            Kernel values in [0, 1], exactly zero outside the support
        """
        weights = 1.0 - np.asarray(sq_dist, dtype=np.float64) * self.inv_bw_sq
        return np.maximum(weights, 0.0)

    def bound(self, min_sq_dist: float, max_sq_dist: float) -> tuple[float, float]:
        """Lower and upper kernel values over a squared distance range."""
        return float(self.evaluate(max_sq_dist)), float(self.evaluate(min_sq_dist))

    def __repr__(self) -> str:
        return f"EpanechnikovKernel(bandwidth={self.bandwidth!r})"


def _check_bandwidth(bandwidth: float) -> float:
    bandwidth = float(bandwidth)
    if not np.isfinite(bandwidth) or bandwidth <= 0:
        raise ValueError(f"bandwidth must be a positive finite number, got {bandwidth}")
    return bandwidth


KERNELS: dict[str, type] = {
    "gaussian": GaussianKernel,
    "epanechnikov": EpanechnikovKernel,
}


def get_kernel(kernel: "str | RadialKernel", bandwidth: float | None = None) -> RadialKernel:
    """
    Get a kernel instance by name or return an instance directly.

    Parameters
    ----------
    kernel : str or kernel instance
        Kernel name or an object implementing ``evaluate`` and ``bound``
    bandwidth : float, optional
        Bandwidth for named kernels

    Returns
    -------
    RadialKernel
        Kernel strategy
    """
    if not isinstance(kernel, str):
        if not (hasattr(kernel, "evaluate") and hasattr(kernel, "bound")):
            raise ValueError("kernel objects must implement evaluate() and bound()")
        return kernel
    if kernel not in KERNELS:
        valid = ", ".join(KERNELS.keys())
        raise ValueError(f"Unknown kernel '{kernel}'. Valid options: {valid}")
    if bandwidth is None:
        raise ValueError(f"kernel '{kernel}' requires a bandwidth")
    return KERNELS[kernel](bandwidth)


def pairwise_sq_distances(
    x: NDArray[np.floating],
    x_i: NDArray[np.floating],
) -> NDArray[np.floating]:
    """
    Squared Euclidean distances between two point blocks.

    Parameters
    ----------
    x : ndarray of shape (n_samples, n_features)
        Query points
    x_i : ndarray of shape (n_train, n_features)
        Reference points

    Returns
    -------
    ndarray of shape (n_samples, n_train)
        Squared distances
    """
    x = np.atleast_2d(x)
    x_i = np.atleast_2d(x_i)
    diff = x[:, np.newaxis, :] - x_i[np.newaxis, :, :]
    return np.einsum("ijk,ijk->ij", diff, diff)
