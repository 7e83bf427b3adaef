"""
Hermite far-field expansions of the Gaussian kernel.

For a reference node with center c and scale s = sqrt(2) * h,

    exp(-||q - r||^2 / (2 h^2)) = sum_alpha ((r - c) / s)^alpha / alpha!
                                  * h_alpha((q - c) / s)

where h_n(t) = exp(-t^2) H_n(t) are the Hermite functions and multi-index
powers, factorials and Hermite functions are taken coordinate-wise. The
expansion is truncated either to every coordinate below the order
(multiplicative, O(p^D) terms) or to total degree below the order
(O(D^p) terms). Truncation errors are bounded with Cramer's inequality
|H_n(t)| exp(-t^2 / 2) <= K 2^(n/2) sqrt(n!).
"""

from itertools import combinations_with_replacement, product
from math import comb

import numpy as np
from numpy.typing import NDArray
from scipy.special import eval_hermite, factorial, gammaln

from dualtree_regression.kernels import GaussianKernel
from dualtree_regression.tree import BallNode

CRAMER_CONSTANT = 1.086435

# Beyond this scaled node radius the truncation bound is useless.
_MAX_SCALED_RADIUS = 8.0


def num_terms(dim: int, order: int, multiplicative: bool = False) -> int:
    """Number of multi-indices :func:`multi_indices` returns, without enumerating them."""
    if multiplicative:
        return order**dim
    return comb(dim + order - 1, dim)


def multi_indices(dim: int, order: int, multiplicative: bool = False) -> NDArray[np.intp]:
    """
    Multi-indices retained by a truncated expansion.

    Parameters
    ----------
    dim : int
        Number of dimensions D
    order : int
        Truncation order p
    multiplicative : bool, default=False
        Keep every alpha with all coordinates below p when True,
        otherwise every alpha with total degree below p

    Returns
    -------
    ndarray of shape (n_terms, dim)
        Multi-indices sorted by total degree
    """
    if multiplicative:
        alphas = list(product(range(order), repeat=dim))
    else:
        # A multiset of `degree` coordinates is one multi-index of that degree.
        alphas = [
            tuple(np.bincount(np.array(coords, dtype=np.intp), minlength=dim))
            for degree in range(order)
            for coords in combinations_with_replacement(range(dim), degree)
        ]
    alphas.sort(key=lambda alpha: (sum(alpha), alpha))
    return np.array(alphas, dtype=np.intp).reshape(-1, dim)


def _series_tail(log_term, ratio, start: int, max_terms: int = 100000) -> float:
    """Sum log-space terms from ``start`` on, given a decreasing term ratio."""
    total = 0.0
    n = start
    while n < start + max_terms:
        q = ratio(n)
        if q < 0.5:
            return total + np.exp(log_term(n)) / (1.0 - q)
        total += np.exp(log_term(n))
        n += 1
    return np.inf


def truncation_error(
    scaled_radius: float,
    dim: int,
    order: int,
    multiplicative: bool = False,
) -> float:
    """
    Per-pair truncation error of a far-field Hermite expansion.

    Parameters
    ----------
    scaled_radius : float
        Largest coordinate deviation of a reference point from the
        expansion center, divided by sqrt(2) * h
    dim : int
        Number of dimensions D
    order : int
        Truncation order p
    multiplicative : bool, default=False
        Truncation scheme, see :func:`multi_indices`

    Returns
    -------
    float
        Upper bound on |K(q, r) - truncated expansion| for any query q and
        any reference r of the node
    """
    if scaled_radius <= 0:
        return 0.0
    if scaled_radius > _MAX_SCALED_RADIUS:
        return np.inf

    x = np.sqrt(2.0) * scaled_radius
    log_x = np.log(x)
    prefactor = CRAMER_CONSTANT**dim

    if multiplicative:
        head = sum(np.exp(n * log_x - 0.5 * gammaln(n + 1)) for n in range(order))
        tail = _series_tail(
            lambda n: n * log_x - 0.5 * gammaln(n + 1),
            lambda n: x / np.sqrt(n + 1),
            order,
        )
        return float(prefactor * ((head + tail) ** dim - head**dim))

    # alpha! >= |alpha|! / D^|alpha| and there are C(n + D - 1, D - 1)
    # multi-indices of total degree n.
    log_y = log_x + 0.5 * np.log(dim)
    y = np.exp(log_y)
    tail = _series_tail(
        lambda n: (
            gammaln(n + dim) - gammaln(n + 1) - gammaln(dim)
            + n * log_y - 0.5 * gammaln(n + 1)
        ),
        lambda n: y * (n + dim) / (n + 1) ** 1.5,
        order,
    )
    return float(prefactor * tail)


class FarFieldExpansion:
    """
    Far-field Hermite expansion of one reference node.

    Holds the coefficients of both running sums: the denominator (unit
    weights) and the numerator (target weights).

    Parameters
    ----------
    center : ndarray of shape (n_features,)
        Expansion center
    scale : float
        sqrt(2) * bandwidth
    alphas : ndarray of shape (n_terms, n_features)
        Retained multi-indices
    """

    def __init__(
        self,
        center: NDArray[np.floating],
        scale: float,
        alphas: NDArray[np.intp],
    ):
        self.center = np.asarray(center, dtype=np.float64)
        self.scale = float(scale)
        self.alphas = alphas
        self.order = int(alphas.max()) + 1 if alphas.size else 0
        self.denominator_coeffs = np.zeros(len(alphas))
        self.numerator_coeffs = np.zeros(len(alphas))

    @property
    def n_terms(self) -> int:
        return len(self.alphas)

    def accumulate(
        self,
        points: NDArray[np.floating],
        targets: NDArray[np.floating],
    ) -> "FarFieldExpansion":
        """Add the moments of reference points to the coefficients."""
        scaled = (np.atleast_2d(points) - self.center) / self.scale
        monomials = np.prod(
            scaled[:, np.newaxis, :] ** self.alphas[np.newaxis, :, :], axis=2
        )
        monomials /= np.prod(factorial(self.alphas), axis=1)
        self.denominator_coeffs += monomials.sum(axis=0)
        self.numerator_coeffs += targets @ monomials
        return self

    def evaluate(
        self, points: NDArray[np.floating]
    ) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
        """
        Evaluate the expansion at query points.

        Parameters
        ----------
        points : ndarray of shape (n_queries, n_features)
            Query points

        Returns
        -------
        denominator : ndarray of shape (n_queries,)
            Approximate sum of kernel values
        numerator : ndarray of shape (n_queries,)
            Approximate sum of kernel values times targets
        """
        scaled = (np.atleast_2d(points) - self.center) / self.scale
        degrees = np.arange(self.order)
        hermite = eval_hermite(
            degrees[np.newaxis, np.newaxis, :], scaled[:, :, np.newaxis]
        )
        hermite *= np.exp(-scaled**2)[:, :, np.newaxis]

        dims = np.arange(scaled.shape[1])[np.newaxis, :]
        basis = np.prod(hermite[:, dims, self.alphas], axis=2)
        return basis @ self.denominator_coeffs, basis @ self.numerator_coeffs


class HermiteSeries:
    """
    Series-expansion strategy for the Gaussian kernel.

    Args:
        kernel: The Gaussian kernel being approximated.
        order: Default truncation order.
        multiplicative: Use O(p^D) instead of O(D^p) multi-indices.
        points: Reference points in tree order.
        targets: Reference targets in tree order.
    """

    def __init__(
        self,
        kernel: GaussianKernel,
        order: int,
        multiplicative: bool,
        points: NDArray[np.floating],
        targets: NDArray[np.floating],
    ):
        if not isinstance(kernel, GaussianKernel):
            raise ValueError("Hermite expansions are only available for the Gaussian kernel")
        if int(order) < 1:
            raise ValueError(f"expansion order must be at least 1, got {order}")
        self.kernel = kernel
        self.order = int(order)
        self.multiplicative = bool(multiplicative)
        self.points = points
        self.targets = targets
        self.scale = np.sqrt(2.0) * kernel.bandwidth
        self._alphas: dict[int, NDArray[np.intp]] = {}

    def alphas(self, order: int) -> NDArray[np.intp]:
        if order not in self._alphas:
            self._alphas[order] = multi_indices(
                self.points.shape[1], order, self.multiplicative
            )
        return self._alphas[order]

    def error_bound(self, rnode: BallNode, order: int) -> float:
        """Per-pair kernel error of the order-``order`` expansion of rnode."""
        return truncation_error(
            rnode.linf_radius / self.scale,
            self.points.shape[1],
            order,
            self.multiplicative,
        )

    def can_approximate(
        self,
        qnode: BallNode,
        rnode: BallNode,
        order: int,
        tolerance: float,
    ) -> bool:
        """Whether the expansion is accurate enough and cheaper than brute force."""
        n_terms = num_terms(self.points.shape[1], order, self.multiplicative)
        if tolerance <= 0 or n_terms >= rnode.count:
            return False
        return self.error_bound(rnode, order) <= tolerance

    def approximate(
        self,
        qnode: BallNode,
        rnode: BallNode,
        order: int,
    ) -> tuple[FarFieldExpansion, float]:
        """Return the (cached) expansion of rnode and its per-pair error."""
        cache = rnode.stat.expansions
        if order not in cache:
            cache[order] = FarFieldExpansion(
                rnode.center, self.scale, self.alphas(order)
            ).accumulate(
                self.points[rnode.begin:rnode.end],
                self.targets[rnode.begin:rnode.end],
            )
        return cache[order], self.error_bound(rnode, order)
