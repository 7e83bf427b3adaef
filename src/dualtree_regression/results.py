"""
Per-query accumulators and final Nadaraya-Watson estimates.
"""

from dataclasses import dataclass, field, fields

import numpy as np
from numpy.typing import NDArray

_ARRAYS = (
    "d_l", "d_e", "d_u", "n_l", "n_e", "n_u", "a_l", "used_d", "used_n", "n_pruned",
)


@dataclass
class NWRCdeQueryResult:
    """
    Running sums of a dual-tree computation and its final estimates.

    Arrays are indexed in query tree order while the computation runs and in
    the caller's query order once :meth:`finalize` has been called.

    Attributes
    ----------
    d_l, d_e, d_u : ndarray of shape (n_queries,)
        Lower bound, estimate and upper bound of sum_r K(q, r)
    n_l, n_e, n_u : ndarray of shape (n_queries,)
        Lower bound, estimate and upper bound of sum_r K(q, r) * t_r
    a_l : ndarray of shape (n_queries,)
        Lower bound of sum_r K(q, r) * |t_r|
    used_d, used_n : ndarray of shape (n_queries,)
        Error budget spent on the denominator and numerator estimates
    n_pruned : ndarray of shape (n_queries,)
        Number of reference points accounted for
    estimates : ndarray of shape (n_queries,)
        Regression estimates, 0.0 where undefined
    undefined : ndarray of shape (n_queries,)
        True where the denominator is zero and the estimate is undefined
    """

    n_queries: int = 0
    d_l: NDArray[np.floating] = field(default=None, repr=False)
    d_e: NDArray[np.floating] = field(default=None, repr=False)
    d_u: NDArray[np.floating] = field(default=None, repr=False)
    n_l: NDArray[np.floating] = field(default=None, repr=False)
    n_e: NDArray[np.floating] = field(default=None, repr=False)
    n_u: NDArray[np.floating] = field(default=None, repr=False)
    a_l: NDArray[np.floating] = field(default=None, repr=False)
    used_d: NDArray[np.floating] = field(default=None, repr=False)
    used_n: NDArray[np.floating] = field(default=None, repr=False)
    n_pruned: NDArray[np.floating] = field(default=None, repr=False)
    estimates: NDArray[np.floating] = field(default=None, repr=False)
    undefined: NDArray[np.bool_] = field(default=None, repr=False)
    num_pairs_visited: int = 0
    num_exact_prunes: int = 0
    num_finite_difference_prunes: int = 0
    num_series_prunes: int = 0
    num_monte_carlo_prunes: int = 0
    num_base_cases: int = 0
    num_inconsistent_bounds: int = 0
    num_exact_fallbacks: int = 0
    finalized: bool = False

    def __post_init__(self):
        self.init()

    def init(self) -> "NWRCdeQueryResult":
        """Zero every accumulator and counter."""
        for name in _ARRAYS:
            setattr(self, name, np.zeros(self.n_queries))
        self.estimates = np.zeros(self.n_queries)
        self.undefined = np.zeros(self.n_queries, dtype=bool)
        for f in fields(self):
            if f.name.startswith("num_"):
                setattr(self, f.name, 0)
        self.finalized = False
        return self

    @property
    def numerator(self) -> NDArray[np.floating]:
        return self.n_e

    @property
    def denominator(self) -> NDArray[np.floating]:
        return self.d_e

    def finalize(self, old_from_new: NDArray[np.intp] | None = None) -> "NWRCdeQueryResult":
        """
        Return the accumulators to caller order and form the estimates.

        Parameters
        ----------
        old_from_new : ndarray of shape (n_queries,), optional
            Query tree permutation; ``None`` when already in caller order

        Returns
        -------
        self
        """
        if old_from_new is not None:
            for name in _ARRAYS:
                values = getattr(self, name)
                unpermuted = np.empty_like(values)
                unpermuted[old_from_new] = values
                setattr(self, name, unpermuted)
        self._compute_estimates()
        self.finalized = True
        return self

    def _compute_estimates(self) -> None:
        self.undefined = ~(self.d_e > 0)
        safe = np.where(self.undefined, 1.0, self.d_e)
        self.estimates = np.where(self.undefined, 0.0, self.n_e / safe)

    def subtract_self_contribution(
        self,
        kernel_at_zero: float,
        targets: NDArray[np.floating],
    ) -> "NWRCdeQueryResult":
        """
        Leave-one-out adjustment for a query set equal to the reference set.

        Parameters
        ----------
        kernel_at_zero : float
            Kernel value at distance zero
        targets : ndarray of shape (n_queries,)
            Reference targets in caller order

        Returns
        -------
        self
        """
        if not self.finalized:
            raise RuntimeError("Must call finalize() before subtract_self_contribution()")
        targets = np.asarray(targets, dtype=np.float64)
        if targets.shape != (self.n_queries,):
            raise ValueError(
                f"targets has shape {targets.shape}, expected ({self.n_queries},)"
            )
        for name in ("d_l", "d_e", "d_u"):
            setattr(self, name, getattr(self, name) - kernel_at_zero)
        for name in ("n_l", "n_e", "n_u"):
            setattr(self, name, getattr(self, name) - kernel_at_zero * targets)
        self.a_l = self.a_l - kernel_at_zero * np.abs(targets)
        self.n_pruned = self.n_pruned - 1
        # Rounding can leave a self-only denominator slightly off zero.
        scale = np.maximum(np.abs(kernel_at_zero), 1.0)
        self.d_e = np.where(np.abs(self.d_e) <= 1e-12 * scale, 0.0, self.d_e)
        self._compute_estimates()
        return self

    def stats(self) -> dict[str, int]:
        """Pruning and traversal counters."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name.startswith("num_")
        }
