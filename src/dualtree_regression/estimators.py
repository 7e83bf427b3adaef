"""
Sklearn-compatible dual-tree Nadaraya-Watson estimator.

Wraps the dual-tree engine so that ``fit`` builds the reference tree and
``predict`` runs a dual-tree computation over the query points.
"""

from typing import Literal

import numpy as np
from numpy.typing import NDArray
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.utils.validation import check_is_fitted, validate_data

from dualtree_regression.dualtree import NWRCde
from dualtree_regression.results import NWRCdeQueryResult
from dualtree_regression.stats import NWRCdeConfig


class DualTreeNadarayaWatson(RegressorMixin, BaseEstimator):
    """
    Nadaraya-Watson kernel regression with dual-tree approximation.

    Estimates

        ŷ(x) = Σ K(||x - x_i||) * y_i / Σ K(||x - x_i||)

    so that ``|ŷ(x) - y(x)| <= relative_error * |y(x)|`` for non-negative
    targets, with probability at least ``probability``.

    Parameters
    ----------
    bandwidth : float, default=1.0
        Kernel bandwidth

    kernel : str, default="gaussian"
        "gaussian" or "epanechnikov"

    relative_error : float, default=0.1
        Required relative error of the estimates. 0 gives exact results.

    probability : float, default=1.0
        Probability guarantee of the relative error. Values below 1 enable
        Monte Carlo pruning.

    threshold : float, default=0.0
        Absolute slack of the guarantee: estimates satisfy
        ``|y_hat - y| <= relative_error * |y| + threshold``

    leaf_size : int, default=20
        Maximum number of points per tree leaf

    expansion_order : int or None, default=4
        Hermite series order for the Gaussian kernel; None disables
        series expansions

    multiplicative_expansion : bool, default=False
        Use O(p^D) instead of O(D^p) expansion terms

    scaling : {"none", "range", "standardize"}, default="none"
        Feature scaling fit on the training data before building trees

    random_state : int, RandomState instance or None, default=None
        Seed of the Monte Carlo sampler

    Attributes
    ----------
    X_ : ndarray of shape (n_samples, n_features)
        Training data

    y_ : ndarray of shape (n_samples,)
        Training targets

    engine_ : NWRCde
        Initialized dual-tree engine

    stats_ : dict
        Pruning counters of the last computation

    Examples
    --------
    >>> import numpy as np
    >>> from dualtree_regression import DualTreeNadarayaWatson
    >>> X = np.random.randn(1000, 2)
    >>> y = np.sin(X[:, 0]) + 0.1 * np.random.randn(1000)
    >>> model = DualTreeNadarayaWatson(bandwidth=0.3, relative_error=0.01)
    >>> model.fit(X, y)
    >>> predictions = model.predict(X[:5])
    """

    def __init__(
        self,
        bandwidth: float = 1.0,
        kernel: str = "gaussian",
        relative_error: float = 0.1,
        probability: float = 1.0,
        threshold: float = 0.0,
        leaf_size: int = 20,
        expansion_order: int | None = 4,
        multiplicative_expansion: bool = False,
        scaling: Literal["none", "range", "standardize"] = "none",
        random_state=None,
    ):
        self.bandwidth = bandwidth
        self.kernel = kernel
        self.relative_error = relative_error
        self.probability = probability
        self.threshold = threshold
        self.leaf_size = leaf_size
        self.expansion_order = expansion_order
        self.multiplicative_expansion = multiplicative_expansion
        self.scaling = scaling
        self.random_state = random_state

    def _make_config(self) -> NWRCdeConfig:
        return NWRCdeConfig(
            bandwidth=float(self.bandwidth),
            relative_error=float(self.relative_error),
            probability=float(self.probability),
            threshold=float(self.threshold),
            leaf_size=int(self.leaf_size),
            kernel=self.kernel,
            expansion_order=self.expansion_order,
            multiplicative_expansion=bool(self.multiplicative_expansion),
            scaling=self.scaling,
            random_state=self.random_state,
        )

    def fit(self, X: NDArray, y: NDArray) -> "DualTreeNadarayaWatson":
        """
        Build the reference tree.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Training data
        y : array-like of shape (n_samples,)
            Target values

        Returns
        -------
        self
            Fitted estimator
        """
        X, y = validate_data(self, X, y, y_numeric=True, dtype=np.float64)
        y = y.astype(np.float64)

        self.engine_ = NWRCde(self._make_config()).init(X, y)
        self.X_ = X
        self.y_ = y
        self.target_mean_ = self.engine_.parameters_.rset_target_sum / len(y)
        return self

    def _validate_data_predict(self, X: NDArray) -> NDArray[np.floating]:
        check_is_fitted(self)
        return validate_data(
            self, X, dtype=np.float64, reset=False, ensure_min_samples=0
        )

    def compute(self, X: NDArray) -> NWRCdeQueryResult:
        """
        Run the dual-tree computation and return every accumulator.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Query points

        Returns
        -------
        NWRCdeQueryResult
            Numerator and denominator sums, their bounds and the estimates
        """
        X = self._validate_data_predict(X)
        result = self.engine_.compute(X)
        self.stats_ = result.stats()
        return result

    def _fill_undefined(self, result: NWRCdeQueryResult) -> NDArray[np.floating]:
        y_pred = result.estimates.copy()
        # Points with no neighbors fall back to the target mean
        y_pred[result.undefined] = self.target_mean_
        return y_pred

    def predict(self, X: NDArray) -> NDArray[np.floating]:
        """
        Predict using the dual-tree Nadaraya-Watson estimator.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Samples to predict

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Predicted values
        """
        return self._fill_undefined(self.compute(X))

    def predict_naive(self, X: NDArray) -> NDArray[np.floating]:
        """Exact brute-force predictions, for verification."""
        X = self._validate_data_predict(X)
        return self._fill_undefined(self.engine_.naive(X))

    def loo_predict(self) -> NDArray[np.floating]:
        """
        Leave-one-out predictions at the training points.

        Each training point's own kernel contribution is removed from the
        dual-tree sums computed over the training set.

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Leave-one-out predictions
        """
        check_is_fitted(self)
        result = self.engine_.compute(self.X_)
        kernel_at_zero = float(self.engine_.parameters_.kernel.evaluate(0.0))
        result.subtract_self_contribution(kernel_at_zero, self.y_)
        self.stats_ = result.stats()
        return self._fill_undefined(result)
