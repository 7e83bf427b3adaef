"""Tests for the sklearn-compatible estimator."""

import numpy as np
import pytest
from sklearn.exceptions import NotFittedError

from dualtree_regression.estimators import DualTreeNadarayaWatson
from dualtree_regression.kernels import GaussianKernel, pairwise_sq_distances


class TestDualTreeNadarayaWatson:
    """Tests for the dual-tree Nadaraya-Watson estimator."""

    def test_fit_returns_self(self, simple_1d_data):
        """Fit returns self for method chaining."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5)
        result = model.fit(X, y)
        assert result is model

    def test_fit_stores_data(self, simple_1d_data):
        """Fit stores training data."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5).fit(X, y)
        np.testing.assert_array_equal(model.X_, X)
        np.testing.assert_array_equal(model.y_, y)
        assert model.n_features_in_ == 1

    def test_predict_shape(self, simple_1d_data):
        """Predict returns correct shape."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5).fit(X, y)
        y_pred = model.predict(X[:10])
        assert y_pred.shape == (10,)

    def test_predict_interpolates(self, simple_1d_data):
        """Predictions at training points are close to targets."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.3).fit(X, y)
        y_pred = model.predict(X)
        correlation = np.corrcoef(y, y_pred)[0, 1]
        assert correlation > 0.8

    @pytest.mark.parametrize("kernel", ["gaussian", "epanechnikov"])
    def test_close_to_naive(self, simple_2d_data, query_2d, kernel):
        """Approximate predictions meet the relative error of exact ones."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(
            bandwidth=0.2, kernel=kernel, relative_error=0.05
        ).fit(X, y)
        y_pred = model.predict(query_2d)
        y_exact = model.predict_naive(query_2d)
        assert np.all(np.abs(y_pred - y_exact) <= 0.05 * y_exact + 1e-9)

    def test_exact_mode(self, simple_2d_data, query_2d):
        """relative_error=0 gives brute-force predictions."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(bandwidth=0.1, relative_error=0.0).fit(X, y)
        np.testing.assert_allclose(
            model.predict(query_2d), model.predict_naive(query_2d), rtol=1e-10
        )

    def test_undefined_falls_back_to_mean(self):
        """Queries out of reach of every reference get the target mean."""
        X = np.array([[0.0], [1.0]])
        y = np.array([2.0, 4.0])
        model = DualTreeNadarayaWatson(bandwidth=0.01, kernel="epanechnikov").fit(X, y)
        y_pred = model.predict(np.array([[0.0], [100.0]]))
        np.testing.assert_allclose(y_pred, [2.0, 3.0])

    def test_stats_recorded(self, simple_2d_data, query_2d):
        """The last computation's counters are exposed."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(bandwidth=0.2).fit(X, y)
        model.predict(query_2d)
        assert model.stats_["num_pairs_visited"] > 0
        assert {
            "num_series_prunes",
            "num_monte_carlo_prunes",
            "num_base_cases",
            "num_exact_fallbacks",
        } <= set(model.stats_)

    def test_compute_exposes_sums(self, simple_2d_data, query_2d):
        """Compute returns numerator and denominator alongside estimates."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(bandwidth=0.2).fit(X, y)
        result = model.compute(query_2d)
        np.testing.assert_allclose(
            result.estimates, result.numerator / result.denominator
        )

    @pytest.mark.parametrize("scaling", ["none", "range", "standardize"])
    def test_scaling_options(self, simple_2d_data, query_2d, scaling):
        """Every scaling option produces finite predictions."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(bandwidth=0.3, scaling=scaling).fit(X, y)
        y_pred = model.predict(query_2d)
        assert np.all(np.isfinite(y_pred))

    def test_monte_carlo_predictions(self, simple_1d_data):
        """Probabilistic predictions stay close to exact ones."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(
            bandwidth=1.0,
            probability=0.95,
            expansion_order=None,
            leaf_size=5,
            random_state=0,
        ).fit(X, y)
        queries = np.linspace(-2, 2, 30)[:, np.newaxis]
        y_pred = model.predict(queries)
        y_exact = model.predict_naive(queries)
        np.testing.assert_allclose(y_pred, y_exact, rtol=0.2)

    def test_empty_predict(self, simple_1d_data):
        """Predicting on no samples returns an empty array."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5).fit(X, y)
        assert model.predict(np.empty((0, 1))).shape == (0,)

    def test_unfitted_error(self, simple_1d_data):
        """Raises error when predicting on unfitted model."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5)
        with pytest.raises(NotFittedError):
            model.predict(X)

    def test_wrong_n_features(self, simple_1d_data):
        """Raises error for wrong number of features."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5).fit(X, y)
        X_wrong = np.random.randn(10, 2)
        with pytest.raises(ValueError):
            model.predict(X_wrong)

    @pytest.mark.parametrize(
        "params",
        [
            {"bandwidth": -1.0},
            {"kernel": "bogus"},
            {"relative_error": -0.5},
            {"probability": 2.0},
            {"leaf_size": 0},
            {"scaling": "log"},
        ],
    )
    def test_invalid_params(self, simple_1d_data, params):
        """Invalid parameters are reported when fitting."""
        X, y = simple_1d_data
        with pytest.raises(ValueError):
            DualTreeNadarayaWatson(**params).fit(X, y)


class TestLeaveOneOut:
    """Tests for leave-one-out predictions."""

    def _brute_force_loo(self, X, y, bandwidth):
        weights = GaussianKernel(bandwidth).evaluate(pairwise_sq_distances(X, X))
        np.fill_diagonal(weights, 0.0)
        return weights @ y / weights.sum(axis=1)

    def test_matches_brute_force(self, simple_1d_data):
        """Exact leave-one-out equals removing each point by hand."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.3, relative_error=0.0).fit(X, y)
        np.testing.assert_allclose(
            model.loo_predict(), self._brute_force_loo(X, y, 0.3), rtol=1e-8
        )

    def test_approximate(self, simple_2d_data):
        """Approximate leave-one-out stays near the exact values."""
        X, y = simple_2d_data
        model = DualTreeNadarayaWatson(bandwidth=0.1, relative_error=0.01).fit(X, y)
        exact = self._brute_force_loo(X, y, 0.1)
        np.testing.assert_allclose(model.loo_predict(), exact, rtol=0.05)

    def test_isolated_point_uses_mean(self):
        """A point with no other neighbors falls back to the target mean."""
        X = np.array([[0.0], [0.001], [50.0]])
        y = np.array([1.0, 1.0, 4.0])
        model = DualTreeNadarayaWatson(bandwidth=0.1, relative_error=0.0).fit(X, y)
        np.testing.assert_allclose(model.loo_predict(), [1.0, 1.0, 2.0])

    def test_unfitted_error(self):
        """Leave-one-out needs a fitted model."""
        with pytest.raises(NotFittedError):
            DualTreeNadarayaWatson().loo_predict()


class TestSklearnCompatibility:
    """Tests for sklearn compatibility."""

    def test_clone(self):
        """Estimator can be cloned."""
        from sklearn.base import clone

        model = DualTreeNadarayaWatson(bandwidth=0.5, relative_error=0.02)
        cloned = clone(model)
        assert cloned.bandwidth == model.bandwidth
        assert cloned.relative_error == model.relative_error

    def test_score(self, simple_1d_data):
        """Estimator has score method (R^2)."""
        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5).fit(X, y)
        score = model.score(X, y)
        assert 0 <= score <= 1

    def test_get_params(self):
        """Estimator implements get_params."""
        model = DualTreeNadarayaWatson(kernel="epanechnikov", bandwidth=0.3)
        params = model.get_params()
        assert params["kernel"] == "epanechnikov"
        assert params["bandwidth"] == 0.3
        assert params["probability"] == 1.0

    def test_set_params(self):
        """Estimator implements set_params."""
        model = DualTreeNadarayaWatson()
        model.set_params(kernel="epanechnikov", bandwidth=0.7)
        assert model.kernel == "epanechnikov"
        assert model.bandwidth == 0.7

    def test_pipeline_integration(self, simple_1d_data):
        """Can be used in sklearn Pipeline."""
        from sklearn.pipeline import Pipeline
        from sklearn.preprocessing import StandardScaler

        X, y = simple_1d_data
        pipe = Pipeline([
            ("scaler", StandardScaler()),
            ("regressor", DualTreeNadarayaWatson(bandwidth=0.5)),
        ])
        pipe.fit(X, y)
        y_pred = pipe.predict(X[:5])
        assert y_pred.shape == (5,)

    def test_cross_val_score(self, simple_1d_data):
        """Can be used with cross_val_score."""
        from sklearn.model_selection import cross_val_score

        X, y = simple_1d_data
        model = DualTreeNadarayaWatson(bandwidth=0.5)
        scores = cross_val_score(model, X, y, cv=3)
        assert len(scores) == 3
        assert all(np.isfinite(scores))
