"""Tests for kernel functions."""

import numpy as np
import pytest

from dualtree_regression.kernels import (
    KERNELS,
    EpanechnikovKernel,
    GaussianKernel,
    get_kernel,
    pairwise_sq_distances,
)


class TestKernelFunctions:
    """Tests for individual kernels."""

    def test_gaussian_kernel_at_zero(self):
        """Gaussian kernel is one at distance zero."""
        kernel = GaussianKernel(0.5)
        np.testing.assert_almost_equal(kernel.evaluate(0.0), 1.0)

    def test_gaussian_kernel_value(self):
        """Gaussian kernel matches its closed form."""
        kernel = GaussianKernel(2.0)
        np.testing.assert_almost_equal(kernel.evaluate(4.0), np.exp(-0.5))

    def test_gaussian_kernel_far_away_is_negligible(self):
        """Gaussian kernel vanishes far beyond the bandwidth."""
        kernel = GaussianKernel(2.0)
        assert kernel.evaluate(200.0) < 1e-10

    def test_epanechnikov_kernel_compact_support(self):
        """Epanechnikov kernel is exactly zero outside its support."""
        kernel = EpanechnikovKernel(1.0)
        result = kernel.evaluate(np.array([1.0, 1.5, 4.0]))
        np.testing.assert_array_equal(result, 0.0)

    def test_epanechnikov_kernel_value(self):
        """Epanechnikov kernel matches its closed form."""
        kernel = EpanechnikovKernel(2.0)
        np.testing.assert_almost_equal(kernel.evaluate(1.0), 0.75)

    @pytest.mark.parametrize("kernel_name", list(KERNELS.keys()))
    def test_all_kernels_nonincreasing(self, kernel_name):
        """Kernels decrease with distance."""
        kernel = get_kernel(kernel_name, 1.0)
        values = kernel.evaluate(np.linspace(0, 5, 100))
        assert np.all(np.diff(values) <= 0)
        assert np.all(values >= 0)

    @pytest.mark.parametrize("kernel_name", list(KERNELS.keys()))
    def test_bound_orders_values(self, kernel_name):
        """Bounds are the kernel at the far and near distances."""
        kernel = get_kernel(kernel_name, 1.0)
        lower, upper = kernel.bound(0.1, 0.8)
        assert lower <= upper
        np.testing.assert_almost_equal(lower, kernel.evaluate(0.8))
        np.testing.assert_almost_equal(upper, kernel.evaluate(0.1))

    @pytest.mark.parametrize("kernel_name", list(KERNELS.keys()))
    def test_bound_contains_interior_values(self, kernel_name):
        """Every value inside the distance range lies within the bounds."""
        kernel = get_kernel(kernel_name, 1.3)
        lower, upper = kernel.bound(0.2, 1.5)
        values = kernel.evaluate(np.linspace(0.2, 1.5, 50))
        assert np.all(values >= lower)
        assert np.all(values <= upper)

    @pytest.mark.parametrize("bandwidth", [0.0, -1.0, np.inf, np.nan])
    def test_invalid_bandwidth(self, bandwidth):
        """Non-positive or non-finite bandwidths are rejected."""
        with pytest.raises(ValueError, match="bandwidth"):
            GaussianKernel(bandwidth)


class TestGetKernel:
    """Tests for get_kernel function."""

    def test_get_kernel_by_name(self):
        """Can retrieve kernel by name."""
        for name in KERNELS:
            kernel = get_kernel(name, 1.0)
            assert kernel.name == name
            assert kernel.bandwidth == 1.0

    def test_get_kernel_with_instance(self):
        """Returns kernel objects directly."""
        kernel = EpanechnikovKernel(0.3)
        assert get_kernel(kernel) is kernel

    def test_get_kernel_invalid_name(self):
        """Raises error for unknown kernel name."""
        with pytest.raises(ValueError, match="Unknown kernel"):
            get_kernel("invalid_kernel", 1.0)

    def test_get_kernel_requires_bandwidth(self):
        """Named kernels need a bandwidth."""
        with pytest.raises(ValueError, match="requires a bandwidth"):
            get_kernel("gaussian")

    def test_get_kernel_rejects_plain_callable(self):
        """A bare function is not a kernel strategy."""
        with pytest.raises(ValueError, match="evaluate"):
            get_kernel(lambda d: np.exp(-d))


class TestPairwiseDistances:
    """Tests for squared distance blocks."""

    def test_shape(self):
        """Distances have one row per query and one column per reference."""
        x = np.zeros((2, 3))
        x_i = np.ones((4, 3))
        assert pairwise_sq_distances(x, x_i).shape == (2, 4)

    def test_values(self):
        """Distances are squared Euclidean."""
        x = np.array([[0.0, 0.0]])
        x_i = np.array([[3.0, 4.0], [0.0, 0.0]])
        np.testing.assert_array_almost_equal(
            pairwise_sq_distances(x, x_i), [[25.0, 0.0]]
        )
