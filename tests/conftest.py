"""Pytest fixtures for dual-tree regression tests."""

import numpy as np
import pytest


@pytest.fixture
def random_state():
    """Fixed random state for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture
def simple_1d_data(random_state):
    """Simple 1D regression data with positive targets."""
    n = 300
    X = random_state.uniform(-3, 3, (n, 1))
    y = 2 + np.sin(X[:, 0]) + 0.1 * random_state.randn(n)
    return X, y


@pytest.fixture
def simple_2d_data(random_state):
    """Simple 2D regression data with positive targets."""
    n = 600
    X = random_state.uniform(0, 1, (n, 2))
    y = 1 + X[:, 0] ** 2 + X[:, 1] + 0.1 * random_state.rand(n)
    return X, y


@pytest.fixture
def query_2d(random_state):
    """Query points over the same domain as simple_2d_data."""
    return random_state.uniform(0, 1, (150, 2))


@pytest.fixture
def dense_2d_data(random_state):
    """Many points relative to a wide Gaussian bandwidth."""
    n = 2000
    X = random_state.uniform(0, 1, (n, 2))
    y = 1 + np.cos(3 * X[:, 0]) * X[:, 1] + 0.5
    return X, y
