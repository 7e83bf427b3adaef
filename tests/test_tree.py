"""Tests for ball tree construction."""

import numpy as np
import pytest

from dualtree_regression.kernels import pairwise_sq_distances
from dualtree_regression.tree import (
    build_ball_tree,
    iter_nodes,
    min_max_sq_distance,
    tree_depth,
)


class TestBuildBallTree:
    """Tests for build_ball_tree."""

    def test_permutation(self, random_state):
        """old_from_new is a permutation mapping tree order to input order."""
        X = random_state.randn(200, 3)
        root, old_from_new, points_sorted = build_ball_tree(X, leaf_size=10)
        np.testing.assert_array_equal(np.sort(old_from_new), np.arange(200))
        np.testing.assert_array_equal(points_sorted, X[old_from_new])
        assert root.begin == 0
        assert root.count == 200

    def test_children_partition_parent(self, random_state):
        """Children own contiguous halves of their parent's range."""
        X = random_state.randn(300, 2)
        root, _, _ = build_ball_tree(X, leaf_size=8)
        for node in iter_nodes(root):
            if node.is_leaf():
                assert node.right is None
                continue
            assert node.left.begin == node.begin
            assert node.left.end == node.right.begin
            assert node.right.end == node.end

    def test_leaf_size(self, random_state):
        """Leaves hold at most leaf_size distinct points."""
        X = random_state.randn(500, 2)
        root, _, _ = build_ball_tree(X, leaf_size=16)
        leaves = [node for node in iter_nodes(root) if node.is_leaf()]
        assert all(1 <= leaf.count <= 16 for leaf in leaves)
        assert sum(leaf.count for leaf in leaves) == 500

    def test_balls_contain_points(self, random_state):
        """Every point lies inside the ball bounds of its node."""
        X = random_state.uniform(-5, 5, (250, 3))
        root, _, points = build_ball_tree(X, leaf_size=5)
        for node in iter_nodes(root):
            block = points[node.begin:node.end]
            dist = np.linalg.norm(block - node.center, axis=1)
            assert np.all(dist <= node.radius + 1e-12)
            assert np.all(np.abs(block - node.center) <= node.linf_radius + 1e-12)
            assert node.linf_radius <= node.radius + 1e-12

    def test_single_point(self):
        """A single point gives a single leaf of radius zero."""
        root, old_from_new, _ = build_ball_tree(np.array([[1.0, 2.0]]))
        assert root.is_leaf()
        assert root.radius == 0.0
        np.testing.assert_array_equal(old_from_new, [0])
        assert tree_depth(root) == 1

    def test_duplicate_points(self):
        """Identical points are accepted."""
        X = np.ones((50, 2))
        root, _, _ = build_ball_tree(X, leaf_size=4)
        assert root.count == 50
        assert root.radius == 0.0

    def test_depth_grows_logarithmically(self, random_state):
        """Median splits keep the tree balanced."""
        X = random_state.randn(1024, 2)
        root, _, _ = build_ball_tree(X, leaf_size=1)
        assert tree_depth(root) <= 12

    def test_invalid_input(self):
        """Empty or 1D input and non-positive leaf sizes are rejected."""
        with pytest.raises(ValueError):
            build_ball_tree(np.empty((0, 2)))
        with pytest.raises(ValueError):
            build_ball_tree(np.arange(5.0))
        with pytest.raises(ValueError, match="leaf_size"):
            build_ball_tree(np.ones((3, 2)), leaf_size=0)


class TestNodeDistances:
    """Tests for node-pair distance bounds."""

    def test_bounds_contain_pairwise_distances(self, random_state):
        """Min/max ball distances bound every point-pair distance."""
        X = random_state.uniform(0, 1, (120, 2))
        Y = random_state.uniform(0.5, 2, (90, 2))
        qroot, _, qpoints = build_ball_tree(X, leaf_size=10)
        rroot, _, rpoints = build_ball_tree(Y, leaf_size=10)
        for qnode in iter_nodes(qroot):
            for rnode in (rroot, rroot.left, rroot.right.right):
                lo, hi = min_max_sq_distance(qnode, rnode)
                sq = pairwise_sq_distances(
                    qpoints[qnode.begin:qnode.end], rpoints[rnode.begin:rnode.end]
                )
                assert lo <= sq.min() + 1e-12
                assert hi >= sq.max() - 1e-12

    def test_overlapping_balls_have_zero_minimum(self, random_state):
        """A node against itself has zero minimum distance."""
        root, _, _ = build_ball_tree(random_state.randn(50, 2))
        lo, hi = min_max_sq_distance(root, root)
        assert lo == 0.0
        np.testing.assert_almost_equal(hi, (2 * root.radius) ** 2)
