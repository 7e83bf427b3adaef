"""
Ball trees over query and reference point sets.

The space partition comes from scipy's cKDTree (median splits, leaves of
at most ``leaf_size`` points unless points coincide); every node is then
wrapped with a ball bound so that node pairs can be bounded by their
minimum and maximum possible distance.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree


@dataclass(eq=False)
class BallNode:
    """
    A node of a binary ball tree.

    Attributes:
        begin: First index of the node's points in tree order.
        count: Number of points owned by the node.
        center: Centroid of the node's points.
        radius: Largest Euclidean distance from the center to a point.
        linf_radius: Largest coordinate deviation from the center.
        left: Left child, None for leaves.
        right: Right child, None for leaves.
        stat: Node-local statistics attached by the dual-tree engine.
    """

    begin: int
    count: int
    center: NDArray[np.floating]
    radius: float
    linf_radius: float
    left: "BallNode | None" = None
    right: "BallNode | None" = None
    stat: Any = field(default=None, repr=False)

    @property
    def end(self) -> int:
        return self.begin + self.count

    def is_leaf(self) -> bool:
        return self.left is None


def build_ball_tree(
    points: NDArray[np.floating],
    leaf_size: int = 20,
) -> tuple[BallNode, NDArray[np.intp], NDArray[np.floating]]:
    """Build a ball tree over a point matrix.

    Args:
        points: Data of shape (n_points, n_features).
        leaf_size: Maximum number of points in a leaf. Controls the
            granularity of exhaustive evaluation only.

    Returns:
        root: Root node of the tree.
        old_from_new: Permutation with ``points[old_from_new[i]]`` being the
            i-th point in tree order.
        points_sorted: The points in tree order.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] == 0:
        raise ValueError(
            f"points must be a non-empty 2D array, got shape {points.shape}"
        )
    if int(leaf_size) < 1:
        raise ValueError(f"leaf_size must be at least 1, got {leaf_size}")

    kdtree = cKDTree(points, leafsize=int(leaf_size))
    old_from_new = np.asarray(kdtree.indices, dtype=np.intp)
    points_sorted = points[old_from_new]
    root = _wrap_node(kdtree.tree, points_sorted)
    return root, old_from_new, points_sorted


def _wrap_node(kd_node, points_sorted: NDArray[np.floating]) -> BallNode:
    begin = int(kd_node.start_idx)
    end = int(kd_node.end_idx)
    block = points_sorted[begin:end]
    center = block.mean(axis=0)
    deviation = block - center
    node = BallNode(
        begin=begin,
        count=end - begin,
        center=center,
        radius=float(np.sqrt(np.max(np.einsum("ij,ij->i", deviation, deviation)))),
        linf_radius=float(np.max(np.abs(deviation))),
    )
    if kd_node.lesser is not None and kd_node.greater is not None:
        node.left = _wrap_node(kd_node.lesser, points_sorted)
        node.right = _wrap_node(kd_node.greater, points_sorted)
    return node


def min_max_sq_distance(a: BallNode, b: BallNode) -> tuple[float, float]:
    """Squared minimum and maximum distance between points of two balls."""
    diff = a.center - b.center
    center_dist = float(np.sqrt(diff @ diff))
    reach = a.radius + b.radius
    min_dist = max(center_dist - reach, 0.0)
    max_dist = center_dist + reach
    return min_dist * min_dist, max_dist * max_dist


def min_sq_distance(a: BallNode, b: BallNode) -> float:
    return min_max_sq_distance(a, b)[0]


def iter_nodes(root: BallNode) -> Iterator[BallNode]:
    """Pre-order iteration over a tree."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        if not node.is_leaf():
            stack.append(node.right)
            stack.append(node.left)


def tree_depth(root: BallNode) -> int:
    if root.is_leaf():
        return 1
    return 1 + max(tree_depth(root.left), tree_depth(root.right))
