"""
kd-tree used by the tree-based furthest neighbor strategies.

The tree never copies or reorders the data it indexes: every node owns a
contiguous [begin, end) range of a permutation array, so the points under a
node are ``data[tree.indices[node.begin:node.end]]``. Nodes are split at the
midpoint of their widest dimension, and stop splitting once they hold at most
``leaf_size`` points or all their points coincide.
"""
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class KDNode:
    """
    A node of the kd-tree.

    Attributes:
        begin: First position of the node's range in the tree's index array
        end: One past the last position of the node's range
        lower: Lower corner of the node's bounding box
        upper: Upper corner of the node's bounding box
        left: Child holding points below the split value
        right: Child holding points at or above the split value
    """
    begin: int
    end: int
    lower: np.ndarray
    upper: np.ndarray
    left: Optional['KDNode'] = None
    right: Optional['KDNode'] = None

    @property
    def count(self) -> int:
        return self.end - self.begin

    @property
    def is_leaf(self) -> bool:
        return self.left is None

    def children(self) -> list:
        if self.is_leaf:
            return []
        return [self.left, self.right]


class KDTree:
    """
    Midpoint-split kd-tree over a (count, dim) array of points.

    Example:
        >>> tree = KDTree(np.random.rand(100, 3), leaf_size=10)
        >>> tree.point_indices(tree.root).shape
        (100,)
    """

    def __init__(self, data: np.ndarray, leaf_size: int = 20):
        if leaf_size < 1:
            raise ValueError(f"Leaf size must be at least 1, got {leaf_size}")
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError(f"Expected a 2-d array of points, got {data.ndim} dimensions")
        if data.shape[0] == 0:
            raise ValueError("Cannot build a tree on an empty dataset")

        self.data = data
        self.leaf_size = leaf_size
        self.indices = np.arange(data.shape[0])
        self.root = self._build(0, data.shape[0])

    def _build(self, begin: int, end: int) -> KDNode:
        points = self.data[self.indices[begin:end]]
        node = KDNode(begin=begin, end=end, lower=points.min(axis=0), upper=points.max(axis=0))
        if node.count <= self.leaf_size:
            return node

        widths = node.upper - node.lower
        split_dim = int(np.argmax(widths))
        if widths[split_dim] == 0:
            # Every point is identical; splitting would never terminate.
            return node

        split_value = (node.lower[split_dim] + node.upper[split_dim]) / 2.0
        below = points[:, split_dim] < split_value
        segment = self.indices[begin:end]
        self.indices[begin:end] = np.concatenate([segment[below], segment[~below]])

        middle = begin + int(below.sum())
        node.left = self._build(begin, middle)
        node.right = self._build(middle, end)
        return node

    def point_indices(self, node: KDNode) -> np.ndarray:
        """Original indices of the points under a node."""
        return self.indices[node.begin:node.end]


def pairwise_distances(queries: np.ndarray, references: np.ndarray) -> np.ndarray:
    """Euclidean distances between every query row and every reference row."""
    diff = queries[:, None, :] - references[None, :, :]
    return np.sqrt((diff * diff).sum(axis=2))


def max_point_box_distance(point: np.ndarray, node: KDNode) -> float:
    """Largest possible distance from a point to any point inside a node's box."""
    furthest = np.maximum(np.abs(point - node.lower), np.abs(node.upper - point))
    return float(np.sqrt((furthest * furthest).sum()))


def max_box_box_distance(a: KDNode, b: KDNode) -> float:
    """Largest possible distance between a point in one box and a point in another."""
    furthest = np.maximum(np.abs(a.upper - b.lower), np.abs(b.upper - a.lower))
    return float(np.sqrt((furthest * furthest).sum()))
