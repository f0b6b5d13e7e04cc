"""
Furthest neighbor search strategies.

Every strategy returns ``(neighbors, distances)`` arrays of shape
``(query_count, k)``. Each row is sorted by decreasing distance, with ties
broken by increasing reference index, so the exact strategies (naive,
single-tree and dual-tree) produce identical output. A node is only pruned
when its distance bound is strictly worse than the current k-th candidate,
relaxed by epsilon. Greedy search is an approximation and gives no such
guarantee.
"""
from typing import Optional, Tuple

import numpy as np

from kfn.logger import get_logger
from kfn.tree import KDNode, KDTree, max_box_box_distance, max_point_box_distance, pairwise_distances

logger = get_logger(__name__)

SEARCH_MODES = ("dual_tree", "single_tree", "naive", "greedy")


class CandidateList:
    """The best k candidates found so far for every query point."""

    def __init__(self, query_count: int, k: int):
        self.k = k
        self.distances = np.full((query_count, k), -np.inf)
        self.neighbors = np.full((query_count, k), -1, dtype=np.int64)

    def bound(self, query_index) -> float:
        """Distance of the worst kept candidate; -inf until k candidates exist."""
        return float(self.distances[query_index, self.k - 1].min())

    def insert(self, query_index: int, distances: np.ndarray, neighbors: np.ndarray):
        all_distances = np.concatenate([self.distances[query_index], distances])
        all_neighbors = np.concatenate([self.neighbors[query_index], neighbors])
        order = np.lexsort((all_neighbors, -all_distances))[:self.k]
        self.distances[query_index] = all_distances[order]
        self.neighbors[query_index] = all_neighbors[order]

    def result(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.neighbors, self.distances


def _should_prune(max_distance: float, bound: float, epsilon: float) -> bool:
    return max_distance * (1.0 - epsilon) < bound


def _base_case(candidates: CandidateList, queries: np.ndarray, query_indices: np.ndarray,
               references: np.ndarray, reference_indices: np.ndarray, exclude_self: bool):
    distances = pairwise_distances(queries[query_indices], references[reference_indices])
    for row, query_index in enumerate(query_indices):
        if exclude_self:
            keep = reference_indices != query_index
            candidates.insert(query_index, distances[row][keep], reference_indices[keep])
        else:
            candidates.insert(query_index, distances[row], reference_indices)


def naive_search(references: np.ndarray, queries: np.ndarray, k: int,
                 exclude_self: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """Brute force search: every query against every reference point."""
    candidates = CandidateList(queries.shape[0], k)
    reference_indices = np.arange(references.shape[0])
    for query_index in range(queries.shape[0]):
        _base_case(candidates, queries, np.array([query_index]), references,
                   reference_indices, exclude_self)
    return candidates.result()


def single_tree_search(tree: KDTree, queries: np.ndarray, k: int, epsilon: float = 0.0,
                       exclude_self: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """Search the reference tree separately for every query point."""
    candidates = CandidateList(queries.shape[0], k)

    def _visit(node: KDNode, query_index: int, max_distance: float):
        if _should_prune(max_distance, candidates.bound(query_index), epsilon):
            return
        if node.is_leaf:
            _base_case(candidates, queries, np.array([query_index]), tree.data,
                       tree.point_indices(node), exclude_self)
            return
        scored = [(max_point_box_distance(queries[query_index], child), child)
                  for child in node.children()]
        # Most promising child first; it raises the bound fastest.
        scored.sort(key=lambda item: -item[0])
        for child_distance, child in scored:
            _visit(child, query_index, child_distance)

    for query_index in range(queries.shape[0]):
        _visit(tree.root, query_index, max_point_box_distance(queries[query_index], tree.root))
    return candidates.result()


def dual_tree_search(reference_tree: KDTree, query_tree: KDTree, k: int, epsilon: float = 0.0,
                     exclude_self: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """
    Traverse a query tree and a reference tree together.

    A pair of nodes is pruned when no reference point in one box can beat the
    worst current candidate of any query point in the other box.

    Args:
        reference_tree: Tree over the reference points
        query_tree: Tree over the query points; may be the reference tree itself
        k: Number of neighbors per query point
        epsilon: Relative approximation allowed when pruning
        exclude_self: Skip pairs with equal indices (query set is the reference set)
    """
    queries = query_tree.data
    candidates = CandidateList(queries.shape[0], k)

    def _visit(query_node: KDNode, reference_node: KDNode, max_distance: float):
        query_indices = query_tree.point_indices(query_node)
        if _should_prune(max_distance, candidates.bound(query_indices), epsilon):
            return

        if query_node.is_leaf and reference_node.is_leaf:
            _base_case(candidates, queries, query_indices, reference_tree.data,
                       reference_tree.point_indices(reference_node), exclude_self)
            return

        query_children = [query_node] if query_node.is_leaf else query_node.children()
        reference_children = [reference_node] if reference_node.is_leaf else reference_node.children()
        for query_child in query_children:
            scored = [(max_box_box_distance(query_child, reference_child), reference_child)
                      for reference_child in reference_children]
            scored.sort(key=lambda item: -item[0])
            for child_distance, reference_child in scored:
                _visit(query_child, reference_child, child_distance)

    _visit(query_tree.root, reference_tree.root,
           max_box_box_distance(query_tree.root, reference_tree.root))
    return candidates.result()


def greedy_search(tree: KDTree, queries: np.ndarray, k: int,
                  exclude_self: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """
    Approximate search that follows only the most promising branch.

    From the root, each query descends into the child with the largest distance
    bound for as long as that child still holds enough points to produce k
    results, then scans every point below the node it stopped at.
    """
    candidates = CandidateList(queries.shape[0], k)
    needed = k + 1 if exclude_self else k
    for query_index in range(queries.shape[0]):
        node = tree.root
        while not node.is_leaf:
            best = max(node.children(),
                       key=lambda child: max_point_box_distance(queries[query_index], child))
            if best.count < needed:
                break
            node = best
        _base_case(candidates, queries, np.array([query_index]), tree.data,
                   tree.point_indices(node), exclude_self)
    return candidates.result()


class NeighborSearch:
    """
    Furthest neighbor search over a fixed reference set.

    The reference tree is built on construction unless the search mode is
    naive, and lazily if the mode is later switched to a tree strategy.
    """

    def __init__(self, reference: np.ndarray, search_mode: str = "dual_tree",
                 leaf_size: int = 20, epsilon: float = 0.0):
        if search_mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode '{search_mode}', expected one of {SEARCH_MODES}")
        self.reference = np.asarray(reference, dtype=np.float64)
        self.search_mode = search_mode
        self.leaf_size = leaf_size
        self.epsilon = epsilon
        self._tree: Optional[KDTree] = None
        if search_mode != "naive":
            self._tree = self._build_tree()

    def _build_tree(self) -> KDTree:
        logger.debug(f"Building kd-tree on {self.reference.shape[0]} points with leaf size {self.leaf_size}")
        return KDTree(self.reference, self.leaf_size)

    @property
    def tree(self) -> KDTree:
        if self._tree is None:
            self._tree = self._build_tree()
        return self._tree

    @property
    def dimensions(self) -> int:
        return self.reference.shape[1]

    @property
    def num_points(self) -> int:
        return self.reference.shape[0]

    def search(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Find the k furthest reference points from every query row."""
        queries = np.asarray(queries, dtype=np.float64)
        if k < 1 or k > self.num_points:
            raise ValueError(f"Requested k={k} but the reference set has {self.num_points} points")
        return self._dispatch(queries, k, exclude_self=False)

    def search_self(self, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Find the k furthest other reference points from every reference point."""
        if k < 1 or k >= self.num_points:
            raise ValueError(
                f"Requested k={k} but a self search over {self.num_points} points allows at most "
                f"{self.num_points - 1}")
        return self._dispatch(self.reference, k, exclude_self=True)

    def _dispatch(self, queries: np.ndarray, k: int, exclude_self: bool) -> Tuple[np.ndarray, np.ndarray]:
        logger.debug(f"Running {self.search_mode} search for {queries.shape[0]} queries with k={k}")
        if self.search_mode == "naive":
            return naive_search(self.reference, queries, k, exclude_self)
        if self.search_mode == "single_tree":
            return single_tree_search(self.tree, queries, k, self.epsilon, exclude_self)
        if self.search_mode == "greedy":
            return greedy_search(self.tree, queries, k, exclude_self)
        query_tree = self.tree if exclude_self else KDTree(queries, self.leaf_size)
        return dual_tree_search(self.tree, query_tree, k, self.epsilon, exclude_self)
