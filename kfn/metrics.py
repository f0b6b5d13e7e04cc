import numpy as np


def effective_error(found_distances: np.ndarray, true_distances: np.ndarray) -> float:
    """
    Mean relative error of the found distances against the true ones.

    Entries whose true distance is zero, or that were never filled in, are
    skipped. Returns 0.0 when no entry qualifies.
    """
    found = np.asarray(found_distances, dtype=np.float64)
    true = np.asarray(true_distances, dtype=np.float64)
    if found.shape != true.shape:
        raise ValueError(f"Distance matrices differ in shape: {found.shape} vs {true.shape}")

    valid = (true != 0) & np.isfinite(found)
    if not valid.any():
        return 0.0
    return float((np.abs(true[valid] - found[valid]) / true[valid]).mean())


def compute_recall(found_neighbors: np.ndarray, true_neighbors: np.ndarray) -> float:
    """Fraction of found neighbors that are among the true neighbors of the same query."""
    found = np.asarray(found_neighbors)
    true = np.asarray(true_neighbors)
    if found.shape != true.shape:
        raise ValueError(f"Neighbor matrices differ in shape: {found.shape} vs {true.shape}")
    if found.size == 0:
        return 0.0

    hits = sum(np.isin(found_row, true_row).sum() for found_row, true_row in zip(found, true))
    return float(hits) / found.size
