import os
from typing import Optional, Tuple

import numpy as np

from kfn.errors import ModelReleasedError
from kfn.logger import get_logger
from kfn.search import NeighborSearch

logger = get_logger(__name__)

MODEL_FORMAT_VERSION = 1


def random_orthogonal_basis(dimensions: int, seed: int = 0) -> np.ndarray:
    """
    Draw a random orthogonal (dimensions x dimensions) matrix.

    Args:
        dimensions: Dimensionality of the data
        seed: Seed for the generator; 0 draws from the system entropy
    """
    rng = np.random.default_rng(seed if seed != 0 else None)
    q, r = np.linalg.qr(rng.standard_normal((dimensions, dimensions)))
    # Fix the signs so the result is uniformly distributed.
    signs = np.sign(np.diag(r))
    signs[signs == 0] = 1.0
    return q * signs


class KFNModel:
    """
    A trained furthest neighbor index.

    Points are rows here; the parameter-store boundary transposes. The model
    owns its index and data until release() is called, after which every use
    raises ModelReleasedError.
    """

    def __init__(self, neighbor_search: NeighborSearch, basis: Optional[np.ndarray] = None):
        self._search: Optional[NeighborSearch] = neighbor_search
        self._basis = basis
        self.released = False

    @classmethod
    def build(cls, reference: np.ndarray, leaf_size: int = 20, search_mode: str = "dual_tree",
              epsilon: float = 0.0, random_basis: bool = False, seed: int = 0) -> 'KFNModel':
        reference = np.asarray(reference, dtype=np.float64)
        basis = None
        if random_basis:
            logger.info("Projecting reference data onto a random basis")
            basis = random_orthogonal_basis(reference.shape[1], seed)
            reference = reference @ basis
        logger.info(f"Building {search_mode} model on {reference.shape[0]} points of "
                    f"{reference.shape[1]} dimensions")
        return cls(NeighborSearch(reference, search_mode, leaf_size, epsilon), basis)

    @property
    def neighbor_search(self) -> NeighborSearch:
        if self.released:
            raise ModelReleasedError("Model has already been released")
        return self._search

    @property
    def dimensions(self) -> int:
        return self.neighbor_search.dimensions

    @property
    def num_points(self) -> int:
        return self.neighbor_search.num_points

    @property
    def leaf_size(self) -> int:
        return self.neighbor_search.leaf_size

    @property
    def random_basis(self) -> bool:
        return self._basis is not None

    @property
    def search_mode(self) -> str:
        return self.neighbor_search.search_mode

    @search_mode.setter
    def search_mode(self, search_mode: str):
        self.neighbor_search.search_mode = search_mode

    @property
    def epsilon(self) -> float:
        return self.neighbor_search.epsilon

    @epsilon.setter
    def epsilon(self, epsilon: float):
        self.neighbor_search.epsilon = epsilon

    def search(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        neighbor_search = self.neighbor_search
        queries = np.asarray(queries, dtype=np.float64)
        if self._basis is not None:
            queries = queries @ self._basis
        return neighbor_search.search(queries, k)

    def search_self(self, k: int) -> Tuple[np.ndarray, np.ndarray]:
        return self.neighbor_search.search_self(k)

    def release(self):
        """Free the index and the data it owns. Must be called at most once."""
        if self.released:
            raise ModelReleasedError("Model has already been released")
        self._search = None
        self._basis = None
        self.released = True

    def __copy__(self):
        raise TypeError("KFNModel cannot be shallow copied; use copy.deepcopy")

    def __repr__(self) -> str:
        if self.released:
            return "KFNModel(released)"
        return (f"KFNModel(points={self.num_points}, dimensions={self.dimensions}, "
                f"search_mode={self.search_mode!r}, leaf_size={self.leaf_size})")


def save_model(model: KFNModel, path: str):
    """
    Save a model to an .npz file.

    Only the (projected) reference data and the build settings are stored;
    the tree is rebuilt deterministically on load.
    """
    neighbor_search = model.neighbor_search
    basis = model._basis if model._basis is not None else np.empty((0, 0))
    logger.info(f"Saving model to {path}")
    with open(path, "wb") as f:
        np.savez_compressed(
            f,
            version=np.array(MODEL_FORMAT_VERSION),
            reference=neighbor_search.reference,
            basis=basis,
            leaf_size=np.array(neighbor_search.leaf_size),
            search_mode=np.array(neighbor_search.search_mode),
            epsilon=np.array(neighbor_search.epsilon),
        )


def load_model(path: str) -> KFNModel:
    if not os.path.exists(path):
        raise ValueError(f"Model file not found: {path}")
    logger.info(f"Loading model from {path}")
    with np.load(path, allow_pickle=False) as archive:
        version = int(archive["version"])
        if version != MODEL_FORMAT_VERSION:
            raise ValueError(f"Unsupported model format version {version} in {path}")
        basis = archive["basis"]
        neighbor_search = NeighborSearch(
            archive["reference"],
            search_mode=str(archive["search_mode"]),
            leaf_size=int(archive["leaf_size"]),
            epsilon=float(archive["epsilon"]),
        )
    return KFNModel(neighbor_search, basis if basis.size else None)
