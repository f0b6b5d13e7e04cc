from dataclasses import dataclass
from typing import Iterator, Optional
from abc import ABC, abstractmethod
import numpy as np


@dataclass
class VectorDataPoint:
    """A vector data point with ID and vector data."""
    id: int
    vector: np.ndarray


@dataclass
class DataSet:
    """The files taking part in one furthest neighbor run."""
    name: str
    reference_file: Optional[str] = None
    query_file: Optional[str] = None
    true_neighbors_file: Optional[str] = None
    true_distances_file: Optional[str] = None


class DataSource(ABC):
    @abstractmethod
    def read_vectors(self, file_path: str) -> Iterator[VectorDataPoint]:
        """Read vectors one at a time from the specified file path."""
        pass

    @abstractmethod
    def read_matrix(self, file_path: str) -> np.ndarray:
        """Read a whole file as a (count, dim) matrix, one point per row."""
        pass

    @abstractmethod
    def read_neighbors(self, file_path: str) -> np.ndarray:
        """Read a neighbor index matrix, one query per row."""
        pass

    @abstractmethod
    def write_matrix(self, file_path: str, matrix: np.ndarray):
        """Write a matrix, one point per row."""
        pass
