import io
import os
import gzip
import numpy as np
from typing import Iterator, BinaryIO, Optional
import logging
import struct

from kfn.data_set import DataSource, DataSet, VectorDataPoint

logger = logging.getLogger(__name__)

VEC_EXTENSIONS = ('.fvecs', '.ivecs', '.bvecs')
TEXT_EXTENSIONS = ('.csv', '.txt')
# Largest single read while loading a vector payload
READ_CHUNK_SIZE = 1 << 20


class VecDataSource(DataSource):
    """
    A file-based implementation of the DataSource interface.
    Supports .fvecs, .ivecs and .bvecs files with optional gzip compression,
    as well as .csv/.txt and .npy matrices.
    """

    def __init__(self, dataset: DataSet):
        """
        Initialize a VecDataSource with a dataset configuration.

        Args:
            dataset: The dataset configuration
        """
        logger.debug(f"Initializing VecDataSource with dataset: {dataset}")
        self.dataset = dataset

    def _is_gzipped(self, file_path: str) -> bool:
        """Check if a file is gzipped by examining its magic number."""
        with open(file_path, 'rb') as f:
            magic = f.read(2)
            if len(magic) != 2:
                return False

            return magic[0] == 0x1f and magic[1] == 0x8b

    def _base_name(self, file_path: str) -> str:
        """Lower-cased file name with any .gz suffix removed."""
        name = os.path.basename(file_path).lower()
        if name.endswith('.gz'):
            name = name[:-3]
        return name

    def _is_bvecs_format(self, file_path: str) -> bool:
        """Check if a file is in bvecs format based on its name."""
        return 'bvecs' in os.path.basename(file_path).lower()

    def _is_ivecs_format(self, file_path: str) -> bool:
        """Check if a file is in ivecs format based on its name."""
        return 'ivecs' in os.path.basename(file_path).lower()

    def _get_input_stream(self, file_path: str) -> BinaryIO:
        """Get the appropriate input stream for a file, handling gzip if needed."""
        if self._is_gzipped(file_path):
            return gzip.open(file_path, 'rb')
        else:
            return open(file_path, 'rb')

    def _read_exact(self, stream: BinaryIO, size: int) -> bytes:
        """Read exactly size bytes, at most READ_CHUNK_SIZE at a time."""
        chunks = []
        remaining = size
        while remaining > 0:
            wanted = min(remaining, READ_CHUNK_SIZE)
            chunk = stream.read(wanted)
            if len(chunk) != wanted:
                raise ValueError(f"Expected to read {size} bytes, got {size - remaining + len(chunk)}")
            chunks.append(chunk)
            remaining -= wanted
        return b''.join(chunks)

    def _bytes_left(self, stream: BinaryIO) -> Optional[int]:
        """Bytes left in a plain file, or None when the size is unknown (gzip)."""
        if not isinstance(stream, io.BufferedReader):
            return None
        return os.fstat(stream.fileno()).st_size - stream.tell()

    def _read_vectors_from_stream(self, stream: BinaryIO, file_path: str) -> Iterator[VectorDataPoint]:
        """Read vectors from a stream, yielding VectorDataPoint objects."""
        if self._is_bvecs_format(file_path):
            dtype, width = np.dtype('<u1'), 1
        elif self._is_ivecs_format(file_path):
            dtype, width = np.dtype('<i4'), 4
        else:
            dtype, width = np.dtype('<f4'), 4
        vector_id = 0

        try:
            while True:
                # Read dimension (first 4 bytes)
                dimension_bytes = stream.read(4)
                if not dimension_bytes or len(dimension_bytes) < 4:
                    break  # End of file

                dimension = struct.unpack('<i', dimension_bytes)[0]
                if dimension <= 0:
                    raise ValueError(f"Invalid vector dimension {dimension} in {file_path}")

                size = dimension * width
                bytes_left = self._bytes_left(stream)
                if bytes_left is not None and size > bytes_left:
                    raise ValueError(f"Vector {vector_id} in {file_path} claims dimension {dimension} "
                                     f"({size} bytes), but only {bytes_left} bytes remain")
                vector_data = np.frombuffer(self._read_exact(stream, size), dtype=dtype)

                yield VectorDataPoint(id=vector_id, vector=vector_data.astype(np.float64))
                vector_id += 1

        except Exception as e:
            logger.error(f"Error reading vector data: {e}")
            raise

    def _check_exists(self, file_path: str):
        if not os.path.exists(file_path):
            raise ValueError(f"File not found: {file_path}")

    def read_vectors(self, file_path: str) -> Iterator[VectorDataPoint]:
        """Read vectors from the specified file path."""
        self._check_exists(file_path)

        name = self._base_name(file_path)
        if name.endswith(VEC_EXTENSIONS):
            with self._get_input_stream(file_path) as stream:
                yield from self._read_vectors_from_stream(stream, file_path)
        else:
            for vector_id, row in enumerate(self.read_matrix(file_path)):
                yield VectorDataPoint(id=vector_id, vector=row)

    def read_matrix(self, file_path: str) -> np.ndarray:
        """
        Read a whole file as a (count, dim) float matrix.

        Args:
            file_path: A .csv, .txt, .npy, .fvecs, .ivecs or .bvecs file (vec files may be gzipped)

        Returns:
            The matrix, one point per row
        """
        self._check_exists(file_path)
        name = self._base_name(file_path)
        logger.info(f"Loading {file_path}")

        if name.endswith('.npy'):
            matrix = np.load(file_path, allow_pickle=False)
        elif name.endswith(TEXT_EXTENSIONS):
            delimiter = ',' if name.endswith('.csv') else None
            matrix = np.loadtxt(file_path, delimiter=delimiter, ndmin=2)
        elif name.endswith(VEC_EXTENSIONS):
            vectors = [point.vector for point in self.read_vectors(file_path)]
            if not vectors:
                raise ValueError(f"No vectors found in {file_path}")
            if len({len(vector) for vector in vectors}) != 1:
                raise ValueError(f"Vectors in {file_path} do not all have the same dimension")
            matrix = np.vstack(vectors)
        else:
            raise ValueError(f"Unsupported file type: {file_path}")

        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim == 1:
            matrix = matrix[:, None]
        logger.debug(f"Loaded {matrix.shape[0]} points of {matrix.shape[1]} dimensions from {file_path}")
        return matrix

    def read_neighbors(self, file_path: str) -> np.ndarray:
        """
        Read neighbor indices, such as the true neighbors used to compute recall.

        Returns:
            An int64 matrix with the neighbors of one query per row
        """
        matrix = self.read_matrix(file_path)
        if not np.all(matrix == np.round(matrix)) or (matrix < 0).any():
            raise ValueError(f"Neighbor file {file_path} contains non-index values")
        return matrix.astype(np.int64)

    def write_matrix(self, file_path: str, matrix: np.ndarray):
        """Write a matrix, one point per row, in the format given by the file extension."""
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ValueError(f"Expected a 2-d matrix, got {matrix.ndim} dimensions")
        name = os.path.basename(file_path).lower()
        logger.info(f"Saving {matrix.shape[0]}x{matrix.shape[1]} matrix to {file_path}")

        if name.endswith('.npy'):
            np.save(file_path, matrix)
        elif name.endswith('.csv'):
            np.savetxt(file_path, matrix, delimiter=',', fmt=self._text_format(matrix))
        elif name.endswith('.txt'):
            np.savetxt(file_path, matrix, fmt=self._text_format(matrix))
        elif name.endswith('.fvecs'):
            self._write_vecs(file_path, matrix, '<f4')
        elif name.endswith('.ivecs'):
            self._write_vecs(file_path, matrix, '<i4')
        else:
            raise ValueError(f"Unsupported file type: {file_path}")

    def _text_format(self, matrix: np.ndarray) -> str:
        return '%d' if np.issubdtype(matrix.dtype, np.integer) else '%.17g'

    def _write_vecs(self, file_path: str, matrix: np.ndarray, dtype: str):
        with open(file_path, 'wb') as f:
            for vector in matrix:
                f.write(struct.pack('<i', len(vector)))
                f.write(np.asarray(vector, dtype=dtype).tobytes())

    def read_reference(self) -> np.ndarray:
        """Read the dataset's reference file."""
        if not self.dataset.reference_file:
            raise ValueError(f"Dataset {self.dataset.name} has no reference file")
        return self.read_matrix(self.dataset.reference_file)

    def read_query(self) -> np.ndarray:
        """Read the dataset's query file."""
        if not self.dataset.query_file:
            raise ValueError(f"Dataset {self.dataset.name} has no query file")
        return self.read_matrix(self.dataset.query_file)
