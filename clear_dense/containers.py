"""
Vector and Matrix containers.

Both wrap a single float64 numpy array. That array is the only storage: index
reads and writes, iteration and every operation in `clear_dense.ops` go through
it, so there is no second view that could drift out of sync.

A Matrix row obtained with `m[i]` is a Vector that views the matrix storage;
writing to it writes to the matrix. Everything else (`copy`, `T`, `rows`,
slicing) returns independent data.
"""

from typing import Iterator, List, Sequence, Tuple, Union

import numpy as np

from .errors import InvalidConstructionError

Number = Union[int, float]


def _as_float_array(data, ndim: int, kind: str) -> np.ndarray:
    """Converts `data` to a float64 array of dimension `ndim` or raises InvalidConstructionError."""
    if isinstance(data, (str, bytes)) or not isinstance(data, (Sequence, np.ndarray)):
        raise InvalidConstructionError(
            f"{kind} must be built from a sequence, got {type(data).__name__}")

    if ndim == 2 and not isinstance(data, np.ndarray):
        # Validate row lengths ourselves so jagged input fails with a clear message
        widths = set()
        for i, row in enumerate(data):
            if isinstance(row, Vector):
                row = row.values
            if isinstance(row, (str, bytes)) or not isinstance(row, (Sequence, np.ndarray)):
                raise InvalidConstructionError(
                    f"Matrix row {i} must be a sequence, got {type(row).__name__}")
            widths.add(len(row))
        if len(widths) > 1:
            raise InvalidConstructionError(
                f"Matrix rows must all have the same length, got lengths {sorted(widths)}")
        if len(data) == 0:
            return np.zeros((0, 0), dtype=float)
        data = [row.values if isinstance(row, Vector) else row for row in data]

    try:
        array = np.array(data, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidConstructionError(f"{kind} entries must be numeric: {e}") from e

    if ndim == 1 and array.ndim == 1:
        return array
    if ndim == 2 and array.ndim == 2:
        return array
    if ndim == 2 and array.ndim == 1 and array.size == 0:
        return np.zeros((0, 0), dtype=float)
    raise InvalidConstructionError(
        f"{kind} requires {ndim}-dimensional data, got shape {array.shape}")


class Vector:
    """
    Fixed-length sequence of floats.

    Attributes:
        values (np.ndarray): The underlying 1-D float64 array.
    """

    __slots__ = ('_data',)

    def __init__(self, values):
        if isinstance(values, Vector):
            values = values.values
        self._data = _as_float_array(values, 1, 'Vector')

    @classmethod
    def _wrap(cls, array: np.ndarray) -> 'Vector':
        """Wraps an existing 1-D float array without copying it."""
        vector = cls.__new__(cls)
        vector._data = array
        return vector

    @property
    def values(self) -> np.ndarray:
        return self._data

    @property
    def length(self) -> int:
        return self._data.shape[0]

    @property
    def shape(self) -> Tuple[int]:
        return (self._data.shape[0],)

    @property
    def size(self) -> int:
        return self._data.shape[0]

    def __len__(self) -> int:
        return self._data.shape[0]

    def __iter__(self) -> Iterator[float]:
        for value in self._data:
            yield float(value)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return Vector._wrap(self._data[index].copy())
        return float(self._data[index])

    def __setitem__(self, index: int, value: Number):
        self._data[index] = value

    def __eq__(self, other) -> bool:
        if not isinstance(other, Vector):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._data, other._data))

    __hash__ = None

    def copy(self) -> 'Vector':
        return Vector._wrap(self._data.copy())

    def to_list(self) -> List[float]:
        return self._data.tolist()

    def __repr__(self) -> str:
        return f"Vector({self._data.tolist()})"


class Matrix:
    """
    Two-dimensional float container made of equal-length rows.

    A zero-row matrix is allowed: `Matrix([])` has shape (0, 0) and
    `Matrix.empty(k)` has shape (0, k).

    Attributes:
        values (np.ndarray): The underlying 2-D float64 array of shape (rows, cols).
    """

    __slots__ = ('_data',)

    def __init__(self, rows):
        if isinstance(rows, Matrix):
            rows = rows.values
        self._data = _as_float_array(rows, 2, 'Matrix')

    @classmethod
    def _wrap(cls, array: np.ndarray) -> 'Matrix':
        """Wraps an existing 2-D float array without copying it."""
        matrix = cls.__new__(cls)
        matrix._data = array
        return matrix

    @classmethod
    def empty(cls, cols: int = 0) -> 'Matrix':
        """Returns a matrix with no rows and `cols` columns."""
        return cls._wrap(np.zeros((0, cols), dtype=float))

    @property
    def values(self) -> np.ndarray:
        return self._data

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._data.shape[0], self._data.shape[1])

    @property
    def size(self) -> int:
        return self._data.size

    @property
    def rows(self) -> List[List[float]]:
        """The rows as plain nested lists (a copy)."""
        return self._data.tolist()

    @property
    def T(self) -> 'Matrix':
        """Transpose as a new matrix; never aliases this one."""
        return Matrix._wrap(self._data.T.copy())

    t = T

    def __len__(self) -> int:
        return self._data.shape[0]

    def __iter__(self) -> Iterator[Vector]:
        for i in range(self._data.shape[0]):
            yield Vector._wrap(self._data[i])

    def __getitem__(self, index):
        if isinstance(index, tuple):
            return float(self._data[index])
        if isinstance(index, slice):
            return Matrix._wrap(self._data[index].copy())
        return Vector._wrap(self._data[index])

    def __setitem__(self, index, value):
        if isinstance(index, tuple):
            self._data[index] = value
            return
        row = value.values if isinstance(value, Vector) else np.asarray(value, dtype=float)
        if row.shape != (self._data.shape[1],):
            raise InvalidConstructionError(
                f"Row assignment needs length {self._data.shape[1]}, got shape {row.shape}")
        self._data[index] = row

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._data, other._data))

    __hash__ = None

    def __matmul__(self, other: 'Matrix') -> 'Matrix':
        from .ops import mat_mul
        return mat_mul(self, other)

    def copy(self) -> 'Matrix':
        return Matrix._wrap(self._data.copy())

    def to_list(self) -> List[List[float]]:
        return self._data.tolist()

    def __repr__(self) -> str:
        return f"Matrix({self._data.tolist()})"


Container = Union[Vector, Matrix]


def as_matrix(data) -> Matrix:
    """Returns `data` unchanged if it is a Matrix, otherwise builds one from it."""
    if isinstance(data, Matrix):
        return data
    return Matrix(data)
