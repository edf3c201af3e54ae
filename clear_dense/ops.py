"""
Stateless numeric operations over Vector and Matrix.

Binary element-wise operations require identical shapes; there is no
broadcasting. Each element-wise operation returns a new container by default
and mutates (and returns) its first argument when called with `inplace=True`.

Like numpy, this module deliberately uses the names `sum`, `pow` and `abs`;
call them through the module (`ops.sum(m, axis=0)`).

Random factories take an optional `numpy.random.Generator`; without one a
fresh unseeded generator is used, so no state is shared between calls.
"""

import builtins
import logging
from concurrent.futures import Executor
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .containers import Container, Matrix, Vector
from .errors import ShapeMismatchError, SingularMatrixError

logger = logging.getLogger(__name__)

Shape = Union[int, Tuple[int], Tuple[int, int]]

__all__ = [
    'add', 'subtract', 'multiply', 'scale', 'add_scalar', 'pow', 'exp', 'log', 'abs',
    'one_over', 'map_values', 'mat_mul', 'mat_vec_mul', 'dot', 'transpose', 'sum',
    'argmax', 'argmin', 'mean', 'var', 'std', 'concat', 'from_indices',
    'random_permutation', 'zeros', 'ones', 'randn', 'rand', 'inverse', 'determinant',
    'equal', 'allclose', 'truncate_to_common', 'norm',
]


def _wrap_like(container: Container, array: np.ndarray) -> Container:
    return type(container)._wrap(array)


def _require_same_shape(operation: str, a: Container, b: Container) -> None:
    if type(a) is not type(b) or a.shape != b.shape:
        raise ShapeMismatchError(operation, a.shape, b.shape,
                                 detail=f"{type(a).__name__} and {type(b).__name__} must match exactly")


def _require_nonempty(operation: str, c: Container) -> None:
    if c.size == 0:
        raise ShapeMismatchError(operation, c.shape, detail='requires at least one element')


def _generator(rng: Optional[np.random.Generator]) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def _normalize_shape(shape: Shape) -> Tuple[int, ...]:
    if isinstance(shape, (int, np.integer)):
        shape = (int(shape),)
    shape = tuple(int(s) for s in shape)
    if len(shape) not in (1, 2) or any(s < 0 for s in shape):
        raise ValueError(f"Shape must be (n,) or (rows, cols) with non-negative sizes, got {shape}")
    return shape


def _from_array(array: np.ndarray) -> Container:
    return Vector._wrap(array) if array.ndim == 1 else Matrix._wrap(array)


# --- Element-wise binary operations ---

def _elementwise(operation: str, ufunc, a: Container, b: Container, inplace: bool) -> Container:
    _require_same_shape(operation, a, b)
    if inplace:
        ufunc(a.values, b.values, out=a.values)
        return a
    return _wrap_like(a, ufunc(a.values, b.values))


def add(a: Container, b: Container, inplace: bool = False) -> Container:
    """Element-wise a + b."""
    return _elementwise('add', np.add, a, b, inplace)


def subtract(a: Container, b: Container, inplace: bool = False) -> Container:
    """Element-wise a - b."""
    return _elementwise('subtract', np.subtract, a, b, inplace)


def multiply(a: Container, b: Container, inplace: bool = False) -> Container:
    """Element-wise (Hadamard) product a * b."""
    return _elementwise('multiply', np.multiply, a, b, inplace)


# --- Element-wise unary operations ---

def _unary(fn: Callable[[np.ndarray], np.ndarray], c: Container, inplace: bool) -> Container:
    # IEEE semantics: log(0) = -inf, 1/0 = inf, log(-1) = nan; no warnings, no exceptions
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        result = fn(c.values)
    if inplace:
        c.values[...] = result
        return c
    return _wrap_like(c, np.asarray(result, dtype=float))


def scale(c: Container, factor: float, inplace: bool = False) -> Container:
    return _unary(lambda x: x * factor, c, inplace)


def add_scalar(c: Container, value: float, inplace: bool = False) -> Container:
    return _unary(lambda x: x + value, c, inplace)


def pow(c: Container, exponent: float, inplace: bool = False) -> Container:
    return _unary(lambda x: np.power(x, exponent), c, inplace)


def exp(c: Container, inplace: bool = False) -> Container:
    return _unary(np.exp, c, inplace)


def log(c: Container, inplace: bool = False) -> Container:
    """Natural log; non-positive entries give -inf/nan rather than raising."""
    return _unary(np.log, c, inplace)


def abs(c: Container, inplace: bool = False) -> Container:
    return _unary(np.abs, c, inplace)


def one_over(c: Container, inplace: bool = False) -> Container:
    """Reciprocal; zeros give inf rather than raising."""
    return _unary(lambda x: 1.0 / x, c, inplace)


def map_values(c: Container, fn: Callable[[float], float], inplace: bool = False) -> Container:
    """Applies a scalar function to every element."""
    vectorized = np.vectorize(fn, otypes=[float])
    if c.size == 0:
        return c if inplace else c.copy()
    return _unary(vectorized, c, inplace)


# --- Products ---

def mat_mul(a: Matrix, b: Matrix, executor: Optional[Executor] = None, blocks: int = 4) -> Matrix:
    """
    Matrix product of a (n x k) and b (k x m), giving (n x m).

    Args:
        a: Left operand.
        b: Right operand.
        executor: Optional executor. When given, contiguous row blocks of `a` are
                  multiplied in the executor and stacked back in order; the values
                  are the same as the serial product.
        blocks: Maximum number of row blocks submitted to the executor.

    Raises:
        ShapeMismatchError: If a.cols != b.rows.
    """
    if a.shape[1] != b.shape[0]:
        raise ShapeMismatchError('mat_mul', a.shape, b.shape, detail='inner dimensions must agree')

    n_rows = a.shape[0]
    if executor is None or n_rows < 2 or blocks < 2:
        return Matrix._wrap(np.matmul(a.values, b.values))

    bounds = np.array_split(np.arange(n_rows), builtins.min(blocks, n_rows))
    futures = [executor.submit(np.matmul, a.values[idx[0]:idx[-1] + 1], b.values)
               for idx in bounds if len(idx) > 0]
    logger.debug(f"mat_mul: {a.shape} x {b.shape} split into {len(futures)} row blocks")
    return Matrix._wrap(np.vstack([future.result() for future in futures]))


def mat_vec_mul(m: Matrix, v: Vector) -> Vector:
    """Matrix-vector product (n x k) . (k) = (n)."""
    if m.shape[1] != v.length:
        raise ShapeMismatchError('mat_vec_mul', m.shape, v.shape, detail='inner dimensions must agree')
    return Vector._wrap(np.matmul(m.values, v.values))


def dot(a: Vector, b: Vector) -> float:
    _require_same_shape('dot', a, b)
    return float(np.dot(a.values, b.values))


def transpose(m: Matrix) -> Matrix:
    """Returns a new matrix with swapped axes; `m` is untouched."""
    return m.T


# --- Reductions ---

def sum(c: Container, axis: Optional[int] = None) -> Union[float, Vector]:
    """
    Sums the container.

    Args:
        c: Vector or Matrix.
        axis: None for the grand total (float); 0 for per-column sums
              (length = column count); 1 for per-row sums (length = row count).
              A Vector only accepts None or 0.
    """
    if axis is None or (isinstance(c, Vector) and axis == 0):
        return float(np.sum(c.values))
    if isinstance(c, Matrix) and axis in (0, 1):
        return Vector._wrap(np.sum(c.values, axis=axis))
    raise ValueError(f"Invalid axis {axis} for {type(c).__name__}")


def norm(c: Container) -> float:
    """Euclidean (Frobenius for matrices) norm."""
    return float(np.sqrt(np.sum(c.values * c.values)))


def _arg_reduce(operation: str, fn, c: Container, axis: Optional[int]):
    _require_nonempty(operation, c)
    if isinstance(c, Vector) or axis is None:
        return int(fn(c.values))
    if axis not in (0, 1):
        raise ValueError(f"Invalid axis {axis} for Matrix")
    return Vector._wrap(fn(c.values, axis=axis).astype(float))


def argmax(c: Container, axis: Optional[int] = None):
    """
    Index of the largest element (first one on ties).

    For a Matrix, axis=1 gives the per-row argmax and axis=0 the per-column argmax
    as a Vector of indices; axis=None gives the flat index.
    """
    return _arg_reduce('argmax', np.argmax, c, axis)


def argmin(c: Container, axis: Optional[int] = None):
    """Index of the smallest element; see `argmax` for the axis convention."""
    return _arg_reduce('argmin', np.argmin, c, axis)


def _moment(operation: str, fn, c: Container, axis: Optional[int], **kwargs):
    _require_nonempty(operation, c)
    if axis is not None and (isinstance(c, Vector) and axis != 0 or axis not in (0, 1)):
        raise ValueError(f"Invalid axis {axis} for {type(c).__name__}")
    with np.errstate(divide='ignore', invalid='ignore'):
        result = fn(c.values, axis=axis, **kwargs)
    if np.ndim(result) == 0:
        return float(result)
    return Vector._wrap(np.asarray(result, dtype=float))


def mean(c: Container, axis: Optional[int] = None) -> Union[float, Vector]:
    return _moment('mean', np.mean, c, axis)


def var(c: Container, axis: Optional[int] = None, ddof: int = 0) -> Union[float, Vector]:
    """Variance with `ddof` degrees of freedom removed from the divisor."""
    return _moment('var', np.var, c, axis, ddof=ddof)


def std(c: Container, axis: Optional[int] = None, ddof: int = 0) -> Union[float, Vector]:
    """Standard deviation with `ddof` degrees of freedom removed from the divisor."""
    return _moment('std', np.std, c, axis, ddof=ddof)


# --- Structural operations ---

def concat(a: Container, b: Container, axis: int = 0) -> Container:
    """
    Concatenates two containers.

    Vectors are joined end to end. For matrices, axis 0 stacks the rows of `b`
    under `a` (column counts must match) and axis 1 appends the columns of `b`
    to `a` (row counts must match). For axis 0 a (0, 0) matrix acts as the
    identity, so rows can be accumulated onto `Matrix([])`.
    """
    if isinstance(a, Vector) and isinstance(b, Vector):
        return Vector._wrap(np.concatenate([a.values, b.values]))
    if not (isinstance(a, Matrix) and isinstance(b, Matrix)):
        raise ShapeMismatchError('concat', a.shape, b.shape, detail='cannot mix Vector and Matrix')
    if axis == 0:
        if a.shape == (0, 0):
            return b.copy()
        if b.shape == (0, 0):
            return a.copy()
        if a.shape[1] != b.shape[1]:
            raise ShapeMismatchError('concat', a.shape, b.shape, detail='axis 0 needs equal column counts')
        return Matrix._wrap(np.vstack([a.values, b.values]))
    if axis == 1:
        if a.shape[0] != b.shape[0]:
            raise ShapeMismatchError('concat', a.shape, b.shape, detail='axis 1 needs equal row counts')
        return Matrix._wrap(np.hstack([a.values, b.values]))
    raise ValueError(f"Invalid axis {axis} for concat")


def from_indices(c: Container, indices: Sequence[int], axis: int = 0) -> Container:
    """Gathers rows (axis 0) or columns (axis 1) of a Matrix, or elements of a Vector."""
    idx = np.asarray(indices, dtype=int)
    if isinstance(c, Vector):
        return Vector._wrap(c.values[idx])
    if axis == 0:
        return Matrix._wrap(c.values[idx, :])
    if axis == 1:
        return Matrix._wrap(c.values[:, idx])
    raise ValueError(f"Invalid axis {axis} for from_indices")


def truncate_to_common(a: Matrix, b: Matrix) -> Tuple[Matrix, Matrix, bool]:
    """
    Truncates two matrices to their common (min rows, min cols) shape.

    This is the only shape-reconciliation policy in the library; callers use it
    explicitly and are expected to log when it changed anything.

    Returns:
        (a', b', changed) where `changed` tells whether either input was cut.
    """
    if a.shape == b.shape:
        return a, b, False
    rows = builtins.min(a.shape[0], b.shape[0])
    cols = builtins.min(a.shape[1], b.shape[1])
    return (Matrix._wrap(a.values[:rows, :cols].copy()),
            Matrix._wrap(b.values[:rows, :cols].copy()),
            True)


# --- Comparisons ---

def equal(a: Container, b: Container) -> Container:
    """Element-wise equality as 1.0/0.0."""
    _require_same_shape('equal', a, b)
    return _wrap_like(a, (a.values == b.values).astype(float))


def allclose(a: Container, b: Container, tol: float = 1e-9) -> bool:
    if type(a) is not type(b) or a.shape != b.shape:
        return False
    return bool(np.allclose(a.values, b.values, rtol=0.0, atol=tol))


# --- Random permutations and factories ---

def random_permutation(n: int, rng: Optional[np.random.Generator] = None) -> List[int]:
    """
    Returns the indices 0..n-1 in uniformly random order (Fisher-Yates).

    Every index appears exactly once for every n >= 0.
    """
    if n < 0:
        raise ValueError(f"Permutation size must be non-negative, got {n}")
    rng = _generator(rng)
    indices = list(range(n))
    for i in range(n - 1, 0, -1):
        j = int(rng.integers(0, i + 1))
        indices[i], indices[j] = indices[j], indices[i]
    return indices


def zeros(shape: Shape) -> Container:
    return _from_array(np.zeros(_normalize_shape(shape), dtype=float))


def ones(shape: Shape) -> Container:
    return _from_array(np.ones(_normalize_shape(shape), dtype=float))


def rand(shape: Shape, rng: Optional[np.random.Generator] = None) -> Container:
    """Uniform samples in [0, 1)."""
    return _from_array(_generator(rng).random(_normalize_shape(shape)))


def randn(shape: Shape, rng: Optional[np.random.Generator] = None) -> Container:
    """Standard normal samples built with the Box-Muller transform."""
    shape = _normalize_shape(shape)
    rng = _generator(rng)
    count = int(np.prod(shape))
    u1 = 1.0 - rng.random(count)  # (0, 1], keeps log finite
    u2 = rng.random(count)
    z = np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)
    return _from_array(z.reshape(shape))


# --- Linear algebra ---

def _require_square(operation: str, m: Matrix) -> int:
    if m.shape[0] != m.shape[1]:
        raise ShapeMismatchError(operation, m.shape, detail='matrix must be square')
    return m.shape[0]


def inverse(m: Matrix, strict: bool = False, tol: float = 1e-12) -> Optional[Matrix]:
    """
    Inverts a square matrix by Gauss-Jordan elimination with partial pivoting.

    Args:
        m: Square matrix.
        strict: Raise SingularMatrixError instead of returning None.
        tol: Pivots with absolute value at or below this are treated as zero.

    Returns:
        The inverse, or None if the matrix is (near-)singular and `strict` is False.
    """
    n = _require_square('inverse', m)
    augmented = np.hstack([m.values.copy(), np.eye(n)])
    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        pivot = augmented[pivot_row, col]
        if builtins.abs(pivot) <= tol:
            if strict:
                raise SingularMatrixError(m.shape, pivot)
            logger.debug(f"inverse: singular matrix of shape {m.shape}, pivot {pivot:.3e}")
            return None
        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]
        augmented[col] /= pivot
        for row in range(n):
            if row != col:
                augmented[row] -= augmented[row, col] * augmented[col]
    return Matrix._wrap(augmented[:, n:].copy())


def determinant(m: Matrix, tol: float = 1e-12) -> float:
    """Determinant by Gaussian elimination; 0.0 when a pivot vanishes."""
    n = _require_square('determinant', m)
    work = m.values.copy()
    det = 1.0
    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(work[col:, col])))
        pivot = work[pivot_row, col]
        if builtins.abs(pivot) <= tol:
            return 0.0
        if pivot_row != col:
            work[[col, pivot_row]] = work[[pivot_row, col]]
            det = -det
        det *= pivot
        work[col + 1:] -= np.outer(work[col + 1:, col] / pivot, work[col])
    return float(det)
