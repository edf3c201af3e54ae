"""
Exception types raised by the numeric layer and the training loop.

Every error derives from ClearDenseError and from the builtin exception a
caller would naturally catch (ValueError for bad shapes or data,
ArithmeticError for numeric failures).
"""

from typing import Any, Dict, Optional, Sequence, Tuple


class ClearDenseError(Exception):
    """Base class for all clear_dense errors."""


class ShapeMismatchError(ClearDenseError, ValueError):
    """Raised when operand shapes are incompatible for an operation."""

    def __init__(self, operation: str, *shapes: Tuple[int, ...], detail: str = ''):
        self.operation = operation
        self.shapes = shapes
        message = f"{operation}: incompatible shapes {', '.join(str(s) for s in shapes)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class InvalidConstructionError(ClearDenseError, ValueError):
    """Raised for jagged rows, non-sequence input or non-numeric data."""


class NumericDivergenceError(ClearDenseError, ArithmeticError):
    """
    Raised when the training loss becomes NaN or infinite.

    Attributes:
        epoch: 1-based epoch in which the divergence was detected.
        batch: 0-based batch index within the epoch.
        loss: The offending loss value.
        context: Shapes and sample values of the failing batch.
    """

    def __init__(self, message: str, epoch: Optional[int] = None, batch: Optional[int] = None,
                 loss: Optional[float] = None, context: Optional[Dict[str, Any]] = None):
        self.epoch = epoch
        self.batch = batch
        self.loss = loss
        self.context = context or {}
        super().__init__(message)


class SingularMatrixError(ClearDenseError, ArithmeticError):
    """Raised by a strict inversion of a (near-)singular matrix."""

    def __init__(self, shape: Sequence[int], pivot: float):
        self.shape = tuple(shape)
        self.pivot = pivot
        super().__init__(f"Matrix of shape {self.shape} is singular (pivot {pivot:.3e})")
