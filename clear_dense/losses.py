import logging
from typing import Dict, Tuple

import numpy as np

from .containers import Matrix
from .errors import ShapeMismatchError

logger = logging.getLogger(__name__)

EPSILON = 1e-15


def _check_shapes(name: str, prediction: Matrix, target: Matrix) -> None:
    if prediction.shape != target.shape:
        raise ShapeMismatchError(name, prediction.shape, target.shape,
                                 detail='prediction and target must have the same shape')


def _row_sums(values: np.ndarray) -> Matrix:
    """Per-example totals as an (n, 1) matrix."""
    return Matrix._wrap(np.sum(values, axis=1, keepdims=True))


def _softmax_rows(o: np.ndarray) -> np.ndarray:
    shifted = np.exp(o - np.max(o, axis=1, keepdims=True))
    return shifted / np.sum(shifted, axis=1, keepdims=True)


class LossFunction:
    """
    Base class for loss functions.

    `forward` takes the raw network output (bias column already removed) with
    shape (batch_size, output_dim). `batch_loss` scores a prediction as given:
    during training that is `loss_input(raw)`, in `Model.get_loss` it is the
    output of `Model.predict`.
    """

    name = 'loss'

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        """
        Computes the per-example loss and the gradient w.r.t. the prediction.

        Returns:
            Tuple containing:
                - per_example_loss (Matrix): Shape (batch_size, 1).
                - gradient (Matrix): Same shape as `prediction`.
        """
        raise NotImplementedError

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        """Mean loss over the rows of the batch, used for reporting and early stopping."""
        raise NotImplementedError

    def loss_input(self, raw: Matrix) -> Matrix:
        """Maps the raw training output to what `batch_loss` expects. Identity by default."""
        return raw

    def inference_transform(self, raw: Matrix) -> Matrix:
        """Output-only transform applied by Model.predict. Identity by default."""
        return raw.copy()

    def get_params(self) -> Dict[str, float]:
        return {}

    def __repr__(self) -> str:
        params = ', '.join(f"{k}={v}" for k, v in self.get_params().items())
        return f"{self.__class__.__name__}({params})"


class SquareLoss(LossFunction):
    """
    Half squared error, the regression default.

    Loss (per example) = 0.5 * Σ(prediction - target)^2
    Gradient (dL/dPrediction) = prediction - target
    """

    name = 'square'

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        _check_shapes('SquareLoss', prediction, target)
        delta = prediction.values - target.values
        return _row_sums(0.5 * delta ** 2), Matrix._wrap(delta)

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        _check_shapes('SquareLoss', prediction, target)
        n = target.shape[0]
        if n == 0:
            return 0.0
        return float(0.5 * np.sum((target.values - prediction.values) ** 2) / n)


class CrossEntropy(LossFunction):
    """
    Cross-entropy on probabilities, binary classification convention.

    Predictions are clamped to [ε, 1 - ε] (ε = 1e-15) before taking the log.
    Loss (per example) = -Σ target * log(clamped)
    Gradient = clamped - target

    `inference_transform` applies a sigmoid to the raw output.
    """

    name = 'crossentropy'

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        _check_shapes('CrossEntropy', prediction, target)
        clamped = np.clip(prediction.values, EPSILON, 1.0 - EPSILON)
        return (_row_sums(-target.values * np.log(clamped)),
                Matrix._wrap(clamped - target.values))

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        _check_shapes('CrossEntropy', prediction, target)
        n = target.shape[0]
        if n == 0:
            return 0.0
        clamped = np.clip(prediction.values, EPSILON, 1.0 - EPSILON)
        return float(-np.sum(target.values * np.log(clamped)) / n)

    def inference_transform(self, raw: Matrix) -> Matrix:
        return Matrix._wrap(1.0 / (1.0 + np.exp(-np.clip(raw.values, -500.0, 500.0))))


class Softmax(LossFunction):
    """
    Softmax activation fused with cross-entropy, for multi-class output layers.

    The raw output o is normalized per row: p = exp(o) / Σ exp(o).
    Loss (per example) = -Σ target * log(p)
    Gradient (dL/do) = p - target

    This is the simplified softmax + cross-entropy gradient w.r.t. the
    pre-softmax values, so the final Dense layer should have no activation.

    `batch_loss` takes probabilities: -Σ target * log(max(|p|, ε)) / n.
    During training the raw output is normalized first through `loss_input`.
    """

    name = 'softmax'

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        _check_shapes('Softmax', prediction, target)
        if prediction.shape[0] == 0:
            return Matrix.empty(1), prediction.copy()
        p = _softmax_rows(prediction.values)
        loss = -target.values * np.log(np.maximum(p, EPSILON))
        return _row_sums(loss), Matrix._wrap(p - target.values)

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        _check_shapes('Softmax', prediction, target)
        n = target.shape[0]
        if n == 0:
            return 0.0
        p = np.abs(prediction.values)
        return float(-np.sum(target.values * np.log(np.maximum(p, EPSILON))) / n)

    def loss_input(self, raw: Matrix) -> Matrix:
        return self.inference_transform(raw)

    def inference_transform(self, raw: Matrix) -> Matrix:
        if raw.shape[0] == 0:
            return raw.copy()
        return Matrix._wrap(_softmax_rows(raw.values))


class Hinge(LossFunction):
    """
    Hinge loss with margin 1, for targets in {-1, +1}.

    Loss (element-wise) = max(0, 1 - prediction * target)
    Gradient = -target where the margin is violated, 0 elsewhere.
    """

    name = 'hinge'
    margin = 1.0

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        _check_shapes('Hinge', prediction, target)
        loss = np.maximum(0.0, self.margin - prediction.values * target.values)
        gradient = np.where(loss > 0, -target.values, 0.0)
        return _row_sums(loss), Matrix._wrap(gradient)

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        _check_shapes('Hinge', prediction, target)
        n = target.shape[0]
        if n == 0:
            return 0.0
        loss = np.maximum(0.0, self.margin - prediction.values * target.values)
        return float(np.sum(loss) / n)


class Huber(LossFunction):
    """
    Huber loss: quadratic for small errors, linear for large ones.

    With e = prediction - target:
        loss = 0.5 * e^2                      if |e| <= delta
               delta * |e| - 0.5 * delta^2    otherwise
        gradient = e if |e| <= delta else delta * sign(e)
    """

    name = 'huber'

    def __init__(self, delta: float = 1.0):
        if delta <= 0:
            raise ValueError(f"Huber delta must be positive, got {delta}")
        self.delta = float(delta)

    def _elementwise(self, error: np.ndarray) -> np.ndarray:
        abs_error = np.abs(error)
        return np.where(abs_error <= self.delta,
                        0.5 * error ** 2,
                        self.delta * abs_error - 0.5 * self.delta ** 2)

    def forward(self, prediction: Matrix, target: Matrix) -> Tuple[Matrix, Matrix]:
        _check_shapes('Huber', prediction, target)
        error = prediction.values - target.values
        gradient = np.where(np.abs(error) <= self.delta, error, self.delta * np.sign(error))
        return _row_sums(self._elementwise(error)), Matrix._wrap(gradient)

    def batch_loss(self, target: Matrix, prediction: Matrix) -> float:
        _check_shapes('Huber', prediction, target)
        n = target.shape[0]
        if n == 0:
            return 0.0
        return float(np.sum(self._elementwise(prediction.values - target.values)) / n)

    def get_params(self) -> Dict[str, float]:
        return {'delta': self.delta}


# Dictionary mapping loss names to loss classes
LOSS_FUNCTIONS = {
    'square': SquareLoss,
    'squareloss': SquareLoss,
    'mse': SquareLoss,
    'crossentropy': CrossEntropy,
    'softmax': Softmax,
    'hinge': Hinge,
    'huber': Huber,
}


def get_loss(name: str, **kwargs) -> LossFunction:
    """Factory function to get a loss function instance by name (or class name).

    Raises:
        ValueError: If the loss name is not recognized.
    """
    key = name.lower().replace('_', '').replace('-', '')
    if key not in LOSS_FUNCTIONS:
        raise ValueError(
            f"Unknown loss function '{name}'. "
            f"Available losses: {list(LOSS_FUNCTIONS.keys())}"
        )
    return LOSS_FUNCTIONS[key](**kwargs)
