"""
Training metrics.

Each metric takes (target, prediction) matrices of shape (batch_size, output_dim)
and returns a float. Predictions are the raw network outputs the loss sees.
The 'loss' metric is filled in by the training loop from the batch loss itself.
"""

from typing import Callable, Dict

import numpy as np

from .containers import Matrix
from .errors import ShapeMismatchError

SMOOTHING = 1e-7

MetricFunction = Callable[[Matrix, Matrix], float]


def _check(name: str, target: Matrix, prediction: Matrix) -> None:
    if target.shape != prediction.shape:
        raise ShapeMismatchError(name, target.shape, prediction.shape)


def _binary_counts(target: Matrix, prediction: Matrix):
    predicted = prediction.values > 0.5
    actual = target.values > 0.5
    true_positives = float(np.sum(predicted & actual))
    return true_positives, float(np.sum(predicted)), float(np.sum(actual))


def accuracy(target: Matrix, prediction: Matrix) -> float:
    """
    Fraction of correct predictions.

    Multi-column outputs compare per-row argmax (one-hot targets); single-column
    outputs are thresholded at 0.5.
    """
    _check('accuracy', target, prediction)
    if target.shape[0] == 0:
        return 0.0
    if target.shape[1] > 1:
        return float(np.mean(np.argmax(prediction.values, axis=1) == np.argmax(target.values, axis=1)))
    return float(np.mean((prediction.values > 0.5) == (target.values > 0.5)))


def precision(target: Matrix, prediction: Matrix) -> float:
    """True positives / predicted positives, with 0.5 thresholds."""
    _check('precision', target, prediction)
    true_positives, predicted_positives, _ = _binary_counts(target, prediction)
    return true_positives / (predicted_positives + SMOOTHING)


def recall(target: Matrix, prediction: Matrix) -> float:
    """True positives / actual positives, with 0.5 thresholds."""
    _check('recall', target, prediction)
    true_positives, _, actual_positives = _binary_counts(target, prediction)
    return true_positives / (actual_positives + SMOOTHING)


def f1(target: Matrix, prediction: Matrix) -> float:
    p = precision(target, prediction)
    r = recall(target, prediction)
    return 2 * (p * r) / (p + r + SMOOTHING)


def mse(target: Matrix, prediction: Matrix) -> float:
    """Mean squared error over all elements."""
    _check('mse', target, prediction)
    if target.size == 0:
        return 0.0
    return float(np.mean((target.values - prediction.values) ** 2))


def r2(target: Matrix, prediction: Matrix) -> float:
    """Coefficient of determination 1 - SS_res / SS_tot (smoothed)."""
    _check('r2', target, prediction)
    if target.size == 0:
        return 0.0
    ss_res = np.sum((target.values - prediction.values) ** 2)
    ss_tot = np.sum((target.values - np.mean(target.values)) ** 2)
    return float(1.0 - ss_res / (ss_tot + SMOOTHING))


# Dictionary mapping metric names to metric functions ('loss' is handled by the trainer)
METRIC_FUNCTIONS: Dict[str, MetricFunction] = {
    'accuracy': accuracy,
    'precision': precision,
    'recall': recall,
    'f1': f1,
    'mse': mse,
    'r2': r2,
}

AVAILABLE_METRICS = ('loss',) + tuple(METRIC_FUNCTIONS)


def get_metric(name: str) -> MetricFunction:
    """Looks up a metric function by name.

    Raises:
        ValueError: If the metric is unknown or is 'loss'.
    """
    if name not in METRIC_FUNCTIONS:
        raise ValueError(f"Unknown metric '{name}'. Available metrics: {list(AVAILABLE_METRICS)}")
    return METRIC_FUNCTIONS[name]
