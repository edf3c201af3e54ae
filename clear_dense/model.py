import logging
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from . import ops
from .containers import Matrix, as_matrix
from .errors import ShapeMismatchError
from .layers import Dense, Layer
from .losses import LossFunction, SquareLoss, get_loss
from .training import TrainingRun, TrainingStatus

logger = logging.getLogger(__name__)


class Model:
    """
    A feedforward stack of layers trained by mini-batch gradient descent.

    Every layer input is bias-augmented: a column of ones is appended before each
    layer's forward pass and the bias column of the final output is stripped
    before the loss sees it. Dense layers therefore carry their bias as the last
    row of their weight matrix.

    Key Attributes:
        input_dim (int): Width of the model input.
        layers (List[Layer]): The layer stack, in forward order.
        loss_function (LossFunction): Strategy for loss, gradient and inference transform.
        rng (np.random.Generator): Shared random source for weights, shuffling and dropout.
        executor (Executor): Optional executor used by matrix products.
        status (TrainingStatus): IDLE, or TRAINING while a run is in progress.
        training_history (Dict[str, List]): Per-epoch history across all runs.
    """

    def __init__(
        self,
        input_dim: int,
        loss_function: Union[str, LossFunction, None] = None,
        seed: Optional[int] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initializes an empty model.

        Args:
            input_dim: Number of input features.
            loss_function: A LossFunction instance, a registry name such as 'softmax',
                           or None for SquareLoss.
            seed: Seed for the model's random generator (reproducible runs).
            executor: Optional concurrent.futures executor for row-blocked mat_mul.
        """
        if int(input_dim) < 1:
            raise ValueError(f"Model input_dim must be positive, got {input_dim}")
        self.input_dim = int(input_dim)

        if loss_function is None:
            self.loss_function = SquareLoss()
        elif isinstance(loss_function, str):
            self.loss_function = get_loss(loss_function)
        elif isinstance(loss_function, LossFunction):
            self.loss_function = loss_function
        else:
            raise TypeError(f"Invalid loss function type '{type(loss_function).__name__}'")

        self.rng = np.random.default_rng(seed)
        self.executor = executor
        self.layers: List[Layer] = []
        self.status = TrainingStatus.IDLE
        self._stop_requested = False

        self.training_history: Dict[str, List] = {
            'epoch': [],
            'loss': [],
            'val_loss': [],
            'learning_rate': [],
            'batch_size': [],
            'time_per_epoch': []
        }

        logger.info(f"Created model with input_dim={self.input_dim}, loss={self.loss_function!r}")

    # --- Building ---

    def add_layer(self, layer: Layer) -> 'Model':
        """
        Appends a layer, sizing it from its predecessor.

        A Dense layer that already has weights (e.g. restored from a saved model)
        keeps them, provided their input width matches the predecessor.

        Returns:
            The model itself, so calls can be chained.
        """
        if not isinstance(layer, Layer):
            raise TypeError(f"Expected a Layer, got '{type(layer).__name__}'")
        if layer.owner is not None and layer.owner is not self:
            raise ValueError("Layer already belongs to another model")
        if any(existing is layer for existing in self.layers):
            raise ValueError("Layer is already part of this model")

        previous_size = self.layers[-1].get_size() if self.layers else self.input_dim
        layer.owner = self
        layer.rng = self.rng
        layer.executor = self.executor

        if isinstance(layer, Dense) and layer.W is not None:
            if layer.input_dim != previous_size:
                layer.owner = None
                raise ShapeMismatchError('Model.add_layer', (layer.input_dim, layer.size), (previous_size,),
                                         detail='layer weights do not fit the previous layer size')
        else:
            layer.set_input_dim(previous_size)

        self.layers.append(layer)
        logger.debug(f"Added layer {len(self.layers) - 1}: {layer!r}")
        return self

    @property
    def output_dim(self) -> Optional[int]:
        return self.layers[-1].get_size() if self.layers else None

    # --- Bias helpers ---

    @staticmethod
    def _with_bias(x: Matrix) -> Matrix:
        return Matrix._wrap(np.hstack([x.values, np.ones((x.shape[0], 1))]))

    @staticmethod
    def _strip_bias(x: Matrix) -> Matrix:
        return Matrix._wrap(x.values[:, :-1].copy())

    def _check_input(self, operation: str, x: Matrix) -> None:
        if not self.layers:
            raise RuntimeError("Model has no layers; call add_layer() first.")
        if x.shape[1] != self.input_dim and x.shape != (0, 0):
            raise ShapeMismatchError(operation, x.shape, (x.shape[0], self.input_dim),
                                     detail='input width must equal the model input_dim')

    def _reconcile(self, prediction: Matrix, target: Matrix, warn: bool = True) -> Tuple[Matrix, Matrix]:
        prediction_cut, target_cut, changed = ops.truncate_to_common(prediction, target)
        if changed and warn:
            logger.warning(f"shape reconciliation: prediction {prediction.shape} and target {target.shape} "
                           f"truncated to {prediction_cut.shape}")
        return prediction_cut, target_cut

    # --- Forward and backward ---

    def _compute_layers(self, x: Matrix, y: Matrix) -> Tuple[List[Matrix], List[Matrix]]:
        """
        Runs the forward pass and the loss for one batch.

        Returns:
            Tuple of two aligned lists:
                - computed_layers: the bias-augmented model input, every bias-augmented
                  layer output, and the bias-augmented per-example loss.
                - computed_derivatives: every layer's local derivative, followed by the
                  loss gradient w.r.t. the raw output (zero-padded to the output shape
                  when shapes had to be reconciled).
        """
        current = self._with_bias(x)
        computed_layers = [current]
        computed_derivatives = []

        for layer in self.layers:
            output, derivative = layer.forward(current)
            current = self._with_bias(output)
            computed_layers.append(current)
            computed_derivatives.append(derivative)

        prediction = self._strip_bias(current)
        prediction_cut, target_cut = self._reconcile(prediction, y)
        loss, gradient = self.loss_function.forward(prediction_cut, target_cut)
        if gradient.shape != prediction.shape:
            padded = np.zeros(prediction.shape)
            padded[:gradient.shape[0], :gradient.shape[1]] = gradient.values
            gradient = Matrix._wrap(padded)

        computed_layers.append(self._with_bias(loss))
        computed_derivatives.append(gradient)
        return computed_layers, computed_derivatives

    def _update_weights(
        self,
        learning_rate: float,
        computed_layers: List[Matrix],
        computed_derivatives: List[Matrix],
        batch_size: int,
        momentum: float = 0.0,
        weight_decay: float = 0.0,
        gradient_clip_norm: float = 0.0,
    ) -> None:
        """
        Backpropagates the loss gradient and updates every weighted layer.

        Walking the stack in reverse with the running gradient g:
            combined = g * local_derivative
            weight gradient = input_with_bias.T . combined / batch_size
            g = (combined . W.T) without its last (bias) column
        The propagated gradient uses the weights as they were before this update.
        """
        running = computed_derivatives[-1]
        for i in reversed(range(len(self.layers))):
            layer = self.layers[i]
            combined = ops.multiply(running, computed_derivatives[i])
            if not layer.has_weights:
                running = combined
                continue

            layer_input = computed_layers[i]
            weight_gradient = ops.scale(ops.mat_mul(ops.transpose(layer_input), combined, executor=self.executor),
                                        1.0 / batch_size)
            if gradient_clip_norm > 0:
                grad_norm = ops.norm(weight_gradient)
                if grad_norm > gradient_clip_norm:
                    logger.debug(f"Clipping layer {i} gradient norm {grad_norm:.4g} to {gradient_clip_norm}")
                    weight_gradient = ops.scale(weight_gradient, gradient_clip_norm / grad_norm)

            if i > 0:
                propagated = ops.mat_mul(combined, ops.transpose(layer.W), executor=self.executor)
                running = Matrix._wrap(propagated.values[:, :-1])
            layer.update_weights(weight_gradient, learning_rate, momentum=momentum, weight_decay=weight_decay)

    # --- Modes ---

    def set_training_mode(self, mode: bool) -> None:
        """Switches every layer between training (True) and inference (False) behaviour."""
        for layer in self.layers:
            layer.set_training_mode(mode)

    @contextmanager
    def _evaluation_mode(self):
        previous = [layer.training for layer in self.layers]
        self.set_training_mode(False)
        try:
            yield
        finally:
            for layer, mode in zip(self.layers, previous):
                layer.set_training_mode(mode)

    # --- Inference ---

    def predict_raw(self, x) -> Matrix:
        """Forward pass in inference mode, returning the untransformed output (n, output_dim)."""
        x = as_matrix(x)
        self._check_input('Model.predict', x)
        if x.shape[0] == 0:
            return Matrix._wrap(np.zeros((0, self.output_dim)))
        with self._evaluation_mode():
            current = self._with_bias(x)
            for layer in self.layers:
                output, _ = layer.forward(current)
                current = self._with_bias(output)
        return self._strip_bias(current)

    def predict(self, x) -> Matrix:
        """
        Generates predictions for the input data x.

        Args:
            x: Input data (num_samples, input_dim), a Matrix or nested sequence.

        Returns:
            Predictions (num_samples, output_dim) after the loss function's inference
            transform (e.g. row-wise softmax for the Softmax loss).
        """
        return self.loss_function.inference_transform(self.predict_raw(x))

    def get_loss(self, x, y, batch_size: int = 32) -> float:
        """
        Mean loss over a dataset, evaluated in batches in inference mode.

        Each batch is scored on the output of `predict`, so the loss function's
        inference transform is applied first. Each batch's `batch_loss` is weighted
        by its row count, so the result is the dataset mean regardless of the batch
        size.
        """
        x = as_matrix(x)
        y = as_matrix(y)
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        n = x.shape[0]
        if n == 0:
            return 0.0
        if y.shape[0] != n:
            raise ShapeMismatchError('Model.get_loss', x.shape, y.shape,
                                     detail='inputs and targets need the same number of rows')

        total = 0.0
        for start in range(0, n, batch_size):
            end = min(start + batch_size, n)
            output = self.predict(Matrix._wrap(x.values[start:end]))
            prediction, target = self._reconcile(output, Matrix._wrap(y.values[start:end]))
            total += self.loss_function.batch_loss(target, prediction) * (end - start)
        return total / n

    def validation_loss(self, x_validation, y_validation, batch_size: int) -> float:
        """Loss on held-out data, used by early stopping."""
        return self.get_loss(x_validation, y_validation, batch_size)

    # --- Training ---

    def train(self, x, y, **options) -> Dict[str, Any]:
        """
        Trains the model with mini-batch gradient descent.

        Args:
            x: Training inputs (num_samples, input_dim).
            y: Training targets (num_samples, output_dim).
            **options: Training options; see clear_dense.training.TRAINING_DEFAULTS
                       (learning_rate, batch_size, max_epochs, x_validation, ...).

        Returns:
            Result dictionary with train_losses, validation_losses, learning_rates,
            metrics, checkpoints, training_time, epochs, status and best_validation_loss.

        Raises:
            TypeError: For unknown option names.
            ShapeMismatchError: If x and y do not line up with each other or the model.
            NumericDivergenceError: If a loss becomes NaN or infinite.
        """
        if not self.layers:
            raise RuntimeError("Model has no layers; call add_layer() first.")
        return TrainingRun(self, x, y, options).execute()

    async def train_async(self, x, y, **options) -> Dict[str, Any]:
        """Like `train`, but yields to the event loop between epochs."""
        if not self.layers:
            raise RuntimeError("Model has no layers; call add_layer() first.")
        return await TrainingRun(self, x, y, options).execute_async()

    def request_stop(self) -> None:
        """Asks a running training loop to stop after the current epoch."""
        self._stop_requested = True

    # --- Persistence ---

    def save(self) -> str:
        """Serializes the model to a JSON blob."""
        from .persistence import dumps
        return dumps(self)

    @classmethod
    def load(cls, blob: str, **model_kwargs) -> 'Model':
        """Rebuilds a model from a blob produced by `save`."""
        from .persistence import loads
        return loads(blob, **model_kwargs)

    # --- Introspection ---

    def parameter_count(self) -> int:
        return sum(layer.parameter_count() for layer in self.layers)

    def get_architecture(self) -> Dict[str, Any]:
        return {
            'input_dim': self.input_dim,
            'layers': [layer.get_metadata() for layer in self.layers],
            'loss_function': {
                'type': self.loss_function.__class__.__name__,
                'params': self.loss_function.get_params(),
            },
            'total_parameters': self.parameter_count(),
        }

    def summary(self) -> str:
        """
        Generates a text summary of the model architecture and parameters.

        Returns:
            A string containing the model summary.
        """
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Model Summary\n"
        summary_str += "=" * 50 + "\n"
        summary_str += f"Input dim: {self.input_dim}\n"
        summary_str += "-" * 50 + "\n"
        previous_size = self.input_dim
        for i, layer in enumerate(self.layers):
            metadata = layer.get_metadata()
            summary_str += f"Layer {i}: {metadata['type']}\n"
            summary_str += f"  Input Shape: ({previous_size},)\n"
            summary_str += f"  Output Shape: ({layer.get_size()},)\n"
            summary_str += f"  Activation: {metadata['activation']}\n"
            weights = layer.get_weights()
            summary_str += f"  Weight Shape: {weights.shape if weights is not None else 'N/A'}\n"
            summary_str += f"  Parameters: {layer.parameter_count()}\n"
            summary_str += "-" * 50 + "\n"
            previous_size = layer.get_size()

        summary_str += f"Loss: {self.loss_function!r}\n"
        summary_str += f"Total Parameters: {self.parameter_count()}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def __repr__(self) -> str:
        return f"Model(input_dim={self.input_dim}, layers={self.layers!r}, loss={self.loss_function!r})"
