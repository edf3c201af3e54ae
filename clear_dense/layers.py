import logging
from concurrent.futures import Executor
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from . import ops
from .activations import Activation, get_activation
from .containers import Matrix, as_matrix
from .errors import ShapeMismatchError

logger = logging.getLogger(__name__)


class Layer:
    """
    Base class for layers in a Model's stack.

    Inputs always arrive bias-augmented: the Model appends a column of ones to
    every layer input, so a layer fed from an `n`-wide predecessor receives
    (batch_size, n + 1) values.

    Attributes:
        training (bool): Training vs inference behaviour (relevant for Dropout).
        rng (np.random.Generator): Random source, shared with the owning Model.
        executor (Executor): Optional executor passed to matrix products.
    """

    has_weights = False

    def __init__(self):
        self.training = True
        self.rng: Optional[np.random.Generator] = None
        self.executor: Optional[Executor] = None
        self.owner = None  # the Model this layer belongs to

    def _generator(self) -> np.random.Generator:
        if self.rng is None:
            self.rng = np.random.default_rng()
        return self.rng

    def forward(self, x: Matrix) -> Tuple[Matrix, Matrix]:
        """
        Computes the layer output and its local derivative.

        Args:
            x: Bias-augmented input (batch_size, input_dim + 1).

        Returns:
            Tuple of (output, local derivative), both (batch_size, get_size()).
        """
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def set_input_dim(self, input_dim: int) -> None:
        """Prepares the layer for inputs of width `input_dim` (without the bias column)."""
        raise NotImplementedError

    def get_size(self) -> int:
        """Width of the layer's output."""
        raise NotImplementedError

    def get_weights(self) -> Optional[Matrix]:
        return None

    def set_weights(self, weights: Optional[Matrix]) -> None:
        if weights is not None:
            raise ValueError(f"{self.__class__.__name__} has no weights to set")

    def update_weights(self, gradient: Matrix, learning_rate: float,
                       momentum: float = 0.0, weight_decay: float = 0.0) -> None:
        """Applies a gradient step. Layers without weights ignore it."""

    def parameter_count(self) -> int:
        return 0

    def set_training_mode(self, mode: bool) -> None:
        self.training = mode

    def get_layer_params(self) -> Dict[str, Any]:
        return {}

    def get_metadata(self) -> Dict[str, Any]:
        return {
            'type': self.__class__.__name__,
            'units': self.get_size(),
            'activation': None,
            'params': self.get_layer_params(),
        }


class Dense(Layer):
    """
    Fully connected layer with the bias folded into the weight matrix.

    The weight matrix W has shape (input_dim + 1, size): the first `input_dim`
    rows are the weights proper and the last row is the bias, which multiplies
    the constant-1 column the Model appends to every input. The layer never adds
    that column itself.

    Key Attributes:
        W (Matrix): Weights incl. bias row, or None until the input width is known.
        size (int): Number of output units.
        activation_fn (Activation): Activation applied to x . W, or None for linear.
        velocity (np.ndarray): Momentum buffer, created on the first momentum update.
    """

    has_weights = True

    def __init__(
        self,
        size: int,
        activation: Union[str, Activation, None] = None,
        input_dim: Optional[int] = None,
        **activation_params,
    ):
        """
        Initializes the layer.

        Args:
            size: Number of output units.
            activation: Activation name (e.g. 'tanh', 'relu'), an Activation instance,
                        or None for no activation (identity derivative).
            input_dim: Input width if known now; otherwise weights are created by
                       Model.add_layer or lazily on the first forward call.
            **activation_params: Passed to the activation constructor when `activation`
                                 is a name (e.g. alpha=0.2 for 'leakyrelu').
        """
        super().__init__()
        if int(size) < 1:
            raise ValueError(f"Dense layer size must be positive, got {size}")
        self.size = int(size)

        # Resolve the activation strategy once, never per forward call
        if isinstance(activation, str):
            self.activation_fn = get_activation(activation, **activation_params)
        elif isinstance(activation, Activation) or activation is None:
            if activation_params:
                raise ValueError("Activation parameters are only accepted with an activation name")
            self.activation_fn = activation
        else:
            raise TypeError(f"Invalid activation type '{type(activation).__name__}'")

        self.W: Optional[Matrix] = None
        self.input_dim: Optional[int] = None
        self.velocity: Optional[np.ndarray] = None

        if input_dim is not None:
            self.set_input_dim(input_dim)

    def set_input_dim(self, input_dim: int) -> None:
        """
        Creates the weights for inputs of width `input_dim`.

        The weight block uses He-style scaling sqrt(2 / (input_dim + size)); the
        bias row is small Gaussian noise (x 0.01) so no unit starts out dead.
        """
        if int(input_dim) < 1:
            raise ValueError(f"Dense input dimension must be positive, got {input_dim}")
        self.input_dim = int(input_dim)
        scale = np.sqrt(2.0 / (self.input_dim + self.size))
        weights = ops.scale(ops.randn((self.input_dim, self.size), rng=self._generator()), scale)
        bias = ops.scale(ops.randn((1, self.size), rng=self._generator()), 0.01)
        self.W = ops.concat(weights, bias, axis=0)
        self.velocity = None
        logger.debug(f"Dense layer initialized: weight_shape={self.W.shape}, He scale {scale:.4f}")

    def forward(self, x: Matrix) -> Tuple[Matrix, Matrix]:
        """
        Computes activation(x . W).

        Args:
            x: Bias-augmented input of shape (batch_size, input_dim + 1).

        Returns:
            Tuple of (output, local derivative), both (batch_size, size).

        Raises:
            ShapeMismatchError: If x does not have input_dim + 1 columns.
        """
        if self.W is None:
            self.set_input_dim(x.shape[1] - 1)
        if x.shape[1] != self.W.shape[0]:
            raise ShapeMismatchError('Dense.forward', x.shape, self.W.shape,
                                     detail=f"expected {self.W.shape[0]} input columns incl. bias")

        z = ops.mat_mul(x, self.W, executor=self.executor)

        if self.activation_fn is not None:
            return self.activation_fn.forward(z)
        return z, ops.ones(z.shape)

    def update_weights(self, gradient: Matrix, learning_rate: float,
                       momentum: float = 0.0, weight_decay: float = 0.0) -> None:
        """
        Applies one gradient step to W.

        With momentum and weight_decay both 0 this is plain SGD:
            W = W - learning_rate * gradient
        weight_decay adds weight_decay * W to the gradient of the weight block
        (the bias row is not decayed). momentum keeps a velocity buffer:
            v = momentum * v + gradient
            W = W - learning_rate * v

        Raises:
            RuntimeError: If the weights do not exist yet.
            ShapeMismatchError: If gradient and W shapes differ.
        """
        if self.W is None:
            raise RuntimeError("Dense layer has no weights yet; call forward() or set_input_dim() first.")
        if gradient.shape != self.W.shape:
            raise ShapeMismatchError('Dense.update_weights', gradient.shape, self.W.shape)

        step = gradient.values
        if weight_decay:
            decay = weight_decay * self.W.values
            decay[-1, :] = 0.0
            step = step + decay

        if momentum:
            if self.velocity is None:
                self.velocity = np.zeros_like(self.W.values)
            self.velocity = momentum * self.velocity + step
            step = self.velocity

        grad_norm = float(np.linalg.norm(step))
        if grad_norm > 1e6:
            logger.warning(f"Dense layer: large gradient norm detected ({grad_norm:.2e}) before update.")

        self.W.values[...] -= learning_rate * step

    def get_weights(self) -> Optional[Matrix]:
        """Returns a copy of W (None before initialization)."""
        return None if self.W is None else self.W.copy()

    def set_weights(self, weights) -> None:
        """
        Replaces W wholesale and clears the momentum buffer.

        Raises:
            ShapeMismatchError: If the shape is not (input_dim + 1, size).
        """
        weights = as_matrix(weights).copy()
        expected_rows = None if self.input_dim is None else self.input_dim + 1
        if weights.shape[1] != self.size or weights.shape[0] < 2 or \
                (expected_rows is not None and weights.shape[0] != expected_rows):
            raise ShapeMismatchError('Dense.set_weights', weights.shape,
                                     (expected_rows if expected_rows else 'input_dim + 1', self.size))
        self.W = weights
        self.input_dim = weights.shape[0] - 1
        self.velocity = None

    def get_size(self) -> int:
        return self.size

    def parameter_count(self) -> int:
        return 0 if self.W is None else self.W.size

    def get_layer_params(self) -> Dict[str, Any]:
        return {
            'units': self.size,
            'activation': self.activation_fn.name if self.activation_fn else None,
            'activation_params': self.activation_fn.get_params() if self.activation_fn else {},
            'has_bias': True,
            'kernel_initializer': 'he',
            'weight_shape': self.W.shape if self.W is not None else None,
        }

    def get_metadata(self) -> Dict[str, Any]:
        metadata = super().get_metadata()
        metadata['activation'] = self.activation_fn.name if self.activation_fn else None
        return metadata

    def summary(self) -> str:
        """Returns a string summary of the layer's configuration."""
        return (
            f"Layer Summary:\n"
            f"  Type: Dense\n"
            f"  Input size: {self.input_dim}\n"
            f"  Output size: {self.size}\n"
            f"  Activation: {self.activation_fn.__class__.__name__ if self.activation_fn else 'None'}\n"
            f"  Weights shape (incl. bias row): {self.W.shape if self.W is not None else 'N/A'}\n"
            f"  Parameters: {self.parameter_count():,} parameters\n"
        )

    def __repr__(self):
        return (f"Dense(size={self.size}, input_dim={self.input_dim}, "
                f"activation={self.activation_fn.__class__.__name__ if self.activation_fn else None})")


class Dropout(Layer):
    """
    Inverted dropout.

    In training mode each input unit is kept with probability 1 - rate and the
    kept values are scaled by 1 / (1 - rate); the local derivative is that same
    scaled mask. In inference mode the layer is the identity.

    The incoming bias column is dropped before masking, so the output width
    equals the predecessor's width.
    """

    def __init__(self, rate: float = 0.5):
        super().__init__()
        if not 0.0 <= rate < 1.0:
            raise ValueError(f"Dropout rate must be in [0, 1), got {rate}")
        self.rate = float(rate)
        self.input_dim: Optional[int] = None
        self.mask: Optional[Matrix] = None

    def set_input_dim(self, input_dim: int) -> None:
        self.input_dim = int(input_dim)

    def forward(self, x: Matrix) -> Tuple[Matrix, Matrix]:
        inputs = x.values[:, :-1]
        if self.input_dim is None:
            self.input_dim = inputs.shape[1]
        elif inputs.shape[1] != self.input_dim:
            raise ShapeMismatchError('Dropout.forward', x.shape, (x.shape[0], self.input_dim + 1))

        if not self.training or self.rate == 0.0:
            return Matrix._wrap(inputs.copy()), Matrix._wrap(np.ones_like(inputs))

        keep = (self._generator().random(inputs.shape) >= self.rate) / (1.0 - self.rate)
        self.mask = Matrix._wrap(keep)
        return Matrix._wrap(inputs * keep), Matrix._wrap(keep.copy())

    def get_size(self) -> int:
        return self.input_dim

    def get_layer_params(self) -> Dict[str, Any]:
        return {'rate': self.rate}

    def __repr__(self):
        return f"Dropout(rate={self.rate})"


# Dictionary mapping layer type tags to their classes
LAYER_TYPES = {
    'Dense': Dense,
    'Dropout': Dropout,
}
