import logging
from typing import Dict, Tuple

import numpy as np

from .containers import Matrix

logger = logging.getLogger(__name__)

# exp(500) is still finite in float64; beyond that the sigmoid is 0 or 1 anyway
_EXP_CLIP = 500.0


def _sigmoid(z: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -_EXP_CLIP, _EXP_CLIP)))


class Activation:
    """
    Base class for all activation functions.

    Every activation is element-wise, so its local derivative is returned as a
    matrix of the same shape as the input rather than a full Jacobian.
    """

    name = 'activation'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        """Compute the activation and its derivative with respect to `z`.

        Args:
            z: Pre-activation values (batch_size, units).

        Returns:
            Tuple of (activated output, local derivative d(output)/dz), both shaped like `z`.
        """
        raise NotImplementedError

    def get_params(self) -> Dict[str, float]:
        """Hyperparameters needed to rebuild this activation."""
        return {}

    def __repr__(self) -> str:
        params = ', '.join(f"{k}={v}" for k, v in self.get_params().items())
        return f"{self.__class__.__name__}({params})"


class Sigmoid(Activation):
    """Sigmoid activation function.

    Mathematical form:
        forward: s(z) = 1 / (1 + e^-z)
        derivative: s(z) * (1 - s(z))
    """

    name = 'sigmoid'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        logger.debug(f"Sigmoid forward - input shape: {z.shape}")
        s = _sigmoid(z.values)
        return Matrix._wrap(s), Matrix._wrap(s * (1.0 - s))


class Tanh(Activation):
    """Hyperbolic tangent activation function.

    Mathematical form:
        forward: t(z) = tanh(z)
        derivative: 1 - t(z)^2, computed from the forward output
    """

    name = 'tanh'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        logger.debug(f"Tanh forward - input shape: {z.shape}")
        t = np.tanh(z.values)
        return Matrix._wrap(t), Matrix._wrap(1.0 - t * t)


class ReLU(Activation):
    """Rectified Linear Unit activation function.

    Mathematical form:
        forward: max(0, z)
        derivative: 1 if z > 0 else 0

    At z == 0 the subgradient 0 is used. This is a convention, any value in
    [0, 1] would be valid there.
    """

    name = 'relu'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        logger.debug(f"ReLU forward - input shape: {z.shape}")
        x = z.values
        return Matrix._wrap(np.maximum(0.0, x)), Matrix._wrap(np.where(x > 0, 1.0, 0.0))


class LeakyReLU(Activation):
    """Leaky ReLU: z if z > 0 else alpha * z; derivative 1 or alpha."""

    name = 'leakyrelu'

    def __init__(self, alpha: float = 0.01):
        self.alpha = float(alpha)

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        x = z.values
        positive = x > 0
        return (Matrix._wrap(np.where(positive, x, self.alpha * x)),
                Matrix._wrap(np.where(positive, 1.0, self.alpha)))

    def get_params(self) -> Dict[str, float]:
        return {'alpha': self.alpha}


class ELU(Activation):
    """Exponential Linear Unit.

    Mathematical form:
        forward: z if z > 0 else alpha * (e^z - 1)
        derivative: 1 if z > 0 else alpha * e^z
    """

    name = 'elu'

    def __init__(self, alpha: float = 1.0):
        self.alpha = float(alpha)

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        x = z.values
        positive = x > 0
        # Only the negative branch uses exp; clip so large positives never overflow
        e = np.exp(np.minimum(x, 0.0))
        return (Matrix._wrap(np.where(positive, x, self.alpha * (e - 1.0))),
                Matrix._wrap(np.where(positive, 1.0, self.alpha * e)))

    def get_params(self) -> Dict[str, float]:
        return {'alpha': self.alpha}


class Swish(Activation):
    """Swish (SiLU) activation.

    Mathematical form:
        forward: z * s(z)
        derivative: s(z) * (1 + z * (1 - s(z)))
    """

    name = 'swish'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        x = z.values
        s = _sigmoid(x)
        return Matrix._wrap(x * s), Matrix._wrap(s * (1.0 + x * (1.0 - s)))


class Linear(Activation):
    """Identity activation; derivative is all ones."""

    name = 'linear'

    def forward(self, z: Matrix) -> Tuple[Matrix, Matrix]:
        return z.copy(), Matrix._wrap(np.ones_like(z.values))


# Dictionary mapping activation function names to their classes
ACTIVATION_FUNCTIONS = {
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'relu': ReLU,
    'leakyrelu': LeakyReLU,
    'elu': ELU,
    'swish': Swish,
    'linear': Linear,
}


def get_activation(name: str, **kwargs) -> Activation:
    """Factory function to get an activation function instance by name.

    Args:
        name: Name of the activation function (case-insensitive, '_' and '-' ignored,
              so 'leaky_relu' resolves to LeakyReLU).
        **kwargs: Arguments for the activation's constructor (e.g. 'alpha').

    Returns:
        An instance of the requested Activation class.

    Raises:
        ValueError: If the activation function name is not recognized.
    """
    key = name.lower().replace('_', '').replace('-', '')
    if key not in ACTIVATION_FUNCTIONS:
        raise ValueError(
            f"Unknown activation function '{name}'. "
            f"Available functions: {list(ACTIVATION_FUNCTIONS.keys())}"
        )
    return ACTIVATION_FUNCTIONS[key](**kwargs)
