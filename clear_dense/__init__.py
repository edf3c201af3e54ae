"""
clear_dense: a small, readable feedforward neural network library on numpy.
"""

from .activations import ACTIVATION_FUNCTIONS, Activation, get_activation
from .containers import Matrix, Vector
from .errors import (ClearDenseError, InvalidConstructionError, NumericDivergenceError,
                     ShapeMismatchError, SingularMatrixError)
from .layers import Dense, Dropout, Layer
from .log import configure_logging
from .losses import LOSS_FUNCTIONS, CrossEntropy, Hinge, Huber, LossFunction, Softmax, SquareLoss, get_loss
from .model import Model
from .training import TrainingState, TrainingStatus

__version__ = '0.1.0'

__all__ = [
    'ACTIVATION_FUNCTIONS', 'Activation', 'get_activation',
    'Matrix', 'Vector',
    'ClearDenseError', 'InvalidConstructionError', 'NumericDivergenceError',
    'ShapeMismatchError', 'SingularMatrixError',
    'Dense', 'Dropout', 'Layer',
    'configure_logging',
    'LOSS_FUNCTIONS', 'CrossEntropy', 'Hinge', 'Huber', 'LossFunction', 'Softmax', 'SquareLoss', 'get_loss',
    'Model',
    'TrainingState', 'TrainingStatus',
]
