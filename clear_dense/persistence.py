"""
persistence.py
~~~~~~~~~~~~~~

JSON persistence for models.

A saved model is a single JSON document (the "blob") holding the input
dimension, each layer's type tag, size, weights, activation and
hyperparameters, and the loss function's type tag and parameters. Floats are
written with full precision, so `loads(dumps(model))` predicts exactly like
`model`.

CheckpointWriter writes blobs into a directory during training. Failing to
write a checkpoint is logged and never aborts training.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

import numpy as np

from .activations import get_activation
from .containers import Matrix, Vector
from .layers import LAYER_TYPES, Dense, Dropout
from .losses import get_loss

# Configure module logger
logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class NetworkEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles numpy arrays and containers."""

    def default(self, obj: Any) -> Any:
        """
        Convert numpy values and containers to lists for JSON serialization.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation
        """
        if isinstance(obj, (Matrix, Vector)):
            return obj.to_list()
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def _layer_to_dict(layer) -> Dict[str, Any]:
    if isinstance(layer, Dense):
        activation = layer.activation_fn
        return {
            'type': 'Dense',
            'size': layer.size,
            'input_dim': layer.input_dim,
            'weights': layer.W,
            'activation': activation.name if activation else None,
            'params': activation.get_params() if activation else {},
        }
    if isinstance(layer, Dropout):
        return {
            'type': 'Dropout',
            'size': layer.input_dim,
            'weights': None,
            'params': {'rate': layer.rate},
        }
    raise ValueError(f"Cannot serialize layer of type {type(layer).__name__}")


def _layer_from_dict(state: Dict[str, Any]):
    layer_type = state.get('type')
    if layer_type not in LAYER_TYPES:
        raise ValueError(f"Unknown layer type '{layer_type}' in saved model")
    params = state.get('params') or {}

    if layer_type == 'Dense':
        activation = state.get('activation')
        layer = Dense(state['size'], get_activation(activation, **params) if activation else None)
        if state.get('weights') is not None:
            layer.set_weights(Matrix(state['weights']))
        return layer

    layer = Dropout(params.get('rate', 0.5))
    if state.get('size') is not None:
        layer.set_input_dim(state['size'])
    return layer


def model_to_dict(model) -> Dict[str, Any]:
    """Captures the full model state as a JSON-ready dictionary."""
    return {
        'format_version': FORMAT_VERSION,
        'input_dim': model.input_dim,
        'layers': [_layer_to_dict(layer) for layer in model.layers],
        'loss_function': {
            'type': model.loss_function.__class__.__name__,
            'params': model.loss_function.get_params(),
        },
    }


def model_from_dict(state: Dict[str, Any], **model_kwargs):
    """
    Rebuilds a Model from `model_to_dict` output.

    Args:
        state: The saved state.
        **model_kwargs: Extra Model constructor arguments (seed, executor).

    Raises:
        ValueError: If the state is malformed or names an unknown type.
    """
    from .model import Model

    try:
        version = state.get('format_version', FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported model format version {version}")
        loss_state = state['loss_function']
        loss_function = get_loss(loss_state['type'], **(loss_state.get('params') or {}))
        model = Model(int(state['input_dim']), loss_function, **model_kwargs)
        for layer_state in state['layers']:
            model.add_layer(_layer_from_dict(layer_state))
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Incompatible or incomplete model state: {e}") from e

    logger.info(f"Loaded model with input_dim={model.input_dim} and {len(model.layers)} layers")
    return model


def dumps(model) -> str:
    """Serializes a model to a JSON blob."""
    return json.dumps(model_to_dict(model), cls=NetworkEncoder)


def loads(blob: str, **model_kwargs):
    """
    Reconstructs a model from a JSON blob produced by `dumps`.

    Raises:
        ValueError: If the blob is not valid JSON or not a saved model.
    """
    try:
        state = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model blob is not valid JSON: {e}") from e
    if not isinstance(state, dict):
        raise ValueError("Model blob must contain a JSON object")
    return model_from_dict(state, **model_kwargs)


def save_model_file(model, path: str) -> str:
    """Writes the model blob to `path`, creating parent directories. Returns the path."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(dumps(model))
    logger.info(f"Saved model to {path}")
    return path


def load_model_file(path: str, **model_kwargs):
    """Reads a model blob from `path`."""
    with open(path, 'r', encoding='utf-8') as f:
        return loads(f.read(), **model_kwargs)


class CheckpointWriter:
    """
    Writes model checkpoints into a directory.

    Write failures (including failing to create the directory) are logged as
    warnings and reported by returning None, so training continues.
    """

    def __init__(self, directory: str = './checkpoints'):
        self.directory = directory
        self.available = self._ensure_directory()

    def _ensure_directory(self) -> bool:
        try:
            os.makedirs(self.directory, exist_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Could not create checkpoint directory '{self.directory}': {e}")
            return False

    def write(self, model, filename: str) -> Optional[str]:
        """
        Writes `model` to `filename` inside the checkpoint directory.

        Returns:
            The written path, or None if writing failed.
        """
        path = os.path.join(self.directory, filename)
        try:
            blob = dumps(model)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not serialize checkpoint '{path}': {e}")
            return None
        try:
            with open(path, 'w', encoding='utf-8') as f:
                f.write(blob)
        except OSError as e:
            logger.warning(f"Could not save checkpoint '{path}': {e}")
            return None
        logger.debug(f"Checkpoint written to {path}")
        return path

    def save_checkpoint(self, model, epoch: int) -> Optional[str]:
        return self.write(model, f"checkpoint_epoch_{epoch}.json")

    def save_best(self, model, epoch: int) -> Optional[str]:
        return self.write(model, f"best_model_epoch_{epoch}.json")
