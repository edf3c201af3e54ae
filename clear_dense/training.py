"""
The epoch/batch training loop behind Model.train and Model.train_async.

A TrainingRun owns everything that lives for one call to `train`: resolved
options, the learning-rate schedule, early-stopping bookkeeping, the checkpoint
writer and the accumulated history. Epochs are executed one at a time by
`run_epoch`, which lets the synchronous and the asyncio entry points share the
same code and lets the async one yield to the event loop between epochs.
"""

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from . import ops
from .containers import Matrix, as_matrix
from .errors import NumericDivergenceError, ShapeMismatchError
from .metrics import get_metric
from .persistence import CheckpointWriter
from .schedules import get_schedule

logger = logging.getLogger(__name__)

Callback = Callable[['TrainingState', Dict[str, Any]], None]

# Every option accepted by Model.train, with its default
TRAINING_DEFAULTS: Dict[str, Any] = {
    'x_validation': None,
    'y_validation': None,
    'learning_rate': 0.1,
    'learning_rate_decay': 0.9999,
    'decay_rate': 1e-4,
    'batch_size': 8,
    'max_epochs': 10,
    'verbose': False,
    'log_every': 1,
    'early_stopping_patience': 5,
    'early_stopping_min_delta': 0.001,
    'learning_rate_schedule': 'constant',
    'metrics': ('loss',),
    'checkpoint_frequency': 0,
    'checkpoint_dir': './checkpoints',
    'gradient_clip_norm': 0.0,
    'momentum': 0.0,
    'weight_decay': 0.0,
    'tolerance': 0.0,
    'on_batch_end': None,
    'on_epoch_end': None,
    'stop_event': None,
}


class TrainingStatus(Enum):
    """Lifecycle of a training run: IDLE -> TRAINING -> terminal state -> IDLE."""
    IDLE = 'idle'
    TRAINING = 'training'
    CONVERGED = 'converged'
    EARLY_STOPPED = 'early_stopped'
    MAX_EPOCHS_REACHED = 'max_epochs_reached'
    STOPPED = 'stopped'


class TrainingState:
    """
    Progress of a run, passed to callbacks.

    Attributes:
        epoch (int): 1-based index of the current epoch.
        batches (int): Total batches processed so far.
        metrics (Dict[str, List[float]]): Per-epoch averages of each requested metric.
        start_time (float): time.time() when the run started.
        checkpoints (List[str]): Paths of checkpoints written so far.
        status (TrainingStatus): Current status.
        learning_rate (float): Rate used by the current epoch.
    """

    def __init__(self, metric_names):
        self.epoch = 0
        self.batches = 0
        self.metrics: Dict[str, List[float]] = {name: [] for name in metric_names}
        self.start_time = time.time()
        self.checkpoints: List[str] = []
        self.status = TrainingStatus.TRAINING
        self.learning_rate: Optional[float] = None

    def __repr__(self) -> str:
        return (f"TrainingState(epoch={self.epoch}, batches={self.batches}, "
                f"status={self.status.value}, learning_rate={self.learning_rate})")


def resolve_training_options(options: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merges `options` over TRAINING_DEFAULTS and validates them.

    Raises:
        TypeError: For unknown option names.
        ValueError: For out-of-range values, unknown schedules or metrics.
    """
    unknown = sorted(set(options) - set(TRAINING_DEFAULTS))
    if unknown:
        raise TypeError(f"Unknown training option(s): {', '.join(unknown)}")
    config = dict(TRAINING_DEFAULTS)
    config.update(options)

    if int(config['batch_size']) < 1:
        raise ValueError(f"batch_size must be at least 1, got {config['batch_size']}")
    if int(config['max_epochs']) < 0:
        raise ValueError(f"max_epochs must be non-negative, got {config['max_epochs']}")
    if int(config['log_every']) < 1:
        raise ValueError(f"log_every must be at least 1, got {config['log_every']}")
    patience = config['early_stopping_patience']
    if patience is not None and int(patience) < 1:
        raise ValueError(f"early_stopping_patience must be at least 1 (or None), got {patience}")
    if config['early_stopping_min_delta'] < 0:
        raise ValueError("early_stopping_min_delta must be non-negative")
    if int(config['checkpoint_frequency']) < 0:
        raise ValueError("checkpoint_frequency must be non-negative")
    if config['gradient_clip_norm'] < 0:
        raise ValueError("gradient_clip_norm must be non-negative")
    if not 0.0 <= config['momentum'] < 1.0:
        raise ValueError(f"momentum must be in [0, 1), got {config['momentum']}")
    if config['weight_decay'] < 0:
        raise ValueError("weight_decay must be non-negative")
    if isinstance(config['metrics'], str):
        config['metrics'] = (config['metrics'],)
    config['metrics'] = tuple(config['metrics'])
    for name in config['metrics']:
        if name != 'loss':
            get_metric(name)
    if (config['x_validation'] is None) != (config['y_validation'] is None):
        raise ValueError("x_validation and y_validation must be given together")

    config['batch_size'] = int(config['batch_size'])
    config['max_epochs'] = int(config['max_epochs'])
    config['checkpoint_frequency'] = int(config['checkpoint_frequency'])
    return config


def _notify(callback: Optional[Callback], name: str, state: TrainingState, info: Dict[str, Any]) -> None:
    """Fires an observer callback. Observers cannot influence or abort training."""
    if callback is None:
        return
    try:
        callback(state, info)
    except Exception:
        logger.warning(f"{name} callback raised; training continues", exc_info=True)


class TrainingRun:
    """
    One execution of the training loop for a Model.

    Args:
        model: The Model to train; its layer weights are updated in place.
        x_train: Inputs (n, input_dim).
        y_train: Targets (n, output_dim).
        options: Training options, see TRAINING_DEFAULTS.
    """

    def __init__(self, model, x_train, y_train, options: Dict[str, Any]):
        self.model = model
        self.config = resolve_training_options(options)
        self.x_train = as_matrix(x_train)
        self.y_train = as_matrix(y_train)
        self._check_data(self.x_train, self.y_train, 'train')
        if self.x_train.shape[0] == 0:
            raise ValueError("Training data must contain at least one example")

        self.x_validation = self.y_validation = None
        if self.config['x_validation'] is not None:
            self.x_validation = as_matrix(self.config['x_validation'])
            self.y_validation = as_matrix(self.config['y_validation'])
            self._check_data(self.x_validation, self.y_validation, 'validation')

        self.schedule = get_schedule(
            self.config['learning_rate_schedule'],
            self.config['learning_rate'],
            learning_rate_decay=self.config['learning_rate_decay'],
            decay_rate=self.config['decay_rate'],
        )
        self.metric_names = self.config['metrics']
        self.metric_functions = {name: get_metric(name) for name in self.metric_names if name != 'loss'}

        self.learning_rate = float(self.config['learning_rate'])
        self.state = TrainingState(self.metric_names)
        self.train_losses: List[float] = []
        self.validation_losses: List[float] = []
        self.learning_rates: List[float] = []
        self.best_validation_loss = math.inf
        self.best_weights = None
        self.patience_counter = 0
        self.epochs_completed = 0
        self.checkpoint_writer = (CheckpointWriter(self.config['checkpoint_dir'])
                                  if self.config['checkpoint_frequency'] > 0 else None)

    def _check_data(self, x: Matrix, y: Matrix, kind: str) -> None:
        if x.shape[0] != y.shape[0]:
            raise ShapeMismatchError(f"train ({kind} data)", x.shape, y.shape,
                                     detail='inputs and targets need the same number of rows')
        if x.shape[0] > 0 and x.shape[1] != self.model.input_dim:
            raise ShapeMismatchError(f"train ({kind} data)", x.shape, (x.shape[0], self.model.input_dim),
                                     detail='input width must equal the model input_dim')

    # --- Per-batch work ---

    def _divergence(self, epoch: int, batch: int, loss: float, x: Matrix, prediction: Matrix,
                    target: Matrix) -> NumericDivergenceError:
        context = {
            'input_shape': x.shape,
            'output_shape': prediction.shape,
            'target_shape': target.shape,
            'input_sample': x.values[:3].tolist(),
            'output_sample': prediction.values[:3].tolist(),
            'target_sample': target.values[:3].tolist(),
        }
        logger.error(f"Non-finite loss ({loss}) at epoch {epoch}, batch {batch}. Batch context: {context}")
        return NumericDivergenceError(
            f"Training failed: non-finite loss {loss} detected at epoch {epoch}, batch {batch}",
            epoch=epoch, batch=batch, loss=loss, context=context)

    def _train_batch(self, epoch: int, batch: int, x: Matrix, y: Matrix) -> Dict[str, float]:
        model = self.model
        computed_layers, computed_derivatives = model._compute_layers(x, y)

        prediction = model._strip_bias(computed_layers[-2])
        prediction, target = model._reconcile(prediction, y, warn=False)
        batch_loss = model.loss_function.batch_loss(target, model.loss_function.loss_input(prediction))
        if not math.isfinite(batch_loss):
            raise self._divergence(epoch, batch, batch_loss, x, prediction, target)

        model._update_weights(
            self.learning_rate, computed_layers, computed_derivatives, x.shape[0],
            momentum=self.config['momentum'],
            weight_decay=self.config['weight_decay'],
            gradient_clip_norm=self.config['gradient_clip_norm'],
        )

        values = {}
        for name in self.metric_names:
            values[name] = batch_loss if name == 'loss' else self.metric_functions[name](target, prediction)
        values['__loss__'] = batch_loss
        return values

    # --- Per-epoch work ---

    def _early_stopping(self, epoch: int, validation_loss: float) -> bool:
        """Updates the best snapshot; returns True when patience is exhausted."""
        min_delta = self.config['early_stopping_min_delta']
        if validation_loss < self.best_validation_loss - min_delta:
            self.best_validation_loss = validation_loss
            self.patience_counter = 0
            self.best_weights = [layer.get_weights() for layer in self.model.layers]
            if self.checkpoint_writer is not None:
                path = self.checkpoint_writer.save_best(self.model, epoch)
                if path:
                    self.state.checkpoints.append(path)
            return False

        self.patience_counter += 1
        patience = self.config['early_stopping_patience']
        if patience is not None and self.patience_counter >= patience:
            logger.info(f"Early stopping triggered at epoch {epoch} "
                        f"(best validation loss {self.best_validation_loss:.6f})")
            if self.best_weights is not None:
                for layer, weights in zip(self.model.layers, self.best_weights):
                    layer.set_weights(weights)
            return True
        return False

    def run_epoch(self, epoch_index: int) -> bool:
        """
        Runs one epoch (0-based index).

        Returns:
            True when training must stop after this epoch.

        Raises:
            NumericDivergenceError: If a batch or validation loss is NaN or infinite.
        """
        model = self.model
        epoch = epoch_index + 1
        epoch_start_time = time.time()
        self.state.epoch = epoch
        model.set_training_mode(True)

        self.learning_rate = self.schedule(epoch_index, self.learning_rate)
        self.state.learning_rate = self.learning_rate

        n = self.x_train.shape[0]
        batch_size = self.config['batch_size']
        indices = ops.random_permutation(n, rng=model.rng)
        perm_x = ops.from_indices(self.x_train, indices)
        perm_y = ops.from_indices(self.y_train, indices)
        n_batches = math.ceil(n / batch_size)

        epoch_loss = 0.0
        totals = {name: 0.0 for name in self.metric_names}
        for batch in range(n_batches):
            start = batch * batch_size
            end = min(start + batch_size, n)
            values = self._train_batch(epoch, batch,
                                       Matrix._wrap(perm_x.values[start:end]),
                                       Matrix._wrap(perm_y.values[start:end]))
            batch_loss = values.pop('__loss__')
            epoch_loss += batch_loss
            for name, value in values.items():
                totals[name] += value
            self.state.batches += 1
            _notify(self.config['on_batch_end'], 'on_batch_end', self.state,
                    {'loss': batch_loss, 'metrics': values, 'learning_rate': self.learning_rate})

        epoch_loss /= n_batches
        self.train_losses.append(epoch_loss)
        self.learning_rates.append(self.learning_rate)
        for name in self.metric_names:
            self.state.metrics[name].append(totals[name] / n_batches)

        frequency = self.config['checkpoint_frequency']
        if self.checkpoint_writer is not None and epoch % frequency == 0:
            path = self.checkpoint_writer.save_checkpoint(model, epoch)
            if path:
                self.state.checkpoints.append(path)

        stop = False
        validation_loss = None
        if self.x_validation is not None:
            validation_loss = model.validation_loss(self.x_validation, self.y_validation, batch_size)
            if not math.isfinite(validation_loss):
                logger.error(f"Non-finite validation loss ({validation_loss}) at epoch {epoch}")
                raise NumericDivergenceError(
                    f"Training failed: non-finite validation loss {validation_loss} at epoch {epoch}",
                    epoch=epoch, loss=validation_loss,
                    context={'input_shape': self.x_validation.shape, 'target_shape': self.y_validation.shape})
            self.validation_losses.append(validation_loss)
            if self._early_stopping(epoch, validation_loss):
                self.state.status = TrainingStatus.EARLY_STOPPED
                stop = True

        tolerance = self.config['tolerance']
        if not stop and tolerance > 0 and epoch_loss < tolerance:
            logger.info(f"Converged at epoch {epoch}: loss {epoch_loss:.6g} < tolerance {tolerance}")
            self.state.status = TrainingStatus.CONVERGED
            stop = True

        epoch_time = time.time() - epoch_start_time
        model.training_history['epoch'].append(epoch)
        model.training_history['loss'].append(epoch_loss)
        model.training_history['val_loss'].append(validation_loss)
        model.training_history['learning_rate'].append(self.learning_rate)
        model.training_history['batch_size'].append(batch_size)
        model.training_history['time_per_epoch'].append(epoch_time)
        self.epochs_completed = epoch

        logger.debug(f"Epoch {epoch}: loss={epoch_loss:.6f}, val_loss={validation_loss}, "
                     f"lr={self.learning_rate:.6g}, time={epoch_time:.3f}s")
        if self.config['verbose'] and (epoch_index % self.config['log_every'] == 0 or stop
                                       or epoch == self.config['max_epochs']):
            msg = f"Epoch {epoch}/{self.config['max_epochs']} - loss: {epoch_loss:.6f}"
            if validation_loss is not None:
                msg += f" - val_loss: {validation_loss:.6f}"
            for name in self.metric_names:
                if name != 'loss':
                    msg += f" - {name}: {self.state.metrics[name][-1]:.6f}"
            msg += f" - lr: {self.learning_rate:.6g} - time: {epoch_time:.2f}s"
            print(msg)

        _notify(self.config['on_epoch_end'], 'on_epoch_end', self.state, {
            'loss': epoch_loss,
            'validation_loss': validation_loss,
            'metrics': self.state.metrics,
            'learning_rate': self.learning_rate,
        })

        if not stop and self._stop_requested():
            logger.info(f"Training stopped by request after epoch {epoch}")
            self.state.status = TrainingStatus.STOPPED
            stop = True
        return stop

    def _stop_requested(self) -> bool:
        stop_event = self.config['stop_event']
        return self.model._stop_requested or (stop_event is not None and stop_event.is_set())

    # --- Drivers ---

    def _begin(self) -> None:
        logger.info(f"Training on {self.x_train.shape[0]} samples for up to {self.config['max_epochs']} "
                    f"epochs (batch_size={self.config['batch_size']}, "
                    f"schedule={self.config['learning_rate_schedule']})")
        self.model._stop_requested = False
        self.model.status = TrainingStatus.TRAINING

    def _finish(self) -> Dict[str, Any]:
        if self.state.status == TrainingStatus.TRAINING:
            self.state.status = TrainingStatus.MAX_EPOCHS_REACHED
        training_time = time.time() - self.state.start_time
        logger.info(f"Training finished: {self.state.status.value} after {self.epochs_completed} epochs "
                    f"({training_time:.2f}s)")
        return {
            'train_losses': self.train_losses,
            'validation_losses': self.validation_losses,
            'learning_rates': self.learning_rates,
            'metrics': self.state.metrics,
            'checkpoints': self.state.checkpoints,
            'training_time': training_time,
            'epochs': self.epochs_completed,
            'status': self.state.status,
            'best_validation_loss': self.best_validation_loss if self.validation_losses else None,
        }

    def execute(self) -> Dict[str, Any]:
        """Runs all epochs synchronously and returns the result dictionary."""
        self._begin()
        try:
            for epoch_index in range(self.config['max_epochs']):
                if self.run_epoch(epoch_index):
                    break
            return self._finish()
        finally:
            self.model.status = TrainingStatus.IDLE
            self.model.set_training_mode(True)

    async def execute_async(self) -> Dict[str, Any]:
        """Like `execute`, but yields to the event loop between epochs."""
        self._begin()
        try:
            for epoch_index in range(self.config['max_epochs']):
                if self.run_epoch(epoch_index):
                    break
                await asyncio.sleep(0)
            return self._finish()
        finally:
            self.model.status = TrainingStatus.IDLE
            self.model.set_training_mode(True)
