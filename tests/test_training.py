"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for the training loop: convergence, early stopping, divergence,
callbacks, stopping, checkpoints and option validation.
"""

import asyncio
import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from clear_dense import Dense, Layer, Model
from clear_dense.containers import Matrix
from clear_dense.errors import NumericDivergenceError, ShapeMismatchError
from clear_dense.training import TRAINING_DEFAULTS, TrainingStatus, resolve_training_options


class _Passthrough(Layer):
    """Weightless identity layer that the JSON format has no tag for."""

    def __init__(self):
        super().__init__()
        self.input_dim = None

    def set_input_dim(self, input_dim):
        self.input_dim = input_dim

    def forward(self, x):
        inputs = x.values[:, :-1]
        self.input_dim = inputs.shape[1]
        return Matrix(inputs), Matrix(np.ones_like(inputs))

    def get_size(self):
        return self.input_dim


def _sine_model(seed=0, executor=None):
    model = Model(input_dim=1, seed=seed, executor=executor)
    model.add_layer(Dense(10, 'tanh'))
    model.add_layer(Dense(10, 'tanh'))
    model.add_layer(Dense(1))
    return model


@pytest.mark.slow
class TestSineRegression:
    """Test end-to-end regression on y = sin(x)."""

    def test_loss_decreases(self, sine_data):
        """Test that 100 epochs with the decay schedule lower the training loss."""
        x, y = sine_data
        model = _sine_model(seed=0)

        result = model.train(x, y, batch_size=2, max_epochs=100, learning_rate=0.01,
                             learning_rate_schedule='decay')

        assert result['epochs'] == 100
        assert result['status'] is TrainingStatus.MAX_EPOCHS_REACHED
        assert len(result['train_losses']) == 100
        assert result['train_losses'][-1] < result['train_losses'][0]
        assert model.status is TrainingStatus.IDLE
        assert len(model.training_history['loss']) == 100


@pytest.mark.unit
class TestEarlyStopping:
    """Test validation-driven early stopping."""

    def test_stops_and_restores_best_weights(self, small_model, small_data, monkeypatch):
        """Test that patience 2 stops after epoch 4 and restores the epoch-2 weights."""
        x, y = small_data
        losses = iter([1.0, 0.9, 0.95, 0.97, 0.99])
        monkeypatch.setattr(small_model, 'validation_loss', lambda *args: next(losses))
        snapshots = {}

        def remember_weights(state, info):
            snapshots[state.epoch] = [layer.get_weights() for layer in small_model.layers]

        result = small_model.train(
            x, y,
            x_validation=x, y_validation=y,
            max_epochs=10,
            early_stopping_patience=2,
            on_epoch_end=remember_weights,
        )

        assert result['epochs'] == 4
        assert result['status'] is TrainingStatus.EARLY_STOPPED
        assert result['validation_losses'] == [1.0, 0.9, 0.95, 0.97]
        assert result['best_validation_loss'] == 0.9
        for layer, weights in zip(small_model.layers, snapshots[2]):
            assert layer.W == weights
        assert small_model.layers[0].W != snapshots[3][0]

    def test_min_delta_counts_small_improvements_as_stalls(self, small_model, small_data, monkeypatch):
        """Test that improvements below min_delta do not reset patience."""
        x, y = small_data
        losses = iter([1.0, 0.9995, 0.999, 0.9985])
        monkeypatch.setattr(small_model, 'validation_loss', lambda *args: next(losses))

        result = small_model.train(x, y, x_validation=x, y_validation=y, max_epochs=4,
                                   early_stopping_patience=2, early_stopping_min_delta=0.001)

        assert result['epochs'] == 3
        assert result['status'] is TrainingStatus.EARLY_STOPPED

    def test_real_validation_loss(self, small_model, small_data):
        """Test that validation losses are recorded per epoch."""
        x, y = small_data
        result = small_model.train(x, y, x_validation=x[:5], y_validation=y[:5], max_epochs=3,
                                   early_stopping_patience=None)

        assert len(result['validation_losses']) == 3
        assert all(math.isfinite(loss) for loss in result['validation_losses'])
        assert result['best_validation_loss'] <= result['validation_losses'][0]


@pytest.mark.unit
class TestDivergence:
    """Test that non-finite losses abort training."""

    def test_nan_target_raises(self, small_model, small_data, caplog):
        """Test that a NaN loss raises NumericDivergenceError with batch context."""
        x, y = small_data
        y = y.copy()
        y[:, 0] = np.nan
        before = [layer.get_weights() for layer in small_model.layers]

        with caplog.at_level(logging.ERROR):
            with pytest.raises(NumericDivergenceError) as exc_info:
                small_model.train(x, y, max_epochs=5)

        error = exc_info.value
        assert error.epoch == 1
        assert error.batch == 0
        assert math.isnan(error.loss)
        assert error.context['input_shape'] == (8, 2)
        assert error.context['output_shape'] == (8, 2)
        assert len(error.context['target_sample']) == 3
        assert "Non-finite loss" in caplog.text
        # The failing batch never reached the weights
        for layer, weights in zip(small_model.layers, before):
            assert layer.W == weights
        assert small_model.status is TrainingStatus.IDLE

    def test_infinite_loss_raises(self, small_model, small_data):
        """Test that a squared error overflowing to infinity is fatal too."""
        x, y = small_data
        y = y.copy()
        y[:, 0] = 1e200
        before = [layer.get_weights() for layer in small_model.layers]

        with np.errstate(over='ignore'):
            with pytest.raises(NumericDivergenceError) as exc_info:
                small_model.train(x, y, max_epochs=5)

        assert exc_info.value.epoch == 1
        assert exc_info.value.batch == 0
        assert exc_info.value.loss == math.inf
        for layer, weights in zip(small_model.layers, before):
            assert layer.W == weights

    def test_divergence_is_an_arithmetic_error(self):
        """Test the exception hierarchy."""
        assert issubclass(NumericDivergenceError, ArithmeticError)


@pytest.mark.unit
class TestScheduleAndMetrics:
    """Test learning-rate schedules and metric tracking inside training."""

    def test_constant_schedule_applies_from_first_epoch(self, small_model, small_data):
        """Test that the 'constant' schedule multiplies by the decay every epoch."""
        x, y = small_data
        result = small_model.train(x, y, max_epochs=3, learning_rate=0.1, learning_rate_decay=0.5)

        assert result['learning_rates'] == pytest.approx([0.05, 0.025, 0.0125])

    def test_step_schedule(self, small_model, small_data):
        """Test that the step schedule divides by ten at epoch index 10."""
        x, y = small_data
        result = small_model.train(x, y, max_epochs=12, learning_rate=0.01, learning_rate_schedule='step')

        assert result['learning_rates'][:10] == pytest.approx([0.01] * 10)
        assert result['learning_rates'][10:] == pytest.approx([0.001, 0.001])

    def test_metrics_are_tracked_per_epoch(self, small_model, small_data):
        """Test that requested metrics get one value per epoch."""
        x, y = small_data
        result = small_model.train(x, y, max_epochs=4, metrics=('loss', 'mse', 'r2'))

        assert set(result['metrics']) == {'loss', 'mse', 'r2'}
        assert all(len(values) == 4 for values in result['metrics'].values())
        assert result['metrics']['loss'] == pytest.approx(result['train_losses'])

    def test_convergence_tolerance(self, small_model, small_data):
        """Test that a loss below the tolerance ends the run as CONVERGED."""
        x, y = small_data
        result = small_model.train(x, y, max_epochs=10, tolerance=1e9)

        assert result['epochs'] == 1
        assert result['status'] is TrainingStatus.CONVERGED


@pytest.mark.unit
class TestCallbacksAndStopping:
    """Test observer callbacks and external stop requests."""

    def test_callbacks_receive_progress(self, small_model, small_data):
        """Test batch and epoch callbacks with ceil(n / batch_size) batches."""
        x, y = small_data
        batch_events, epoch_events = [], []

        small_model.train(
            x, y, max_epochs=2, batch_size=6,
            on_batch_end=lambda state, info: batch_events.append((state.epoch, info['loss'])),
            on_epoch_end=lambda state, info: epoch_events.append((state.epoch, info['loss'])),
        )

        assert len(batch_events) == 8
        assert [epoch for epoch, _ in epoch_events] == [1, 2]

    def test_failing_callback_does_not_stop_training(self, small_model, small_data, caplog):
        """Test that callback exceptions are logged and ignored."""
        x, y = small_data

        def broken(state, info):
            raise RuntimeError("observer failure")

        with caplog.at_level(logging.WARNING, logger='clear_dense.training'):
            result = small_model.train(x, y, max_epochs=2, on_epoch_end=broken)

        assert result['epochs'] == 2
        records = [r for r in caplog.records if "on_epoch_end callback raised" in r.getMessage()]
        assert len(records) == 2
        assert all(r.levelno == logging.WARNING and r.exc_info for r in records)

    def test_stop_event(self, small_model, small_data):
        """Test that a set stop_event ends training after the current epoch."""
        x, y = small_data
        stop_event = threading.Event()

        def stop_after_second(state, info):
            if state.epoch == 2:
                stop_event.set()

        result = small_model.train(x, y, max_epochs=10, stop_event=stop_event, on_epoch_end=stop_after_second)

        assert result['epochs'] == 2
        assert result['status'] is TrainingStatus.STOPPED

    def test_request_stop(self, small_model, small_data):
        """Test stopping through Model.request_stop."""
        x, y = small_data
        result = small_model.train(x, y, max_epochs=10,
                                   on_epoch_end=lambda state, info: small_model.request_stop())

        assert result['epochs'] == 1
        assert result['status'] is TrainingStatus.STOPPED

    def test_train_async(self, small_model, small_data):
        """Test the coroutine variant of train."""
        x, y = small_data
        result = asyncio.run(small_model.train_async(x, y, max_epochs=3))

        assert result['epochs'] == 3
        assert result['status'] is TrainingStatus.MAX_EPOCHS_REACHED


@pytest.mark.unit
class TestExecutor:
    """Test training with a concurrent executor."""

    def test_executor_gives_same_result(self, sine_data):
        """Test that an executor does not change the trained weights."""
        x, y = sine_data
        serial = _sine_model(seed=9)
        with ThreadPoolExecutor(max_workers=2) as executor:
            parallel = _sine_model(seed=9, executor=executor)
            parallel.train(x, y, batch_size=10, max_epochs=3)
        serial.train(x, y, batch_size=10, max_epochs=3)

        for a, b in zip(serial.layers, parallel.layers):
            np.testing.assert_allclose(a.W.values, b.W.values, atol=1e-12)


@pytest.mark.unit
class TestCheckpoints:
    """Test checkpoint writing during training."""

    def test_periodic_and_best_checkpoints(self, small_model, small_data, tmp_path):
        """Test that checkpoints are written every N epochs and on improvement."""
        x, y = small_data
        checkpoint_dir = str(tmp_path / "checkpoints")

        result = small_model.train(x, y, max_epochs=4, checkpoint_frequency=2, checkpoint_dir=checkpoint_dir,
                                   x_validation=x, y_validation=y, early_stopping_patience=None)

        names = set(os.listdir(checkpoint_dir))
        assert {'checkpoint_epoch_2.json', 'checkpoint_epoch_4.json'} <= names
        assert 'best_model_epoch_1.json' in names
        assert all(os.path.exists(path) for path in result['checkpoints'])

    def test_unwritable_directory_does_not_abort(self, small_model, small_data, tmp_path, caplog):
        """Test that checkpoint failures are logged and training completes."""
        x, y = small_data
        blocker = tmp_path / "not_a_directory"
        blocker.write_text("occupied")

        with caplog.at_level(logging.WARNING):
            result = small_model.train(x, y, max_epochs=2, checkpoint_frequency=1, checkpoint_dir=str(blocker))

        assert result['epochs'] == 2
        assert result['checkpoints'] == []
        assert "checkpoint" in caplog.text.lower()

    def test_unserializable_layer_does_not_abort(self, small_data, tmp_path, caplog):
        """Test that a layer the JSON format cannot describe only skips the checkpoint."""
        x, y = small_data
        model = Model(input_dim=2, seed=3)
        model.add_layer(Dense(4, 'tanh'))
        model.add_layer(_Passthrough())
        model.add_layer(Dense(2))

        with caplog.at_level(logging.WARNING, logger='clear_dense.persistence'):
            result = model.train(x, y, max_epochs=3, checkpoint_frequency=1,
                                 checkpoint_dir=str(tmp_path / "checkpoints"))

        assert result['epochs'] == 3
        assert result['status'] is TrainingStatus.MAX_EPOCHS_REACHED
        assert result['checkpoints'] == []
        assert "Cannot serialize layer of type _Passthrough" in caplog.text


@pytest.mark.unit
class TestOptions:
    """Test option resolution and validation."""

    def test_defaults(self):
        """Test that no options resolves to the documented defaults."""
        config = resolve_training_options({})

        assert config['learning_rate'] == 0.1
        assert config['batch_size'] == 8
        assert config['max_epochs'] == 10
        assert config['early_stopping_patience'] == 5
        assert config['learning_rate_schedule'] == 'constant'
        assert set(config) == set(TRAINING_DEFAULTS)

    def test_unknown_option(self, small_model, small_data):
        """Test that misspelled options raise TypeError."""
        x, y = small_data
        with pytest.raises(TypeError):
            small_model.train(x, y, epochs=5)

    @pytest.mark.parametrize("options", [
        {'batch_size': 0},
        {'learning_rate_schedule': 'cosine'},
        {'metrics': ('loss', 'auc')},
        {'early_stopping_patience': 0},
        {'momentum': 1.0},
        {'x_validation': [[0.0, 0.0]]},
    ])
    def test_invalid_values(self, options, small_model, small_data):
        """Test that invalid option values raise ValueError."""
        x, y = small_data
        with pytest.raises(ValueError):
            small_model.train(x, y, **options)

    def test_mismatched_rows(self, small_model, small_data):
        """Test that x and y must have the same number of rows."""
        x, y = small_data
        with pytest.raises(ShapeMismatchError):
            small_model.train(x, y[:-1])

    def test_model_without_layers(self, small_data):
        """Test that training an empty model fails clearly."""
        x, y = small_data
        with pytest.raises(RuntimeError):
            Model(2).train(x, y)
