"""
test_model.py
~~~~~~~~~~~~~

Unit tests for Model construction, forward pass, backpropagation and inference.
"""

import logging

import numpy as np
import pytest

from clear_dense import Dense, Dropout, Model
from clear_dense.containers import Matrix
from clear_dense.errors import ShapeMismatchError
from clear_dense.losses import Softmax, SquareLoss
from clear_dense.training import TrainingStatus

STEP = 1e-6


def _numerical_gradient(model, layer, x, y):
    """Central-difference gradient of the batch loss w.r.t. one layer's weights."""
    gradient = np.zeros_like(layer.W.values)
    for idx in np.ndindex(gradient.shape):
        original = layer.W.values[idx]
        layer.W.values[idx] = original + STEP
        plus = model.loss_function.batch_loss(y, model.loss_function.loss_input(model.predict_raw(x)))
        layer.W.values[idx] = original - STEP
        minus = model.loss_function.batch_loss(y, model.loss_function.loss_input(model.predict_raw(x)))
        layer.W.values[idx] = original
        gradient[idx] = (plus - minus) / (2 * STEP)
    return gradient


@pytest.mark.unit
class TestConstruction:
    """Test building models."""

    def test_defaults(self):
        """Test the default loss and idle status."""
        model = Model(input_dim=3)

        assert isinstance(model.loss_function, SquareLoss)
        assert model.status is TrainingStatus.IDLE
        assert model.layers == []

    def test_loss_by_name(self):
        """Test that a loss name is resolved through the registry."""
        assert isinstance(Model(2, 'softmax').loss_function, Softmax)
        with pytest.raises(TypeError):
            Model(2, loss_function=42)

    def test_add_layer_sizes_from_predecessor(self):
        """Test that each layer's input width is the previous output width."""
        model = Model(input_dim=3)
        model.add_layer(Dense(5, 'relu')).add_layer(Dropout(0.2)).add_layer(Dense(2))

        assert model.layers[0].W.shape == (4, 5)
        assert model.layers[1].get_size() == 5
        assert model.layers[2].W.shape == (6, 2)
        assert model.output_dim == 2
        assert model.parameter_count() == 20 + 12

    def test_layer_cannot_join_two_models(self):
        """Test that a layer owned by one model is rejected by another."""
        layer = Dense(2)
        Model(2).add_layer(layer)

        with pytest.raises(ValueError):
            Model(2).add_layer(layer)

    def test_preset_weights_must_fit(self):
        """Test that a Dense with existing weights must match its predecessor."""
        with pytest.raises(ShapeMismatchError):
            Model(input_dim=2).add_layer(Dense(3, input_dim=4))

    def test_seed_makes_weights_reproducible(self):
        """Test that equal seeds build equal models."""
        first = Model(2, seed=11).add_layer(Dense(3, 'tanh'))
        second = Model(2, seed=11).add_layer(Dense(3, 'tanh'))

        assert first.layers[0].W == second.layers[0].W

    def test_summary_and_architecture(self, small_model):
        """Test the text summary and the architecture dictionary."""
        summary = small_model.summary()
        architecture = small_model.get_architecture()

        assert "Model Summary" in summary
        assert f"Total Parameters: {small_model.parameter_count()}" in summary
        assert architecture['input_dim'] == 2
        assert [layer['type'] for layer in architecture['layers']] == ['Dense', 'Dense']
        assert architecture['loss_function']['type'] == 'SquareLoss'


@pytest.mark.unit
class TestForward:
    """Test forward passes and inference."""

    def test_bias_augmentation_invariance(self, rng):
        """Test that identity weights with a zero bias row reproduce the input."""
        model = Model(input_dim=3)
        model.add_layer(Dense(3))
        model.layers[0].set_weights(Matrix(np.vstack([np.eye(3), np.zeros((1, 3))])))
        x = Matrix(rng.normal(size=(5, 3)))

        assert model.predict(x) == x

    def test_predict_shape(self, small_model, small_data):
        """Test that predictions are (n, output_dim)."""
        x, _ = small_data
        assert small_model.predict(x).shape == (20, 2)
        assert small_model.predict(Matrix([])).shape == (0, 2)

    def test_predict_rejects_wrong_width(self, small_model):
        """Test that inputs must have input_dim columns."""
        with pytest.raises(ShapeMismatchError):
            small_model.predict([[1.0, 2.0, 3.0]])

    def test_predict_applies_inference_transform(self, rng):
        """Test that Softmax models predict probabilities while predict_raw does not."""
        model = Model(input_dim=2, loss_function='softmax', seed=0)
        model.add_layer(Dense(3))
        x = rng.normal(size=(4, 2))

        raw = model.predict_raw(x)
        probabilities = model.predict(x)

        np.testing.assert_allclose(probabilities.values.sum(axis=1), np.ones(4), atol=1e-9)
        assert probabilities != raw

    def test_predict_disables_dropout(self, rng):
        """Test that predict is deterministic and restores training mode."""
        model = Model(input_dim=2, seed=3)
        model.add_layer(Dense(8, 'relu')).add_layer(Dropout(0.5)).add_layer(Dense(1))
        x = rng.normal(size=(6, 2))

        assert model.predict(x) == model.predict(x)
        assert all(layer.training for layer in model.layers)

    def test_compute_layers_records_every_stage(self, small_model, small_data):
        """Test the aligned activation and derivative lists."""
        x, y = small_data
        layers, derivatives = small_model._compute_layers(Matrix(x), Matrix(y))

        assert [m.shape for m in layers] == [(20, 3), (20, 5), (20, 3), (20, 2)]
        assert [m.shape for m in derivatives] == [(20, 4), (20, 2), (20, 2)]

    def test_shape_reconciliation_is_logged(self, small_model, small_data, caplog):
        """Test that mismatched targets are truncated with a warning and the gradient padded."""
        x, y = small_data
        with caplog.at_level(logging.WARNING, logger='clear_dense.model'):
            _, derivatives = small_model._compute_layers(Matrix(x), Matrix(y[:, :1]))

        assert "shape reconciliation" in caplog.text
        assert derivatives[-1].shape == (20, 2)
        assert np.all(derivatives[-1].values[:, 1] == 0.0)

    def test_get_loss_is_batch_size_independent(self, small_model, small_data):
        """Test that the dataset loss does not depend on the evaluation batch size."""
        x, y = small_data

        assert small_model.get_loss(x, y, batch_size=3) == pytest.approx(small_model.get_loss(x, y, batch_size=20))
        assert small_model.get_loss(Matrix([]), Matrix([])) == 0.0

    @pytest.mark.parametrize("loss_name", ['crossentropy', 'softmax'])
    def test_get_loss_scores_predictions(self, loss_name, rng):
        """Test that get_loss applies the inference transform before batch_loss."""
        model = Model(input_dim=3, loss_function=loss_name, seed=11)
        model.add_layer(Dense(5, 'tanh'))
        model.add_layer(Dense(2, 'sigmoid' if loss_name == 'crossentropy' else None))
        x = Matrix(rng.normal(size=(12, 3)))
        y = Matrix(np.eye(2)[rng.integers(0, 2, size=12)])

        expected = model.loss_function.batch_loss(y, model.predict(x))

        assert model.get_loss(x, y, batch_size=5) == pytest.approx(expected)
        assert model.get_loss(x, y) != pytest.approx(model.loss_function.batch_loss(y, model.predict_raw(x)))


@pytest.mark.unit
class TestBackpropagation:
    """Test that weight updates follow the gradient of the batch loss."""

    @pytest.mark.parametrize("loss_function, output_activation", [
        ('square', 'sigmoid'),
        ('softmax', None),
        ('huber', 'tanh'),
    ])
    def test_update_matches_numerical_gradient(self, loss_function, output_activation, rng):
        """Test every layer's applied step against central differences, using pre-update weights."""
        model = Model(input_dim=3, loss_function=loss_function, seed=21)
        model.add_layer(Dense(4, 'tanh')).add_layer(Dense(3, 'elu')).add_layer(Dense(2, output_activation))
        x = Matrix(rng.normal(size=(5, 3)))
        y = Matrix(np.eye(2)[[0, 1, 1, 0, 1]])

        expected = [_numerical_gradient(model, layer, x, y) for layer in model.layers]
        before = [layer.get_weights().values for layer in model.layers]

        layers, derivatives = model._compute_layers(x, y)
        model._update_weights(1.0, layers, derivatives, x.shape[0])

        for layer, old, gradient in zip(model.layers, before, expected):
            np.testing.assert_allclose(old - layer.W.values, gradient, atol=1e-6)

    def test_gradient_clipping(self, small_model, small_data):
        """Test that each layer's step norm is bounded by the clip norm."""
        x, y = small_data
        before = [layer.get_weights().values for layer in small_model.layers]

        layers, derivatives = small_model._compute_layers(Matrix(x), Matrix(y * 100.0))
        small_model._update_weights(1.0, layers, derivatives, 20, gradient_clip_norm=0.5)

        for layer, old in zip(small_model.layers, before):
            assert np.linalg.norm(old - layer.W.values) <= 0.5 + 1e-9

    def test_dropout_passes_gradient_through(self, rng):
        """Test that layers before a Dropout still get updated."""
        model = Model(input_dim=2, seed=4)
        model.add_layer(Dense(6, 'tanh')).add_layer(Dropout(0.3)).add_layer(Dense(1))
        before = model.layers[0].get_weights()
        x = Matrix(rng.normal(size=(8, 2)))
        y = Matrix(rng.normal(size=(8, 1)))

        layers, derivatives = model._compute_layers(x, y)
        model._update_weights(0.1, layers, derivatives, 8)

        assert model.layers[0].W != before
