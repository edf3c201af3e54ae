"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the clear_dense test suite.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from clear_dense import Dense, Model


@pytest.fixture
def rng():
    """Seeded generator so random inputs are reproducible."""
    return np.random.default_rng(1234)


@pytest.fixture
def sine_data(rng):
    """100 evenly spaced points of y = sin(x) + N(0, 0.1^2) noise on [0, 2*pi]."""
    x = np.linspace(0.0, 2.0 * np.pi, 100).reshape(-1, 1)
    return x, np.sin(x) + 0.1 * rng.normal(size=x.shape)


@pytest.fixture
def small_model():
    """A 2 -> 4 (tanh) -> 2 regression model with a fixed seed."""
    model = Model(input_dim=2, seed=7)
    model.add_layer(Dense(4, 'tanh'))
    model.add_layer(Dense(2))
    return model


@pytest.fixture
def small_data(rng):
    """20 random examples matching `small_model`."""
    x = rng.uniform(-1.0, 1.0, size=(20, 2))
    y = np.column_stack([x[:, 0] * x[:, 1], x[:, 0] - x[:, 1]])
    return x, y
