import os
import sys
import time
import logging
import numpy as np
import matplotlib.pyplot as plt
from sklearn.datasets import make_moons

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from clear_dense import Dense, Dropout, Matrix, Model, configure_logging
from clear_dense.metrics import accuracy

logger = logging.getLogger("MoonsExample")


def plot_decision_boundary(X: np.ndarray, y_raw: np.ndarray, model: Model, title: str = "Decision Boundary"):
    """Plots the decision boundary of a trained model.

    Args:
        X: Normalized input features, shape (n_samples, 2).
        y_raw: Integer class labels, shape (n_samples,).
        model: Trained Model with a one-hot (Softmax) or single sigmoid output.
    """
    h = 0.02

    x_min, x_max = X[:, 0].min() - 0.5, X[:, 0].max() + 0.5
    y_min, y_max = X[:, 1].min() - 0.5, X[:, 1].max() + 0.5
    xx, yy = np.meshgrid(np.arange(x_min, x_max, h),
                         np.arange(y_min, y_max, h))

    probs = model.predict(np.c_[xx.ravel(), yy.ravel()]).values
    if probs.shape[1] > 1:
        Z = np.argmax(probs, axis=1)
    else:
        Z = (probs >= 0.5).astype(int).ravel()
    Z = Z.reshape(xx.shape)

    plt.figure(title, figsize=(10, 8))
    plt.contourf(xx, yy, Z, cmap=plt.cm.Spectral, alpha=0.8)
    plt.scatter(X[:, 0], X[:, 1], c=y_raw, cmap=plt.cm.Spectral, edgecolor='k', s=35)
    plt.xlabel("Feature 1 (Normalized)")
    plt.ylabel("Feature 2 (Normalized)")
    plt.title(title)
    plt.xlim(xx.min(), xx.max())
    plt.ylim(yy.min(), yy.max())
    plt.grid(True, alpha=0.2)


def moons_example(seed: int = 42):
    """Two-class make_moons with a Softmax output and early stopping."""
    logger.info("Generating make_moons dataset...")
    X_original, y_raw = make_moons(n_samples=300, noise=0.1, random_state=seed)

    X = (X_original - X_original.mean(axis=0)) / (X_original.std(axis=0) + 1e-8)
    y_one_hot = np.eye(2)[y_raw]

    rng = np.random.default_rng(seed)
    indices = rng.permutation(len(X))
    split = int(0.8 * len(X))
    train_idx, val_idx = indices[:split], indices[split:]
    logger.info(f"Training on {len(train_idx)} samples, validating on {len(val_idx)} samples.")

    model = Model(input_dim=2, loss_function='softmax', seed=seed)
    model.add_layer(Dense(16, 'relu'))
    model.add_layer(Dropout(0.1))
    model.add_layer(Dense(16, 'relu'))
    model.add_layer(Dense(2))
    print(model.summary())

    start_time = time.time()
    result = model.train(
        X[train_idx], y_one_hot[train_idx],
        x_validation=X[val_idx],
        y_validation=y_one_hot[val_idx],
        learning_rate=0.1,
        learning_rate_schedule='step',
        batch_size=32,
        max_epochs=300,
        early_stopping_patience=30,
        metrics=('loss', 'accuracy'),
        momentum=0.9,
        verbose=True,
        log_every=25,
    )
    logger.info(f"Training finished ({result['status'].value}) after {result['epochs']} epochs "
                f"in {time.time() - start_time:.2f} seconds")

    val_accuracy = accuracy(Matrix(y_one_hot[val_idx]), model.predict(X[val_idx]))
    print(f"\nValidation accuracy: {val_accuracy:.4f}")
    print(f"Best validation loss: {result['best_validation_loss']:.4f}")

    plt.figure("Moons Training History", figsize=(12, 5))
    epochs = range(1, result['epochs'] + 1)

    plt.subplot(1, 2, 1)
    plt.plot(epochs, result['train_losses'], label='Training Loss')
    plt.plot(epochs, result['validation_losses'], label='Validation Loss', linestyle='--')
    plt.xlabel('Epoch')
    plt.ylabel('Loss (Softmax CE)')
    plt.title('Training & Validation Loss')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.ylim(bottom=0)

    plt.subplot(1, 2, 2)
    plt.plot(epochs, result['metrics']['accuracy'], label='Training Accuracy')
    plt.plot(epochs, result['learning_rates'], label='Learning Rate', linestyle=':')
    plt.xlabel('Epoch')
    plt.title('Accuracy & Learning Rate')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()

    plot_decision_boundary(X, y_raw, model, title="Moons Decision Boundary")

    model_filename = os.path.join(".", "moons_model.json")
    logger.info(f"Saving trained model to {model_filename}...")
    with open(model_filename, 'w', encoding='utf-8') as f:
        f.write(model.save())


def xor_example(seed: int = 0):
    """XOR with a tanh hidden layer and a sigmoid output under square loss."""
    logger.info("--- Running XOR Example ---")
    X = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=float)
    y = np.array([[0], [1], [1], [0]], dtype=float)

    model = Model(input_dim=2, loss_function='square', seed=seed)
    model.add_layer(Dense(4, 'tanh')).add_layer(Dense(1, 'sigmoid'))
    logger.info(f"XOR Model Summary:\n{model.summary()}")

    result = model.train(X, y, learning_rate=0.5, learning_rate_decay=1.0, batch_size=4,
                         max_epochs=2000, early_stopping_patience=None, verbose=True, log_every=500)

    predictions = model.predict(X)
    correct = 0
    for inputs, target, pred in zip(X, y, predictions):
        pred_class = pred[0] >= 0.5
        if pred_class == bool(target[0]):
            correct += 1
        logger.info(f"Input: {inputs}, Target: {target[0]}, Prediction: {pred[0]:.4f} -> Class: {int(pred_class)}")
    logger.info(f"XOR Accuracy: {correct / len(X):.2%}")

    plt.figure("XOR Training History", figsize=(8, 5))
    plt.plot(range(1, result['epochs'] + 1), result['train_losses'], label='Training Loss')
    plt.xlabel('Epoch')
    plt.ylabel('Loss (Square)')
    plt.title('XOR Training History')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()

    plot_decision_boundary(X, y.ravel().astype(int), model, title="XOR Decision Boundary")


if __name__ == "__main__":
    configure_logging()

    print("\n" + "=" * 40)
    print("--- Running XOR Classification Example ---")
    print("=" * 40)
    xor_example()

    print("\n" + "=" * 40)
    print("--- Running Make Moons Classification Example ---")
    print("=" * 40)
    moons_example()

    print("\nDisplaying plots. Close plot windows to exit.")
    plt.show()
