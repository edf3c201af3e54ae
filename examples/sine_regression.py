import argparse
import logging
import os
import sys

import numpy as np
import matplotlib.pyplot as plt

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from clear_dense import Dense, Model, configure_logging

logger = logging.getLogger("SineExample")


def parse_args():
    parser = argparse.ArgumentParser(description="Fit y = sin(x) on [0, 2*pi] with a small tanh network.")
    parser.add_argument('--points', type=int, default=100, help='number of training points')
    parser.add_argument('--epochs', type=int, default=100, help='maximum number of epochs')
    parser.add_argument('--batch-size', type=int, default=2)
    parser.add_argument('--learning-rate', type=float, default=0.01)
    parser.add_argument('--schedule', choices=['constant', 'decay', 'step'], default='decay')
    parser.add_argument('--seed', type=int, default=0)
    parser.add_argument('--checkpoint-dir', default=None,
                        help='write a checkpoint every 10 epochs into this directory')
    parser.add_argument('--no-plot', action='store_true', help='skip the matplotlib figures')
    return parser.parse_args()


def main():
    args = parse_args()
    configure_logging()

    x = np.linspace(0.0, 2.0 * np.pi, args.points).reshape(-1, 1)
    y = np.sin(x)

    model = Model(input_dim=1, seed=args.seed)
    model.add_layer(Dense(10, 'tanh'))
    model.add_layer(Dense(10, 'tanh'))
    model.add_layer(Dense(1))
    print(model.summary())

    options = dict(
        learning_rate=args.learning_rate,
        learning_rate_schedule=args.schedule,
        batch_size=args.batch_size,
        max_epochs=args.epochs,
        metrics=('loss', 'r2'),
        verbose=True,
        log_every=10,
    )
    if args.checkpoint_dir:
        options.update(checkpoint_frequency=10, checkpoint_dir=args.checkpoint_dir)

    result = model.train(x, y, **options)
    logger.info(f"Finished with status {result['status'].value}: first epoch loss "
                f"{result['train_losses'][0]:.5f}, last epoch loss {result['train_losses'][-1]:.5f}")
    for path in result['checkpoints']:
        logger.info(f"Checkpoint: {path}")

    if args.no_plot:
        return

    prediction = model.predict(x).values

    plt.figure("Sine Regression", figsize=(12, 5))
    plt.subplot(1, 2, 1)
    plt.plot(x, y, label='sin(x)')
    plt.plot(x, prediction, label='Model', linestyle='--')
    plt.xlabel('x')
    plt.legend()
    plt.grid(True, alpha=0.3)

    plt.subplot(1, 2, 2)
    plt.plot(range(1, result['epochs'] + 1), result['train_losses'], label='Training Loss')
    plt.xlabel('Epoch')
    plt.ylabel('Loss (Square)')
    plt.yscale('log')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
