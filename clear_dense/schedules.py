"""
Learning-rate schedules.

A schedule is resolved from its name once, before training starts, and is then
called at the start of every epoch with the 0-based epoch index and the current
learning rate, returning the rate to use for that epoch.

The names follow the historical convention of this library: 'constant'
multiplies the rate by `learning_rate_decay` every epoch (so it is only truly
constant with a decay of 1.0), while 'decay' is inverse-time decay from the
initial rate.
"""

import logging

logger = logging.getLogger(__name__)


class LearningRateSchedule:
    """Base class for learning-rate schedules."""

    name = 'schedule'

    def __init__(self, initial_learning_rate: float):
        if initial_learning_rate <= 0:
            raise ValueError(f"Learning rate must be positive, got {initial_learning_rate}")
        self.initial_learning_rate = float(initial_learning_rate)

    def __call__(self, epoch: int, learning_rate: float) -> float:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(initial_learning_rate={self.initial_learning_rate})"


class ConstantSchedule(LearningRateSchedule):
    """lr = lr * learning_rate_decay, applied every epoch."""

    name = 'constant'

    def __init__(self, initial_learning_rate: float, learning_rate_decay: float = 0.9999, **_):
        super().__init__(initial_learning_rate)
        if learning_rate_decay <= 0:
            raise ValueError(f"learning_rate_decay must be positive, got {learning_rate_decay}")
        self.learning_rate_decay = float(learning_rate_decay)

    def __call__(self, epoch: int, learning_rate: float) -> float:
        return learning_rate * self.learning_rate_decay


class InverseTimeDecay(LearningRateSchedule):
    """lr = initial_lr / (1 + decay_rate * epoch)."""

    name = 'decay'

    def __init__(self, initial_learning_rate: float, decay_rate: float = 1e-4, **_):
        super().__init__(initial_learning_rate)
        if decay_rate < 0:
            raise ValueError(f"decay_rate must be non-negative, got {decay_rate}")
        self.decay_rate = float(decay_rate)

    def __call__(self, epoch: int, learning_rate: float) -> float:
        return self.initial_learning_rate / (1.0 + self.decay_rate * epoch)


class StepDecay(LearningRateSchedule):
    """lr = lr * factor every `step_size` epochs (epoch 0 excluded)."""

    name = 'step'

    def __init__(self, initial_learning_rate: float, factor: float = 0.1, step_size: int = 10, **_):
        super().__init__(initial_learning_rate)
        if step_size < 1:
            raise ValueError(f"step_size must be at least 1, got {step_size}")
        self.factor = float(factor)
        self.step_size = int(step_size)

    def __call__(self, epoch: int, learning_rate: float) -> float:
        if epoch > 0 and epoch % self.step_size == 0:
            logger.debug(f"Step schedule: epoch {epoch}, learning rate x{self.factor}")
            return learning_rate * self.factor
        return learning_rate


# Dictionary mapping schedule names to their classes
SCHEDULES = {
    'constant': ConstantSchedule,
    'decay': InverseTimeDecay,
    'step': StepDecay,
}


def get_schedule(name: str, initial_learning_rate: float, **kwargs) -> LearningRateSchedule:
    """Factory function to get a learning-rate schedule by name.

    Args:
        name: 'constant', 'decay' or 'step'.
        initial_learning_rate: Rate at epoch 0.
        **kwargs: Schedule options (learning_rate_decay, decay_rate, factor, step_size);
                  options a schedule does not use are ignored.

    Raises:
        ValueError: If the schedule name is not recognized.
    """
    if name not in SCHEDULES:
        raise ValueError(f"Unknown learning rate schedule '{name}'. Available: {list(SCHEDULES.keys())}")
    return SCHEDULES[name](initial_learning_rate, **kwargs)
