"""
Configuration for N-Tuple TD-learning.

Defaults follow the usual 2048 TD(0) afterstate setup: ten 6-cell patterns, a small constant
learning rate and no decay.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from ntuple.neural.patterns import HORIZONTAL_4TUPLE_PATTERNS, STANDARD_6TUPLE_PATTERNS, Pattern
from ntuple.training.validation import ValidationFailureStrategy


@dataclass(frozen=True)
class TrainingConfig:
    """
    Configuration of a training run.

    Every command-line flag maps onto one attribute. The instance is immutable; derive variants
    with ``dataclasses.replace``.
    """

    # ##>: Run length and learning rate schedule.
    episodes: int = 100_000
    learning_rate: float = 0.0025
    enable_decay: bool = False
    decay_rate: float = 0.95
    decay_interval: int = 10_000  # Episodes between two decays
    optimistic_init: float = 0.0  # Initial value of every weight

    # ##>: Network.
    patterns: tuple[Pattern, ...] = STANDARD_6TUPLE_PATTERNS

    # ##>: Reporting and persistence.
    report_interval: int = 100
    checkpoint_interval: int = 1000
    checkpoint_path: str = 'checkpoint.json'
    output_path: str = 'weights.json'
    resume: bool = False

    # ##>: Device execution.
    use_gpu: bool = True
    batch_size: int = 64
    device_index: int | None = None
    gradient_accumulation_steps: int = 1  # Steps between two gradient applications

    # ##>: Device/reference cross-checks.
    validation_interval: int = 10_000
    validation_samples: int = 20
    validation_strategy: ValidationFailureStrategy = ValidationFailureStrategy.WARN
    fallback_on_validation_failure: bool = True

    seed: int | None = None
    recent_scores_window: int = field(default=1000, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Plain-JSON view, stored in checkpoints."""
        record = asdict(self)
        record['patterns'] = [list(pattern) for pattern in self.patterns]
        record['validation_strategy'] = self.validation_strategy.value
        return record


def default_training_config() -> TrainingConfig:
    """
    Create the default training configuration.

    Returns
    -------
    TrainingConfig
        Ten 6-tuple patterns, 100k episodes, batch of 64 lanes.
    """
    return TrainingConfig()


def small_training_config() -> TrainingConfig:
    """
    Create a reduced configuration for quick experiments.

    Uses the four row patterns (a few MB of weights instead of 1.3 GB) and short intervals.

    Returns
    -------
    TrainingConfig
        Reduced configuration.
    """
    return TrainingConfig(
        episodes=200,
        learning_rate=0.01,
        patterns=HORIZONTAL_4TUPLE_PATTERNS,
        report_interval=20,
        checkpoint_interval=100,
        validation_interval=100,
        batch_size=16,
    )
