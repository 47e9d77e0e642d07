"""
Adaptive batch sizing under memory pressure.

Runs as its own control loop, independently of error handling: a streak of successful steps
grows the batch while the memory estimate stays below the pressure threshold, and any failure
shrinks it at once.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ADJUSTMENT_HISTORY_SIZE = 100

# ##>: Memory model: fixed overhead plus per-lane state (board, score, flags, values).
BASE_MEMORY_BYTES = 20 * 1024 * 1024
BYTES_PER_LANE = 76
DEFAULT_AVAILABLE_MEMORY = 512 * 1024 * 1024


@dataclass
class BatchSizeConfig:
    """
    Adjuster settings.

    Attributes
    ----------
    initial_batch_size : int
        Starting batch size.
    min_batch_size : int
        Lower bound.
    max_batch_size : int
        Upper bound.
    reduction_factor : float
        Multiplier applied on failure.
    growth_factor : float
        Multiplier applied after a stable period.
    stability_period : int
        Consecutive successes required before growing.
    memory_pressure_threshold : float
        Fraction of available memory above which the batch never grows.
    available_memory : int
        Bytes available to the engine.
    """

    initial_batch_size: int = 64
    min_batch_size: int = 1
    max_batch_size: int = 1024
    reduction_factor: float = 0.5
    growth_factor: float = 1.25
    stability_period: int = 100
    memory_pressure_threshold: float = 0.9
    available_memory: int = DEFAULT_AVAILABLE_MEMORY


@dataclass
class BatchSizeAdjustment:
    """One change of batch size."""

    old_size: int
    new_size: int
    reason: str
    timestamp: float = field(default_factory=time.time)


class BatchSizeAdjuster:
    """
    Grows or shrinks the batch size from observed successes and failures.

    Parameters
    ----------
    config : BatchSizeConfig | None
        Settings; defaults when None.
    """

    def __init__(self, config: BatchSizeConfig | None = None):
        self.config = config or BatchSizeConfig()
        self.batch_size = self._clamp(self.config.initial_batch_size)
        self.consecutive_successes = 0
        self.history: deque[BatchSizeAdjustment] = deque(maxlen=ADJUSTMENT_HISTORY_SIZE)

    def _clamp(self, size: int) -> int:
        return max(self.config.min_batch_size, min(self.config.max_batch_size, int(size)))

    def estimate_memory_usage(self, batch_size: int | None = None) -> float:
        """Estimated fraction of available memory used by ``batch_size`` lanes."""
        lanes = self.batch_size if batch_size is None else batch_size
        return (BASE_MEMORY_BYTES + lanes * BYTES_PER_LANE) / self.config.available_memory

    def under_memory_pressure(self, batch_size: int | None = None) -> bool:
        return self.estimate_memory_usage(batch_size) >= self.config.memory_pressure_threshold

    def _change(self, new_size: int, reason: str) -> int:
        old_size = self.batch_size
        if new_size != old_size:
            self.batch_size = new_size
            self.history.append(BatchSizeAdjustment(old_size=old_size, new_size=new_size, reason=reason))
            logger.info('Batch size %d -> %d (%s)', old_size, new_size, reason)
        return self.batch_size

    def record_success(self) -> int:
        """
        Count a successful step; grow after a full stability period without pressure.

        Returns
        -------
        int
            The batch size to use from now on.
        """
        self.consecutive_successes += 1
        if self.consecutive_successes < self.config.stability_period:
            return self.batch_size

        self.consecutive_successes = 0
        grown = self._clamp(max(self.batch_size + 1, int(self.batch_size * self.config.growth_factor)))
        if grown == self.batch_size or self.under_memory_pressure(grown):
            return self.batch_size
        return self._change(grown, 'stable')

    def record_failure(self, reason: str = 'failure') -> int:
        """Shrink immediately and restart the stability count."""
        self.consecutive_successes = 0
        reduced = self._clamp(int(self.batch_size * self.config.reduction_factor))
        return self._change(reduced, reason)

    def set_batch_size(self, size: int, reason: str = 'manual') -> int:
        """Force a batch size, clamped to the configured bounds."""
        self.consecutive_successes = 0
        return self._change(self._clamp(size), reason)

    def stats(self) -> dict[str, float]:
        return {
            'batch_size': self.batch_size,
            'consecutive_successes': self.consecutive_successes,
            'adjustments': len(self.history),
            'memory_usage': self.estimate_memory_usage(),
        }

    def reset(self) -> None:
        self.batch_size = self._clamp(self.config.initial_batch_size)
        self.consecutive_successes = 0
        self.history.clear()
