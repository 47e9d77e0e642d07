"""
Performance monitoring for device training: kernel timings, memory estimate, throughput and
degradation warnings.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

WARNING_HISTORY_SIZE = 100
THROUGHPUT_HISTORY_SIZE = 60
ACTIVE_WARNING_WINDOW = 5 * 60
DEFAULT_AVAILABLE_MEMORY = 512 * 1024 * 1024


class WarningType(str, Enum):
    """Kinds of performance warnings."""

    MEMORY_PRESSURE = 'memory_pressure'
    PERFORMANCE_DEGRADATION = 'performance_degradation'
    LOW_UTILIZATION = 'low_utilization'
    SLOW_KERNEL = 'slow_kernel'


@dataclass
class MonitorConfig:
    """
    Monitor thresholds.

    Attributes
    ----------
    enabled : bool
        Record anything at all.
    memory_pressure_threshold : float
        Memory usage ratio above which a warning is raised.
    degradation_threshold : float
        Recent/historical throughput ratio below which a warning is raised.
    low_utilization_threshold : float
        Device utilisation below which a warning is raised (after 100 episodes).
    slow_kernel_ms : float
        Single kernel duration above which a warning is raised.
    cpu_baseline_episodes_per_second : float
        Throughput used to compute the speedup ratio.
    sample_interval : float
        Seconds between two throughput samples.
    """

    enabled: bool = True
    memory_pressure_threshold: float = 0.85
    degradation_threshold: float = 0.7
    low_utilization_threshold: float = 0.3
    slow_kernel_ms: float = 100.0
    cpu_baseline_episodes_per_second: float = 50.0
    sample_interval: float = 1.0


@dataclass
class KernelTiming:
    """Timing record of one kernel."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float('inf')
    max_ms: float = 0.0
    last_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, elapsed_ms: float) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        self.min_ms = min(self.min_ms, elapsed_ms)
        self.max_ms = max(self.max_ms, elapsed_ms)
        self.last_ms = elapsed_ms


@dataclass
class MemoryBreakdown:
    """Estimated bytes held on the device."""

    weights: int = 0
    gradients: int = 0
    board_state: int = 0
    other: int = 0

    @property
    def total(self) -> int:
        return self.weights + self.gradients + self.board_state + self.other


@dataclass
class PerformanceWarning:
    type: WarningType
    message: str
    severity: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class PerformanceStats:
    """
    Throughput summary.

    Attributes
    ----------
    episodes_per_second : float
        Completed episodes per second since the start.
    moves_per_second : float
        Moves per second since the start.
    utilization : float
        Fraction of wall time spent in kernels, in [0, 1].
    speedup_ratio : float
        Throughput relative to the CPU baseline.
    total_training_time : float
        Seconds since the start.
    compute_ratio : float
        Kernel time over kernel plus transfer time.
    transfer_ratio : float
        Transfer time over kernel plus transfer time.
    """

    episodes_per_second: float
    moves_per_second: float
    utilization: float
    speedup_ratio: float
    total_training_time: float
    compute_ratio: float
    transfer_ratio: float


class PerformanceMonitor:
    """
    Collects timings and throughput samples during training.

    Parameters
    ----------
    config : MonitorConfig | None
        Thresholds; defaults when None.
    available_memory : int | None
        Device memory in bytes; 512 MiB when unknown.
    clock : Callable[[], float]
        Time source in seconds.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        available_memory: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or MonitorConfig()
        self.available_memory = available_memory or DEFAULT_AVAILABLE_MEMORY
        self.clock = clock
        self.reset()

    def reset(self) -> None:
        now = self.clock()
        self.start_time = now
        self.kernel_timings: dict[str, KernelTiming] = {}
        self.memory = MemoryBreakdown()
        self.total_episodes = 0
        self.total_moves = 0
        self.compute_ms = 0.0
        self.transfer_ms = 0.0
        self.throughput_history: deque[float] = deque(maxlen=THROUGHPUT_HISTORY_SIZE)
        self.warnings: deque[PerformanceWarning] = deque(maxlen=WARNING_HISTORY_SIZE)
        self._last_sample_time = now
        self._last_sample_episodes = 0

    # ##>: Recording.

    def record_kernel(self, name: str, elapsed_ms: float) -> None:
        """Record one kernel execution."""
        if not self.config.enabled:
            return
        self.kernel_timings.setdefault(name, KernelTiming()).record(elapsed_ms)
        self.compute_ms += elapsed_ms
        if elapsed_ms > self.config.slow_kernel_ms:
            self._emit(
                WarningType.SLOW_KERNEL,
                f'Kernel {name} took {elapsed_ms:.1f} ms',
                'high' if elapsed_ms > 2 * self.config.slow_kernel_ms else 'medium',
                {'kernel': name, 'elapsed_ms': elapsed_ms},
            )

    def record_transfer(self, elapsed_ms: float) -> None:
        if self.config.enabled:
            self.transfer_ms += elapsed_ms

    def record_episodes(self, episodes: int, moves: int = 0) -> None:
        """Count finished episodes and moves; samples throughput once per interval."""
        if not self.config.enabled:
            return
        self.total_episodes += episodes
        self.total_moves += moves

        now = self.clock()
        elapsed = now - self._last_sample_time
        if elapsed >= self.config.sample_interval:
            self.throughput_history.append((self.total_episodes - self._last_sample_episodes) / elapsed)
            self._last_sample_time = now
            self._last_sample_episodes = self.total_episodes
            self._check_degradation()

    def update_memory(self, **breakdown: int) -> None:
        """
        Update the memory estimate (``weights``, ``gradients``, ``board_state``, ``other``).

        Emits a memory-pressure warning when the usage ratio exceeds the threshold.
        """
        if not self.config.enabled:
            return
        for key, value in breakdown.items():
            if not hasattr(self.memory, key):
                raise ValueError(f'Unknown memory category: {key}')
            setattr(self.memory, key, int(value))

        ratio = self.memory_usage_ratio()
        if ratio > self.config.memory_pressure_threshold:
            self._emit(
                WarningType.MEMORY_PRESSURE,
                f'Device memory usage ({ratio:.1%}) exceeds threshold',
                'high' if ratio > 0.95 else 'medium',
                {'usage_ratio': ratio, 'used_memory': self.memory.total},
            )

    # ##>: Timers.

    @contextmanager
    def kernel_timer(self, name: str) -> Iterator[None]:
        """Time the enclosed block as one execution of kernel ``name``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_kernel(name, (time.perf_counter() - start) * 1000)

    @contextmanager
    def transfer_timer(self) -> Iterator[None]:
        """Time the enclosed block as a host/device transfer."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_transfer((time.perf_counter() - start) * 1000)

    def with_kernel_timing(self, name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """Decorator timing every call of the wrapped function as kernel ``name``."""

        def decorator(fn: Callable[..., T]) -> Callable[..., T]:
            @wraps(fn)
            def wrapper(*args: Any, **kwargs: Any) -> T:
                with self.kernel_timer(name):
                    return fn(*args, **kwargs)

            return wrapper

        return decorator

    # ##>: Analysis.

    def memory_usage_ratio(self) -> float:
        return self.memory.total / self.available_memory

    def utilization(self) -> float:
        """Fraction of wall time spent in kernels, clipped to [0, 1]."""
        total_ms = (self.clock() - self.start_time) * 1000
        if total_ms <= 0:
            return 0.0
        return min(1.0, max(0.0, self.compute_ms / total_ms))

    def stats(self) -> PerformanceStats:
        elapsed = self.clock() - self.start_time
        episodes_per_second = self.total_episodes / elapsed if elapsed > 0 else 0.0
        baseline = self.config.cpu_baseline_episodes_per_second
        timed_ms = self.compute_ms + self.transfer_ms
        return PerformanceStats(
            episodes_per_second=episodes_per_second,
            moves_per_second=self.total_moves / elapsed if elapsed > 0 else 0.0,
            utilization=self.utilization(),
            speedup_ratio=episodes_per_second / baseline if baseline > 0 else 1.0,
            total_training_time=elapsed,
            compute_ratio=self.compute_ms / timed_ms if timed_ms > 0 else 0.0,
            transfer_ratio=self.transfer_ms / timed_ms if timed_ms > 0 else 0.0,
        )

    def _check_degradation(self) -> None:
        history = list(self.throughput_history)
        if len(history) < 5:
            return

        historical = sum(history[:-3]) / (len(history) - 3)
        recent = sum(history[-3:]) / 3
        if historical > 0 and recent / historical < self.config.degradation_threshold:
            ratio = recent / historical
            self._emit(
                WarningType.PERFORMANCE_DEGRADATION,
                f'Performance degraded: {recent:.1f} ep/s (was {historical:.1f} ep/s)',
                'high' if ratio < 0.5 else 'medium',
                {'recent': recent, 'historical': historical, 'ratio': ratio},
            )

        utilization = self.utilization()
        if utilization < self.config.low_utilization_threshold and self.total_episodes > 100:
            self._emit(
                WarningType.LOW_UTILIZATION,
                f'Low device utilization: {utilization:.1%}',
                'high' if utilization < 0.1 else 'low',
                {'utilization': utilization},
            )

    def _emit(self, warning_type: WarningType, message: str, severity: str, data: dict[str, Any]) -> None:
        self.warnings.append(
            PerformanceWarning(type=warning_type, message=message, severity=severity, timestamp=self.clock(), data=data)
        )
        logger.warning('[%s] %s', severity, message)

    def active_warnings(self) -> list[PerformanceWarning]:
        """Warnings raised during the last five minutes."""
        cutoff = self.clock() - ACTIVE_WARNING_WINDOW
        return [warning for warning in self.warnings if warning.timestamp >= cutoff]

    def report(self) -> dict[str, Any]:
        """Snapshot of every collected metric."""
        stats = self.stats()
        return {
            'stats': stats.__dict__.copy(),
            'memory': {
                'weights': self.memory.weights,
                'gradients': self.memory.gradients,
                'board_state': self.memory.board_state,
                'other': self.memory.other,
                'total': self.memory.total,
                'usage_ratio': self.memory_usage_ratio(),
            },
            'kernels': {
                name: {
                    'count': timing.count,
                    'total_ms': timing.total_ms,
                    'min_ms': timing.min_ms if timing.count else 0.0,
                    'max_ms': timing.max_ms,
                    'avg_ms': timing.avg_ms,
                    'last_ms': timing.last_ms,
                }
                for name, timing in self.kernel_timings.items()
            },
            'warnings': [warning.message for warning in self.active_warnings()],
        }

    def format_summary(self) -> str:
        stats = self.stats()
        return (
            f'{stats.episodes_per_second:.1f} ep/s, {stats.moves_per_second:.0f} moves/s, '
            f'speedup {stats.speedup_ratio:.2f}x, utilization {stats.utilization:.1%}'
        )
