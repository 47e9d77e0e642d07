"""
Failure classification and recovery decisions for device training.

A failure is classified by inspecting its type and its message, then mapped to a recovery action:

| Type | Action |
|---|---|
| OutOfMemory | halve the batch size down to the minimum, then fall back |
| KernelError / Unknown | bounded retry, then fall back |
| DeviceLost / InitializationError | immediate fallback |
| NumericalOverflow | ignore and clamp, bounded, then fall back |
| ValidationError | retry with a checkpoint, bounded, then fall back |
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ntuple.exceptions import DeviceDisposedError, NumericalOverflowError, ValidationMismatchError

logger = logging.getLogger(__name__)

T = TypeVar('T')

ERROR_HISTORY_SIZE = 100


class ErrorType(str, Enum):
    """Failure categories."""

    KERNEL_ERROR = 'kernel_error'
    OUT_OF_MEMORY = 'out_of_memory'
    DEVICE_LOST = 'device_lost'
    INITIALIZATION_ERROR = 'initialization_error'
    NUMERICAL_OVERFLOW = 'numerical_overflow'
    VALIDATION_ERROR = 'validation_error'
    UNKNOWN = 'unknown'


class RecoveryAction(str, Enum):
    """Actions the trainer can take after a failure."""

    RETRY = 'retry'
    RETRY_WITH_REDUCED_BATCH = 'retry_with_reduced_batch'
    FALLBACK_TO_CPU = 'fallback_to_cpu'
    SAVE_AND_TERMINATE = 'save_and_terminate'
    IGNORE = 'ignore'


# ##>: Message keywords, checked in order; the first matching group wins.
_KEYWORDS: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.OUT_OF_MEMORY, ('out of memory', 'oom', 'memory allocation', 'cannot allocate', 'insufficient memory')),
    (ErrorType.DEVICE_LOST, ('device lost', 'context lost', 'gpu device', 'webgl context')),
    (ErrorType.KERNEL_ERROR, ('kernel', 'shader', 'compile', 'execution')),
    (ErrorType.INITIALIZATION_ERROR, ('initialize', 'init', 'not initialized')),
    (ErrorType.NUMERICAL_OVERFLOW, ('nan', 'infinity', 'overflow', 'underflow')),
    (ErrorType.VALIDATION_ERROR, ('validation', 'mismatch', 'inconsistent')),
)


@dataclass
class ErrorHandlerConfig:
    """
    Recovery policy.

    Attributes
    ----------
    max_retries : int
        Attempts per operation before falling back (not applied to out-of-memory).
    min_batch_size : int
        Smallest batch size the out-of-memory recovery may propose.
    reduction_factor : float
        Batch size multiplier applied on out-of-memory.
    enable_auto_recovery : bool
        Allow retries of kernel and unknown errors.
    save_checkpoint_on_fatal_error : bool
        Ask for a checkpoint before falling back.
    memory_pressure_threshold : float
        Fraction of device memory considered as pressure.
    """

    max_retries: int = 3
    min_batch_size: int = 1
    reduction_factor: float = 0.5
    enable_auto_recovery: bool = True
    save_checkpoint_on_fatal_error: bool = True
    memory_pressure_threshold: float = 0.9


@dataclass
class ErrorInfo:
    """A classified failure."""

    type: ErrorType
    message: str
    operation: str
    batch_size: int
    timestamp: float = field(default_factory=time.time)
    error: BaseException | None = field(default=None, repr=False)


@dataclass
class ErrorHandlingResult:
    """
    Decision returned for a failure.

    Attributes
    ----------
    action : RecoveryAction
        What the caller should do.
    can_recover : bool
        Whether training can continue on the current device.
    message : str
        Human-readable explanation.
    should_save_checkpoint : bool
        Whether a checkpoint must be written before acting.
    new_batch_size : int | None
        Proposed batch size for ``RETRY_WITH_REDUCED_BATCH``.
    """

    action: RecoveryAction
    can_recover: bool
    message: str
    should_save_checkpoint: bool
    new_batch_size: int | None = None


def classify_error(error: BaseException | str) -> ErrorType:
    """
    Classify a failure.

    Package exceptions are classified by type; anything else by the keywords found in its
    lower-cased message.
    """
    if isinstance(error, NumericalOverflowError):
        return ErrorType.NUMERICAL_OVERFLOW
    if isinstance(error, ValidationMismatchError):
        return ErrorType.VALIDATION_ERROR
    if isinstance(error, DeviceDisposedError):
        return ErrorType.DEVICE_LOST
    if isinstance(error, MemoryError):
        return ErrorType.OUT_OF_MEMORY

    message = str(error).lower()
    for error_type, keywords in _KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type
    return ErrorType.UNKNOWN


class ErrorHandler:
    """
    Chooses recovery actions and keeps per-operation retry counters.

    Parameters
    ----------
    config : ErrorHandlerConfig | None
        Recovery policy; defaults when None.
    batch_size : int
        Current batch size, tracked across reductions.
    """

    def __init__(self, config: ErrorHandlerConfig | None = None, batch_size: int = 64):
        self.config = config or ErrorHandlerConfig()
        self.current_batch_size = batch_size
        self.original_batch_size = batch_size
        self.retry_counts: dict[str, int] = {}
        self.history: deque[ErrorInfo] = deque(maxlen=ERROR_HISTORY_SIZE)

    def classify(self, error: BaseException | str, operation: str = 'default') -> ErrorInfo:
        return ErrorInfo(
            type=classify_error(error),
            message=str(error),
            operation=operation,
            batch_size=self.current_batch_size,
            error=error if isinstance(error, BaseException) else None,
        )

    def handle_error(self, error: BaseException | str, operation: str = 'default') -> ErrorHandlingResult:
        """
        Record a failure and decide how to recover.

        Parameters
        ----------
        error : BaseException | str
            The failure or its message.
        operation : str
            Key under which retries are counted.

        Returns
        -------
        ErrorHandlingResult
            The recovery decision.
        """
        info = self.classify(error, operation)
        self.history.append(info)
        retries = self.retry_counts.get(operation, 0)

        if info.type == ErrorType.OUT_OF_MEMORY:
            result = self._handle_out_of_memory(info, retries)
        elif info.type == ErrorType.KERNEL_ERROR:
            result = self._handle_retryable(info, retries, 'Kernel error', checkpoint=False, auto=True)
        elif info.type == ErrorType.DEVICE_LOST:
            result = ErrorHandlingResult(
                action=RecoveryAction.FALLBACK_TO_CPU,
                can_recover=False,
                message='Device lost. Falling back to CPU mode.',
                should_save_checkpoint=self.config.save_checkpoint_on_fatal_error,
            )
        elif info.type == ErrorType.INITIALIZATION_ERROR:
            result = ErrorHandlingResult(
                action=RecoveryAction.FALLBACK_TO_CPU,
                can_recover=False,
                message='Device initialization failed. Falling back to CPU mode.',
                should_save_checkpoint=False,
            )
        elif info.type == ErrorType.NUMERICAL_OVERFLOW:
            result = self._handle_numerical_overflow(info, retries)
        elif info.type == ErrorType.VALIDATION_ERROR:
            result = self._handle_retryable(info, retries, 'Validation error', checkpoint=True, auto=False)
        else:
            result = self._handle_retryable(info, retries, 'Unknown error', checkpoint=True, auto=True)

        log = logger.warning if result.can_recover else logger.error
        log('%s [%s in %s]: %s', result.message, info.type.value, operation, info.message)
        return result

    def _bump(self, operation: str, retries: int) -> None:
        self.retry_counts[operation] = retries + 1

    def _handle_out_of_memory(self, info: ErrorInfo, retries: int) -> ErrorHandlingResult:
        new_batch_size = self.calculate_reduced_batch_size()
        # ##>: Not capped by max_retries: halving is bounded by the minimum batch size.
        if new_batch_size < self.current_batch_size:
            self._bump(info.operation, retries)
            return ErrorHandlingResult(
                action=RecoveryAction.RETRY_WITH_REDUCED_BATCH,
                can_recover=True,
                message=f'Out of memory: reducing batch size from {self.current_batch_size} to {new_batch_size}',
                should_save_checkpoint=True,
                new_batch_size=new_batch_size,
            )
        return self._fallback(f'Cannot reduce batch size below {self.config.min_batch_size}')

    def _handle_retryable(
        self, info: ErrorInfo, retries: int, label: str, checkpoint: bool, auto: bool
    ) -> ErrorHandlingResult:
        if retries < self.config.max_retries and (self.config.enable_auto_recovery or not auto):
            self._bump(info.operation, retries)
            return ErrorHandlingResult(
                action=RecoveryAction.RETRY,
                can_recover=True,
                message=f'{label}: retrying (attempt {retries + 1}/{self.config.max_retries})',
                should_save_checkpoint=checkpoint,
            )
        return self._fallback(f'{label} recovery failed')

    def _handle_numerical_overflow(self, info: ErrorInfo, retries: int) -> ErrorHandlingResult:
        if retries < self.config.max_retries:
            self._bump(info.operation, retries)
            return ErrorHandlingResult(
                action=RecoveryAction.IGNORE,
                can_recover=True,
                message='Numerical overflow detected. Values will be clamped.',
                should_save_checkpoint=True,
            )
        return self._fallback('Persistent numerical overflow')

    def _fallback(self, reason: str) -> ErrorHandlingResult:
        return ErrorHandlingResult(
            action=RecoveryAction.FALLBACK_TO_CPU,
            can_recover=False,
            message=f'{reason}. Falling back to CPU mode.',
            should_save_checkpoint=self.config.save_checkpoint_on_fatal_error,
        )

    # ##>: Batch size bookkeeping.

    def calculate_reduced_batch_size(self) -> int:
        reduced = int(self.current_batch_size * self.config.reduction_factor)
        return max(self.config.min_batch_size, reduced)

    def apply_batch_size_reduction(self, new_batch_size: int) -> None:
        """Record that the caller switched to ``new_batch_size``."""
        self.current_batch_size = max(self.config.min_batch_size, new_batch_size)

    def restore_original_batch_size(self) -> int:
        self.current_batch_size = self.original_batch_size
        return self.current_batch_size

    def reset_retry_count(self, operation: str | None = None) -> None:
        """Forget the retries of one operation, or of all operations."""
        if operation is None:
            self.retry_counts.clear()
        else:
            self.retry_counts.pop(operation, None)

    # ##>: Reporting.

    def error_stats(self) -> dict[str, Any]:
        """Counts of recorded failures by type, with the most recent one."""
        by_type = {error_type.value: 0 for error_type in ErrorType}
        for info in self.history:
            by_type[info.type.value] += 1
        last = self.history[-1] if self.history else None
        return {
            'total_errors': len(self.history),
            'errors_by_type': by_type,
            'last_error': None if last is None else {'type': last.type.value, 'message': last.message},
            'current_batch_size': self.current_batch_size,
            'retry_counts': dict(self.retry_counts),
        }

    def clear_history(self) -> None:
        self.history.clear()

    def with_error_handling(self, operation: str, fn: Callable[[], T]) -> tuple[T | None, ErrorHandlingResult | None]:
        """
        Run ``fn``; on failure return the recovery decision instead of raising.

        The retry counter of ``operation`` is reset when ``fn`` succeeds.

        Returns
        -------
        tuple
            ``(result, None)`` on success, ``(None, decision)`` on failure.
        """
        try:
            result = fn()
        except Exception as error:
            return None, self.handle_error(error, operation)
        self.reset_retry_count(operation)
        return result, None
