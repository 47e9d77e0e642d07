"""
Tests for failure classification and recovery decisions.
"""

import pytest

from ntuple.exceptions import DeviceDisposedError, NumericalOverflowError, ValidationMismatchError
from ntuple.training.errors import (
    ErrorHandler,
    ErrorHandlerConfig,
    ErrorType,
    RecoveryAction,
    classify_error,
)


class TestClassification:
    """Tests for ``classify_error``."""

    @pytest.mark.parametrize(
        'error, expected',
        [
            (MemoryError(), ErrorType.OUT_OF_MEMORY),
            (RuntimeError('RESOURCE_EXHAUSTED: Out of memory while trying to allocate'), ErrorType.OUT_OF_MEMORY),
            ('WebGL context lost', ErrorType.DEVICE_LOST),
            (DeviceDisposedError('gone'), ErrorType.DEVICE_LOST),
            (RuntimeError('shader failed'), ErrorType.KERNEL_ERROR),
            (RuntimeError('backend failed to initialize'), ErrorType.INITIALIZATION_ERROR),
            (NumericalOverflowError('weights'), ErrorType.NUMERICAL_OVERFLOW),
            (FloatingPointError('overflow encountered'), ErrorType.NUMERICAL_OVERFLOW),
            (ValidationMismatchError('device values'), ErrorType.VALIDATION_ERROR),
            (ValueError('unexpected shape'), ErrorType.UNKNOWN),
        ],
    )
    def test_classify(self, error, expected):
        assert classify_error(error) == expected


class TestRecovery:
    """Tests for recovery decisions."""

    def test_out_of_memory_halves_to_minimum(self):
        """OOM halves the batch down to the minimum, past max_retries, then falls back."""
        handler = ErrorHandler(batch_size=64)
        sizes = []
        while True:
            result = handler.handle_error(MemoryError('out of memory'), 'train_batch')
            if result.action != RecoveryAction.RETRY_WITH_REDUCED_BATCH:
                break
            assert result.should_save_checkpoint
            sizes.append(result.new_batch_size)
            handler.apply_batch_size_reduction(result.new_batch_size)

        assert sizes == [32, 16, 8, 4, 2, 1]
        assert result.action == RecoveryAction.FALLBACK_TO_CPU
        assert not result.can_recover

    def test_out_of_memory_respects_minimum(self):
        handler = ErrorHandler(ErrorHandlerConfig(min_batch_size=16), batch_size=20)
        result = handler.handle_error('out of memory')
        assert result.new_batch_size == 16
        handler.apply_batch_size_reduction(16)
        assert handler.handle_error('out of memory').action == RecoveryAction.FALLBACK_TO_CPU

    def test_device_lost(self):
        """A lost device falls back at once and asks for a checkpoint."""
        result = ErrorHandler().handle_error(DeviceDisposedError('gone'))
        assert result.action == RecoveryAction.FALLBACK_TO_CPU
        assert result.should_save_checkpoint

    def test_initialization(self):
        result = ErrorHandler().handle_error('device not initialized')
        assert result.action == RecoveryAction.FALLBACK_TO_CPU
        assert not result.should_save_checkpoint

    def test_kernel_retries_then_falls_back(self):
        handler = ErrorHandler(ErrorHandlerConfig(max_retries=2))
        actions = [handler.handle_error(RuntimeError('kernel failed'), 'step').action for _ in range(3)]
        assert actions == [RecoveryAction.RETRY, RecoveryAction.RETRY, RecoveryAction.FALLBACK_TO_CPU]

    def test_retries_are_per_operation(self):
        handler = ErrorHandler(ErrorHandlerConfig(max_retries=1))
        assert handler.handle_error('kernel failed', 'a').action == RecoveryAction.RETRY
        assert handler.handle_error('kernel failed', 'b').action == RecoveryAction.RETRY

    def test_auto_recovery_disabled(self):
        """Without auto recovery, kernel errors fall back but validation errors still retry."""
        handler = ErrorHandler(ErrorHandlerConfig(enable_auto_recovery=False))
        assert handler.handle_error('kernel failed').action == RecoveryAction.FALLBACK_TO_CPU
        result = handler.handle_error(ValidationMismatchError('device values'), 'validation')
        assert result.action == RecoveryAction.RETRY
        assert result.should_save_checkpoint

    def test_overflow_is_ignored_then_falls_back(self):
        handler = ErrorHandler(ErrorHandlerConfig(max_retries=1))
        first = handler.handle_error(NumericalOverflowError('weights'), 'train_batch')
        assert first.action == RecoveryAction.IGNORE
        assert first.can_recover
        second = handler.handle_error(NumericalOverflowError('weights'), 'train_batch')
        assert second.action == RecoveryAction.FALLBACK_TO_CPU


class TestBookkeeping:
    """Tests for retry counters, history and the wrapper."""

    def test_with_error_handling_success_resets(self):
        handler = ErrorHandler()
        handler.handle_error('kernel failed', 'step')
        result, decision = handler.with_error_handling('step', lambda: 42)
        assert (result, decision) == (42, None)
        assert 'step' not in handler.retry_counts

    def test_with_error_handling_failure(self):
        handler = ErrorHandler()

        def fail():
            raise RuntimeError('kernel failed')

        result, decision = handler.with_error_handling('step', fail)
        assert result is None
        assert decision.action == RecoveryAction.RETRY
        assert handler.history[-1].operation == 'step'
        assert isinstance(handler.history[-1].error, RuntimeError)

    def test_error_stats(self):
        handler = ErrorHandler(batch_size=8)
        handler.handle_error('kernel failed')
        handler.handle_error(MemoryError())
        stats = handler.error_stats()
        assert stats['total_errors'] == 2
        assert stats['errors_by_type']['kernel_error'] == 1
        assert stats['errors_by_type']['out_of_memory'] == 1
        assert stats['last_error']['type'] == 'out_of_memory'

        handler.clear_history()
        assert handler.error_stats()['last_error'] is None

    def test_restore_batch_size(self):
        handler = ErrorHandler(batch_size=32)
        handler.apply_batch_size_reduction(8)
        assert handler.restore_original_batch_size() == 32
