"""
Tests for the device/reference cross-checks and the failure strategies.
"""

import numpy as np
import pytest
from numpy.random import default_rng

from ntuple.game.kernels import MOVE
from ntuple.neural.device_network import DeviceNetwork
from ntuple.neural.network import NTupleNetwork
from ntuple.neural.patterns import HORIZONTAL_4TUPLE_PATTERNS
from ntuple.training.validation import (
    DeviceValidator,
    ValidationConfig,
    ValidationFailureHandler,
    ValidationFailureStrategy,
    ValidationResult,
    generate_random_board,
)
from twentyfortyeight.core.gameboard import count_empty, max_tile


@pytest.fixture
def network(engine):
    network = DeviceNetwork(engine, NTupleNetwork(HORIZONTAL_4TUPLE_PATTERNS))
    network.reference.set_flat(default_rng(0).normal(size=network.table.total_weights))
    network.sync_from_reference()
    return network


def make_result(passed: bool) -> ValidationResult:
    return ValidationResult(
        passed=passed,
        max_eval_error=0.0 if passed else 5.0,
        avg_eval_error=0.0,
        move_consistency=1.0 if passed else 0.5,
        move_result_consistency=1.0,
        sample_count=20,
        validation_time=1.0,
    )


class TestRandomBoards:
    """Tests for the validation board generator."""

    def test_tile_count_and_range(self):
        rng = default_rng(4)
        for _ in range(50):
            board = generate_random_board(rng)
            assert 4 <= 16 - count_empty(board) <= 11
            assert max_tile(board) <= 2048


class TestDeviceValidator:
    """Tests for ``DeviceValidator``."""

    def test_passes_when_in_sync(self, network):
        result = DeviceValidator(network, seed=1).validate()
        assert result.passed
        assert result.sample_count == 20
        assert result.max_eval_error < 1e-2
        assert result.move_result_consistency == 1.0
        assert result.diagnostics['inconsistent_move_results'] == []
        assert set(result.diagnostics['eval_error_distribution']) == {'min', 'max', 'mean', 'std'}

    def test_fails_on_diverged_weights(self, network):
        """Device weights that drift from the reference are detected."""
        network.engine.write_buffer('weights', network.weights + 1.0)
        result = DeviceValidator(network, seed=2).validate(10)
        assert not result.passed
        assert result.max_eval_error == pytest.approx(32.0, rel=1e-3)

    def test_move_result_mismatch_does_not_fail(self, network, monkeypatch):
        """Move kernel results that differ from the host resolver are reported, not failed on."""
        dispatch = network.engine.dispatch

        def shifted_rewards(kernel_id, *inputs):
            outputs = dispatch(kernel_id, *inputs)
            if kernel_id != MOVE:
                return outputs
            afterstates, rewards, valid = outputs
            return afterstates, np.asarray(rewards) + 1.0, valid

        monkeypatch.setattr(network.engine, 'dispatch', shifted_rewards)
        result = DeviceValidator(network, seed=1).validate()
        assert result.move_result_consistency < 1.0
        assert result.diagnostics['inconsistent_move_results']
        assert result.max_eval_error < 1e-2
        assert result.move_consistency >= 0.8
        assert result.passed

    def test_crash_is_reported(self, network):
        """A crash inside validation yields a failed result instead of an exception."""
        network.engine.dispose()
        result = DeviceValidator(network, seed=3).validate(4)
        assert not result.passed
        assert result.sample_count == 0
        assert result.max_eval_error == float('inf')
        assert result.error

    def test_without_move_results(self, network):
        config = ValidationConfig(validate_move_results=False, collect_diagnostics=False)
        result = DeviceValidator(network, config, seed=5).validate(5)
        assert result.passed
        assert result.diagnostics is None

    def test_quick_validate(self, network):
        assert DeviceValidator(network, seed=6).quick_validate()


class TestValidationFailureHandler:
    """Tests for the failure strategies."""

    @pytest.mark.parametrize(
        'strategy, expected',
        [
            (ValidationFailureStrategy.IGNORE, (True, False)),
            (ValidationFailureStrategy.WARN, (True, False)),
            (ValidationFailureStrategy.FALLBACK, (True, True)),
            (ValidationFailureStrategy.ERROR, (False, False)),
        ],
    )
    def test_single_failure(self, strategy, expected):
        decision = ValidationFailureHandler(strategy).handle(make_result(False))
        assert (decision.should_continue, decision.should_fallback) == expected

    def test_consecutive_failures_force_fallback(self):
        """Three failures in a row force a fallback even when failures are ignored."""
        handler = ValidationFailureHandler(ValidationFailureStrategy.IGNORE)
        decisions = [handler.handle(make_result(False)) for _ in range(3)]
        assert [decision.should_fallback for decision in decisions] == [False, False, True]
        assert decisions[-1].should_continue
        assert [decision.forced for decision in decisions] == [False, False, True]
        assert 'Forced fallback' in decisions[-1].message

    def test_pass_resets_count(self):
        handler = ValidationFailureHandler(ValidationFailureStrategy.IGNORE)
        handler.handle(make_result(False))
        handler.handle(make_result(False))
        decision = handler.handle(make_result(True))
        assert decision.message == 'Validation passed'
        assert handler.consecutive_failures == 0
        assert not handler.handle(make_result(False)).should_fallback

    def test_strategy_from_string(self):
        assert ValidationFailureHandler('error').strategy == ValidationFailureStrategy.ERROR
