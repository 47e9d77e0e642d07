"""
Tests for the adaptive batch size controller.
"""

import pytest

from ntuple.training.capacity import BASE_MEMORY_BYTES, BatchSizeAdjuster, BatchSizeConfig


def succeed(adjuster, times: int) -> int:
    size = adjuster.batch_size
    for _ in range(times):
        size = adjuster.record_success()
    return size


class TestBatchSizeAdjuster:
    """Tests for growth and reduction."""

    def test_grows_after_stability_period(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=8, stability_period=3))
        assert succeed(adjuster, 2) == 8
        assert adjuster.record_success() == 10
        assert adjuster.consecutive_successes == 0
        assert adjuster.history[-1].reason == 'stable'

    def test_growth_is_at_least_one(self):
        """Small batches still grow when the factor rounds down."""
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=2, stability_period=1))
        assert adjuster.record_success() == 3

    def test_growth_stops_at_maximum(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=15, max_batch_size=16, stability_period=1))
        assert succeed(adjuster, 3) == 16

    def test_no_growth_under_pressure(self):
        config = BatchSizeConfig(initial_batch_size=8, stability_period=1, available_memory=BASE_MEMORY_BYTES)
        adjuster = BatchSizeAdjuster(config)
        assert adjuster.under_memory_pressure()
        assert adjuster.record_success() == 8

    def test_failure_shrinks(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=10, stability_period=2))
        adjuster.record_success()
        assert adjuster.record_failure() == 5
        assert adjuster.consecutive_successes == 0
        assert adjuster.record_failure() == 2
        assert adjuster.record_failure() == 1
        assert adjuster.record_failure() == 1

    def test_set_batch_size_clamps(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(max_batch_size=32))
        assert adjuster.set_batch_size(100) == 32
        assert adjuster.set_batch_size(0) == 1

    def test_memory_estimate(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=4, available_memory=2 * BASE_MEMORY_BYTES))
        assert adjuster.estimate_memory_usage(0) == pytest.approx(0.5)
        assert adjuster.estimate_memory_usage() > 0.5

    def test_reset(self):
        adjuster = BatchSizeAdjuster(BatchSizeConfig(initial_batch_size=6))
        adjuster.record_failure()
        adjuster.reset()
        assert adjuster.batch_size == 6
        assert adjuster.stats()['adjustments'] == 0
