"""
Tests for the host N-Tuple network.
"""

import numpy as np
import pytest
from numpy.random import default_rng

from ntuple.exceptions import WeightFormatError
from ntuple.neural.network import NTupleNetwork, calculate_learning_rate
from ntuple.neural.patterns import HORIZONTAL_4TUPLE_PATTERNS, VERTICAL_4TUPLE_PATTERNS
from twentyfortyeight.core.gameboard import board_to_lane, boards_to_lanes, matrix_to_board, new_game

# ##>: Ten 4-cell patterns: rows, columns and two squares.
TEN_PATTERNS = HORIZONTAL_4TUPLE_PATTERNS + VERTICAL_4TUPLE_PATTERNS + ((0, 1, 4, 5), (10, 11, 14, 15))


@pytest.fixture
def network():
    """Create a small network for testing."""
    return NTupleNetwork(HORIZONTAL_4TUPLE_PATTERNS)


@pytest.fixture
def boards():
    rng = default_rng(11)
    return [new_game(rng) for _ in range(8)] + [matrix_to_board([[2, 4, 8, 16], [0] * 4, [0] * 4, [0] * 4])]


class TestEvaluate:
    """Tests for board evaluation."""

    def test_zero_network(self, network, boards):
        """A fresh network values every board at zero."""
        assert all(network.evaluate(board) == 0.0 for board in boards)

    def test_optimistic_scenario(self):
        """Ten patterns times eight symmetries at 100 each sum to 8000."""
        network = NTupleNetwork(TEN_PATTERNS)
        network.init_optimistic(100.0)
        board = matrix_to_board([[2, 4, 8, 16], [0, 0, 0, 0], [0, 0, 0, 0], [0, 0, 0, 0]])
        assert network.evaluate(board) == 8000.0

    def test_update_weights(self):
        """An update adds delta once per path touching the board."""
        network = NTupleNetwork([(0, 1, 2, 3)])
        # ##: Every cell holds a distinct exponent, so the 8 paths hit 8 distinct weights.
        board = matrix_to_board([[1 << (4 * row + col) if 4 * row + col else 0 for col in range(4)] for row in range(4)])
        network.update_weights(board, 0.5)
        assert network.evaluate(board) == 4.0
        assert network.weight_stats()['non_zero_count'] == 8

    def test_lane_paths_agree(self, network, boards):
        """Packed, single-lane and batched evaluation agree."""
        rng = default_rng(3)
        network.set_flat(rng.normal(size=network.table.total_weights))
        lanes = boards_to_lanes(boards)
        batched = network.evaluate_lanes(lanes)
        for board, value in zip(boards, batched):
            assert network.evaluate(board) == pytest.approx(value)
            assert network.evaluate_lane(board_to_lane(board)) == pytest.approx(value)

    def test_empty_batch(self, network):
        assert network.evaluate_lanes(np.zeros((0, 16), dtype=np.float32)).shape == (0,)


class TestWeights:
    """Tests for weight management."""

    def test_flat_weights_read_only(self, network):
        """The flat view cannot be written."""
        with pytest.raises(ValueError):
            network.flat_weights[0] = 1.0

    def test_clamp_weights(self, network):
        """Out-of-range values are clamped and NaN reset to zero."""
        values = np.zeros(network.table.total_weights)
        values[:3] = [np.nan, 1e9, -1e9]
        network.set_flat(values)
        assert network.clamp_weights(-10.0, 10.0) == 3
        assert network.flat_weights[:3].tolist() == [0.0, 10.0, -10.0]

    def test_weight_stats(self, network):
        network.set_flat(np.array([2.0, -1.0]), np.array([0, 1]))
        stats = network.weight_stats()
        assert stats['min'] == -1.0
        assert stats['max'] == 2.0
        assert stats['non_zero_count'] == 2

    def test_set_flat_wrong_size(self, network):
        with pytest.raises(WeightFormatError):
            network.set_flat(np.zeros(10))


class TestExportLoad:
    """Tests for the weight record format."""

    def test_round_trip(self, network, boards):
        """Exported weights reproduce every evaluation in a fresh network."""
        network.set_flat(default_rng(5).normal(size=network.table.total_weights))
        record = network.export_weights({'trained_games': 10})
        assert record['version'] == 1
        assert record['metadata'] == {'trained_games': 10}

        restored = NTupleNetwork.from_record(record)
        for board in boards:
            assert restored.evaluate(board) == network.evaluate(board)

    def test_pattern_count_mismatch(self, network):
        """Records with another pattern count are rejected and nothing changes."""
        other = NTupleNetwork(HORIZONTAL_4TUPLE_PATTERNS[:2]).export_weights()
        with pytest.raises(WeightFormatError, match='Pattern count'):
            network.load_weights(other)

    def test_pattern_size_mismatch(self, network):
        record = network.export_weights()
        record['patterns'][0] = [0, 1, 2]
        with pytest.raises(WeightFormatError, match='size'):
            network.load_weights(record)

    def test_pattern_position_mismatch(self, network):
        """Same shapes on other cells, such as columns instead of rows, are rejected."""
        other = NTupleNetwork(VERTICAL_4TUPLE_PATTERNS).export_weights()
        with pytest.raises(WeightFormatError, match='position'):
            network.load_weights(other)

    def test_table_length_mismatch(self, network):
        record = network.export_weights()
        record['weights'][1] = record['weights'][1][:-1]
        with pytest.raises(WeightFormatError):
            network.load_weights(record)

    def test_version_mismatch(self, network):
        record = network.export_weights()
        record['version'] = 2
        with pytest.raises(WeightFormatError, match='version'):
            network.load_weights(record)


class TestLearningRate:
    """Tests for the step decay schedule."""

    def test_no_decay_interval(self):
        assert calculate_learning_rate(0.1, 0.5, 0, 10_000) == 0.1

    def test_step_decay(self):
        """The rate drops by decay_rate at every full interval."""
        assert calculate_learning_rate(0.1, 0.5, 100, 99) == 0.1
        assert calculate_learning_rate(0.1, 0.5, 100, 100) == pytest.approx(0.05)
        assert calculate_learning_rate(0.1, 0.5, 100, 250) == pytest.approx(0.025)
