"""
Tests for the batch kernels, checked against the host game core.
"""

import jax
import numpy as np
import pytest
from numpy.random import default_rng

from ntuple.game.kernels import JaxKernels, SoftwareKernels
from ntuple.neural.network import NTupleNetwork
from ntuple.neural.patterns import HORIZONTAL_4TUPLE_PATTERNS, VERTICAL_4TUPLE_PATTERNS
from twentyfortyeight.core.gameboard import board_to_lane, boards_to_lanes, is_game_over, matrix_to_board
from twentyfortyeight.core.gamemove import DIRECTIONS, move_board


def random_boards(rng, count: int, high: int = 12, fill: float = 0.6) -> list[int]:
    """Packed boards with roughly ``fill`` occupied cells."""
    lanes = rng.integers(1, high, size=(count, 16))
    lanes[rng.random((count, 16)) > fill] = 0
    return [matrix_to_board(np.where(lane > 0, 1 << lane, 0).reshape(4, 4)) for lane in lanes]


@pytest.fixture(params=['numpy', 'jax'])
def kernels(request):
    if request.param == 'numpy':
        return SoftwareKernels()
    return JaxKernels(jax.devices('cpu')[0])


@pytest.fixture
def boards():
    return random_boards(default_rng(42), 64)


class TestMove:
    """Tests for the batch move kernel."""

    @pytest.mark.parametrize('direction', DIRECTIONS)
    def test_matches_host_moves(self, kernels, boards, direction):
        """Every lane agrees with the packed-board move."""
        afterstates, rewards, valid = kernels.move(
            boards_to_lanes(boards), np.full(len(boards), direction, dtype=np.int32)
        )
        for lane, board in enumerate(boards):
            expected, score, moved = move_board(board, direction)
            np.testing.assert_array_equal(afterstates[lane], board_to_lane(expected))
            assert rewards[lane] == score
            assert bool(valid[lane]) == moved

    def test_mixed_directions(self, kernels, boards):
        """Each lane follows its own direction."""
        directions = np.arange(len(boards), dtype=np.int32) % 4
        afterstates, rewards, _ = kernels.move(boards_to_lanes(boards), directions)
        for lane, (board, direction) in enumerate(zip(boards, directions)):
            expected, score, _ = move_board(board, int(direction))
            np.testing.assert_array_equal(afterstates[lane], board_to_lane(expected))
            assert rewards[lane] == score

    def test_outputs_are_writable(self, kernels, boards):
        """Results are plain host arrays that callers may edit."""
        afterstates, _, valid = kernels.move(boards_to_lanes(boards[:2]), np.zeros(2, dtype=np.int32))
        afterstates[0, 0] = 1.0
        valid[0] = False


class TestGameOver:
    """Tests for the terminal kernel."""

    def test_matches_host(self, kernels):
        """Dense boards agree with the host terminal test."""
        boards = random_boards(default_rng(7), 128, fill=1.0)
        flags = kernels.game_over(boards_to_lanes(boards))
        assert [bool(flag) for flag in flags] == [is_game_over(board) for board in boards]
        assert flags.any()

    def test_max_exponent_pair_is_terminal(self, kernels):
        """Two adjacent 32768 tiles cannot merge."""
        board = matrix_to_board([[32768, 32768, 2, 4], [4, 8, 4, 2], [2, 4, 2, 4], [4, 2, 4, 2]])
        assert kernels.game_over(boards_to_lanes([board]))[0]

    def test_empty_cell_is_not_terminal(self, kernels):
        assert not kernels.game_over(np.zeros((1, 16), dtype=np.float32))[0]


class TestNetworkKernels:
    """Tests for the index and evaluation kernels."""

    @pytest.fixture
    def network(self):
        network = NTupleNetwork(HORIZONTAL_4TUPLE_PATTERNS + VERTICAL_4TUPLE_PATTERNS)
        network.set_flat(default_rng(1).normal(size=network.table.total_weights))
        return network

    def test_tuple_indices(self, kernels, network, boards):
        """Indices match the host symmetry table."""
        lanes = boards_to_lanes(boards)
        table = network.table
        indices = kernels.tuple_indices(lanes, table.positions, table.radix, table.path_offsets)
        np.testing.assert_array_equal(indices, table.tuple_indices(lanes))

    def test_evaluate(self, kernels, network, boards):
        """Values match the double-precision reference."""
        lanes = boards_to_lanes(boards)
        table = network.table
        weights = network.flat_weights.astype(np.float32)
        values = kernels.evaluate(lanes, weights, table.positions, table.radix, table.path_offsets)
        expected = [network.evaluate(board) for board in boards]
        np.testing.assert_allclose(values, expected, rtol=1e-4, atol=1e-3)


class TestMemoryKernels:
    """Tests for transfers, scatter and max exponent."""

    def test_scatter(self, kernels):
        """Values land at their flat indices; padding repeats the first write."""
        data = kernels.to_device(np.zeros(8, dtype=np.float32))
        data = kernels.scatter(data, np.array([1, 5, 6]), np.array([2.0, 3.0, 4.0], dtype=np.float32))
        np.testing.assert_array_equal(kernels.to_host(data), [0, 2, 0, 0, 0, 3, 4, 0])

    def test_empty_scatter(self, kernels):
        data = kernels.to_device(np.ones(4, dtype=np.float32))
        data = kernels.scatter(data, np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float32))
        np.testing.assert_array_equal(kernels.to_host(data), np.ones(4))

    def test_max_exponent(self, kernels):
        lanes = np.zeros((2, 16), dtype=np.float32)
        lanes[0, 3] = 11
        np.testing.assert_array_equal(kernels.max_exponent(lanes), [11, 0])
