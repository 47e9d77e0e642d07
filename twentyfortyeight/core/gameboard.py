"""
Board codec and host-side game logic for the packed 2048 board.

A board is a 64-bit integer holding sixteen 4-bit exponents; position 0 (top-left) lives in the
highest nibble. The batch layer uses a flat float layout instead (one row of 16 floats per lane),
and the UI speaks in actual tile values; this module converts between the three.
"""

import numpy as np
from numpy import ndarray
from numpy.random import PCG64DXSM, Generator, default_rng

from twentyfortyeight.core.gamemove import DIRECTIONS, MAX_EXPONENT, move_board

# ##>: Tile spawn probabilities (90% for 2, 10% for 4), expressed as exponents.
SPAWN_EXPONENTS = (1, 2)
SPAWN_PROBS = (0.9, 0.1)

BOARD_CELLS = 16
CELL_MASK = 0xF

# ##>: Module-level generator for performance (avoids repeated initialization).
_GENERATOR = default_rng(PCG64DXSM())


def get_tile(board: int, position: int) -> int:
    """Exponent stored at ``position`` (0..15, row-major)."""
    return (board >> ((15 - position) * 4)) & CELL_MASK


def set_tile(board: int, position: int, exponent: int) -> int:
    """Return a copy of ``board`` with ``exponent`` written at ``position``."""
    assert 0 <= exponent <= CELL_MASK, f'exponent out of range: {exponent}'
    shift = (15 - position) * 4
    return (board & ~(CELL_MASK << shift)) | (exponent << shift)


def board_to_lane(board: int, out: ndarray | None = None) -> ndarray:
    """
    Unpack a board into its lane layout.

    Parameters
    ----------
    board : int
        The packed board.
    out : ndarray, optional
        A float32 array of 16 cells to write into.

    Returns
    -------
    ndarray
        float32 array of shape (16,) holding the exponents row-major.
    """
    lane = np.empty(BOARD_CELLS, dtype=np.float32) if out is None else out
    for position in range(BOARD_CELLS):
        lane[position] = get_tile(board, position)
    return lane


def lane_to_board(lane: ndarray) -> int:
    """
    Pack a lane back into a board.

    Parameters
    ----------
    lane : ndarray
        16 exponents, row-major, stored as floats.

    Returns
    -------
    int
        The packed board.
    """
    board = 0
    for value in lane:
        exponent = int(value)
        assert 0 <= exponent <= CELL_MASK, f'exponent out of range: {exponent}'
        board = (board << 4) | exponent
    return board


def boards_to_lanes(boards: list[int]) -> ndarray:
    """Unpack several boards into a float32 array of shape (len(boards), 16)."""
    lanes = np.zeros((len(boards), BOARD_CELLS), dtype=np.float32)
    for index, board in enumerate(boards):
        board_to_lane(board, out=lanes[index])
    return lanes


def matrix_to_board(matrix: list[list[int]] | ndarray) -> int:
    """
    Pack a 4x4 matrix of tile values (0, 2, 4, 8, ...) into a board.

    Raises
    ------
    ValueError
        If a value is not zero or a power of two that fits a 4-bit exponent.
    """
    board = 0
    for row in matrix:
        for value in row:
            value = int(value)
            exponent = value.bit_length() - 1 if value else 0
            if value and (value != 1 << exponent or not 1 <= exponent <= CELL_MASK):
                raise ValueError(f'Invalid tile value: {value}')
            board = (board << 4) | exponent
    return board


def board_to_matrix(board: int) -> list[list[int]]:
    """Unpack a board into a 4x4 matrix of tile values."""
    matrix = []
    for row in range(4):
        values = []
        for col in range(4):
            exponent = get_tile(board, row * 4 + col)
            values.append(1 << exponent if exponent else 0)
        matrix.append(values)
    return matrix


def count_empty(board: int) -> int:
    """Number of empty cells."""
    return sum(1 for position in range(BOARD_CELLS) if get_tile(board, position) == 0)


def empty_positions(board: int) -> list[int]:
    """Positions of empty cells, in row-major order."""
    return [position for position in range(BOARD_CELLS) if get_tile(board, position) == 0]


def max_tile(board: int) -> int:
    """Largest tile value on the board (0 for an empty board)."""
    exponent = max(get_tile(board, position) for position in range(BOARD_CELLS))
    return 1 << exponent if exponent else 0


def add_random_tile(board: int, rng: Generator | None = None) -> int:
    """
    Spawn a tile on a uniformly chosen empty cell.

    Parameters
    ----------
    board : int
        The packed board.
    rng : Generator, optional
        Random generator; the module-level one is used when omitted.

    Returns
    -------
    int
        The board with a new 2 (probability 0.9) or 4; unchanged if the board is full.
    """
    rng = rng or _GENERATOR
    positions = empty_positions(board)
    if not positions:
        return board
    position = positions[int(rng.integers(len(positions)))]
    exponent = SPAWN_EXPONENTS[0] if rng.random() < SPAWN_PROBS[0] else SPAWN_EXPONENTS[1]
    return set_tile(board, position, exponent)


def new_game(rng: Generator | None = None) -> int:
    """A fresh board holding two spawned tiles."""
    return add_random_tile(add_random_tile(0, rng), rng)


def is_game_over(board: int) -> bool:
    """
    Check if the game has ended.

    Notes
    -----
    The game is over when there are no empty cells AND no horizontally or vertically adjacent
    cells hold the same exponent. Two tiles at the maximum exponent cannot merge.
    """
    for position in range(BOARD_CELLS):
        tile = get_tile(board, position)
        if tile == 0:
            return False
        if tile == MAX_EXPONENT:
            continue
        row, col = divmod(position, 4)
        if col < 3 and get_tile(board, position + 1) == tile:
            return False
        if row < 3 and get_tile(board, position + 4) == tile:
            return False
    return True


def after_states(board: int) -> list[tuple[int, int, int]]:
    """
    All afterstates reachable from a board.

    Returns
    -------
    list[tuple[int, int, int]]
        ``(direction, afterstate, reward)`` for every direction that changes the board.
    """
    result = []
    for direction in DIRECTIONS:
        after, reward, moved = move_board(board, direction)
        if moved:
            result.append((direction, after, reward))
    return result


def format_board(board: int) -> str:
    """Render a board as a boxed text grid."""
    lines = ['┌──────┬──────┬──────┬──────┐']
    for index, row in enumerate(board_to_matrix(board)):
        cells = ['    ' if value == 0 else str(value).rjust(4) for value in row]
        lines.append(f'│ {" │ ".join(cells)} │')
        if index < 3:
            lines.append('├──────┼──────┼──────┼──────┤')
    lines.append('└──────┴──────┴──────┴──────┘')
    return '\n'.join(lines)
