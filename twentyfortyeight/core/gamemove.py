"""
Move resolution for the 2048 game, based on precomputed row lookup tables.

Every 4-cell row is packed into a 16-bit integer (the first cell in the high nibble). The slide-left
outcome of all 65,536 possible rows is computed once; the three other directions reduce to the same
table by reading the cells of each line in a different order.
"""

import numpy as np
from numba import njit
from numpy import ndarray

# ##>: Directions, enumerated in tie-break order.
UP, RIGHT, DOWN, LEFT = 0, 1, 2, 3
DIRECTIONS = (UP, RIGHT, DOWN, LEFT)
DIRECTION_NAMES = ('up', 'right', 'down', 'left')

ROW_COUNT = 1 << 16
MAX_EXPONENT = 15


@njit
def _build_left_table() -> tuple[ndarray, ndarray]:
    """
    Compute the slide-left result of every packed row.

    Returns
    -------
    rows : ndarray
        uint16 array of shape (65536,), the packed row after the move.
    scores : ndarray
        uint32 array of shape (65536,), the score earned by the move.

    Notes
    -----
    - A merged cell cannot merge again in the same pass.
    - Two tiles at the maximum exponent never merge, the 4-bit field cannot hold the result.
    """
    rows = np.zeros(ROW_COUNT, dtype=np.uint16)
    scores = np.zeros(ROW_COUNT, dtype=np.uint32)
    tiles = np.zeros(4, dtype=np.int64)
    merged = np.zeros(4, dtype=np.int64)

    for row in range(ROW_COUNT):
        # ##: Strip the empty cells.
        count = 0
        for k in range(4):
            exponent = (row >> (12 - 4 * k)) & 0xF
            if exponent != 0:
                tiles[count] = exponent
                count += 1

        # ##: Merge equal neighbours from left to right.
        score = 0
        size = 0
        i = 0
        while i < count:
            if i + 1 < count and tiles[i] == tiles[i + 1] and tiles[i] < MAX_EXPONENT:
                exponent = tiles[i] + 1
                merged[size] = exponent
                score += 1 << exponent
                i += 2
            else:
                merged[size] = tiles[i]
                i += 1
            size += 1

        # ##: Pack back, zeros padded on the right.
        packed = 0
        for k in range(size):
            packed |= merged[k] << (12 - 4 * k)
        rows[row] = packed
        scores[row] = score

    return rows, scores


def reverse_row(row: int) -> int:
    """Mirror the four nibbles of a packed row."""
    return ((row & 0xF) << 12) | (((row >> 4) & 0xF) << 8) | (((row >> 8) & 0xF) << 4) | ((row >> 12) & 0xF)


def _build_right_table(left_rows: ndarray, left_scores: ndarray) -> tuple[ndarray, ndarray]:
    """Derive the slide-right table from the slide-left one through row reversal."""
    packed = np.arange(ROW_COUNT, dtype=np.int64)
    reversed_rows = (
        ((packed & 0xF) << 12) | (((packed >> 4) & 0xF) << 8) | (((packed >> 8) & 0xF) << 4) | ((packed >> 12) & 0xF)
    )
    moved = left_rows[reversed_rows].astype(np.int64)
    right_rows = ((moved & 0xF) << 12) | (((moved >> 4) & 0xF) << 8) | (((moved >> 8) & 0xF) << 4) | ((moved >> 12) & 0xF)
    return right_rows.astype(np.uint16), left_scores[reversed_rows].copy()


# ##>: Lookup tables, built once at import.
LEFT_ROWS, LEFT_SCORES = _build_left_table()
RIGHT_ROWS, RIGHT_SCORES = _build_right_table(LEFT_ROWS, LEFT_SCORES)
for _table in (LEFT_ROWS, LEFT_SCORES, RIGHT_ROWS, RIGHT_SCORES):
    _table.setflags(write=False)


def _line_indices() -> ndarray:
    """
    Cell positions of every line, ordered so that tiles slide toward the first cell.

    Returns
    -------
    ndarray
        int32 array of shape (4, 4, 4): direction, line, cell.
    """
    grid = np.arange(16, dtype=np.int32).reshape(4, 4)
    lines = np.zeros((4, 4, 4), dtype=np.int32)
    lines[UP] = grid.T
    lines[RIGHT] = grid[:, ::-1]
    lines[DOWN] = grid.T[:, ::-1]
    lines[LEFT] = grid
    return lines


# ##>: Up/down/right are resolved by index arithmetic on top of the slide-left table.
LINE_INDICES = _line_indices()
LINE_INVERSE = np.stack([np.argsort(LINE_INDICES[d].ravel()) for d in DIRECTIONS]).astype(np.int32)
LINE_INDICES.setflags(write=False)
LINE_INVERSE.setflags(write=False)


def resolve_row(row: int) -> tuple[int, int]:
    """
    Slide a packed row to the left.

    Parameters
    ----------
    row : int
        Packed row in [0, 65535].

    Returns
    -------
    tuple[int, int]
        The packed row after the move and the score earned.
    """
    return int(LEFT_ROWS[row]), int(LEFT_SCORES[row])


def resolve_row_right(row: int) -> tuple[int, int]:
    """Slide a packed row to the right."""
    return int(RIGHT_ROWS[row]), int(RIGHT_SCORES[row])


def extract_row(board: int, index: int) -> int:
    """Read the packed row ``index`` (0 = top) from a board."""
    return (board >> ((3 - index) * 16)) & 0xFFFF


def set_row(board: int, index: int, row: int) -> int:
    """Write a packed row into a board."""
    shift = (3 - index) * 16
    return (board & ~(0xFFFF << shift)) | (row << shift)


def transpose(board: int) -> int:
    """Swap rows and columns of a board."""
    result = 0
    for position in range(16):
        row, col = divmod(position, 4)
        exponent = (board >> ((15 - position) * 4)) & 0xF
        result |= exponent << ((15 - (col * 4 + row)) * 4)
    return result


def _move_rows(board: int, rows: ndarray, scores: ndarray) -> tuple[int, int, bool]:
    result, score, moved = 0, 0, False
    for index in range(4):
        row = extract_row(board, index)
        new_row = int(rows[row])
        result = set_row(result, index, new_row)
        score += int(scores[row])
        moved |= new_row != row
    return result, score, moved


def move_board(board: int, direction: int) -> tuple[int, int, bool]:
    """
    Apply a move to a packed board.

    Parameters
    ----------
    board : int
        The packed 64-bit board.
    direction : int
        Direction to move (0: up, 1: right, 2: down, 3: left).

    Returns
    -------
    tuple[int, int, bool]
        The board after the move, the score earned and whether anything changed.

    Raises
    ------
    ValueError
        If the direction is unknown.
    """
    if direction == LEFT:
        return _move_rows(board, LEFT_ROWS, LEFT_SCORES)
    if direction == RIGHT:
        return _move_rows(board, RIGHT_ROWS, RIGHT_SCORES)
    if direction == UP:
        moved_board, score, moved = _move_rows(transpose(board), LEFT_ROWS, LEFT_SCORES)
        return transpose(moved_board), score, moved
    if direction == DOWN:
        moved_board, score, moved = _move_rows(transpose(board), RIGHT_ROWS, RIGHT_SCORES)
        return transpose(moved_board), score, moved
    raise ValueError(f'Unknown direction: {direction}')


def legal_actions(board: int) -> list[int]:
    """
    Directions that change the board.

    Parameters
    ----------
    board : int
        The packed board.

    Returns
    -------
    list[int]
        Legal directions in enumeration order.
    """
    return [direction for direction in DIRECTIONS if move_board(board, direction)[2]]
