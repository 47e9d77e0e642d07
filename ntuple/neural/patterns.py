"""
N-Tuple pattern catalogue and symmetry index tables.

A pattern is an ordered list of board positions (0..15, row-major). Its joint tile exponents,
read through each of the 8 board symmetries, index one weight table of size ``16 ** len(pattern)``.
"""

from collections.abc import Sequence

import numpy as np
from numpy import ndarray

from ntuple.exceptions import PatternShapeError

Pattern = tuple[int, ...]

SYMMETRY_COUNT = 8
TILE_STATES = 16

# ##>: Default network: ten overlapping 6-cell rectangles.
STANDARD_6TUPLE_PATTERNS: tuple[Pattern, ...] = (
    (0, 1, 2, 4, 5, 6),
    (4, 5, 6, 8, 9, 10),
    (1, 2, 3, 5, 6, 7),
    (5, 6, 7, 9, 10, 11),
    (8, 9, 10, 12, 13, 14),
    (9, 10, 11, 13, 14, 15),
    (0, 1, 4, 5, 8, 9),
    (2, 3, 6, 7, 10, 11),
    (4, 5, 8, 9, 12, 13),
    (6, 7, 10, 11, 14, 15),
)

HORIZONTAL_4TUPLE_PATTERNS: tuple[Pattern, ...] = (
    (0, 1, 2, 3),
    (4, 5, 6, 7),
    (8, 9, 10, 11),
    (12, 13, 14, 15),
)

VERTICAL_4TUPLE_PATTERNS: tuple[Pattern, ...] = (
    (0, 4, 8, 12),
    (1, 5, 9, 13),
    (2, 6, 10, 14),
    (3, 7, 11, 15),
)

RECTANGLE_6TUPLE_PATTERNS: tuple[Pattern, ...] = (
    (0, 1, 2, 4, 5, 6),
    (1, 2, 3, 5, 6, 7),
    (4, 5, 6, 8, 9, 10),
    (5, 6, 7, 9, 10, 11),
)

CORNER_6TUPLE_PATTERNS: tuple[Pattern, ...] = (
    (0, 1, 2, 3, 4, 5),
    (0, 1, 4, 5, 8, 9),
    (0, 1, 2, 4, 5, 8),
)

ROW_COL_4TUPLE_PATTERNS: tuple[Pattern, ...] = HORIZONTAL_4TUPLE_PATTERNS + VERTICAL_4TUPLE_PATTERNS


def calculate_lut_size(pattern: Sequence[int]) -> int:
    """Number of weights indexed by ``pattern``."""
    return TILE_STATES ** len(pattern)


def pattern_weight_count(patterns: Sequence[Sequence[int]]) -> int:
    """Total number of weights across ``patterns``."""
    return sum(calculate_lut_size(pattern) for pattern in patterns)


def validate_patterns(patterns: Sequence[Sequence[int]]) -> tuple[Pattern, ...]:
    """
    Check and normalise a pattern list.

    Parameters
    ----------
    patterns : Sequence[Sequence[int]]
        Candidate patterns.

    Returns
    -------
    tuple[Pattern, ...]
        The patterns as tuples.

    Raises
    ------
    PatternShapeError
        If the list is empty, a pattern is empty or too long, holds a position outside 0..15,
        or repeats a position.
    """
    if not patterns:
        raise PatternShapeError('At least one pattern is required')

    result = []
    for index, pattern in enumerate(patterns):
        pattern = tuple(int(position) for position in pattern)
        if not 1 <= len(pattern) <= 8:
            raise PatternShapeError(f'Pattern {index} must hold 1 to 8 positions, got {len(pattern)}')
        if any(not 0 <= position < 16 for position in pattern):
            raise PatternShapeError(f'Pattern {index} has a position outside 0..15: {pattern}')
        if len(set(pattern)) != len(pattern):
            raise PatternShapeError(f'Pattern {index} repeats a position: {pattern}')
        result.append(pattern)
    return tuple(result)


def _transform(position: int, symmetry: int) -> int:
    """
    Map a position through one of the 8 board symmetries.

    Order: identity, rot90, rot180, rot270, mirror, then rot90/rot180/rot270 of the mirror.
    """
    row, col = divmod(position, 4)
    if symmetry >= 4:
        col = 3 - col
    for _ in range(symmetry % 4):
        row, col = col, 3 - row
    return row * 4 + col


def symmetric_patterns(pattern: Sequence[int]) -> list[Pattern]:
    """
    The 8 symmetry-transformed position sequences of ``pattern``.

    Returns
    -------
    list[Pattern]
        One position tuple per symmetry, in the order identity, rot90, rot180, rot270, mirror,
        mirror+rot90, mirror+rot180, mirror+rot270.
    """
    return [tuple(_transform(position, symmetry) for position in pattern) for symmetry in range(SYMMETRY_COUNT)]


class SymmetryIndexTable:
    """
    Flattened symmetry paths for a pattern list, shared by every evaluator.

    Attributes
    ----------
    patterns : tuple[Pattern, ...]
        The source patterns.
    offsets : ndarray
        int64 start of each pattern's weights in the flat weight vector, shape (P,).
    positions : ndarray
        int32 positions of every (pattern, symmetry) path, padded to the longest pattern,
        shape (P * 8, L).
    radix : ndarray
        int32 base-16 place value of each path cell (0 on padding), shape (P * 8, L).
    path_offsets : ndarray
        int32 flat offset of the pattern each path belongs to, shape (P * 8,).
    """

    def __init__(self, patterns: Sequence[Sequence[int]]):
        self.patterns = validate_patterns(patterns)
        self.sizes = np.array([len(pattern) for pattern in self.patterns], dtype=np.int32)
        self.lut_sizes = np.array([calculate_lut_size(pattern) for pattern in self.patterns], dtype=np.int64)
        self.offsets = np.concatenate(([0], np.cumsum(self.lut_sizes)[:-1])).astype(np.int64)
        self.total_weights = int(self.lut_sizes.sum())

        width = int(self.sizes.max())
        path_count = len(self.patterns) * SYMMETRY_COUNT
        self.positions = np.zeros((path_count, width), dtype=np.int32)
        self.radix = np.zeros((path_count, width), dtype=np.int32)
        self.path_offsets = np.zeros(path_count, dtype=np.int32)

        for p, pattern in enumerate(self.patterns):
            size = len(pattern)
            place = TILE_STATES ** np.arange(size - 1, -1, -1)
            for s, path in enumerate(symmetric_patterns(pattern)):
                row = p * SYMMETRY_COUNT + s
                self.positions[row, :size] = path
                self.radix[row, :size] = place
                self.path_offsets[row] = self.offsets[p]

        for table in (self.positions, self.radix, self.path_offsets):
            table.setflags(write=False)

    @property
    def path_count(self) -> int:
        return len(self.path_offsets)

    def tuple_indices(self, lanes: ndarray) -> ndarray:
        """
        Flat weight indices touched by each lane.

        Parameters
        ----------
        lanes : ndarray
            Exponents of shape (B, 16).

        Returns
        -------
        ndarray
            int64 array of shape (B, P * 8).
        """
        exponents = np.asarray(lanes).astype(np.int64)
        gathered = exponents[:, self.positions]
        return (gathered * self.radix).sum(axis=2) + self.path_offsets
