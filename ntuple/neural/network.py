"""
Host N-Tuple network: double-precision weight tables evaluated one board at a time.

This is the reference implementation of the value function. The device mirror in
``ntuple.neural.device_network`` must agree with it within floating tolerance.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Any

import numpy as np
from numba import njit
from numpy import ndarray

from ntuple.exceptions import WeightFormatError
from ntuple.neural.patterns import STANDARD_6TUPLE_PATTERNS, SymmetryIndexTable, calculate_lut_size

logger = logging.getLogger(__name__)

WEIGHTS_VERSION = 1


@njit
def _evaluate_exponents(
    exponents: ndarray, positions: ndarray, radix: ndarray, path_offsets: ndarray, weights: ndarray
) -> float:
    total = 0.0
    for path in range(positions.shape[0]):
        index = path_offsets[path]
        for k in range(positions.shape[1]):
            index += exponents[positions[path, k]] * radix[path, k]
        total += weights[index]
    return total


@njit
def _scatter_delta(
    exponents: ndarray, positions: ndarray, radix: ndarray, path_offsets: ndarray, weights: ndarray, delta: float
) -> None:
    for path in range(positions.shape[0]):
        index = path_offsets[path]
        for k in range(positions.shape[1]):
            index += exponents[positions[path, k]] * radix[path, k]
        weights[index] += delta


def _unpack(board: int) -> ndarray:
    exponents = np.empty(16, dtype=np.int64)
    for position in range(16):
        exponents[position] = (board >> ((15 - position) * 4)) & 0xF
    return exponents


def calculate_learning_rate(initial: float, decay_rate: float, decay_interval: int, episode: int) -> float:
    """
    Step-decayed learning rate.

    Parameters
    ----------
    initial : float
        Learning rate at episode 0.
    decay_rate : float
        Multiplicative decay applied every ``decay_interval`` episodes.
    decay_interval : int
        Episodes between two decays; a non-positive interval disables decay.
    episode : int
        Completed episodes.

    Returns
    -------
    float
        ``initial * decay_rate ** floor(episode / decay_interval)``.
    """
    if decay_interval <= 0:
        return initial
    return initial * decay_rate ** math.floor(episode / decay_interval)


class NTupleNetwork:
    """
    N-Tuple value function with one double-precision weight table per pattern.

    The tables are views into a single flat vector so that the numba kernels can index them
    through the symmetry table offsets.

    Attributes
    ----------
    patterns : tuple[Pattern, ...]
        Pattern definitions.
    table : SymmetryIndexTable
        Precomputed symmetry paths.
    weights : list[ndarray]
        One float64 table per pattern, sized ``16 ** len(pattern)``.
    """

    def __init__(self, patterns: Sequence[Sequence[int]] = STANDARD_6TUPLE_PATTERNS):
        self.table = SymmetryIndexTable(patterns)
        self.patterns = self.table.patterns
        self._flat = np.zeros(self.table.total_weights, dtype=np.float64)
        self.weights = [
            self._flat[offset : offset + size] for offset, size in zip(self.table.offsets, self.table.lut_sizes)
        ]
        # ##>: int64 copies for the numba kernels.
        self._positions = self.table.positions.astype(np.int64)
        self._radix = self.table.radix.astype(np.int64)
        self._path_offsets = self.table.path_offsets.astype(np.int64)

    @property
    def flat_weights(self) -> ndarray:
        """All weights as one contiguous float64 vector (read-only view)."""
        view = self._flat.view()
        view.setflags(write=False)
        return view

    def evaluate(self, board: int) -> float:
        """
        Value of a packed board.

        Sums, for every pattern and each of its 8 symmetric paths, the weight indexed by the
        exponents read along the path.
        """
        return float(_evaluate_exponents(_unpack(board), self._positions, self._radix, self._path_offsets, self._flat))

    def evaluate_lane(self, lane: ndarray) -> float:
        """Value of a board given in lane layout."""
        exponents = np.asarray(lane).astype(np.int64)
        return float(_evaluate_exponents(exponents, self._positions, self._radix, self._path_offsets, self._flat))

    def evaluate_lanes(self, lanes: ndarray) -> ndarray:
        """
        Vectorised values of many boards.

        Parameters
        ----------
        lanes : ndarray
            Exponents of shape (B, 16).

        Returns
        -------
        ndarray
            float64 values of shape (B,).
        """
        lanes = np.asarray(lanes)
        if lanes.shape[0] == 0:
            return np.zeros(0, dtype=np.float64)
        return self._flat[self.table.tuple_indices(lanes)].sum(axis=1)

    def update_weights(self, board: int, delta: float) -> None:
        """Add ``delta`` to every weight touched by ``board`` (once per path)."""
        _scatter_delta(_unpack(board), self._positions, self._radix, self._path_offsets, self._flat, float(delta))

    def init_optimistic(self, value: float) -> None:
        """Set every weight to ``value``."""
        self._flat.fill(value)

    def set_flat(self, values: ndarray, indices: ndarray | None = None) -> None:
        """
        Overwrite weights from a flat vector.

        Parameters
        ----------
        values : ndarray
            New values; the full vector when ``indices`` is None.
        indices : ndarray, optional
            Flat positions to overwrite.
        """
        if indices is None:
            if values.shape != self._flat.shape:
                raise WeightFormatError(f'Expected {self._flat.size} weights, got {values.size}')
            self._flat[:] = values
        else:
            self._flat[indices] = values

    def clamp_weights(self, low: float, high: float) -> int:
        """
        Clamp weights into ``[low, high]`` and reset NaN to zero.

        Returns
        -------
        int
            Number of weights that were changed.
        """
        bad = ~np.isfinite(self._flat) | (self._flat < low) | (self._flat > high)
        changed = int(bad.sum())
        if changed:
            np.nan_to_num(self._flat, copy=False, nan=0.0, posinf=high, neginf=low)
            np.clip(self._flat, low, high, out=self._flat)
        return changed

    def weight_stats(self) -> dict[str, float]:
        """Minimum, maximum, mean and count of non-zero weights."""
        return {
            'min': float(self._flat.min()),
            'max': float(self._flat.max()),
            'mean': float(self._flat.mean()),
            'non_zero_count': int(np.count_nonzero(self._flat)),
        }

    def export_weights(self, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Portable weight record.

        Parameters
        ----------
        metadata : dict, optional
            Training metadata stored alongside the weights.

        Returns
        -------
        dict
            ``{'version', 'patterns', 'weights', 'metadata'?}`` with plain Python lists.
        """
        record: dict[str, Any] = {
            'version': WEIGHTS_VERSION,
            'patterns': [list(pattern) for pattern in self.patterns],
            'weights': [table.tolist() for table in self.weights],
        }
        if metadata is not None:
            record['metadata'] = metadata
        return record

    def load_weights(self, record: dict[str, Any]) -> None:
        """
        Load a weight record produced by ``export_weights``.

        Raises
        ------
        WeightFormatError
            If the version, pattern count, pattern sizes, table count or table lengths do not
            match this network. Nothing is modified in that case.
        """
        check_weight_record(record, self.patterns)
        for table, values in zip(self.weights, record['weights']):
            table[:] = np.asarray(values, dtype=np.float64)
        logger.debug('Loaded %d weight tables', len(self.weights))

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> NTupleNetwork:
        """Build a network whose patterns come from the weight record itself."""
        if 'patterns' not in record:
            raise WeightFormatError('Weight record has no patterns')
        network = cls(record['patterns'])
        network.load_weights(record)
        return network


def check_weight_record(record: dict[str, Any], patterns: Sequence[Sequence[int]]) -> None:
    """
    Validate a weight record against a pattern list.

    Raises
    ------
    WeightFormatError
        On any version or shape mismatch.
    """
    if not isinstance(record, dict):
        raise WeightFormatError('Weight record must be a mapping')
    if record.get('version') != WEIGHTS_VERSION:
        raise WeightFormatError(f'Unsupported weights version: {record.get("version")}')

    stored_patterns = record.get('patterns')
    weights = record.get('weights')
    if not isinstance(stored_patterns, list) or not isinstance(weights, list):
        raise WeightFormatError('Weight record must hold "patterns" and "weights" lists')
    if len(stored_patterns) != len(patterns):
        raise WeightFormatError(f'Pattern count mismatch: expected {len(patterns)}, got {len(stored_patterns)}')

    for index, (expected, stored) in enumerate(zip(patterns, stored_patterns)):
        if len(stored) != len(expected):
            raise WeightFormatError(
                f'Pattern {index} size mismatch: expected {len(expected)}, got {len(stored)}'
            )
        if tuple(stored) != tuple(expected):
            raise WeightFormatError(
                f'Pattern {index} position mismatch: expected {list(expected)}, got {list(stored)}'
            )

    if len(weights) != len(patterns):
        raise WeightFormatError(f'Weight array count mismatch: expected {len(patterns)}, got {len(weights)}')

    for index, (pattern, table) in enumerate(zip(patterns, weights)):
        expected_size = calculate_lut_size(pattern)
        if len(table) != expected_size:
            raise WeightFormatError(
                f'Weight array {index} length mismatch: expected {expected_size}, got {len(table)}'
            )
