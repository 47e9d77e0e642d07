"""
Device mirror of the N-Tuple network with host-side gradient accumulation.

The device only ever computes tuple indices and values. Gradients are accumulated on the host,
sequentially, from the per-lane index arrays read back after each dispatch; no two execution
contexts ever add into the same gradient slot, so no atomic operations are needed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np
from numpy import ndarray

from ntuple.exceptions import NumericalOverflowError
from ntuple.game.kernels import EVALUATE, TUPLE_INDICES
from ntuple.neural.accelerator import DeviceEngine
from ntuple.neural.network import NTupleNetwork, calculate_learning_rate
from ntuple.neural.patterns import STANDARD_6TUPLE_PATTERNS

logger = logging.getLogger(__name__)

# ##>: Weights outside this range are treated as a numerical overflow and clamped back.
WEIGHT_LIMIT = 1e7

_WEIGHTS = 'weights'
_POSITIONS = 'positions'
_RADIX = 'radix'
_PATH_OFFSETS = 'path_offsets'


class DeviceNetwork:
    """
    float32 weight mirror living on the device engine, plus its gradient buffer.

    The host ``NTupleNetwork`` (``reference``) stays the owner of the double-precision weights;
    every gradient application updates the mirror, the device copy and the reference together.

    Attributes
    ----------
    engine : DeviceEngine
        Engine executing the kernels.
    reference : NTupleNetwork
        Host network kept in sync with the mirror.
    weights : ndarray
        float32 host copy of the device weights.
    gradients : ndarray
        float32 accumulated TD errors, same shape as ``weights``.
    accumulation_count : int
        Number of accumulation calls since the last application.
    batch_size : int
        Lanes per dispatch.
    """

    def __init__(
        self,
        engine: DeviceEngine,
        network: NTupleNetwork | None = None,
        patterns: Sequence[Sequence[int]] = STANDARD_6TUPLE_PATTERNS,
        batch_size: int | None = None,
    ):
        self.engine = engine
        self.reference = network if network is not None else NTupleNetwork(patterns)
        self.table = self.reference.table
        self.patterns = self.reference.patterns
        self.batch_size = batch_size or engine.lane_count
        self.weights = self.reference.flat_weights.astype(np.float32)
        self.gradients = np.zeros_like(self.weights)
        self.accumulation_count = 0
        self._touched: list[ndarray] = []
        self.upload()

    # ##>: Transfers.

    def upload(self) -> None:
        """Copy the mirror and the symmetry tables to the device."""
        self._handles = {
            _WEIGHTS: self.engine.allocate_buffer(_WEIGHTS, self.weights),
            _POSITIONS: self.engine.allocate_buffer(_POSITIONS, np.asarray(self.table.positions, dtype=np.int32)),
            _RADIX: self.engine.allocate_buffer(_RADIX, np.asarray(self.table.radix, dtype=np.int32)),
            _PATH_OFFSETS: self.engine.allocate_buffer(
                _PATH_OFFSETS, np.asarray(self.table.path_offsets, dtype=np.int32)
            ),
        }

    def sync_from_reference(self) -> None:
        """Rebuild the mirror from the host weights and re-upload it."""
        self.weights = self.reference.flat_weights.astype(np.float32)
        self.engine.write_buffer(_WEIGHTS, self.weights)

    def sync_to_reference(self) -> None:
        """Copy the mirror into the host weights."""
        self.reference.set_flat(self.weights.astype(np.float64))

    # ##>: Evaluation.

    def evaluate_batch(self, boards: ndarray) -> ndarray:
        """
        Values of a batch of lanes computed on the device.

        Parameters
        ----------
        boards : ndarray
            Exponents of shape (B, 16).

        Returns
        -------
        ndarray
            float32 values of shape (B,).
        """
        if len(boards) == 0:
            return np.zeros(0, dtype=np.float32)
        return self.engine.dispatch(
            EVALUATE,
            boards,
            self._handles[_WEIGHTS],
            self._handles[_POSITIONS],
            self._handles[_RADIX],
            self._handles[_PATH_OFFSETS],
        )

    def evaluate(self, board: int) -> float:
        """Host value of a packed board."""
        return self.reference.evaluate(board)

    def tuple_indices(self, boards: ndarray) -> ndarray:
        """Flat weight indices touched by each lane, int32 of shape (B, P * 8)."""
        return self.engine.dispatch(
            TUPLE_INDICES,
            boards,
            self._handles[_POSITIONS],
            self._handles[_RADIX],
            self._handles[_PATH_OFFSETS],
        )

    # ##>: Gradients.

    def accumulate_gradients(self, boards: ndarray, errors: ndarray) -> None:
        """
        Add each lane's TD error to every weight its board touches.

        An index reached by several symmetries of one board receives one addition per symmetry.

        Parameters
        ----------
        boards : ndarray
            Exponents of shape (B, 16).
        errors : ndarray
            TD errors of shape (B,).
        """
        if len(boards) == 0:
            return
        indices = self.tuple_indices(boards)
        contributions = np.repeat(np.asarray(errors, dtype=np.float32), indices.shape[1])
        # ##>: Unbuffered, sequential accumulation: duplicates are all counted.
        np.add.at(self.gradients, indices.ravel(), contributions)
        self._touched.append(np.unique(indices))
        self.accumulation_count += 1

    def apply_gradients(self, learning_rate: float) -> int:
        """
        ``weights += gradients * learning_rate``, then clear the gradients.

        Returns
        -------
        int
            Number of weights updated.

        Raises
        ------
        NumericalOverflowError
            If an updated weight is not finite or leaves ``[-WEIGHT_LIMIT, WEIGHT_LIMIT]``. The
            gradients are cleared and the reference is left untouched; call ``clamp_weights``.
        """
        if self.accumulation_count == 0:
            return 0

        touched = self._touched_indices()
        self.weights[touched] += self.gradients[touched] * np.float32(learning_rate)
        self.gradients[touched] = 0.0
        self._touched.clear()
        self.accumulation_count = 0

        updated = self.weights[touched]
        bad = ~np.isfinite(updated) | (np.abs(updated) > WEIGHT_LIMIT)
        if bad.any():
            raise NumericalOverflowError(f'Weight overflow: {int(bad.sum())} weights non-finite or out of range')

        self.engine.write_buffer(_WEIGHTS, updated, touched)
        self.reference.set_flat(updated.astype(np.float64), touched)
        return len(touched)

    def _touched_indices(self) -> ndarray:
        if not self._touched:
            return np.zeros(0, dtype=np.int64)
        return np.unique(np.concatenate(self._touched)).astype(np.int64)

    def clear_gradients(self) -> None:
        self.gradients[self._touched_indices()] = 0.0
        self._touched.clear()
        self.accumulation_count = 0

    def gradient_snapshot(self) -> dict[str, list] | None:
        """Sparse copy of the pending gradients, or None when nothing is pending."""
        if self.accumulation_count == 0:
            return None
        touched = self._touched_indices()
        return {'indices': touched.tolist(), 'values': self.gradients[touched].tolist()}

    def restore_gradients(self, snapshot: dict[str, list] | None, accumulation_count: int) -> None:
        """Reload gradients saved by ``gradient_snapshot``."""
        self.clear_gradients()
        if snapshot:
            indices = np.asarray(snapshot['indices'], dtype=np.int64)
            self.gradients[indices] = np.asarray(snapshot['values'], dtype=np.float32)
            self._touched.append(indices)
        self.accumulation_count = accumulation_count

    @staticmethod
    def calculate_learning_rate(initial: float, decay_rate: float, decay_interval: int, episode: int) -> float:
        return calculate_learning_rate(initial, decay_rate, decay_interval, episode)

    # ##>: Weight management.

    def init_optimistic(self, value: float) -> None:
        """Set every weight, host and device, to ``value``."""
        self.reference.init_optimistic(value)
        self.sync_from_reference()

    def clamp_weights(self, low: float = -WEIGHT_LIMIT, high: float = WEIGHT_LIMIT) -> int:
        """
        Clamp the mirror into ``[low, high]`` (NaN becomes 0) and resynchronise host and device.

        Returns
        -------
        int
            Number of mirror weights changed.
        """
        bad = ~np.isfinite(self.weights) | (self.weights < low) | (self.weights > high)
        changed = int(bad.sum())
        np.nan_to_num(self.weights, copy=False, nan=0.0, posinf=high, neginf=low)
        np.clip(self.weights, low, high, out=self.weights)
        self.engine.write_buffer(_WEIGHTS, self.weights)
        self.sync_to_reference()
        if changed:
            logger.warning('Clamped %d weights into [%g, %g]', changed, low, high)
        return changed

    def load_weights(self, record: dict[str, Any]) -> None:
        """Load a weight record into the reference and the device."""
        self.reference.load_weights(record)
        self.sync_from_reference()

    def export_weights(self, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """Weight record of the mirror, in double precision."""
        self.sync_to_reference()
        return self.reference.export_weights(metadata)

    def read_device_weights(self) -> ndarray:
        """Copy the device weights back to the host."""
        return self.engine.read_buffer(_WEIGHTS)

    def weight_stats(self) -> dict[str, float]:
        """Minimum, maximum, mean and count of non-zero mirror weights."""
        return {
            'min': float(self.weights.min()),
            'max': float(self.weights.max()),
            'mean': float(self.weights.mean(dtype=np.float64)),
            'non_zero_count': int(np.count_nonzero(self.weights)),
        }

    def memory_usage(self) -> dict[str, int]:
        """Bytes held by the mirror and the gradient buffer."""
        return {'weights': int(self.weights.nbytes), 'gradients': int(self.gradients.nbytes)}

    def update_batch_size(self, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError(f'Batch size must be at least 1, got {batch_size}')
        self.batch_size = batch_size

    def dispose(self) -> None:
        """Release the device buffers of this network."""
        for name in (_WEIGHTS, _POSITIONS, _RADIX, _PATH_OFFSETS):
            self.engine.free_buffer(name)
        self.clear_gradients()

