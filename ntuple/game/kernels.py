"""
Batch kernels shared by the device engine.

Every kernel works on a batch of lanes (one row of 16 float exponents per game) and is
synchronous: it returns host numpy arrays once all lanes are done. Two implementations satisfy
the same contract:

1. ``SoftwareKernels``: vectorised numpy, always available.
2. ``JaxKernels``: the same algorithms jit-compiled with jax and pinned to an accelerator.

Moves are resolved through the slide-left row table: every direction is expressed as an
ordering of the board cells (``LINE_INDICES``), so no board is ever rotated or copied.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
from numpy import ndarray

from twentyfortyeight.core.gamemove import LEFT_ROWS, LEFT_SCORES, LINE_INDICES, LINE_INVERSE
from twentyfortyeight.core.gamemove import MAX_EXPONENT as TOP_EXPONENT

# ##>: Kernel identifiers accepted by ``DeviceEngine.dispatch``.
MOVE = 'move'
EVALUATE = 'evaluate'
TUPLE_INDICES = 'tuple_indices'
GAME_OVER = 'game_over'
MAX_EXPONENT = 'max_exponent'
KERNEL_IDS = (MOVE, EVALUATE, TUPLE_INDICES, GAME_OVER, MAX_EXPONENT)

# ##>: Type aliases.
Array = jax.Array


class KernelSet(ABC):
    """
    Contract implemented by every execution backend.

    Attributes
    ----------
    name : str
        Human-readable backend name.
    """

    name: str = 'kernels'

    @abstractmethod
    def to_device(self, data: ndarray) -> Any:
        """Copy a host array into backend memory."""

    @abstractmethod
    def to_host(self, data: Any) -> ndarray:
        """Copy backend memory back into a host array."""

    @abstractmethod
    def scatter(self, data: Any, indices: ndarray, values: ndarray) -> Any:
        """Return ``data`` with ``values`` written at the flat ``indices``."""

    @abstractmethod
    def move(self, boards: Any, directions: Any) -> tuple[ndarray, ndarray, ndarray]:
        """
        Resolve one move per lane.

        Parameters
        ----------
        boards : array
            float32 exponents of shape (B, 16).
        directions : array
            int32 directions of shape (B,), 0: up, 1: right, 2: down, 3: left.

        Returns
        -------
        tuple[ndarray, ndarray, ndarray]
            Afterstates (float32, (B, 16)), rewards (float32, (B,)) and validity flags (bool, (B,)).
        """

    @abstractmethod
    def tuple_indices(self, boards: Any, positions: Any, radix: Any, path_offsets: Any) -> ndarray:
        """Flat weight indices of every (pattern, symmetry) path, int32 of shape (B, P * 8)."""

    @abstractmethod
    def evaluate(self, boards: Any, weights: Any, positions: Any, radix: Any, path_offsets: Any) -> ndarray:
        """Network value of every lane, float32 of shape (B,)."""

    @abstractmethod
    def game_over(self, boards: Any) -> ndarray:
        """Terminal flag of every lane, bool of shape (B,)."""

    @abstractmethod
    def max_exponent(self, boards: Any) -> ndarray:
        """Largest exponent of every lane, int32 of shape (B,)."""


def _split_rows(rows: ndarray, module=np) -> ndarray:
    return module.stack([(rows >> 12) & 0xF, (rows >> 8) & 0xF, (rows >> 4) & 0xF, rows & 0xF], axis=-1)


class SoftwareKernels(KernelSet):
    """Synchronous numpy implementation, used when no accelerator is available."""

    name = 'numpy'

    def to_device(self, data: ndarray) -> ndarray:
        return np.array(data, copy=True)

    def to_host(self, data: ndarray) -> ndarray:
        return np.array(data, copy=True)

    def scatter(self, data: ndarray, indices: ndarray, values: ndarray) -> ndarray:
        data[indices] = values
        return data

    def move(self, boards: ndarray, directions: ndarray) -> tuple[ndarray, ndarray, ndarray]:
        exponents = np.asarray(boards).astype(np.int64)
        directions = np.asarray(directions, dtype=np.int64)
        lanes = exponents.shape[0]

        # ##: Read every line in slide order, then pack it into a row key.
        lines = LINE_INDICES[directions].reshape(lanes, 16)
        cells = np.take_along_axis(exponents, lines, axis=1).reshape(lanes, 4, 4)
        keys = (cells[..., 0] << 12) | (cells[..., 1] << 8) | (cells[..., 2] << 4) | cells[..., 3]

        rows = LEFT_ROWS[keys].astype(np.int64)
        rewards = LEFT_SCORES[keys].astype(np.int64).sum(axis=1)

        # ##: Scatter the resolved lines back to board order.
        resolved = _split_rows(rows).reshape(lanes, 16)
        afterstates = np.take_along_axis(resolved, LINE_INVERSE[directions], axis=1)
        valid = (rows != keys).any(axis=1)
        return afterstates.astype(np.float32), rewards.astype(np.float32), valid

    def tuple_indices(self, boards: ndarray, positions: ndarray, radix: ndarray, path_offsets: ndarray) -> ndarray:
        exponents = np.asarray(boards).astype(np.int64)
        gathered = exponents[:, positions]
        return ((gathered * radix).sum(axis=2) + path_offsets).astype(np.int32)

    def evaluate(
        self, boards: ndarray, weights: ndarray, positions: ndarray, radix: ndarray, path_offsets: ndarray
    ) -> ndarray:
        indices = self.tuple_indices(boards, positions, radix, path_offsets)
        return weights[indices].sum(axis=1, dtype=np.float32)

    def game_over(self, boards: ndarray) -> ndarray:
        grid = np.asarray(boards).reshape(-1, 4, 4)
        has_empty = (grid == 0).any(axis=(1, 2))
        mergeable = grid < TOP_EXPONENT
        horizontal = ((grid[:, :, :-1] == grid[:, :, 1:]) & mergeable[:, :, :-1]).any(axis=(1, 2))
        vertical = ((grid[:, :-1, :] == grid[:, 1:, :]) & mergeable[:, :-1, :]).any(axis=(1, 2))
        return ~(has_empty | horizontal | vertical)

    def max_exponent(self, boards: ndarray) -> ndarray:
        return np.asarray(boards).max(axis=1).astype(np.int32)


@jax.jit
def _jax_move(
    boards: Array, directions: Array, left_rows: Array, left_scores: Array, line_indices: Array, line_inverse: Array
) -> tuple[Array, Array, Array]:
    exponents = boards.astype(jnp.int32)
    lines = line_indices[directions].reshape(-1, 16)
    cells = jnp.take_along_axis(exponents, lines, axis=1).reshape(-1, 4, 4)
    keys = (cells[..., 0] << 12) | (cells[..., 1] << 8) | (cells[..., 2] << 4) | cells[..., 3]

    rows = left_rows[keys]
    rewards = left_scores[keys].sum(axis=1)

    resolved = _split_rows(rows, jnp).reshape(-1, 16)
    afterstates = jnp.take_along_axis(resolved, line_inverse[directions], axis=1)
    valid = jnp.any(rows != keys, axis=1)
    return afterstates.astype(jnp.float32), rewards.astype(jnp.float32), valid


@jax.jit
def _jax_tuple_indices(boards: Array, positions: Array, radix: Array, path_offsets: Array) -> Array:
    exponents = boards.astype(jnp.int32)
    gathered = exponents[:, positions]
    return (gathered * radix).sum(axis=2) + path_offsets


@jax.jit
def _jax_evaluate(boards: Array, weights: Array, positions: Array, radix: Array, path_offsets: Array) -> Array:
    return weights[_jax_tuple_indices(boards, positions, radix, path_offsets)].sum(axis=1)


@jax.jit
def _jax_game_over(boards: Array) -> Array:
    grid = boards.reshape(-1, 4, 4)
    has_empty = jnp.any(grid == 0, axis=(1, 2))
    mergeable = grid < TOP_EXPONENT
    horizontal = jnp.any((grid[:, :, :-1] == grid[:, :, 1:]) & mergeable[:, :, :-1], axis=(1, 2))
    vertical = jnp.any((grid[:, :-1, :] == grid[:, 1:, :]) & mergeable[:, :-1, :], axis=(1, 2))
    return ~(has_empty | horizontal | vertical)


@jax.jit
def _jax_scatter(data: Array, indices: Array, values: Array) -> Array:
    return data.at[indices].set(values)


class JaxKernels(KernelSet):
    """
    jax implementation pinned to one device.

    Parameters
    ----------
    device : jax.Device
        Target device; inputs are committed to it so every kernel runs there.
    """

    def __init__(self, device: jax.Device):
        self.device = device
        self.name = f'jax-{device.platform}'
        # ##>: Row tables are widened to int32 once, on the device.
        self._left_rows = jax.device_put(LEFT_ROWS.astype(np.int32), device)
        self._left_scores = jax.device_put(LEFT_SCORES.astype(np.int32), device)
        self._line_indices = jax.device_put(LINE_INDICES, device)
        self._line_inverse = jax.device_put(LINE_INVERSE, device)

    def to_device(self, data: ndarray) -> Array:
        return jax.device_put(np.asarray(data), self.device)

    def to_host(self, data: Array) -> ndarray:
        return np.array(data)

    def scatter(self, data: Array, indices: ndarray, values: ndarray) -> Array:
        count = len(indices)
        if count == 0:
            return data
        # ##>: Pad to a power of two so the jitted scatter compiles for a handful of shapes only.
        padded = 1 << (count - 1).bit_length()
        indices = np.concatenate((indices, np.repeat(indices[:1], padded - count))).astype(np.int32)
        values = np.concatenate((values, np.repeat(values[:1], padded - count))).astype(np.float32)
        return _jax_scatter(data, self.to_device(indices), self.to_device(values))

    def _put(self, data: Any, dtype) -> Array:
        if isinstance(data, jax.Array):
            return data
        return self.to_device(np.asarray(data, dtype=dtype))

    def move(self, boards: Any, directions: Any) -> tuple[ndarray, ndarray, ndarray]:
        afterstates, rewards, valid = _jax_move(
            self._put(boards, np.float32),
            self._put(directions, np.int32),
            self._left_rows,
            self._left_scores,
            self._line_indices,
            self._line_inverse,
        )
        return np.array(afterstates), np.array(rewards), np.array(valid)

    def tuple_indices(self, boards: Any, positions: Any, radix: Any, path_offsets: Any) -> ndarray:
        indices = _jax_tuple_indices(
            self._put(boards, np.float32),
            self._put(positions, np.int32),
            self._put(radix, np.int32),
            self._put(path_offsets, np.int32),
        )
        return np.array(indices)

    def evaluate(self, boards: Any, weights: Any, positions: Any, radix: Any, path_offsets: Any) -> ndarray:
        values = _jax_evaluate(
            self._put(boards, np.float32),
            self._put(weights, np.float32),
            self._put(positions, np.int32),
            self._put(radix, np.int32),
            self._put(path_offsets, np.int32),
        )
        return np.array(values)

    def game_over(self, boards: Any) -> ndarray:
        return np.array(_jax_game_over(self._put(boards, np.float32)))

    def max_exponent(self, boards: Any) -> ndarray:
        return np.asarray(jnp.max(self._put(boards, np.float32), axis=1)).astype(np.int32)
