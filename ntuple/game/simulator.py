"""
Batch game simulator: N independent 2048 games advanced in lock-step.

Lanes are never reallocated between episodes. A lane whose game ends is reset in place with a
fresh two-tile board, zero score and zero move count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from numpy import ndarray
from numpy.random import PCG64DXSM, Generator, default_rng

from ntuple.game.kernels import GAME_OVER, MAX_EXPONENT, MOVE
from twentyfortyeight.core.gameboard import SPAWN_EXPONENTS, SPAWN_PROBS
from twentyfortyeight.core.gamemove import DIRECTIONS

if TYPE_CHECKING:
    from ntuple.neural.accelerator import DeviceEngine

logger = logging.getLogger(__name__)

BOARD_CELLS = 16


@dataclass
class BatchGameState:
    """
    Per-lane game state.

    Attributes
    ----------
    boards : ndarray
        float32 exponents, shape (B, 16).
    scores : ndarray
        float32 scores, shape (B,).
    game_over : ndarray
        bool terminal flags, shape (B,).
    moves : ndarray
        uint32 move counts, shape (B,).
    batch_size : int
        Number of lanes.
    """

    boards: ndarray
    scores: ndarray
    game_over: ndarray
    moves: ndarray
    batch_size: int

    @classmethod
    def empty(cls, batch_size: int) -> BatchGameState:
        return cls(
            boards=np.zeros((batch_size, BOARD_CELLS), dtype=np.float32),
            scores=np.zeros(batch_size, dtype=np.float32),
            game_over=np.zeros(batch_size, dtype=bool),
            moves=np.zeros(batch_size, dtype=np.uint32),
            batch_size=batch_size,
        )


@dataclass
class MoveResult:
    """
    Outcome of one move on every lane.

    Attributes
    ----------
    afterstates : ndarray
        Boards after the merges, before any tile spawn, shape (B, 16).
    rewards : ndarray
        Score earned by each lane, shape (B,).
    valid : ndarray
        Whether each lane's board changed, shape (B,).
    """

    afterstates: ndarray
    rewards: ndarray
    valid: ndarray


@dataclass
class StepResult:
    """Move result of a step together with the lanes that just finished."""

    move: MoveResult
    game_over: ndarray
    completed: ndarray


class BatchSimulator:
    """
    Drives a batch of games through the device engine.

    Parameters
    ----------
    engine : DeviceEngine
        Initialised engine used for the move and terminal kernels.
    batch_size : int
        Number of lanes.
    seed : int | None
        Seed of the spawn generator.
    """

    def __init__(self, engine: DeviceEngine, batch_size: int = 64, seed: int | None = None):
        if batch_size < 1:
            raise ValueError(f'Batch size must be at least 1, got {batch_size}')
        self.engine = engine
        self.rng: Generator = default_rng(seed) if seed is not None else default_rng(PCG64DXSM())
        self.state = BatchGameState.empty(batch_size)
        self._disposed = False

    @property
    def batch_size(self) -> int:
        return self.state.batch_size

    def _check(self) -> None:
        if self._disposed:
            raise RuntimeError('Batch simulator has been disposed')

    # ##>: Lifecycle.

    def init_batch(self) -> BatchGameState:
        """Start a fresh game on every lane."""
        self._check()
        self.state = BatchGameState.empty(self.batch_size)
        self._spawn(np.ones(self.batch_size, dtype=bool))
        self._spawn(np.ones(self.batch_size, dtype=bool))
        return self.state

    def update_batch_size(self, batch_size: int) -> BatchGameState:
        """
        Resize the batch.

        The first ``min(old, new)`` lanes keep their games; added lanes start fresh games and
        removed lanes are dropped.

        Raises
        ------
        ValueError
            If ``batch_size`` is below 1.
        """
        self._check()
        if batch_size < 1:
            raise ValueError(f'Batch size must be at least 1, got {batch_size}')
        logger.debug('Batch size %d -> %d', self.batch_size, batch_size)

        previous, kept = self.state, min(self.batch_size, batch_size)
        self.state = BatchGameState.empty(batch_size)
        self.state.boards[:kept] = previous.boards[:kept]
        self.state.scores[:kept] = previous.scores[:kept]
        self.state.game_over[:kept] = previous.game_over[:kept]
        self.state.moves[:kept] = previous.moves[:kept]

        fresh = np.arange(batch_size) >= kept
        self._spawn(fresh)
        self._spawn(fresh)
        return self.state

    def dispose(self) -> None:
        self.state = BatchGameState.empty(0)
        self._disposed = True

    # ##>: Moves.

    def batch_move(self, direction: int) -> MoveResult:
        """Resolve the same direction on every lane, without committing it."""
        return self.batch_move_with_directions(np.full(self.batch_size, direction, dtype=np.int32))

    def batch_move_with_directions(self, directions: ndarray) -> MoveResult:
        """
        Resolve one direction per lane, without committing it.

        Lanes that are already over never report a valid move.
        """
        self._check()
        directions = np.asarray(directions, dtype=np.int32)
        if directions.shape != (self.batch_size,):
            raise ValueError(f'Expected {self.batch_size} directions, got shape {directions.shape}')
        afterstates, rewards, valid = self.engine.dispatch(MOVE, self.state.boards, directions)
        valid = np.asarray(valid, dtype=bool) & ~self.state.game_over
        return MoveResult(afterstates=np.asarray(afterstates), rewards=np.asarray(rewards), valid=valid)

    def apply_move_result(self, result: MoveResult) -> None:
        """Commit valid lanes: afterstate, score and move count."""
        valid = result.valid
        self.state.boards[valid] = result.afterstates[valid]
        self.state.scores[valid] += result.rewards[valid]
        self.state.moves[valid] += 1

    def batch_add_random_tile(self, mask: ndarray) -> None:
        """Spawn one tile on every lane selected by ``mask``."""
        self._spawn(np.asarray(mask, dtype=bool))

    def _spawn(self, mask: ndarray) -> None:
        """
        Spawn a 2 (probability 0.9) or a 4 on a uniformly chosen empty cell of each masked lane.

        Lanes without an empty cell are left unchanged.
        """
        boards = self.state.boards
        empty = boards == 0
        mask = mask & empty.any(axis=1)
        if not mask.any():
            return

        # ##>: The largest random key over the empty cells picks a uniform empty cell.
        keys = self.rng.random(boards.shape)
        keys[~empty] = -1.0
        cells = keys.argmax(axis=1)
        values = np.where(self.rng.random(len(boards)) < SPAWN_PROBS[0], SPAWN_EXPONENTS[0], SPAWN_EXPONENTS[1])

        lanes = np.flatnonzero(mask)
        boards[lanes, cells[lanes]] = values[lanes]

    def batch_check_game_over(self) -> ndarray:
        """Recompute and return the terminal flag of every lane."""
        self._check()
        self.state.game_over = np.asarray(self.engine.dispatch(GAME_OVER, self.state.boards), dtype=bool)
        return self.state.game_over

    def reset_completed_games(self) -> ndarray:
        """
        Restart every finished lane in place.

        Returns
        -------
        ndarray
            Indices of the lanes that were reset.
        """
        lanes = np.flatnonzero(self.state.game_over)
        if len(lanes) == 0:
            return lanes
        self.state.boards[lanes] = 0
        self.state.scores[lanes] = 0
        self.state.moves[lanes] = 0
        self.state.game_over[lanes] = False
        mask = np.zeros(self.batch_size, dtype=bool)
        mask[lanes] = True
        self._spawn(mask)
        self._spawn(mask)
        return lanes

    def step_with_directions(self, directions: ndarray) -> StepResult:
        """
        Advance every lane by one move.

        1. Resolve the moves; 2. commit valid lanes; 3. spawn a tile on valid lanes;
        4. recompute terminal flags. Finished lanes are not reset here.

        Returns
        -------
        StepResult
            The move result (afterstates are pre-spawn), the terminal flags and the indices of
            lanes that became terminal on this step.
        """
        was_over = self.state.game_over.copy()
        result = self.batch_move_with_directions(directions)
        self.apply_move_result(result)
        self.batch_add_random_tile(result.valid)
        game_over = self.batch_check_game_over()
        return StepResult(move=result, game_over=game_over.copy(), completed=np.flatnonzero(game_over & ~was_over))

    def step(self, direction: int) -> StepResult:
        """Advance every lane by the same direction."""
        return self.step_with_directions(np.full(self.batch_size, direction, dtype=np.int32))

    # ##>: Statistics.

    def active_game_count(self) -> int:
        return int((~self.state.game_over).sum())

    def completed_game_count(self) -> int:
        return int(self.state.game_over.sum())

    def batch_stats(self) -> dict[str, float]:
        """Average and maximum score and move count across lanes."""
        if self.batch_size == 0:
            return {'avg_score': 0.0, 'max_score': 0.0, 'avg_moves': 0.0, 'max_moves': 0.0}
        return {
            'avg_score': float(self.state.scores.mean()),
            'max_score': float(self.state.scores.max()),
            'avg_moves': float(self.state.moves.mean()),
            'max_moves': float(self.state.moves.max()),
        }

    def all_max_tiles(self) -> ndarray:
        """Largest tile value of every lane (0 for an empty board)."""
        exponents = np.asarray(self.engine.dispatch(MAX_EXPONENT, self.state.boards), dtype=np.int64)
        return np.where(exponents > 0, 1 << exponents, 0)

    def max_tile(self, lane: int) -> int:
        exponent = int(self.state.boards[lane].max())
        return 1 << exponent if exponent else 0

    def valid_moves(self, lane: int) -> list[int]:
        """Directions that change the board of ``lane``."""
        boards = np.repeat(self.state.boards[lane : lane + 1], len(DIRECTIONS), axis=0)
        _, _, valid = self.engine.dispatch(MOVE, boards, np.asarray(DIRECTIONS, dtype=np.int32))
        return [direction for direction, ok in zip(DIRECTIONS, valid) if ok]

    def has_valid_move(self, lane: int) -> bool:
        return bool(self.valid_moves(lane))
