"""
Cross-checks of the device computation against the host reference.

Random mid-game boards are evaluated through the device kernels and through the host
``NTupleNetwork``; both must agree on the values (within a tolerance) and, most of the time, on
the best move. The device move kernel is also compared lane by lane with the host move resolver.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np
from numpy import ndarray
from numpy.random import Generator, default_rng

from ntuple.game.kernels import MOVE
from ntuple.neural.device_network import DeviceNetwork
from twentyfortyeight.core.gameboard import board_to_lane, lane_to_board
from twentyfortyeight.core.gamemove import DIRECTIONS, move_board

logger = logging.getLogger(__name__)

MIN_TILES, MAX_TILES = 4, 11
MIN_EXPONENT, MAX_EXPONENT = 1, 11


@dataclass
class ValidationConfig:
    """
    Validation settings.

    Attributes
    ----------
    sample_count : int
        Random boards per run.
    eval_error_threshold : float
        Largest accepted absolute value difference.
    move_consistency_threshold : float
        Smallest accepted fraction of boards with the same best move.
    collect_diagnostics : bool
        Attach error distribution and mismatch details to the result.
    validate_move_results : bool
        Also compare the move kernel with the host move resolver.
    """

    sample_count: int = 20
    eval_error_threshold: float = 1e-2
    move_consistency_threshold: float = 0.8
    collect_diagnostics: bool = True
    validate_move_results: bool = True


@dataclass
class ValidationResult:
    """
    Outcome of one validation run.

    Attributes
    ----------
    passed : bool
        Whether both the value error and the best-move thresholds were met.
    max_eval_error : float
        Largest absolute value difference.
    avg_eval_error : float
        Mean absolute value difference.
    move_consistency : float
        Fraction of boards with the same best move on both paths.
    move_result_consistency : float
        Fraction of (board, direction) pairs with identical move results.
    sample_count : int
        Boards checked.
    validation_time : float
        Duration in milliseconds.
    error : str | None
        Failure message when validation itself crashed.
    diagnostics : dict | None
        Optional details.
    """

    passed: bool
    max_eval_error: float
    avg_eval_error: float
    move_consistency: float
    move_result_consistency: float
    sample_count: int
    validation_time: float
    error: str | None = None
    diagnostics: dict[str, Any] | None = field(default=None, repr=False)


def generate_random_board(rng: Generator) -> int:
    """
    A random mid-game board: 4 to 11 tiles with exponents 1 to 11 at distinct positions.
    """
    tile_count = int(rng.integers(MIN_TILES, MAX_TILES + 1))
    positions = rng.permutation(16)[:tile_count]
    lane = np.zeros(16, dtype=np.float32)
    lane[positions] = rng.integers(MIN_EXPONENT, MAX_EXPONENT + 1, size=tile_count)
    return lane_to_board(lane)


def _reference_best_move(network: DeviceNetwork, board: int) -> int:
    best_direction, best_value = -1, -np.inf
    for direction in DIRECTIONS:
        after, reward, moved = move_board(board, direction)
        if not moved:
            continue
        value = reward + network.reference.evaluate(after)
        if value > best_value:
            best_direction, best_value = direction, value
    return best_direction


def _device_best_moves(network: DeviceNetwork, lanes: ndarray) -> tuple[ndarray, ndarray, ndarray, ndarray]:
    """
    Best move of every board through the device kernels.

    Returns
    -------
    tuple
        Best directions (-1 when no move is legal), afterstates (N, 4, 16), rewards (N, 4) and
        validity flags (N, 4).
    """
    count = len(lanes)
    boards = np.repeat(lanes, len(DIRECTIONS), axis=0)
    directions = np.tile(np.asarray(DIRECTIONS, dtype=np.int32), count)
    afterstates, rewards, valid = network.engine.dispatch(MOVE, boards, directions)
    values = network.evaluate_batch(afterstates)

    scores = np.where(valid, rewards + values, -np.inf).reshape(count, len(DIRECTIONS))
    best = np.where(np.isfinite(scores).any(axis=1), scores.argmax(axis=1), -1)
    return (
        best,
        np.asarray(afterstates).reshape(count, len(DIRECTIONS), 16),
        np.asarray(rewards).reshape(count, len(DIRECTIONS)),
        np.asarray(valid).reshape(count, len(DIRECTIONS)),
    )


class DeviceValidator:
    """
    Compares a ``DeviceNetwork`` with its host reference.

    Parameters
    ----------
    network : DeviceNetwork
        Network to validate.
    config : ValidationConfig | None
        Settings; defaults when None.
    seed : int | None
        Seed of the board generator.
    """

    def __init__(self, network: DeviceNetwork, config: ValidationConfig | None = None, seed: int | None = None):
        self.network = network
        self.config = config or ValidationConfig()
        self.rng = default_rng(seed)

    def validate(self, sample_count: int | None = None) -> ValidationResult:
        """
        Run one validation pass.

        Never raises: a crash produces a failed result with infinite errors.
        """
        count = sample_count or self.config.sample_count
        start = time.perf_counter()
        try:
            result = self._validate(count)
        except Exception as error:
            logger.error('Validation crashed: %s', error)
            return ValidationResult(
                passed=False,
                max_eval_error=float('inf'),
                avg_eval_error=float('inf'),
                move_consistency=0.0,
                move_result_consistency=0.0,
                sample_count=0,
                validation_time=(time.perf_counter() - start) * 1000,
                error=str(error),
            )
        result.validation_time = (time.perf_counter() - start) * 1000
        return result

    def _validate(self, count: int) -> ValidationResult:
        boards = [generate_random_board(self.rng) for _ in range(count)]
        lanes = np.stack([board_to_lane(board) for board in boards])

        # ##: Values.
        device_values = np.asarray(self.network.evaluate_batch(lanes), dtype=np.float64)
        reference_values = np.array([self.network.reference.evaluate(board) for board in boards])
        errors = np.abs(device_values - reference_values)

        # ##: Best moves and raw move results.
        device_best, afterstates, rewards, valid = _device_best_moves(self.network, lanes)
        inconsistent_moves, inconsistent_results = [], []
        matching_results = 0
        for index, board in enumerate(boards):
            reference_best = _reference_best_move(self.network, board)
            if reference_best != device_best[index]:
                inconsistent_moves.append(
                    {'sample': index, 'device': int(device_best[index]), 'reference': reference_best}
                )
            if not self.config.validate_move_results:
                continue
            for direction in DIRECTIONS:
                after, reward, moved = move_board(board, direction)
                same = (
                    bool(valid[index, direction]) == moved
                    and lane_to_board(afterstates[index, direction]) == after
                    and int(rewards[index, direction]) == reward
                )
                if same:
                    matching_results += 1
                else:
                    inconsistent_results.append({'sample': index, 'direction': direction})

        move_consistency = 1.0 - len(inconsistent_moves) / count
        checked = count * len(DIRECTIONS) if self.config.validate_move_results else 0
        move_result_consistency = matching_results / checked if checked else 1.0

        max_error = float(errors.max())
        # ##>: Move result mismatches are reported but do not decide the verdict.
        passed = (
            max_error < self.config.eval_error_threshold
            and move_consistency >= self.config.move_consistency_threshold
        )

        diagnostics = None
        if self.config.collect_diagnostics:
            diagnostics = {
                'eval_error_distribution': {
                    'min': float(errors.min()),
                    'max': max_error,
                    'mean': float(errors.mean()),
                    'std': float(errors.std()),
                },
                'inconsistent_moves': inconsistent_moves,
                'inconsistent_move_results': inconsistent_results,
            }

        return ValidationResult(
            passed=passed,
            max_eval_error=max_error,
            avg_eval_error=float(errors.mean()),
            move_consistency=move_consistency,
            move_result_consistency=move_result_consistency,
            sample_count=count,
            validation_time=0.0,
            diagnostics=diagnostics,
        )

    def quick_validate(self, sample_count: int = 5) -> bool:
        """Small validation run returning only pass/fail."""
        return self.validate(sample_count).passed


class ValidationFailureStrategy(str, Enum):
    """What to do when validation fails."""

    IGNORE = 'ignore'
    WARN = 'warn'
    FALLBACK = 'fallback'
    ERROR = 'error'


@dataclass
class ValidationDecision:
    should_continue: bool
    should_fallback: bool
    message: str
    forced: bool = False  # Fallback imposed by repeated failures


class ValidationFailureHandler:
    """
    Applies the failure strategy, escalating to a forced fallback after repeated failures.

    Parameters
    ----------
    strategy : ValidationFailureStrategy
        Reaction to an isolated failure.
    max_consecutive_failures : int
        Consecutive failures that force a fallback whatever the strategy.
    """

    def __init__(
        self, strategy: ValidationFailureStrategy = ValidationFailureStrategy.WARN, max_consecutive_failures: int = 3
    ):
        self.strategy = ValidationFailureStrategy(strategy)
        self.max_consecutive_failures = max_consecutive_failures
        self.consecutive_failures = 0

    def handle(self, result: ValidationResult) -> ValidationDecision:
        """Decide how training proceeds after ``result``."""
        if result.passed:
            self.consecutive_failures = 0
            return ValidationDecision(True, False, 'Validation passed')

        self.consecutive_failures += 1
        summary = (
            f'Validation failed ({self.consecutive_failures}/{self.max_consecutive_failures}): '
            f'max error {result.max_eval_error:.3g}, move consistency {result.move_consistency:.0%}'
        )

        if self.consecutive_failures >= self.max_consecutive_failures:
            logger.error('%s; forcing fallback to the software device', summary)
            return ValidationDecision(True, True, f'{summary}. Forced fallback.', forced=True)

        if self.strategy == ValidationFailureStrategy.IGNORE:
            return ValidationDecision(True, False, summary)
        if self.strategy == ValidationFailureStrategy.WARN:
            logger.warning(summary)
            return ValidationDecision(True, False, summary)
        if self.strategy == ValidationFailureStrategy.FALLBACK:
            logger.warning('%s; falling back to the software device', summary)
            return ValidationDecision(True, True, summary)
        logger.error(summary)
        return ValidationDecision(False, False, summary)

    def reset(self) -> None:
        self.consecutive_failures = 0
