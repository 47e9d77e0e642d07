"""
Main training orchestrator for N-Tuple TD-learning.

This module provides the Trainer class that coordinates:
- Batch self-play with the afterstate-maximising policy
- TD(0) updates through the device network
- Error recovery and adaptive batch sizing
- Periodic validation and checkpointing
"""

from __future__ import annotations

import logging
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy import ndarray
from tqdm import tqdm

from ntuple.exceptions import NumericalOverflowError, StorageError, ValidationMismatchError
from ntuple.game.kernels import SoftwareKernels
from ntuple.game.simulator import BatchSimulator
from ntuple.neural.accelerator import DeviceConfig, DeviceEngine
from ntuple.neural.device_network import DeviceNetwork
from ntuple.neural.network import NTupleNetwork, calculate_learning_rate
from ntuple.training.capacity import DEFAULT_AVAILABLE_MEMORY, BatchSizeAdjuster, BatchSizeConfig
from ntuple.training.config import TrainingConfig, default_training_config
from ntuple.training.errors import ErrorHandler, ErrorHandlerConfig, ErrorHandlingResult, ErrorType, RecoveryAction
from ntuple.training.monitor import MonitorConfig, PerformanceMonitor
from ntuple.training.serialization import Checkpoint, CheckpointManager, save_weights
from ntuple.training.storage import FileStorage, Storage
from ntuple.training.validation import DeviceValidator, ValidationConfig, ValidationFailureHandler, ValidationResult
from twentyfortyeight.core.gamemove import DIRECTIONS

logger = logging.getLogger(__name__)

MILESTONES = (2048, 4096, 8192)


@dataclass
class TrainingStats:
    """Running statistics of completed episodes."""

    episode: int = 0
    best_score: float = 0.0
    best_tile: int = 0
    milestone_count: dict[str, int] = field(default_factory=lambda: {f'tile{tile}': 0 for tile in MILESTONES})
    recent_scores: deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    def record(self, score: float, max_tile: int) -> None:
        self.episode += 1
        self.best_score = max(self.best_score, score)
        self.best_tile = max(self.best_tile, max_tile)
        self.recent_scores.append(score)
        for tile in MILESTONES:
            if max_tile >= tile:
                self.milestone_count[f'tile{tile}'] += 1

    @property
    def avg_score(self) -> float:
        return float(np.mean(self.recent_scores)) if self.recent_scores else 0.0

    def rate(self, tile: int) -> float:
        """Fraction of all episodes that reached ``tile``."""
        return self.milestone_count[f'tile{tile}'] / self.episode if self.episode else 0.0


@dataclass
class Trainer:
    """
    Main training orchestrator for N-Tuple TD-learning.

    Attributes
    ----------
    config : TrainingConfig
        Training configuration.
    storage : Storage | None
        Where checkpoints and weights are written; the current directory when None.
    error_config : ErrorHandlerConfig | None
        Recovery policy.
    validation_config : ValidationConfig | None
        Cross-check settings.
    monitor_config : MonitorConfig | None
        Performance monitor thresholds.
    show_progress : bool
        Display a tqdm progress bar.
    """

    config: TrainingConfig = field(default_factory=default_training_config)
    storage: Storage | None = None
    error_config: ErrorHandlerConfig | None = None
    validation_config: ValidationConfig | None = None
    monitor_config: MonitorConfig | None = None
    show_progress: bool = True
    stats: TrainingStats = field(init=False, repr=False)
    _engine: DeviceEngine | None = field(default=None, init=False, repr=False)
    _network: DeviceNetwork | None = field(default=None, init=False, repr=False)
    _simulator: BatchSimulator | None = field(default=None, init=False, repr=False)
    _stop_requested: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        """Initialize trainer components that do not need a device."""
        if self.storage is None:
            self.storage = FileStorage('.')
        self.stats = TrainingStats(recent_scores=deque(maxlen=self.config.recent_scores_window))
        self.learning_rate = self.config.learning_rate
        self.steps = 0
        self.checkpoint_manager = CheckpointManager(self.storage, self.config.checkpoint_path)
        self.error_handler = ErrorHandler(self.error_config, batch_size=self.config.batch_size)
        self.validation_handler = ValidationFailureHandler(self.config.validation_strategy)
        self._host_kernels = SoftwareKernels()
        self._last_checkpoint_episode = 0

    # ##>: Setup.

    def initialize(self) -> None:
        """
        Build the device engine, the network and the simulator, then resume if requested.

        Raises
        ------
        CheckpointError
            If resuming from a checkpoint whose patterns do not match the configuration.
        """
        config = self.config
        self._engine = DeviceEngine(
            DeviceConfig(enabled=config.use_gpu, batch_size=config.batch_size, device_index=config.device_index)
        )
        info = self._engine.initialize()

        self._network = DeviceNetwork(self._engine, NTupleNetwork(config.patterns), batch_size=config.batch_size)
        if config.optimistic_init:
            self._network.init_optimistic(config.optimistic_init)

        available = info.available_memory * 1024 * 1024 if info.available_memory else None
        self.adjuster = BatchSizeAdjuster(
            BatchSizeConfig(initial_batch_size=config.batch_size, available_memory=available or DEFAULT_AVAILABLE_MEMORY)
        )
        self.monitor = PerformanceMonitor(self.monitor_config, available_memory=available)
        self.validator = DeviceValidator(self._network, self.validation_config, seed=config.seed)
        self._simulator = BatchSimulator(self._engine, batch_size=config.batch_size, seed=config.seed)
        self._simulator.init_batch()
        self._reset_lane_tracking(config.batch_size)

        if config.resume:
            self._resume()
        self._update_learning_rate()
        self._update_memory_estimate()
        logger.info(
            'Training on %s: %d patterns, %d weights, batch of %d lanes',
            info.name,
            len(config.patterns),
            len(self._network.weights),
            self._simulator.batch_size,
        )

    def _resume(self) -> None:
        if not self.checkpoint_manager.has_checkpoint():
            logger.info('No checkpoint at %s, starting from scratch', self.config.checkpoint_path)
            return
        checkpoint = self.checkpoint_manager.load()
        self.checkpoint_manager.restore(checkpoint, self._network)

        self.stats.episode = checkpoint.episode
        self.stats.milestone_count.update(checkpoint.milestone_count)
        self.stats.recent_scores.extend(checkpoint.recent_scores)
        self.stats.best_score = float(checkpoint.stats.get('best_score', 0.0))
        self.stats.best_tile = int(checkpoint.stats.get('best_tile', 0))
        self.learning_rate = checkpoint.current_learning_rate
        self.steps = int(checkpoint.stats.get('steps', 0))
        self._last_checkpoint_episode = checkpoint.episode

        batch_size = int(checkpoint.device_state.get('batch_size', self._simulator.batch_size))
        if batch_size != self._simulator.batch_size:
            self._resize(batch_size)
            self.adjuster.set_batch_size(batch_size, 'resume')
        logger.info('Resumed from episode %d (learning rate %g)', checkpoint.episode, self.learning_rate)

    def _reset_lane_tracking(self, batch_size: int) -> None:
        self._prev_afterstates = np.zeros((batch_size, 16), dtype=np.float32)
        self._prev_values = np.zeros(batch_size, dtype=np.float32)
        self._has_prev = np.zeros(batch_size, dtype=bool)

    def _require(self) -> None:
        if self._network is None or self._simulator is None:
            raise RuntimeError('Trainer not initialized. Call initialize() first.')

    # ##>: One batch step.

    def select_directions(self, boards: ndarray) -> ndarray:
        """
        Afterstate-maximising policy, evaluated on the host.

        Each lane tries the four directions and keeps the one maximising
        ``reward + V(afterstate)``; ties go to the first direction in enumeration order.

        Parameters
        ----------
        boards : ndarray
            Exponents of shape (B, 16).

        Returns
        -------
        ndarray
            int32 directions of shape (B,).
        """
        lanes, count = len(boards), len(DIRECTIONS)
        trials = np.repeat(boards, count, axis=0)
        directions = np.tile(np.asarray(DIRECTIONS, dtype=np.int32), lanes)
        afterstates, rewards, valid = self._host_kernels.move(trials, directions)

        values = self._network.reference.evaluate_lanes(afterstates)
        scores = np.where(valid, rewards + values, -np.inf).reshape(lanes, count)
        return scores.argmax(axis=1).astype(np.int32)

    def train_batch(self) -> int:
        """
        Advance every lane by one move and learn from it.

        Returns
        -------
        int
            Number of episodes completed during this step.
        """
        self._require()
        simulator, network = self._simulator, self._network

        directions = self.select_directions(simulator.state.boards)
        with self.monitor.kernel_timer('step'):
            step = simulator.step_with_directions(directions)
        move = step.move
        with self.monitor.kernel_timer('evaluate'):
            values = network.evaluate_batch(move.afterstates)

        # ##: TD error on the previous afterstate of every lane that moved.
        moved = move.valid
        learning = moved & self._has_prev
        if learning.any():
            errors = move.rewards[learning] + values[learning] - self._prev_values[learning]
            network.accumulate_gradients(self._prev_afterstates[learning], errors)

        self._prev_afterstates[moved] = move.afterstates[moved]
        self._prev_values[moved] = values[moved]
        self._has_prev |= moved

        # ##: A terminal state is worth zero.
        completed = step.completed
        if len(completed):
            bootstrapped = completed[self._has_prev[completed]]
            if len(bootstrapped):
                network.accumulate_gradients(self._prev_afterstates[bootstrapped], -self._prev_values[bootstrapped])
            self._record_completed(completed)

        self.steps += 1
        if self.steps % self.config.gradient_accumulation_steps == 0:
            with self.monitor.transfer_timer():
                network.apply_gradients(self.learning_rate)

        self.monitor.record_episodes(len(completed), int(moved.sum()))
        return len(completed)

    def _record_completed(self, completed: ndarray) -> None:
        simulator = self._simulator
        max_tiles = simulator.all_max_tiles()
        for lane in completed:
            self.stats.record(float(simulator.state.scores[lane]), int(max_tiles[lane]))
        self._has_prev[completed] = False
        simulator.reset_completed_games()

    # ##>: Main loop.

    def train(self, show_progress: bool | None = None) -> dict[str, Any]:
        """
        Run the training loop until the requested number of episodes is reached or an interrupt arrives.

        Returns
        -------
        dict
            Final training statistics.

        Raises
        ------
        ValidationMismatchError
            If validation fails under the ERROR strategy and recovery is exhausted.
        StorageError
            If the final weights cannot be written.
        """
        self._require()
        show_progress = self.show_progress if show_progress is None else show_progress
        config = self.config
        start_time = time.time()
        self._stop_requested = False
        previous_handler = self._install_interrupt_handler()

        pbar = (
            tqdm(total=config.episodes, desc='Training', unit='game', initial=min(self.stats.episode, config.episodes))
            if show_progress
            else None
        )
        try:
            while self.stats.episode < config.episodes and not self._stop_requested:
                before = self.stats.episode
                _, decision = self.error_handler.with_error_handling('train_batch', self.train_batch)
                if decision is None:
                    self._on_success()
                else:
                    self._recover(decision)

                self._update_learning_rate()
                after = self.stats.episode
                if pbar is not None and after > before:
                    pbar.update(min(after, config.episodes) - min(before, config.episodes))

                if _crossed(before, after, config.report_interval):
                    self._report(pbar)
                if _crossed(before, after, config.validation_interval):
                    self._validate(pbar)
                if after - self._last_checkpoint_episode >= config.checkpoint_interval:
                    self._checkpoint()
        finally:
            if pbar is not None:
                pbar.close()
            self._restore_interrupt_handler(previous_handler)

        training_time = time.time() - start_time
        if self._stop_requested:
            logger.warning('Interrupted at episode %d, saving checkpoint', self.stats.episode)
            self._checkpoint()
        else:
            self._finish(training_time)

        return {
            'episodes': self.stats.episode,
            'avg_score': self.stats.avg_score,
            'best_score': self.stats.best_score,
            'best_tile': self.stats.best_tile,
            'milestone_count': dict(self.stats.milestone_count),
            'training_time_seconds': training_time,
            'interrupted': self._stop_requested,
            'device': self._engine.info.name,
            'performance': self.monitor.report(),
        }

    def _on_success(self) -> None:
        new_size = self.adjuster.record_success()
        if new_size != self._simulator.batch_size:
            self._resize(new_size)

    def _update_learning_rate(self) -> None:
        if self.config.enable_decay:
            self.learning_rate = calculate_learning_rate(
                self.config.learning_rate, self.config.decay_rate, self.config.decay_interval, self.stats.episode
            )

    def _report(self, pbar: tqdm | None) -> None:
        stats = self.stats
        postfix = {
            'avg': f'{stats.avg_score:.0f}',
            'best': f'{stats.best_score:.0f}',
            'tile': stats.best_tile,
            '2048': f'{stats.rate(2048):.1%}',
            'lr': f'{self.learning_rate:.2e}',
        }
        if pbar is not None:
            pbar.set_postfix(**postfix)
        logger.info(
            'Episode %d: avg %.0f, best %.0f, best tile %d, 2048 rate %.1f%%, lr %.2e, %s',
            stats.episode,
            stats.avg_score,
            stats.best_score,
            stats.best_tile,
            stats.rate(2048) * 100,
            self.learning_rate,
            self.monitor.format_summary(),
        )

    # ##>: Validation and recovery.

    def _validate(self, pbar: tqdm | None = None) -> None:
        result, decision = self.error_handler.with_error_handling('validation', self._run_validation)
        if decision is not None:
            self._recover(decision)
        elif pbar is not None:
            pbar.write(
                f'Episode {self.stats.episode}: validation max error {result.max_eval_error:.2e}, '
                f'move consistency {result.move_consistency:.0%}'
            )

    def _run_validation(self) -> ValidationResult:
        result = self.validator.validate(self.config.validation_samples)
        verdict = self.validation_handler.handle(result)
        logger.info(
            'Validation: max error %.2e, move consistency %.0f%%, %.0f ms',
            result.max_eval_error,
            result.move_consistency * 100,
            result.validation_time,
        )
        # ##>: A forced fallback after repeated failures ignores ``fallback_on_validation_failure``.
        allowed = verdict.forced or self.config.fallback_on_validation_failure
        if verdict.should_fallback and allowed and self._engine.is_gpu:
            self._fallback(verdict.message)
        if not verdict.should_continue:
            raise ValidationMismatchError(verdict.message)
        return result

    def _recover(self, decision: ErrorHandlingResult) -> None:
        """
        Carry out a recovery decision of the error handler.

        Raises
        ------
        RuntimeError
            If the software device itself keeps failing.
        """
        info = self.error_handler.history[-1]
        if decision.action == RecoveryAction.IGNORE:
            # ##>: Weights are clamped before any checkpoint is taken.
            self._network.clamp_weights()
        if decision.should_save_checkpoint:
            self._emergency_checkpoint(info.type.value, info.message)

        if decision.action == RecoveryAction.RETRY_WITH_REDUCED_BATCH:
            self.error_handler.apply_batch_size_reduction(decision.new_batch_size)
            self.adjuster.set_batch_size(decision.new_batch_size, ErrorType.OUT_OF_MEMORY.value)
            self._resize(self.adjuster.batch_size)
            return

        # ##>: Any other failure also shrinks the batch through the adjuster.
        new_size = self.adjuster.record_failure(info.type.value)
        if new_size != self._simulator.batch_size:
            self._resize(new_size)

        if decision.action == RecoveryAction.FALLBACK_TO_CPU:
            if not self._engine.is_gpu:
                self._checkpoint()
                raise RuntimeError(f'Unrecoverable failure on the software device: {info.message}') from info.error
            self._fallback(decision.message)
        elif decision.action == RecoveryAction.SAVE_AND_TERMINATE:
            self._checkpoint()
            self._stop_requested = True

    def _fallback(self, reason: str) -> None:
        """Move the run to the software kernels for good."""
        self._engine.force_fallback(reason)
        self._network.upload()
        self._network.sync_from_reference()
        self.error_handler.reset_retry_count()
        self.validation_handler.reset()

    def _resize(self, batch_size: int) -> None:
        previous = self._simulator.batch_size
        self.error_handler.current_batch_size = batch_size
        self._engine.update_lane_count(batch_size)
        self._network.update_batch_size(batch_size)
        self._simulator.update_batch_size(batch_size)

        kept = min(previous, batch_size)
        afterstates, values, has_prev = self._prev_afterstates, self._prev_values, self._has_prev
        self._reset_lane_tracking(batch_size)
        self._prev_afterstates[:kept] = afterstates[:kept]
        self._prev_values[:kept] = values[:kept]
        self._has_prev[:kept] = has_prev[:kept]
        self._update_memory_estimate()

    def _update_memory_estimate(self) -> None:
        usage = self._network.memory_usage()
        self.monitor.update_memory(
            weights=usage['weights'], gradients=usage['gradients'], board_state=self._simulator.state.boards.nbytes
        )

    # ##>: Persistence.

    def make_checkpoint(self) -> Checkpoint:
        """Snapshot of the trainer, network and device state."""
        self._require()
        network = self._network
        device_state: dict[str, Any] = {
            'batch_size': self._simulator.batch_size,
            'gradient_accumulation_count': network.accumulation_count,
            'weight_stats': network.weight_stats(),
        }
        if network.accumulation_count > 0:
            device_state['accumulated_gradients'] = network.gradient_snapshot()
        return Checkpoint(
            episode=self.stats.episode,
            current_learning_rate=self.learning_rate,
            weights=network.export_weights(),
            device_state=device_state,
            milestone_count=dict(self.stats.milestone_count),
            recent_scores=list(self.stats.recent_scores),
            config=self.config.to_dict(),
            stats={'best_score': self.stats.best_score, 'best_tile': self.stats.best_tile, 'steps': self.steps},
        )

    def _checkpoint(self) -> bool:
        """Write the regular checkpoint; the cursor only advances when the write succeeds."""
        try:
            self.checkpoint_manager.save(self.make_checkpoint())
        except StorageError as error:
            logger.error('Checkpoint failed at episode %d: %s', self.stats.episode, error)
            return False
        self._last_checkpoint_episode = self.stats.episode
        return True

    def _emergency_checkpoint(self, reason: str, message: str) -> None:
        try:
            self.checkpoint_manager.save_emergency(self.make_checkpoint(), reason, message)
        except StorageError as error:
            logger.error('Emergency checkpoint failed: %s', error)

    def _finish(self, training_time: float) -> None:
        """Flush pending gradients, write the weights file and drop the checkpoint."""
        try:
            self._network.apply_gradients(self.learning_rate)
        except NumericalOverflowError as error:
            logger.warning('Final gradient flush overflowed, clamping: %s', error)
            self._network.clamp_weights()
        stats = self.stats
        metadata = {
            'trained_games': stats.episode,
            'avg_score': stats.avg_score,
            'max_tile': stats.best_tile,
            'rate2048': stats.rate(2048),
            'rate4096': stats.rate(4096),
            'rate8192': stats.rate(8192),
            'training_time': training_time,
        }
        self._network.sync_to_reference()
        save_weights(self.storage, self.config.output_path, self._network.reference, metadata)
        self.checkpoint_manager.delete_checkpoint()
        logger.info('Training complete: %d games in %.1f s', stats.episode, training_time)

    # ##>: Interrupts.

    def request_stop(self) -> None:
        """Stop after the current step; a checkpoint is written before ``train`` returns."""
        self._stop_requested = True

    def _install_interrupt_handler(self) -> Any:
        try:
            return signal.signal(signal.SIGINT, lambda signum, frame: self.request_stop())
        except ValueError:
            # ##>: Not in the main thread.
            return None

    @staticmethod
    def _restore_interrupt_handler(handler: Any) -> None:
        if handler is not None:
            signal.signal(signal.SIGINT, handler)

    # ##>: Accessors.

    @property
    def network(self) -> DeviceNetwork | None:
        """Return the device network."""
        return self._network

    @property
    def simulator(self) -> BatchSimulator | None:
        return self._simulator

    @property
    def engine(self) -> DeviceEngine | None:
        return self._engine

    @property
    def current_episode(self) -> int:
        return self.stats.episode

    def close(self) -> None:
        """Release the device resources."""
        if self._simulator is not None:
            self._simulator.dispose()
        if self._network is not None:
            self._network.dispose()
        if self._engine is not None:
            self._engine.dispose()


def _crossed(before: int, after: int, interval: int) -> bool:
    """Whether a multiple of ``interval`` lies in ``(before, after]``."""
    return interval > 0 and after // interval > before // interval


def train_ntuple(
    config: TrainingConfig | None = None,
    storage: Storage | None = None,
    show_progress: bool = True,
) -> Trainer:
    """
    Convenience function to run a full training.

    Parameters
    ----------
    config : TrainingConfig | None
        Training configuration. If None, uses default.
    storage : Storage | None
        Output storage. If None, the current directory.
    show_progress : bool
        Whether to show a progress bar.

    Returns
    -------
    Trainer
        The trained trainer instance.
    """
    if config is None:
        config = default_training_config()

    trainer = Trainer(config=config, storage=storage, show_progress=show_progress)
    trainer.initialize()
    trainer.train()

    return trainer
