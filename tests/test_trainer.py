"""
Tests for the training loop, run on the software device with a small network.
"""

import json
from dataclasses import replace

import numpy as np
import pytest

from ntuple.exceptions import NumericalOverflowError
from ntuple.neural.patterns import HORIZONTAL_4TUPLE_PATTERNS
from ntuple.training.config import TrainingConfig, default_training_config, small_training_config
from ntuple.training.serialization import CheckpointManager
from ntuple.training.storage import MemoryStorage
from ntuple.training.trainer import Trainer, TrainingStats, _crossed, train_ntuple
from ntuple.training.validation import ValidationFailureHandler, ValidationFailureStrategy, ValidationResult


@pytest.fixture
def config():
    return TrainingConfig(
        episodes=6,
        learning_rate=0.01,
        patterns=HORIZONTAL_4TUPLE_PATTERNS,
        report_interval=2,
        checkpoint_interval=3,
        validation_interval=3,
        validation_samples=5,
        use_gpu=False,
        batch_size=4,
        seed=0,
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def trainer(config, storage):
    trainer = Trainer(config=config, storage=storage, show_progress=False)
    trainer.initialize()
    yield trainer
    trainer.close()


def run_until(trainer: Trainer, episodes: int) -> None:
    while trainer.current_episode < episodes:
        trainer.train_batch()


class TestTrainingStats:
    """Tests for the running statistics."""

    def test_record(self):
        stats = TrainingStats()
        stats.record(20000.0, 2048)
        stats.record(60000.0, 4096)
        stats.record(1000.0, 256)
        assert stats.episode == 3
        assert stats.best_score == 60000.0
        assert stats.best_tile == 4096
        assert stats.milestone_count == {'tile2048': 2, 'tile4096': 1, 'tile8192': 0}
        assert stats.rate(2048) == pytest.approx(2 / 3)
        assert stats.avg_score == pytest.approx(27000.0)

    def test_empty(self):
        assert TrainingStats().avg_score == 0.0
        assert TrainingStats().rate(2048) == 0.0

    def test_crossed(self):
        assert _crossed(99, 100, 100)
        assert _crossed(98, 205, 100)
        assert not _crossed(100, 199, 100)
        assert not _crossed(0, 10, 0)


class TestConfig:
    """Tests for the configuration presets."""

    def test_defaults(self):
        config = default_training_config()
        assert config.learning_rate == 0.0025
        assert len(config.patterns) == 10
        assert config.batch_size == 64

    def test_small(self):
        config = small_training_config()
        assert config.patterns == HORIZONTAL_4TUPLE_PATTERNS
        assert config.episodes < default_training_config().episodes

    def test_to_dict_is_json(self, config):
        record = json.loads(json.dumps(config.to_dict()))
        assert record['patterns'][0] == [0, 1, 2, 3]
        assert record['validation_strategy'] == 'warn'


class TestTrainer:
    """Tests for the batch step and the main loop."""

    def test_requires_initialize(self, config, storage):
        with pytest.raises(RuntimeError, match='initialize'):
            Trainer(config=config, storage=storage).train_batch()

    def test_select_directions(self, trainer):
        """The policy picks the only legal move and breaks ties by enumeration order."""
        boards = np.zeros((2, 16), dtype=np.float32)
        boards[0, 0] = 1  # A lone tile top-left: right and down are legal, right comes first.
        boards[1, :4] = [1, 2, 1, 2]  # Only down is legal.
        np.testing.assert_array_equal(trainer.select_directions(boards), [1, 2])

    def test_train_batch_learns(self, trainer):
        run_until(trainer, 2)
        assert trainer.network.weight_stats()['non_zero_count'] > 0
        assert trainer.steps > 0
        assert trainer.simulator.active_game_count() == 4

    def test_td_update_arithmetic(self, config, storage):
        """
        Gradients follow ``reward + V(afterstate) - V_prev`` and ``0 - V_prev`` at the end of a game.

        With every weight at 1.0 each board is worth 4 patterns x 8 symmetries = 32, so the
        first error on the previous afterstate is the reward alone.
        """
        config = replace(config, batch_size=1, optimistic_init=1.0, gradient_accumulation_steps=1000)
        trainer = Trainer(config=config, storage=storage, show_progress=False)
        trainer.initialize()
        try:
            network, state = trainer.network, trainer.simulator.state
            pair = np.zeros(16, dtype=np.float32)
            pair[:2] = 1  # Two 2s in the top row: right merges them for a reward of 4.
            afterstate = np.zeros((1, 16), dtype=np.float32)
            afterstate[0, 3] = 2
            indices = np.asarray(network.tuple_indices(afterstate)).ravel()

            # ##: First move of the episode: no error, only V_prev.
            state.boards[0] = pair
            trainer.train_batch()
            assert network.accumulation_count == 0
            assert not network.gradients.any()
            assert trainer._prev_values[0] == 32.0
            np.testing.assert_array_equal(trainer._prev_afterstates[0], afterstate[0])

            # ##: Second move: error = 4 + 32 - 32 on the first afterstate.
            state.boards[0] = pair
            trainer.train_batch()
            expected = np.zeros_like(network.gradients)
            np.add.at(expected, indices, 4.0)
            np.testing.assert_array_equal(network.gradients, expected)

            # ##: A locked board ends the game: error = 0 - 32 on the second afterstate.
            state.boards[0] = np.array([1, 2, 1, 2, 2, 1, 2, 1, 1, 2, 1, 2, 2, 1, 2, 1], dtype=np.float32)
            assert trainer.train_batch() == 1
            np.add.at(expected, indices, -32.0)
            np.testing.assert_array_equal(network.gradients, expected)
            assert not trainer._has_prev[0]
            assert trainer.current_episode == 1
        finally:
            trainer.close()

    def test_finish_clamps_overflowing_flush(self, trainer, storage):
        """An overflow on the last gradient flush is clamped and the weights file is still written."""
        board = np.zeros((1, 16), dtype=np.float32)
        trainer.network.accumulate_gradients(board, np.array([1e12]))
        trainer._finish(0.0)
        record = json.loads(storage.read_all('weights.json'))
        assert max(abs(value) for table in record['weights'] for value in table) == 1e7

    def test_full_run(self, trainer, storage, config):
        """A full run writes the weights file and removes the checkpoint."""
        result = trainer.train()
        assert result['episodes'] >= config.episodes
        assert not result['interrupted']
        assert result['device'] == 'CPU (Fallback)'

        record = json.loads(storage.read_all('weights.json'))
        assert record['metadata']['trained_games'] == result['episodes']
        assert len(record['weights']) == 4
        assert not storage.exists('checkpoint.json')

    def test_resume(self, trainer, storage, config):
        """A resumed trainer continues from the checkpointed episode and weights."""
        run_until(trainer, 2)
        CheckpointManager(storage).save(trainer.make_checkpoint())

        resumed = Trainer(config=replace(config, resume=True), storage=storage)
        resumed.initialize()
        try:
            assert resumed.current_episode == trainer.current_episode
            assert resumed.steps == trainer.steps > 0
            assert resumed.stats.best_score == trainer.stats.best_score
            np.testing.assert_allclose(resumed.network.weights, trainer.network.weights)
        finally:
            resumed.close()

    def test_interrupt_saves_checkpoint(self, trainer, storage):
        original = trainer.train_batch

        def stopping():
            completed = original()
            trainer.request_stop()
            return completed

        trainer.train_batch = stopping
        result = trainer.train()
        assert result['interrupted']
        assert storage.exists('checkpoint.json')
        assert not storage.exists('weights.json')


class TestRecovery:
    """Tests for failure handling inside the loop."""

    def fail_once(self, trainer, error):
        original = trainer.train_batch
        raised = []

        def flaky():
            if not raised:
                raised.append(error)
                raise error
            return original()

        trainer.train_batch = flaky

    def test_overflow_clamps_and_continues(self, trainer, storage):
        self.fail_once(trainer, NumericalOverflowError('weights'))
        result = trainer.train()
        assert not result['interrupted']
        assert storage.list('checkpoint.emergency.')
        assert storage.exists('weights.json')

    def test_out_of_memory_halves_batch(self, trainer):
        self.fail_once(trainer, MemoryError('out of memory'))
        trainer.train()
        first = trainer.adjuster.history[0]
        assert (first.old_size, first.new_size, first.reason) == (4, 2, 'out_of_memory')

    def test_lost_software_device_is_fatal(self, trainer, storage):
        """The software device has nowhere to fall back to."""
        self.fail_once(trainer, RuntimeError('device lost'))
        with pytest.raises(RuntimeError, match='software device'):
            trainer.train()
        assert storage.exists('checkpoint.json')


class TestValidationFallback:
    """Tests for the fallback decisions taken after validation runs."""

    @pytest.fixture
    def failing(self, trainer, monkeypatch):
        """Trainer on a pretend accelerator whose validations always fail; returns the fallback calls."""
        result = ValidationResult(
            passed=False,
            max_eval_error=5.0,
            avg_eval_error=5.0,
            move_consistency=0.5,
            move_result_consistency=1.0,
            sample_count=5,
            validation_time=1.0,
        )
        calls = []
        monkeypatch.setattr(type(trainer.engine), 'is_gpu', property(lambda engine: True))
        monkeypatch.setattr(trainer.validator, 'validate', lambda sample_count=None: result)
        monkeypatch.setattr(trainer, '_fallback', calls.append)
        return calls

    def test_repeated_failures_force_fallback(self, trainer, failing):
        """Three failures in a row fall back even with strategy IGNORE and fallback disabled."""
        trainer.config = replace(trainer.config, fallback_on_validation_failure=False)
        trainer.validation_handler = ValidationFailureHandler(ValidationFailureStrategy.IGNORE)
        for _ in range(2):
            trainer._validate()
        assert failing == []
        trainer._validate()
        assert len(failing) == 1
        assert 'Forced fallback' in failing[0]

    def test_single_failure_follows_setting(self, trainer, failing):
        """Under strategy FALLBACK, one failure falls back only when the setting allows it."""
        trainer.config = replace(trainer.config, fallback_on_validation_failure=False)
        trainer.validation_handler = ValidationFailureHandler(ValidationFailureStrategy.FALLBACK)
        trainer._validate()
        assert failing == []

        trainer.config = replace(trainer.config, fallback_on_validation_failure=True)
        trainer._validate()
        assert len(failing) == 1


def test_train_ntuple(config, storage):
    trainer = train_ntuple(config, storage=storage, show_progress=False)
    try:
        assert trainer.current_episode >= config.episodes
        assert storage.exists(config.output_path)
    finally:
        trainer.close()
