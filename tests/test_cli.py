"""
Tests for the command-line parser.
"""

import pytest

from ntuple.training.cli import build_parser, config_from_args, main


class TestParser:
    """Tests for flag parsing."""

    def test_defaults(self):
        config = config_from_args(build_parser().parse_args([]))
        assert config.episodes == 100_000
        assert config.use_gpu
        assert not config.resume

    def test_flags(self):
        args = build_parser().parse_args(
            ['--episodes', '50', '--learning-rate', '0.1', '--decay', '--no-gpu', '--batch-size', '8', '--resume']
        )
        config = config_from_args(args)
        assert config.episodes == 50
        assert config.learning_rate == 0.1
        assert config.enable_decay
        assert not config.use_gpu
        assert config.batch_size == 8
        assert config.resume

    @pytest.mark.parametrize('argv', [['--episodes', '0'], ['--batch-size', '0']])
    def test_rejects_non_positive(self, argv):
        with pytest.raises(SystemExit):
            main(argv)
