"""
Command-line entry point: ``ntuple-train``.

Every flag maps onto one ``TrainingConfig`` field.
"""

import argparse
import logging
from collections.abc import Sequence

from ntuple.training.config import TrainingConfig
from ntuple.training.storage import FileStorage
from ntuple.training.trainer import train_ntuple

DEFAULTS = TrainingConfig()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ntuple-train', description='Train an N-Tuple network to play 2048')
    parser.add_argument('--episodes', type=int, default=DEFAULTS.episodes, help='Number of games to train on')
    parser.add_argument('--learning-rate', type=float, default=DEFAULTS.learning_rate, help='Initial learning rate')
    parser.add_argument('--output', type=str, default=DEFAULTS.output_path, help='Weights file to write')
    parser.add_argument('--decay', action='store_true', help='Enable learning rate decay')
    parser.add_argument('--optimistic', type=float, default=DEFAULTS.optimistic_init, help='Initial weight value')
    parser.add_argument('--report', type=int, default=DEFAULTS.report_interval, help='Episodes between reports')
    parser.add_argument(
        '--checkpoint', type=int, default=DEFAULTS.checkpoint_interval, help='Episodes between checkpoints'
    )
    parser.add_argument('--checkpoint-path', type=str, default=DEFAULTS.checkpoint_path, help='Checkpoint file')
    parser.add_argument('--resume', action='store_true', help='Resume from the checkpoint file')
    parser.add_argument('--gpu', dest='use_gpu', action='store_true', default=DEFAULTS.use_gpu, help='Use an accelerator')
    parser.add_argument('--no-gpu', dest='use_gpu', action='store_false', help='Use the software kernels only')
    parser.add_argument('--batch-size', type=int, default=DEFAULTS.batch_size, help='Parallel games per batch')
    parser.add_argument('--device', type=int, default=None, help='Accelerator index')
    parser.add_argument('--seed', type=int, default=None, help='Random seed')
    parser.add_argument('--quiet', action='store_true', help='Hide the progress bar')
    return parser


def config_from_args(args: argparse.Namespace) -> TrainingConfig:
    return TrainingConfig(
        episodes=args.episodes,
        learning_rate=args.learning_rate,
        output_path=args.output,
        enable_decay=args.decay,
        optimistic_init=args.optimistic,
        report_interval=args.report,
        checkpoint_interval=args.checkpoint,
        checkpoint_path=args.checkpoint_path,
        resume=args.resume,
        use_gpu=args.use_gpu,
        batch_size=args.batch_size,
        device_index=args.device,
        seed=args.seed,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.episodes < 1:
        raise SystemExit('--episodes must be at least 1')
    if args.batch_size < 1:
        raise SystemExit('--batch-size must be at least 1')

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    trainer = train_ntuple(config_from_args(args), storage=FileStorage('.'), show_progress=not args.quiet)
    try:
        stats = trainer.stats
        print(
            f'Trained {stats.episode} games: avg score {stats.avg_score:.0f}, best tile {stats.best_tile}, '
            f'2048 rate {stats.rate(2048):.1%}'
        )
    finally:
        trainer.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
