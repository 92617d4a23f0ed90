'''
Runs the pair pipeline over an index range: pairs (i, i + gap).
Missing frames and degenerate geometry are logged and skipped.

  python -m mvs_stereo.scripts.stereo_batch --input data/scene --output out --start 0 --stop 50
'''
from __future__ import annotations

import argparse
import logging
from dataclasses import replace

from mvs_stereo.config import PipelineConfig, STRATEGIES
from mvs_stereo.frontend.pipeline import run_batch
from mvs_stereo.scripts._cli import run_main, setup_logging


def main() -> int:
    ap = argparse.ArgumentParser(description="Batch stereo rectification + disparity")
    ap.add_argument("--input", required=True, help="capture folder")
    ap.add_argument("--output", required=True, help="output folder")
    ap.add_argument("--start", type=int, default=0, help="first index")
    ap.add_argument("--stop", type=int, required=True, help="stop index (exclusive)")
    ap.add_argument("--step", type=int, default=1, help="index step between pairs")
    ap.add_argument("--gap", type=int, default=1, help="index distance inside a pair")
    ap.add_argument("--strategy", choices=STRATEGIES, default=None)
    ap.add_argument("--config", default=None, help="optional YAML configuration")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    overrides = dict(input_folder=args.input, output_folder=args.output)
    if args.config:
        config = PipelineConfig.from_yaml(args.config, **overrides)
    else:
        config = PipelineConfig.from_dict({}, **overrides)
    if args.strategy:
        config = replace(config, rectify=replace(config.rectify, strategy=args.strategy))

    summary = run_batch(config, args.start, args.stop, step=args.step, gap=args.gap)
    if not summary.processed:
        logger.warning("No pair was processed")
        return 1
    return 0


def cli() -> None:
    run_main(main)


if __name__ == "__main__":
    cli()
