'''
Uncalibrated (Hartley) rectification of two arbitrary images:
FAST + LK matches -> F -> rectifying homographies -> SGBM.

  python -m mvs_stereo.scripts.hartley --left a.jpg --right b.jpg --output out --name scene
'''
from __future__ import annotations

import argparse
import logging
import time

from mvs_stereo.config import PipelineConfig, RectifyParams
from mvs_stereo.frontend.pipeline import StereoPipeline, write_outputs
from mvs_stereo.providers.folder_provider import read_image
from mvs_stereo.scripts._cli import run_main, setup_logging


def main() -> int:
    ap = argparse.ArgumentParser(description="Uncalibrated stereo rectification + disparity")
    ap.add_argument("--left", required=True, help="left image path")
    ap.add_argument("--right", required=True, help="right image path")
    ap.add_argument("--output", required=True, help="output folder")
    ap.add_argument("--name", default="hartley", help="output file prefix")
    ap.add_argument("--max-dim", type=int, default=1000, help="resize so the longer side is at most this (0: off)")
    ap.add_argument("--zip", action="store_true", help="pack the outputs into <name>.zip")
    ap.add_argument("--preview", action="store_true", help="also write a colour-mapped disparity png")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)
    t0 = time.perf_counter()

    config = PipelineConfig(
        output_folder=args.output,
        unique_name=args.name,
        zip_output=args.zip,
        preview=args.preview,
        rectify=RectifyParams(strategy="uncalibrated", max_dimension=args.max_dim or None),
    )

    left = read_image(args.left)
    right = read_image(args.right)
    result = StereoPipeline(config).run_uncalibrated(left, right)
    write_outputs(result, config)

    logger.info(f"Time passed in seconds: {time.perf_counter() - t0:.3f}")
    return 0


def cli() -> None:
    run_main(main)


if __name__ == "__main__":
    cli()
