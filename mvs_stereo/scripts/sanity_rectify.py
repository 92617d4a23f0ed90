'''
builds the calibrated rectification for one frame pair
prints relative baseline computed two ways
rectifies the pair and checks |v1 - v2| on LK matches (the real sanity test)
'''
from __future__ import annotations
import argparse
import logging
import numpy as np
import cv2

from mvs_stereo.config import RectifyParams
from mvs_stereo.core.pose import relative_pose, translation_scale
from mvs_stereo.core.stereo.features import detect_corners, to_gray
from mvs_stereo.core.stereo.rectify import CalibratedRectifier, rectified_baseline
from mvs_stereo.core.stereo.warp import warp_pair
from mvs_stereo.providers.folder_provider import FolderProvider
from mvs_stereo.types import RectificationInputs
from mvs_stereo.scripts._cli import run_main, setup_logging

logger = logging.getLogger(__name__)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--input", required=True, help="capture folder")
    ap.add_argument("--index1", type=int, required=True)
    ap.add_argument("--index2", type=int, required=True)
    ap.add_argument("--no-zero-disparity", action="store_true")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    setup_logging(args.verbose)

    provider = FolderProvider(args.input)
    calib = provider.calibration
    f1 = provider.frame(args.index1)
    f2 = provider.frame(args.index2)

    rel = relative_pose(f1.pose, f2.pose)
    logger.info(f"relative translation: {rel.translation.reshape(-1)}")
    logger.info(f"baseline (norm): {float(np.linalg.norm(rel.translation)):.6f}")

    params = RectifyParams(zero_disparity=not args.no_zero_disparity)
    rect = CalibratedRectifier(params).rectify(RectificationInputs(
        calibration=calib, relative=rel, baseline_scale=translation_scale(f1.pose, f2.pose)
    ))
    logger.info(f"rectified fx: {rect.P1[0, 0]:.3f}")
    logger.info(f"baseline from P2/fx: {rectified_baseline(rect):.6f}")

    r1, r2 = warp_pair(f1.image, f2.image, rect)
    g1, g2 = to_gray(r1), to_gray(r2)

    # Real sanity: match a bunch of points 1->2 and check v-difference
    pts = detect_corners(g1)[:500]
    if len(pts) == 0:
        logger.info("No features found for sanity check.")
        return 0

    pts2, st, _ = cv2.calcOpticalFlowPyrLK(g1, g2, pts, None, winSize=(21, 21), maxLevel=3)
    good1 = pts[st.reshape(-1) == 1].reshape(-1, 2)
    good2 = pts2[st.reshape(-1) == 1].reshape(-1, 2)
    if len(good1) == 0:
        logger.info("No LK matches found.")
        return 0

    vdiff = np.abs(good1[:, 1] - good2[:, 1])
    disp = good1[:, 0] - good2[:, 0]

    logger.info(f"matches: {len(good1)}")
    logger.info(
        f"v-diff mean/95/max: {float(vdiff.mean()):.3f} "
        f"{float(np.percentile(vdiff, 95)):.3f} {float(vdiff.max()):.3f}"
    )
    logger.info(
        f"disp   min/median/max: {float(disp.min()):.2f} "
        f"{float(np.median(disp)):.2f} {float(disp.max()):.2f}"
    )
    logger.info("Sanity expectation: v-diff ~ < 1-2 px for rectified stereo.")
    return 0


def cli() -> None:
    run_main(main)


if __name__ == "__main__":
    cli()
