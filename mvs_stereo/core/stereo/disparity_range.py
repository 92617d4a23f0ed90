'''
Disparity search window for the uncalibrated path.

Matched points are pushed through both rectifying homographies; each match
gives one signed disparity (the dominant axis of the difference, x on ties).
After a correct rectification the dominant axis is x for nearly every match,
so the share of y-dominant matches doubles as a sanity check.
'''
from __future__ import annotations
import logging
import math
import numpy as np

from mvs_stereo.types import (
    DisparityRange,
    FeatureMatches,
    GeometricDegeneracyError,
    MatcherWindow,
)

logger = logging.getLogger(__name__)

DISPARITY_STEP = 16


def apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    H: (3,3), points: (N,2).
    returns (N,2) projected points.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    X = H[0, 0] * pts[:, 0] + H[0, 1] * pts[:, 1] + H[0, 2]
    Y = H[1, 0] * pts[:, 0] + H[1, 1] * pts[:, 1] + H[1, 2]
    Z = H[2, 0] * pts[:, 0] + H[2, 1] * pts[:, 1] + H[2, 2]
    return np.stack([X / Z, Y / Z], axis=1)


def signed_disparities(H1: np.ndarray, H2: np.ndarray, matches: FeatureMatches) -> tuple[np.ndarray, np.ndarray]:
    """
    returns:
      d: (N,) signed scalar disparity per match
      y_dominant: (N,) bool, True where |dy| > |dx|
    """
    p1 = apply_homography(H1, matches.points1)
    p2 = apply_homography(H2, matches.points2)
    diff = p1 - p2
    y_dominant = np.abs(diff[:, 0]) < np.abs(diff[:, 1])
    d = np.where(y_dominant, diff[:, 1], diff[:, 0])
    return d, y_dominant


def estimate_disparity_range(H1: np.ndarray, H2: np.ndarray, matches: FeatureMatches) -> DisparityRange:
    if len(matches) == 0:
        raise ValueError("disparity range needs at least one match")

    d, y_dominant = signed_disparities(H1, H2, matches)

    # plain scan in match order keeps min/max reproducible
    lo = math.inf
    hi = -math.inf
    for value in d:
        lo = value if value < lo else lo
        hi = value if value > hi else hi

    n_y = int(y_dominant.sum())
    if n_y:
        logger.warning(f"{n_y}/{len(matches)} matches have a dominant vertical offset after rectification")
    logger.info(f"Disparity range: {lo:.3f} to {hi:.3f}")
    return DisparityRange(float(lo), float(hi))


def matcher_window(rng: DisparityRange) -> MatcherWindow:
    """
    Smallest 16-aligned window covering [minimum, maximum]:
      min_disparity <= minimum, min_disparity + num_disparities >= maximum
    """
    if not (math.isfinite(rng.minimum) and math.isfinite(rng.maximum)):
        raise GeometricDegeneracyError(f"disparity range is not finite: [{rng.minimum}, {rng.maximum}]")
    if rng.minimum > rng.maximum:
        raise GeometricDegeneracyError(f"disparity range is inverted: [{rng.minimum}, {rng.maximum}]")

    lo = int(math.floor(rng.minimum / DISPARITY_STEP)) * DISPARITY_STEP
    hi = int(math.ceil(rng.maximum / DISPARITY_STEP)) * DISPARITY_STEP
    num = max(hi - lo, DISPARITY_STEP)
    return MatcherWindow(min_disparity=lo, num_disparities=num)
