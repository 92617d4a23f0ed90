# Correspondences for the uncalibrated path: FAST corners + pyramidal LK
from __future__ import annotations
import logging
from typing import Tuple
import numpy as np
import cv2

from mvs_stereo.config import FeatureParams
from mvs_stereo.types import FeatureMatches, GeometricDegeneracyError

logger = logging.getLogger(__name__)


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def detect_corners(gray: np.ndarray, params: FeatureParams = FeatureParams()) -> np.ndarray:
    """returns (N,1,2) float32 corner positions, strongest first"""
    fast = cv2.FastFeatureDetector_create(threshold=params.fast_threshold, nonmaxSuppression=True)
    kps = fast.detect(gray, None)
    if not kps:
        return np.zeros((0, 1, 2), dtype=np.float32)

    kps = sorted(kps, key=lambda k: k.response, reverse=True)[:params.max_features]
    return np.array([kp.pt for kp in kps], dtype=np.float32).reshape(-1, 1, 2)


def detect_and_match(img1: np.ndarray, img2: np.ndarray, params: FeatureParams = FeatureParams()) -> FeatureMatches:
    g1 = to_gray(img1)
    g2 = to_gray(img2)

    pts1 = detect_corners(g1, params)
    logger.info(f"Features found in image 1: {len(pts1)}")
    if len(pts1) == 0:
        return FeatureMatches(np.zeros((0, 2)), np.zeros((0, 2)))

    criteria = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01)
    pts2, st, _ = cv2.calcOpticalFlowPyrLK(
        g1, g2, pts1, None,
        winSize=params.lk_win, maxLevel=params.lk_max_level, criteria=criteria,
    )

    # Forward-backward check
    pts1_back, st_back, _ = cv2.calcOpticalFlowPyrLK(
        g2, g1, pts2, None,
        winSize=params.lk_win, maxLevel=params.lk_max_level, criteria=criteria,
    )

    fb = np.linalg.norm(pts1_back.reshape(-1, 2) - pts1.reshape(-1, 2), axis=1)
    h, w = g2.shape[:2]
    p2 = pts2.reshape(-1, 2)
    inside = (p2[:, 0] >= 0) & (p2[:, 0] < w) & (p2[:, 1] >= 0) & (p2[:, 1] < h)
    ok = (st.reshape(-1) == 1) & (st_back.reshape(-1) == 1) & (fb <= params.fb_thresh) & inside

    matches = FeatureMatches(
        pts1.reshape(-1, 2)[ok].astype(np.float64),
        p2[ok].astype(np.float64),
    )
    logger.info(f"Matches found: {len(matches)}")
    return matches


def fundamental_matrix(matches: FeatureMatches, params: FeatureParams = FeatureParams()) -> Tuple[np.ndarray, FeatureMatches]:
    """returns (F, inlier matches)"""
    if len(matches) < params.min_matches:
        raise GeometricDegeneracyError(
            f"need at least {params.min_matches} matches for the fundamental matrix, got {len(matches)}"
        )

    F, mask = cv2.findFundamentalMat(
        matches.points1, matches.points2, cv2.FM_RANSAC,
        params.ransac_threshold, params.ransac_confidence,
    )
    if F is None or F.shape[0] < 3:
        raise GeometricDegeneracyError("fundamental matrix estimation failed")

    # several candidate solutions can be stacked; keep the first
    F = F[:3, :3]
    inliers = matches.subset(mask.reshape(-1).astype(bool))
    logger.info(f"Fundamental matrix inliers: {len(inliers)}/{len(matches)}")
    logger.debug(f"F=\n{F}")
    return F, inliers


def sampson_errors(F: np.ndarray, matches: FeatureMatches) -> np.ndarray:
    """First-order geometric error of each match against F (px^2)."""
    n = len(matches)
    x1 = np.hstack([matches.points1, np.ones((n, 1))])
    x2 = np.hstack([matches.points2, np.ones((n, 1))])

    Fx1 = x1 @ F.T        # rows: F x1
    Ftx2 = x2 @ F         # rows: F^T x2
    num = np.sum(x2 * Fx1, axis=1) ** 2
    den = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(den > 0, num / den, 0.0)


def sampson_error_stats(F: np.ndarray, matches: FeatureMatches) -> Tuple[float, float]:
    errors = sampson_errors(F, matches)
    if errors.size == 0:
        return 0.0, 0.0
    return float(errors.mean()), float(errors.std())
