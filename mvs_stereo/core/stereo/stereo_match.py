'''
Dense matching with OpenCV's semi-global block matcher.
Output stays in the matcher's native fixed point (disparity * 16, int16);
decoding lives in disparity.py.
'''
from __future__ import annotations
import logging
import numpy as np
import cv2

from mvs_stereo.config import MatcherParams
from mvs_stereo.types import MalformedDataError, MatcherWindow

logger = logging.getLogger(__name__)

FIXED_POINT_SCALE = 16

_MODES = {
    "sgbm": cv2.STEREO_SGBM_MODE_SGBM,
    "hh": cv2.STEREO_SGBM_MODE_HH,
    "sgbm_3way": cv2.STEREO_SGBM_MODE_SGBM_3WAY,
    "hh4": cv2.STEREO_SGBM_MODE_HH4,
}


def check_window(window: MatcherWindow) -> None:
    if window.min_disparity % 16 != 0:
        raise MalformedDataError(f"min_disparity must be a multiple of 16, got {window.min_disparity}")
    if window.num_disparities <= 0 or window.num_disparities % 16 != 0:
        raise MalformedDataError(
            f"num_disparities must be a positive multiple of 16, got {window.num_disparities}"
        )


def create_matcher(window: MatcherWindow, params: MatcherParams = MatcherParams()):
    check_window(window)
    if params.mode not in _MODES:
        raise MalformedDataError(f"unknown matcher mode '{params.mode}', expected one of {sorted(_MODES)}")

    return cv2.StereoSGBM_create(
        minDisparity=window.min_disparity,
        numDisparities=window.num_disparities,
        blockSize=params.block_size,
        P1=params.p1,
        P2=params.p2,
        disp12MaxDiff=params.disp12_max_diff,
        preFilterCap=params.pre_filter_cap,
        uniquenessRatio=params.uniqueness_ratio,
        speckleWindowSize=params.speckle_window_size,
        speckleRange=params.speckle_range,
        mode=_MODES[params.mode],
    )


def invalid_fixed_point(window: MatcherWindow) -> int:
    # value SGBM writes where no disparity was found
    return (window.min_disparity - 1) * FIXED_POINT_SCALE


def compute_fixed_point_disparity(
    left_r: np.ndarray,
    right_r: np.ndarray,
    window: MatcherWindow,
    params: MatcherParams = MatcherParams(),
) -> np.ndarray:
    if left_r.shape != right_r.shape:
        raise MalformedDataError(f"rectified images differ in shape: {left_r.shape} vs {right_r.shape}")

    stereo = create_matcher(window, params)
    logger.info(
        f"Matching with min_disparity={window.min_disparity} num_disparities={window.num_disparities}"
    )
    disp = stereo.compute(left_r, right_r)
    return disp.astype(np.int16, copy=False)
