'''
Rectification strategies.

Calibrated: stereoRectify + initUndistortRectifyMap -> dense remap tables.
Uncalibrated (Hartley): stereoRectifyUncalibrated -> one homography per image.
The strategy is chosen once per pipeline invocation, never from data quality.
'''
from __future__ import annotations
import logging
from typing import Protocol
import numpy as np
import cv2

from mvs_stereo.config import RectifyParams
from mvs_stereo.types import (
    GeometricDegeneracyError,
    HomographyTransform,
    MalformedDataError,
    RectificationInputs,
    RectificationResult,
    RemapTransform,
)

logger = logging.getLogger(__name__)

MIN_HARTLEY_MATCHES = 8


class RectificationStrategy(Protocol):
    def rectify(self, inputs: RectificationInputs) -> RectificationResult: ...


class CalibratedRectifier:
    def __init__(self, params: RectifyParams = RectifyParams()):
        self.p = params

    def rectify(self, inputs: RectificationInputs) -> RectificationResult:
        calibration, relative = inputs.calibration, inputs.relative
        if calibration is None or relative is None:
            raise MalformedDataError("calibrated rectification needs a calibration and a relative pose")

        K = calibration.camera
        D = calibration.distortion
        w, h = calibration.image_size
        new_size = tuple(self.p.new_size) if self.p.new_size is not None else (w, h)

        R = relative.rotation.astype(np.float64)
        t = relative.translation.astype(np.float64).reshape(3, 1)
        if not np.all(np.isfinite(R)) or not np.all(np.isfinite(t)):
            raise MalformedDataError("relative pose contains non-finite values")
        # round-off of pose2 @ inv(pose1) grows with the translation magnitude
        baseline = float(np.linalg.norm(t))
        if baseline <= self.p.min_baseline * max(1.0, inputs.baseline_scale):
            raise GeometricDegeneracyError(f"relative pose has zero baseline ({baseline:.3g}), cannot rectify")

        flags = cv2.CALIB_ZERO_DISPARITY if self.p.zero_disparity else 0

        # Same intrinsics for both cameras: both frames come from one calibrated camera
        R1, R2, P1, P2, Q, _, _ = cv2.stereoRectify(
            K, D, K, D, (w, h), R, t,
            flags=flags,
            alpha=self.p.resolved_alpha(),
            newImageSize=new_size,
        )

        # Maps go destination -> distorted source, so undistortion happens inside the remap
        map1_x, map1_y = cv2.initUndistortRectifyMap(K, D, R1, P1, new_size, cv2.CV_32FC1)
        map2_x, map2_y = cv2.initUndistortRectifyMap(K, D, R2, P2, new_size, cv2.CV_32FC1)

        logger.debug(f"R1=\n{R1}\nR2=\n{R2}\nP1=\n{P1}\nP2=\n{P2}")

        return RectificationResult(
            transform1=RemapTransform(map1_x, map1_y),
            transform2=RemapTransform(map2_x, map2_y),
            new_size=new_size,
            Q=Q, R1=R1, R2=R2, P1=P1, P2=P2,
        )


class UncalibratedRectifier:
    def __init__(self, params: RectifyParams = RectifyParams()):
        self.p = params

    def rectify(self, inputs: RectificationInputs) -> RectificationResult:
        matches, F, image_size = inputs.matches, inputs.F, inputs.image_size
        if matches is None or F is None or image_size is None:
            raise MalformedDataError("uncalibrated rectification needs matches, F and the image size")
        if len(matches) < MIN_HARTLEY_MATCHES:
            raise GeometricDegeneracyError(
                f"Hartley rectification needs at least {MIN_HARTLEY_MATCHES} matches, got {len(matches)}"
            )

        pts1 = matches.points1.astype(np.float32).reshape(-1, 1, 2)
        pts2 = matches.points2.astype(np.float32).reshape(-1, 1, 2)
        ok, H1, H2 = cv2.stereoRectifyUncalibrated(
            pts1, pts2, np.asarray(F, dtype=np.float64), tuple(image_size),
            threshold=self.p.hartley_threshold,
        )
        if not ok or H1 is None or H2 is None:
            raise GeometricDegeneracyError("stereoRectifyUncalibrated failed to find homographies")

        quality_warning = False
        for name, H in (("H1", H1), ("H2", H2)):
            if not np.all(np.isfinite(H)):
                raise GeometricDegeneracyError(f"{name} contains non-finite values")
            cond = homography_condition(H, image_size)
            if cond > self.p.max_condition:
                raise GeometricDegeneracyError(f"{name} is ill-conditioned (cond={cond:.3g})")
            if cond > self.p.warn_condition:
                logger.warning(f"{name} is poorly conditioned (cond={cond:.3g}), reconstruction quality may suffer")
                quality_warning = True

        logger.debug(f"H1=\n{H1}\nH2=\n{H2}")

        return RectificationResult(
            transform1=HomographyTransform(H1),
            transform2=HomographyTransform(H2),
            new_size=tuple(image_size),
            quality_warning=quality_warning,
        )


def homography_condition(H: np.ndarray, image_size: tuple[int, int]) -> float:
    # Measured in normalised image coordinates ([-1,1] over the image) so pixel
    # offsets do not dominate the number
    w, h = image_size
    N = np.array([[2.0 / w, 0.0, -1.0],
                  [0.0, 2.0 / h, -1.0],
                  [0.0, 0.0, 1.0]], dtype=np.float64)
    Hn = N @ H @ np.linalg.inv(N)
    return float(np.linalg.cond(Hn / np.linalg.norm(Hn)))


def rectified_baseline(result: RectificationResult) -> float:
    """Baseline magnitude in rectified coordinates: |P2[0,3]| / fx (calibrated only)."""
    if result.P2 is None:
        raise ValueError("baseline is only defined for calibrated rectification")
    return abs(float(result.P2[0, 3])) / float(result.P2[0, 0])


def make_rectifier(params: RectifyParams) -> RectificationStrategy:
    if params.strategy == "calibrated":
        return CalibratedRectifier(params)
    if params.strategy == "uncalibrated":
        return UncalibratedRectifier(params)
    raise MalformedDataError(f"unknown rectification strategy '{params.strategy}'")
