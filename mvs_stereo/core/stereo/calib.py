'''
Helpers that turn plain numbers into Calibration objects.
Handy for tests and for hand-written calibrations.
'''
from __future__ import annotations
import numpy as np

from mvs_stereo.types import Calibration


def K_from_intrinsics(fx: float, fy: float, cx: float, cy: float) -> np.ndarray:
    return np.array([[fx, 0.0, cx],
                     [0.0, fy, cy],
                     [0.0, 0.0, 1.0]], dtype=np.float64)


def calibration_from_intrinsics(
    fx: float, fy: float, cx: float, cy: float,
    image_size: tuple[int, int],
    distortion=(0.0, 0.0, 0.0, 0.0),
) -> Calibration:
    return Calibration.create(K_from_intrinsics(fx, fy, cx, cy), distortion, image_size)


def scale_calibration(calib: Calibration, factor: float) -> Calibration:
    # Image resized by `factor`: focal lengths and principal point scale with it
    K = calib.camera.copy()
    K[:2, :] *= factor
    w, h = calib.image_size
    return Calibration.create(K, calib.distortion, (int(round(w * factor)), int(round(h * factor))))
