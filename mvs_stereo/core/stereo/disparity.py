'''
Disparity post-processing.

1) decode: fixed point (x16) -> float pixels; the matcher's no-match value
   becomes nan instead of being divided like data.
2) unwarp (optional): bring the decoded map back into camera-1's original
   image. Nearest neighbour only, disparities are never blended across edges.
'''
from __future__ import annotations
import logging
from typing import Optional, Tuple
import numpy as np
import cv2
import matplotlib

from mvs_stereo.types import (
    INVALID_DISPARITY,
    Calibration,
    HomographyTransform,
    RectificationResult,
    RemapTransform,
)
from mvs_stereo.core.stereo.stereo_match import FIXED_POINT_SCALE

logger = logging.getLogger(__name__)


def decode_disparity(raw: np.ndarray, invalid_value: Optional[int] = None) -> np.ndarray:
    """
    raw: (H,W) int16 fixed-point disparity.
    invalid_value: fixed-point no-match value; None decodes every sample.
    returns (H,W) float32; int16 / 16 is exact in float32.
    """
    raw = np.asarray(raw)
    out = raw.astype(np.float32) / np.float32(FIXED_POINT_SCALE)
    if invalid_value is not None:
        out[raw == invalid_value] = INVALID_DISPARITY
    return out


def has_valid_disparity(disparity: np.ndarray) -> bool:
    return bool(np.any(np.isfinite(disparity)))


def valid_fraction(disparity: np.ndarray) -> float:
    if disparity.size == 0:
        return 0.0
    return float(np.count_nonzero(np.isfinite(disparity))) / disparity.size


def unwarp_disparity(
    disparity: np.ndarray,
    rect: RectificationResult,
    original_size: Tuple[int, int],          # (w,h) of camera 1's input image
    calibration: Optional[Calibration] = None,
) -> np.ndarray:
    w, h = original_size
    t = rect.transform1

    if isinstance(t, HomographyTransform):
        # sample the rectified map at H1 * p for every original pixel p
        map_x, map_y = _homography_forward_maps(t.H, (w, h))
    elif isinstance(t, RemapTransform):
        if calibration is None or rect.R1 is None or rect.P1 is None:
            raise ValueError("unwarping a remap rectification needs the calibration and R1/P1")
        map_x, map_y = _undistort_forward_maps(calibration, rect.R1, rect.P1, (w, h))
    else:
        raise TypeError(f"unsupported transform type: {type(t).__name__}")

    out = cv2.remap(
        disparity.astype(np.float32), map_x, map_y,
        interpolation=cv2.INTER_NEAREST,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )

    # anything that left the rectified image is "no match"
    dh, dw = disparity.shape[:2]
    inside = (map_x > -0.5) & (map_x < dw - 0.5) & (map_y > -0.5) & (map_y < dh - 0.5)
    out[~inside] = INVALID_DISPARITY
    return out


def _pixel_grid(size: Tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    w, h = size
    xs, ys = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    return xs, ys


def _homography_forward_maps(H: np.ndarray, size: Tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    xs, ys = _pixel_grid(size)
    X = H[0, 0] * xs + H[0, 1] * ys + H[0, 2]
    Y = H[1, 0] * xs + H[1, 1] * ys + H[1, 2]
    Z = H[2, 0] * xs + H[2, 1] * ys + H[2, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        mx = X / Z
        my = Y / Z
    bad = ~np.isfinite(mx) | ~np.isfinite(my)
    mx[bad] = -1e6
    my[bad] = -1e6
    return mx.astype(np.float32), my.astype(np.float32)


def _undistort_forward_maps(
    calibration: Calibration, R1: np.ndarray, P1: np.ndarray, size: Tuple[int, int]
) -> tuple[np.ndarray, np.ndarray]:
    # inverse of initUndistortRectifyMap: original (distorted) pixel -> rectified pixel
    xs, ys = _pixel_grid(size)
    pts = np.stack([xs.ravel(), ys.ravel()], axis=1).astype(np.float64).reshape(-1, 1, 2)
    rect_pts = cv2.undistortPoints(pts, calibration.camera, calibration.distortion, R=R1, P=P1)
    w, h = size
    mx = rect_pts[:, 0, 0].reshape(h, w)
    my = rect_pts[:, 0, 1].reshape(h, w)
    return mx.astype(np.float32), my.astype(np.float32)


def disparity_to_points(disparity: np.ndarray, Q: np.ndarray) -> np.ndarray:
    """
    (H,W) disparity -> (H,W,3) points in rectified camera-1 coordinates.
    Invalid and zero disparities map to nan.
    """
    d = disparity.astype(np.float32).copy()
    bad = ~np.isfinite(d) | (d == 0)
    d[bad] = 0
    pts = cv2.reprojectImageTo3D(d, Q.astype(np.float64), handleMissingValues=False)
    pts[bad] = np.nan
    return pts


def disparity_preview(disparity: np.ndarray, cmap: str = "jet") -> np.ndarray:
    """Colour-mapped BGR uint8 image, invalid pixels black."""
    valid = np.isfinite(disparity)
    out = np.zeros(disparity.shape[:2] + (3,), dtype=np.uint8)
    if not np.any(valid):
        return out

    lo = float(disparity[valid].min())
    hi = float(disparity[valid].max())
    span = hi - lo if hi > lo else 1.0
    norm = np.zeros(disparity.shape, dtype=np.float64)
    norm[valid] = (disparity[valid] - lo) / span

    rgba = matplotlib.colormaps[cmap](norm)
    rgb = (rgba[..., :3] * 255).astype(np.uint8)
    rgb[~valid] = 0
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
