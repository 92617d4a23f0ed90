'''
Image warping into rectified coordinates.
Bicubic for images; samples that fall outside the source come out black.
'''
from __future__ import annotations
from typing import Optional, Tuple
import numpy as np
import cv2

from mvs_stereo.types import (
    HomographyTransform,
    MalformedDataError,
    RectificationResult,
    RemapTransform,
    Transform,
)


def warp_image(
    image: np.ndarray,
    transform: Transform,
    size: Optional[Tuple[int, int]] = None,   # (w,h), defaults to map size / input size
    interpolation: int = cv2.INTER_CUBIC,
    border_value: float = 0,
) -> np.ndarray:
    if isinstance(transform, RemapTransform):
        if size is not None and tuple(size) != transform.size:
            raise MalformedDataError(f"remap table is {transform.size}, requested output {tuple(size)}")
        return cv2.remap(
            image, transform.map_x, transform.map_y,
            interpolation=interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=border_value,
        )

    if isinstance(transform, HomographyTransform):
        if size is None:
            h, w = image.shape[:2]
            size = (w, h)
        return cv2.warpPerspective(
            image, transform.H, tuple(size),
            flags=interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=border_value,
        )

    raise TypeError(f"unsupported transform type: {type(transform).__name__}")


def warp_pair(img1: np.ndarray, img2: np.ndarray, rect: RectificationResult) -> tuple[np.ndarray, np.ndarray]:
    r1 = warp_image(img1, rect.transform1, rect.new_size)
    r2 = warp_image(img2, rect.transform2, rect.new_size)
    return r1, r2


def resize_to_max_dimension(image: np.ndarray, max_dim: int) -> tuple[np.ndarray, float]:
    """Shrink so the longer side is at most max_dim. Returns (image, factor)."""
    h, w = image.shape[:2]
    longest = max(w, h)
    factor = max_dim / longest if longest > max_dim else 1.0
    if factor == 1.0:
        return image, factor
    return cv2.resize(image, None, fx=factor, fy=factor, interpolation=cv2.INTER_AREA), factor
