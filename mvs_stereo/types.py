from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union
import numpy as np


# Decoded disparity maps use nan for "no match"
INVALID_DISPARITY = float("nan")


# -----------------------------
# Errors
# -----------------------------

class StereoPipelineError(RuntimeError):
    pass


class InputNotFoundError(StereoPipelineError, FileNotFoundError):
    pass


class MalformedDataError(StereoPipelineError, ValueError):
    pass


class GeometricDegeneracyError(StereoPipelineError):
    pass


# -----------------------------
# Inputs
# -----------------------------

@dataclass(frozen=True)
class Calibration:
    camera: np.ndarray       # (3,3) float64, camera[2,2] == 1
    distortion: np.ndarray   # (<=5,) float64, all zero = already undistorted
    image_size: Tuple[int, int]  # (w,h)

    @staticmethod
    def create(camera, distortion, image_size) -> "Calibration":
        K = np.asarray(camera, dtype=np.float64)
        if K.size != 9:
            raise MalformedDataError(f"camera matrix must have 9 entries, got {K.size}")
        K = K.reshape(3, 3)
        if abs(K[2, 2] - 1.0) > 1e-9:
            raise MalformedDataError(f"camera[2,2] must be 1, got {K[2, 2]}")

        D = np.asarray(distortion, dtype=np.float64).reshape(-1)
        if D.size == 0:
            raise MalformedDataError("distortion vector is empty")
        if D.size > 5:
            raise MalformedDataError(f"at most 5 distortion coefficients supported, got {D.size}")

        w, h = (int(v) for v in image_size)
        if w <= 0 or h <= 0:
            raise MalformedDataError(f"image size must be positive, got ({w}, {h})")

        K.setflags(write=False)
        D.setflags(write=False)
        return Calibration(camera=K, distortion=D, image_size=(w, h))

    @property
    def is_undistorted(self) -> bool:
        return not np.any(self.distortion)


@dataclass(frozen=True)
class Frame:
    id: int
    image: np.ndarray   # HxW or HxWx3
    pose: np.ndarray    # (4,4) rigid transform

    def __post_init__(self):
        if self.id < 0:
            raise MalformedDataError(f"frame id must be non-negative, got {self.id}")
        if self.pose.shape != (4, 4):
            raise MalformedDataError(f"frame {self.id}: pose must be 4x4, got {self.pose.shape}")
        if self.image.ndim not in (2, 3):
            raise MalformedDataError(f"frame {self.id}: image must be 2D or 3D, got ndim={self.image.ndim}")

    @property
    def size(self) -> Tuple[int, int]:
        h, w = self.image.shape[:2]
        return w, h


@dataclass(frozen=True)
class RelativePose:
    rotation: np.ndarray     # (3,3)
    translation: np.ndarray  # (3,1)

    @property
    def matrix(self) -> np.ndarray:
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation.reshape(3)
        return T


@dataclass(frozen=True)
class FeatureMatches:
    points1: np.ndarray  # (N,2) float
    points2: np.ndarray  # (N,2) float

    def __post_init__(self):
        if self.points1.shape != self.points2.shape:
            raise MalformedDataError(
                f"match point sets differ in shape: {self.points1.shape} vs {self.points2.shape}"
            )

    def __len__(self) -> int:
        return int(self.points1.shape[0])

    def subset(self, mask: np.ndarray) -> "FeatureMatches":
        return FeatureMatches(self.points1[mask], self.points2[mask])


@dataclass(frozen=True)
class RectificationInputs:
    """
    What a rectification strategy may consume. The calibrated strategy reads
    calibration/relative, the uncalibrated one matches/F/image_size.
    baseline_scale: magnitude of the pose translations the relative pose came
    from, so the zero-baseline test tolerates round-off at that scale.
    """
    calibration: Optional[Calibration] = None
    relative: Optional[RelativePose] = None
    matches: Optional[FeatureMatches] = None
    F: Optional[np.ndarray] = None
    image_size: Optional[Tuple[int, int]] = None   # (w,h)
    baseline_scale: float = 1.0


# -----------------------------
# Rectification
# -----------------------------

@dataclass(frozen=True)
class RemapTransform:
    map_x: np.ndarray  # (H,W) float32 source x per destination pixel
    map_y: np.ndarray  # (H,W) float32 source y per destination pixel

    @property
    def size(self) -> Tuple[int, int]:
        h, w = self.map_x.shape[:2]
        return w, h


@dataclass(frozen=True)
class HomographyTransform:
    H: np.ndarray  # (3,3)


Transform = Union[RemapTransform, HomographyTransform]


@dataclass(frozen=True)
class RectificationResult:
    transform1: Transform
    transform2: Transform
    new_size: Tuple[int, int]     # (w,h) of the rectified images
    Q: Optional[np.ndarray] = None   # (4,4) disparity-to-depth, calibrated only
    R1: Optional[np.ndarray] = None
    R2: Optional[np.ndarray] = None
    P1: Optional[np.ndarray] = None
    P2: Optional[np.ndarray] = None
    quality_warning: bool = False


# -----------------------------
# Disparity
# -----------------------------

@dataclass(frozen=True)
class DisparityRange:
    minimum: float
    maximum: float


@dataclass(frozen=True)
class MatcherWindow:
    min_disparity: int
    num_disparities: int

    @property
    def max_disparity(self) -> int:
        return self.min_disparity + self.num_disparities


@dataclass(frozen=True)
class DisparityResult:
    disparity: np.ndarray     # (H,W) float32, nan = no match
    rectified1: np.ndarray
    rectified2: np.ndarray
    window: MatcherWindow
    has_data: bool
    rectification: Optional[RectificationResult] = None
    unwarped: bool = False
