'''
Relative pose between two posed frames.

Convention (used everywhere in this package):
    P_rel = pose2 @ inv(pose1)
Stored poses are world -> camera extrinsics, so P_rel maps camera-1
coordinates into camera-2 coordinates. That is the (R, T) pair that
cv2.stereoRectify expects.
'''
from __future__ import annotations
import numpy as np

from mvs_stereo.types import RelativePose


def pose_from_list(data_list: list[float]) -> np.ndarray:
    return np.array(data_list, dtype=np.float64).reshape(4, 4)


def invert_rigid(T: np.ndarray) -> np.ndarray:
    # [R t]^-1 = [R^T  -R^T t]
    R = T[:3, :3]
    t = T[:3, 3]
    out = np.eye(4, dtype=np.float64)
    out[:3, :3] = R.T
    out[:3, 3] = -R.T @ t
    return out


def is_rigid(T: np.ndarray, tol: float = 1e-6) -> bool:
    if T.shape != (4, 4):
        return False
    R = T[:3, :3]
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tol):
        return False
    if not np.allclose(R.T @ R, np.eye(3), atol=tol):
        return False
    return abs(np.linalg.det(R) - 1.0) < tol


def relative_pose(pose1: np.ndarray, pose2: np.ndarray) -> RelativePose:
    """
    pose1, pose2: (4,4) rigid transforms.
    returns the pose of frame 1 as seen from frame 2.
    """
    T = np.asarray(pose2, dtype=np.float64) @ invert_rigid(np.asarray(pose1, dtype=np.float64))
    return RelativePose(
        rotation=T[:3, :3].copy(),
        translation=T[:3, 3].reshape(3, 1).copy(),
    )


def translation_scale(*poses: np.ndarray) -> float:
    """Largest translation norm among the poses (scale of their round-off)."""
    return max((float(np.linalg.norm(np.asarray(T, dtype=np.float64)[:3, 3])) for T in poses), default=0.0)
