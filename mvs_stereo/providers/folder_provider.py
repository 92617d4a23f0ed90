'''
Loads a capture folder:
  Calibration.xml          camera (3x3), distortion (4x1 or 5x1), image_size [w, h]
  image_XXXX.jpg           colour frames
  pose_XXXX.xml            pose (4x4, row-major rigid transform)
Matrices use OpenCV's FileStorage XML format.
'''
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import cv2

from mvs_stereo.types import (
    Calibration,
    Frame,
    InputNotFoundError,
    MalformedDataError,
)

logger = logging.getLogger(__name__)

CALIBRATION_FILE = "Calibration.xml"
IMAGE_EXTENSIONS = ("jpg", "png")


def frame_filename(prefix: str, index: int, ext: str) -> str:
    return f"{prefix}_{index:04d}.{ext}"


# ---------- FileStorage helpers ----------

def _open_reader(path: Path) -> cv2.FileStorage:
    if not path.exists():
        raise InputNotFoundError(f"Unable to open: {path}")
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise InputNotFoundError(f"Unable to open: {path}")
    return fs


def _read_mat(fs: cv2.FileStorage, key: str, path: Path) -> np.ndarray:
    node = fs.getNode(key)
    if node.empty():
        raise MalformedDataError(f"'{key}' not found in {path}")
    mat = node.mat()
    if mat is None or mat.size == 0:
        raise MalformedDataError(f"'{key}' in {path} is not a matrix")
    return mat.astype(np.float64)


def _read_size(fs: cv2.FileStorage, key: str, path: Path) -> Tuple[int, int]:
    node = fs.getNode(key)
    if node.empty():
        raise MalformedDataError(f"'{key}' not found in {path}")
    if node.isSeq():
        values = [node.at(i).real() for i in range(node.size())]
    else:
        mat = node.mat()
        values = [] if mat is None else mat.reshape(-1).tolist()
    if len(values) != 2:
        raise MalformedDataError(f"'{key}' in {path} must hold two values (width, height)")
    return int(values[0]), int(values[1])


# ---------- calibration ----------

def load_calibration(folder: str | Path) -> Calibration:
    path = Path(folder) / CALIBRATION_FILE
    fs = _open_reader(path)
    try:
        camera = _read_mat(fs, "camera", path)
        distortion = _read_mat(fs, "distortion", path)
        image_size = _read_size(fs, "image_size", path)
    finally:
        fs.release()

    if camera.shape != (3, 3):
        raise MalformedDataError(f"camera in {path} must be 3x3, got {camera.shape}")
    return Calibration.create(camera, distortion, image_size)


def save_calibration(folder: str | Path, calibration: Calibration) -> Path:
    path = Path(folder) / CALIBRATION_FILE
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("camera", np.asarray(calibration.camera, dtype=np.float64))
    fs.write("distortion", np.asarray(calibration.distortion, dtype=np.float64).reshape(-1, 1))
    fs.startWriteStruct("image_size", cv2.FileNode_SEQ | cv2.FileNode_FLOW)
    fs.write("", int(calibration.image_size[0]))
    fs.write("", int(calibration.image_size[1]))
    fs.endWriteStruct()
    fs.release()
    return path


# ---------- poses and images ----------

def pose_path(folder: str | Path, index: int) -> Path:
    return Path(folder) / frame_filename("pose", index, "xml")


def image_path(folder: str | Path, index: int) -> Optional[Path]:
    for ext in IMAGE_EXTENSIONS:
        p = Path(folder) / frame_filename("image", index, ext)
        if p.exists():
            return p
    return None


def load_pose(folder: str | Path, index: int) -> np.ndarray:
    path = pose_path(folder, index)
    fs = _open_reader(path)
    try:
        pose = _read_mat(fs, "pose", path)
    finally:
        fs.release()

    if pose.size != 16:
        raise MalformedDataError(f"pose in {path} must be 4x4, got {pose.shape}")
    return pose.reshape(4, 4)


def save_pose(folder: str | Path, index: int, pose: np.ndarray) -> Path:
    path = pose_path(folder, index)
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("pose", np.asarray(pose, dtype=np.float64).reshape(4, 4))
    fs.release()
    return path


def load_image(folder: str | Path, index: int) -> np.ndarray:
    path = image_path(folder, index)
    if path is None:
        raise InputNotFoundError(f"Unable to find: {Path(folder) / frame_filename('image', index, 'jpg')}")
    return read_image(path)


def read_image(path: str | Path) -> np.ndarray:
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise InputNotFoundError(f"Failed to read image: {path}")
    return img


def load_frame(folder: str | Path, index: int) -> Frame:
    image = load_image(folder, index)
    pose = load_pose(folder, index)
    return Frame(id=index, image=image, pose=pose)


def find_frame(folder: str | Path, index: int) -> Optional[Frame]:
    """Like load_frame, but returns None when the image or pose file is absent."""
    if image_path(folder, index) is None or not pose_path(folder, index).exists():
        return None
    return load_frame(folder, index)


def check_frame_matches_calibration(frame: Frame, calibration: Calibration) -> None:
    if frame.size != tuple(calibration.image_size):
        raise MalformedDataError(
            f"frame {frame.id} is {frame.size[0]}x{frame.size[1]}, "
            f"calibration expects {calibration.image_size[0]}x{calibration.image_size[1]}"
        )


class FolderProvider:
    def __init__(self, folder: str | Path):
        self.folder = Path(folder)
        if not self.folder.is_dir():
            raise InputNotFoundError(f"Input folder not found: {self.folder}")
        self._calibration: Optional[Calibration] = None

    @property
    def calibration(self) -> Calibration:
        # calibration is immutable, read it once per provider
        if self._calibration is None:
            logger.info(f"Loading calibration from {self.folder / CALIBRATION_FILE}")
            self._calibration = load_calibration(self.folder)
        return self._calibration

    def frame(self, index: int) -> Frame:
        frame = load_frame(self.folder, index)
        check_frame_matches_calibration(frame, self.calibration)
        return frame

    def find(self, index: int) -> Optional[Frame]:
        frame = find_frame(self.folder, index)
        if frame is not None:
            check_frame_matches_calibration(frame, self.calibration)
        return frame

    def has_image(self, index: int) -> bool:
        return image_path(self.folder, index) is not None
