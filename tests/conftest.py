"""
Shared fixtures: a simple pinhole calibration and a capture folder written
in the on-disk layout the tools expect.
"""

import pytest
import cv2

from mvs_stereo.core.stereo.calib import calibration_from_intrinsics
from mvs_stereo.providers.folder_provider import save_calibration, save_pose, frame_filename

from synthetic import textured_pair, translation_pose


@pytest.fixture
def small_calibration():
    return calibration_from_intrinsics(300.0, 300.0, 160.0, 120.0, (320, 240))


@pytest.fixture
def capture_folder(tmp_path, small_calibration):
    """
    Frames 0 and 1 form a valid pair (frame 1 is 0.1 to the right of frame 0),
    frame 2 repeats frame 1's pose (zero baseline against frame 1).
    """
    folder = tmp_path / "capture"
    folder.mkdir()
    save_calibration(folder, small_calibration)

    left, right = textured_pair(320, 240, shift=8)
    images = [left, right, right]
    poses = [translation_pose(0.0), translation_pose(-0.1), translation_pose(-0.1)]
    for i, (img, pose) in enumerate(zip(images, poses)):
        cv2.imwrite(str(folder / frame_filename("image", i, "png")), img)
        save_pose(folder, i, pose)
    return folder
