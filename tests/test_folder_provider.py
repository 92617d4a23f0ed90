"""Tests for reading and writing capture folders."""

import numpy as np
import pytest
import cv2
from numpy.testing import assert_allclose, assert_array_equal

from mvs_stereo.types import Calibration, InputNotFoundError, MalformedDataError
from mvs_stereo.core.stereo.calib import calibration_from_intrinsics, scale_calibration
from mvs_stereo.providers.folder_provider import (
    CALIBRATION_FILE,
    FolderProvider,
    find_frame,
    frame_filename,
    image_path,
    load_calibration,
    load_frame,
    load_image,
    load_pose,
    save_calibration,
    save_pose,
)


class TestCalibrationFile:

    def test_round_trip(self, tmp_path):
        calib = calibration_from_intrinsics(
            812.5, 810.25, 401.0, 299.5, (800, 600), distortion=(-0.1, 0.02, 0.001, -0.002)
        )
        save_calibration(tmp_path, calib)

        loaded = load_calibration(tmp_path)

        assert_allclose(loaded.camera, calib.camera)
        assert_allclose(loaded.distortion, calib.distortion)
        assert loaded.image_size == (800, 600)
        assert not loaded.is_undistorted

    def test_missing_file(self, tmp_path):
        with pytest.raises(InputNotFoundError):
            load_calibration(tmp_path)

    def test_missing_key(self, tmp_path):
        fs = cv2.FileStorage(str(tmp_path / CALIBRATION_FILE), cv2.FILE_STORAGE_WRITE)
        fs.write("camera", np.eye(3))
        fs.release()

        with pytest.raises(MalformedDataError):
            load_calibration(tmp_path)

    def test_camera_must_be_3x3(self, tmp_path):
        fs = cv2.FileStorage(str(tmp_path / CALIBRATION_FILE), cv2.FILE_STORAGE_WRITE)
        fs.write("camera", np.eye(2))
        fs.write("distortion", np.zeros((4, 1)))
        fs.write("image_size", np.array([[640.0, 480.0]]))
        fs.release()

        with pytest.raises(MalformedDataError):
            load_calibration(tmp_path)

    def test_image_size_as_matrix(self, tmp_path):
        fs = cv2.FileStorage(str(tmp_path / CALIBRATION_FILE), cv2.FILE_STORAGE_WRITE)
        fs.write("camera", np.eye(3))
        fs.write("distortion", np.zeros((5, 1)))
        fs.write("image_size", np.array([[640.0, 480.0]]))
        fs.release()

        calib = load_calibration(tmp_path)

        assert calib.image_size == (640, 480)
        assert calib.is_undistorted


class TestCalibrationValues:

    def test_bottom_right_must_be_one(self):
        K = np.eye(3)
        K[2, 2] = 2.0
        with pytest.raises(MalformedDataError):
            Calibration.create(K, np.zeros(4), (10, 10))

    def test_too_many_distortion_coefficients(self):
        with pytest.raises(MalformedDataError):
            Calibration.create(np.eye(3), np.zeros(8), (10, 10))

    def test_non_positive_size(self):
        with pytest.raises(MalformedDataError):
            Calibration.create(np.eye(3), np.zeros(4), (0, 10))

    def test_arrays_are_read_only(self):
        calib = calibration_from_intrinsics(1.0, 1.0, 0.0, 0.0, (4, 4))
        with pytest.raises(ValueError):
            calib.camera[0, 0] = 5.0

    def test_scale_calibration(self):
        calib = calibration_from_intrinsics(1000.0, 1000.0, 640.0, 480.0, (1280, 960))
        half = scale_calibration(calib, 0.5)
        assert_allclose(half.camera[:2], [[500.0, 0, 320.0], [0, 500.0, 240.0]])
        assert half.image_size == (640, 480)


class TestFrames:

    def test_pose_round_trip(self, tmp_path):
        pose = np.arange(16, dtype=np.float64).reshape(4, 4)
        save_pose(tmp_path, 7, pose)

        assert (tmp_path / "pose_0007.xml").exists()
        assert_array_equal(load_pose(tmp_path, 7), pose)

    def test_pose_wrong_size(self, tmp_path):
        fs = cv2.FileStorage(str(tmp_path / frame_filename("pose", 0, "xml")), cv2.FILE_STORAGE_WRITE)
        fs.write("pose", np.eye(3))
        fs.release()

        with pytest.raises(MalformedDataError):
            load_pose(tmp_path, 0)

    def test_jpg_preferred_over_png(self, tmp_path):
        img = np.zeros((8, 8, 3), np.uint8)
        cv2.imwrite(str(tmp_path / "image_0001.png"), img)
        assert image_path(tmp_path, 1).suffix == ".png"

        cv2.imwrite(str(tmp_path / "image_0001.jpg"), img)
        assert image_path(tmp_path, 1).suffix == ".jpg"

    def test_missing_image(self, tmp_path):
        assert image_path(tmp_path, 3) is None
        with pytest.raises(InputNotFoundError):
            load_image(tmp_path, 3)

    def test_missing_pose(self, tmp_path):
        cv2.imwrite(str(tmp_path / "image_0000.png"), np.zeros((8, 8, 3), np.uint8))
        with pytest.raises(InputNotFoundError):
            load_frame(tmp_path, 0)

    def test_find_frame(self, capture_folder):
        assert find_frame(capture_folder, 5) is None
        frame = find_frame(capture_folder, 1)
        assert frame.id == 1
        assert frame.size == (320, 240)
        assert frame.pose[0, 3] == -0.1


class TestFolderProvider:

    def test_missing_folder(self, tmp_path):
        with pytest.raises(InputNotFoundError):
            FolderProvider(tmp_path / "nope")

    def test_frames(self, capture_folder):
        provider = FolderProvider(capture_folder)

        assert provider.calibration.image_size == (320, 240)
        assert provider.frame(0).image.shape == (240, 320, 3)
        assert provider.find(9) is None
        assert provider.has_image(2)
        assert not provider.has_image(3)

    def test_size_mismatch_with_calibration(self, capture_folder):
        cv2.imwrite(str(capture_folder / "image_0003.png"), np.zeros((100, 100, 3), np.uint8))
        save_pose(capture_folder, 3, np.eye(4))

        with pytest.raises(MalformedDataError):
            FolderProvider(capture_folder).frame(3)
