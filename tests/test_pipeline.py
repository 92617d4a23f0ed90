"""End-to-end tests for the pair pipeline, output writing and batch runs."""

import sys
import zipfile
from dataclasses import replace

import numpy as np
import pytest
import cv2

from mvs_stereo.config import PipelineConfig, RectifyParams
from mvs_stereo.types import (
    DisparityResult,
    Frame,
    GeometricDegeneracyError,
    MalformedDataError,
    MatcherWindow,
    StereoPipelineError,
)
from mvs_stereo.frontend.pipeline import PipelineState, StereoPipeline, run_batch, write_outputs
from mvs_stereo.scripts import hartley, stereo_batch, stereo_pair
from mvs_stereo.scripts._cli import run_main

from synthetic import rigid, textured_pair, two_plane_pair


@pytest.fixture
def pair_config(capture_folder, tmp_path):
    return PipelineConfig(
        input_folder=str(capture_folder),
        output_folder=str(tmp_path / "out"),
        index1=0,
        index2=1,
    )


class TestStereoPipeline:

    def test_calibrated_pair(self, pair_config):
        """A pure sideways move over a textured plane gives a constant disparity of about 8 px."""
        pipeline = StereoPipeline(pair_config)

        result = pipeline.run()

        assert pipeline.state is PipelineState.DONE
        assert result.has_data
        assert result.unwarped
        assert result.disparity.shape == (240, 320)
        assert result.disparity.dtype == np.float32
        assert result.window.min_disparity == 0
        assert result.window.num_disparities == 80
        assert result.rectified1.shape == (240, 320, 3)

        valid = result.disparity[np.isfinite(result.disparity)]
        assert valid.size > 0.3 * result.disparity.size
        assert abs(float(np.median(valid)) - 8.0) < 1.0

    def test_keep_rectified_coordinates(self, pair_config):
        config = replace(pair_config, rectify=RectifyParams(unwarp_disparity=False))

        result = StereoPipeline(config).run()

        assert not result.unwarped
        assert result.disparity.shape == result.rectified1.shape[:2]

    def test_zero_baseline_is_degenerate(self, pair_config):
        pipeline = StereoPipeline(replace(pair_config, index1=1, index2=2))

        with pytest.raises(GeometricDegeneracyError):
            pipeline.run()
        assert pipeline.state is PipelineState.RECTIFY

    def test_rotated_zero_baseline_is_degenerate(self, pair_config, small_calibration):
        """Same rotated pose twice: the relative translation is round-off only."""
        left, right = textured_pair(320, 240, shift=8)
        pose = rigid([0.2, -0.4, 0.1], [3.0, -1.0, 12.0])
        pipeline = StereoPipeline(pair_config)

        with pytest.raises(GeometricDegeneracyError):
            pipeline.run_calibrated(small_calibration, Frame(0, left, pose), Frame(1, right, pose.copy()))
        assert pipeline.state is PipelineState.RECTIFY

    def test_strategy_comes_from_config(self, small_calibration, tmp_path):
        """Posed frames fed to a pipeline configured for matches are rejected in RECTIFY."""
        config = PipelineConfig(output_folder=str(tmp_path), rectify=RectifyParams(strategy="uncalibrated"))
        left, right = textured_pair(320, 240, shift=8)
        pose2 = np.eye(4)
        pose2[0, 3] = -0.1
        pipeline = StereoPipeline(config)

        with pytest.raises(MalformedDataError):
            pipeline.run_calibrated(small_calibration, Frame(0, left, np.eye(4)), Frame(1, right, pose2))
        assert pipeline.state is PipelineState.RECTIFY

    def test_uncalibrated_blank_images(self, tmp_path):
        config = PipelineConfig(output_folder=str(tmp_path), rectify=RectifyParams(strategy="uncalibrated"))
        blank = np.zeros((120, 160, 3), np.uint8)

        with pytest.raises(GeometricDegeneracyError):
            StereoPipeline(config).run_uncalibrated(blank, blank)

    def test_uncalibrated_size_mismatch(self, tmp_path):
        config = PipelineConfig(output_folder=str(tmp_path), rectify=RectifyParams(strategy="uncalibrated"))

        with pytest.raises(StereoPipelineError):
            StereoPipeline(config).run_uncalibrated(
                np.zeros((120, 160, 3), np.uint8), np.zeros((100, 160, 3), np.uint8)
            )


class TestUncalibratedPipeline:

    def test_two_plane_scene(self, tmp_path):
        config = PipelineConfig(output_folder=str(tmp_path), rectify=RectifyParams(strategy="uncalibrated"))
        left, right = two_plane_pair()
        pipeline = StereoPipeline(config)

        result = pipeline.run_uncalibrated(left, right)

        assert pipeline.state is PipelineState.DONE
        assert result.has_data
        assert result.unwarped
        assert result.disparity.shape == (240, 320)
        assert result.window.min_disparity % 16 == 0
        assert result.window.num_disparities % 16 == 0
        assert result.window.num_disparities > 0
        assert result.rectification.Q is None
        assert np.count_nonzero(np.isfinite(result.disparity)) > 0.1 * result.disparity.size

    def test_inputs_are_resized(self, tmp_path):
        config = PipelineConfig(
            output_folder=str(tmp_path),
            rectify=RectifyParams(strategy="uncalibrated", max_dimension=256),
        )
        left, right = two_plane_pair()

        result = StereoPipeline(config).run_uncalibrated(left, right)

        assert result.has_data
        assert result.rectified1.shape == (192, 256, 3)
        assert result.disparity.shape == (192, 256)


class TestOutputs:

    def test_file_names(self, pair_config):
        config = replace(pair_config, unique_name="scene", preview=True)
        result = StereoPipeline(config).run()

        paths = write_outputs(result, config)

        assert [p.name for p in paths] == [
            "scene_LEFT_rectified.png",
            "scene_RIGHT_rectified.png",
            "scene_disparity.tiff",
            "scene_disparity_preview.png",
        ]
        assert all(p.exists() for p in paths)
        disparity = cv2.imread(str(paths[2]), cv2.IMREAD_UNCHANGED)
        assert disparity.dtype == np.float32
        assert disparity.shape == (240, 320)

    def test_zip(self, pair_config):
        config = replace(pair_config, unique_name="scene", zip_output=True)
        result = StereoPipeline(config).run()

        paths = write_outputs(result, config)

        assert len(paths) == 1
        assert paths[0].name == "scene.zip"
        with zipfile.ZipFile(paths[0]) as zf:
            assert sorted(zf.namelist()) == [
                "scene_LEFT_rectified.png",
                "scene_RIGHT_rectified.png",
                "scene_disparity.tiff",
            ]
        assert not (paths[0].parent / "scene").exists()

    def test_failed_write_raises(self, tmp_path, monkeypatch):
        d = np.zeros((4, 4), np.float32)
        img = np.zeros((4, 4, 3), np.uint8)
        result = DisparityResult(d, img, img, MatcherWindow(0, 16), has_data=True)
        monkeypatch.setattr(cv2, "imwrite", lambda *args, **kwargs: False)

        with pytest.raises(StereoPipelineError):
            write_outputs(result, PipelineConfig(output_folder=str(tmp_path), unique_name="x"))


class TestBatch:

    def test_missing_and_degenerate_pairs_are_skipped(self, pair_config):
        summary = run_batch(pair_config, 0, 3)

        assert summary.processed == [(0, 1)]
        assert summary.degenerate == [(1, 2)]
        assert summary.missing == [(2, 3)]
        assert summary.no_data == []
        out = pair_config.output_folder
        assert cv2.imread(f"{out}/pair_0000_0001_disparity.tiff", cv2.IMREAD_UNCHANGED) is not None

    def test_gap_and_step(self, pair_config):
        summary = run_batch(pair_config, 0, 4, step=2, gap=2)

        # frame 2 sits where frame 1 does, so 0 -> 2 is a valid pair
        assert summary.processed == [(0, 2)]
        assert summary.missing == [(2, 4)]
        assert summary.degenerate == []


class TestCommandLine:

    def test_stereo_pair(self, capture_folder, tmp_path, monkeypatch):
        out = tmp_path / "cli"
        monkeypatch.setattr(sys, "argv", [
            "stereo_pair", "--input", str(capture_folder), "--output", str(out),
            "--index1", "0", "--index2", "1", "--name", "cli",
        ])

        assert stereo_pair.main() == 0
        assert (out / "cli_disparity.tiff").exists()

    def test_stereo_batch_nothing_processed(self, capture_folder, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", [
            "stereo_batch", "--input", str(capture_folder), "--output", str(tmp_path / "b"),
            "--start", "1", "--stop", "3",
        ])

        assert stereo_batch.main() == 1

    def test_hartley(self, tmp_path, monkeypatch):
        left, right = two_plane_pair()
        cv2.imwrite(str(tmp_path / "left.png"), left)
        cv2.imwrite(str(tmp_path / "right.png"), right)
        out = tmp_path / "hartley"
        monkeypatch.setattr(sys, "argv", [
            "hartley", "--left", str(tmp_path / "left.png"), "--right", str(tmp_path / "right.png"),
            "--output", str(out), "--name", "scene",
        ])

        assert hartley.main() == 0
        disparity = cv2.imread(str(out / "scene_disparity.tiff"), cv2.IMREAD_UNCHANGED)
        assert disparity.shape == (240, 320)

    def test_missing_input_exits_with_message(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", [
            "stereo_pair", "--input", str(tmp_path / "none"), "--output", str(tmp_path),
            "--index1", "0", "--index2", "1",
        ])

        with pytest.raises(SystemExit) as exc:
            run_main(stereo_pair.main)

        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("Error: ")

    def test_opencv_error_exits_with_message(self, capsys):
        def main():
            cv2.cvtColor(np.zeros((2, 2, 5), np.uint8), cv2.COLOR_BGR2GRAY)
            return 0

        with pytest.raises(SystemExit) as exc:
            run_main(main)

        assert exc.value.code == 1
        err = capsys.readouterr().err
        assert err.startswith("Error: ")
        assert "Traceback" not in err
