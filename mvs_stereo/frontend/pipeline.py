# mvs_stereo/frontend/pipeline.py
# Orchestrates one stereo pair:
#   LOAD_INPUTS -> COMPUTE_RELATIVE_POSE -> RECTIFY -> WARP -> MATCH -> POST_PROCESS -> DONE
# Any exception aborts the run; nothing is retried here.
from __future__ import annotations

import enum
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import cv2

from mvs_stereo.config import PipelineConfig
from mvs_stereo.types import (
    Calibration,
    DisparityResult,
    Frame,
    GeometricDegeneracyError,
    MatcherWindow,
    RectificationInputs,
    RectificationResult,
    StereoPipelineError,
)
from mvs_stereo.core.pose import relative_pose, translation_scale
from mvs_stereo.core.stereo.rectify import make_rectifier
from mvs_stereo.core.stereo.warp import warp_pair, resize_to_max_dimension
from mvs_stereo.core.stereo.features import (
    detect_and_match,
    fundamental_matrix,
    sampson_error_stats,
)
from mvs_stereo.core.stereo.disparity_range import estimate_disparity_range, matcher_window
from mvs_stereo.core.stereo.stereo_match import compute_fixed_point_disparity, invalid_fixed_point
from mvs_stereo.core.stereo.disparity import (
    decode_disparity,
    disparity_preview,
    has_valid_disparity,
    unwarp_disparity,
    valid_fraction,
)
from mvs_stereo.providers.folder_provider import (
    FolderProvider,
    check_frame_matches_calibration,
    load_image,
)

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    IDLE = "idle"
    LOAD_INPUTS = "load_inputs"
    COMPUTE_RELATIVE_POSE = "compute_relative_pose"
    RECTIFY = "rectify"
    WARP = "warp"
    MATCH = "match"
    POST_PROCESS = "post_process"
    DONE = "done"


def calibrated_window(rect: RectificationResult) -> MatcherWindow:
    # Posed pairs carry no matches to bound the search: allow up to a quarter of
    # the width, on the side given by the baseline sign (P2[0,3] < 0: camera 2 on the right)
    num = max(16, (rect.new_size[0] // 4) // 16 * 16)
    if rect.P2 is not None and rect.P2[0, 3] > 0:
        return MatcherWindow(min_disparity=-num, num_disparities=num)
    return MatcherWindow(min_disparity=0, num_disparities=num)


class StereoPipeline:
    def __init__(self, config: PipelineConfig):
        self.config = config
        self.state = PipelineState.IDLE

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        logger.debug(f"[{self.config.name}] -> {state.value}")

    # ---------- entry points ----------

    def run(self) -> DisparityResult:
        """Load the configured pair and run the configured strategy."""
        t0 = time.perf_counter()
        self._enter(PipelineState.LOAD_INPUTS)
        provider = FolderProvider(self.config.input_folder)

        if self.config.rectify.strategy == "calibrated":
            logger.info("Loading calibration information")
            calibration = provider.calibration
            logger.info(f"Loading frames {self.config.index1} and {self.config.index2}")
            result = self.run_calibrated(
                calibration, provider.frame(self.config.index1), provider.frame(self.config.index2)
            )
        else:
            # images only; no calibration file needed
            logger.info(f"Loading images {self.config.index1} and {self.config.index2}")
            result = self.run_uncalibrated(
                load_image(self.config.input_folder, self.config.index1),
                load_image(self.config.input_folder, self.config.index2),
            )

        logger.info(f"Time passed in seconds: {time.perf_counter() - t0:.3f}")
        return result

    def run_calibrated(self, calibration: Calibration, frame1: Frame, frame2: Frame) -> DisparityResult:
        self._enter(PipelineState.LOAD_INPUTS)
        check_frame_matches_calibration(frame1, calibration)
        check_frame_matches_calibration(frame2, calibration)

        self._enter(PipelineState.COMPUTE_RELATIVE_POSE)
        rel = relative_pose(frame1.pose, frame2.pose)
        logger.info(f"Relative translation: {rel.translation.reshape(-1)}")

        rect = self._rectify(RectificationInputs(
            calibration=calibration,
            relative=rel,
            baseline_scale=translation_scale(frame1.pose, frame2.pose),
        ))

        window = calibrated_window(rect)
        return self._finish(frame1.image, frame2.image, rect, window, calibration)

    def run_uncalibrated(self, image1: np.ndarray, image2: np.ndarray) -> DisparityResult:
        self._enter(PipelineState.LOAD_INPUTS)
        if image1.shape[:2] != image2.shape[:2]:
            raise StereoPipelineError(f"image sizes differ: {image1.shape[:2]} vs {image2.shape[:2]}")
        if self.config.rectify.max_dimension:
            image1, factor = resize_to_max_dimension(image1, self.config.rectify.max_dimension)
            image2, _ = resize_to_max_dimension(image2, self.config.rectify.max_dimension)
            if factor != 1.0:
                logger.info(f"Resized inputs by {factor:.3f}")

        # the posed-frame step has no counterpart here: geometry comes from matches
        self._enter(PipelineState.COMPUTE_RELATIVE_POSE)
        logger.info("Finding feature matches")
        matches = detect_and_match(image1, image2, self.config.features)

        logger.info("Calculating the fundamental matrix")
        F, inliers = fundamental_matrix(matches, self.config.features)
        err_mean, err_std = sampson_error_stats(F, inliers)
        logger.info(f"Sampson error: {err_mean:.4f} +/- {err_std:.4f}")

        h, w = image1.shape[:2]
        rect = self._rectify(RectificationInputs(matches=inliers, F=F, image_size=(w, h)))

        rng = estimate_disparity_range(rect.transform1.H, rect.transform2.H, inliers)
        window = matcher_window(rng)
        return self._finish(image1, image2, rect, window, None)

    # ---------- shared steps ----------

    def _rectify(self, inputs: RectificationInputs) -> RectificationResult:
        self._enter(PipelineState.RECTIFY)
        logger.info(f"Computing {self.config.rectify.strategy} rectification")
        return make_rectifier(self.config.rectify).rectify(inputs)

    def _finish(
        self,
        image1: np.ndarray,
        image2: np.ndarray,
        rect: RectificationResult,
        window: MatcherWindow,
        calibration: Optional[Calibration],
    ) -> DisparityResult:
        self._enter(PipelineState.WARP)
        logger.info("Warping stereo pair")
        r1, r2 = warp_pair(image1, image2, rect)

        self._enter(PipelineState.MATCH)
        raw = compute_fixed_point_disparity(r1, r2, window, self.config.matcher)

        self._enter(PipelineState.POST_PROCESS)
        disparity = decode_disparity(raw, invalid_fixed_point(window))
        has_data = has_valid_disparity(disparity)
        if not has_data:
            logger.warning(f"[{self.config.name}] matcher found no valid disparity anywhere")
        else:
            logger.info(f"Valid disparity fraction: {valid_fraction(disparity):.3f}")

        unwarped = False
        if self.config.rectify.unwarp_disparity:
            h, w = image1.shape[:2]
            disparity = unwarp_disparity(disparity, rect, (w, h), calibration)
            unwarped = True

        self._enter(PipelineState.DONE)
        return DisparityResult(
            disparity=disparity,
            rectified1=r1,
            rectified2=r2,
            window=window,
            has_data=has_data,
            rectification=rect,
            unwarped=unwarped,
        )


# ---------- outputs ----------

def _write_image(path: Path, image: np.ndarray) -> None:
    if not cv2.imwrite(str(path), image):
        raise StereoPipelineError(f"Failed to write: {path}")


def write_outputs(result: DisparityResult, config: PipelineConfig) -> List[Path]:
    out_dir = Path(config.output_folder)
    out_dir.mkdir(parents=True, exist_ok=True)
    name = config.name

    target = out_dir / name if config.zip_output else out_dir
    if config.zip_output:
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)

    paths = [
        target / f"{name}_LEFT_rectified.png",
        target / f"{name}_RIGHT_rectified.png",
        target / f"{name}_disparity.tiff",
    ]
    images = [result.rectified1, result.rectified2, result.disparity.astype(np.float32)]
    if config.preview:
        paths.append(target / f"{name}_disparity_preview.png")
        images.append(disparity_preview(result.disparity))
    for path, image in zip(paths, images):
        _write_image(path, image)

    if config.zip_output:
        archive = shutil.make_archive(str(out_dir / name), "zip", root_dir=target)
        shutil.rmtree(target)
        logger.info(f"Zip file written to {archive}")
        return [Path(archive)]

    for p in paths:
        logger.info(f"Wrote {p}")
    return paths


# ---------- batch ----------

@dataclass
class BatchSummary:
    processed: List[Tuple[int, int]] = field(default_factory=list)
    missing: List[Tuple[int, int]] = field(default_factory=list)
    degenerate: List[Tuple[int, int]] = field(default_factory=list)
    no_data: List[Tuple[int, int]] = field(default_factory=list)


def run_batch(config: PipelineConfig, start: int, stop: int, step: int = 1, gap: int = 1) -> BatchSummary:
    """
    Runs pairs (i, i + gap) for i in range(start, stop, step).
    Each iteration gets its own config; only the calibration is shared.
    Missing frames and geometric degeneracy skip the pair, other errors abort.
    """
    summary = BatchSummary()
    provider = FolderProvider(config.input_folder)
    calibrated = config.rectify.strategy == "calibrated"
    calibration = provider.calibration if calibrated else None

    for i in range(start, stop, step):
        pair = (i, i + gap)
        pair_config = config.for_pair(*pair)

        if calibrated:
            frame1, frame2 = provider.find(pair[0]), provider.find(pair[1])
            present = frame1 is not None and frame2 is not None
        else:
            present = provider.has_image(pair[0]) and provider.has_image(pair[1])
        if not present:
            logger.info(f"[{pair_config.name}] skipped: frame files missing")
            summary.missing.append(pair)
            continue

        pipeline = StereoPipeline(pair_config)
        try:
            if calibrated:
                result = pipeline.run_calibrated(calibration, frame1, frame2)
            else:
                result = pipeline.run_uncalibrated(
                    load_image(provider.folder, pair[0]), load_image(provider.folder, pair[1])
                )
        except GeometricDegeneracyError as exc:
            logger.warning(f"[{pair_config.name}] skipped: geometric degeneracy in {pipeline.state.value}: {exc}")
            summary.degenerate.append(pair)
            continue

        write_outputs(result, pair_config)
        summary.processed.append(pair)
        if not result.has_data:
            summary.no_data.append(pair)

    logger.info(
        f"Batch done: {len(summary.processed)} processed, {len(summary.missing)} missing, "
        f"{len(summary.degenerate)} degenerate, {len(summary.no_data)} without data"
    )
    return summary
