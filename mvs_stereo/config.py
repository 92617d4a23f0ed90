"""
Configuration for the stereo rectification and disparity pipeline.

Parameters are grouped into small frozen dataclasses so that every pipeline
invocation (and every iteration of a batch run) works from its own immutable
copy. A YAML file can provide any subset of the values.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from mvs_stereo.types import MalformedDataError

logger = logging.getLogger(__name__)

STRATEGIES = ("calibrated", "uncalibrated")


@dataclass(frozen=True)
class MatcherParams:
    """Semi-global block matching settings passed straight to OpenCV."""
    block_size: int = 3
    p1: int = 200
    p2: int = 2400
    disp12_max_diff: int = 1
    pre_filter_cap: int = 0
    uniqueness_ratio: int = 5      # percent
    speckle_window_size: int = 200
    speckle_range: int = 2
    mode: str = "sgbm"             # sgbm | hh | sgbm_3way | hh4


@dataclass(frozen=True)
class FeatureParams:
    """FAST + LK correspondence search used by the uncalibrated path."""
    fast_threshold: int = 5
    max_features: int = 4000
    lk_win: Tuple[int, int] = (21, 21)
    lk_max_level: int = 3
    fb_thresh: float = 1.0         # forward-backward px error
    ransac_threshold: float = 1.0  # px, fundamental matrix
    ransac_confidence: float = 0.99
    min_matches: int = 8


@dataclass(frozen=True)
class RectifyParams:
    strategy: str = "calibrated"
    zero_disparity: bool = True
    alpha: Optional[float] = None            # None: 0 with zero_disparity, -1 otherwise
    new_size: Optional[Tuple[int, int]] = None   # (w,h), None keeps the input size
    min_baseline: float = 1e-9               # relative to the pose translation scale
    hartley_threshold: float = 1.0
    warn_condition: float = 1e4
    max_condition: float = 1e8
    unwarp_disparity: bool = True
    max_dimension: Optional[int] = None      # resize inputs of the uncalibrated tool

    def resolved_alpha(self) -> float:
        if self.alpha is not None:
            return float(self.alpha)
        return 0.0 if self.zero_disparity else -1.0


@dataclass(frozen=True)
class PipelineConfig:
    """
    Everything one pipeline invocation needs.

    Attributes:
        input_folder: folder holding Calibration.xml, image_XXXX.jpg, pose_XXXX.xml
        output_folder: where results are written
        index1, index2: frame indices of the stereo pair
        unique_name: prefix for output files
        zip_output: pack the outputs into <unique_name>.zip
        preview: also write a colour-mapped disparity png
    """
    input_folder: str = "."
    output_folder: str = "."
    index1: int = 0
    index2: int = 1
    unique_name: Optional[str] = None
    zip_output: bool = False
    preview: bool = False
    rectify: RectifyParams = field(default_factory=RectifyParams)
    matcher: MatcherParams = field(default_factory=MatcherParams)
    features: FeatureParams = field(default_factory=FeatureParams)

    def __post_init__(self):
        if self.rectify.strategy not in STRATEGIES:
            raise MalformedDataError(
                f"unknown rectification strategy '{self.rectify.strategy}', expected one of {STRATEGIES}"
            )
        if self.index1 < 0 or self.index2 < 0:
            raise MalformedDataError(f"frame indices must be non-negative: {self.index1}, {self.index2}")

    @property
    def name(self) -> str:
        if self.unique_name:
            return self.unique_name
        return f"pair_{self.index1:04d}_{self.index2:04d}"

    def for_pair(self, index1: int, index2: int) -> "PipelineConfig":
        # batch iterations get a fresh copy; unique_name is derived from the indices
        return replace(self, index1=index1, index2=index2, unique_name=None)

    @classmethod
    def from_yaml(cls, config_path: str, **overrides: Any) -> "PipelineConfig":
        """
        Load configuration from a YAML file. Keyword overrides win over the file.

        Example YAML structure:
            input_folder: data/scene
            output_folder: out
            index1: 0
            index2: 1
            rectify:
              strategy: calibrated
              zero_disparity: true
            matcher:
              block_size: 3
              uniqueness_ratio: 5
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")
        return cls.from_dict(data, **overrides)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides: Any) -> "PipelineConfig":
        data = dict(data)
        rectify_data = dict(data.pop("rectify", None) or {})
        if rectify_data.get("new_size") is not None:
            rectify_data["new_size"] = tuple(rectify_data["new_size"])
        features_data = dict(data.pop("features", None) or {})
        if "lk_win" in features_data:
            features_data["lk_win"] = tuple(features_data["lk_win"])

        try:
            rectify = RectifyParams(**rectify_data)
            matcher = MatcherParams(**(data.pop("matcher", None) or {}))
            features = FeatureParams(**features_data)
            data.update({k: v for k, v in overrides.items() if v is not None})
            return cls(rectify=rectify, matcher=matcher, features=features, **data)
        except TypeError as exc:
            raise MalformedDataError(f"invalid configuration: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # tuples are not YAML-safe
        data["features"]["lk_win"] = list(self.features.lk_win)
        if self.rectify.new_size is not None:
            data["rectify"]["new_size"] = list(self.rectify.new_size)
        return data

    def to_yaml(self, config_path: str) -> None:
        with open(config_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")
