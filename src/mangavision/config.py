"""Configuration dataclasses for mangavision.

ProcessingOptions holds everything that changes the pixels or the detections
and is therefore part of the cache key. RuntimeConfig holds host-side knobs
(model location, timeouts, concurrency) that do not change results.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import UnsupportedOption

BINARIZATION_METHODS = ("adaptive", "otsu", "sauvola")
READING_DIRECTIONS = ("ltr", "rtl")
NMS_MODES = ("agnostic", "class_aware")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    """Convert a camelCase option name to snake_case (adaptiveC -> adaptive_c)."""
    return _CAMEL_RE.sub("_", name).lower()


def _check_range(name: str, value: Any, low: float, high: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UnsupportedOption(f"{name} must be a number, got {value!r}")
    if not (low <= value <= high):
        raise UnsupportedOption(f"{name}={value} outside [{low}, {high}]")


def _check_int(name: str, value: Any, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnsupportedOption(f"{name} must be an integer, got {value!r}")
    _check_range(name, value, low, high)


@dataclass(frozen=True)
class ProcessingOptions:
    """Options for preprocessing and detection.

    Values are validated on construction; an invalid value raises
    UnsupportedOption instead of being clamped later in the pipeline.
    """

    # Stage toggles
    enable_denoising: bool = True
    enable_binarization: bool = True
    enable_deskewing: bool = True
    enable_contrast_enhancement: bool = True
    enable_panel_detection: bool = True
    screen_tone_removal: bool = True
    auto_invert: bool = True          # Fix white-on-black pages before thresholding

    # Resize bounds (pixels, longest side)
    max_dimension: int = 2048
    min_dimension: int = 400

    # Denoising
    denoise_strength: float = 10.0    # fastNlMeans filter strength (0-30)
    use_accelerated_backend: bool = True  # OpenCV NL-means/CLAHE vs median/global equalization

    # Binarization
    binarization_method: str = "adaptive"
    adaptive_block_size: int = 15     # Window size (must be odd)
    adaptive_c: float = 10.0          # Offset subtracted from the local mean

    # Deskewing (degrees)
    max_skew_angle: float = 15.0
    skew_correction_threshold: float = 0.5

    # Contrast (CLAHE)
    contrast_clip_limit: float = 2.0
    contrast_tile_size: int = 8

    # Screentone band on 5x5 local variance
    screen_tone_variance_min: float = 100.0
    screen_tone_variance_max: float = 2000.0

    # Detection
    confidence_threshold: float = 0.75           # ML detections
    heuristic_confidence_threshold: float = 0.6  # Heuristic detections
    nms_threshold: float = 0.3
    nms_mode: str = "agnostic"
    merge_iou_threshold: float = 0.5
    max_detections: int = 50
    tail_neighbor_threshold: int = 3  # Edge neighbours below which a point counts as a tail tip
    reading_direction: str = "ltr"

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            if f.type in ("bool", bool) and not isinstance(getattr(self, f.name), bool):
                raise UnsupportedOption(f"{f.name} must be a boolean")

        if self.binarization_method not in BINARIZATION_METHODS:
            raise UnsupportedOption(
                f"Unknown binarization method {self.binarization_method!r}; "
                f"expected one of {', '.join(BINARIZATION_METHODS)}"
            )
        if self.reading_direction not in READING_DIRECTIONS:
            raise UnsupportedOption(
                f"Unknown reading direction {self.reading_direction!r}"
            )
        if self.nms_mode not in NMS_MODES:
            raise UnsupportedOption(f"Unknown NMS mode {self.nms_mode!r}")

        _check_int("min_dimension", self.min_dimension, 1, 32768)
        _check_int("max_dimension", self.max_dimension, 1, 32768)
        if self.min_dimension > self.max_dimension:
            raise UnsupportedOption(
                f"min_dimension ({self.min_dimension}) exceeds "
                f"max_dimension ({self.max_dimension})"
            )
        _check_range("denoise_strength", self.denoise_strength, 0, 30)
        _check_int("adaptive_block_size", self.adaptive_block_size, 3, 255)
        if self.adaptive_block_size % 2 == 0:
            raise UnsupportedOption("adaptive_block_size must be odd")
        _check_range("adaptive_c", self.adaptive_c, -255, 255)
        _check_range("max_skew_angle", self.max_skew_angle, 0, 45)
        _check_range("skew_correction_threshold", self.skew_correction_threshold, 0, 45)
        _check_range("contrast_clip_limit", self.contrast_clip_limit, 0.01, 100)
        _check_int("contrast_tile_size", self.contrast_tile_size, 1, 64)
        _check_range("screen_tone_variance_min", self.screen_tone_variance_min, 0, 65025)
        _check_range("screen_tone_variance_max", self.screen_tone_variance_max, 0, 65025)
        if self.screen_tone_variance_min >= self.screen_tone_variance_max:
            raise UnsupportedOption("screen_tone_variance_min must be below the max")
        _check_range("confidence_threshold", self.confidence_threshold, 0, 1)
        _check_range(
            "heuristic_confidence_threshold", self.heuristic_confidence_threshold, 0, 1
        )
        _check_range("nms_threshold", self.nms_threshold, 0, 1)
        _check_range("merge_iou_threshold", self.merge_iou_threshold, 0, 1)
        _check_int("max_detections", self.max_detections, 1, 10000)
        _check_int("tail_neighbor_threshold", self.tail_neighbor_threshold, 1, 8)

    @property
    def rtl(self) -> bool:
        return self.reading_direction == "rtl"

    def replace(self, **changes: Any) -> "ProcessingOptions":
        """Return a validated copy with some fields changed."""
        return self.from_dict({**self.to_dict(), **changes})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization and cache keys."""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingOptions":
        """Create from a dictionary using snake_case or camelCase keys.

        Raises:
            UnsupportedOption: for keys that are not recognized options
        """
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = key if key in known else _snake(key)
            if name not in known:
                raise UnsupportedOption(f"Unknown option {key!r}")
            kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class RuntimeConfig:
    """Host-side settings that never change detection results."""

    model_path: Optional[str] = None   # YOLO weights; None = heuristic only
    device: Optional[str] = None       # 'cpu', 'cuda', 'mps'; None lets ultralytics choose
    model_input_size: int = 640
    model_load_timeout: float = 10.0   # seconds
    ml_timeout: float = 10.0           # seconds, per invocation
    detection_timeout: float = 30.0    # seconds, per invocation
    max_concurrency: int = 2
    cache_size: int = 50

    def __post_init__(self) -> None:
        _check_int("model_input_size", self.model_input_size, 32, 4096)
        _check_range("model_load_timeout", self.model_load_timeout, 0.001, 3600)
        _check_range("ml_timeout", self.ml_timeout, 0.001, 3600)
        _check_range("detection_timeout", self.detection_timeout, 0.001, 3600)
        _check_int("max_concurrency", self.max_concurrency, 1, 64)
        _check_int("cache_size", self.cache_size, 1, 100000)


# Preset configurations for different reading formats
PRESETS: Dict[str, ProcessingOptions] = {
    "Manga": ProcessingOptions(
        reading_direction="rtl",
        screen_tone_removal=True,
    ),
    "Manhwa": ProcessingOptions(
        reading_direction="ltr",
        screen_tone_removal=False,
    ),
    "Webtoon": ProcessingOptions(
        reading_direction="ltr",
        max_dimension=4096,
        enable_deskewing=False,
        screen_tone_removal=False,
    ),
}


def get_preset(name: str) -> ProcessingOptions:
    """Look up a preset by name (case-insensitive)."""
    for preset_name, options in PRESETS.items():
        if preset_name.lower() == name.lower():
            return options
    raise UnsupportedOption(f"Unknown preset {name!r}; available: {', '.join(PRESETS)}")
