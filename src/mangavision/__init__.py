"""mangavision - manga page preprocessing and bubble/panel detection.

Typical use::

    from mangavision import MangaVisionPipeline, ProcessingOptions

    with MangaVisionPipeline(ProcessingOptions(reading_direction="rtl")) as pipeline:
        detections = pipeline.detect(page)
        ocr_image = pipeline.prepare_for_ocr(page)
"""

from __future__ import annotations

from .async_detection import AsyncDetectionManager, DetectionResult
from .cache import LRUCache, ResultCache
from .config import PRESETS, ProcessingOptions, RuntimeConfig, get_preset
from .errors import (
    InvalidInput,
    MangaVisionError,
    ModelUnavailable,
    ProcessingTimeout,
    UnsupportedOption,
)
from .image_utils import PixelBuffer, normalize_input
from .models import Detection, DetectionClass, DetectionSet, DetectionSource, PanelLayout
from .pipeline import MangaVisionPipeline, PageAnalysis

__version__ = "1.0.0"

__all__ = [
    "AsyncDetectionManager",
    "Detection",
    "DetectionClass",
    "DetectionResult",
    "DetectionSet",
    "DetectionSource",
    "InvalidInput",
    "LRUCache",
    "MangaVisionError",
    "MangaVisionPipeline",
    "ModelUnavailable",
    "PRESETS",
    "PageAnalysis",
    "PanelLayout",
    "PixelBuffer",
    "ProcessingOptions",
    "ProcessingTimeout",
    "ResultCache",
    "RuntimeConfig",
    "UnsupportedOption",
    "get_preset",
    "normalize_input",
    "__version__",
]
