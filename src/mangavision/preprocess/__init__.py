"""Image preprocessing for OCR: resize, cleanup, deskew and binarization."""

from .filters import (
    correct_inversion,
    enhance_contrast,
    remove_screen_tones,
    resize_to_optimal,
    to_grayscale,
)
from .pipeline import PreprocessingPipeline, PreprocessResult
from .skew import SkewEstimator, rotate_buffer
from .thresholding import binarize, otsu_threshold

__all__ = [
    "PreprocessingPipeline",
    "PreprocessResult",
    "SkewEstimator",
    "binarize",
    "correct_inversion",
    "enhance_contrast",
    "otsu_threshold",
    "remove_screen_tones",
    "resize_to_optimal",
    "rotate_buffer",
    "to_grayscale",
]
