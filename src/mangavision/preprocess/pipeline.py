"""OCR preparation pipeline.

Order: resize, grayscale, inversion fix, denoise, contrast, deskew,
binarize, screentone removal. Each stage can be switched off through
ProcessingOptions; resize and grayscale always run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from numpy.typing import NDArray

from ..config import ProcessingOptions
from ..image_utils import PixelBuffer
from . import filters
from .skew import SkewEstimator, rotate_gray
from .thresholding import binarize

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreprocessResult:
    """Output of PreprocessingPipeline.run.

    Attributes:
        buffer: OCR-ready image (R=G=B, alpha from the input)
        skew_angle: Detected skew in degrees; 0.0 if below the correction
            threshold or deskewing is off
        scale: Resize factor applied to the input
        inverted: Whether the page was inverted
        stages: Names of the stages that ran, in order
    """

    buffer: PixelBuffer
    skew_angle: float
    scale: float
    inverted: bool
    stages: Tuple[str, ...]


class PreprocessingPipeline:
    """Runs the preprocessing stages with one set of options."""

    def __init__(self, options: Optional[ProcessingOptions] = None):
        self.options = options or ProcessingOptions()
        self.skew_estimator = SkewEstimator(self.options.max_skew_angle)

    def resize(self, buffer: PixelBuffer) -> Tuple[PixelBuffer, float]:
        return filters.resize_to_optimal(
            buffer, self.options.max_dimension, self.options.min_dimension
        )

    def denoise(self, gray: NDArray) -> NDArray:
        return filters.denoise(
            gray, self.options.denoise_strength, self.options.use_accelerated_backend
        )

    def enhance_contrast(self, gray: NDArray) -> NDArray:
        return filters.enhance_contrast(
            gray,
            self.options.contrast_clip_limit,
            self.options.contrast_tile_size,
            self.options.use_accelerated_backend,
        )

    def deskew(self, gray: NDArray) -> Tuple[NDArray, float]:
        """Rotate the page upright if its skew reaches the correction threshold.

        Returns:
            (image, detected angle or 0.0 when no correction was applied)
        """
        angle = self.skew_estimator.estimate(gray)
        if abs(angle) < self.options.skew_correction_threshold:
            return gray, 0.0
        log.debug("Deskewing by %.1f deg", -angle)
        return rotate_gray(gray, -angle), angle

    def binarize(self, gray: NDArray) -> NDArray:
        return binarize(
            gray,
            self.options.binarization_method,
            self.options.adaptive_block_size,
            self.options.adaptive_c,
        )

    def remove_screen_tones(self, gray: NDArray) -> NDArray:
        return filters.remove_screen_tones(
            gray,
            self.options.screen_tone_variance_min,
            self.options.screen_tone_variance_max,
        )

    def run(self, buffer: PixelBuffer) -> PreprocessResult:
        """Run all enabled stages on a buffer."""
        opts = self.options
        stages = ["resize", "grayscale"]

        resized, scale = self.resize(buffer)
        gray = resized.gray()

        inverted = False
        if opts.auto_invert:
            gray, inverted = filters.correct_inversion(gray)
            if inverted:
                stages.append("invert")

        if opts.enable_denoising:
            gray = self.denoise(gray)
            stages.append("denoise")

        if opts.enable_contrast_enhancement:
            gray = self.enhance_contrast(gray)
            stages.append("contrast")

        angle = 0.0
        if opts.enable_deskewing:
            gray, angle = self.deskew(gray)
            stages.append("deskew")

        if opts.enable_binarization:
            gray = self.binarize(gray)
            stages.append("binarize")

        if opts.screen_tone_removal:
            gray = self.remove_screen_tones(gray)
            stages.append("screentone")

        log.debug("Preprocessed %r with stages %s", buffer, ",".join(stages))
        return PreprocessResult(
            buffer=resized.with_gray(gray),
            skew_angle=angle,
            scale=scale,
            inverted=inverted,
            stages=tuple(stages),
        )
