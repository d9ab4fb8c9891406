"""Skew estimation by projection profiles and rotation helpers."""

from __future__ import annotations

import logging
import math
from typing import Tuple

import cv2
import numpy as np
from numpy.typing import NDArray

from ..image_utils import PixelBuffer

log = logging.getLogger(__name__)

DARK_LEVEL = 128
SAMPLE_STRIDE = 2


class SkewEstimator:
    """Find the rotation that best aligns dark pixels into horizontal rows.

    For every candidate angle the sampled dark pixels are projected onto the
    normal of a baseline rotated by that angle. Text lines aligned with the
    baseline pile up into few buckets with empty ones between them, so
    the variance over the whole projected range peaks at the page's skew.
    """

    def __init__(self, max_angle: float = 15.0, step: float = 0.5):
        self.max_angle = float(max_angle)
        self.step = float(step)

    def candidate_angles(self) -> NDArray:
        """Candidate angles ordered by magnitude, negative first on ties."""
        n = int(math.floor(self.max_angle / self.step + 1e-9))
        angles = np.arange(-n, n + 1, dtype=np.float64) * self.step
        order = np.lexsort((angles, np.abs(angles)))
        return angles[order]

    @staticmethod
    def _dark_samples(gray: NDArray) -> Tuple[NDArray, NDArray]:
        sampled = gray[::SAMPLE_STRIDE, ::SAMPLE_STRIDE]
        ys, xs = np.nonzero(sampled < DARK_LEVEL)
        return xs.astype(np.float64) * SAMPLE_STRIDE, ys.astype(np.float64) * SAMPLE_STRIDE

    @staticmethod
    def _variance(xs: NDArray, ys: NDArray, angle: float) -> float:
        if xs.size == 0:
            return 0.0
        rad = math.radians(angle)
        proj = np.floor(-xs * math.sin(rad) + ys * math.cos(rad) + 0.5).astype(np.int64)
        # Keep the empty buckets between lines
        counts = np.bincount(proj - proj.min()).astype(np.float64)
        return float(counts.var())

    def projection_variance(self, gray: NDArray, angle: float) -> float:
        """Variance of the projection bucket counts at the given angle."""
        xs, ys = self._dark_samples(gray)
        return self._variance(xs, ys, angle)

    def estimate(self, gray: NDArray) -> float:
        """Return the skew angle in degrees; 0.0 for a page without dark pixels."""
        xs, ys = self._dark_samples(gray)
        if xs.size == 0:
            return 0.0

        best_angle = 0.0
        best_var = 0.0
        for angle in self.candidate_angles():
            var = self._variance(xs, ys, float(angle))
            if var > best_var:
                best_var = var
                best_angle = float(angle)
        log.debug("Skew estimate %.1f deg (variance %.1f, %d samples)", best_angle, best_var, xs.size)
        return best_angle


def rotation_matrix(width: int, height: int, angle: float) -> NDArray:
    """Forward affine matrix rotating by angle degrees about the image center.

    Positive angles turn the x axis towards +y, i.e. clockwise on screen.
    """
    rad = math.radians(angle)
    c, s = math.cos(rad), math.sin(rad)
    cx, cy = (width - 1) / 2.0, (height - 1) / 2.0
    return np.array(
        [
            [c, -s, cx - c * cx + s * cy],
            [s, c, cy - s * cx - c * cy],
        ],
        dtype=np.float64,
    )


def rotate_buffer(buffer: PixelBuffer, angle: float) -> PixelBuffer:
    """Rotate a buffer about its center on a canvas of the same size.

    Nearest neighbour sampling; pixels that fall outside the source become
    opaque white.
    """
    if angle == 0:
        return PixelBuffer.from_array(buffer.rgba)
    m = rotation_matrix(buffer.width, buffer.height, angle)
    out = cv2.warpAffine(
        np.ascontiguousarray(buffer.rgba),
        m,
        (buffer.width, buffer.height),
        flags=cv2.INTER_NEAREST,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(255, 255, 255, 255),
    )
    return PixelBuffer.from_array(out)


def rotate_gray(gray: NDArray, angle: float) -> NDArray:
    """Same as rotate_buffer for a single-channel image."""
    h, w = gray.shape
    m = rotation_matrix(w, h, angle)
    return cv2.warpAffine(
        gray,
        m,
        (w, h),
        flags=cv2.INTER_NEAREST,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=255,
    )
