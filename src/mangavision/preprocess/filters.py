"""Individual preprocessing stages.

Every stage takes and returns a 2-D uint8 gray image (or a PixelBuffer for
resize) and never modifies its input.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np
from numpy.typing import NDArray

from ..image_utils import PixelBuffer

log = logging.getLogger(__name__)

CORNER_SIZE = 20
INVERSION_CORNER_MAX = 80.0
INVERSION_DARK_LEVEL = 50
INVERSION_DARK_RATIO = 0.4
SCREEN_TONE_WINDOW = 5


def optimal_scale(width: int, height: int, max_dimension: int, min_dimension: int) -> float:
    """Scale factor that brings the longest side into [min_dimension, max_dimension]."""
    longest = max(width, height)
    if longest > max_dimension:
        return max_dimension / longest
    if longest < min_dimension:
        return min_dimension / longest
    return 1.0


def resize_to_optimal(
    buffer: PixelBuffer,
    max_dimension: int = 2048,
    min_dimension: int = 400,
) -> Tuple[PixelBuffer, float]:
    """Resize with bilinear interpolation so the longest side is in range.

    Returns:
        (resized buffer, scale factor); the buffer is returned as-is when no
        resize is needed
    """
    scale = optimal_scale(buffer.width, buffer.height, max_dimension, min_dimension)
    if scale == 1.0:
        return buffer, 1.0

    target_w = max(1, int(round(buffer.width * scale)))
    target_h = max(1, int(round(buffer.height * scale)))
    if (target_w, target_h) == (buffer.width, buffer.height):
        return buffer, 1.0

    resized = cv2.resize(
        np.ascontiguousarray(buffer.rgba),
        (target_w, target_h),
        interpolation=cv2.INTER_LINEAR,
    )
    log.debug(
        "Resized %dx%d -> %dx%d (scale %.3f)",
        buffer.width, buffer.height, target_w, target_h, scale,
    )
    return PixelBuffer.from_array(resized), scale


def to_grayscale(buffer: PixelBuffer) -> PixelBuffer:
    """Replace R, G and B with the luminance; alpha is kept."""
    return buffer.with_gray(buffer.gray())


def corner_brightness(gray: NDArray, size: int = CORNER_SIZE) -> float:
    """Average of the mean brightness of the four size x size corners."""
    h, w = gray.shape
    corners = [
        gray[:size, :size],
        gray[:size, max(0, w - size):],
        gray[max(0, h - size):, :size],
        gray[max(0, h - size):, max(0, w - size):],
    ]
    return float(np.mean([c.mean() for c in corners]))


def is_inverted(gray: NDArray) -> bool:
    """Detect white-on-black pages: dark corners and a mostly dark histogram."""
    dark_ratio = float(np.count_nonzero(gray < INVERSION_DARK_LEVEL)) / gray.size
    corners = corner_brightness(gray)
    inverted = corners < INVERSION_CORNER_MAX and dark_ratio > INVERSION_DARK_RATIO
    log.debug("Inversion check: corners=%.1f dark_ratio=%.2f -> %s", corners, dark_ratio, inverted)
    return inverted


def correct_inversion(gray: NDArray) -> Tuple[NDArray, bool]:
    """Invert the page if it is white-on-black.

    Returns:
        (image, whether it was inverted)
    """
    if is_inverted(gray):
        return 255 - gray, True
    return gray.copy(), False


def median_denoise(gray: NDArray) -> NDArray:
    """3x3 median on interior pixels; the one-pixel border is left as is."""
    out = gray.copy()
    h, w = gray.shape
    if h < 3 or w < 3:
        return out
    filtered = cv2.medianBlur(np.ascontiguousarray(gray), 3)
    out[1:-1, 1:-1] = filtered[1:-1, 1:-1]
    return out


def nl_means_denoise(gray: NDArray, strength: float = 10.0) -> NDArray:
    """OpenCV fast non-local means (template 7, search 21)."""
    if strength <= 0:
        return gray.copy()
    return cv2.fastNlMeansDenoising(np.ascontiguousarray(gray), None, float(strength), 7, 21)


def denoise(gray: NDArray, strength: float = 10.0, accelerated: bool = True) -> NDArray:
    if accelerated:
        return nl_means_denoise(gray, strength)
    return median_denoise(gray)


def clahe(gray: NDArray, clip_limit: float = 2.0, tile_size: int = 8) -> NDArray:
    """Contrast Limited Adaptive Histogram Equalization."""
    op = cv2.createCLAHE(clipLimit=float(clip_limit), tileGridSize=(tile_size, tile_size))
    return op.apply(np.ascontiguousarray(gray))


def equalize_histogram(gray: NDArray) -> NDArray:
    """Global histogram equalization.

    new = round((cdf[v] - cdf_min) / (N - cdf_min) * 255). A single-level image
    has nothing to stretch and is returned unchanged.
    """
    hist = np.bincount(gray.ravel(), minlength=256)
    cdf = np.cumsum(hist)
    n = gray.size
    cdf_min = int(cdf[np.flatnonzero(cdf)[0]])
    if n == cdf_min:
        return gray.copy()
    lut = np.floor((cdf - cdf_min) / (n - cdf_min) * 255 + 0.5)
    lut = np.clip(lut, 0, 255).astype(np.uint8)
    return lut[gray]


def enhance_contrast(
    gray: NDArray,
    clip_limit: float = 2.0,
    tile_size: int = 8,
    accelerated: bool = True,
) -> NDArray:
    if accelerated:
        return clahe(gray, clip_limit, tile_size)
    return equalize_histogram(gray)


def remove_screen_tones(
    gray: NDArray,
    variance_min: float = 100.0,
    variance_max: float = 2000.0,
) -> NDArray:
    """Flatten halftone dot patterns.

    Interior pixels whose 5x5 variance lies strictly inside
    (variance_min, variance_max) are replaced by the rounded window mean.
    Flat areas and hard ink edges fall outside the band and are kept.
    """
    out = gray.copy()
    h, w = gray.shape
    half = SCREEN_TONE_WINDOW // 2
    if h <= 2 * half or w <= 2 * half:
        return out

    g = gray.astype(np.float64)
    k = (SCREEN_TONE_WINDOW, SCREEN_TONE_WINDOW)
    mean = cv2.boxFilter(g, cv2.CV_64F, k, normalize=True, borderType=cv2.BORDER_REFLECT)
    mean_sq = cv2.boxFilter(g * g, cv2.CV_64F, k, normalize=True, borderType=cv2.BORDER_REFLECT)
    var = np.maximum(mean_sq - mean * mean, 0.0)

    mask = (var > variance_min) & (var < variance_max)
    mask[:half, :] = False
    mask[-half:, :] = False
    mask[:, :half] = False
    mask[:, -half:] = False

    replaced = np.clip(np.rint(mean), 0, 255).astype(np.uint8)
    out[mask] = replaced[mask]
    log.debug("Screentone removal replaced %d pixels", int(mask.sum()))
    return out
