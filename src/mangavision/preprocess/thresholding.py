"""Global and local binarization.

All methods map dark pixels to 0 and everything else to 255. Local window
statistics are computed from integral images, so windows that hang over the
border only count in-bounds pixels.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np
from numpy.typing import NDArray

from ..errors import UnsupportedOption

log = logging.getLogger(__name__)

SAUVOLA_K = 0.5
SAUVOLA_R = 128.0


def is_binary(gray: NDArray) -> bool:
    """True if the image only contains the values 0 and 255."""
    return bool(np.all((gray == 0) | (gray == 255)))


def local_stats(gray: NDArray, block_size: int) -> Tuple[NDArray, NDArray]:
    """Mean and variance over a block_size x block_size window per pixel.

    Args:
        gray: 2-D uint8 image
        block_size: Odd window size

    Returns:
        (mean, variance) as float64 arrays of the image's shape
    """
    h, w = gray.shape
    half = block_size // 2
    s, sq = cv2.integral2(gray, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)

    ys = np.arange(h)
    xs = np.arange(w)
    y0 = np.clip(ys - half, 0, h)
    y1 = np.clip(ys + half + 1, 0, h)
    x0 = np.clip(xs - half, 0, w)
    x1 = np.clip(xs + half + 1, 0, w)

    def window_sum(table: NDArray) -> NDArray:
        return (
            table[np.ix_(y1, x1)]
            - table[np.ix_(y0, x1)]
            - table[np.ix_(y1, x0)]
            + table[np.ix_(y0, x0)]
        )

    count = np.outer(y1 - y0, x1 - x0).astype(np.float64)
    mean = window_sum(s) / count
    var = np.maximum(window_sum(sq) / count - mean * mean, 0.0)
    return mean, var


def otsu_threshold(gray: NDArray) -> int:
    """Compute the Otsu threshold of a gray image.

    Pixels strictly below the returned value are foreground. When several
    cuts reach the same between-class variance (a two-level image has a whole
    plateau of them) the middle of the plateau is returned. An image without
    two populated classes yields 0, so everything maps to white.
    """
    hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
    total = hist.sum()
    levels = np.arange(256, dtype=np.float64)
    total_sum = float((hist * levels).sum())

    # Cut t + 1: background = values <= t
    w_b = np.cumsum(hist)[:-1]
    sum_b = np.cumsum(hist * levels)[:-1]
    w_f = total - w_b
    valid = (w_b > 0) & (w_f > 0)
    if not np.any(valid):
        return 0

    with np.errstate(divide="ignore", invalid="ignore"):
        m_b = sum_b / w_b
        m_f = (total_sum - sum_b) / w_f
        between = w_b * w_f * (m_b - m_f) ** 2
    between = np.where(valid, between, -1.0)

    best = between.max()
    if best <= 0:
        return 0
    ties = np.flatnonzero(between >= best * (1 - 1e-12))
    first = last = int(ties[0])
    for idx in ties[1:]:
        if idx != last + 1:
            break
        last = int(idx)
    threshold = ((first + 1) + (last + 1)) // 2
    log.debug("Otsu threshold %d (plateau %d..%d)", threshold, first + 1, last + 1)
    return threshold


def otsu_binarize(gray: NDArray) -> NDArray:
    threshold = otsu_threshold(gray)
    return np.where(gray < threshold, 0, 255).astype(np.uint8)


def adaptive_binarize(gray: NDArray, block_size: int = 15, c: float = 10.0) -> NDArray:
    """Local mean threshold: dark where gray < mean - c."""
    mean, _ = local_stats(gray, block_size)
    return np.where(gray < mean - c, 0, 255).astype(np.uint8)


def sauvola_binarize(
    gray: NDArray,
    block_size: int = 15,
    k: float = SAUVOLA_K,
    r: float = SAUVOLA_R,
) -> NDArray:
    """Sauvola threshold: mean * (1 + k * (std / r - 1))."""
    mean, var = local_stats(gray, block_size)
    threshold = mean * (1 + k * (np.sqrt(var) / r - 1))
    return np.where(gray < threshold, 0, 255).astype(np.uint8)


def binarize(
    gray: NDArray,
    method: str = "adaptive",
    block_size: int = 15,
    c: float = 10.0,
) -> NDArray:
    """Binarize a gray image with the named method.

    An image that is already binary is returned unchanged, which makes the
    operation idempotent for every method.

    Args:
        gray: 2-D uint8 image
        method: 'adaptive', 'otsu' or 'sauvola'
        block_size: Local window for adaptive and sauvola
        c: Offset for adaptive

    Returns:
        New uint8 image containing only 0 and 255

    Raises:
        UnsupportedOption: for an unknown method
    """
    if method not in ("adaptive", "otsu", "sauvola"):
        raise UnsupportedOption(f"Unknown binarization method {method!r}")
    if is_binary(gray):
        return gray.copy()
    if method == "otsu":
        return otsu_binarize(gray)
    if method == "sauvola":
        return sauvola_binarize(gray, block_size)
    return adaptive_binarize(gray, block_size, c)
