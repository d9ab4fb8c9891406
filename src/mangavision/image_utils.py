"""Pixel buffer type and input normalization.

All stages work on PixelBuffer, an immutable RGBA view over a uint8 array of
shape (height, width, 4). Conversions from NumPy arrays, Pillow images and
``{width, height, data}`` mappings are funnelled through normalize_input.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import cv2
import numpy as np
from numpy.typing import NDArray
from PIL import Image

from .errors import InvalidInput


def _readonly(arr: NDArray) -> NDArray:
    arr = np.ascontiguousarray(arr, dtype=np.uint8)
    arr.setflags(write=False)
    return arr


def _saturate(arr: NDArray) -> NDArray:
    """Round and clip any numeric array to uint8."""
    if arr.dtype == np.uint8:
        return arr
    if arr.dtype == np.bool_:
        return arr.astype(np.uint8) * 255
    if not np.issubdtype(arr.dtype, np.number):
        raise InvalidInput(f"Unsupported pixel dtype {arr.dtype}")
    arr = np.nan_to_num(arr.astype(np.float64), nan=0.0, posinf=255.0, neginf=0.0)
    return np.clip(np.rint(arr), 0, 255).astype(np.uint8)


class PixelBuffer:
    """Immutable RGBA image.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        rgba: Read-only uint8 array of shape (height, width, 4)
    """

    __slots__ = ("_rgba",)

    def __init__(self, width: int, height: int, data: Any):
        """Build a buffer from flat row-major RGBA data.

        Args:
            width: Image width, > 0
            height: Image height, > 0
            data: bytes, bytearray, sequence or array of width*height*4 values

        Raises:
            InvalidInput: if dimensions or data length are inconsistent
        """
        if isinstance(width, bool) or isinstance(height, bool):
            raise InvalidInput("Dimensions must be integers")
        try:
            width, height = int(width), int(height)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Invalid dimensions: {exc}") from exc
        if width <= 0 or height <= 0:
            raise InvalidInput(f"Dimensions must be positive, got {width}x{height}")

        if isinstance(data, (bytes, bytearray, memoryview)):
            flat = np.frombuffer(bytes(data), dtype=np.uint8)
        else:
            try:
                flat = np.asarray(data)
            except (TypeError, ValueError) as exc:
                raise InvalidInput(f"Unreadable pixel data: {exc}") from exc
            if flat.dtype == object:
                raise InvalidInput("Pixel data must be numeric")
            flat = flat.reshape(-1)
            if flat.size and np.issubdtype(flat.dtype, np.number):
                if flat.min() < 0 or flat.max() > 255:
                    raise InvalidInput("Pixel values must lie in [0, 255]")
            flat = _saturate(flat).copy()

        expected = width * height * 4
        if flat.size != expected:
            raise InvalidInput(
                f"Data length {flat.size} does not match {width}x{height}x4 = {expected}"
            )
        self._rgba = _readonly(flat.reshape(height, width, 4))

    @classmethod
    def _wrap(cls, rgba: NDArray) -> "PixelBuffer":
        obj = cls.__new__(cls)
        obj._rgba = _readonly(rgba)
        return obj

    @classmethod
    def from_array(cls, arr: NDArray) -> "PixelBuffer":
        """Build from an HxW, HxWx1, HxWx3 or HxWx4 array.

        Gray inputs are replicated to RGB, RGB inputs get an opaque alpha.
        Values are saturated to [0, 255].
        """
        arr = np.asarray(arr)
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        if arr.ndim not in (2, 3) or arr.shape[0] == 0 or arr.shape[1] == 0:
            raise InvalidInput(f"Unsupported array shape {arr.shape}")
        arr = _saturate(arr)
        if arr.ndim == 2:
            return cls.from_gray(arr)
        channels = arr.shape[2]
        if channels == 3:
            return cls._wrap(cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_RGB2RGBA))
        if channels == 4:
            return cls._wrap(arr.copy())
        raise InvalidInput(f"Unsupported channel count {channels}")

    @classmethod
    def from_gray(cls, gray: NDArray, alpha: Optional[NDArray] = None) -> "PixelBuffer":
        """Build from a single-channel image, replicating it to R, G and B."""
        gray = _saturate(np.asarray(gray))
        if gray.ndim != 2 or gray.size == 0:
            raise InvalidInput(f"Expected a 2-D gray image, got shape {gray.shape}")
        rgba = np.empty(gray.shape + (4,), dtype=np.uint8)
        rgba[:, :, 0] = gray
        rgba[:, :, 1] = gray
        rgba[:, :, 2] = gray
        rgba[:, :, 3] = 255 if alpha is None else alpha
        return cls._wrap(rgba)

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        """Build from a Pillow image of any mode."""
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return cls._wrap(np.asarray(image, dtype=np.uint8))

    @property
    def width(self) -> int:
        return int(self._rgba.shape[1])

    @property
    def height(self) -> int:
        return int(self._rgba.shape[0])

    @property
    def shape(self):
        return self._rgba.shape

    @property
    def rgba(self) -> NDArray:
        return self._rgba

    @property
    def data(self) -> bytes:
        """Flat row-major RGBA bytes."""
        return self._rgba.tobytes()

    @property
    def alpha(self) -> NDArray:
        return self._rgba[:, :, 3]

    def gray(self) -> NDArray:
        """Luminance L = 0.299R + 0.587G + 0.114B, rounded, as an HxW uint8 array."""
        rgb = self._rgba[:, :, :3].astype(np.float64)
        lum = 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]
        return np.clip(np.rint(lum), 0, 255).astype(np.uint8)

    def with_gray(self, gray: NDArray) -> "PixelBuffer":
        """Return a new buffer with R=G=B=gray and this buffer's alpha."""
        return PixelBuffer.from_gray(gray, alpha=self.alpha)

    def crop(self, x: int, y: int, width: int, height: int) -> "PixelBuffer":
        """Return a copy of the given rectangle, clipped to the image."""
        x0 = max(0, int(x))
        y0 = max(0, int(y))
        x1 = min(self.width, int(x) + int(width))
        y1 = min(self.height, int(y) + int(height))
        if x1 <= x0 or y1 <= y0:
            raise InvalidInput(f"Region ({x}, {y}, {width}, {height}) is outside the image")
        return PixelBuffer._wrap(self._rgba[y0:y1, x0:x1].copy())

    def to_image(self) -> Image.Image:
        """Convert to a Pillow RGBA image."""
        return Image.fromarray(np.array(self._rgba))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self._rgba.shape == other._rgba.shape and bool(
            np.array_equal(self._rgba, other._rgba)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height})"


def normalize_input(source: Any) -> PixelBuffer:
    """Coerce any supported page representation to a PixelBuffer.

    Args:
        source: PixelBuffer, NumPy array, Pillow image or a mapping with
            ``width``, ``height`` and ``data`` keys

    Returns:
        PixelBuffer

    Raises:
        InvalidInput: for unsupported types or malformed content
    """
    if isinstance(source, PixelBuffer):
        return source
    if isinstance(source, Image.Image):
        return PixelBuffer.from_image(source)
    if isinstance(source, np.ndarray):
        return PixelBuffer.from_array(source)
    if isinstance(source, Mapping):
        missing = {"width", "height", "data"} - set(source)
        if missing:
            raise InvalidInput(f"Image mapping is missing {sorted(missing)}")
        return PixelBuffer(source["width"], source["height"], source["data"])
    raise InvalidInput(f"Unsupported image type {type(source).__name__}")

