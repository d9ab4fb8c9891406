"""LRU cache for detection and OCR-preparation results.

Keys are content hashes of the page together with the options and the
detection backend, so a cached entry can never be served for a different
configuration.
"""

from __future__ import annotations

import hashlib
import json
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, Generic, Optional, TypeVar

from .config import ProcessingOptions
from .image_utils import PixelBuffer

K = TypeVar('K')
V = TypeVar('V')


class LRUCache(Generic[K, V]):
    """Thread-safe LRU cache with configurable maximum size.

    Automatically evicts least recently used items when capacity is exceeded.
    """

    def __init__(self, max_size: int = 50):
        """Initialize cache.

        Args:
            max_size: Maximum number of items to store
        """
        self._max_size = max(1, max_size)
        self._cache: OrderedDict[K, V] = OrderedDict()
        self._lock = Lock()
        self._hit_count = 0
        self._miss_count = 0

    def get(self, key: K) -> Optional[V]:
        """Get item from cache, marking it as recently used.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found
        """
        with self._lock:
            if key not in self._cache:
                self._miss_count += 1
                return None
            self._cache.move_to_end(key)
            self._hit_count += 1
            return self._cache[key]

    def put(self, key: K, value: V) -> None:
        """Add or update item in cache.

        Args:
            key: Cache key
            value: Value to store
        """
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self._max_size:
                self._cache.popitem(last=False)
            self._cache[key] = value

    def remove(self, key: K) -> Optional[V]:
        with self._lock:
            return self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __contains__(self, key: K) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @property
    def max_size(self) -> int:
        return self._max_size

    @max_size.setter
    def max_size(self, value: int) -> None:
        """Set maximum cache size, evicting if necessary."""
        with self._lock:
            self._max_size = max(1, value)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    @property
    def hit_rate(self) -> float:
        """Cache hit rate (0.0 to 1.0)."""
        with self._lock:
            total = self._hit_count + self._miss_count
            return self._hit_count / total if total > 0 else 0.0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hit_count + self._miss_count
            return {
                "items": len(self._cache),
                "max_items": self._max_size,
                "hit_count": self._hit_count,
                "miss_count": self._miss_count,
                "hit_rate": self._hit_count / total if total > 0 else 0.0,
            }


def hash_buffer(buffer: PixelBuffer) -> str:
    """Content hash of a pixel buffer, including its dimensions."""
    h = hashlib.blake2b(digest_size=16)
    h.update(f"{buffer.width}x{buffer.height}".encode())
    h.update(buffer.rgba.tobytes())
    return h.hexdigest()


def hash_options(options: ProcessingOptions) -> str:
    data = json.dumps(options.to_dict(), sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:16]


class ResultCache:
    """Keyed store for pipeline results.

    One instance can be shared between pipelines and threads; all access goes
    through the underlying LRUCache lock.
    """

    def __init__(self, max_size: int = 50):
        self._cache: LRUCache[str, Any] = LRUCache(max_size)

    @staticmethod
    def make_key(
        buffer: PixelBuffer,
        options: ProcessingOptions,
        namespace: str = "detect",
        backend_signature: str = "none",
    ) -> str:
        """Build a key from page content, options and backend.

        Args:
            buffer: Input page
            options: Options the result was computed with
            namespace: Result kind ('detect' or 'ocr')
            backend_signature: DetectionBackend.signature
        """
        return ":".join(
            (namespace, hash_buffer(buffer), hash_options(options), backend_signature)
        )

    def get(self, key: str) -> Optional[Any]:
        return self._cache.get(key)

    def put(self, key: str, value: Any) -> None:
        self._cache.put(key, value)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def max_size(self) -> int:
        return self._cache.max_size

    def get_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()
