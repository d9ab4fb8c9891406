"""Page analysis entry point.

MangaVisionPipeline ties the preprocessing stages, the heuristic detector,
the optional model backend, post-processing and the result cache together.
It holds no global state: every dependency is passed in or created per
instance.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .cache import ResultCache
from .config import ProcessingOptions, RuntimeConfig
from .detector.components import ConnectedComponentAnalyzer
from .detector.geometry import expand_box, scale_detection
from .detector.layout import PanelLayoutAnalyzer
from .detector.ml import DetectionBackend, create_backend
from .detector.postproc import finalize_detections, merge_detections, non_max_suppression
from .errors import MangaVisionError
from .image_utils import PixelBuffer, normalize_input
from .models import Detection, DetectionSet
from .preprocess.filters import correct_inversion
from .preprocess.pipeline import PreprocessingPipeline, PreprocessResult

log = logging.getLogger(__name__)

OPAQUE_ALPHA = 16
MIN_OPAQUE_FRACTION = 0.01
MIN_GRAY_RANGE = 8


@dataclass(frozen=True)
class PageAnalysis:
    """Detections and OCR-ready image for one page."""
    detections: DetectionSet
    ocr_buffer: PixelBuffer
    skew_angle: float


def is_degenerate(buffer: PixelBuffer) -> bool:
    """True for pages with nothing to detect.

    A page is degenerate when almost all of it is transparent or when its
    opaque pixels are (nearly) a single gray level.
    """
    opaque = buffer.alpha > OPAQUE_ALPHA
    if np.count_nonzero(opaque) < MIN_OPAQUE_FRACTION * opaque.size:
        return True
    values = buffer.gray()[opaque]
    return int(values.max()) - int(values.min()) < MIN_GRAY_RANGE


class MangaVisionPipeline:
    """Detection and OCR preparation for manga pages.

    Args:
        options: Processing options; defaults to ProcessingOptions()
        cache: Result cache, possibly shared with other pipelines; a private
            one sized by runtime.cache_size is created when omitted
        backend: Detection backend; selected with create_backend when omitted
        runtime: Model location, timeouts and cache size
    """

    def __init__(
        self,
        options: Optional[ProcessingOptions] = None,
        cache: Optional[ResultCache] = None,
        backend: Optional[DetectionBackend] = None,
        runtime: Optional[RuntimeConfig] = None,
    ):
        self.options = options or ProcessingOptions()
        self.runtime = runtime or RuntimeConfig()
        self.cache = cache if cache is not None else ResultCache(self.runtime.cache_size)

        if backend is None:
            backend, advisories = create_backend(self.runtime, self.options)
        else:
            advisories = ()
        self.backend = backend
        self.advisories: Tuple[str, ...] = tuple(advisories)

        self.preprocessor = PreprocessingPipeline(self.options)
        self.analyzer = ConnectedComponentAnalyzer(
            tail_neighbor_threshold=self.options.tail_neighbor_threshold,
            detect_panels=self.options.enable_panel_detection,
        )
        self.layout_analyzer = PanelLayoutAnalyzer(self.options.reading_direction)

        self._stats_lock = Lock()
        self._stats: Dict[str, float] = {
            "detections_run": 0,
            "detect_cache_hits": 0,
            "ocr_run": 0,
            "ocr_cache_hits": 0,
            "degenerate_frames": 0,
            "ml_results": 0,
            "batch_failures": 0,
            "detect_time_total": 0.0,
        }
        self._closed = False

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _count(self, name: str, amount: float = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount

    def record_detection(self, elapsed: float) -> None:
        """Account for one detection run that missed the cache."""
        with self._stats_lock:
            self._stats["detections_run"] += 1
            self._stats["detect_time_total"] += elapsed

    def _check_open(self) -> None:
        if self._closed:
            raise MangaVisionError("Pipeline is closed")

    def cache_key(self, buffer: PixelBuffer, namespace: str) -> str:
        signature = self.backend.signature if namespace == "detect" else "none"
        return self.cache.make_key(buffer, self.options, namespace, signature)

    # ------------------------------------------------------------------
    # Detection steps
    # ------------------------------------------------------------------
    def lookup(self, source: Any) -> Tuple[PixelBuffer, str, Optional[DetectionSet]]:
        """Validate the input and look for a cached or trivial result.

        Returns:
            (buffer, cache key, result or None when detection must run)

        Raises:
            InvalidInput: for malformed input
        """
        self._check_open()
        buffer = normalize_input(source)
        if is_degenerate(buffer):
            self._count("degenerate_frames")
            log.debug("Degenerate frame %r, nothing to detect", buffer)
            return buffer, "", DetectionSet.empty(buffer.width, buffer.height, self.advisories)

        key = self.cache_key(buffer, "detect")
        cached = self.cache.get(key)
        if cached is not None:
            self._count("detect_cache_hits")
            log.info("Detection cache hit for %r", buffer)
        return buffer, key, cached

    def detection_frame(self, buffer: PixelBuffer) -> Tuple[PixelBuffer, float]:
        """Resize the page to the working resolution used for detection."""
        return self.preprocessor.resize(buffer)

    def run_heuristic(self, frame: PixelBuffer) -> List[Detection]:
        gray = frame.gray()
        if self.options.auto_invert:
            gray, _ = correct_inversion(gray)
        return self.analyzer.analyze(gray)

    def run_ml(self, frame: PixelBuffer) -> Optional[List[Detection]]:
        result = self.backend.try_detect(frame)
        if result is not None:
            self._count("ml_results")
        return result

    def combine(
        self,
        buffer: PixelBuffer,
        frame: PixelBuffer,
        scale: float,
        ml: Optional[Sequence[Detection]],
        heuristic: Sequence[Detection],
        advisories: Iterable[str] = (),
    ) -> DetectionSet:
        """Merge, suppress, order and map detections back to the input size."""
        opts = self.options
        merged = merge_detections(ml or [], heuristic, opts.merge_iou_threshold)
        kept = non_max_suppression(
            merged, opts.nms_threshold, class_aware=opts.nms_mode == "class_aware"
        )
        final = finalize_detections(
            kept,
            ml_threshold=opts.confidence_threshold,
            heuristic_threshold=opts.heuristic_confidence_threshold,
            max_detections=opts.max_detections,
        )

        layout = self.layout_analyzer.analyze(final)
        final = self.layout_analyzer.associate(final, layout)

        if scale != 1.0:
            final = [
                scale_detection(d, 1.0 / scale, buffer.width, buffer.height) for d in final
            ]

        notes = tuple(dict.fromkeys(self.advisories + tuple(advisories)))
        log.debug(
            "Frame %dx%d: %d ml, %d heuristic -> %d final",
            frame.width, frame.height, len(ml or []), len(heuristic), len(final),
        )
        return DetectionSet(tuple(final), buffer.width, buffer.height, layout, notes)

    def store(self, key: str, result: DetectionSet) -> DetectionSet:
        if key:
            self.cache.put(key, result)
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def detect(self, source: Any) -> DetectionSet:
        """Detect bubbles, boxes and panels on a page.

        Args:
            source: PixelBuffer, NumPy array, Pillow image or
                ``{width, height, data}`` mapping

        Returns:
            DetectionSet in input pixel coordinates

        Raises:
            InvalidInput: for malformed input
        """
        buffer, key, cached = self.lookup(source)
        if cached is not None:
            return cached

        start = time.perf_counter()
        frame, scale = self.detection_frame(buffer)
        ml = self.run_ml(frame)
        heuristic = self.run_heuristic(frame)
        result = self.combine(buffer, frame, scale, ml, heuristic)
        self.record_detection(time.perf_counter() - start)
        return self.store(key, result)

    def preprocess(self, source: Any) -> PreprocessResult:
        """Run the OCR preparation stages, with caching."""
        self._check_open()
        buffer = normalize_input(source)
        key = self.cache_key(buffer, "ocr")
        cached = self.cache.get(key)
        if cached is not None:
            self._count("ocr_cache_hits")
            log.info("OCR cache hit for %r", buffer)
            return cached
        self._count("ocr_run")
        result = self.preprocessor.run(buffer)
        self.cache.put(key, result)
        return result

    def prepare_for_ocr(self, source: Any) -> PixelBuffer:
        """Return the OCR-ready image for a page."""
        return self.preprocess(source).buffer

    def analyze(self, source: Any) -> PageAnalysis:
        """Detections plus OCR-ready image for a page."""
        buffer = normalize_input(source)
        prepared = self.preprocess(buffer)
        return PageAnalysis(
            detections=self.detect(buffer),
            ocr_buffer=prepared.buffer,
            skew_angle=prepared.skew_angle,
        )

    def extract_region(self, source: Any, detection: Detection, padding: int = 0) -> PixelBuffer:
        """Crop a detection's box (plus padding) out of the page.

        Raises:
            InvalidInput: if the box lies outside the page
        """
        buffer = normalize_input(source)
        x1, y1, x2, y2 = expand_box(detection.as_xyxy(), padding)
        x1, y1 = int(np.floor(x1)), int(np.floor(y1))
        x2, y2 = int(np.ceil(x2)), int(np.ceil(y2))
        return buffer.crop(x1, y1, x2 - x1, y2 - y1)

    def process_batch(self, sources: Iterable[Any]) -> List[Optional[DetectionSet]]:
        """Detect on several pages; a page that fails yields None."""
        results: List[Optional[DetectionSet]] = []
        for i, source in enumerate(sources):
            try:
                results.append(self.detect(source))
            except Exception as exc:
                self._count("batch_failures")
                log.warning("Batch item %d failed: %s", i, exc)
                results.append(None)
        return results

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
        runs = stats["detections_run"]
        stats["detect_time_avg"] = stats["detect_time_total"] / runs if runs else 0.0
        stats["backend"] = self.backend.signature
        stats["model_available"] = self.backend.available
        stats["cache"] = self.cache.get_stats()
        return stats

    def close(self) -> None:
        """Release the backend; the pipeline cannot be used afterwards."""
        if self._closed:
            return
        self._closed = True
        self.backend.close()
        log.debug("Pipeline closed")

    def __enter__(self) -> "MangaVisionPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
