"""Bounded concurrent detection.

Runs pipeline invocations on a small thread pool behind an asyncio
semaphore. Inside one invocation the model step runs alongside the
heuristic step and is bounded by RuntimeConfig.ml_timeout; the whole
invocation is bounded by RuntimeConfig.detection_timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from .config import RuntimeConfig
from .detector.ml import ML_TIMEOUT_ADVISORY
from .errors import MangaVisionError, ProcessingTimeout
from .models import DetectionSet
from .pipeline import MangaVisionPipeline

log = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Result of one task submitted through detect_many."""
    index: int
    detections: Optional[DetectionSet]
    success: bool
    error_message: Optional[str] = None
    elapsed_ms: float = 0.0


class AsyncDetectionManager:
    """Manager for asynchronous detection.

    Handles:
    - Bounded worker pool (max_concurrency threads and in-flight invocations)
    - Model step running alongside the heuristic step
    - Per-step and per-invocation timeouts

    Args:
        pipeline: Pipeline doing the actual work; closed with the manager
        runtime: Concurrency and timeouts; defaults to pipeline.runtime
    """

    def __init__(self, pipeline: MangaVisionPipeline, runtime: Optional[RuntimeConfig] = None):
        self.pipeline = pipeline
        self.runtime = runtime or pipeline.runtime
        # Two threads per invocation: heuristic and model step
        self._executor = ThreadPoolExecutor(
            max_workers=self.runtime.max_concurrency * 2,
            thread_name_prefix="mangavision",
        )
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.runtime.max_concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    async def _run(self, source: Any) -> DetectionSet:
        loop = asyncio.get_running_loop()
        pipeline = self.pipeline

        buffer, key, cached = await loop.run_in_executor(self._executor, pipeline.lookup, source)
        if cached is not None:
            return cached

        start = time.perf_counter()
        frame, scale = await loop.run_in_executor(
            self._executor, pipeline.detection_frame, buffer
        )

        ml_task = None
        if pipeline.backend.available:
            ml_task = asyncio.ensure_future(
                asyncio.wait_for(
                    loop.run_in_executor(self._executor, pipeline.run_ml, frame),
                    self.runtime.ml_timeout,
                )
            )
        try:
            heuristic = await loop.run_in_executor(
                self._executor, pipeline.run_heuristic, frame
            )
            ml = None
            advisories = []
            if ml_task is not None:
                try:
                    ml = await ml_task
                except asyncio.TimeoutError:
                    log.warning(
                        "Model step exceeded %.1fs, using heuristic result",
                        self.runtime.ml_timeout,
                    )
                    advisories.append(ML_TIMEOUT_ADVISORY)
        finally:
            if ml_task is not None and not ml_task.done():
                ml_task.cancel()

        result = await loop.run_in_executor(
            self._executor, pipeline.combine, buffer, frame, scale, ml, heuristic, advisories
        )
        pipeline.record_detection(time.perf_counter() - start)
        # A timed-out model step is not cached so a later call can use the model
        if advisories:
            return result
        return pipeline.store(key, result)

    async def detect(self, source: Any) -> DetectionSet:
        """Detect on one page without blocking the event loop.

        Raises:
            InvalidInput: for malformed input
            ProcessingTimeout: when the invocation exceeds detection_timeout
        """
        if self._closed:
            raise MangaVisionError("Detection manager is closed")
        async with self._get_semaphore():
            try:
                return await asyncio.wait_for(
                    self._run(source), self.runtime.detection_timeout
                )
            except asyncio.TimeoutError as exc:
                log.warning("Detection exceeded %.1fs", self.runtime.detection_timeout)
                raise ProcessingTimeout(
                    f"Detection exceeded {self.runtime.detection_timeout:.1f}s"
                ) from exc

    async def detect_many(self, sources: Iterable[Any]) -> List[DetectionResult]:
        """Detect on several pages concurrently; results keep input order."""

        async def one(index: int, source: Any) -> DetectionResult:
            start = time.perf_counter()
            try:
                detections = await self.detect(source)
            except MangaVisionError as exc:
                log.warning("Page %d failed: %s", index, exc)
                return DetectionResult(
                    index=index,
                    detections=None,
                    success=False,
                    error_message=str(exc),
                    elapsed_ms=(time.perf_counter() - start) * 1000,
                )
            return DetectionResult(
                index=index,
                detections=detections,
                success=True,
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )

        return list(await asyncio.gather(*(one(i, s) for i, s in enumerate(sources))))

    def close(self) -> None:
        """Shut down the worker pool and release the pipeline's backend."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.pipeline.close()

    async def __aenter__(self) -> "AsyncDetectionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()
