"""Model-backed detection.

The pipeline talks to a DetectionBackend chosen once by create_backend:
YoloBackend when ultralytics and the weights are available, NullBackend
otherwise. try_detect returns None when the backend has nothing to offer,
which the pipeline treats as "heuristic only".
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from ..config import ProcessingOptions, RuntimeConfig
from ..errors import ModelUnavailable
from ..image_utils import PixelBuffer
from ..models import Detection, DetectionClass, DetectionSource

log = logging.getLogger(__name__)

# Default id table for models exported without class names
CLASS_IDS: Dict[int, DetectionClass] = {
    0: DetectionClass.SPEECH_BUBBLE,
    1: DetectionClass.THOUGHT_BUBBLE,
    2: DetectionClass.NARRATION_BOX,
    3: DetectionClass.SFX_BUBBLE,
    4: DetectionClass.PANEL,
    5: DetectionClass.TEXT_LINE,
}

# Common alternative names found in community datasets
_ALIASES = {
    "bubble": DetectionClass.SPEECH_BUBBLE,
    "speech": DetectionClass.SPEECH_BUBBLE,
    "text_bubble": DetectionClass.SPEECH_BUBBLE,
    "thought": DetectionClass.THOUGHT_BUBBLE,
    "narration": DetectionClass.NARRATION_BOX,
    "caption": DetectionClass.NARRATION_BOX,
    "sfx": DetectionClass.SFX_BUBBLE,
    "onomatopoeia": DetectionClass.SFX_BUBBLE,
    "frame": DetectionClass.PANEL,
    "panel_inset": DetectionClass.PANEL,
    "text": DetectionClass.TEXT_LINE,
}

MODEL_UNAVAILABLE_ADVISORY = "model_unavailable: heuristic detection only"
ML_TIMEOUT_ADVISORY = "ml_timeout: heuristic detection only"


def _norm(s: str) -> str:
    """Normalize a class name."""
    return (s or "").strip().lower().replace("-", "_").replace(" ", "_")


def resolve_class(
    class_id: int, names: Optional[Mapping[int, str]] = None
) -> Optional[DetectionClass]:
    """Map a model class id to a DetectionClass.

    Uses the model's own names when given, falling back to CLASS_IDS.
    Returns None for classes outside the taxonomy.
    """
    if names and class_id in names:
        name = _norm(names[class_id])
        for cls in DetectionClass:
            if cls.value == name:
                return cls
        if name in _ALIASES:
            return _ALIASES[name]
        return None
    return CLASS_IDS.get(class_id)


def parse_predictions(
    boxes: Any,
    scores: Any,
    classes: Any,
    valid_count: Optional[int],
    image_width: int,
    image_height: int,
    score_threshold: float = 0.75,
    box_format: str = "yxyx",
    names: Optional[Mapping[int, str]] = None,
    max_detections: Optional[int] = None,
) -> List[Detection]:
    """Convert raw detector outputs to Detection records.

    Args:
        boxes: (N, 4) normalized coordinates, [y1, x1, y2, x2] for 'yxyx'
            (TF object-detection export) or [x1, y1, x2, y2] for 'xyxy'
        scores: (N,) confidences
        classes: (N,) class ids (floats are rounded)
        valid_count: Number of leading rows that are real detections;
            None means all rows
        image_width: Width of the image the boxes refer to
        image_height: Height of the image the boxes refer to
        score_threshold: Entries below this score are dropped
        box_format: 'yxyx' or 'xyxy'
        names: Optional id -> class name mapping from the model
        max_detections: Optional cap on rows read

    Returns:
        Detections in output order, boxes clipped to the image
    """
    if box_format not in ("yxyx", "xyxy"):
        raise ValueError(f"Unknown box format {box_format!r}")

    b = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    s = np.asarray(scores, dtype=np.float64).reshape(-1)
    c = np.asarray(classes, dtype=np.float64).reshape(-1)
    n = min(len(b), len(s), len(c))
    if valid_count is not None:
        n = min(n, int(valid_count))
    if max_detections is not None:
        n = min(n, int(max_detections))

    detections: List[Detection] = []
    for i in range(n):
        score = float(s[i])
        if score < score_threshold:
            continue
        label = resolve_class(int(round(c[i])), names)
        if label is None:
            continue
        if box_format == "yxyx":
            y1, x1, y2, x2 = b[i]
        else:
            x1, y1, x2, y2 = b[i]
        x1 = min(max(x1, 0.0), 1.0) * image_width
        x2 = min(max(x2, 0.0), 1.0) * image_width
        y1 = min(max(y1, 0.0), 1.0) * image_height
        y2 = min(max(y2, 0.0), 1.0) * image_height
        if x2 <= x1 or y2 <= y1:
            continue
        detections.append(
            Detection(
                x=float(x1),
                y=float(y1),
                width=float(x2 - x1),
                height=float(y2 - y1),
                confidence=min(max(score, 0.0), 1.0),
                label=label,
                source=DetectionSource.ML,
            )
        )
    return detections


class DetectionBackend(ABC):
    """Capability interface for model-backed detection."""

    @property
    def signature(self) -> str:
        """Identifies the backend and its weights in cache keys."""
        return "none"

    @property
    def available(self) -> bool:
        return False

    @abstractmethod
    def try_detect(self, buffer: PixelBuffer) -> Optional[List[Detection]]:
        """Detect regions in buffer coordinates, or None for no result."""

    def close(self) -> None:
        """Release model resources."""


class NullBackend(DetectionBackend):
    """Backend used when no model is available."""

    def try_detect(self, buffer: PixelBuffer) -> Optional[List[Detection]]:
        return None


class YoloBackend(DetectionBackend):
    """Ultralytics YOLO detector.

    The model is loaded in load(); ultralytics is imported there too so the
    package works without the optional ML dependencies.
    """

    def __init__(
        self,
        weights_path: str,
        options: Optional[ProcessingOptions] = None,
        device: Optional[str] = None,
        input_size: int = 640,
    ):
        self.weights_path = weights_path
        self.options = options or ProcessingOptions()
        self.device = device
        self.input_size = input_size
        self.model = None
        self.names: Dict[int, str] = {}

    @property
    def signature(self) -> str:
        try:
            mtime = int(os.path.getmtime(self.weights_path))
        except OSError:
            mtime = 0
        names = ",".join(f"{k}:{v}" for k, v in sorted(self.names.items()))
        return f"yolo:{os.path.basename(self.weights_path)}:{mtime}:{self.input_size}:{names}"

    @property
    def available(self) -> bool:
        return self.model is not None

    def load(self) -> "YoloBackend":
        """Load the weights.

        Raises:
            ModelUnavailable: if ultralytics is missing, the weights do not
                exist or the model fails to initialize
        """
        if not self.weights_path or not os.path.isfile(self.weights_path):
            raise ModelUnavailable(f"Model weights not found: {self.weights_path}")
        try:
            from ultralytics import YOLO
        except ImportError as exc:
            raise ModelUnavailable("ultralytics is not installed") from exc

        log.info("Loading YOLO weights from %s", self.weights_path)
        try:
            model = YOLO(self.weights_path)
            if self.device:
                model.to(self.device)
        except Exception as exc:
            raise ModelUnavailable(f"Failed to load {self.weights_path}: {exc}") from exc

        names = getattr(model, "names", None)
        if isinstance(names, dict):
            self.names = {int(k): str(v) for k, v in names.items()}
        elif isinstance(names, (list, tuple)):
            self.names = {i: str(v) for i, v in enumerate(names)}
        self.model = model
        log.info("YOLO class mapping: %s", self.names)
        return self

    def try_detect(self, buffer: PixelBuffer) -> Optional[List[Detection]]:
        if self.model is None:
            return None
        rgb = np.ascontiguousarray(buffer.rgba[:, :, :3])
        try:
            results = self.model.predict(
                source=rgb,
                imgsz=self.input_size,
                conf=self.options.confidence_threshold,
                max_det=self.options.max_detections,
                verbose=False,
            )
        except Exception as exc:
            log.warning("YOLO inference failed: %s", exc)
            return None
        if not results:
            return []

        boxes = results[0].boxes
        if boxes is None or len(boxes) == 0:
            return []
        return parse_predictions(
            boxes.xyxyn.cpu().numpy(),
            boxes.conf.cpu().numpy(),
            boxes.cls.cpu().numpy(),
            None,
            buffer.width,
            buffer.height,
            score_threshold=self.options.confidence_threshold,
            box_format="xyxy",
            names=self.names or None,
            max_detections=self.options.max_detections,
        )

    def close(self) -> None:
        self.model = None


def _load_with_timeout(backend: YoloBackend, timeout: float) -> YoloBackend:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")
    future = executor.submit(backend.load)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        # The load keeps running; drop whatever it loads once it returns
        future.add_done_callback(lambda _: backend.close())
        raise ModelUnavailable(f"Model load exceeded {timeout:.1f}s") from exc
    finally:
        executor.shutdown(wait=False)


def create_backend(
    runtime: Optional[RuntimeConfig] = None,
    options: Optional[ProcessingOptions] = None,
) -> Tuple[DetectionBackend, Tuple[str, ...]]:
    """Select the detection backend once.

    Returns:
        (backend, advisories); advisories is non-empty when a configured
        model could not be used
    """
    runtime = runtime or RuntimeConfig()
    if not runtime.model_path:
        log.info("No model configured, using heuristic detection")
        return NullBackend(), ()

    backend = YoloBackend(
        runtime.model_path,
        options=options,
        device=runtime.device,
        input_size=runtime.model_input_size,
    )
    try:
        _load_with_timeout(backend, runtime.model_load_timeout)
    except ModelUnavailable as exc:
        log.warning("Model unavailable, falling back to heuristics: %s", exc)
        return NullBackend(), (MODEL_UNAVAILABLE_ADVISORY,)
    log.info("Using YOLO backend (%s)", backend.signature)
    return backend, ()
