"""Bubble and panel detection for manga pages.

This package provides:
- components.py: Heuristic connected-component detector and panel scan
- classifier.py: Shape-based bubble confidence and type rules
- ml.py: Model backends (YOLO via ultralytics, or none)
- postproc.py: ML/heuristic merge, NMS and final ordering
- layout.py: Panel rows, columns, reading order and bubble association
- geometry.py: Box helpers
"""

from __future__ import annotations

from .classifier import BubbleClassifier, ComponentFeatures
from .components import ConnectedComponentAnalyzer
from .layout import PanelLayoutAnalyzer
from .ml import DetectionBackend, NullBackend, YoloBackend, create_backend, parse_predictions
from .postproc import finalize_detections, merge_detections, non_max_suppression

__all__ = [
    "BubbleClassifier",
    "ComponentFeatures",
    "ConnectedComponentAnalyzer",
    "DetectionBackend",
    "NullBackend",
    "PanelLayoutAnalyzer",
    "YoloBackend",
    "create_backend",
    "finalize_detections",
    "merge_detections",
    "non_max_suppression",
    "parse_predictions",
]
