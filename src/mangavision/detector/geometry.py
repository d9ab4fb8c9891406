"""Box geometry on (x1, y1, x2, y2) tuples and Detection records."""

from __future__ import annotations

from typing import Sequence, Tuple

from ..models import Detection

Box = Tuple[float, float, float, float]


def intersection_area(a: Sequence[float], b: Sequence[float]) -> float:
    ax1, ay1, ax2, ay2 = a
    bx1, by1, bx2, by2 = b
    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    return inter_w * inter_h


def iou_xyxy(a: Sequence[float], b: Sequence[float]) -> float:
    """Intersection over union; 0.0 for disjoint or touching boxes."""
    inter = intersection_area(a, b)
    if inter <= 0:
        return 0.0
    a_area = max(0.0, a[2] - a[0]) * max(0.0, a[3] - a[1])
    b_area = max(0.0, b[2] - b[0]) * max(0.0, b[3] - b[1])
    union = a_area + b_area - inter
    if union <= 0:
        return 0.0
    return min(1.0, inter / union)


def iou(a: Detection, b: Detection) -> float:
    """IoU of two detections."""
    return iou_xyxy(a.as_xyxy(), b.as_xyxy())


def overlap_ratio(inner: Detection, outer: Detection) -> float:
    """Share of inner's area covered by outer."""
    if inner.area <= 0:
        return 0.0
    return intersection_area(inner.as_xyxy(), outer.as_xyxy()) / inner.area


def clip_box(box: Sequence[float], width: float, height: float) -> Box:
    x1, y1, x2, y2 = box
    x1 = max(0.0, min(float(width), x1))
    x2 = max(0.0, min(float(width), x2))
    y1 = max(0.0, min(float(height), y1))
    y2 = max(0.0, min(float(height), y2))
    return (x1, y1, x2, y2)


def expand_box(box: Sequence[float], padding: float) -> Box:
    x1, y1, x2, y2 = box
    return (x1 - padding, y1 - padding, x2 + padding, y2 + padding)


def scale_detection(det: Detection, factor: float, width: float, height: float) -> Detection:
    """Multiply a detection's box by factor and clip it to width x height."""
    if factor == 1.0:
        return det
    x1, y1, x2, y2 = clip_box(
        (det.x * factor, det.y * factor, det.x2 * factor, det.y2 * factor), width, height
    )
    return det.with_changes(x=x1, y=y1, width=x2 - x1, height=y2 - y1)
