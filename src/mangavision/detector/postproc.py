"""Merging, suppression and final ordering of detections."""

from __future__ import annotations

import logging
from itertools import groupby
from typing import Iterable, List, Sequence

from ..models import Detection, DetectionSource
from .geometry import iou

log = logging.getLogger(__name__)


# ------------------------------------------------------------
# ML + heuristic merge
# ------------------------------------------------------------
def merge_detections(
    ml: Sequence[Detection],
    heuristic: Sequence[Detection],
    iou_threshold: float = 0.5,
) -> List[Detection]:
    """Keep every ML detection; add heuristic ones that duplicate none of them.

    A heuristic detection is dropped when its IoU with any ML detection
    reaches iou_threshold.
    """
    merged = list(ml)
    for h in heuristic:
        if all(iou(h, m) < iou_threshold for m in ml):
            merged.append(h)
    return merged


# ------------------------------------------------------------
# Non-maximum suppression
# ------------------------------------------------------------
def _nms(dets: Sequence[Detection], threshold: float) -> List[Detection]:
    ordered = sorted(dets, key=lambda d: -d.confidence)
    kept: List[Detection] = []
    for det in ordered:
        if all(iou(det, k) <= threshold for k in kept):
            kept.append(det)
    return kept


def non_max_suppression(
    dets: Iterable[Detection],
    threshold: float = 0.3,
    class_aware: bool = False,
) -> List[Detection]:
    """Greedy NMS by descending confidence.

    After suppression no two kept detections (of the same class, when
    class_aware) overlap with IoU above threshold. Equal confidences keep
    their input order.

    Args:
        dets: Detections to filter
        threshold: IoU above which the weaker box is dropped
        class_aware: Only suppress boxes of the same class

    Returns:
        Kept detections, highest confidence first
    """
    dets = list(dets)
    if not class_aware:
        return _nms(dets, threshold)

    kept: List[Detection] = []
    by_label = sorted(dets, key=lambda d: d.label.priority)
    for _, group in groupby(by_label, key=lambda d: d.label):
        kept.extend(_nms(list(group), threshold))
    return sorted(kept, key=lambda d: -d.confidence)


# ------------------------------------------------------------
# Final filter / order / ids
# ------------------------------------------------------------
def finalize_detections(
    dets: Iterable[Detection],
    ml_threshold: float = 0.75,
    heuristic_threshold: float = 0.6,
    max_detections: int = 50,
) -> List[Detection]:
    """Apply per-source confidence floors, sort by class priority and cap.

    Ids det_0, det_1, ... are assigned in final order.
    """
    kept = [
        d
        for d in dets
        if d.confidence >= (
            ml_threshold if d.source == DetectionSource.ML else heuristic_threshold
        )
    ]
    kept.sort(key=lambda d: d.label.priority)
    kept = kept[:max_detections]
    log.debug("Finalized %d detections", len(kept))
    return [d.with_changes(id=f"det_{i}") for i, d in enumerate(kept)]
