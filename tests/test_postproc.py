import itertools

import numpy as np
import pytest

from mangavision.detector.geometry import iou, iou_xyxy, overlap_ratio, scale_detection
from mangavision.detector.postproc import (
    finalize_detections,
    merge_detections,
    non_max_suppression,
)
from mangavision.models import Detection, DetectionClass, DetectionSource

BUBBLE = DetectionClass.SPEECH_BUBBLE
ML = DetectionSource.ML
HEURISTIC = DetectionSource.HEURISTIC


def det(x, y, w, h, conf=0.8, label=BUBBLE, source=HEURISTIC):
    return Detection(x, y, w, h, conf, label, source)


def test_iou_properties():
    a = det(0, 0, 100, 100)
    b = det(25, 0, 100, 100)
    assert iou(a, a) == 1.0
    assert iou(a, b) == pytest.approx(0.6)
    assert iou(a, b) == iou(b, a)
    assert iou(a, det(200, 200, 10, 10)) == 0.0
    # Touching edges do not overlap
    assert iou(a, det(100, 0, 50, 50)) == 0.0


def test_iou_of_degenerate_boxes():
    assert iou_xyxy((0, 0, 0, 0), (0, 0, 0, 0)) == 0.0


def test_overlap_ratio():
    inner = det(10, 10, 10, 10)
    outer = det(0, 0, 15, 100)
    assert overlap_ratio(inner, outer) == pytest.approx(0.5)
    assert overlap_ratio(inner, det(50, 50, 5, 5)) == 0.0


def test_scale_detection_clips():
    d = det(10, 20, 100, 50)
    scaled = scale_detection(d, 2.0, 150, 1000)
    assert (scaled.x, scaled.y, scaled.width, scaled.height) == (20, 40, 130, 100)


def test_nms_keeps_stronger_box():
    strong = det(0, 0, 100, 100, conf=0.9)
    weak = det(25, 0, 100, 100, conf=0.7)
    assert non_max_suppression([weak, strong], 0.3) == [strong]


def test_nms_pairwise_iou_bound():
    rng = np.random.default_rng(3)
    boxes = [
        det(*rng.uniform(0, 400, 2), *rng.uniform(20, 120, 2), conf=float(rng.uniform(0.5, 1)))
        for _ in range(60)
    ]
    kept = non_max_suppression(boxes, 0.3)
    assert kept
    for a, b in itertools.combinations(kept, 2):
        assert iou(a, b) <= 0.3
    assert [d.confidence for d in kept] == sorted((d.confidence for d in kept), reverse=True)


def test_nms_ties_keep_input_order():
    first = det(0, 0, 100, 100, conf=0.8)
    second = det(5, 5, 100, 100, conf=0.8)
    assert non_max_suppression([first, second], 0.3) == [first]


def test_class_aware_nms():
    bubble = det(0, 0, 100, 100, conf=0.9)
    panel = det(0, 0, 100, 100, conf=0.8, label=DetectionClass.PANEL)
    assert non_max_suppression([bubble, panel], 0.3) == [bubble]
    assert non_max_suppression([bubble, panel], 0.3, class_aware=True) == [bubble, panel]


def test_merge_prefers_ml():
    ml = [det(0, 0, 100, 100, conf=0.9, source=ML)]
    duplicate = det(10, 0, 100, 100, conf=0.95)
    separate = det(300, 300, 50, 50)
    merged = merge_detections(ml, [duplicate, separate], 0.5)
    assert merged == [ml[0], separate]


def test_merge_without_ml():
    heuristic = [det(0, 0, 10, 10)]
    assert merge_detections([], heuristic) == heuristic


def test_finalize_thresholds_order_and_ids():
    dets = [
        det(0, 0, 10, 10, conf=0.7, label=DetectionClass.PANEL),
        det(20, 0, 10, 10, conf=0.7, source=ML),
        det(40, 0, 10, 10, conf=0.65, label=DetectionClass.NARRATION_BOX),
        det(60, 0, 10, 10, conf=0.55),
        det(80, 0, 10, 10, conf=0.8, source=ML, label=DetectionClass.TEXT_LINE),
    ]
    final = finalize_detections(dets, ml_threshold=0.75, heuristic_threshold=0.6)
    assert [d.label for d in final] == [
        DetectionClass.NARRATION_BOX,
        DetectionClass.PANEL,
        DetectionClass.TEXT_LINE,
    ]
    assert [d.id for d in final] == ["det_0", "det_1", "det_2"]


def test_finalize_caps_count():
    dets = [det(i * 20, 0, 10, 10) for i in range(10)]
    final = finalize_detections(dets, max_detections=3)
    assert len(final) == 3
    assert final[0].x == 0
