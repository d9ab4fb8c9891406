"""Heuristic detection from dark connected components.

Route:
1. Local mean threshold (window 15, C 10) marks dark strokes; absolutely
   dark pixels are ink as well, so solid shapes keep their interior.
2. 4-connected labelling; components reached from the stride-2 seed grid
   with at least MIN_COMPONENT_PIXELS pixels are analysed.
3. Each component is measured on its own pixels and scored by
   BubbleClassifier. An outlined shape stays an outline.
4. Optionally, a coarse grid scan finds rectangular panel borders.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
from numpy.typing import NDArray

from ..models import Detection, DetectionClass, DetectionSource
from ..preprocess.thresholding import local_stats
from .classifier import BubbleClassifier, ComponentFeatures

log = logging.getLogger(__name__)

# 15x15 local mean; a 31x31 window merges nearby strokes at page scale
WINDOW_SIZE = 15
WINDOW_C = 10.0
INK_LEVEL = 50
SEED_STRIDE = 2
MIN_COMPONENT_PIXELS = 100
TAIL_DISTANCE_RATIO = 0.8
TAIL_MIN_EDGE_PIXELS = 10
TAIL_MAX_POINTS = 4

PANEL_GRID_STEP = 10
PANEL_MIN_LINE = 50
PANEL_MIN_SIZE = 100
PANEL_CONFIDENCE = 0.7

_CROSS = cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))
_NEIGHBOURS = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.float32)


@dataclass
class Component:
    """A labelled dark component, in image coordinates."""
    mask: NDArray                    # Component pixels, bbox-sized bool array
    edge: NDArray                    # Edge pixels of the component, same shape
    bbox: Tuple[int, int, int, int]  # (min_x, min_y, max_x, max_y), inclusive
    features: ComponentFeatures


def dark_mask(gray: NDArray, window: int = WINDOW_SIZE, c: float = WINDOW_C) -> NDArray:
    """Boolean mask of pixels darker than their local mean minus c."""
    mean, _ = local_stats(gray, window)
    return gray < mean - c


def ink_mask(gray: NDArray, edges: Optional[NDArray] = None) -> NDArray:
    """Dark strokes plus every pixel darker than INK_LEVEL."""
    if edges is None:
        edges = dark_mask(gray)
    return edges | (gray < INK_LEVEL)


def edge_pixels(shape: NDArray) -> NDArray:
    """Pixels of the shape with at least one 4-neighbour outside it."""
    padded = np.pad(shape.astype(np.uint8), 1)
    eroded = cv2.erode(padded, _CROSS, borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return (padded.astype(bool) & ~eroded.astype(bool))[1:-1, 1:-1]


class ConnectedComponentAnalyzer:
    """Find bubble and panel candidates without a model."""

    def __init__(
        self,
        tail_neighbor_threshold: int = 3,
        detect_panels: bool = True,
        classifier: Optional[BubbleClassifier] = None,
    ):
        self.tail_neighbor_threshold = tail_neighbor_threshold
        self.detect_panels = detect_panels
        self.classifier = classifier or BubbleClassifier()

    def _has_tail(self, edge: NDArray, shape: NDArray, w: int, h: int) -> bool:
        """Look for a few sharp edge points far from the centroid."""
        if int(edge.sum()) < TAIL_MIN_EDGE_PIXELS:
            return False
        ys, xs = np.nonzero(shape)
        cx, cy = xs.mean(), ys.mean()

        neighbours = cv2.filter2D(
            edge.astype(np.float32), -1, _NEIGHBOURS, borderType=cv2.BORDER_CONSTANT
        )
        ey, ex = np.nonzero(edge)
        dist = np.hypot(ex - cx, ey - cy)
        far = dist > (max(w, h) / 2.0) * TAIL_DISTANCE_RATIO
        sharp = neighbours[ey, ex] < self.tail_neighbor_threshold
        count = int(np.count_nonzero(far & sharp))
        return 0 < count <= TAIL_MAX_POINTS

    def measure(
        self, shape: NDArray, image_w: int, image_h: int
    ) -> Tuple[NDArray, ComponentFeatures]:
        """Compute shape features of a bbox-sized component mask."""
        ys, xs = np.nonzero(shape)
        w = int(xs.max() - xs.min())
        h = int(ys.max() - ys.min())
        area = int(shape.sum())
        edge = edge_pixels(shape)
        perimeter = int(edge.sum())

        bbox_area = w * h
        features = ComponentFeatures(
            width=w,
            height=h,
            area=area,
            perimeter=perimeter,
            aspect_ratio=w / h if h > 0 else math.inf,
            compactness=perimeter * perimeter / (4 * math.pi * area),
            fill_ratio=area / bbox_area if bbox_area > 0 else math.inf,
            convexity=area / bbox_area if bbox_area > 0 else math.inf,
            has_tail=self._has_tail(edge, shape, w, h),
            is_valid_size=(
                w > 30 and h > 20 and w < image_w * 0.8 and h < image_h * 0.5
            ),
        )
        return edge, features

    def components(self, gray: NDArray, mask: Optional[NDArray] = None) -> List[Component]:
        """Label dark components and measure them.

        Args:
            gray: 2-D uint8 image
            mask: Precomputed ink mask; computed from gray when omitted

        Returns:
            Components in label order
        """
        if mask is None:
            mask = ink_mask(gray)
        image_h, image_w = gray.shape
        n, labels, stats, _ = cv2.connectedComponentsWithStats(
            mask.astype(np.uint8), connectivity=4
        )
        seeded = np.unique(labels[::SEED_STRIDE, ::SEED_STRIDE])

        result: List[Component] = []
        for label in seeded:
            if label == 0:
                continue
            x, y, bw, bh, count = (int(v) for v in stats[label])
            if count < MIN_COMPONENT_PIXELS:
                continue
            crop = labels[y:y + bh, x:x + bw] == label
            edge, features = self.measure(crop, image_w, image_h)
            result.append(Component(crop, edge, (x, y, x + bw - 1, y + bh - 1), features))

        log.debug("%d labels, %d components analysed", n - 1, len(result))
        return result

    def find_bubbles(self, gray: NDArray, mask: Optional[NDArray] = None) -> List[Detection]:
        bubbles: List[Detection] = []
        for comp in self.components(gray, mask):
            f = comp.features
            if not self.classifier.is_candidate(f):
                continue
            min_x, min_y, _, _ = comp.bbox
            bubbles.append(
                Detection(
                    x=float(min_x),
                    y=float(min_y),
                    width=float(f.width),
                    height=float(f.height),
                    confidence=self.classifier.confidence(f),
                    label=self.classifier.classify(f),
                    source=DetectionSource.HEURISTIC,
                )
            )
        return bubbles

    @staticmethod
    def find_panels(mask: NDArray) -> List[Detection]:
        """Grid scan for rectangular borders.

        From every dark grid point, measure the dark run to the right and
        downward. Both runs of PANEL_MIN_LINE or more that enclose more than
        PANEL_MIN_SIZE in each direction make a panel; its area is then
        skipped by later seeds.
        """
        h, w = mask.shape
        ys = list(range(PANEL_GRID_STEP, h - PANEL_GRID_STEP, PANEL_GRID_STEP))
        xs = list(range(PANEL_GRID_STEP, w - PANEL_GRID_STEP, PANEL_GRID_STEP))
        if not ys or not xs:
            return []

        # Run length of dark pixels starting at each grid row / grid column
        rows = mask[ys, :]
        right = np.zeros(rows.shape, dtype=np.int32)
        run = np.zeros(len(ys), dtype=np.int32)
        for x in range(w - 1, -1, -1):
            run = np.where(rows[:, x], run + 1, 0)
            right[:, x] = run
        cols = mask[:, xs]
        down = np.zeros(cols.shape, dtype=np.int32)
        run = np.zeros(len(xs), dtype=np.int32)
        for y in range(h - 1, -1, -1):
            run = np.where(cols[y, :], run + 1, 0)
            down[y, :] = run

        visited = np.zeros((h, w), dtype=bool)
        panels: List[Detection] = []
        for i, y in enumerate(ys):
            for j, x in enumerate(xs):
                if visited[y, x]:
                    continue
                run_right = int(right[i, x])
                if run_right < PANEL_MIN_LINE:
                    continue
                run_down = int(down[y, j])
                if run_down < PANEL_MIN_LINE:
                    continue
                visited[y:y + run_down, x:x + run_right] = True
                if run_right > PANEL_MIN_SIZE and run_down > PANEL_MIN_SIZE:
                    panels.append(
                        Detection(
                            x=float(x),
                            y=float(y),
                            width=float(run_right),
                            height=float(run_down),
                            confidence=PANEL_CONFIDENCE,
                            label=DetectionClass.PANEL,
                            source=DetectionSource.HEURISTIC,
                        )
                    )
        return panels

    def analyze(self, gray: NDArray) -> List[Detection]:
        """Run the heuristic detector on a gray image.

        Returns:
            Bubble candidates followed by panels (when enabled)
        """
        edges = dark_mask(gray)
        detections = self.find_bubbles(gray, ink_mask(gray, edges))
        if self.detect_panels:
            detections.extend(self.find_panels(edges))
        log.debug("Heuristic pass: %d detections", len(detections))
        return detections
