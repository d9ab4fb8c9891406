"""Panel grid analysis and bubble-to-panel association."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models import Detection, DetectionClass, PanelLayout
from .geometry import overlap_ratio

log = logging.getLogger(__name__)


def _group(
    dets: Sequence[Detection],
    start: Callable[[Detection], float],
    center: Callable[[Detection], float],
    extent: Callable[[Detection], float],
) -> List[List[Detection]]:
    """Cluster detections along one axis.

    Detections are visited by start coordinate and join the first group whose
    first member's center lies within half their own extent.
    """
    groups: List[List[Detection]] = []
    for det in sorted(dets, key=start):
        for group in groups:
            if abs(center(det) - center(group[0])) < extent(det) * 0.5:
                group.append(det)
                break
        else:
            groups.append([det])
    return groups


def group_into_rows(panels: Sequence[Detection]) -> List[List[Detection]]:
    return _group(panels, lambda d: d.y, lambda d: d.center_y, lambda d: d.height)


def group_into_columns(panels: Sequence[Detection]) -> List[List[Detection]]:
    return _group(panels, lambda d: d.x, lambda d: d.center_x, lambda d: d.width)


class PanelLayoutAnalyzer:
    """Derive rows, columns and reading order from panel detections."""

    def __init__(self, reading_direction: str = "ltr"):
        self.rtl = reading_direction == "rtl"

    def reading_order(self, rows: Sequence[Sequence[Detection]]) -> List[Detection]:
        """Rows top to bottom; inside a row by center_x, reversed for rtl."""
        order: List[Detection] = []
        for row in rows:
            order.extend(sorted(row, key=lambda d: d.center_x, reverse=self.rtl))
        return order

    def analyze(self, detections: Sequence[Detection]) -> Optional[PanelLayout]:
        """Compute the layout of the panels among detections.

        Returns:
            PanelLayout, or None when there are no panels
        """
        panels = [d for d in detections if d.label == DetectionClass.PANEL]
        if not panels:
            return None

        rows = group_into_rows(panels)
        columns = group_into_columns(panels)
        order = self.reading_order(rows)

        positions: Dict[str, Tuple[int, int]] = {}
        for r, row in enumerate(rows):
            for det in row:
                positions[det.id] = (r, 0)
        for c, col in enumerate(columns):
            for det in col:
                positions[det.id] = (positions[det.id][0], c)

        layout = PanelLayout(
            layout_type="grid" if len(rows) > 1 else "single",
            rows=tuple(tuple(d.id for d in row) for row in rows),
            columns=tuple(tuple(d.id for d in col) for col in columns),
            reading_order=tuple(d.id for d in order),
            positions=positions,
        )
        log.debug(
            "Layout %s: %d rows, %d columns", layout.layout_type, len(rows), len(columns)
        )
        return layout

    def associate(
        self, detections: Sequence[Detection], layout: Optional[PanelLayout]
    ) -> List[Detection]:
        """Attach each non-panel detection to the panel covering most of it.

        A detection that overlaps no panel keeps panel_id None. Equal overlaps
        go to the panel that comes first in reading order.
        """
        if layout is None:
            return list(detections)
        panels = {d.id: d for d in detections if d.label == DetectionClass.PANEL}
        ordered = [panels[pid] for pid in layout.reading_order]

        result: List[Detection] = []
        for det in detections:
            if det.label == DetectionClass.PANEL:
                result.append(det)
                continue
            best_id: Optional[str] = None
            best = 0.0
            for panel in ordered:
                ratio = overlap_ratio(det, panel)
                if ratio > best:
                    best = ratio
                    best_id = panel.id
            result.append(det.with_changes(panel_id=best_id))
        return result
