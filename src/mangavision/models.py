"""Detection records shared by the detector, cache and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple


class DetectionClass(str, Enum):
    """Region categories, in output priority order."""

    SPEECH_BUBBLE = "speech_bubble"
    THOUGHT_BUBBLE = "thought_bubble"
    NARRATION_BOX = "narration_box"
    SFX_BUBBLE = "sfx_bubble"
    PANEL = "panel"
    TEXT_LINE = "text_line"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {cls: i for i, cls in enumerate(DetectionClass)}


class DetectionSource(str, Enum):
    ML = "ml"
    HEURISTIC = "heuristic"


@dataclass(frozen=True)
class Detection:
    """One detected region in image pixel coordinates."""

    x: float
    y: float
    width: float
    height: float
    confidence: float
    label: DetectionClass
    source: DetectionSource
    id: str = ""
    panel_id: Optional[str] = None

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.x2, self.y2)

    def with_changes(self, **changes: Any) -> "Detection":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "center_x": self.center_x,
            "center_y": self.center_y,
            "confidence": self.confidence,
            "class": self.label.value,
            "source": self.source.value,
            "panel_id": self.panel_id,
        }


@dataclass(frozen=True)
class PanelLayout:
    """Spatial arrangement of the panels on a page.

    Attributes:
        layout_type: 'grid' for several panels, 'single' otherwise
        rows: Panel ids grouped into rows, top to bottom
        columns: Panel ids grouped into columns, left to right
        reading_order: Panel ids in reading order
        positions: Panel id -> (row index, column index)
    """

    layout_type: str
    rows: Tuple[Tuple[str, ...], ...] = ()
    columns: Tuple[Tuple[str, ...], ...] = ()
    reading_order: Tuple[str, ...] = ()
    positions: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layout_type": self.layout_type,
            "rows": [list(r) for r in self.rows],
            "columns": [list(c) for c in self.columns],
            "reading_order": list(self.reading_order),
            "positions": {k: list(v) for k, v in self.positions.items()},
        }


@dataclass(frozen=True)
class DetectionSet(Sequence):
    """Immutable ordered detections for one page."""

    detections: Tuple[Detection, ...]
    image_width: int
    image_height: int
    layout: Optional[PanelLayout] = None
    advisories: Tuple[str, ...] = ()

    @classmethod
    def empty(cls, width: int, height: int, advisories: Sequence[str] = ()) -> "DetectionSet":
        return cls((), width, height, None, tuple(advisories))

    def __getitem__(self, index):  # type: ignore[override]
        return self.detections[index]

    def __len__(self) -> int:
        return len(self.detections)

    def __iter__(self) -> Iterator[Detection]:
        return iter(self.detections)

    def by_class(self, label: DetectionClass) -> List[Detection]:
        return [d for d in self.detections if d.label == label]

    @property
    def panels(self) -> List[Detection]:
        return self.by_class(DetectionClass.PANEL)

    @property
    def bubbles(self) -> List[Detection]:
        return [d for d in self.detections if d.label != DetectionClass.PANEL]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_width": self.image_width,
            "image_height": self.image_height,
            "detections": [d.to_dict() for d in self.detections],
            "layout": self.layout.to_dict() if self.layout else None,
            "advisories": list(self.advisories),
        }
