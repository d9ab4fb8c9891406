"""Shape-based scoring and classification of connected components.

Scores how bubble-like a dark component is and decides which kind of
region it is from a handful of shape features.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..models import DetectionClass


@dataclass(frozen=True)
class ComponentFeatures:
    """Shape features of one filled component."""
    width: int              # max_x - min_x
    height: int             # max_y - min_y
    area: int               # Pixel count of the filled silhouette
    perimeter: int          # Edge pixel count
    aspect_ratio: float     # width / height
    compactness: float      # perimeter^2 / (4 pi area); 1.0 for a disc
    fill_ratio: float       # area / (width * height)
    convexity: float        # area / bbox area
    has_tail: bool
    is_valid_size: bool


class BubbleClassifier:
    """Rule-based bubble confidence and type decision.

    Confidence starts at 0.5 and gains points for roundness, a tail, a
    moderate aspect ratio and a moderate fill ratio. Components outside the
    plausible size range have their score halved.
    """

    BASE_CONFIDENCE = 0.5
    ROUND_BONUS = 0.2
    TAIL_BONUS = 0.2
    ASPECT_BONUS = 0.1
    FILL_BONUS = 0.1
    MAX_CONFIDENCE = 0.95
    CANDIDATE_MIN_CONFIDENCE = 0.6

    ROUND_MAX_COMPACTNESS = 1.5
    ROUND_MIN_CONVEXITY = 0.8
    THOUGHT_MIN_FILL = 0.7
    NARRATION_MIN_ASPECT = 1.5
    SFX_MAX_AREA = 2000

    @classmethod
    def is_round(cls, f: ComponentFeatures) -> bool:
        return f.compactness < cls.ROUND_MAX_COMPACTNESS and f.convexity > cls.ROUND_MIN_CONVEXITY

    @classmethod
    def confidence(cls, f: ComponentFeatures) -> float:
        score = cls.BASE_CONFIDENCE
        if cls.is_round(f):
            score += cls.ROUND_BONUS
        if f.has_tail:
            score += cls.TAIL_BONUS
        if 0.5 <= f.aspect_ratio <= 2.0:
            score += cls.ASPECT_BONUS
        if 0.3 < f.fill_ratio < 0.95:
            score += cls.FILL_BONUS
        if not f.is_valid_size:
            score *= 0.5
        return min(score, cls.MAX_CONFIDENCE)

    @classmethod
    def is_candidate(cls, f: ComponentFeatures) -> bool:
        return f.is_valid_size and cls.confidence(f) > cls.CANDIDATE_MIN_CONFIDENCE

    @classmethod
    def classify(cls, f: ComponentFeatures) -> DetectionClass:
        """Pick the region type; the first matching rule wins."""
        round_ = cls.is_round(f)
        if f.has_tail:
            return DetectionClass.SPEECH_BUBBLE
        if round_ and f.fill_ratio > cls.THOUGHT_MIN_FILL:
            return DetectionClass.THOUGHT_BUBBLE
        if not round_ and f.aspect_ratio > cls.NARRATION_MIN_ASPECT:
            return DetectionClass.NARRATION_BOX
        if f.area < cls.SFX_MAX_AREA:
            return DetectionClass.SFX_BUBBLE
        return DetectionClass.SPEECH_BUBBLE
