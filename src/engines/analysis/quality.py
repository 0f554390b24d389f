"""
Quality Score

    score = 100 * (stage_weight * fraction_succeeded + content_weight * content(n))
            - retry_penalty * retries

clamped to [0, 100] and rounded to one decimal. `n` counts the annotations
and suggestions the succeeded stages produced (later stages override earlier
ones per section, as in the merged analysis). `content(n)` rises linearly to
0.8 at the saturation point and approaches 1.0 above it.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from src.core.config import settings
from src.engines.analysis.schemas import StageStatus


@dataclass(frozen=True)
class QualityWeights:
    stage_weight: float
    content_weight: float
    content_saturation: int
    retry_penalty: float

    @classmethod
    def from_settings(cls) -> "QualityWeights":
        return cls(
            stage_weight=settings.QUALITY_STAGE_WEIGHT,
            content_weight=settings.QUALITY_CONTENT_WEIGHT,
            content_saturation=max(settings.QUALITY_CONTENT_SATURATION, 1),
            retry_penalty=settings.QUALITY_RETRY_PENALTY,
        )


def content_factor(n: int, saturation: int) -> float:
    if n <= 0:
        return 0.0
    linear = min(n, saturation) / saturation * 0.8
    tail = 0.2 * (1 - saturation / max(n, saturation))
    return linear + tail


def produced_content_count(stage_results: Iterable) -> int:
    annotations = 0
    suggestions = 0
    for result in stage_results:
        if result.status != StageStatus.SUCCEEDED or result.normalized_output is None:
            continue
        if result.normalized_output.visual_annotations:
            annotations = len(result.normalized_output.visual_annotations)
        if result.normalized_output.suggestions:
            suggestions = len(result.normalized_output.suggestions)
    return annotations + suggestions


def compute_quality_score(stage_results: list, weights: Optional[QualityWeights] = None) -> float:
    weights = weights or QualityWeights.from_settings()
    if not stage_results:
        return 0.0

    succeeded = sum(1 for r in stage_results if r.status == StageStatus.SUCCEEDED)
    fraction = succeeded / len(stage_results)
    retries = sum(max(r.attempt_count - 1, 0) for r in stage_results)
    n = produced_content_count(stage_results)

    score = 100 * (
        weights.stage_weight * fraction
        + weights.content_weight * content_factor(n, weights.content_saturation)
    ) - weights.retry_penalty * retries

    return round(min(100.0, max(0.0, score)), 1)
