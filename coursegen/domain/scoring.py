from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from coursegen.domain.verdicts import Confidence, CriterionScore, JudgeIssue, Recommendation, Severity


@dataclass(frozen=True)
class RecommendationThresholds:
    accept: float = 0.90
    targeted_fix: float = 0.60


def weighted_score(*, criteria: Sequence[CriterionScore]) -> float:
    if not criteria:
        return 0.0

    weighted_sum = 0.0
    weights = 0.0
    for item in criteria:
        bounded_score = max(0.0, min(1.0, item.score))
        bounded_weight = max(0.0, item.weight)
        weighted_sum += bounded_score * bounded_weight
        weights += bounded_weight

    if weights == 0:
        return 0.0

    return round(weighted_sum / weights, 4)


def mean_score(scores: Sequence[float]) -> float:
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 4)


def recommendation_for_score(
    *,
    score: float,
    thresholds: RecommendationThresholds,
    confidence: Confidence = Confidence.MEDIUM,
    issues: Sequence[JudgeIssue] = (),
) -> Recommendation:
    if confidence == Confidence.LOW:
        return Recommendation.ESCALATE_HUMAN
    has_critical = any(issue.severity == Severity.CRITICAL for issue in issues)
    if score >= thresholds.accept and not has_critical:
        return Recommendation.ACCEPT
    if score >= thresholds.targeted_fix:
        return Recommendation.TARGETED_FIX
    return Recommendation.REGENERATE
