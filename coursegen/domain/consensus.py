"""Multi-judge voting used when a single judge is not decisive.

Panel judges run concurrently. A tie-breaker judge is called at most once,
when the panel has no strict majority (a 1-1 split, a three-way split) or
when a panel judge failed and fewer than two verdicts are left. In the
second case the method reflects the final tally, not `tie_breaker`.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
import logging

from coursegen.domain.errors import GenerationFailure, ValidationFailure
from coursegen.domain.scoring import RecommendationThresholds, mean_score, recommendation_for_score
from coursegen.domain.verdicts import ConsensusMethod, JudgeVerdict, Recommendation

JudgeCall = Callable[[str], Awaitable[JudgeVerdict]]
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusOutcome:
    judges: tuple[JudgeVerdict, ...]
    method: ConsensusMethod
    consensus_reached: bool
    agreement_score: float
    final_recommendation: Recommendation
    final_score: float
    invocations: int
    failures: tuple[str, ...] = ()


async def run_consensus(
    *,
    judge: JudgeCall,
    panel: Sequence[str],
    tie_breaker: str,
    thresholds: RecommendationThresholds,
) -> ConsensusOutcome:
    if len(panel) < 2:
        raise ValueError("consensus needs at least two panel judges")

    failures: list[str] = []
    results = await asyncio.gather(*(judge(model_id) for model_id in panel), return_exceptions=True)
    verdicts: list[JudgeVerdict] = []
    for model_id, result in zip(panel, results):
        if isinstance(result, (GenerationFailure, ValidationFailure)):
            logger.warning("consensus judge failed", extra={"model_tier": model_id, "error_code": result.code})
            failures.append(f"{model_id}: {result}")
            continue
        if isinstance(result, BaseException):
            raise result
        verdicts.append(result)
    invocations = len(panel)

    split = len(verdicts) >= 2 and not _has_majority(verdicts)
    tie_breaker_used = False
    if split or len(verdicts) < 2:
        invocations += 1
        try:
            verdicts.append(await judge(tie_breaker))
            tie_breaker_used = True
        except (GenerationFailure, ValidationFailure) as exc:
            logger.warning("tie-breaker judge failed", extra={"model_tier": tie_breaker, "error_code": exc.code})
            failures.append(f"{tie_breaker}: {exc}")

    if not verdicts:
        raise GenerationFailure("all consensus judges failed: " + "; ".join(failures))

    counts = Counter(verdict.recommendation for verdict in verdicts)
    top_recommendation, top_count = counts.most_common(1)[0]
    final_score = mean_score([verdict.overall_score for verdict in verdicts])
    consensus_reached = top_count * 2 > len(verdicts)

    # A tie-breaker standing in for a failed judge is labelled by the final tally.
    if tie_breaker_used and split:
        method = ConsensusMethod.TIE_BREAKER
    elif top_count == len(verdicts):
        method = ConsensusMethod.UNANIMOUS
    else:
        method = ConsensusMethod.MAJORITY

    if consensus_reached:
        final_recommendation = top_recommendation
    else:
        # No majority: fall back to what the mean score implies.
        final_recommendation = recommendation_for_score(score=final_score, thresholds=thresholds)

    return ConsensusOutcome(
        judges=tuple(verdicts),
        method=method,
        consensus_reached=consensus_reached,
        agreement_score=round(top_count / len(verdicts), 4),
        final_recommendation=final_recommendation,
        final_score=final_score,
        invocations=invocations,
        failures=tuple(failures),
    )


def _has_majority(verdicts: Sequence[JudgeVerdict]) -> bool:
    counts = Counter(verdict.recommendation for verdict in verdicts)
    return counts.most_common(1)[0][1] * 2 > len(verdicts)
