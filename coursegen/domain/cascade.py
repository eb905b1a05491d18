from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import time

from coursegen.domain.consensus import run_consensus
from coursegen.domain.contracts import LLMProvider
from coursegen.domain.errors import GenerationFailure, ValidationFailure
from coursegen.domain.heuristics import ArtifactContent, HeuristicThresholds, run_heuristics
from coursegen.domain.judging import render_judge_prompt, run_judge
from coursegen.domain.pipeline_spec import CascadeSettings
from coursegen.domain.verdicts import (
    CascadeResult,
    Confidence,
    ConsensusCascadeResult,
    HeuristicCascadeResult,
    JudgeVerdict,
    Recommendation,
    SingleJudgeCascadeResult,
)

logger = logging.getLogger(__name__)


@dataclass
class CascadeEvaluator:
    """Heuristics, then one judge, then a consensus vote when still unclear."""

    llm: LLMProvider
    settings: CascadeSettings

    async def evaluate(
        self,
        *,
        content: ArtifactContent,
        thresholds: HeuristicThresholds,
        stage_name: str,
        topic: str,
        keywords: Sequence[str] = (),
    ) -> CascadeResult:
        started = time.monotonic()
        report = run_heuristics(content=content, thresholds=thresholds, keywords=keywords)
        if not report.passed:
            return HeuristicCascadeResult(
                heuristic=report,
                final_recommendation=Recommendation.REGENERATE,
                final_score=0.0,
                llm_invocations=0,
                duration_ms=_elapsed_ms(started),
            )

        prompt = render_judge_prompt(settings=self.settings, content=content, stage_name=stage_name, topic=topic)

        async def _judge(model_id: str) -> JudgeVerdict:
            return await run_judge(llm=self.llm, settings=self.settings, model_id=model_id, prompt=prompt)

        single: JudgeVerdict | None = None
        try:
            single = await _judge(self.settings.single_judge_model)
        except (GenerationFailure, ValidationFailure) as exc:
            logger.warning(
                "single judge failed, escalating to consensus",
                extra={"model_tier": self.settings.single_judge_model, "error_code": exc.code},
            )

        if single is not None and self._is_decisive(single):
            return SingleJudgeCascadeResult(
                heuristic=report,
                judge=single,
                final_recommendation=single.recommendation,
                final_score=single.overall_score,
                llm_invocations=1,
                tokens_used=single.tokens_used,
                duration_ms=_elapsed_ms(started),
            )

        outcome = await run_consensus(
            judge=_judge,
            panel=self.settings.consensus_panel,
            tie_breaker=self.settings.tie_breaker_model,
            thresholds=self.settings.thresholds,
        )
        tokens = sum(verdict.tokens_used for verdict in outcome.judges)
        if single is not None:
            tokens += single.tokens_used
        return ConsensusCascadeResult(
            heuristic=report,
            single_judge=single,
            judges=outcome.judges,
            method=outcome.method,
            consensus_reached=outcome.consensus_reached,
            agreement_score=outcome.agreement_score,
            final_recommendation=outcome.final_recommendation,
            final_score=outcome.final_score,
            llm_invocations=1 + outcome.invocations,
            tokens_used=tokens,
            duration_ms=_elapsed_ms(started),
        )

    def _is_decisive(self, verdict: JudgeVerdict) -> bool:
        if verdict.confidence == Confidence.LOW:
            return False
        return not self.settings.ambiguous_band.contains(verdict.overall_score)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
