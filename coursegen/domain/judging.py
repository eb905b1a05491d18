from __future__ import annotations

import json
import re
from collections.abc import Sequence

from coursegen.domain.contracts import LLMProvider
from coursegen.domain.dto import LLMRequest
from coursegen.domain.errors import GenerationFailure, ValidationFailure
from coursegen.domain.field_validation import FIX_STRATEGIES, TONES, validate_lenient, validate_strict
from coursegen.domain.heuristics import ArtifactContent
from coursegen.domain.pipeline_spec import CascadeSettings, RubricCriterion, render_template
from coursegen.domain.scoring import recommendation_for_score, weighted_score
from coursegen.domain.timeouts import call_with_timeout
from coursegen.domain.verdicts import (
    Confidence,
    CriterionScore,
    JudgeIssue,
    JudgeVerdict,
    Recommendation,
    Severity,
)

FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def render_judge_prompt(
    *,
    settings: CascadeSettings,
    content: ArtifactContent,
    stage_name: str,
    topic: str,
) -> str:
    rubric_lines = "\n".join(
        f"- {criterion.id} (weight {criterion.weight:g}): {criterion.description}" for criterion in settings.rubric
    )
    return render_template(
        template=settings.judge_template,
        inputs={
            "stage": stage_name,
            "topic": topic,
            "rubric": rubric_lines,
            "artifact": content.full_text(),
        },
    )


async def run_judge(
    *,
    llm: LLMProvider,
    settings: CascadeSettings,
    model_id: str,
    prompt: str,
) -> JudgeVerdict:
    result = await call_with_timeout(
        llm.invoke(
            LLMRequest(
                prompt=prompt,
                model_tier=model_id,
                timeout_seconds=settings.judge_timeout_seconds,
                purpose="judge",
            )
        ),
        timeout_seconds=settings.judge_timeout_seconds,
        what=f"judge {model_id}",
    )
    return parse_judge_response(
        raw_text=result.content,
        model_id=model_id,
        settings=settings,
        tokens_used=result.tokens_used,
        duration_ms=result.duration_ms,
    )


def parse_judge_response(
    *,
    raw_text: str,
    model_id: str,
    settings: CascadeSettings,
    tokens_used: int = 0,
    duration_ms: int = 0,
) -> JudgeVerdict:
    payload = _load_json(raw_text)
    warnings: list[str] = []

    criteria = _parse_criteria(payload.get("criteria"), rubric=settings.rubric, warnings=warnings)
    overall = weighted_score(criteria=criteria)

    # Persisted categorical fields: strict.
    confidence = Confidence(
        validate_strict(payload.get("confidence"), field="confidence", allowed=[item.value for item in Confidence])
    )
    issues = _parse_issues(payload.get("issues"), rubric=settings.rubric, warnings=warnings)

    reported = payload.get("recommendation")
    if reported is None:
        recommendation = recommendation_for_score(
            score=overall,
            thresholds=settings.thresholds,
            confidence=confidence,
            issues=issues,
        )
    else:
        recommendation = Recommendation(
            validate_strict(reported, field="recommendation", allowed=[item.value for item in Recommendation])
        )

    # Guidance fields for the next generation call: lenient.
    guidance: dict[str, str] = {}
    for key, allowed in (("fix_strategy", FIX_STRATEGIES), ("tone", TONES)):
        if payload.get(key) is None:
            continue
        check = validate_lenient(payload.get(key), field=key, allowed=allowed)
        if check.warning:
            warnings.append(check.warning)
        if check.value:
            guidance[key] = check.value

    strengths_raw = payload.get("strengths")
    strengths = tuple(str(item) for item in strengths_raw) if isinstance(strengths_raw, list) else ()

    return JudgeVerdict(
        model_id=model_id,
        overall_score=overall,
        recommendation=recommendation,
        confidence=confidence,
        criteria=criteria,
        issues=issues,
        strengths=strengths,
        guidance=guidance,
        warnings=tuple(warnings),
        tokens_used=tokens_used,
        duration_ms=duration_ms,
    )


def _load_json(raw_text: str) -> dict[str, object]:
    cleaned = FENCE_RE.sub("", raw_text.strip())
    try:
        loaded = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise GenerationFailure("judge output is not valid JSON", code="generation_invalid_output") from exc
    if not isinstance(loaded, dict):
        raise GenerationFailure("judge output root must be JSON object", code="generation_invalid_output")
    return loaded


def _parse_criteria(
    raw: object,
    *,
    rubric: Sequence[RubricCriterion],
    warnings: list[str],
) -> tuple[CriterionScore, ...]:
    if not isinstance(raw, list):
        raise ValidationFailure("judge response must include criteria array", field="criteria")
    weights = {criterion.id: criterion.weight for criterion in rubric}
    scored: dict[str, CriterionScore] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationFailure("criteria entry must be object", field="criteria")
        check = validate_lenient(entry.get("criterion"), field="criteria.criterion", allowed=weights)
        if check.warning:
            warnings.append(check.warning)
        if check.value not in weights:
            continue
        score = entry.get("score")
        if not isinstance(score, (int, float)) or isinstance(score, bool) or not 0.0 <= float(score) <= 1.0:
            raise ValidationFailure(f"criteria.{check.value}.score must be a number in [0, 1]", field="criteria")
        scored[check.value] = CriterionScore(
            criterion=check.value,
            score=float(score),
            weight=weights[check.value],
            reason=str(entry.get("reason") or ""),
        )
    if not scored:
        raise ValidationFailure("judge response scored none of the rubric criteria", field="criteria")
    missing = [criterion.id for criterion in rubric if criterion.id not in scored]
    if missing:
        warnings.append(f"criteria not scored: {', '.join(missing)}")
    return tuple(scored[criterion.id] for criterion in rubric if criterion.id in scored)


def _parse_issues(
    raw: object,
    *,
    rubric: Sequence[RubricCriterion],
    warnings: list[str],
) -> tuple[JudgeIssue, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationFailure("issues must be an array", field="issues")
    criteria_ids = [criterion.id for criterion in rubric]
    issues: list[JudgeIssue] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationFailure("issue entry must be object", field="issues")
        severity = Severity(
            validate_strict(entry.get("severity"), field="issues.severity", allowed=[item.value for item in Severity])
        )
        criterion = validate_lenient(entry.get("criterion"), field="issues.criterion", allowed=criteria_ids)
        if criterion.warning:
            warnings.append(criterion.warning)
        issues.append(
            JudgeIssue(
                criterion=criterion.value,
                severity=severity,
                location=str(entry.get("location") or ""),
                description=str(entry.get("description") or ""),
                suggested_fix=str(entry.get("suggested_fix") or ""),
            )
        )
    return tuple(issues)
