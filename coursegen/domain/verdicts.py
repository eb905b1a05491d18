from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import ClassVar


class Recommendation(StrEnum):
    ACCEPT = "ACCEPT"
    TARGETED_FIX = "TARGETED_FIX"
    REGENERATE = "REGENERATE"
    ESCALATE_HUMAN = "ESCALATE_HUMAN"


class ReachedStage(StrEnum):
    HEURISTIC = "heuristic"
    SINGLE_JUDGE = "single_judge"
    CONSENSUS = "consensus"


class ConsensusMethod(StrEnum):
    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    TIE_BREAKER = "tie_breaker"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Severity(StrEnum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


@dataclass(frozen=True)
class CriterionScore:
    criterion: str
    score: float
    weight: float
    reason: str = ""


@dataclass(frozen=True)
class JudgeIssue:
    criterion: str
    severity: Severity
    location: str
    description: str
    suggested_fix: str = ""


@dataclass(frozen=True)
class JudgeVerdict:
    model_id: str
    overall_score: float
    recommendation: Recommendation
    confidence: Confidence
    criteria: tuple[CriterionScore, ...]
    issues: tuple[JudgeIssue, ...] = ()
    strengths: tuple[str, ...] = ()
    guidance: dict[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    tokens_used: int = 0
    duration_ms: int = 0

    @property
    def flagged_sections(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for issue in self.issues:
            if issue.location:
                seen.setdefault(issue.location, None)
        return tuple(seen)


@dataclass(frozen=True)
class HeuristicReport:
    passed: bool
    failures: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    metrics: dict[str, float] = field(default_factory=dict)


# CascadeResult is a tagged union keyed by reached_stage; each variant only
# carries what its stage produced.


@dataclass(frozen=True)
class HeuristicCascadeResult:
    reached_stage: ClassVar[ReachedStage] = ReachedStage.HEURISTIC

    heuristic: HeuristicReport
    final_recommendation: Recommendation = Recommendation.REGENERATE
    final_score: float = 0.0
    llm_invocations: int = 0
    tokens_used: int = 0
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return False


@dataclass(frozen=True)
class SingleJudgeCascadeResult:
    reached_stage: ClassVar[ReachedStage] = ReachedStage.SINGLE_JUDGE

    heuristic: HeuristicReport
    judge: JudgeVerdict
    final_recommendation: Recommendation
    final_score: float
    llm_invocations: int = 1
    tokens_used: int = 0
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.final_recommendation == Recommendation.ACCEPT


@dataclass(frozen=True)
class ConsensusCascadeResult:
    reached_stage: ClassVar[ReachedStage] = ReachedStage.CONSENSUS

    heuristic: HeuristicReport
    single_judge: JudgeVerdict | None
    judges: tuple[JudgeVerdict, ...]
    method: ConsensusMethod
    consensus_reached: bool
    agreement_score: float
    final_recommendation: Recommendation
    final_score: float
    llm_invocations: int = 0
    tokens_used: int = 0
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.final_recommendation == Recommendation.ACCEPT


CascadeResult = HeuristicCascadeResult | SingleJudgeCascadeResult | ConsensusCascadeResult


def flagged_sections(result: CascadeResult) -> tuple[str, ...]:
    if isinstance(result, SingleJudgeCascadeResult):
        return result.judge.flagged_sections
    if isinstance(result, ConsensusCascadeResult):
        seen: dict[str, None] = {}
        for verdict in result.judges:
            for location in verdict.flagged_sections:
                seen.setdefault(location, None)
        return tuple(seen)
    return ()


def cascade_guidance(result: CascadeResult) -> dict[str, str]:
    """Guidance fields handed to the next generation call."""
    if isinstance(result, SingleJudgeCascadeResult):
        return dict(result.judge.guidance)
    if isinstance(result, ConsensusCascadeResult):
        merged: dict[str, str] = {}
        for verdict in result.judges:
            for key, value in verdict.guidance.items():
                merged.setdefault(key, value)
        return merged
    return {}


def cascade_result_to_json(result: CascadeResult) -> dict[str, object]:
    payload: dict[str, object] = {"reached_stage": result.reached_stage.value}
    payload.update(asdict(result))
    payload["passed"] = result.passed
    payload["flagged_sections"] = list(flagged_sections(result))
    return payload
