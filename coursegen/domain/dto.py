from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


@dataclass(frozen=True)
class StartCourseCommand:
    organization_id: str
    owner_id: str
    topic: str
    document_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class StartCourseResult:
    course_id: str
    stage_state: str


@dataclass(frozen=True)
class LLMRequest:
    prompt: str
    model_tier: str
    timeout_seconds: float
    purpose: str = "judge"


@dataclass(frozen=True)
class LLMResult:
    content: str
    tokens_used: int
    duration_ms: int


@dataclass(frozen=True)
class GenerationRequest:
    course_id: str
    stage: int
    stage_name: str
    topic: str
    model_tier: str
    attempt_number: int
    timeout_seconds: float
    unit_id: str | None = None
    unit_ref: str | None = None
    inputs: dict[str, object] = field(default_factory=dict)
    fix_sections: tuple[str, ...] = ()
    previous_payload: dict[str, object] | None = None
    guidance: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GeneratedArtifact:
    payload: dict[str, object]
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0


@dataclass(frozen=True)
class TraceEntry:
    course_id: str
    stage: int | None
    step_name: str
    input_summary: str = ""
    output_summary: str | None = None
    error_detail: str | None = None
    metrics: dict[str, object] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
