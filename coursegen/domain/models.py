from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from coursegen.domain.error_taxonomy import ErrorCode, RetryClassification


# Canonical course lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with coursegen/domain/lifecycle.py
#   (STAGE_LIFECYCLES and ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the stage_state CHECK constraint and the
#   transition trigger in db/migrations/000001_bootstrap.up.sql.
# - Any state add/remove/rename must be done atomically across all these files.
class CourseState(StrEnum):
    PENDING = "pending"

    STAGE_2_INIT = "stage_2_init"
    STAGE_2_PROCESSING = "stage_2_processing"
    STAGE_2_COMPLETE = "stage_2_complete"
    STAGE_2_AWAITING_APPROVAL = "stage_2_awaiting_approval"

    STAGE_3_INIT = "stage_3_init"
    STAGE_3_SUMMARIZING = "stage_3_summarizing"
    STAGE_3_COMPLETE = "stage_3_complete"
    STAGE_3_AWAITING_APPROVAL = "stage_3_awaiting_approval"

    STAGE_4_INIT = "stage_4_init"
    STAGE_4_ANALYZING = "stage_4_analyzing"
    STAGE_4_COMPLETE = "stage_4_complete"
    STAGE_4_AWAITING_APPROVAL = "stage_4_awaiting_approval"

    STAGE_5_INIT = "stage_5_init"
    STAGE_5_GENERATING = "stage_5_generating"
    STAGE_5_COMPLETE = "stage_5_complete"
    STAGE_5_AWAITING_APPROVAL = "stage_5_awaiting_approval"

    STAGE_6_INIT = "stage_6_init"
    STAGE_6_GENERATING = "stage_6_generating"
    STAGE_6_COMPLETE = "stage_6_complete"

    FINALIZING = "finalizing"

    # Terminal states.
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UnitStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_UNIT_STATUSES: frozenset[str] = frozenset({UnitStatus.COMPLETED, UnitStatus.ERROR})


class WorkKind(StrEnum):
    ADVANCE = "advance"
    GENERATE = "generate"


@dataclass(frozen=True)
class CourseSnapshot:
    course_id: str
    organization_id: str
    owner_id: str
    topic: str
    stage_state: str
    document_ids: tuple[str, ...] = ()
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class StageUnitSnapshot:
    unit_id: str
    course_id: str
    stage: int
    ordinal: int
    unit_ref: str
    status: str
    current_step: str | None = None
    completed_steps: int = 0
    attempt_count: int = 0
    needs_human_review: bool = False
    last_error_code: str | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UNIT_STATUSES


@dataclass(frozen=True)
class AttemptRecord:
    """One generation+evaluation cycle.

    Written once when started and closed exactly once; a closed attempt is
    never touched again.
    """

    attempt_id: str
    subject_id: str
    course_id: str
    stage: int
    attempt_number: int
    model_tier: str
    started_at: datetime
    unit_id: str | None = None
    completed_at: datetime | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    verdict: str | None = None
    cascade: dict[str, object] | None = None
    error_code: str | None = None
    error_detail: str | None = None

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


@dataclass(frozen=True)
class AttemptCompletion:
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    verdict: str | None = None
    cascade: dict[str, object] | None = None
    error_code: str | None = None
    error_detail: str | None = None


@dataclass(frozen=True)
class ArtifactRecord:
    course_id: str
    stage: int
    unit_id: str | None
    payload: dict[str, object]
    attempt_id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class WorkItemClaim:
    item_id: str
    kind: str
    course_id: str
    stage: int | None = None
    unit_id: str | None = None
    deliveries: int = 1
    lease_expires_at: datetime | None = None


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    detail: str = ""
    error_code: ErrorCode | None = None
    retry_classification: RetryClassification | None = None


@dataclass(frozen=True)
class TransitionResult:
    course_id: str
    from_state: str
    to_state: str
    applied: bool
    current_state: str
    detail: str = ""


@dataclass(frozen=True)
class StageProgress:
    stage: int
    total: int = 0
    pending: int = 0
    active: int = 0
    completed: int = 0
    error: int = 0
    needs_human_review: int = 0

    @property
    def terminal(self) -> int:
        return self.completed + self.error

    @property
    def is_complete(self) -> bool:
        return self.terminal == self.total


@dataclass(frozen=True)
class CourseStatusView:
    course_id: str
    stage_state: str
    failure_reason: str | None
    stages: tuple[StageProgress, ...] = field(default_factory=tuple)
    updated_at: datetime | None = None
