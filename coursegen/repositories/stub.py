from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from coursegen.domain.errors import CourseNotFoundError, DomainInvariantError
from coursegen.domain.error_taxonomy import classify_error, resolve_stage_error
from coursegen.domain.ids import new_attempt_id, new_course_id, new_unit_id, new_work_item_id
from coursegen.domain.lifecycle import is_transition_allowed
from coursegen.domain.models import (
    ArtifactRecord,
    AttemptCompletion,
    AttemptRecord,
    CourseSnapshot,
    CourseState,
    StageUnitSnapshot,
    TERMINAL_UNIT_STATUSES,
    UnitStatus,
    WorkItemClaim,
    WorkKind,
)

MAX_WORK_DELIVERIES = 5


@dataclass
class _WorkRow:
    item_id: str
    kind: str
    course_id: str
    stage: int | None
    unit_id: str | None
    status: str = "queued"
    deliveries: int = 0
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class InMemoryCourseRepository:
    """Non-network store with deterministic behavior for tests and local runs.

    Mutating methods never await, so each conditional update is atomic with
    respect to other coroutines on the loop.
    """

    courses: dict[str, CourseSnapshot] = field(default_factory=dict)
    units: dict[str, StageUnitSnapshot] = field(default_factory=dict)
    attempts: dict[str, AttemptRecord] = field(default_factory=dict)
    artifacts: dict[tuple[str, int, str | None], ArtifactRecord] = field(default_factory=dict)
    work: list[_WorkRow] = field(default_factory=list)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)
    max_deliveries: int = MAX_WORK_DELIVERIES

    async def create_course(
        self,
        *,
        organization_id: str,
        owner_id: str,
        topic: str,
        document_ids: Sequence[str],
    ) -> CourseSnapshot:
        now = _now()
        course = CourseSnapshot(
            course_id=new_course_id(),
            organization_id=organization_id,
            owner_id=owner_id,
            topic=topic,
            stage_state=CourseState.PENDING,
            document_ids=tuple(document_ids),
            created_at=now,
            updated_at=now,
        )
        self.courses[course.course_id] = course
        return course

    async def get_course(self, *, course_id: str) -> CourseSnapshot | None:
        return self.courses.get(course_id)

    async def update_course_state_if(
        self,
        *,
        course_id: str,
        expected_state: str,
        new_state: str,
        failure_reason: str | None = None,
    ) -> bool:
        course = self.courses.get(course_id)
        if course is None:
            raise CourseNotFoundError(course_id)
        if course.stage_state != expected_state:
            return False
        self._apply_state(course, new_state, failure_reason=failure_reason)
        return True

    async def begin_stage_processing(
        self,
        *,
        course_id: str,
        stage: int,
        expected_state: str,
        new_state: str,
        unit_refs: Sequence[str],
        stage_level_work: bool,
    ) -> bool:
        course = self.courses.get(course_id)
        if course is None:
            raise CourseNotFoundError(course_id)
        if course.stage_state != expected_state:
            return False
        if any(unit.course_id == course_id and unit.stage == stage for unit in self.units.values()):
            raise DomainInvariantError(f"stage {stage} units already exist for {course_id}")
        self._apply_state(course, new_state)
        now = _now()
        for ordinal, unit_ref in enumerate(unit_refs):
            unit = StageUnitSnapshot(
                unit_id=new_unit_id(),
                course_id=course_id,
                stage=stage,
                ordinal=ordinal,
                unit_ref=unit_ref,
                status=UnitStatus.PENDING,
                updated_at=now,
            )
            self.units[unit.unit_id] = unit
            self._enqueue(kind=WorkKind.GENERATE, course_id=course_id, stage=stage, unit_id=unit.unit_id)
        if stage_level_work:
            self._enqueue(kind=WorkKind.GENERATE, course_id=course_id, stage=stage, unit_id=None)
        # Covers stages that fan out to nothing.
        self._enqueue(kind=WorkKind.ADVANCE, course_id=course_id, stage=None, unit_id=None)
        return True

    async def get_unit(self, *, unit_id: str) -> StageUnitSnapshot | None:
        return self.units.get(unit_id)

    async def list_units(self, *, course_id: str, stage: int | None = None) -> list[StageUnitSnapshot]:
        items = [
            unit
            for unit in self.units.values()
            if unit.course_id == course_id and (stage is None or unit.stage == stage)
        ]
        items.sort(key=lambda unit: (unit.stage, unit.ordinal))
        return items

    async def update_unit_if(
        self,
        *,
        unit_id: str,
        expected_status: str,
        status: str,
        current_step: str | None,
        completed_steps: int,
        needs_human_review: bool = False,
        last_error_code: str | None = None,
    ) -> bool:
        unit = self.units.get(unit_id)
        if unit is None or unit.status != expected_status or unit.status in TERMINAL_UNIT_STATUSES:
            return False
        self.units[unit_id] = replace(
            unit,
            status=status,
            current_step=current_step,
            completed_steps=max(unit.completed_steps, completed_steps),
            needs_human_review=unit.needs_human_review or needs_human_review,
            last_error_code=last_error_code if last_error_code is not None else unit.last_error_code,
            updated_at=_now(),
        )
        return True

    async def start_attempt(
        self,
        *,
        subject_id: str,
        course_id: str,
        stage: int,
        unit_id: str | None,
        model_tier: str,
    ) -> AttemptRecord | None:
        if unit_id is not None:
            unit = self.units.get(unit_id)
            # Re-checked right before the write: a unit that finished must not
            # get a fresh "started" attempt.
            if unit is None or unit.status in TERMINAL_UNIT_STATUSES:
                return None
        existing = [attempt for attempt in self.attempts.values() if attempt.subject_id == subject_id]
        if any(attempt.is_active for attempt in existing):
            return None
        started_at = _now()
        last_completed = max((a.completed_at for a in existing if a.completed_at is not None), default=None)
        if last_completed is not None and started_at < last_completed:
            started_at = last_completed
        attempt = AttemptRecord(
            attempt_id=new_attempt_id(),
            subject_id=subject_id,
            course_id=course_id,
            stage=stage,
            attempt_number=max((a.attempt_number for a in existing), default=0) + 1,
            model_tier=model_tier,
            started_at=started_at,
            unit_id=unit_id,
        )
        self.attempts[attempt.attempt_id] = attempt
        if unit_id is not None:
            unit = self.units[unit_id]
            self.units[unit_id] = replace(unit, attempt_count=unit.attempt_count + 1, updated_at=_now())
        return attempt

    async def complete_attempt(self, *, attempt_id: str, completion: AttemptCompletion) -> AttemptRecord:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise DomainInvariantError(f"attempt is not found: {attempt_id}")
        if not attempt.is_active:
            raise DomainInvariantError(f"attempt already completed: {attempt_id}")
        closed = replace(
            attempt,
            completed_at=max(_now(), attempt.started_at),
            tokens_used=completion.tokens_used,
            cost_usd=completion.cost_usd,
            duration_ms=completion.duration_ms,
            verdict=completion.verdict,
            cascade=dict(completion.cascade) if completion.cascade is not None else None,
            error_code=completion.error_code,
            error_detail=completion.error_detail,
        )
        self.attempts[attempt_id] = closed
        return closed

    async def abandon_active_attempts(self, *, subject_id: str, error_code: str, detail: str) -> int:
        abandoned = 0
        for attempt in list(self.attempts.values()):
            if attempt.subject_id == subject_id and attempt.is_active:
                self.attempts[attempt.attempt_id] = replace(
                    attempt,
                    completed_at=max(_now(), attempt.started_at),
                    error_code=error_code,
                    error_detail=detail,
                )
                abandoned += 1
        return abandoned

    async def list_attempts(self, *, subject_id: str) -> list[AttemptRecord]:
        items = [attempt for attempt in self.attempts.values() if attempt.subject_id == subject_id]
        items.sort(key=lambda attempt: attempt.attempt_number)
        return items

    async def save_artifact(
        self,
        *,
        course_id: str,
        stage: int,
        unit_id: str | None,
        payload: dict[str, object],
        attempt_id: str | None,
    ) -> None:
        self.artifacts[(course_id, stage, unit_id)] = ArtifactRecord(
            course_id=course_id,
            stage=stage,
            unit_id=unit_id,
            payload=dict(payload),
            attempt_id=attempt_id,
            created_at=_now(),
        )

    async def get_artifact(self, *, course_id: str, stage: int, unit_id: str | None) -> ArtifactRecord | None:
        return self.artifacts.get((course_id, stage, unit_id))

    async def list_artifacts(self, *, course_id: str, stage: int) -> list[ArtifactRecord]:
        ordinals = {unit.unit_id: unit.ordinal for unit in self.units.values()}
        items = [
            artifact
            for (artifact_course, artifact_stage, _unit), artifact in self.artifacts.items()
            if artifact_course == course_id and artifact_stage == stage
        ]
        items.sort(key=lambda artifact: ordinals.get(artifact.unit_id or "", -1))
        return items

    async def enqueue_work(
        self,
        *,
        kind: str,
        course_id: str,
        stage: int | None = None,
        unit_id: str | None = None,
    ) -> str:
        return self._enqueue(kind=kind, course_id=course_id, stage=stage, unit_id=unit_id)

    async def claim_next(self, *, kind: str, worker_id: str, lease_seconds: int = 30) -> WorkItemClaim | None:
        now = _now()
        for row in self.work:
            if row.kind != kind or row.status != "queued":
                continue
            if kind == WorkKind.ADVANCE and any(
                other.kind == kind and other.course_id == row.course_id and other.status == "leased"
                for other in self.work
            ):
                # One advance per course at a time.
                continue
            row.status = "leased"
            row.claimed_by = worker_id
            row.deliveries += 1
            row.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return WorkItemClaim(
                item_id=row.item_id,
                kind=row.kind,
                course_id=row.course_id,
                stage=row.stage,
                unit_id=row.unit_id,
                deliveries=row.deliveries,
                lease_expires_at=row.lease_expires_at,
            )
        return None

    async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        row = self._work_row(item_id)
        now = _now()
        if (
            row is None
            or row.status != "leased"
            or row.claimed_by != worker_id
            or row.lease_expires_at is None
            or row.lease_expires_at <= now
        ):
            return False
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return True

    async def reclaim_expired_claims(self, *, kind: str) -> int:
        reclaimed = 0
        now = _now()
        for row in self.work:
            if (
                row.kind == kind
                and row.status == "leased"
                and row.lease_expires_at is not None
                and row.lease_expires_at <= now
            ):
                row.last_error_code = "lease_expired"
                row.last_error_message = "claim lease expired and was reclaimed"
                row.claimed_by = None
                row.lease_expires_at = None
                row.status = "queued" if row.deliveries < self.max_deliveries else "dead_letter"
                reclaimed += 1
        return reclaimed

    async def finalize_work(
        self,
        *,
        item_id: str,
        worker_id: str,
        success: bool,
        detail: str,
        error_code: str | None = None,
    ) -> None:
        row = self._work_row(item_id)
        if row is None:
            raise DomainInvariantError(f"work item is not found: {item_id}")
        now = _now()
        if (
            row.status != "leased"
            or row.claimed_by != worker_id
            or row.lease_expires_at is None
            or row.lease_expires_at <= now
        ):
            raise DomainInvariantError("claim ownership is stale")

        row.claimed_by = None
        row.lease_expires_at = None
        if success:
            row.status = "done"
            row.last_error_code = None
            row.last_error_message = None
            return

        resolved = resolve_stage_error(stage="orchestration", code=error_code or "internal_error")
        row.last_error_code = resolved
        row.last_error_message = detail
        # Mirror Postgres behavior: terminal -> dead_letter, recoverable -> requeue until max deliveries.
        if classify_error(resolved) == "terminal" or row.deliveries >= self.max_deliveries:
            row.status = "dead_letter"
        else:
            row.status = "queued"

    def work_items(self, *, kind: str | None = None, status: str | None = None) -> list[_WorkRow]:
        return [
            row
            for row in self.work
            if (kind is None or row.kind == kind) and (status is None or row.status == status)
        ]

    def _enqueue(self, *, kind: str, course_id: str, stage: int | None, unit_id: str | None) -> str:
        if kind == WorkKind.ADVANCE:
            for row in self.work:
                if row.kind == kind and row.course_id == course_id and row.status == "queued":
                    return row.item_id
        row = _WorkRow(item_id=new_work_item_id(), kind=kind, course_id=course_id, stage=stage, unit_id=unit_id)
        self.work.append(row)
        return row.item_id

    def _work_row(self, item_id: str) -> _WorkRow | None:
        return next((row for row in self.work if row.item_id == item_id), None)

    def _apply_state(self, course: CourseSnapshot, new_state: str, *, failure_reason: str | None = None) -> None:
        if not is_transition_allowed(course.stage_state, new_state):
            # Same guard as the Postgres trigger.
            raise DomainInvariantError(f"invalid transition: {course.stage_state} -> {new_state}")
        self.transitions.append((course.course_id, course.stage_state, new_state))
        self.courses[course.course_id] = replace(
            course,
            stage_state=new_state,
            failure_reason=failure_reason if failure_reason is not None else course.failure_reason,
            updated_at=_now(),
        )
