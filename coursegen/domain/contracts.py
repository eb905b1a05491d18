from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from coursegen.domain.dto import GeneratedArtifact, GenerationRequest, LLMRequest, LLMResult, TraceEntry
from coursegen.domain.models import (
    ArtifactRecord,
    AttemptCompletion,
    AttemptRecord,
    CourseSnapshot,
    StageUnitSnapshot,
    WorkItemClaim,
)

CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"


@runtime_checkable
class CourseRepository(Protocol):
    """Durable state store shared by every worker.

    Every state-changing call is a conditional update: it succeeds only when
    the row is still in the state the caller observed, and reports a lost
    race as a falsy result instead of raising.
    """

    # Deliveries after which a failing work item is dead-lettered.
    max_deliveries: int

    async def create_course(
        self,
        *,
        organization_id: str,
        owner_id: str,
        topic: str,
        document_ids: Sequence[str],
    ) -> CourseSnapshot: ...

    async def get_course(self, *, course_id: str) -> CourseSnapshot | None: ...

    async def update_course_state_if(
        self,
        *,
        course_id: str,
        expected_state: str,
        new_state: str,
        failure_reason: str | None = None,
    ) -> bool: ...

    # Moves init -> processing, creates the stage units and enqueues their
    # generate work in one atomic step.
    async def begin_stage_processing(
        self,
        *,
        course_id: str,
        stage: int,
        expected_state: str,
        new_state: str,
        unit_refs: Sequence[str],
        stage_level_work: bool,
    ) -> bool: ...

    async def get_unit(self, *, unit_id: str) -> StageUnitSnapshot | None: ...

    async def list_units(self, *, course_id: str, stage: int | None = None) -> list[StageUnitSnapshot]: ...

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
    ) -> bool: ...

    async def start_attempt(
        self,
        *,
        subject_id: str,
        course_id: str,
        stage: int,
        unit_id: str | None,
        model_tier: str,
    ) -> AttemptRecord | None: ...

    async def complete_attempt(self, *, attempt_id: str, completion: AttemptCompletion) -> AttemptRecord: ...

    async def abandon_active_attempts(self, *, subject_id: str, error_code: str, detail: str) -> int: ...

    async def list_attempts(self, *, subject_id: str) -> list[AttemptRecord]: ...

    async def save_artifact(
        self,
        *,
        course_id: str,
        stage: int,
        unit_id: str | None,
        payload: dict[str, object],
        attempt_id: str | None,
    ) -> None: ...

    async def get_artifact(self, *, course_id: str, stage: int, unit_id: str | None) -> ArtifactRecord | None: ...

    async def list_artifacts(self, *, course_id: str, stage: int) -> list[ArtifactRecord]: ...

    async def enqueue_work(
        self,
        *,
        kind: str,
        course_id: str,
        stage: int | None = None,
        unit_id: str | None = None,
    ) -> str: ...

    async def claim_next(self, *, kind: str, worker_id: str, lease_seconds: int = 30) -> WorkItemClaim | None: ...

    async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool: ...

    async def reclaim_expired_claims(self, *, kind: str) -> int: ...

    async def finalize_work(
        self,
        *,
        item_id: str,
        worker_id: str,
        success: bool,
        detail: str,
        error_code: str | None = None,
    ) -> None: ...


@runtime_checkable
class LLMProvider(Protocol):
    """Vendor-neutral model endpoint. Must honour request.timeout_seconds."""

    async def invoke(self, request: LLMRequest) -> LLMResult: ...


@runtime_checkable
class ArtifactGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> GeneratedArtifact: ...

    def supports_targeted_fix(self, *, stage: int) -> bool: ...


@runtime_checkable
class DocumentStorage(Protocol):
    async def fetch(self, *, document_id: str) -> bytes: ...


@runtime_checkable
class TraceRecorder(Protocol):
    """Append-only step log read by observability tooling, never by the core."""

    async def append(self, entry: TraceEntry) -> None: ...
