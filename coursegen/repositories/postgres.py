from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
import json
from typing import Any, TypeVar

import asyncpg

from coursegen.domain.dto import TraceEntry
from coursegen.domain.errors import CourseNotFoundError, DomainInvariantError
from coursegen.domain.error_taxonomy import classify_error, resolve_stage_error
from coursegen.domain.ids import new_attempt_id, new_course_id, new_unit_id, new_work_item_id, stage_subject_id
from coursegen.domain.models import (
    ArtifactRecord,
    AttemptCompletion,
    AttemptRecord,
    CourseSnapshot,
    StageUnitSnapshot,
    TERMINAL_UNIT_STATUSES,
    WorkItemClaim,
    WorkKind,
)
from coursegen.repositories.sql_loader import load_sql
from coursegen.repositories.stub import MAX_WORK_DELIVERIES
from coursegen.repositories.transport import with_transport_retry

T = TypeVar("T")

SQL_CREATE_COURSE = load_sql("create_course.sql")
SQL_GET_COURSE = load_sql("get_course.sql")
SQL_COURSE_EXISTS = load_sql("course_exists.sql")
SQL_UPDATE_COURSE_STATE_IF = load_sql("update_course_state_if.sql")
SQL_INSERT_UNIT = load_sql("insert_unit.sql")
SQL_COUNT_STAGE_UNITS = load_sql("count_stage_units.sql")
SQL_GET_UNIT = load_sql("get_unit.sql")
SQL_LIST_UNITS = load_sql("list_units.sql")
SQL_UPDATE_UNIT_IF = load_sql("update_unit_if.sql")
SQL_LOCK_UNIT = load_sql("lock_unit.sql")
SQL_ATTEMPT_HISTORY = load_sql("attempt_history.sql")
SQL_INSERT_ATTEMPT = load_sql("insert_attempt.sql")
SQL_BUMP_UNIT_ATTEMPTS = load_sql("bump_unit_attempts.sql")
SQL_COMPLETE_ATTEMPT = load_sql("complete_attempt.sql")
SQL_GET_ATTEMPT = load_sql("get_attempt.sql")
SQL_ABANDON_ACTIVE_ATTEMPTS = load_sql("abandon_active_attempts.sql")
SQL_LIST_ATTEMPTS = load_sql("list_attempts.sql")
SQL_UPSERT_ARTIFACT = load_sql("upsert_artifact.sql")
SQL_GET_ARTIFACT = load_sql("get_artifact.sql")
SQL_LIST_ARTIFACTS = load_sql("list_artifacts.sql")
SQL_ENQUEUE_WORK = load_sql("enqueue_work.sql")
SQL_FIND_QUEUED_ADVANCE = load_sql("find_queued_advance.sql")
SQL_CLAIM_NEXT = load_sql("claim_next.sql")
SQL_HEARTBEAT_CLAIM = load_sql("heartbeat_claim.sql")
SQL_RECLAIM_RETRY = load_sql("reclaim_retry.sql")
SQL_RECLAIM_DEAD = load_sql("reclaim_dead_letter.sql")
SQL_FINALIZE_SUCCESS = load_sql("finalize_success.sql")
SQL_FINALIZE_FAILURE_RETRY = load_sql("finalize_failure_retry.sql")
SQL_FINALIZE_FAILURE_DEAD = load_sql("finalize_failure_dead_letter.sql")
SQL_INSERT_TRACE = load_sql("insert_trace.sql")


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class _PoolClient:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    async def _with_conn(self, operation: str, work: Callable[[Any], Awaitable[T]]) -> T:
        pool = self._pool()

        async def _call() -> T:
            async with pool.acquire() as conn:
                return await work(conn)

        return await with_transport_retry(_call, operation=operation)


@dataclass
class PostgresCourseRepository(_PoolClient):
    max_deliveries: int = MAX_WORK_DELIVERIES

    async def create_course(
        self,
        *,
        organization_id: str,
        owner_id: str,
        topic: str,
        document_ids: Sequence[str],
    ) -> CourseSnapshot:
        async def _work(conn: Any) -> CourseSnapshot:
            for _ in range(5):
                try:
                    row = await conn.fetchrow(
                        SQL_CREATE_COURSE,
                        new_course_id(),
                        organization_id,
                        owner_id,
                        topic,
                        list(document_ids),
                    )
                except asyncpg.PostgresError as exc:
                    if _is_unique_violation(exc):
                        continue
                    raise
                if row is None:
                    raise DomainInvariantError("failed to create course")
                return _course(row)
            raise DomainInvariantError("failed to allocate unique course id")

        return await self._with_conn("create_course", _work)

    async def get_course(self, *, course_id: str) -> CourseSnapshot | None:
        async def _work(conn: Any) -> CourseSnapshot | None:
            row = await conn.fetchrow(SQL_GET_COURSE, course_id)
            return _course(row) if row is not None else None

        return await self._with_conn("get_course", _work)

    async def update_course_state_if(
        self,
        *,
        course_id: str,
        expected_state: str,
        new_state: str,
        failure_reason: str | None = None,
    ) -> bool:
        async def _work(conn: Any) -> bool:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_UPDATE_COURSE_STATE_IF, course_id, expected_state, new_state, failure_reason)
                if row is not None:
                    return True
                if await conn.fetchrow(SQL_COURSE_EXISTS, course_id) is None:
                    raise CourseNotFoundError(course_id)
                return False

        try:
            return await self._with_conn("update_course_state_if", _work)
        except asyncpg.CheckViolationError as exc:
            raise DomainInvariantError(f"invalid transition: {expected_state} -> {new_state}") from exc

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
        async def _work(conn: Any) -> bool:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_UPDATE_COURSE_STATE_IF, course_id, expected_state, new_state, None)
                if row is None:
                    if await conn.fetchrow(SQL_COURSE_EXISTS, course_id) is None:
                        raise CourseNotFoundError(course_id)
                    return False
                existing = await conn.fetchrow(SQL_COUNT_STAGE_UNITS, course_id, stage)
                if existing is not None and existing["total"]:
                    raise DomainInvariantError(f"stage {stage} units already exist for {course_id}")
                for ordinal, unit_ref in enumerate(unit_refs):
                    unit_id = new_unit_id()
                    await conn.execute(SQL_INSERT_UNIT, unit_id, course_id, stage, ordinal, unit_ref)
                    await _enqueue(conn, kind=WorkKind.GENERATE, course_id=course_id, stage=stage, unit_id=unit_id)
                if stage_level_work:
                    await _enqueue(conn, kind=WorkKind.GENERATE, course_id=course_id, stage=stage, unit_id=None)
                await _enqueue(conn, kind=WorkKind.ADVANCE, course_id=course_id, stage=None, unit_id=None)
                return True

        return await self._with_conn("begin_stage_processing", _work)

    async def get_unit(self, *, unit_id: str) -> StageUnitSnapshot | None:
        async def _work(conn: Any) -> StageUnitSnapshot | None:
            row = await conn.fetchrow(SQL_GET_UNIT, unit_id)
            return _unit(row) if row is not None else None

        return await self._with_conn("get_unit", _work)

    async def list_units(self, *, course_id: str, stage: int | None = None) -> list[StageUnitSnapshot]:
        async def _work(conn: Any) -> list[StageUnitSnapshot]:
            rows = await conn.fetch(SQL_LIST_UNITS, course_id, stage)
            return [_unit(row) for row in rows]

        return await self._with_conn("list_units", _work)

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
        async def _work(conn: Any) -> bool:
            row = await conn.fetchrow(
                SQL_UPDATE_UNIT_IF,
                unit_id,
                expected_status,
                status,
                current_step,
                completed_steps,
                needs_human_review,
                last_error_code,
            )
            return row is not None

        return await self._with_conn("update_unit_if", _work)

    async def start_attempt(
        self,
        *,
        subject_id: str,
        course_id: str,
        stage: int,
        unit_id: str | None,
        model_tier: str,
    ) -> AttemptRecord | None:
        async def _work(conn: Any) -> AttemptRecord | None:
            async with conn.transaction():
                if unit_id is not None:
                    # Row lock keeps the terminal check and the insert atomic.
                    locked = await conn.fetchrow(SQL_LOCK_UNIT, unit_id)
                    if locked is None or locked["status"] in TERMINAL_UNIT_STATUSES:
                        return None
                history = await conn.fetchrow(SQL_ATTEMPT_HISTORY, subject_id)
                if history["has_active"]:
                    return None
                try:
                    row = await conn.fetchrow(
                        SQL_INSERT_ATTEMPT,
                        new_attempt_id(),
                        subject_id,
                        course_id,
                        stage,
                        unit_id,
                        history["next_number"],
                        model_tier,
                        history["last_completed_at"],
                    )
                except asyncpg.UniqueViolationError:
                    # Lost the race on the one-active-attempt index.
                    return None
                if unit_id is not None:
                    await conn.execute(SQL_BUMP_UNIT_ATTEMPTS, unit_id)
                return _attempt(row)

        return await self._with_conn("start_attempt", _work)

    async def complete_attempt(self, *, attempt_id: str, completion: AttemptCompletion) -> AttemptRecord:
        async def _work(conn: Any) -> AttemptRecord:
            row = await conn.fetchrow(
                SQL_COMPLETE_ATTEMPT,
                attempt_id,
                completion.tokens_used,
                completion.cost_usd,
                completion.duration_ms,
                completion.verdict,
                completion.cascade,
                completion.error_code,
                completion.error_detail,
            )
            if row is not None:
                return _attempt(row)
            existing = await conn.fetchrow(SQL_GET_ATTEMPT, attempt_id)
            if existing is None:
                raise DomainInvariantError(f"attempt is not found: {attempt_id}")
            raise DomainInvariantError(f"attempt already completed: {attempt_id}")

        return await self._with_conn("complete_attempt", _work)

    async def abandon_active_attempts(self, *, subject_id: str, error_code: str, detail: str) -> int:
        async def _work(conn: Any) -> int:
            rows = await conn.fetch(SQL_ABANDON_ACTIVE_ATTEMPTS, subject_id, error_code, detail)
            return len(rows)

        return await self._with_conn("abandon_active_attempts", _work)

    async def list_attempts(self, *, subject_id: str) -> list[AttemptRecord]:
        async def _work(conn: Any) -> list[AttemptRecord]:
            rows = await conn.fetch(SQL_LIST_ATTEMPTS, subject_id)
            return [_attempt(row) for row in rows]

        return await self._with_conn("list_attempts", _work)

    async def save_artifact(
        self,
        *,
        course_id: str,
        stage: int,
        unit_id: str | None,
        payload: dict[str, object],
        attempt_id: str | None,
    ) -> None:
        subject_id = unit_id or stage_subject_id(course_id=course_id, stage=stage)

        async def _work(conn: Any) -> None:
            await conn.execute(SQL_UPSERT_ARTIFACT, subject_id, course_id, stage, unit_id, payload, attempt_id)

        await self._with_conn("save_artifact", _work)

    async def get_artifact(self, *, course_id: str, stage: int, unit_id: str | None) -> ArtifactRecord | None:
        subject_id = unit_id or stage_subject_id(course_id=course_id, stage=stage)

        async def _work(conn: Any) -> ArtifactRecord | None:
            row = await conn.fetchrow(SQL_GET_ARTIFACT, subject_id)
            if row is None or row["course_id"] != course_id:
                return None
            return _artifact(row)

        return await self._with_conn("get_artifact", _work)

    async def list_artifacts(self, *, course_id: str, stage: int) -> list[ArtifactRecord]:
        async def _work(conn: Any) -> list[ArtifactRecord]:
            rows = await conn.fetch(SQL_LIST_ARTIFACTS, course_id, stage)
            return [_artifact(row) for row in rows]

        return await self._with_conn("list_artifacts", _work)

    async def enqueue_work(
        self,
        *,
        kind: str,
        course_id: str,
        stage: int | None = None,
        unit_id: str | None = None,
    ) -> str:
        async def _work(conn: Any) -> str:
            async with conn.transaction():
                return await _enqueue(conn, kind=kind, course_id=course_id, stage=stage, unit_id=unit_id)

        return await self._with_conn("enqueue_work", _work)

    async def claim_next(self, *, kind: str, worker_id: str, lease_seconds: int = 30) -> WorkItemClaim | None:
        async def _work(conn: Any) -> WorkItemClaim | None:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_CLAIM_NEXT, kind, worker_id, lease_seconds)
            if row is None:
                return None
            return WorkItemClaim(
                item_id=row["public_id"],
                kind=row["kind"],
                course_id=row["course_id"],
                stage=row["stage"],
                unit_id=row["unit_id"],
                deliveries=row["deliveries"],
                lease_expires_at=row["lease_expires_at"],
            )

        return await self._with_conn("claim_next", _work)

    async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        async def _work(conn: Any) -> bool:
            row = await conn.fetchrow(SQL_HEARTBEAT_CLAIM, item_id, worker_id, lease_seconds)
            return row is not None

        return await self._with_conn("heartbeat_claim", _work)

    async def reclaim_expired_claims(self, *, kind: str) -> int:
        async def _work(conn: Any) -> int:
            async with conn.transaction():
                retry_rows = await conn.fetch(
                    SQL_RECLAIM_RETRY,
                    kind,
                    "lease_expired",
                    "claim lease expired and was reclaimed",
                    self.max_deliveries,
                )
                dead_rows = await conn.fetch(
                    SQL_RECLAIM_DEAD,
                    kind,
                    "lease_expired",
                    "claim lease expired and reached max deliveries",
                    self.max_deliveries,
                )
            return len(retry_rows) + len(dead_rows)

        return await self._with_conn("reclaim_expired_claims", _work)

    async def finalize_work(
        self,
        *,
        item_id: str,
        worker_id: str,
        success: bool,
        detail: str,
        error_code: str | None = None,
    ) -> None:
        async def _work(conn: Any) -> None:
            async with conn.transaction():
                if success:
                    row = await conn.fetchrow(SQL_FINALIZE_SUCCESS, item_id, worker_id)
                    if row is None:
                        raise DomainInvariantError("finalize rejected by ownership guard")
                    return

                resolved_error_code = resolve_stage_error(stage="orchestration", code=error_code or "internal_error")
                # Terminal errors dead-letter at once; recoverable ones requeue until max deliveries.
                if classify_error(resolved_error_code) != "terminal":
                    row = await conn.fetchrow(
                        SQL_FINALIZE_FAILURE_RETRY,
                        item_id,
                        worker_id,
                        resolved_error_code,
                        detail,
                        self.max_deliveries,
                    )
                    if row is not None:
                        return

                dead_row = await conn.fetchrow(SQL_FINALIZE_FAILURE_DEAD, item_id, worker_id, resolved_error_code, detail)
                if dead_row is None:
                    raise DomainInvariantError("finalize rejected by ownership guard")

        await self._with_conn("finalize_work", _work)


@dataclass
class PostgresTraceRecorder(_PoolClient):
    async def append(self, entry: TraceEntry) -> None:
        async def _work(conn: Any) -> None:
            await conn.execute(
                SQL_INSERT_TRACE,
                entry.course_id,
                entry.stage,
                entry.step_name,
                entry.input_summary,
                entry.output_summary,
                entry.error_detail,
                dict(entry.metrics),
                entry.recorded_at,
            )

        await self._with_conn("append_trace", _work)


async def _enqueue(conn: Any, *, kind: str, course_id: str, stage: int | None, unit_id: str | None) -> str:
    row = await conn.fetchrow(SQL_ENQUEUE_WORK, new_work_item_id(), str(kind), course_id, stage, unit_id)
    if row is not None:
        return row["public_id"]
    existing = await conn.fetchrow(SQL_FIND_QUEUED_ADVANCE, course_id)
    if existing is None:
        raise DomainInvariantError(f"failed to enqueue {kind} work for {course_id}")
    return existing["public_id"]


def _course(row: Any) -> CourseSnapshot:
    return CourseSnapshot(
        course_id=row["public_id"],
        organization_id=row["organization_id"],
        owner_id=row["owner_id"],
        topic=row["topic"],
        stage_state=row["stage_state"],
        document_ids=tuple(_json_list(row["document_ids"])),
        failure_reason=row["failure_reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _unit(row: Any) -> StageUnitSnapshot:
    return StageUnitSnapshot(
        unit_id=row["public_id"],
        course_id=row["course_id"],
        stage=row["stage"],
        ordinal=row["ordinal"],
        unit_ref=row["unit_ref"],
        status=row["status"],
        current_step=row["current_step"],
        completed_steps=row["completed_steps"],
        attempt_count=row["attempt_count"],
        needs_human_review=row["needs_human_review"],
        last_error_code=row["last_error_code"],
        updated_at=row["updated_at"],
    )


def _attempt(row: Any) -> AttemptRecord:
    cascade = row["cascade"]
    return AttemptRecord(
        attempt_id=row["public_id"],
        subject_id=row["subject_id"],
        course_id=row["course_id"],
        stage=row["stage"],
        attempt_number=row["attempt_number"],
        model_tier=row["model_tier"],
        started_at=row["started_at"],
        unit_id=row["unit_id"],
        completed_at=row["completed_at"],
        tokens_used=row["tokens_used"],
        cost_usd=float(row["cost_usd"]),
        duration_ms=row["duration_ms"],
        verdict=row["verdict"],
        cascade=_json_object(cascade) if cascade is not None else None,
        error_code=row["error_code"],
        error_detail=row["error_detail"],
    )


def _artifact(row: Any) -> ArtifactRecord:
    return ArtifactRecord(
        course_id=row["course_id"],
        stage=row["stage"],
        unit_id=row["unit_id"],
        payload=_json_object(row["payload"]),
        attempt_id=row["attempt_id"],
        created_at=row["created_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _json_list(value: object) -> list[str]:
    if isinstance(value, str):
        value = json.loads(value)
    if isinstance(value, list):
        return [str(item) for item in value]
    return []
