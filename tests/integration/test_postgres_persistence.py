from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from tests.integration.postgres_test_utils import apply_down, apply_up, require_postgres, reset_public_schema

from coursegen.clients.stub import StubDocumentStorage
from coursegen.domain.errors import DomainInvariantError
from coursegen.domain.models import AttemptCompletion, WorkKind
from coursegen.repositories.postgres import AsyncpgPoolManager, PostgresCourseRepository, PostgresTraceRecorder
from coursegen.roles import validate_role
from coursegen.services.bootstrap import build_runtime_container
from coursegen.workers.handlers.factory import build_process_handler
from coursegen.workers.loop import WorkerLoop


def _run_with_repository(
    dsn: str,
    body: Callable[[PostgresCourseRepository], Awaitable[None]],
    *,
    max_deliveries: int | None = None,
) -> None:
    async def _run() -> None:
        await reset_public_schema(dsn=dsn)
        await apply_up(dsn=dsn)
        manager = AsyncpgPoolManager(dsn=dsn)
        await manager.startup()
        try:
            repo = PostgresCourseRepository(pool_manager=manager)
            if max_deliveries is not None:
                repo.max_deliveries = max_deliveries
            await body(repo)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


async def _course(repo: PostgresCourseRepository, topic: str = "Databases") -> str:
    course = await repo.create_course(
        organization_id="org-1",
        owner_id="owner-1",
        topic=topic,
        document_ids=["doc-1"],
    )
    return course.course_id


@pytest.mark.integration
def test_migration_up_down_up_contract() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        assert await repo.get_course(course_id="crs_missing") is None

    _run_with_repository(dsn, _body)

    async def _cycle() -> None:
        await apply_down(dsn=dsn)
        await apply_up(dsn=dsn)

    asyncio.run(_cycle())


@pytest.mark.integration
def test_course_round_trip_and_conditional_state_update() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        created = await repo.get_course(course_id=course_id)
        assert created is not None
        assert created.stage_state == "pending"
        assert created.document_ids == ("doc-1",)

        assert await repo.update_course_state_if(
            course_id=course_id,
            expected_state="pending",
            new_state="stage_2_init",
        )
        # A stale expected state loses without error.
        assert not await repo.update_course_state_if(
            course_id=course_id,
            expected_state="pending",
            new_state="stage_2_init",
        )
        moved = await repo.get_course(course_id=course_id)
        assert moved is not None
        assert moved.stage_state == "stage_2_init"

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_trigger_rejects_undeclared_transition() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        with pytest.raises(DomainInvariantError):
            await repo.update_course_state_if(
                course_id=course_id,
                expected_state="pending",
                new_state="completed",
            )
        course = await repo.get_course(course_id=course_id)
        assert course is not None
        assert course.stage_state == "pending"

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_concurrent_claim_exclusivity_skip_locked() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        for idx in range(3):
            course_id = await _course(repo, topic=f"topic-{idx}")
            await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)

        claims = await asyncio.gather(
            repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-1"),
            repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-2"),
            repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-3"),
        )
        claim_ids = [claim.item_id for claim in claims if claim is not None]
        assert len(claim_ids) == 3
        assert len(claim_ids) == len(set(claim_ids))
        assert await repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-4") is None

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_queued_advance_is_deduplicated_per_course() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        first = await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
        second = await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
        assert first == second

        claim = await repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-1")
        assert claim is not None
        # Once the item is leased a new advance may queue behind it.
        third = await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
        assert third != first

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_retry_progression_and_dead_letter_transition() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        item_id = await repo.enqueue_work(kind=WorkKind.GENERATE, course_id=course_id, stage=4)

        first = await repo.claim_next(kind=WorkKind.GENERATE, worker_id="w-1")
        assert first is not None and first.item_id == item_id
        assert first.deliveries == 1
        await repo.finalize_work(
            item_id=item_id,
            worker_id="w-1",
            success=False,
            detail="provider down",
            error_code="store_unavailable",
        )

        second = await repo.claim_next(kind=WorkKind.GENERATE, worker_id="w-2")
        assert second is not None and second.item_id == item_id
        assert second.deliveries == 2
        await repo.finalize_work(
            item_id=item_id,
            worker_id="w-2",
            success=False,
            detail="provider down",
            error_code="store_unavailable",
        )

        assert await repo.claim_next(kind=WorkKind.GENERATE, worker_id="w-3") is None

    _run_with_repository(dsn, _body, max_deliveries=2)


@pytest.mark.integration
def test_reclaim_and_stale_owner_guards() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        item_id = await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
        claim = await repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-1", lease_seconds=0)
        assert claim is not None

        assert await repo.reclaim_expired_claims(kind=WorkKind.ADVANCE) == 1
        assert not await repo.heartbeat_claim(item_id=item_id, worker_id="w-1")
        with pytest.raises(DomainInvariantError):
            await repo.finalize_work(item_id=item_id, worker_id="w-1", success=True, detail="late")

        again = await repo.claim_next(kind=WorkKind.ADVANCE, worker_id="w-2")
        assert again is not None
        assert again.deliveries == 2
        assert await repo.heartbeat_claim(item_id=item_id, worker_id="w-2")
        await repo.finalize_work(item_id=item_id, worker_id="w-2", success=True, detail="ok")

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_one_active_attempt_per_subject() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        course_id = await _course(repo)
        subject_id = f"{course_id}:stage-4"
        first = await repo.start_attempt(
            subject_id=subject_id,
            course_id=course_id,
            stage=4,
            unit_id=None,
            model_tier="small",
        )
        assert first is not None
        assert first.attempt_number == 1
        assert await repo.start_attempt(
            subject_id=subject_id,
            course_id=course_id,
            stage=4,
            unit_id=None,
            model_tier="small",
        ) is None

        closed = await repo.complete_attempt(
            attempt_id=first.attempt_id,
            completion=AttemptCompletion(duration_ms=12, error_code="llm_timeout", error_detail="slow"),
        )
        assert closed.error_code == "llm_timeout"
        with pytest.raises(DomainInvariantError):
            await repo.complete_attempt(attempt_id=first.attempt_id, completion=AttemptCompletion(duration_ms=1))

        second = await repo.start_attempt(
            subject_id=subject_id,
            course_id=course_id,
            stage=4,
            unit_id=None,
            model_tier="small",
        )
        assert second is not None
        assert second.attempt_number == 2
        assert [attempt.attempt_number for attempt in await repo.list_attempts(subject_id=subject_id)] == [1, 2]

    _run_with_repository(dsn, _body)


@pytest.mark.integration
def test_full_pipeline_against_postgres() -> None:
    dsn = require_postgres()

    async def _body(repo: PostgresCourseRepository) -> None:
        container = build_runtime_container(
            validate_role("api"),
            repository=repo,
            trace=PostgresTraceRecorder(pool_manager=repo.pool_manager),
            storage=StubDocumentStorage(documents={"doc-1": b"Source."}),
        )
        loops = [
            WorkerLoop(
                role=role,
                kind=kind,
                repository=repo,
                process=build_process_handler(role, container.worker_deps),
                worker_id=f"{role}:pg",
            )
            for role, kind in (("worker-advance", WorkKind.ADVANCE), ("worker-generate", WorkKind.GENERATE))
        ]
        course_id = await _course(repo)
        await repo.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)

        for _ in range(500):
            results = [await loop.run_once() for loop in loops]
            if not any(results):
                break

        course = await repo.get_course(course_id=course_id)
        assert course is not None
        assert course.stage_state == "completed"
        lessons = await repo.list_units(course_id=course_id, stage=6)
        assert lessons and all(unit.status == "completed" for unit in lessons)
        assert await repo.get_artifact(course_id=course_id, stage=5, unit_id=None) is not None

    _run_with_repository(dsn, _body)
