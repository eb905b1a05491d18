import asyncio
import logging
from dataclasses import dataclass

import pytest

from coursegen.domain.errors import DomainInvariantError, InfrastructureError
from coursegen.domain.models import ProcessResult, WorkItemClaim, WorkKind
from coursegen.repositories.stub import InMemoryCourseRepository
from coursegen.workers.loop import WorkerLoop
from coursegen.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)


async def _process(claim: WorkItemClaim) -> ProcessResult:
    return ProcessResult(success=True, detail=f"done {claim.item_id}")


async def _repository_with_item(kind: str = WorkKind.GENERATE) -> tuple[InMemoryCourseRepository, str]:
    repository = InMemoryCourseRepository()
    course = await repository.create_course(organization_id="org", owner_id="user", topic="Topic", document_ids=())
    item_id = await repository.enqueue_work(kind=kind, course_id=course.course_id, stage=4)
    return repository, item_id


@pytest.mark.unit
def test_worker_runtime_settings_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "50")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "100")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "150")
    monkeypatch.setenv("WORKER_CLAIM_LEASE_SECONDS", "45")
    monkeypatch.setenv("WORKER_HEARTBEAT_INTERVAL_MS", "5000")

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings(
        poll_interval_ms=50,
        idle_backoff_ms=100,
        error_backoff_ms=150,
        claim_lease_seconds=45,
        heartbeat_interval_ms=5000,
    )


@pytest.mark.unit
def test_worker_runtime_settings_fall_back_on_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKER_POLL_INTERVAL_MS", "abc")
    monkeypatch.setenv("WORKER_IDLE_BACKOFF_MS", "0")
    monkeypatch.setenv("WORKER_ERROR_BACKOFF_MS", "-10")
    monkeypatch.delenv("WORKER_CLAIM_LEASE_SECONDS", raising=False)
    monkeypatch.delenv("WORKER_HEARTBEAT_INTERVAL_MS", raising=False)

    settings = worker_runtime_settings_from_env()

    assert settings == WorkerRuntimeSettings()


@pytest.mark.unit
def test_worker_loop_run_once_processes_and_finalizes_claim() -> None:
    async def _run() -> None:
        repository, item_id = await _repository_with_item()
        loop = WorkerLoop(role="worker-generate", kind=WorkKind.GENERATE, repository=repository, process=_process)

        assert await loop.run_once() is True
        assert await loop.run_once() is False

        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert row.item_id == item_id
        assert row.status == "done"
        assert row.deliveries == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_failed_claim_is_requeued_until_dead_letter() -> None:
    async def _failing(claim: WorkItemClaim) -> ProcessResult:
        del claim
        return ProcessResult(success=False, detail="store down", error_code="store_unavailable")

    async def _run() -> None:
        repository, _ = await _repository_with_item()
        loop = WorkerLoop(role="worker-generate", kind=WorkKind.GENERATE, repository=repository, process=_failing)

        deliveries = 0
        while await loop.run_once():
            deliveries += 1

        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert deliveries == repository.max_deliveries
        assert row.status == "dead_letter"
        assert row.last_error_code == "store_unavailable"

    asyncio.run(_run())


@pytest.mark.unit
def test_crashing_handler_releases_claim_for_retry() -> None:
    async def _crash(claim: WorkItemClaim) -> ProcessResult:
        del claim
        raise RuntimeError("boom")

    async def _run() -> None:
        repository, item_id = await _repository_with_item()
        loop = WorkerLoop(role="worker-generate", kind=WorkKind.GENERATE, repository=repository, process=_crash)

        assert await loop.run_once() is True

        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert row.item_id == item_id
        assert row.status == "queued"
        assert row.claimed_by is None
        assert row.last_error_code == "internal_error"
        assert "boom" in (row.last_error_message or "")

    asyncio.run(_run())


@pytest.mark.unit
def test_terminal_failure_goes_straight_to_dead_letter() -> None:
    async def _invalid(claim: WorkItemClaim) -> ProcessResult:
        del claim
        return ProcessResult(success=False, detail="bad move", error_code="invalid_transition")

    async def _run() -> None:
        repository, _ = await _repository_with_item(WorkKind.ADVANCE)
        loop = WorkerLoop(role="worker-advance", kind=WorkKind.ADVANCE, repository=repository, process=_invalid)

        assert await loop.run_once() is True

        (row,) = repository.work_items(kind=WorkKind.ADVANCE)
        assert row.status == "dead_letter"
        assert row.deliveries == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_worker_loop_maintains_lease_during_processing() -> None:
    heartbeats: list[str] = []

    class _CountingRepository(InMemoryCourseRepository):
        async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
            heartbeats.append(item_id)
            return await super().heartbeat_claim(item_id=item_id, worker_id=worker_id, lease_seconds=lease_seconds)

    async def _process_long(claim: WorkItemClaim) -> ProcessResult:
        del claim
        await asyncio.sleep(0.05)
        return ProcessResult(success=True, detail="ok")

    async def _run() -> None:
        repository = _CountingRepository()
        course = await repository.create_course(organization_id="org", owner_id="user", topic="T", document_ids=())
        await repository.enqueue_work(kind=WorkKind.GENERATE, course_id=course.course_id, stage=4)
        loop = WorkerLoop(
            role="worker-generate",
            kind=WorkKind.GENERATE,
            repository=repository,
            process=_process_long,
            claim_lease_seconds=30,
            heartbeat_interval_ms=5,
        )

        assert await loop.run_once() is True
        assert heartbeats
        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert row.status == "done"

    asyncio.run(_run())


@pytest.mark.unit
def test_worker_loop_fails_when_lease_is_lost() -> None:
    class _FailingHeartbeatRepository(InMemoryCourseRepository):
        async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
            del item_id, worker_id, lease_seconds
            return False

    async def _process_long(claim: WorkItemClaim) -> ProcessResult:
        del claim
        await asyncio.sleep(0.05)
        return ProcessResult(success=True, detail="ok")

    async def _run() -> None:
        repository = _FailingHeartbeatRepository()
        course = await repository.create_course(organization_id="org", owner_id="user", topic="T", document_ids=())
        await repository.enqueue_work(kind=WorkKind.GENERATE, course_id=course.course_id, stage=4)
        loop = WorkerLoop(
            role="worker-generate",
            kind=WorkKind.GENERATE,
            repository=repository,
            process=_process_long,
            claim_lease_seconds=30,
            heartbeat_interval_ms=5,
        )

        with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
            await loop.run_once()

    asyncio.run(_run())


@pytest.mark.unit
def test_heartbeat_outage_keeps_handler_result() -> None:
    class _UnreachableHeartbeatRepository(InMemoryCourseRepository):
        async def heartbeat_claim(self, *, item_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
            raise InfrastructureError(f"store unreachable while extending {item_id}")

    async def _process_long(claim: WorkItemClaim) -> ProcessResult:
        del claim
        await asyncio.sleep(0.05)
        return ProcessResult(success=True, detail="ok")

    async def _run() -> None:
        repository = _UnreachableHeartbeatRepository()
        course = await repository.create_course(organization_id="org", owner_id="user", topic="T", document_ids=())
        await repository.enqueue_work(kind=WorkKind.GENERATE, course_id=course.course_id, stage=4)
        loop = WorkerLoop(
            role="worker-generate",
            kind=WorkKind.GENERATE,
            repository=repository,
            process=_process_long,
            claim_lease_seconds=30,
            heartbeat_interval_ms=5,
        )

        assert await loop.run_once() is True
        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert row.status == "done"
        assert row.deliveries == 1

    asyncio.run(_run())


@dataclass
class _FlakyLoop:
    repository: InMemoryCourseRepository
    calls: int = 0

    @property
    def kind(self) -> str:
        return WorkKind.GENERATE

    async def run_once(self) -> bool:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("boom")
        return False


@pytest.mark.unit
def test_runner_survives_errors_and_continues() -> None:
    flaky_loop = _FlakyLoop(repository=InMemoryCourseRepository())
    stop_event = asyncio.Event()
    settings = WorkerRuntimeSettings(poll_interval_ms=1, idle_backoff_ms=1, error_backoff_ms=1)
    state = WorkerRuntimeState()

    async def _run() -> None:
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=flaky_loop,  # pyright: ignore[reportArgumentType]
                role="worker-generate",
                run_id="run-1",
                stop_event=stop_event,
                settings=settings,
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.02)
        stop_event.set()
        await task

    asyncio.run(_run())
    assert flaky_loop.calls >= 2
    assert state.started is True
    assert state.stopped is True
    assert state.ticks_total >= 2
    assert state.errors_total >= 1


@pytest.mark.unit
def test_runner_reclaims_expired_claims_each_tick() -> None:
    async def _run() -> None:
        repository, _ = await _repository_with_item()
        # Simulates a worker that died holding the item.
        stale = await repository.claim_next(kind=WorkKind.GENERATE, worker_id="dead-worker", lease_seconds=0)
        assert stale is not None

        processed: list[str] = []

        async def _record(claim: WorkItemClaim) -> ProcessResult:
            processed.append(claim.item_id)
            return ProcessResult(success=True, detail="ok")

        loop = WorkerLoop(role="worker-generate", kind=WorkKind.GENERATE, repository=repository, process=_record)
        stop_event = asyncio.Event()
        state = WorkerRuntimeState()
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker_loop=loop,
                role="worker-generate",
                run_id="run-reclaim",
                stop_event=stop_event,
                settings=WorkerRuntimeSettings(poll_interval_ms=1, idle_backoff_ms=1, error_backoff_ms=1),
                logger=logging.getLogger("test"),
                state=state,
            )
        )
        await asyncio.sleep(0.03)
        stop_event.set()
        await task

        assert processed == [stale.item_id]
        assert state.reclaimed_total == 1
        (row,) = repository.work_items(kind=WorkKind.GENERATE)
        assert row.status == "done"
        assert row.deliveries == 2

    asyncio.run(_run())
