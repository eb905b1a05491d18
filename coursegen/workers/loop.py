from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
from types import TracebackType

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.error_taxonomy import classify_error, resolve_stage_error
from coursegen.domain.errors import DomainInvariantError, InfrastructureError
from coursegen.domain.models import ProcessResult, WorkItemClaim

ProcessHandler = Callable[[WorkItemClaim], Awaitable[ProcessResult]]
logger = logging.getLogger("runtime")


@dataclass
class _LeaseKeeper:
    """Extends the claim lease in the background while a work item is processed."""

    repository: CourseRepository
    claim: WorkItemClaim
    worker_id: str
    lease_seconds: int
    interval_seconds: float
    lost: bool = False
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> _LeaseKeeper:
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                return
            except TimeoutError:
                pass
            try:
                extended = await self.repository.heartbeat_claim(
                    item_id=self.claim.item_id,
                    worker_id=self.worker_id,
                    lease_seconds=self.lease_seconds,
                )
            except InfrastructureError:
                # Ownership is unknown; finalize_work checks it against the row.
                logger.warning(
                    "claim heartbeat unavailable",
                    extra={"item_id": self.claim.item_id, "course_id": self.claim.course_id},
                )
                return
            if not extended:
                self.lost = True
                logger.warning(
                    "claim lease lost",
                    extra={"item_id": self.claim.item_id, "course_id": self.claim.course_id},
                )
                return


@dataclass
class WorkerLoop:
    """Claims one work item of `kind` at a time and finalizes it with the handler's result."""

    role: str
    kind: str
    repository: CourseRepository
    process: ProcessHandler
    worker_id: str = ""
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000

    def __post_init__(self) -> None:
        if not self.worker_id:
            self.worker_id = self.role

    async def run_once(self) -> bool:
        claim = await self.repository.claim_next(
            kind=self.kind,
            worker_id=self.worker_id,
            lease_seconds=self.claim_lease_seconds,
        )
        if claim is None:
            return False

        keeper = _LeaseKeeper(
            repository=self.repository,
            claim=claim,
            worker_id=self.worker_id,
            lease_seconds=self.claim_lease_seconds,
            interval_seconds=max(self.heartbeat_interval_ms, 1) / 1000,
        )
        async with keeper:
            try:
                result = await self.process(claim)
            except DomainInvariantError:
                raise
            except Exception as exc:
                logger.exception("work item handler crashed", extra=self._claim_extra(claim))
                result = ProcessResult(
                    success=False,
                    detail=f"handler crashed: {exc}",
                    error_code="internal_error",
                    retry_classification="recoverable",
                )

        # Another worker owns the item now; its outcome wins.
        if keeper.lost:
            raise DomainInvariantError("claim ownership is stale")

        error_code = None
        if not result.success:
            error_code = resolve_stage_error(stage="orchestration", code=result.error_code or "internal_error")
            logger.warning(
                "work item failed",
                extra={
                    **self._claim_extra(claim),
                    "error_code": error_code,
                    "retry_classification": result.retry_classification or classify_error(error_code),
                },
            )

        await self.repository.finalize_work(
            item_id=claim.item_id,
            worker_id=self.worker_id,
            success=result.success,
            detail=result.detail,
            error_code=error_code,
        )
        return True

    def _claim_extra(self, claim: WorkItemClaim) -> dict[str, object]:
        return {
            "kind": self.kind,
            "item_id": claim.item_id,
            "course_id": claim.course_id,
            "stage": claim.stage,
            "unit_id": claim.unit_id,
            "deliveries": claim.deliveries,
        }
