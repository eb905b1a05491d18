from __future__ import annotations

import logging

from coursegen.domain.error_taxonomy import classify_error, resolve_stage_error
from coursegen.domain.errors import CourseNotFoundError, DomainError, InfrastructureError, InvalidTransition
from coursegen.domain.models import ProcessResult, WorkItemClaim
from coursegen.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.advance.process_claim"
logger = logging.getLogger(__name__)


async def process_claim(deps: WorkerDeps, *, claim: WorkItemClaim) -> ProcessResult:
    """Moves the course as far as it can go without waiting on units or approval."""
    try:
        result = await deps.driver.advance(course_id=claim.course_id)
    except CourseNotFoundError as exc:
        # Nothing left to advance.
        return ProcessResult(success=True, detail=str(exc))
    except InvalidTransition as exc:
        return await _settle(deps, claim, _failure("invalid_transition", str(exc)))
    except InfrastructureError as exc:
        return await _settle(deps, claim, _failure("store_unavailable", str(exc)))
    except DomainError as exc:
        logger.exception("advance failed", extra={"course_id": claim.course_id})
        return await _settle(deps, claim, _failure("internal_error", str(exc)))

    if result is None:
        return ProcessResult(success=True, detail="nothing to advance")
    return ProcessResult(success=True, detail=f"course at {result.current_state}")


async def _settle(deps: WorkerDeps, claim: WorkItemClaim, failure: ProcessResult) -> ProcessResult:
    """Fails the course when this failure dead-letters its advance item.

    Without a queued advance nothing would ever move the course again.
    """
    last_delivery = claim.deliveries >= deps.repository.max_deliveries
    if failure.retry_classification != "terminal" and not last_delivery:
        return failure
    try:
        await deps.orchestrator.fail(course_id=claim.course_id, reason=f"advance failed: {failure.detail}")
    except DomainError:
        logger.exception("course could not be failed", extra={"course_id": claim.course_id})
    return failure


def _failure(code: str, detail: str) -> ProcessResult:
    error_code = resolve_stage_error(stage="orchestration", code=code)
    return ProcessResult(
        success=False,
        detail=detail,
        error_code=error_code,
        retry_classification=classify_error(error_code),
    )
