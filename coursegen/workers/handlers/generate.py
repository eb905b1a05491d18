from __future__ import annotations

import logging

from coursegen.domain.error_taxonomy import classify_error, resolve_stage_error
from coursegen.domain.errors import DomainError, InfrastructureError, ResourceExhausted
from coursegen.domain.models import ProcessResult, WorkItemClaim
from coursegen.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.generate.process_claim"
logger = logging.getLogger(__name__)


async def process_claim(deps: WorkerDeps, *, claim: WorkItemClaim) -> ProcessResult:
    """Runs the generate-evaluate loop for one unit or stage-level artifact."""
    if claim.stage is None:
        return _failure("internal_error", "generate work item has no stage")
    try:
        result = await deps.runner.run(course_id=claim.course_id, stage=claim.stage, unit_id=claim.unit_id)
    except ResourceExhausted as exc:
        # A stage-level artifact ran out of attempts: the course cannot go on.
        transition = await deps.orchestrator.fail(course_id=claim.course_id, reason=str(exc))
        logger.warning(
            "stage artifact exhausted retries",
            extra={"course_id": claim.course_id, "stage": claim.stage, "to_state": transition.current_state},
        )
        return ProcessResult(success=True, detail=str(exc))
    except InfrastructureError as exc:
        return _failure("store_unavailable", str(exc))
    except DomainError as exc:
        logger.exception(
            "generate failed",
            extra={"course_id": claim.course_id, "stage": claim.stage, "unit_id": claim.unit_id},
        )
        return _failure("internal_error", str(exc))

    return ProcessResult(success=True, detail=f"{result.outcome} after {result.attempts} attempt(s)")


def _failure(code: str, detail: str) -> ProcessResult:
    error_code = resolve_stage_error(stage="orchestration", code=code)
    return ProcessResult(
        success=False,
        detail=detail,
        error_code=error_code,
        retry_classification=classify_error(error_code),
    )
