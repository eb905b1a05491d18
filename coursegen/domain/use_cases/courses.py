from __future__ import annotations

import logging

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.dto import StartCourseCommand, StartCourseResult
from coursegen.domain.errors import CourseNotFoundError, DomainValidationError
from coursegen.domain.lifecycle import STAGE_LIFECYCLES
from coursegen.domain.models import CourseStatusView, TransitionResult, WorkKind
from coursegen.domain.orchestrator import StageOrchestrator
from coursegen.domain.tracker import SubJobTracker

COMPONENT_ID = "domain.courses"
logger = logging.getLogger(__name__)


async def start_course(cmd: StartCourseCommand, *, repository: CourseRepository) -> StartCourseResult:
    """Creates the course in `pending` and queues its first advance."""
    topic = cmd.topic.strip()
    if not topic:
        raise DomainValidationError("topic must be non-empty")
    if not cmd.organization_id or not cmd.owner_id:
        raise DomainValidationError("organization_id and owner_id are required")
    document_ids = tuple(dict.fromkeys(doc_id.strip() for doc_id in cmd.document_ids if doc_id.strip()))

    course = await repository.create_course(
        organization_id=cmd.organization_id,
        owner_id=cmd.owner_id,
        topic=topic,
        document_ids=document_ids,
    )
    await repository.enqueue_work(kind=WorkKind.ADVANCE, course_id=course.course_id)
    logger.info(
        "course started",
        extra={"course_id": course.course_id, "documents": len(document_ids)},
    )
    return StartCourseResult(course_id=course.course_id, stage_state=course.stage_state)


async def get_course_status(
    course_id: str,
    *,
    repository: CourseRepository,
    tracker: SubJobTracker,
) -> CourseStatusView:
    course = await repository.get_course(course_id=course_id)
    if course is None:
        raise CourseNotFoundError(course_id)
    stages = []
    for stage, lifecycle in STAGE_LIFECYCLES.items():
        if not lifecycle.parallel:
            continue
        stages.append(await tracker.stage_progress(course_id=course_id, stage=stage))
    return CourseStatusView(
        course_id=course.course_id,
        stage_state=course.stage_state,
        failure_reason=course.failure_reason,
        stages=tuple(stages),
        updated_at=course.updated_at,
    )


async def cancel_course(course_id: str, *, orchestrator: StageOrchestrator) -> TransitionResult:
    # In-flight generate work notices the state change before its final write.
    return await orchestrator.cancel(course_id=course_id)


async def approve_stage(
    course_id: str,
    stage: int,
    *,
    orchestrator: StageOrchestrator,
    repository: CourseRepository,
) -> TransitionResult:
    result = await orchestrator.approve_stage(course_id=course_id, stage=stage)
    if result.applied:
        await repository.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
    return result
