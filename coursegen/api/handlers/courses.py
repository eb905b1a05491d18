from __future__ import annotations

from coursegen.api.handlers.deps import ApiDeps
from coursegen.api.schemas import (
    CourseStatusResponse,
    StageProgressResponse,
    StartCourseRequest,
    StartCourseResponse,
    TransitionResponse,
)
from coursegen.domain.dto import StartCourseCommand
from coursegen.domain.models import TransitionResult
from coursegen.domain.use_cases.courses import approve_stage, cancel_course, get_course_status, start_course


async def start_course_handler(*, request: StartCourseRequest, api_deps: ApiDeps) -> StartCourseResponse:
    result = await start_course(
        StartCourseCommand(
            organization_id=request.organization_id,
            owner_id=request.owner_id,
            topic=request.topic,
            document_ids=tuple(request.document_ids),
        ),
        repository=api_deps.repository,
    )
    return StartCourseResponse(course_id=result.course_id, stage_state=result.stage_state)


async def get_course_status_handler(*, course_id: str, api_deps: ApiDeps) -> CourseStatusResponse:
    view = await get_course_status(course_id, repository=api_deps.repository, tracker=api_deps.tracker)
    return CourseStatusResponse(
        course_id=view.course_id,
        stage_state=view.stage_state,
        failure_reason=view.failure_reason,
        stages=[
            StageProgressResponse(
                stage=progress.stage,
                total=progress.total,
                pending=progress.pending,
                active=progress.active,
                completed=progress.completed,
                error=progress.error,
                needs_human_review=progress.needs_human_review,
            )
            for progress in view.stages
        ],
        updated_at=view.updated_at,
    )


async def cancel_course_handler(*, course_id: str, api_deps: ApiDeps) -> TransitionResponse:
    return _transition_response(await cancel_course(course_id, orchestrator=api_deps.orchestrator))


async def approve_stage_handler(*, course_id: str, stage: int, api_deps: ApiDeps) -> TransitionResponse:
    result = await approve_stage(
        course_id,
        stage,
        orchestrator=api_deps.orchestrator,
        repository=api_deps.repository,
    )
    return _transition_response(result)


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        course_id=result.course_id,
        from_state=result.from_state,
        to_state=result.to_state,
        applied=result.applied,
        current_state=result.current_state,
        detail=result.detail,
    )
