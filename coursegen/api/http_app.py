from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException, Path

from coursegen.api.handlers.courses import (
    approve_stage_handler,
    cancel_course_handler,
    get_course_status_handler,
    start_course_handler,
)
from coursegen.api.handlers.deps import ApiDeps
from coursegen.api.schemas import (
    CourseStatusResponse,
    ErrorResponse,
    HealthResponse,
    ReadyResponse,
    StartCourseRequest,
    StartCourseResponse,
    TransitionResponse,
    WorkerMetrics,
)
from coursegen.domain.errors import (
    CourseNotFoundError,
    DomainError,
    DomainInvariantError,
    DomainValidationError,
    InfrastructureError,
)
from coursegen.domain.lifecycle import FIRST_STAGE, LAST_STAGE
from coursegen.workers.loop import WorkerLoop
from coursegen.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="coursegen", version="0.1.0", lifespan=lifespan)

    def _deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="pipeline")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        state = worker_state or WorkerRuntimeState()
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )

        return ReadyResponse(
            status="ready",
            role=role,
            mode="pipeline",
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=WorkerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                claims_total=state.claims_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                reclaimed_total=state.reclaimed_total,
            ),
        )

    @app.post(
        "/courses",
        response_model=StartCourseResponse,
        status_code=201,
        responses=ERROR_RESPONSES,
        tags=["Courses"],
    )
    async def create_course(request: StartCourseRequest) -> StartCourseResponse:
        deps = _deps()
        try:
            return await start_course_handler(request=request, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get("/courses/{course_id}", response_model=CourseStatusResponse, responses=ERROR_RESPONSES, tags=["Courses"])
    async def get_course(course_id: str) -> CourseStatusResponse:
        deps = _deps()
        try:
            return await get_course_status_handler(course_id=course_id, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/courses/{course_id}/cancel",
        response_model=TransitionResponse,
        responses=ERROR_RESPONSES,
        tags=["Courses"],
    )
    async def cancel_course(course_id: str) -> TransitionResponse:
        deps = _deps()
        try:
            return await cancel_course_handler(course_id=course_id, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/courses/{course_id}/stages/{stage}/approve",
        response_model=TransitionResponse,
        responses=ERROR_RESPONSES,
        tags=["Courses"],
    )
    async def approve_stage(
        course_id: str,
        stage: int = Path(ge=FIRST_STAGE, le=LAST_STAGE),
    ) -> TransitionResponse:
        deps = _deps()
        try:
            return await approve_stage_handler(course_id=course_id, stage=stage, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    return app


def _http_error(exc: DomainError) -> HTTPException:
    if isinstance(exc, CourseNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DomainValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DomainInvariantError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InfrastructureError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
