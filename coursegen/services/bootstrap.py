from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from coursegen.api.handlers.deps import ApiDeps
from coursegen.clients.stub import InMemoryTraceRecorder, StubArtifactGenerator, StubDocumentStorage, StubLLMProvider
from coursegen.domain.cascade import CascadeEvaluator
from coursegen.domain.contracts import ArtifactGenerator, CourseRepository, DocumentStorage, LLMProvider, TraceRecorder
from coursegen.domain.orchestrator import StageOrchestrator
from coursegen.domain.pipeline_spec import PipelineSpec, load_pipeline_spec
from coursegen.domain.tracker import SubJobTracker
from coursegen.domain.use_cases.advance import PipelineDriver
from coursegen.domain.use_cases.generate import UnitRunner
from coursegen.repositories.postgres import AsyncpgPoolManager, PostgresCourseRepository, PostgresTraceRecorder
from coursegen.repositories.stub import InMemoryCourseRepository
from coursegen.roles import ROLE_TO_KIND, RuntimeRole
from coursegen.services.settings import PipelineSettings, pipeline_settings_from_env, validate_pipeline_settings
from coursegen.workers.handlers.deps import WorkerDeps
from coursegen.workers.handlers.factory import build_process_handler
from coursegen.workers.loop import WorkerLoop


@dataclass
class RuntimeContainer:
    repository: CourseRepository
    storage: DocumentStorage
    llm: LLMProvider
    generator: ArtifactGenerator
    trace: TraceRecorder
    spec: PipelineSpec
    orchestrator: StageOrchestrator
    api_deps: ApiDeps
    worker_deps: WorkerDeps
    worker_loop: WorkerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: PipelineSettings | None = None,
    repository: CourseRepository | None = None,
    storage: DocumentStorage | None = None,
    llm: LLMProvider | None = None,
    generator: ArtifactGenerator | None = None,
    trace: TraceRecorder | None = None,
) -> RuntimeContainer:
    """Wires one runtime role. Anything not passed in gets the default adapter."""
    settings = settings or pipeline_settings_from_env()
    spec = load_pipeline_spec(file_path=settings.pipeline_spec_path)
    validate_pipeline_settings(settings, spec)

    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    if repository is None and database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        repository = PostgresCourseRepository(pool_manager=pool_manager)
        if trace is None:
            trace = PostgresTraceRecorder(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    if repository is None:
        repository = InMemoryCourseRepository()
    storage = storage or StubDocumentStorage()
    llm = llm or StubLLMProvider()
    generator = generator or StubArtifactGenerator()
    trace = trace or InMemoryTraceRecorder()

    tracker = SubJobTracker(repository=repository)
    orchestrator = StageOrchestrator(repository=repository, tracker=tracker, trace=trace, spec=spec)
    api_deps = ApiDeps(repository=repository, orchestrator=orchestrator, tracker=tracker)
    worker_deps = WorkerDeps(
        repository=repository,
        orchestrator=orchestrator,
        driver=PipelineDriver(orchestrator=orchestrator, repository=repository, spec=spec),
        runner=UnitRunner(
            repository=repository,
            generator=generator,
            evaluator=CascadeEvaluator(llm=llm, settings=spec.cascade),
            storage=storage,
            tracker=tracker,
            trace=trace,
            spec=spec,
            generation_timeout_seconds=settings.llm_timeout_seconds,
        ),
    )

    worker_loop: WorkerLoop | None = None
    if role.name in ROLE_TO_KIND:
        worker_loop = WorkerLoop(
            role=role.name,
            kind=ROLE_TO_KIND[role.name],
            repository=repository,
            process=build_process_handler(role.name, worker_deps),
            worker_id=f"{role.name}:{os.getpid()}",
            claim_lease_seconds=settings.claim_lease_seconds,
        )

    return RuntimeContainer(
        repository=repository,
        storage=storage,
        llm=llm,
        generator=generator,
        trace=trace,
        spec=spec,
        orchestrator=orchestrator,
        api_deps=api_deps,
        worker_deps=worker_deps,
        worker_loop=worker_loop,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
