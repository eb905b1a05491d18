from __future__ import annotations

from dataclasses import dataclass

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.orchestrator import StageOrchestrator
from coursegen.domain.use_cases.advance import PipelineDriver
from coursegen.domain.use_cases.generate import UnitRunner


@dataclass(frozen=True)
class WorkerDeps:
    repository: CourseRepository
    orchestrator: StageOrchestrator
    driver: PipelineDriver
    runner: UnitRunner
