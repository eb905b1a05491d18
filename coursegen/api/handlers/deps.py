from __future__ import annotations

from dataclasses import dataclass

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.orchestrator import StageOrchestrator
from coursegen.domain.tracker import SubJobTracker


@dataclass(frozen=True)
class ApiDeps:
    repository: CourseRepository
    orchestrator: StageOrchestrator
    tracker: SubJobTracker
