from __future__ import annotations

from dataclasses import dataclass
import logging

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.errors import CourseNotFoundError, DomainDependencyError
from coursegen.domain.lifecycle import LAST_STAGE, STATE_SEQUENCE, is_terminal_state, lifecycle_for_state
from coursegen.domain.models import CourseSnapshot, CourseState, TransitionResult
from coursegen.domain.orchestrator import StageOrchestrator
from coursegen.domain.pipeline_spec import PipelineSpec
from coursegen.domain.use_cases.inputs import plan_units

COMPONENT_ID = "domain.advance_course"
logger = logging.getLogger(__name__)


@dataclass
class PipelineDriver:
    """Moves a course forward until it has to wait for units or approval."""

    orchestrator: StageOrchestrator
    repository: CourseRepository
    spec: PipelineSpec

    async def advance(self, *, course_id: str) -> TransitionResult | None:
        last: TransitionResult | None = None
        for _ in range(len(STATE_SEQUENCE)):
            course = await self.repository.get_course(course_id=course_id)
            if course is None:
                raise CourseNotFoundError(course_id)
            result = await self._step(course)
            if result is None:
                return last
            last = result
            if not result.applied:
                return result
        return last

    async def _step(self, course: CourseSnapshot) -> TransitionResult | None:
        state = course.stage_state
        course_id = course.course_id
        if is_terminal_state(state):
            return None
        if state == CourseState.PENDING:
            return await self.orchestrator.init_stage(course_id=course_id, stage=2)
        if state == CourseState.FINALIZING:
            return await self.orchestrator.mark_completed(course_id=course_id)

        lifecycle = lifecycle_for_state(state)
        if lifecycle is None:
            raise ValueError(f"no pipeline step for state {state}")
        stage = lifecycle.stage

        if state == lifecycle.init_state:
            try:
                unit_refs = await plan_units(repository=self.repository, course=course, stage=stage)
            except DomainDependencyError as exc:
                logger.warning("stage fan-out impossible", extra={"course_id": course_id, "stage": stage})
                return await self.orchestrator.fail(course_id=course_id, reason=str(exc))
            return await self.orchestrator.begin_processing(course_id=course_id, stage=stage, unit_refs=unit_refs)

        if state == lifecycle.processing_state:
            return await self.orchestrator.complete_stage(course_id=course_id, stage=stage)

        if state == lifecycle.complete_state:
            if self.spec.stage_policy(stage).requires_approval:
                return await self.orchestrator.complete_stage(course_id=course_id, stage=stage)
            if stage == LAST_STAGE:
                return await self.orchestrator.finalize(course_id=course_id)
            return await self.orchestrator.init_stage(course_id=course_id, stage=stage + 1)

        # Awaiting approval: nothing to do until approve_stage is called.
        return None
