"""Course stage-state machine.

Every transition reads the course, decides, and writes through the store's
conditional update. A caller that loses the race re-reads: if the course is
already at or past the requested target the call is a no-op, otherwise the
move is not in the table and InvalidTransition is raised.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Collection, Sequence
from dataclasses import dataclass
import logging

from coursegen.domain.contracts import CourseRepository, TraceRecorder
from coursegen.domain.dto import TraceEntry
from coursegen.domain.errors import CourseNotFoundError, DomainInvariantError, InvalidTransition
from coursegen.domain.lifecycle import (
    STATE_SEQUENCE,
    init_predecessors,
    is_at_or_beyond,
    is_transition_allowed,
    lifecycle_for,
    successor_after_stage,
)
from coursegen.domain.models import CourseSnapshot, CourseState, TransitionResult
from coursegen.domain.pipeline_spec import PipelineSpec
from coursegen.domain.tracing import record_trace
from coursegen.domain.tracker import SubJobTracker

logger = logging.getLogger(__name__)

StateWrite = Callable[[str], Awaitable[bool]]

ALREADY_DONE = "already at or beyond target"


@dataclass
class StageOrchestrator:
    repository: CourseRepository
    tracker: SubJobTracker
    trace: TraceRecorder
    spec: PipelineSpec

    async def init_stage(self, *, course_id: str, stage: int) -> TransitionResult:
        lifecycle = lifecycle_for(stage)
        return await self._transition(
            course_id=course_id,
            from_states=init_predecessors(stage),
            to_state=lifecycle.init_state,
            stage=stage,
        )

    async def begin_processing(self, *, course_id: str, stage: int, unit_refs: Sequence[str]) -> TransitionResult:
        lifecycle = lifecycle_for(stage)
        if not lifecycle.parallel and unit_refs:
            raise DomainInvariantError(f"stage {stage} produces one artifact and takes no units")
        if len(set(unit_refs)) != len(unit_refs):
            raise DomainInvariantError(f"stage {stage} unit refs must be unique")

        async def _write(expected_state: str) -> bool:
            return await self.repository.begin_stage_processing(
                course_id=course_id,
                stage=stage,
                expected_state=expected_state,
                new_state=lifecycle.processing_state,
                unit_refs=list(unit_refs),
                stage_level_work=not lifecycle.parallel,
            )

        return await self._transition(
            course_id=course_id,
            from_states={lifecycle.init_state},
            to_state=lifecycle.processing_state,
            stage=stage,
            write=_write,
            metrics={"units": len(unit_refs)},
        )

    async def complete_stage(self, *, course_id: str, stage: int) -> TransitionResult:
        lifecycle = lifecycle_for(stage)
        policy = self.spec.stage_policy(stage)
        course = await self._require_course(course_id)

        if course.stage_state == lifecycle.processing_state:
            if lifecycle.parallel:
                progress = await self.tracker.stage_progress(course_id=course_id, stage=stage)
                if not progress.is_complete:
                    return _noop(course, lifecycle.complete_state, detail="units_pending")
                all_failed = progress.total > 0 and progress.completed == 0
                if progress.error and (not policy.tolerate_partial_failure or all_failed):
                    return await self.fail(
                        course_id=course_id,
                        reason=(
                            f"stage {stage} ({lifecycle.name}): {progress.error} of "
                            f"{progress.total} units failed"
                        ),
                    )
            else:
                artifact = await self.repository.get_artifact(course_id=course_id, stage=stage, unit_id=None)
                if artifact is None:
                    return _noop(course, lifecycle.complete_state, detail="stage_artifact_pending")

        result = await self._transition(
            course_id=course_id,
            from_states={lifecycle.processing_state},
            to_state=lifecycle.complete_state,
            stage=stage,
        )
        if policy.requires_approval and lifecycle.approval_state is not None:
            gated = await self._transition(
                course_id=course_id,
                from_states={lifecycle.complete_state},
                to_state=lifecycle.approval_state,
                stage=stage,
            )
            if gated.applied or not result.applied:
                return gated
        return result

    async def approve_stage(self, *, course_id: str, stage: int) -> TransitionResult:
        lifecycle = lifecycle_for(stage)
        if lifecycle.approval_state is None:
            raise DomainInvariantError(f"stage {stage} has no approval gate")
        return await self._transition(
            course_id=course_id,
            from_states={lifecycle.approval_state},
            to_state=successor_after_stage(stage),
            stage=stage,
        )

    async def finalize(self, *, course_id: str) -> TransitionResult:
        return await self._transition(
            course_id=course_id,
            from_states={CourseState.STAGE_6_COMPLETE},
            to_state=CourseState.FINALIZING,
            stage=None,
        )

    async def mark_completed(self, *, course_id: str) -> TransitionResult:
        return await self._transition(
            course_id=course_id,
            from_states={CourseState.FINALIZING},
            to_state=CourseState.COMPLETED,
            stage=None,
        )

    async def fail(self, *, course_id: str, reason: str) -> TransitionResult:
        async def _write(expected_state: str) -> bool:
            return await self.repository.update_course_state_if(
                course_id=course_id,
                expected_state=expected_state,
                new_state=CourseState.FAILED,
                failure_reason=reason,
            )

        return await self._transition(
            course_id=course_id,
            from_states=None,
            to_state=CourseState.FAILED,
            stage=None,
            write=_write,
            metrics={"reason": reason},
        )

    async def cancel(self, *, course_id: str) -> TransitionResult:
        return await self._transition(
            course_id=course_id,
            from_states=None,
            to_state=CourseState.CANCELLED,
            stage=None,
        )

    async def _transition(
        self,
        *,
        course_id: str,
        from_states: Collection[str] | None,
        to_state: str,
        stage: int | None,
        write: StateWrite | None = None,
        metrics: dict[str, object] | None = None,
    ) -> TransitionResult:
        """Conditional move into `to_state`.

        `from_states=None` accepts any non-terminal predecessor the transition
        table allows (used by fail/cancel).
        """
        # Each lost race means the course moved forward, so the loop is
        # bounded by the length of the state sequence.
        for _ in range(len(STATE_SEQUENCE) + 1):
            course = await self._require_course(course_id)
            current = course.stage_state
            if current == to_state or is_at_or_beyond(current, to_state):
                return _noop(course, to_state, detail=ALREADY_DONE)
            if from_states is not None and current not in from_states:
                raise InvalidTransition(course_id=course_id, from_state=current, to_state=to_state)
            if not is_transition_allowed(current, to_state):
                raise InvalidTransition(course_id=course_id, from_state=current, to_state=to_state)

            if write is None:
                applied = await self.repository.update_course_state_if(
                    course_id=course_id,
                    expected_state=current,
                    new_state=to_state,
                )
            else:
                applied = await write(current)

            if applied:
                logger.info(
                    "course transitioned",
                    extra={
                        "course_id": course_id,
                        "stage": stage,
                        "from_state": current,
                        "to_state": to_state,
                    },
                )
                await record_trace(
                    self.trace,
                    TraceEntry(
                        course_id=course_id,
                        stage=stage,
                        step_name=f"transition:{to_state}",
                        input_summary=current,
                        output_summary=to_state,
                        metrics=dict(metrics or {}),
                    ),
                )
                return TransitionResult(
                    course_id=course_id,
                    from_state=current,
                    to_state=to_state,
                    applied=True,
                    current_state=to_state,
                )
            logger.info(
                "course transition lost race",
                extra={"course_id": course_id, "stage": stage, "from_state": current, "to_state": to_state},
            )
        raise DomainInvariantError(f"course {course_id} did not settle while moving to {to_state}")

    async def _require_course(self, course_id: str) -> CourseSnapshot:
        course = await self.repository.get_course(course_id=course_id)
        if course is None:
            raise CourseNotFoundError(course_id)
        return course


def _noop(course: CourseSnapshot, to_state: str, *, detail: str) -> TransitionResult:
    return TransitionResult(
        course_id=course.course_id,
        from_state=course.stage_state,
        to_state=to_state,
        applied=False,
        current_state=course.stage_state,
        detail=detail,
    )
