from __future__ import annotations

from dataclasses import dataclass
import logging

from coursegen.domain.contracts import CourseRepository
from coursegen.domain.errors import DomainValidationError
from coursegen.domain.models import StageProgress, StageUnitSnapshot, UnitStatus
from coursegen.domain.steps import StepKind, StepOutcome, steps_for

logger = logging.getLogger(__name__)

# A unit row is written by one worker at a time; a handful of rounds covers
# a heartbeat or reclaim racing the owner.
MAX_UPDATE_ROUNDS = 5


@dataclass(frozen=True)
class UnitProgressUpdate:
    unit: StageUnitSnapshot
    applied: bool
    detail: str = ""


@dataclass
class SubJobTracker:
    """Folds per-unit step reports into one stage-level completion signal."""

    repository: CourseRepository

    async def record_unit_progress(
        self,
        *,
        unit_id: str,
        step: str,
        outcome: StepOutcome,
        error_code: str | None = None,
        needs_human_review: bool = False,
    ) -> UnitProgressUpdate:
        for _ in range(MAX_UPDATE_ROUNDS):
            unit = await self.repository.get_unit(unit_id=unit_id)
            if unit is None:
                raise DomainValidationError(f"unit is not found: {unit_id}")
            if unit.is_terminal:
                # Terminal exactly once per stage pass; late writes are ignored.
                return UnitProgressUpdate(unit=unit, applied=False, detail="unit already terminal")

            catalog = steps_for(unit.stage)
            definition = catalog.get(step)
            position = catalog.position(step)

            completed_steps = unit.completed_steps
            if outcome == StepOutcome.FAILED:
                status = UnitStatus.ERROR
            elif definition.kind == StepKind.MARKER or outcome == StepOutcome.SUCCEEDED:
                completed_steps = max(completed_steps, position)
                status = UnitStatus.COMPLETED if definition.terminal else UnitStatus.ACTIVE
            else:
                status = UnitStatus.ACTIVE

            applied = await self.repository.update_unit_if(
                unit_id=unit_id,
                expected_status=unit.status,
                status=status,
                current_step=step,
                completed_steps=completed_steps,
                needs_human_review=needs_human_review and status == UnitStatus.ERROR,
                last_error_code=error_code if status == UnitStatus.ERROR else None,
            )
            if applied:
                updated = await self.repository.get_unit(unit_id=unit_id)
                if status in (UnitStatus.COMPLETED, UnitStatus.ERROR):
                    logger.info(
                        "unit terminal",
                        extra={
                            "course_id": unit.course_id,
                            "stage": unit.stage,
                            "unit_id": unit_id,
                            "status": str(status),
                        },
                    )
                return UnitProgressUpdate(unit=updated or unit, applied=True)
        unit = await self.repository.get_unit(unit_id=unit_id)
        if unit is None:
            raise DomainValidationError(f"unit is not found: {unit_id}")
        return UnitProgressUpdate(unit=unit, applied=False, detail="lost update race")

    async def stage_progress(self, *, course_id: str, stage: int) -> StageProgress:
        units = await self.repository.list_units(course_id=course_id, stage=stage)
        return summarize_units(stage=stage, units=units)

    async def is_stage_complete(self, *, course_id: str, stage: int) -> bool:
        progress = await self.stage_progress(course_id=course_id, stage=stage)
        return progress.is_complete


def summarize_units(*, stage: int, units: list[StageUnitSnapshot]) -> StageProgress:
    counts = {status: 0 for status in UnitStatus}
    review = 0
    for unit in units:
        counts[UnitStatus(unit.status)] += 1
        if unit.needs_human_review:
            review += 1
    return StageProgress(
        stage=stage,
        total=len(units),
        pending=counts[UnitStatus.PENDING],
        active=counts[UnitStatus.ACTIVE],
        completed=counts[UnitStatus.COMPLETED],
        error=counts[UnitStatus.ERROR],
        needs_human_review=review,
    )
