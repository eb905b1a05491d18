"""Generate-evaluate-decide loop for one stage unit or stage-level artifact."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time

from coursegen.domain.cascade import CascadeEvaluator
from coursegen.domain.contracts import ArtifactGenerator, CourseRepository, DocumentStorage, TraceRecorder
from coursegen.domain.dto import GenerationRequest, TraceEntry
from coursegen.domain.error_taxonomy import resolve_stage_error
from coursegen.domain.errors import (
    DomainDependencyError,
    DomainInvariantError,
    DomainValidationError,
    GenerationFailure,
    ResourceExhausted,
    ValidationFailure,
)
from coursegen.domain.heuristics import content_from_payload
from coursegen.domain.ids import stage_subject_id
from coursegen.domain.lifecycle import StageLifecycle, lifecycle_for
from coursegen.domain.models import AttemptCompletion, AttemptRecord, CourseSnapshot, StageUnitSnapshot, WorkKind
from coursegen.domain.pipeline_spec import PipelineSpec, StagePolicy
from coursegen.domain.retry_policy import ActionKind, AttemptOutcome, NextAction, next_action
from coursegen.domain.steps import EVALUATE_STEP_INDEX, GENERATE_STEP_INDEX, StageSteps, StepOutcome, steps_for
from coursegen.domain.timeouts import call_with_timeout
from coursegen.domain.tracing import record_trace
from coursegen.domain.tracker import SubJobTracker
from coursegen.domain.use_cases.inputs import StageInputs, load_stage_inputs
from coursegen.domain.verdicts import CascadeResult, Recommendation, cascade_guidance, cascade_result_to_json, flagged_sections

COMPONENT_ID = "domain.generate_unit"
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitRunResult:
    subject_id: str
    outcome: str
    attempts: int = 0
    detail: str = ""


@dataclass
class _AttemptResult:
    outcome: AttemptOutcome
    completion: AttemptCompletion
    payload: dict[str, object] | None = None
    cascade: CascadeResult | None = None


@dataclass
class _RunContext:
    course: CourseSnapshot
    lifecycle: StageLifecycle
    policy: StagePolicy
    catalog: StageSteps
    subject_id: str
    unit: StageUnitSnapshot | None
    supports_targeted_fix: bool
    inputs: StageInputs | None = None
    history: list[AttemptOutcome] = field(default_factory=list)
    previous_payload: dict[str, object] | None = None
    guidance: dict[str, str] = field(default_factory=dict)


@dataclass
class UnitRunner:
    repository: CourseRepository
    generator: ArtifactGenerator
    evaluator: CascadeEvaluator
    storage: DocumentStorage
    tracker: SubJobTracker
    trace: TraceRecorder
    spec: PipelineSpec
    generation_timeout_seconds: float = 60.0

    async def run(self, *, course_id: str, stage: int, unit_id: str | None) -> UnitRunResult:
        lifecycle = lifecycle_for(stage)
        subject_id = unit_id or stage_subject_id(course_id=course_id, stage=stage)
        course = await self._course_in_state(course_id, lifecycle.processing_state)
        if course is None:
            return UnitRunResult(subject_id=subject_id, outcome="discarded", detail="course left processing state")

        unit: StageUnitSnapshot | None = None
        if unit_id is not None:
            unit = await self.repository.get_unit(unit_id=unit_id)
            if unit is None or unit.course_id != course_id or unit.stage != stage:
                raise DomainValidationError(f"unit {unit_id} does not belong to {course_id} stage {stage}")
            if unit.is_terminal:
                return UnitRunResult(subject_id=subject_id, outcome="skipped", detail="unit already terminal")
        elif lifecycle.parallel:
            raise DomainValidationError(f"stage {stage} work must name a unit")

        ctx = _RunContext(
            course=course,
            lifecycle=lifecycle,
            policy=self.spec.stage_policy(stage),
            catalog=steps_for(stage),
            subject_id=subject_id,
            unit=unit,
            supports_targeted_fix=self.generator.supports_targeted_fix(stage=stage),
        )

        # The work lease is exclusive, so an attempt still open here belongs to
        # a delivery that died mid-flight.
        abandoned = await self.repository.abandon_active_attempts(
            subject_id=subject_id,
            error_code="lease_expired",
            detail="attempt abandoned by an earlier delivery",
        )
        if abandoned:
            logger.warning("abandoned stale attempts", extra={**self._log_extra(ctx), "abandoned": abandoned})

        previous = await self.repository.list_attempts(subject_id=subject_id)
        ctx.history = [_as_outcome(record) for record in previous if not record.is_active]
        if ctx.history:
            action = next_action(ctx.history, ctx.policy.retry, supports_targeted_fix=ctx.supports_targeted_fix)
        else:
            action = NextAction(kind=ActionKind.RETRY, model_tier=ctx.policy.retry.initial_tier, reason="first attempt")

        if unit is not None:
            await self.tracker.record_unit_progress(unit_id=unit.unit_id, step=ctx.catalog.first.name, outcome=StepOutcome.STARTED)

        while not action.is_final:
            if await self._course_in_state(course_id, lifecycle.processing_state) is None:
                return UnitRunResult(subject_id=subject_id, outcome="discarded", attempts=len(ctx.history))
            attempt = await self.repository.start_attempt(
                subject_id=subject_id,
                course_id=course_id,
                stage=stage,
                unit_id=unit_id,
                model_tier=action.model_tier or ctx.policy.retry.initial_tier,
            )
            if attempt is None:
                return UnitRunResult(
                    subject_id=subject_id,
                    outcome="skipped",
                    attempts=len(ctx.history),
                    detail="unit terminal or another attempt is active",
                )

            result = await self._attempt(ctx, attempt, action)
            ctx.history.append(result.outcome)
            action = next_action(ctx.history, ctx.policy.retry, supports_targeted_fix=ctx.supports_targeted_fix)

            if action.kind == ActionKind.ACCEPT and result.payload is not None:
                if await self._course_in_state(course_id, lifecycle.processing_state) is None:
                    await self._close_attempt(ctx, attempt, result)
                    return UnitRunResult(subject_id=subject_id, outcome="discarded", attempts=len(ctx.history))
                await self.repository.save_artifact(
                    course_id=course_id,
                    stage=stage,
                    unit_id=unit_id,
                    payload=result.payload,
                    attempt_id=attempt.attempt_id,
                )
            await self._close_attempt(ctx, attempt, result)

            if result.payload is not None:
                ctx.previous_payload = result.payload
            if result.cascade is not None:
                ctx.guidance = cascade_guidance(result.cascade)

        return await self._finish(ctx, action)

    async def _attempt(self, ctx: _RunContext, attempt: AttemptRecord, action: NextAction) -> _AttemptResult:
        started = time.monotonic()
        unit_id = ctx.unit.unit_id if ctx.unit is not None else None
        generate_step = ctx.catalog.steps[GENERATE_STEP_INDEX].name
        evaluate_step = ctx.catalog.steps[EVALUATE_STEP_INDEX].name
        try:
            if ctx.inputs is None:
                ctx.inputs = await load_stage_inputs(
                    repository=self.repository,
                    storage=self.storage,
                    course=ctx.course,
                    stage=ctx.lifecycle.stage,
                    unit=ctx.unit,
                )
            request = GenerationRequest(
                course_id=ctx.course.course_id,
                stage=ctx.lifecycle.stage,
                stage_name=ctx.lifecycle.name,
                topic=ctx.course.topic,
                model_tier=attempt.model_tier,
                attempt_number=attempt.attempt_number,
                timeout_seconds=self.generation_timeout_seconds,
                unit_id=unit_id,
                unit_ref=ctx.unit.unit_ref if ctx.unit is not None else None,
                inputs=dict(ctx.inputs.values),
                fix_sections=action.sections if action.kind == ActionKind.TARGETED_FIX else (),
                previous_payload=ctx.previous_payload if action.kind == ActionKind.TARGETED_FIX else None,
                guidance=dict(ctx.guidance),
            )
            if unit_id is not None:
                await self.tracker.record_unit_progress(unit_id=unit_id, step=generate_step, outcome=StepOutcome.STARTED)
            artifact = await call_with_timeout(
                self.generator.generate(request),
                timeout_seconds=self.generation_timeout_seconds,
                what=f"generation for {ctx.subject_id}",
            )
            if unit_id is not None:
                await self.tracker.record_unit_progress(unit_id=unit_id, step=generate_step, outcome=StepOutcome.SUCCEEDED)
                await self.tracker.record_unit_progress(unit_id=unit_id, step=evaluate_step, outcome=StepOutcome.STARTED)
            cascade = await self.evaluator.evaluate(
                content=content_from_payload(artifact.payload),
                thresholds=ctx.policy.heuristics,
                stage_name=ctx.lifecycle.name,
                topic=ctx.course.topic,
                keywords=ctx.inputs.keywords,
            )
            if unit_id is not None:
                await self.tracker.record_unit_progress(unit_id=unit_id, step=evaluate_step, outcome=StepOutcome.SUCCEEDED)
        except (GenerationFailure, ValidationFailure, DomainDependencyError) as exc:
            code = resolve_stage_error(stage=ctx.lifecycle.name, code=exc.code)
            logger.warning(
                "attempt failed",
                extra={**self._log_extra(ctx), "attempt": attempt.attempt_number, "error_code": code},
            )
            return _AttemptResult(
                outcome=AttemptOutcome(
                    attempt_number=attempt.attempt_number,
                    model_tier=attempt.model_tier,
                    verdict=None,
                    error_code=code,
                ),
                completion=AttemptCompletion(
                    duration_ms=_elapsed_ms(started),
                    error_code=code,
                    error_detail=str(exc),
                ),
            )

        return _AttemptResult(
            outcome=AttemptOutcome(
                attempt_number=attempt.attempt_number,
                model_tier=attempt.model_tier,
                verdict=cascade.final_recommendation,
                flagged_sections=flagged_sections(cascade),
            ),
            completion=AttemptCompletion(
                tokens_used=artifact.tokens_used + cascade.tokens_used,
                cost_usd=artifact.cost_usd,
                duration_ms=_elapsed_ms(started),
                verdict=cascade.final_recommendation.value,
                cascade=cascade_result_to_json(cascade),
            ),
            payload=artifact.payload,
            cascade=cascade,
        )

    async def _close_attempt(self, ctx: _RunContext, attempt: AttemptRecord, result: _AttemptResult) -> None:
        closed = await self.repository.complete_attempt(attempt_id=attempt.attempt_id, completion=result.completion)
        cascade = result.cascade
        logger.info(
            "attempt completed",
            extra={
                **self._log_extra(ctx),
                "attempt": closed.attempt_number,
                "model_tier": closed.model_tier,
                "verdict": closed.verdict,
                "error_code": closed.error_code,
            },
        )
        await record_trace(
            self.trace,
            TraceEntry(
                course_id=ctx.course.course_id,
                stage=ctx.lifecycle.stage,
                step_name=ctx.catalog.steps[GENERATE_STEP_INDEX].name,
                input_summary=f"subject={ctx.subject_id} attempt={closed.attempt_number} tier={closed.model_tier}",
                output_summary=(
                    f"verdict={closed.verdict} reached={cascade.reached_stage.value} score={cascade.final_score:.2f}"
                    if cascade is not None
                    else None
                ),
                error_detail=closed.error_detail,
                metrics={
                    "tokens_used": closed.tokens_used,
                    "cost_usd": closed.cost_usd,
                    "duration_ms": closed.duration_ms,
                    "llm_invocations": cascade.llm_invocations if cascade is not None else 0,
                },
            ),
        )

    async def _finish(self, ctx: _RunContext, action: NextAction) -> UnitRunResult:
        course_id = ctx.course.course_id
        stage = ctx.lifecycle.stage
        attempts = len(ctx.history)
        if await self._course_in_state(course_id, ctx.lifecycle.processing_state) is None:
            return UnitRunResult(subject_id=ctx.subject_id, outcome="discarded", attempts=attempts)

        if action.kind == ActionKind.ACCEPT:
            unit_id = ctx.unit.unit_id if ctx.unit is not None else None
            artifact = await self.repository.get_artifact(course_id=course_id, stage=stage, unit_id=unit_id)
            if artifact is None:
                raise DomainInvariantError(f"accepted attempt for {ctx.subject_id} has no stored artifact")
            if unit_id is not None:
                await self.tracker.record_unit_progress(
                    unit_id=unit_id,
                    step=ctx.catalog.terminal.name,
                    outcome=StepOutcome.SUCCEEDED,
                )
            await self.repository.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
            return UnitRunResult(subject_id=ctx.subject_id, outcome="accepted", attempts=attempts)

        error_code = ctx.history[-1].error_code or "retries_exhausted"
        if ctx.unit is not None:
            await self.tracker.record_unit_progress(
                unit_id=ctx.unit.unit_id,
                step=ctx.catalog.terminal.name,
                outcome=StepOutcome.FAILED,
                error_code=error_code,
                needs_human_review=action.needs_human_review,
            )
            logger.warning("unit needs human review", extra={**self._log_extra(ctx), "reason": action.reason})
            await self.repository.enqueue_work(kind=WorkKind.ADVANCE, course_id=course_id)
            return UnitRunResult(
                subject_id=ctx.subject_id,
                outcome="needs_human_review",
                attempts=attempts,
                detail=action.reason,
            )

        # A single-artifact stage has nothing to fall back on.
        raise ResourceExhausted(
            f"stage {stage} ({ctx.lifecycle.name}) needs human review: {action.reason}",
            subject_id=ctx.subject_id,
            attempts=attempts,
        )

    async def _course_in_state(self, course_id: str, state: str) -> CourseSnapshot | None:
        course = await self.repository.get_course(course_id=course_id)
        if course is None or course.stage_state != state:
            return None
        return course

    def _log_extra(self, ctx: _RunContext) -> dict[str, object]:
        return {
            "course_id": ctx.course.course_id,
            "stage": ctx.lifecycle.stage,
            "unit_id": ctx.unit.unit_id if ctx.unit is not None else None,
        }


def _as_outcome(record: AttemptRecord) -> AttemptOutcome:
    verdict = Recommendation(record.verdict) if record.verdict else None
    sections: tuple[str, ...] = ()
    if isinstance(record.cascade, dict):
        raw = record.cascade.get("flagged_sections")
        if isinstance(raw, list):
            sections = tuple(str(item) for item in raw)
    return AttemptOutcome(
        attempt_number=record.attempt_number,
        model_tier=record.model_tier,
        verdict=verdict,
        error_code=record.error_code,
        flagged_sections=sections,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
