import asyncio

import pytest

from coursegen.domain.errors import DomainValidationError
from coursegen.domain.models import UnitStatus
from coursegen.domain.steps import StepKind, StepOutcome, steps_for
from coursegen.domain.tracker import summarize_units
from tests.unit.harness import Harness, build_harness


async def _units(harness: Harness, refs: list[str]):
    course_id = await harness.start(document_ids=tuple(refs))
    await harness.orchestrator.init_stage(course_id=course_id, stage=2)
    await harness.orchestrator.begin_processing(course_id=course_id, stage=2, unit_refs=refs)
    return course_id, await harness.repository.list_units(course_id=course_id, stage=2)


@pytest.mark.unit
def test_step_catalog_declares_markers_and_artifacts() -> None:
    catalog = steps_for(6)

    assert [step.name for step in catalog.steps] == [
        "lesson_started",
        "lesson_generated",
        "quality_checked",
        "lesson_finished",
    ]
    assert [step.name for step in catalog.by_kind(StepKind.MARKER)] == ["lesson_started", "lesson_finished"]
    assert catalog.terminal.name == "lesson_finished"

    with pytest.raises(DomainValidationError):
        catalog.get("document_summarized")


@pytest.mark.unit
def test_marker_step_counts_as_done_without_output() -> None:
    harness = build_harness()

    async def _run() -> None:
        _, (unit,) = await _units(harness, ["d1"])
        update = await harness.tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_started",
            outcome=StepOutcome.STARTED,
        )

        assert update.applied is True
        assert update.unit.status == UnitStatus.ACTIVE
        assert update.unit.completed_steps == 1
        assert update.unit.current_step == "document_started"

    asyncio.run(_run())


@pytest.mark.unit
def test_artifact_step_counts_only_on_success() -> None:
    harness = build_harness()

    async def _run() -> None:
        _, (unit,) = await _units(harness, ["d1"])
        tracker = harness.tracker
        await tracker.record_unit_progress(unit_id=unit.unit_id, step="document_started", outcome=StepOutcome.STARTED)
        started = await tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_summarized",
            outcome=StepOutcome.STARTED,
        )
        assert started.unit.completed_steps == 1

        done = await tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_summarized",
            outcome=StepOutcome.SUCCEEDED,
        )
        assert done.unit.completed_steps == 2

    asyncio.run(_run())


@pytest.mark.unit
def test_completed_steps_never_decrease() -> None:
    harness = build_harness()

    async def _run() -> None:
        _, (unit,) = await _units(harness, ["d1"])
        tracker = harness.tracker
        await tracker.record_unit_progress(unit_id=unit.unit_id, step="quality_checked", outcome=StepOutcome.SUCCEEDED)
        late = await tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_started",
            outcome=StepOutcome.STARTED,
        )

        assert late.unit.completed_steps == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_unit_becomes_terminal_exactly_once() -> None:
    harness = build_harness()

    async def _run() -> None:
        _, (unit,) = await _units(harness, ["d1"])
        tracker = harness.tracker
        first = await tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_finished",
            outcome=StepOutcome.FAILED,
            error_code="retries_exhausted",
            needs_human_review=True,
        )
        second = await tracker.record_unit_progress(
            unit_id=unit.unit_id,
            step="document_finished",
            outcome=StepOutcome.SUCCEEDED,
        )

        assert first.applied is True
        assert first.unit.status == UnitStatus.ERROR
        assert first.unit.needs_human_review is True
        assert first.unit.last_error_code == "retries_exhausted"
        assert second.applied is False
        assert second.unit.status == UnitStatus.ERROR

    asyncio.run(_run())


@pytest.mark.unit
def test_stage_progress_counts_each_status() -> None:
    harness = build_harness()

    async def _run() -> None:
        course_id, units = await _units(harness, ["d1", "d2", "d3"])
        tracker = harness.tracker
        await tracker.record_unit_progress(unit_id=units[0].unit_id, step="document_finished", outcome=StepOutcome.SUCCEEDED)
        await tracker.record_unit_progress(unit_id=units[1].unit_id, step="document_started", outcome=StepOutcome.STARTED)

        progress = await tracker.stage_progress(course_id=course_id, stage=2)

        assert (progress.total, progress.completed, progress.active, progress.pending) == (3, 1, 1, 1)
        assert progress.is_complete is False
        assert await tracker.is_stage_complete(course_id=course_id, stage=2) is False

        await tracker.record_unit_progress(unit_id=units[1].unit_id, step="document_finished", outcome=StepOutcome.FAILED)
        await tracker.record_unit_progress(unit_id=units[2].unit_id, step="document_finished", outcome=StepOutcome.SUCCEEDED)

        assert await tracker.is_stage_complete(course_id=course_id, stage=2) is True

    asyncio.run(_run())


@pytest.mark.unit
def test_empty_stage_is_complete() -> None:
    progress = summarize_units(stage=2, units=[])

    assert progress.total == 0
    assert progress.is_complete is True


@pytest.mark.unit
def test_unknown_unit_is_rejected() -> None:
    harness = build_harness()

    with pytest.raises(DomainValidationError):
        asyncio.run(
            harness.tracker.record_unit_progress(
                unit_id="unt_missing",
                step="document_started",
                outcome=StepOutcome.STARTED,
            )
        )
