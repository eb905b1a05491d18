from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field

from coursegen.domain.contracts import CourseRepository, DocumentStorage
from coursegen.domain.errors import DomainDependencyError
from coursegen.domain.models import CourseSnapshot, StageUnitSnapshot, UnitStatus

INPUT_MISSING = "input_missing"


@dataclass(frozen=True)
class StageInputs:
    values: dict[str, object] = field(default_factory=dict)
    keywords: tuple[str, ...] = ()


async def load_stage_inputs(
    *,
    repository: CourseRepository,
    storage: DocumentStorage,
    course: CourseSnapshot,
    stage: int,
    unit: StageUnitSnapshot | None,
) -> StageInputs:
    """Collects what earlier stages produced for one generation call."""
    if stage == 2:
        document_id = _unit_ref(unit)
        raw = await storage.fetch(document_id=document_id)
        return StageInputs(values={"document_id": document_id, "document_text": raw.decode("utf-8", errors="replace")})

    if stage == 3:
        document_id = _unit_ref(unit)
        source = await _unit_artifact(repository, course_id=course.course_id, stage=2, unit_ref=document_id)
        return StageInputs(values={"document_id": document_id, "summary": source})

    if stage == 4:
        artifacts = await repository.list_artifacts(course_id=course.course_id, stage=3)
        return StageInputs(values={"topic": course.topic, "classifications": [item.payload for item in artifacts]})

    if stage == 5:
        analysis = await _stage_artifact(repository, course_id=course.course_id, stage=4)
        return StageInputs(values={"topic": course.topic, "analysis": analysis}, keywords=_keywords(analysis, "key_concepts"))

    if stage == 6:
        unit_ref = _unit_ref(unit)
        structure = await _stage_artifact(repository, course_id=course.course_id, stage=5)
        lesson = lesson_units(structure).get(unit_ref)
        if lesson is None:
            raise DomainDependencyError(f"lesson {unit_ref} is missing from the course structure", code=INPUT_MISSING)
        return StageInputs(
            values={"topic": course.topic, "course_title": structure.get("title"), "lesson": lesson},
            keywords=_keywords(lesson, "keywords"),
        )

    raise DomainDependencyError(f"no inputs are defined for stage {stage}", code=INPUT_MISSING)


async def plan_units(*, repository: CourseRepository, course: CourseSnapshot, stage: int) -> list[str]:
    """Unit refs a parallel stage fans out to; fixed once processing begins."""
    if stage == 2:
        return list(course.document_ids)
    if stage == 3:
        units = await repository.list_units(course_id=course.course_id, stage=2)
        return [unit.unit_ref for unit in sorted(units, key=lambda item: item.ordinal) if unit.status == UnitStatus.COMPLETED]
    if stage == 6:
        structure = await _stage_artifact(repository, course_id=course.course_id, stage=5)
        refs = list(lesson_units(structure))
        if not refs:
            raise DomainDependencyError("course structure contains no lessons", code=INPUT_MISSING)
        return refs
    return []


def lesson_units(structure: Mapping[str, object]) -> dict[str, dict[str, object]]:
    """Maps the unit ref of every lesson in the structure to the lesson itself.

    The ref is the lesson id as a string. Ids that repeat across modules are
    qualified as `<module id>/<lesson id>`. Lessons without an id are skipped.
    """
    entries: list[tuple[str | None, str, dict[str, object]]] = []
    modules = structure.get("modules")
    if isinstance(modules, list):
        for index, module in enumerate(modules, start=1):
            if not isinstance(module, dict) or not isinstance(module.get("lessons"), list):
                continue
            module_id = _id_text(module.get("id")) or f"module-{index}"
            entries.extend((module_id, lesson_id, item) for lesson_id, item in _identified(module["lessons"]))
    flat = structure.get("lessons")
    if isinstance(flat, list):
        entries.extend((None, lesson_id, item) for lesson_id, item in _identified(flat))

    repeats = Counter(lesson_id for _, lesson_id, _ in entries)
    lessons: dict[str, dict[str, object]] = {}
    for module_id, lesson_id, item in entries:
        ref = lesson_id if repeats[lesson_id] == 1 or module_id is None else f"{module_id}/{lesson_id}"
        if ref in lessons:
            raise DomainDependencyError(f"course structure repeats lesson {ref}", code=INPUT_MISSING)
        lessons[ref] = item
    return lessons


def _identified(items: list[object]) -> list[tuple[str, dict[str, object]]]:
    found = []
    for item in items:
        if not isinstance(item, dict):
            continue
        lesson_id = _id_text(item.get("id"))
        if lesson_id:
            found.append((lesson_id, item))
    return found


def _id_text(value: object) -> str:
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


async def _stage_artifact(repository: CourseRepository, *, course_id: str, stage: int) -> dict[str, object]:
    artifact = await repository.get_artifact(course_id=course_id, stage=stage, unit_id=None)
    if artifact is None:
        raise DomainDependencyError(f"stage {stage} artifact is missing for {course_id}", code=INPUT_MISSING)
    return artifact.payload


async def _unit_artifact(
    repository: CourseRepository,
    *,
    course_id: str,
    stage: int,
    unit_ref: str,
) -> dict[str, object]:
    for unit in await repository.list_units(course_id=course_id, stage=stage):
        if unit.unit_ref != unit_ref:
            continue
        artifact = await repository.get_artifact(course_id=course_id, stage=stage, unit_id=unit.unit_id)
        if artifact is not None:
            return artifact.payload
    raise DomainDependencyError(f"stage {stage} artifact is missing for {unit_ref}", code=INPUT_MISSING)


def _unit_ref(unit: StageUnitSnapshot | None) -> str:
    if unit is None:
        raise DomainDependencyError("parallel stage work needs a unit", code=INPUT_MISSING)
    return unit.unit_ref


def _keywords(source: Mapping[str, object], key: str) -> tuple[str, ...]:
    raw = source.get(key)
    if not isinstance(raw, list):
        return ()
    return tuple(str(item) for item in raw if str(item).strip())
