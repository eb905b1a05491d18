from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from coursegen.domain.errors import DomainValidationError


class StepKind(StrEnum):
    # Bookkeeping step without generated output; complete as soon as recorded.
    MARKER = "marker"
    ARTIFACT = "artifact"


class StepOutcome(StrEnum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepDefinition:
    name: str
    kind: StepKind
    terminal: bool = False


@dataclass(frozen=True)
class StageSteps:
    stage: int
    steps: tuple[StepDefinition, ...]

    def get(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise DomainValidationError(f"unknown step '{name}' for stage {self.stage}")

    def position(self, name: str) -> int:
        """1-based position, i.e. the completed-step count once `name` is done."""
        for index, step in enumerate(self.steps, start=1):
            if step.name == name:
                return index
        raise DomainValidationError(f"unknown step '{name}' for stage {self.stage}")

    @property
    def first(self) -> StepDefinition:
        return self.steps[0]

    @property
    def terminal(self) -> StepDefinition:
        return next(step for step in self.steps if step.terminal)

    def by_kind(self, kind: StepKind) -> tuple[StepDefinition, ...]:
        return tuple(step for step in self.steps if step.kind == kind)


def _catalog(stage: int, subject: str, produce: str) -> StageSteps:
    return StageSteps(
        stage=stage,
        steps=(
            StepDefinition(name=f"{subject}_started", kind=StepKind.MARKER),
            StepDefinition(name=produce, kind=StepKind.ARTIFACT),
            StepDefinition(name="quality_checked", kind=StepKind.ARTIFACT),
            StepDefinition(name=f"{subject}_finished", kind=StepKind.MARKER, terminal=True),
        ),
    )


# Step kind is declared here and never derived from what a step returned.
STAGE_STEPS: dict[int, StageSteps] = {
    2: _catalog(2, "document", "document_summarized"),
    3: _catalog(3, "classification", "document_classified"),
    4: _catalog(4, "analysis", "analysis_generated"),
    5: _catalog(5, "structure", "structure_generated"),
    6: _catalog(6, "lesson", "lesson_generated"),
}

GENERATE_STEP_INDEX = 1
EVALUATE_STEP_INDEX = 2


def steps_for(stage: int) -> StageSteps:
    try:
        return STAGE_STEPS[stage]
    except KeyError:
        raise DomainValidationError(f"no step catalog for stage {stage}") from None
