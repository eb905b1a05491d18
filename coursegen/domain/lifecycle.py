from __future__ import annotations

from dataclasses import dataclass

from coursegen.domain.models import CourseState


@dataclass(frozen=True)
class StageLifecycle:
    stage: int
    name: str
    init_state: str
    processing_state: str
    complete_state: str
    approval_state: str | None
    parallel: bool


STAGE_LIFECYCLES: dict[int, StageLifecycle] = {
    2: StageLifecycle(
        stage=2,
        name="document_processing",
        init_state=CourseState.STAGE_2_INIT,
        processing_state=CourseState.STAGE_2_PROCESSING,
        complete_state=CourseState.STAGE_2_COMPLETE,
        approval_state=CourseState.STAGE_2_AWAITING_APPROVAL,
        parallel=True,
    ),
    3: StageLifecycle(
        stage=3,
        name="classification",
        init_state=CourseState.STAGE_3_INIT,
        processing_state=CourseState.STAGE_3_SUMMARIZING,
        complete_state=CourseState.STAGE_3_COMPLETE,
        approval_state=CourseState.STAGE_3_AWAITING_APPROVAL,
        parallel=True,
    ),
    4: StageLifecycle(
        stage=4,
        name="analysis",
        init_state=CourseState.STAGE_4_INIT,
        processing_state=CourseState.STAGE_4_ANALYZING,
        complete_state=CourseState.STAGE_4_COMPLETE,
        approval_state=CourseState.STAGE_4_AWAITING_APPROVAL,
        parallel=False,
    ),
    5: StageLifecycle(
        stage=5,
        name="structure",
        init_state=CourseState.STAGE_5_INIT,
        processing_state=CourseState.STAGE_5_GENERATING,
        complete_state=CourseState.STAGE_5_COMPLETE,
        approval_state=CourseState.STAGE_5_AWAITING_APPROVAL,
        parallel=False,
    ),
    6: StageLifecycle(
        stage=6,
        name="lesson_content",
        init_state=CourseState.STAGE_6_INIT,
        processing_state=CourseState.STAGE_6_GENERATING,
        complete_state=CourseState.STAGE_6_COMPLETE,
        approval_state=None,
        parallel=True,
    ),
}

FIRST_STAGE = 2
LAST_STAGE = 6

TERMINAL_STATES: frozenset[str] = frozenset({CourseState.COMPLETED, CourseState.FAILED, CourseState.CANCELLED})

_ABORT = {CourseState.FAILED.value, CourseState.CANCELLED.value}

# Mirrored by validate_course_state_transition() in the bootstrap migration.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"stage_2_init", "cancelled"},
    "stage_2_init": {"stage_2_processing"} | _ABORT,
    "stage_2_processing": {"stage_2_complete"} | _ABORT,
    "stage_2_complete": {"stage_2_awaiting_approval", "stage_3_init"} | _ABORT,
    "stage_2_awaiting_approval": {"stage_3_init"} | _ABORT,
    "stage_3_init": {"stage_3_summarizing"} | _ABORT,
    "stage_3_summarizing": {"stage_3_complete"} | _ABORT,
    "stage_3_complete": {"stage_3_awaiting_approval", "stage_4_init"} | _ABORT,
    "stage_3_awaiting_approval": {"stage_4_init"} | _ABORT,
    "stage_4_init": {"stage_4_analyzing"} | _ABORT,
    "stage_4_analyzing": {"stage_4_complete"} | _ABORT,
    "stage_4_complete": {"stage_4_awaiting_approval", "stage_5_init"} | _ABORT,
    "stage_4_awaiting_approval": {"stage_5_init"} | _ABORT,
    "stage_5_init": {"stage_5_generating"} | _ABORT,
    "stage_5_generating": {"stage_5_complete"} | _ABORT,
    "stage_5_complete": {"stage_5_awaiting_approval", "stage_6_init"} | _ABORT,
    "stage_5_awaiting_approval": {"stage_6_init"} | _ABORT,
    "stage_6_init": {"stage_6_generating"} | _ABORT,
    "stage_6_generating": {"stage_6_complete"} | _ABORT,
    "stage_6_complete": {"finalizing"} | _ABORT,
    "finalizing": {"completed"} | _ABORT,
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

# Forward order of the happy path; used to decide "already at or beyond".
STATE_SEQUENCE: tuple[str, ...] = (
    CourseState.PENDING,
    *(
        state
        for lifecycle in STAGE_LIFECYCLES.values()
        for state in (
            lifecycle.init_state,
            lifecycle.processing_state,
            lifecycle.complete_state,
            lifecycle.approval_state,
        )
        if state is not None
    ),
    CourseState.FINALIZING,
    CourseState.COMPLETED,
)

_STATE_RANK: dict[str, int] = {state: index for index, state in enumerate(STATE_SEQUENCE)}


def is_terminal_state(state: str) -> bool:
    return state in TERMINAL_STATES


def is_transition_allowed(from_state: str, to_state: str) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def state_rank(state: str) -> int:
    if state in (CourseState.FAILED, CourseState.CANCELLED):
        return len(STATE_SEQUENCE)
    try:
        return _STATE_RANK[state]
    except KeyError:
        raise ValueError(f"unknown course state: {state}") from None


def is_at_or_beyond(current: str, target: str) -> bool:
    """True when `current` has already reached `target` or moved past it.

    Terminal states are beyond everything: a course that ended can never be
    moved again, so any later request against it is a no-op.
    """
    if is_terminal_state(current):
        return True
    return state_rank(current) >= state_rank(target)


def lifecycle_for(stage: int) -> StageLifecycle:
    try:
        return STAGE_LIFECYCLES[stage]
    except KeyError:
        raise ValueError(f"unknown stage: {stage}") from None


def lifecycle_for_state(state: str) -> StageLifecycle | None:
    for lifecycle in STAGE_LIFECYCLES.values():
        if state in (
            lifecycle.init_state,
            lifecycle.processing_state,
            lifecycle.complete_state,
            lifecycle.approval_state,
        ):
            return lifecycle
    return None


def init_predecessors(stage: int) -> frozenset[str]:
    if stage == FIRST_STAGE:
        return frozenset({CourseState.PENDING})
    previous = lifecycle_for(stage - 1)
    states = {previous.complete_state}
    if previous.approval_state is not None:
        states.add(previous.approval_state)
    return frozenset(states)


def successor_after_stage(stage: int) -> str:
    """State entered once `stage` is complete (and approved, if gated)."""
    if stage == LAST_STAGE:
        return CourseState.FINALIZING
    return lifecycle_for(stage + 1).init_state
