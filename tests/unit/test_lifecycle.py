from pathlib import Path

import pytest

from coursegen.domain.lifecycle import (
    ALLOWED_TRANSITIONS,
    STAGE_LIFECYCLES,
    TERMINAL_STATES,
    init_predecessors,
    is_at_or_beyond,
    is_transition_allowed,
    state_rank,
    successor_after_stage,
)
from coursegen.domain.models import CourseState

MIGRATION_UP = Path(__file__).resolve().parents[2] / "db" / "migrations" / "000001_bootstrap.up.sql"
ABORT_STATES = {CourseState.FAILED, CourseState.CANCELLED}


@pytest.mark.unit
def test_every_state_has_transition_entry() -> None:
    assert set(ALLOWED_TRANSITIONS) == {state.value for state in CourseState}


@pytest.mark.unit
def test_forward_transitions_never_skip_or_go_backward() -> None:
    for from_state, targets in ALLOWED_TRANSITIONS.items():
        for to_state in targets - ABORT_STATES:
            assert state_rank(to_state) > state_rank(from_state), (from_state, to_state)
            # Skipping is only possible over the optional approval state.
            assert state_rank(to_state) - state_rank(from_state) <= 2, (from_state, to_state)


@pytest.mark.unit
def test_terminal_states_have_no_outgoing_transitions() -> None:
    for state in TERMINAL_STATES:
        assert ALLOWED_TRANSITIONS[state] == set()


@pytest.mark.unit
def test_pending_can_be_cancelled_but_not_failed() -> None:
    assert is_transition_allowed("pending", "cancelled")
    assert not is_transition_allowed("pending", "failed")
    assert is_transition_allowed("stage_3_summarizing", "failed")


@pytest.mark.unit
def test_stage_six_has_no_approval_gate() -> None:
    assert STAGE_LIFECYCLES[6].approval_state is None
    assert "stage_6_awaiting_approval" not in ALLOWED_TRANSITIONS
    assert successor_after_stage(6) == "finalizing"
    assert successor_after_stage(2) == "stage_3_init"


@pytest.mark.unit
def test_init_predecessors_include_optional_approval_state() -> None:
    assert init_predecessors(2) == frozenset({"pending"})
    assert init_predecessors(4) == frozenset({"stage_3_complete", "stage_3_awaiting_approval"})


@pytest.mark.unit
def test_is_at_or_beyond_treats_terminal_states_as_final() -> None:
    assert is_at_or_beyond("stage_4_analyzing", "stage_4_init")
    assert is_at_or_beyond("stage_4_analyzing", "stage_4_analyzing")
    assert not is_at_or_beyond("stage_4_init", "stage_4_analyzing")
    assert is_at_or_beyond("cancelled", "stage_2_init")
    assert is_at_or_beyond("completed", "failed")


@pytest.mark.unit
def test_bootstrap_migration_mirrors_transition_table() -> None:
    migration = MIGRATION_UP.read_text(encoding="utf-8")

    for state in CourseState:
        assert f"'{state.value}'" in migration
    for from_state, targets in ALLOWED_TRANSITIONS.items():
        for to_state in targets - ABORT_STATES:
            assert f"('{from_state}', '{to_state}')" in migration, (from_state, to_state)
