"""Tests for the task and step guard tables."""

import pytest

from pyconductor import GuardViolation, StepState, TaskState
from pyconductor.core.state_machine import (
    STEP_MACHINE,
    STEP_TRANSITIONS,
    TASK_MACHINE,
    TASK_TRANSITIONS,
    event_name_for,
)
from pyconductor.models import EntityKind

T = TaskState
S = StepState


@pytest.mark.parametrize("target", list(TaskState))
def test_task_initial_transition_to_any_state(target):
    assert TASK_MACHINE.can_transition(None, target)


@pytest.mark.parametrize("target", list(StepState))
def test_step_initial_transition_to_any_state(target):
    assert STEP_MACHINE.can_transition(None, target)


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (T.PENDING, T.IN_PROGRESS),
        (T.PENDING, T.CANCELLED),
        (T.PENDING, T.ERROR),
        (T.IN_PROGRESS, T.PENDING),
        (T.IN_PROGRESS, T.COMPLETE),
        (T.IN_PROGRESS, T.ERROR),
        (T.IN_PROGRESS, T.CANCELLED),
        (T.ERROR, T.PENDING),
        (T.ERROR, T.RESOLVED_MANUALLY),
        (T.COMPLETE, T.CANCELLED),
        (T.RESOLVED_MANUALLY, T.CANCELLED),
    ],
)
def test_allowed_task_transitions(from_state, to_state):
    TASK_MACHINE.validate("task-1", from_state, to_state)


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (T.PENDING, T.COMPLETE),
        (T.COMPLETE, T.PENDING),
        (T.COMPLETE, T.IN_PROGRESS),
        (T.CANCELLED, T.PENDING),
        (T.ERROR, T.COMPLETE),
        (T.ERROR, T.IN_PROGRESS),
        (T.RESOLVED_MANUALLY, T.PENDING),
        (T.PENDING, T.PENDING),
    ],
)
def test_rejected_task_transitions(from_state, to_state):
    with pytest.raises(GuardViolation) as exc_info:
        TASK_MACHINE.validate("task-1", from_state, to_state)

    assert exc_info.value.entity_id == "task-1"
    assert exc_info.value.from_state == from_state.value
    assert exc_info.value.to_state == to_state.value


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (S.PENDING, S.COMPLETE),
        (S.COMPLETE, S.PENDING),
        (S.COMPLETE, S.ERROR),
        (S.ERROR, S.IN_PROGRESS),
        (S.ERROR, S.COMPLETE),
        (S.IN_PROGRESS, S.PENDING),
        (S.CANCELLED, S.PENDING),
    ],
)
def test_rejected_step_transitions(from_state, to_state):
    with pytest.raises(GuardViolation):
        STEP_MACHINE.validate("step-1", from_state, to_state)


def test_table_sizes():
    # six initial transitions plus the explicit pairs
    assert len(TASK_TRANSITIONS) == 6 + 11
    assert len(STEP_TRANSITIONS) == 6 + 9


def test_current_defaults_to_initial_state():
    assert TASK_MACHINE.current(None) is T.PENDING
    assert STEP_MACHINE.current("error") is S.ERROR
    assert STEP_MACHINE.parse(None) is None


def test_allowed_targets():
    assert set(STEP_MACHINE.allowed_targets(S.ERROR)) == {S.PENDING, S.RESOLVED_MANUALLY}


def test_guard_violation_message_shows_empty_source():
    violation = GuardViolation("task", "t1", None, "pending")

    assert "∅ -> pending" in str(violation)


@pytest.mark.parametrize(
    "kind,from_state,to_state,expected",
    [
        (EntityKind.TASK, None, "pending", "task.initialize_requested"),
        (EntityKind.TASK, "pending", "in_progress", "task.start_requested"),
        (EntityKind.TASK, "in_progress", "complete", "task.completed"),
        (EntityKind.TASK, "error", "pending", "task.retry_requested"),
        (EntityKind.TASK, "complete", "cancelled", "task.state_changed"),
        (EntityKind.STEP, "error", "pending", "step.retry_requested"),
        (EntityKind.STEP, "pending", "in_progress", "step.execution_requested"),
        (EntityKind.STEP, "in_progress", "error", "step.failed"),
    ],
)
def test_event_names(kind, from_state, to_state, expected):
    assert event_name_for(kind, from_state, to_state) == expected
