"""
Transition guard tables for tasks and steps.

Design Pattern: State Pattern (table-driven)
Each entity kind has an explicit set of allowed (from, to) pairs. A
``None`` from-state stands for "no transition written yet". Anything not
in the table raises GuardViolation; nothing is silently coerced.

Same-state pairs are never in a table. Callers that want idempotent
behaviour use StateLedger.safe_transition_*, which skips the write
instead of asking the guard.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Generic, TypeVar

from pyconductor.core.errors import GuardViolation
from pyconductor.models.status import EntityKind, StepState, TaskState

__all__ = [
    "StateMachine",
    "TASK_MACHINE",
    "STEP_MACHINE",
    "TASK_TRANSITIONS",
    "STEP_TRANSITIONS",
    "event_name_for",
]

S = TypeVar("S", bound=Enum)

_T = TaskState
_S = StepState

TASK_TRANSITIONS: frozenset[tuple[TaskState | None, TaskState]] = frozenset(
    [(None, state) for state in TaskState]
    + [
        (_T.PENDING, _T.IN_PROGRESS),
        (_T.PENDING, _T.CANCELLED),
        (_T.PENDING, _T.ERROR),
        (_T.IN_PROGRESS, _T.PENDING),
        (_T.IN_PROGRESS, _T.COMPLETE),
        (_T.IN_PROGRESS, _T.ERROR),
        (_T.IN_PROGRESS, _T.CANCELLED),
        (_T.ERROR, _T.PENDING),
        (_T.ERROR, _T.RESOLVED_MANUALLY),
        (_T.COMPLETE, _T.CANCELLED),
        (_T.RESOLVED_MANUALLY, _T.CANCELLED),
    ]
)

STEP_TRANSITIONS: frozenset[tuple[StepState | None, StepState]] = frozenset(
    [(None, state) for state in StepState]
    + [
        (_S.PENDING, _S.IN_PROGRESS),
        (_S.PENDING, _S.ERROR),
        (_S.PENDING, _S.CANCELLED),
        (_S.PENDING, _S.RESOLVED_MANUALLY),
        (_S.IN_PROGRESS, _S.COMPLETE),
        (_S.IN_PROGRESS, _S.ERROR),
        (_S.IN_PROGRESS, _S.CANCELLED),
        (_S.ERROR, _S.PENDING),
        (_S.ERROR, _S.RESOLVED_MANUALLY),
    ]
)


class StateMachine(Generic[S]):
    """Guard table for one entity kind."""

    def __init__(
        self,
        kind: EntityKind,
        states: type[S],
        allowed: Iterable[tuple[S | None, S]],
        initial: S,
    ):
        self.kind = kind
        self.states = states
        self.initial = initial
        self._allowed = frozenset(allowed)

    def can_transition(self, from_state: S | None, to_state: S) -> bool:
        return (from_state, to_state) in self._allowed

    def validate(self, entity_id: str, from_state: S | None, to_state: S) -> None:
        """
        Raise unless (from_state, to_state) is in the guard table.

        Raises:
            GuardViolation: If the pair is not allowed
        """
        if not self.can_transition(from_state, to_state):
            raise GuardViolation(
                str(self.kind),
                entity_id,
                from_state.value if from_state is not None else None,
                to_state.value,
            )

    def parse(self, value: str | None) -> S | None:
        """Convert a persisted state value back to the enum (None stays None)."""
        return self.states(value) if value is not None else None

    def current(self, value: str | None) -> S:
        """Effective current state: the persisted value, or the initial state."""
        return self.states(value) if value is not None else self.initial

    def allowed_targets(self, from_state: S | None) -> list[S]:
        return [to for (frm, to) in self._allowed if frm == from_state]


TASK_MACHINE: StateMachine[TaskState] = StateMachine(
    EntityKind.TASK, TaskState, TASK_TRANSITIONS, TaskState.PENDING
)
STEP_MACHINE: StateMachine[StepState] = StateMachine(
    EntityKind.STEP, StepState, STEP_TRANSITIONS, StepState.PENDING
)


# =============================================================================
# Lifecycle event names
# =============================================================================

_TASK_EVENTS: dict[tuple[str | None, str], str] = {
    (None, "pending"): "initialize_requested",
    ("in_progress", "pending"): "initialize_requested",
    ("pending", "in_progress"): "start_requested",
    ("in_progress", "complete"): "completed",
    ("in_progress", "error"): "failed",
    ("pending", "error"): "failed",
    ("error", "pending"): "retry_requested",
    ("error", "resolved_manually"): "resolved_manually",
    ("pending", "cancelled"): "cancelled",
    ("in_progress", "cancelled"): "cancelled",
}

_STEP_EVENTS_BY_TARGET: dict[str, str] = {
    "pending": "initialize_requested",
    "in_progress": "execution_requested",
    "complete": "completed",
    "error": "failed",
    "cancelled": "cancelled",
    "resolved_manually": "resolved_manually",
}


def event_name_for(kind: EntityKind, from_state: str | None, to_state: str) -> str:
    """
    Lifecycle event name published for a transition.

    Example:
        event_name_for(EntityKind.STEP, "error", "pending")      # "step.retry_requested"
        event_name_for(EntityKind.TASK, "pending", "in_progress")  # "task.start_requested"
    """
    if kind is EntityKind.TASK:
        suffix = _TASK_EVENTS.get((from_state, to_state), "state_changed")
    elif from_state == "error" and to_state == "pending":
        suffix = "retry_requested"
    else:
        suffix = _STEP_EVENTS_BY_TARGET.get(to_state, "state_changed")
    return f"{kind}.{suffix}"
