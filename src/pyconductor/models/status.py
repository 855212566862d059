"""State enumerations for tasks and workflow steps.

Tasks and steps share one vocabulary but are governed by independent
guard tables (see pyconductor.core.state_machine). The current state of
an entity is the to_state of its most-recent transition, or PENDING when
no transition has been written yet.
"""

from enum import Enum


class TaskState(Enum):
    """Lifecycle state of a task (one workflow instance).

    Lifecycle:
        PENDING → IN_PROGRESS → COMPLETE
                              → PENDING (parked for re-enqueue)
                              → ERROR (blocked) → PENDING (retry) / RESOLVED_MANUALLY
    """

    PENDING = "pending"
    """Task is waiting for an orchestrator invocation."""

    IN_PROGRESS = "in_progress"
    """An orchestrator invocation is driving the task's pass loop."""

    COMPLETE = "complete"
    """Every step reached a completion state."""

    ERROR = "error"
    """At least one step exhausted its retries; needs intervention."""

    CANCELLED = "cancelled"
    """Task was cancelled; no further steps are discovered."""

    RESOLVED_MANUALLY = "resolved_manually"
    """An operator cleared the blocking error by hand."""

    @property
    def is_terminal(self) -> bool:
        """Check if no more orchestration work is expected."""
        return self in (TaskState.COMPLETE, TaskState.CANCELLED, TaskState.RESOLVED_MANUALLY)

    @property
    def is_active(self) -> bool:
        """Check if steps may still be discovered for this task."""
        return self in (TaskState.PENDING, TaskState.IN_PROGRESS)

    def __str__(self) -> str:
        return self.value


class StepState(Enum):
    """Lifecycle state of a single workflow step.

    Lifecycle:
        PENDING → IN_PROGRESS → COMPLETE
                              → ERROR → PENDING → IN_PROGRESS (retry)
                                      → RESOLVED_MANUALLY
    """

    PENDING = "pending"
    """Step has not run yet (or is queued for a retry)."""

    IN_PROGRESS = "in_progress"
    """Step business logic is executing."""

    COMPLETE = "complete"
    """Step finished successfully."""

    ERROR = "error"
    """Last attempt failed; may be retried depending on policy."""

    CANCELLED = "cancelled"
    """Step was cancelled."""

    RESOLVED_MANUALLY = "resolved_manually"
    """Step was resolved by an operator (or bypassed at creation)."""

    @property
    def is_completion(self) -> bool:
        """Check if the step no longer counts as incomplete work."""
        return self in COMPLETION_STATES

    @property
    def satisfies_dependency(self) -> bool:
        """Check if children of this step may proceed."""
        return self in DEPENDENCY_SATISFIED_STATES

    @property
    def is_workable(self) -> bool:
        """Check if the step is still being worked on (excludes ERROR)."""
        return self in STILL_WORKING_STATES

    @property
    def is_executable(self) -> bool:
        """Check if the state allows dispatch of the step."""
        return self in EXECUTABLE_STATES

    def __str__(self) -> str:
        return self.value


class EntityKind(Enum):
    """Kind of entity a transition belongs to."""

    TASK = "task"
    STEP = "step"

    def __str__(self) -> str:
        return self.value


COMPLETION_STATES = frozenset(
    {StepState.COMPLETE, StepState.RESOLVED_MANUALLY, StepState.CANCELLED}
)
DEPENDENCY_SATISFIED_STATES = frozenset({StepState.COMPLETE, StepState.RESOLVED_MANUALLY})
STILL_WORKING_STATES = frozenset({StepState.PENDING, StepState.IN_PROGRESS})
EXECUTABLE_STATES = frozenset({StepState.PENDING, StepState.ERROR})

__all__ = [
    "TaskState",
    "StepState",
    "EntityKind",
    "COMPLETION_STATES",
    "DEPENDENCY_SATISFIED_STATES",
    "STILL_WORKING_STATES",
    "EXECUTABLE_STATES",
]
