"""Data models for tasks, steps, transitions and derived readiness.

Value objects only: no persistence or orchestration logic lives here.
"""

from pyconductor.models.readiness import BlockingReason, StepReadiness, TaskExecutionContext
from pyconductor.models.retry import PermanentError, RetryableError, RetryDecision, RetryPolicy
from pyconductor.models.status import (
    COMPLETION_STATES,
    DEPENDENCY_SATISFIED_STATES,
    EXECUTABLE_STATES,
    STILL_WORKING_STATES,
    EntityKind,
    StepState,
    TaskState,
)
from pyconductor.models.task import Edge, Step, Task, TaskRequest, TaskSnapshot, utc_now
from pyconductor.models.template import StepTemplate, TaskTemplate
from pyconductor.models.transition import SORT_KEY_STEP, Transition

__all__ = [
    "TaskState",
    "StepState",
    "EntityKind",
    "COMPLETION_STATES",
    "DEPENDENCY_SATISFIED_STATES",
    "EXECUTABLE_STATES",
    "STILL_WORKING_STATES",
    "Task",
    "Step",
    "Edge",
    "TaskRequest",
    "TaskSnapshot",
    "utc_now",
    "Transition",
    "SORT_KEY_STEP",
    "StepTemplate",
    "TaskTemplate",
    "RetryPolicy",
    "RetryDecision",
    "PermanentError",
    "RetryableError",
    "BlockingReason",
    "StepReadiness",
    "TaskExecutionContext",
]
