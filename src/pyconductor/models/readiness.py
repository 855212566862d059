"""Derived readiness records.

Nothing in this module is persisted: StepReadiness and TaskExecutionContext
are recomputed from a TaskSnapshot whenever they are needed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pyconductor.models.status import StepState


class BlockingReason(Enum):
    """Why a step is not ready for execution (diagnostic only)."""

    DEPENDENCIES_NOT_SATISFIED = "dependencies_not_satisfied"
    RETRY_NOT_ELIGIBLE = "retry_not_eligible"
    """Retries exhausted, step non-retryable, or still waiting on backoff."""

    INVALID_STATE = "invalid_state"
    """State outside {pending, error}, or already claimed / processed."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StepReadiness:
    """Readiness verdict for one step at one instant."""

    step_id: str
    name: str
    current_state: StepState
    dependencies_satisfied: bool
    retry_eligible: bool
    ready_for_execution: bool
    next_retry_at: datetime | None
    total_parents: int
    completed_parents: int
    attempts: int
    retry_limit: int
    blocking_reason: BlockingReason | None = None
    last_failure_at: datetime | None = None
    last_attempted_at: datetime | None = None
    backoff_request_seconds: float | None = None

    def time_until_ready(self, now: datetime) -> int | None:
        """Whole seconds until the step could become ready.

        0 when ready now, None when there is no scheduled retry instant.
        """
        if self.ready_for_execution:
            return 0
        if self.next_retry_at is None:
            return None
        return max(math.ceil((self.next_retry_at - now).total_seconds()), 0)

    @property
    def dependency_status(self) -> str:
        if self.total_parents == 0:
            return "no_dependencies"
        if self.dependencies_satisfied:
            return "all_satisfied"
        return f"{self.completed_parents}/{self.total_parents}_satisfied"

    @property
    def retry_status(self) -> str:
        if self.attempts >= self.retry_limit:
            return "max_retries_reached"
        if self.retry_eligible:
            return "retry_eligible"
        return "waiting_for_backoff"

    @property
    def backoff_type(self) -> str:
        if self.backoff_request_seconds is not None and self.last_attempted_at is not None:
            return "explicit_backoff"
        if self.last_failure_at is not None:
            return "exponential_backoff"
        return "no_backoff"

    @property
    def effective_backoff_seconds(self) -> float:
        if self.backoff_request_seconds is not None:
            return self.backoff_request_seconds
        if self.attempts > 0:
            return float(min(2**self.attempts, 30))
        return 0.0

    def detailed_status(self, now: datetime) -> dict[str, Any]:
        """Flat dictionary suitable for logging or an API response."""
        return {
            "ready": self.ready_for_execution,
            "current_state": str(self.current_state),
            "dependencies": self.dependency_status,
            "retry": self.retry_status,
            "blocking_reason": str(self.blocking_reason) if self.blocking_reason else None,
            "time_until_ready": self.time_until_ready(now),
            "backoff_type": self.backoff_type,
            "effective_backoff_seconds": self.effective_backoff_seconds,
        }


@dataclass(frozen=True)
class TaskExecutionContext:
    """Aggregate view of a task's step states and readiness."""

    task_id: str
    task_state: str
    total_steps: int
    pending_steps: int
    in_progress_steps: int
    completed_steps: int
    failed_steps: int
    ready_steps: int

    @property
    def execution_status(self) -> str:
        if self.ready_steps > 0:
            return "has_ready_steps"
        if self.in_progress_steps > 0:
            return "processing"
        if self.failed_steps > 0:
            return "blocked_by_failures"
        if self.total_steps > 0 and self.completed_steps == self.total_steps:
            return "all_complete"
        return "waiting_for_dependencies"

    @property
    def recommended_action(self) -> str:
        return {
            "has_ready_steps": "execute_ready_steps",
            "processing": "wait_for_completion",
            "blocked_by_failures": "handle_failures",
            "all_complete": "finalize_task",
            "waiting_for_dependencies": "wait_for_dependencies",
        }[self.execution_status]

    @property
    def completion_percentage(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return round(self.completed_steps / self.total_steps * 100, 2)

    @property
    def health_status(self) -> str:
        if self.failed_steps == 0:
            return "healthy"
        if self.ready_steps > 0:
            return "recovering"
        return "blocked"


__all__ = ["BlockingReason", "StepReadiness", "TaskExecutionContext"]
