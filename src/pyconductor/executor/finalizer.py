"""
TaskFinalizer - decides a task's outcome once no step is immediately ready.

Decision order:
1. A step in ERROR that can never run again      -> task ERROR (terminal)
2. A step in ERROR that may still be retried     -> task PENDING, re-enqueue at its retry instant
3. StepGroup says complete                       -> task COMPLETE
4. StepGroup says work is still pending          -> task PENDING, re-enqueue
5. None of the above                             -> task COMPLETE, logged as an error

Branch 5 should be unreachable for a well-formed DAG; reaching it means the
readiness or classification logic has a gap, so it is logged at error level
with the full StepGroup counts.

Every transition goes through StateLedger.safe_transition_task, so calling
finalize() twice without step changes in between yields the same status.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pyconductor.config import BackoffConfig
from pyconductor.core.events import EventPublisher, WorkflowEvents
from pyconductor.core.ledger import StateLedger
from pyconductor.executor.reenqueue import ReenqueueReason, TaskReenqueuer
from pyconductor.models import (
    RetryPolicy,
    Step,
    StepState,
    TaskSnapshot,
    TaskState,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "StepGroup",
    "FinalizationAction",
    "FinalizationResult",
    "TaskFinalizer",
]


@dataclass(frozen=True)
class StepGroup:
    """
    Classification of a task's steps before and after one invocation.

    Attributes:
        prior_incomplete: Steps not in a completion state before this invocation
        this_pass_complete: Steps processed in this invocation that are now complete
        still_incomplete: prior_incomplete minus this_pass_complete
        still_working: still_incomplete steps now pending or in_progress
    """

    prior_incomplete: tuple[Step, ...]
    this_pass_complete: tuple[Step, ...]
    still_incomplete: tuple[Step, ...]
    still_working: tuple[Step, ...]

    @classmethod
    def build(
        cls,
        prior: TaskSnapshot,
        current: TaskSnapshot,
        processed_step_ids: Iterable[str] = (),
    ) -> StepGroup:
        """
        Classify steps.

        Args:
            prior: Snapshot taken before this invocation did any work
            current: Freshly loaded snapshot
            processed_step_ids: Steps executed during this invocation
        """
        prior_incomplete = tuple(
            prior.step(step_id)
            for step_id in prior.graph.reachable_from_roots()
            if not prior.step(step_id).status.is_completion
        )

        processed = set(processed_step_ids)
        this_pass_complete = tuple(
            s for s in current.steps if s.step_id in processed and s.status.is_completion
        )
        completed_ids = {s.step_id for s in this_pass_complete}

        still_incomplete = tuple(
            current.step(s.step_id) for s in prior_incomplete if s.step_id not in completed_ids
        )
        still_working = tuple(s for s in still_incomplete if s.status.is_workable)

        return cls(
            prior_incomplete=prior_incomplete,
            this_pass_complete=this_pass_complete,
            still_incomplete=still_incomplete,
            still_working=still_working,
        )

    @property
    def complete(self) -> bool:
        return not self.prior_incomplete or not self.still_incomplete

    @property
    def pending(self) -> bool:
        return len(self.still_working) > 0

    def debug_state(self) -> dict[str, Any]:
        return {
            "prior_incomplete": len(self.prior_incomplete),
            "this_pass_complete": len(self.this_pass_complete),
            "still_incomplete": len(self.still_incomplete),
            "still_working": len(self.still_working),
            "complete": self.complete,
            "pending": self.pending,
        }


class FinalizationAction(Enum):
    """What the finalizer did with the task."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    """Task moved to ERROR; needs manual resolution."""

    REENQUEUED = "reenqueued"
    NO_ACTION = "no_action"
    """Task was already terminal."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FinalizationResult:
    task_id: str
    status: TaskState
    action: FinalizationAction
    reason: str
    delay_seconds: float | None = None


class TaskFinalizer:
    """
    Moves a task to its outcome state and requests re-enqueue when needed.

    Usage:
        finalizer = TaskFinalizer(ledger, reenqueuer)
        result = await finalizer.finalize(task_id, prior_snapshot, processed_ids)
    """

    def __init__(
        self,
        ledger: StateLedger,
        reenqueuer: TaskReenqueuer,
        retry_policy: RetryPolicy = RetryPolicy.DEFAULT,
        backoff: BackoffConfig | None = None,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._store = ledger.store
        self._reenqueuer = reenqueuer
        self.retry_policy = retry_policy
        self.backoff = backoff or BackoffConfig()
        self._events = events
        self._clock = clock

    async def finalize(
        self,
        task_id: str,
        prior: TaskSnapshot | None = None,
        processed_step_ids: Collection[str] = (),
    ) -> FinalizationResult:
        """
        Decide and apply the task's outcome.

        Args:
            task_id: Task to finalize
            prior: Snapshot from before this invocation (defaults to the current one)
            processed_step_ids: Steps executed during this invocation

        Raises:
            TaskNotFoundError: If the task does not exist
            GuardViolation: If a required transition is rejected
        """
        now = self._clock()
        current = await self._store.load_snapshot(task_id, now)
        self._publish(WorkflowEvents.TASK_FINALIZATION_STARTED, {"task_id": task_id})

        result = await self._decide(current, prior or current, processed_step_ids, now)

        logger.info(
            f"Task {task_id} finalized: {result.status} ({result.action}, {result.reason})"
        )
        self._publish(
            WorkflowEvents.TASK_FINALIZATION_COMPLETED,
            {
                "task_id": task_id,
                "final_state": str(result.status),
                "finalization_result": str(result.action),
                "reason": result.reason,
            },
        )
        return result

    async def _decide(
        self,
        current: TaskSnapshot,
        prior: TaskSnapshot,
        processed_step_ids: Collection[str],
        now: datetime,
    ) -> FinalizationResult:
        task_id = current.task_id
        status = current.task.status

        if status.is_terminal:
            return FinalizationResult(task_id, status, FinalizationAction.NO_ACTION, "already_terminal")

        error_steps = [s for s in current.steps if s.status is StepState.ERROR]
        unrecoverable = [
            s
            for s in error_steps
            if self.retry_policy.exhausted(s.attempts, s.retry_limit, s.retryable)
        ]

        if unrecoverable:
            names = ", ".join(s.name for s in unrecoverable)
            logger.debug(f"Task {task_id} has unrecoverable step errors: {names}")
            await self._ledger.safe_transition_task(
                task_id, TaskState.ERROR, {"error_steps": [s.name for s in unrecoverable]}
            )
            return FinalizationResult(
                task_id, TaskState.ERROR, FinalizationAction.BLOCKED, "retries_exhausted"
            )

        if error_steps:
            delay = self._retry_delay(current, error_steps, now)
            await self._park(task_id)
            await self._reenqueuer.reenqueue_delayed(task_id, delay, ReenqueueReason.RETRY_BACKOFF)
            return FinalizationResult(
                task_id,
                TaskState.PENDING,
                FinalizationAction.REENQUEUED,
                str(ReenqueueReason.RETRY_BACKOFF),
                delay,
            )

        group = StepGroup.build(prior, current, processed_step_ids)
        logger.debug(f"Task {task_id} step group: {group.debug_state()}")

        if group.complete:
            await self._complete(task_id, status)
            return FinalizationResult(
                task_id, TaskState.COMPLETE, FinalizationAction.COMPLETED, "all_steps_complete"
            )

        if group.pending:
            delay = self.backoff.buffer_seconds
            await self._park(task_id)
            await self._reenqueuer.reenqueue_delayed(
                task_id, delay, ReenqueueReason.PENDING_STEPS_REMAINING
            )
            return FinalizationResult(
                task_id,
                TaskState.PENDING,
                FinalizationAction.REENQUEUED,
                str(ReenqueueReason.PENDING_STEPS_REMAINING),
                delay,
            )

        logger.error(
            f"Task {task_id} has no errors, no complete step group and no working steps; "
            f"completing as fallback. Step group: {group.debug_state()}"
        )
        await self._complete(task_id, status)
        return FinalizationResult(
            task_id, TaskState.COMPLETE, FinalizationAction.COMPLETED, "fallback_complete"
        )

    def _retry_delay(self, snapshot: TaskSnapshot, error_steps: list[Step], now: datetime) -> float:
        """Seconds until the earliest retry instant among recoverable error steps."""
        instants = []
        for step in error_steps:
            decision = self.retry_policy.eligible(
                attempts=step.attempts,
                retry_limit=step.retry_limit,
                retryable=step.retryable,
                last_failure_at=snapshot.last_failures.get(step.step_id),
                backoff_request_seconds=step.backoff_request_seconds,
                last_attempted_at=step.last_attempted_at,
                now=now,
            )
            if decision.eligible:
                return 0.0
            if decision.next_retry_at is not None:
                instants.append(decision.next_retry_at)

        if not instants:
            return self.backoff.default_reenqueue_delay
        return max((min(instants) - now).total_seconds(), 0.0)

    async def _park(self, task_id: str) -> None:
        await self._ledger.safe_transition_task(task_id, TaskState.PENDING)

    async def _complete(self, task_id: str, status: TaskState) -> None:
        # COMPLETE is only reachable from IN_PROGRESS.
        if status is TaskState.ERROR:
            await self._ledger.transition_task(task_id, TaskState.PENDING)
            status = TaskState.PENDING
        if status is TaskState.PENDING:
            await self._ledger.transition_task(task_id, TaskState.IN_PROGRESS)
        await self._ledger.safe_transition_task(task_id, TaskState.COMPLETE)

    def _publish(self, name: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(name, payload)
