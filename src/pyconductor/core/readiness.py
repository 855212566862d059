"""
StepReadinessEngine - in-process readiness projection over a TaskSnapshot.

A step is ready for execution iff:
    state in {pending, error}
    AND every parent is complete or resolved_manually (or it has no parents)
    AND attempts < retry_limit
    AND it is neither claimed (in_process) nor processed
    AND RetryPolicy says it may run now

Evaluation is read-only: it never touches the store, so it is safe to run
repeatedly and from many coroutines at once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pyconductor.models import (
    BlockingReason,
    RetryPolicy,
    Step,
    StepReadiness,
    StepState,
    TaskExecutionContext,
    TaskSnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = ["StepReadinessEngine"]


class StepReadinessEngine:
    """Computes StepReadiness for every step of a snapshot.

    Usage:
        engine = StepReadinessEngine()
        for verdict in engine.evaluate(snapshot):
            print(verdict.name, verdict.ready_for_execution, verdict.blocking_reason)
    """

    def __init__(
        self,
        retry_policy: RetryPolicy = RetryPolicy.DEFAULT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.retry_policy = retry_policy
        self._clock = clock

    def evaluate(self, snapshot: TaskSnapshot, now: datetime | None = None) -> list[StepReadiness]:
        """Readiness for every step, in snapshot order."""
        now = now or self._clock()
        return [self.evaluate_step(snapshot, step, now) for step in snapshot.steps]

    def evaluate_step(
        self, snapshot: TaskSnapshot, step: Step, now: datetime | None = None
    ) -> StepReadiness:
        now = now or self._clock()
        parents = snapshot.parents_of(step.step_id)
        completed_parents = sum(1 for p in parents if p.status.satisfies_dependency)
        dependencies_satisfied = completed_parents == len(parents)

        last_failure_at = snapshot.last_failures.get(step.step_id)
        decision = self.retry_policy.eligible(
            attempts=step.attempts,
            retry_limit=step.retry_limit,
            retryable=step.retryable,
            last_failure_at=last_failure_at,
            backoff_request_seconds=step.backoff_request_seconds,
            last_attempted_at=step.last_attempted_at,
            now=now,
        )

        workable = step.status.is_executable and not step.in_process and not step.processed
        ready = (
            workable
            and dependencies_satisfied
            and step.attempts < step.retry_limit
            and decision.eligible
        )

        if ready:
            blocking_reason = None
        elif not dependencies_satisfied:
            blocking_reason = BlockingReason.DEPENDENCIES_NOT_SATISFIED
        elif not decision.eligible:
            blocking_reason = BlockingReason.RETRY_NOT_ELIGIBLE
        else:
            blocking_reason = BlockingReason.INVALID_STATE

        return StepReadiness(
            step_id=step.step_id,
            name=step.name,
            current_state=step.status,
            dependencies_satisfied=dependencies_satisfied,
            retry_eligible=decision.eligible,
            ready_for_execution=ready,
            next_retry_at=decision.next_retry_at,
            total_parents=len(parents),
            completed_parents=completed_parents,
            attempts=step.attempts,
            retry_limit=step.retry_limit,
            blocking_reason=blocking_reason,
            last_failure_at=last_failure_at,
            last_attempted_at=step.last_attempted_at,
            backoff_request_seconds=step.backoff_request_seconds,
        )

    def ready_steps(self, snapshot: TaskSnapshot, now: datetime | None = None) -> list[Step]:
        """Steps ready to dispatch now, ordered by (position, name)."""
        verdicts = self.evaluate(snapshot, now)
        ready = [snapshot.step(v.step_id) for v in verdicts if v.ready_for_execution]
        ready.sort(key=lambda s: (s.position, s.name))
        logger.debug(
            f"Task {snapshot.task_id}: {len(ready)}/{len(verdicts)} steps ready"
        )
        return ready

    def execution_context(
        self, snapshot: TaskSnapshot, now: datetime | None = None
    ) -> TaskExecutionContext:
        """Aggregate counts of step states and readiness for one task."""
        verdicts = self.evaluate(snapshot, now)
        states = [s.status for s in snapshot.steps]
        return TaskExecutionContext(
            task_id=snapshot.task_id,
            task_state=str(snapshot.task.status),
            total_steps=len(states),
            pending_steps=states.count(StepState.PENDING),
            in_progress_steps=states.count(StepState.IN_PROGRESS),
            completed_steps=sum(1 for s in states if s.satisfies_dependency),
            failed_steps=states.count(StepState.ERROR),
            ready_steps=sum(1 for v in verdicts if v.ready_for_execution),
        )
