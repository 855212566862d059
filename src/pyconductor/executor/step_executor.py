"""
StepExecutor - claims, runs and records one batch of ready steps.

For each step:
1. Atomically claim it (in_process check-and-set); skip if someone else has it
2. Re-read its state; an ERROR step walks error -> pending before starting
3. pending -> in_progress
4. Run the handler under the batch timeout
5. Record the outcome on the step and transition to complete / error
6. Release the claim, whatever happened

Handler failures are captured into step state and never leave this module,
so one failing step cannot abort its siblings. Guard violations and storage
failures are infrastructure faults and do propagate once the whole batch
has settled.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pyconductor.config import ExecutionConfig
from pyconductor.core.ledger import StateLedger
from pyconductor.executor.backoff import BackoffCalculator
from pyconductor.executor.registry import HandlerRegistry, StepContext, StepHandler
from pyconductor.models import (
    PermanentError,
    RetryableError,
    Step,
    StepState,
    TaskSnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = ["StepExecutor", "StepOutcome"]


@dataclass(frozen=True)
class StepOutcome:
    """What happened to one step of a batch."""

    step_id: str
    name: str
    state: StepState | None
    """State after execution; None when the step was skipped."""

    attempts: int = 0
    result: Any = None
    error: str | None = None
    error_class: str | None = None
    retryable: bool = True
    backoff_request_seconds: float | None = None
    skipped: bool = False
    """True if the step could not be claimed or was no longer executable."""

    @property
    def success(self) -> bool:
        return self.state is StepState.COMPLETE

    @classmethod
    def skipped_step(cls, step: Step) -> StepOutcome:
        return cls(step_id=step.step_id, name=step.name, state=None, skipped=True)


class StepExecutor:
    """
    Runs batches of steps against their registered handlers.

    Usage:
        executor = StepExecutor(ledger, registry)
        outcomes = await executor.execute_steps(snapshot, ready, concurrency=4)
    """

    def __init__(
        self,
        ledger: StateLedger,
        registry: HandlerRegistry,
        config: ExecutionConfig | None = None,
        backoff: BackoffCalculator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._store = ledger.store
        self._registry = registry
        self.config = config or ExecutionConfig()
        self._backoff = backoff or BackoffCalculator()
        self._clock = clock

    async def execute_steps(
        self,
        snapshot: TaskSnapshot,
        steps: Sequence[Step],
        concurrency: int | None = None,
    ) -> list[StepOutcome]:
        """
        Execute ``steps`` with at most ``concurrency`` handlers in flight.

        Returns:
            One StepOutcome per input step, in input order

        Raises:
            UnknownHandlerError: If a step's handler is not registered (before any claim)
            GuardViolation: If a step transition is rejected
            StorageError: If persistence fails
        """
        if not steps:
            return []

        handlers = {s.step_id: self._registry.get_handler(s.handler_name) for s in steps}
        limit = max(concurrency or len(steps), 1)
        semaphore = asyncio.Semaphore(limit)
        timeout = self.config.calculate_batch_timeout(len(steps))

        logger.debug(
            f"Task {snapshot.task_id}: executing {len(steps)} steps "
            f"(concurrency={limit}, timeout={timeout}s)"
        )

        async def run(step: Step) -> StepOutcome:
            async with semaphore:
                return await self._execute_one(snapshot, step, handlers[step.step_id], timeout)

        results = await asyncio.gather(*(run(s) for s in steps), return_exceptions=True)

        outcomes: list[StepOutcome] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            outcomes.append(result)
        return outcomes

    async def _execute_one(
        self,
        snapshot: TaskSnapshot,
        step: Step,
        handler: StepHandler,
        timeout: float,
    ) -> StepOutcome:
        if not await self._store.claim_step(step.step_id):
            logger.debug(f"Step {step.name} ({step.step_id}) already claimed, skipping")
            return StepOutcome.skipped_step(step)

        try:
            fresh = await self._store.get_step(step.step_id) or step
            if not fresh.status.is_executable or fresh.processed:
                logger.debug(
                    f"Step {fresh.name} is {fresh.status} after claim, skipping"
                )
                return StepOutcome.skipped_step(fresh)

            task_id = snapshot.task_id
            if fresh.status is StepState.ERROR:
                await self._ledger.transition_step(
                    fresh.step_id, StepState.PENDING, {"reason": "retry"}, task_id=task_id
                )
            await self._ledger.transition_step(
                fresh.step_id,
                StepState.IN_PROGRESS,
                {"attempt": fresh.attempts + 1},
                task_id=task_id,
            )

            context = StepContext(snapshot=snapshot, sequence=snapshot.steps, step=fresh)
            try:
                result = await asyncio.wait_for(handler.execute(context), timeout=timeout)
            except TimeoutError:
                error = TimeoutError(f"Step {fresh.name} timed out after {timeout}s")
                return await self._record_failure(task_id, fresh, error)
            except Exception as e:
                return await self._record_failure(task_id, fresh, e)

            return await self._record_success(task_id, fresh, result)
        finally:
            await self._store.release_step(step.step_id)

    async def _record_success(self, task_id: str, step: Step, result: Any) -> StepOutcome:
        now = self._clock()
        updated = step.evolve(
            attempts=step.attempts + 1,
            last_attempted_at=now,
            processed=True,
            processed_at=now,
            results=result,
            backoff_request_seconds=None,
        )
        await self._store.save_step(updated)
        await self._ledger.transition_step(
            step.step_id, StepState.COMPLETE, {"attempts": updated.attempts}, task_id=task_id
        )
        logger.debug(f"Step {step.name} completed (attempt {updated.attempts})")
        return StepOutcome(
            step_id=step.step_id,
            name=step.name,
            state=StepState.COMPLETE,
            attempts=updated.attempts,
            result=result,
            retryable=updated.retryable,
        )

    async def _record_failure(self, task_id: str, step: Step, error: Exception) -> StepOutcome:
        now = self._clock()
        attempts = step.attempts + 1
        retryable = step.retryable
        backoff: float | None = None

        if isinstance(error, PermanentError):
            retryable = False
        elif isinstance(error, RetryableError):
            try:
                backoff = self._backoff.backoff_seconds(attempts, error.retry_after, now)
            except ValueError as e:
                logger.warning(f"Ignoring unusable retry_after on step {step.name}: {e}")
                backoff = self._backoff.backoff_seconds(attempts)

        payload = {
            "error": str(error),
            "backtrace": "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            "error_class": type(error).__name__,
        }
        updated = step.evolve(
            attempts=attempts,
            last_attempted_at=now,
            processed=False,
            retryable=retryable,
            backoff_request_seconds=backoff,
            results=payload,
        )
        await self._store.save_step(updated)
        await self._ledger.transition_step(
            step.step_id,
            StepState.ERROR,
            {"attempts": attempts, "error_class": payload["error_class"]},
            task_id=task_id,
        )
        logger.debug(
            f"Step {step.name} failed (attempt {attempts}/{step.retry_limit}, "
            f"{payload['error_class']}: {error})"
        )
        return StepOutcome(
            step_id=step.step_id,
            name=step.name,
            state=StepState.ERROR,
            attempts=attempts,
            error=payload["error"],
            error_class=payload["error_class"],
            retryable=retryable,
            backoff_request_seconds=backoff,
        )
