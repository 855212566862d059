"""
Orchestrator - the pass loop for one task.

handle(task_id):
    Start       task must be pending (complete -> ALREADY_COMPLETE, else SKIPPED);
                losing the start to a concurrent invocation is also SKIPPED;
                pending -> in_progress
    Discover    reload an immutable snapshot, compute ready steps in-process
    Dispatch    run ready steps in batches sized by the ConcurrencyAdvisor
                (re-queried for every batch)
    Re-discover loop back to Discover while new steps become ready
    Finalize    TaskFinalizer decides complete / pending / error

The re-discovery loop is bounded by ``max_pass_iterations``; when a
pathological DAG keeps producing ready steps the task is parked in pending
and re-enqueued instead of looping without end.

Cancellation is cooperative: cancel_task() moves the task to cancelled and
trips an in-process token. The loop checks both before each batch, stops
discovering work and skips finalization. In-flight handlers run to the end
and record their outcome.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pyconductor.config import OrchestratorConfig
from pyconductor.core.errors import GuardViolation
from pyconductor.core.events import EventPublisher, WorkflowEvents
from pyconductor.core.ledger import StateLedger
from pyconductor.core.readiness import StepReadinessEngine
from pyconductor.executor.backoff import BackoffCalculator
from pyconductor.executor.concurrency import ConcurrencyAdvisor, PoolProbe
from pyconductor.executor.finalizer import FinalizationResult, TaskFinalizer
from pyconductor.executor.reenqueue import ReenqueueReason, TaskQueue, TaskReenqueuer
from pyconductor.executor.registry import HandlerRegistry
from pyconductor.executor.step_executor import StepExecutor
from pyconductor.models import RetryPolicy, StepState, TaskSnapshot, TaskState, utc_now
from pyconductor.storage.base import WorkflowStore

logger = logging.getLogger(__name__)

__all__ = ["Orchestrator", "OrchestrationAction", "OrchestrationResult"]


class OrchestrationAction(Enum):
    """How a handle() invocation ended."""

    FINALIZED = "finalized"
    ALREADY_COMPLETE = "already_complete"
    SKIPPED = "skipped"
    """Task was not pending (another invocation owns it, or it is blocked)."""

    CANCELLED = "cancelled"
    ITERATION_LIMIT = "iteration_limit"
    """Parked pending after max_pass_iterations; re-enqueued."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class OrchestrationResult:
    task_id: str
    status: TaskState
    action: OrchestrationAction
    iterations: int = 0
    processed_step_ids: tuple[str, ...] = ()
    finalization: FinalizationResult | None = None


class Orchestrator:
    """
    Drives tasks through discovery, dispatch and finalization.

    All collaborators are injected, so the same class runs against any
    store, queue or resource pool.

    Usage:
        orchestrator = Orchestrator(
            ledger=ledger,
            executor=StepExecutor(ledger, registry),
            advisor=ConcurrencyAdvisor(pool),
            finalizer=TaskFinalizer(ledger, reenqueuer),
            reenqueuer=reenqueuer,
        )
        result = await orchestrator.handle(task_id)
    """

    def __init__(
        self,
        ledger: StateLedger,
        executor: StepExecutor,
        advisor: ConcurrencyAdvisor,
        finalizer: TaskFinalizer,
        reenqueuer: TaskReenqueuer,
        readiness: StepReadinessEngine | None = None,
        config: OrchestratorConfig | None = None,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._store = ledger.store
        self._executor = executor
        self._advisor = advisor
        self._finalizer = finalizer
        self._reenqueuer = reenqueuer
        self._readiness = readiness or StepReadinessEngine(RetryPolicy.DEFAULT, clock)
        self.config = config or OrchestratorConfig()
        self._events = events
        self._clock = clock
        self._cancel_tokens: dict[str, asyncio.Event] = {}

    @classmethod
    def build(
        cls,
        store: WorkflowStore,
        registry: HandlerRegistry,
        queue: TaskQueue,
        probe: PoolProbe,
        config: OrchestratorConfig | None = None,
        events: EventPublisher | None = None,
        retry_policy: RetryPolicy = RetryPolicy.DEFAULT,
        clock: Callable[[], datetime] = utc_now,
    ) -> Orchestrator:
        """
        Wire an orchestrator and its collaborators from the usual parts.

        Example:
            orchestrator = Orchestrator.build(store, registry, queue, ResourcePool(10))
        """
        config = config or OrchestratorConfig()
        ledger = StateLedger(store, events, clock)
        reenqueuer = TaskReenqueuer(queue, events)
        return cls(
            ledger=ledger,
            executor=StepExecutor(
                ledger, registry, config.execution, BackoffCalculator(config.backoff), clock
            ),
            advisor=ConcurrencyAdvisor(probe, config.execution),
            finalizer=TaskFinalizer(ledger, reenqueuer, retry_policy, config.backoff, events, clock),
            reenqueuer=reenqueuer,
            readiness=StepReadinessEngine(retry_policy, clock),
            config=config,
            events=events,
            clock=clock,
        )

    @property
    def ledger(self) -> StateLedger:
        return self._ledger

    @property
    def readiness(self) -> StepReadinessEngine:
        return self._readiness

    @property
    def reenqueuer(self) -> TaskReenqueuer:
        return self._reenqueuer

    async def handle(self, task_id: str) -> OrchestrationResult:
        """
        Run one orchestration invocation for ``task_id``.

        If the pass loop raises, the task is moved back to pending before
        the error propagates, so a later invocation can pick it up again.

        Raises:
            TaskNotFoundError: If the task does not exist
            GuardViolation: If a transition is rejected
            StorageError: If persistence fails
        """
        initial = await self._store.load_snapshot(task_id, self._clock())
        status = initial.task.status

        if status is TaskState.COMPLETE:
            logger.debug(f"Task {task_id} already complete")
            return OrchestrationResult(task_id, status, OrchestrationAction.ALREADY_COMPLETE)
        if status is not TaskState.PENDING:
            logger.debug(f"Task {task_id} is {status}, not starting")
            return OrchestrationResult(task_id, status, OrchestrationAction.SKIPPED)

        token = asyncio.Event()
        try:
            await self._ledger.transition_task(task_id, TaskState.IN_PROGRESS)
        except GuardViolation:
            current = await self._ledger.task_state(task_id)
            if current is TaskState.PENDING:
                raise
            logger.debug(f"Task {task_id} started by another invocation ({current}), skipping")
            return OrchestrationResult(task_id, current, OrchestrationAction.SKIPPED)

        self._cancel_tokens[task_id] = token
        logger.info(f"Task {task_id} ({initial.task.name}) started")
        try:
            return await self._run_passes(task_id, initial, token)
        except Exception as e:
            logger.error(f"Task {task_id} orchestration failed, returning it to pending: {e!r}")
            if await self._ledger.task_state(task_id) is TaskState.IN_PROGRESS:
                await self._ledger.safe_transition_task(task_id, TaskState.PENDING)
            raise
        finally:
            self._cancel_tokens.pop(task_id, None)

    async def cancel_task(self, task_id: str) -> TaskState:
        """
        Cancel a task and signal any running invocation to stop.

        Returns:
            The task's state afterwards

        Raises:
            GuardViolation: If the task's state cannot move to cancelled
        """
        await self._ledger.safe_transition_task(task_id, TaskState.CANCELLED)
        token = self._cancel_tokens.get(task_id)
        if token is not None:
            token.set()
        logger.info(f"Task {task_id} cancelled")
        return TaskState.CANCELLED

    # ========================================================================
    # Pass loop
    # ========================================================================

    async def _run_passes(
        self, task_id: str, initial: TaskSnapshot, token: asyncio.Event
    ) -> OrchestrationResult:
        processed: list[str] = []
        iterations = 0

        while True:
            snapshot = await self._store.load_snapshot(task_id, self._clock())

            if token.is_set() or snapshot.task.status is TaskState.CANCELLED:
                logger.info(f"Task {task_id} cancelled during processing; stopping")
                return OrchestrationResult(
                    task_id,
                    snapshot.task.status,
                    OrchestrationAction.CANCELLED,
                    iterations,
                    tuple(processed),
                )

            ready = self._readiness.ready_steps(snapshot)
            if not ready:
                self._publish(WorkflowEvents.NO_VIABLE_STEPS, {"task_id": task_id})
                break

            if iterations >= self.config.max_pass_iterations:
                return await self._park_at_limit(task_id, iterations, processed)

            iterations += 1
            self._publish(
                WorkflowEvents.VIABLE_STEPS_DISCOVERED,
                {"task_id": task_id, "step_ids": [s.step_id for s in ready], "iteration": iterations},
            )

            exhausted = False
            remaining = list(ready)
            while remaining and not exhausted:
                if token.is_set():
                    break
                concurrency = self._advisor.recommended_concurrency()
                batch, remaining = remaining[:concurrency], remaining[concurrency:]

                self._publish(
                    WorkflowEvents.STEPS_EXECUTION_STARTED,
                    {"task_id": task_id, "step_ids": [s.step_id for s in batch]},
                )
                outcomes = await self._executor.execute_steps(snapshot, batch, concurrency)
                processed.extend(o.step_id for o in outcomes if not o.skipped)
                self._publish(
                    WorkflowEvents.STEPS_EXECUTION_COMPLETED,
                    {
                        "task_id": task_id,
                        "completed": [o.step_id for o in outcomes if o.success],
                        "failed": [o.step_id for o in outcomes if o.state is StepState.ERROR],
                    },
                )

                exhausted = any(
                    o.state is StepState.ERROR
                    and self._readiness.retry_policy.exhausted(
                        o.attempts, snapshot.step(o.step_id).retry_limit, o.retryable
                    )
                    for o in outcomes
                )

            if exhausted:
                logger.debug(f"Task {task_id}: a step exhausted its retries, finalizing early")
                break

        finalization = await self._finalizer.finalize(task_id, initial, processed)
        return OrchestrationResult(
            task_id,
            finalization.status,
            OrchestrationAction.FINALIZED,
            iterations,
            tuple(processed),
            finalization,
        )

    async def _park_at_limit(
        self, task_id: str, iterations: int, processed: list[str]
    ) -> OrchestrationResult:
        logger.warning(
            f"Task {task_id} reached max_pass_iterations={self.config.max_pass_iterations}; "
            "parking as pending"
        )
        self._publish(
            WorkflowEvents.PASS_ITERATION_LIMIT_REACHED,
            {"task_id": task_id, "iterations": iterations},
        )
        await self._ledger.safe_transition_task(task_id, TaskState.PENDING)
        await self._reenqueuer.reenqueue(task_id, ReenqueueReason.PASS_ITERATION_LIMIT)
        return OrchestrationResult(
            task_id,
            TaskState.PENDING,
            OrchestrationAction.ITERATION_LIMIT,
            iterations,
            tuple(processed),
        )

    def _publish(self, name: str, payload: dict) -> None:
        if self._events is not None:
            self._events.publish(name, payload)
