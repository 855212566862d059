"""
Re-enqueue boundary between the orchestrator and whatever queue runs tasks.

The orchestrator never waits for backoff itself: it parks the task in
pending and asks the TaskReenqueuer to have the task handled again, either
immediately or after a delay. The queue technology is pluggable through
the TaskQueue protocol; InMemoryTaskQueue is the in-process implementation
used by the Worker and the tests.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Protocol, runtime_checkable

from pyconductor.core.events import EventPublisher, WorkflowEvents

logger = logging.getLogger(__name__)

__all__ = [
    "ReenqueueReason",
    "TaskQueue",
    "WorkQueue",
    "InMemoryTaskQueue",
    "TaskReenqueuer",
]


class ReenqueueReason(Enum):
    """Why a task was handed back to the queue."""

    PENDING_STEPS_REMAINING = "pending_steps_remaining"
    RETRY_BACKOFF = "retry_backoff"
    PASS_ITERATION_LIMIT = "pass_iteration_limit"
    INITIALIZED = "initialized"

    def __str__(self) -> str:
        return self.value


@runtime_checkable
class TaskQueue(Protocol):
    """Anything that will eventually cause ``Orchestrator.handle(task_id)`` to run."""

    async def enqueue(self, task_id: str) -> None: ...


@runtime_checkable
class WorkQueue(TaskQueue, Protocol):
    """A TaskQueue that a Worker can also consume from."""

    async def dequeue(self, timeout: float | None = None) -> str | None: ...


class InMemoryTaskQueue:
    """
    FIFO of task ids backed by asyncio.Queue.

    Usage:
        queue = InMemoryTaskQueue()
        await queue.enqueue(task_id)
        task_id = await queue.dequeue(timeout=1.0)
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self.enqueued: list[str] = []
        """Every task id ever enqueued, in order (diagnostics and tests)."""

    async def enqueue(self, task_id: str) -> None:
        self.enqueued.append(task_id)
        await self._queue.put(task_id)

    async def dequeue(self, timeout: float | None = None) -> str | None:
        """Next task id, or None if nothing arrives within ``timeout`` seconds."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class TaskReenqueuer:
    """
    Requests that a parked task be handled again.

    Delayed requests are scheduled as background asyncio tasks; references
    are kept until they finish so they cannot be garbage collected.

    Usage:
        reenqueuer = TaskReenqueuer(queue, events)
        await reenqueuer.reenqueue(task_id, ReenqueueReason.PENDING_STEPS_REMAINING)
        await reenqueuer.reenqueue_delayed(task_id, 4.0, ReenqueueReason.RETRY_BACKOFF)
    """

    def __init__(self, queue: TaskQueue, events: EventPublisher | None = None):
        self._queue = queue
        self._events = events
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        """Number of delayed re-enqueues not yet delivered."""
        return len(self._background_tasks)

    async def reenqueue(
        self,
        task_id: str,
        reason: ReenqueueReason = ReenqueueReason.PENDING_STEPS_REMAINING,
    ) -> bool:
        """
        Enqueue ``task_id`` now.

        Returns:
            True if the queue accepted the task, False if enqueueing failed
        """
        try:
            await self._queue.enqueue(task_id)
        except Exception as e:
            logger.error(f"Failed to re-enqueue task {task_id} ({reason}): {e}")
            return False

        logger.info(f"Task {task_id} re-enqueued ({reason})")
        self._publish(task_id, reason, 0.0)
        return True

    async def reenqueue_delayed(
        self,
        task_id: str,
        delay_seconds: float,
        reason: ReenqueueReason = ReenqueueReason.RETRY_BACKOFF,
    ) -> bool:
        """
        Enqueue ``task_id`` after ``delay_seconds`` (immediately if <= 0).

        Returns:
            True once the request is scheduled (or delivered, for zero delay)
        """
        if delay_seconds <= 0:
            return await self.reenqueue(task_id, reason)

        task = asyncio.create_task(self._deliver_later(task_id, delay_seconds, reason))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(f"Task {task_id} scheduled for re-enqueue in {delay_seconds:.1f}s ({reason})")
        return True

    async def shutdown(self) -> None:
        """Cancel delayed re-enqueues that have not fired yet."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} delayed re-enqueues")

    async def _deliver_later(self, task_id: str, delay_seconds: float, reason: ReenqueueReason) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            await self._queue.enqueue(task_id)
        except Exception as e:
            logger.error(f"Delayed re-enqueue of task {task_id} failed ({reason}): {e}")
            return
        self._publish(task_id, reason, delay_seconds)

    def _publish(self, task_id: str, reason: ReenqueueReason, delay_seconds: float) -> None:
        if self._events is None:
            return
        self._events.publish(
            WorkflowEvents.TASK_REENQUEUE_REQUESTED,
            {"task_id": task_id, "reason": str(reason), "delay_seconds": delay_seconds},
        )
