"""Worker that consumes task ids from a queue and orchestrates them.

Each dequeued task id is handed to Orchestrator.handle() in a background
asyncio task, so a slow workflow never stalls the dequeue loop. Re-enqueues
requested by the finalizer land back on the same queue and are picked up
by whichever worker dequeues them next.

Features:
- Non-blocking task execution
- Backpressure via an optional concurrent-task limit
- Graceful shutdown that waits for in-flight tasks
"""

from __future__ import annotations

import asyncio
import logging

from pyconductor.executor.orchestrator import Orchestrator
from pyconductor.executor.reenqueue import WorkQueue

logger = logging.getLogger(__name__)

__all__ = ["Worker", "WorkerHandle"]


class Worker:
    """Polls a WorkQueue and runs the orchestrator for each task id.

    Design Patterns:
    - Template Method: _run() defines the fixed loop skeleton
    - Builder: with_poll_interval(), with_max_concurrent_tasks() for configuration

    Usage:
        worker = Worker(queue, orchestrator, "worker-1") \\
            .with_poll_interval(0.5) \\
            .with_max_concurrent_tasks(20)

        handle = await worker.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(self, queue: WorkQueue, orchestrator: Orchestrator, worker_id: str):
        """Initialize worker.

        All dependencies passed explicitly, no globals.

        Args:
            queue: Source of task ids (also where re-enqueues land)
            orchestrator: Runs one invocation per dequeued task id
            worker_id: Unique worker identifier (used in logs)
        """
        self._queue = queue
        self._orchestrator = orchestrator
        self._worker_id = worker_id
        self._poll_interval = 1.0

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        self._max_concurrent_tasks: asyncio.Semaphore | None = None

        self.handled = 0
        """Number of orchestrator invocations finished by this worker."""

    def with_poll_interval(self, interval: float) -> Worker:
        """Seconds to wait on an empty queue before checking for shutdown (builder pattern).

        Returns:
            self for method chaining
        """
        if interval <= 0:
            raise ValueError(f"poll interval must be > 0, got {interval}")
        self._poll_interval = interval
        return self

    def with_max_concurrent_tasks(self, max_concurrent: int) -> Worker:
        """Limit how many tasks this worker orchestrates at once (builder pattern).

        The permit is acquired BEFORE dequeueing, so a saturated worker leaves
        task ids on the queue for other workers.

        Returns:
            self for method chaining
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent_tasks = asyncio.Semaphore(max_concurrent)
        return self

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def in_flight(self) -> int:
        return len(self._background_tasks)

    async def start(self) -> WorkerHandle:
        """Start the worker loop and return immediately.

        Returns:
            WorkerHandle for shutdown control
        """
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started")
        try:
            while self._running and not self._shutdown_event.is_set():
                permit_held = False
                try:
                    if self._max_concurrent_tasks is not None:
                        await self._max_concurrent_tasks.acquire()
                        permit_held = True

                    task_id = await self._queue.dequeue(timeout=self._poll_interval)
                    if task_id is None:
                        continue
                    if self._shutdown_event.is_set():
                        # Leave the task for another worker
                        await self._queue.enqueue(task_id)
                        break

                    task = asyncio.create_task(self._execute_task(task_id, permit_held))
                    permit_held = False  # Ownership moved to the task
                    self._background_tasks.add(task)
                    task.add_done_callback(self._background_tasks.discard)
                    logger.debug(f"Worker {self._worker_id} picked up task {task_id}")

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Worker {self._worker_id} dequeue error: {e}")
                    await asyncio.sleep(0.1)
                finally:
                    if permit_held and self._max_concurrent_tasks is not None:
                        self._max_concurrent_tasks.release()
        finally:
            logger.info(f"Worker {self._worker_id} stopped")

    async def _execute_task(self, task_id: str, holds_permit: bool) -> None:
        try:
            result = await self._orchestrator.handle(task_id)
            logger.debug(
                f"Worker {self._worker_id}: task {task_id} -> {result.status} ({result.action})"
            )
        except Exception as e:
            logger.error(f"Worker {self._worker_id} unexpected error: task_id={task_id}, error={e}")
        finally:
            self.handled += 1
            if holds_permit and self._max_concurrent_tasks is not None:
                self._max_concurrent_tasks.release()

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker, waiting for in-flight tasks."""
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._background_tasks:
            logger.info(
                f"Worker {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "in-flight tasks to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)


class WorkerHandle:
    """Handle for controlling a running worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for its loop to exit."""
        await self._worker.shutdown()
        await self._task
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Cancel the worker loop without waiting for in-flight tasks."""
        self._task.cancel()
