"""
Tests for Worker (queue consumer) and TaskReenqueuer.
"""

import asyncio
import logging

import pytest

from pyconductor import (
    EventPublisher,
    InMemoryTaskQueue,
    Orchestrator,
    OrchestratorConfig,
    StepTemplate,
    TaskReenqueuer,
    TaskRequest,
    TaskState,
    TaskTemplate,
    Worker,
    WorkflowEvents,
)
from pyconductor.executor import ReenqueueReason


async def wait_for_state(h, task_id, state, timeout=5.0):
    async def poll():
        while await h.task_state(task_id) is not state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class FailingQueue:
    async def enqueue(self, task_id: str) -> None:
        raise ConnectionError("broker down")


# ==============================================================================
# TEST 1: TaskReenqueuer
# ==============================================================================


@pytest.mark.asyncio
async def test_reenqueue_now():
    queue = InMemoryTaskQueue()
    events = EventPublisher()
    received = []
    events.subscribe(WorkflowEvents.TASK_REENQUEUE_REQUESTED, received.append)

    assert await TaskReenqueuer(queue, events).reenqueue("t1", ReenqueueReason.RETRY_BACKOFF)
    await events.drain()

    assert queue.enqueued == ["t1"]
    assert received[0].payload == {"task_id": "t1", "reason": "retry_backoff", "delay_seconds": 0.0}


@pytest.mark.asyncio
async def test_reenqueue_failure_logged_and_reported(caplog):
    reenqueuer = TaskReenqueuer(FailingQueue())

    with caplog.at_level(logging.ERROR, logger="pyconductor.executor.reenqueue"):
        accepted = await reenqueuer.reenqueue("t1")

    assert accepted is False
    assert "broker down" in caplog.text


@pytest.mark.asyncio
async def test_zero_delay_is_immediate():
    queue = InMemoryTaskQueue()
    reenqueuer = TaskReenqueuer(queue)

    await reenqueuer.reenqueue_delayed("t1", 0)

    assert queue.enqueued == ["t1"]
    assert reenqueuer.pending_count == 0


@pytest.mark.asyncio
async def test_delayed_reenqueue_delivered_later():
    queue = InMemoryTaskQueue()
    reenqueuer = TaskReenqueuer(queue)

    await reenqueuer.reenqueue_delayed("t1", 0.05)

    assert queue.enqueued == []
    assert reenqueuer.pending_count == 1
    assert await queue.dequeue(timeout=2.0) == "t1"
    await asyncio.sleep(0)
    assert reenqueuer.pending_count == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_reenqueues():
    queue = InMemoryTaskQueue()
    reenqueuer = TaskReenqueuer(queue)
    await reenqueuer.reenqueue_delayed("t1", 60)
    await reenqueuer.reenqueue_delayed("t2", 60)

    await reenqueuer.shutdown()

    assert reenqueuer.pending_count == 0
    assert queue.enqueued == []


@pytest.mark.asyncio
async def test_queue_dequeue_timeout():
    queue = InMemoryTaskQueue()

    assert await queue.dequeue(timeout=0.01) is None
    assert queue.empty()
    await queue.enqueue("t1")
    assert queue.qsize() == 1


# ==============================================================================
# TEST 2: Worker
# ==============================================================================


@pytest.mark.asyncio
async def test_worker_runs_enqueued_tasks(harness):
    worker = Worker(harness.queue, harness.orchestrator, "worker-1").with_poll_interval(0.05)
    linear = await harness.initializer.initialize_task(TaskRequest("linear"))
    diamond = await harness.initializer.initialize_task(TaskRequest("diamond"))

    handle = await worker.start()
    try:
        assert handle.is_running()
        assert handle.worker_id() == "worker-1"
        await wait_for_state(harness, linear.task_id, TaskState.COMPLETE)
        await wait_for_state(harness, diamond.task_id, TaskState.COMPLETE)
    finally:
        await handle.shutdown()

    assert not handle.is_running()
    assert worker.handled == 2


@pytest.mark.asyncio
async def test_worker_picks_up_reenqueued_task(harness, script):
    """A task parked by the iteration bound is re-enqueued and finished by the worker."""
    orchestrator = Orchestrator.build(
        harness.store,
        harness.registry,
        harness.queue,
        harness.pool,
        OrchestratorConfig(max_pass_iterations=1),
        harness.events,
        clock=harness.clock,
    )
    worker = Worker(harness.queue, orchestrator, "worker-1").with_poll_interval(0.05)
    task = await harness.initializer.initialize_task(TaskRequest("linear"))

    handle = await worker.start()
    try:
        await wait_for_state(harness, task.task_id, TaskState.COMPLETE)
    finally:
        await handle.shutdown()

    assert script.calls == ["step_1", "step_2", "step_3"]
    assert worker.handled == 3


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_worker_limits_concurrent_tasks(harness):
    running = 0
    peak = 0

    async def slow(ctx):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1

    harness.registry.register_handler("slow", slow)
    harness.registry.register_template(TaskTemplate("slow_task", [StepTemplate("slow")]))
    tasks = [
        await harness.initializer.initialize_task(TaskRequest("slow_task", {"n": n}))
        for n in range(4)
    ]

    worker = (
        Worker(harness.queue, harness.orchestrator, "worker-1")
        .with_poll_interval(0.05)
        .with_max_concurrent_tasks(2)
    )
    handle = await worker.start()
    try:
        for task in tasks:
            await wait_for_state(harness, task.task_id, TaskState.COMPLETE)
    finally:
        await handle.shutdown()

    assert 1 <= peak <= 2


@pytest.mark.asyncio
async def test_worker_survives_failing_task(harness, caplog):
    worker = Worker(harness.queue, harness.orchestrator, "worker-1").with_poll_interval(0.05)
    await harness.queue.enqueue("no-such-task")
    task = await harness.initializer.initialize_task(TaskRequest("linear"))

    with caplog.at_level(logging.ERROR, logger="pyconductor.executor.worker"):
        handle = await worker.start()
        try:
            await wait_for_state(harness, task.task_id, TaskState.COMPLETE)
        finally:
            await handle.shutdown()

    assert "no-such-task" in caplog.text
    assert worker.handled == 2


@pytest.mark.asyncio
async def test_abort_cancels_loop(harness):
    handle = await Worker(harness.queue, harness.orchestrator, "w").with_poll_interval(0.05).start()

    handle.abort()
    with pytest.raises(asyncio.CancelledError):
        await handle._task

    assert not handle.is_running()


@pytest.mark.asyncio
async def test_builder_validation(harness):
    worker = Worker(harness.queue, harness.orchestrator, "w")

    with pytest.raises(ValueError):
        worker.with_poll_interval(0)
    with pytest.raises(ValueError):
        worker.with_max_concurrent_tasks(0)
