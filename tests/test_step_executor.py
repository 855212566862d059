"""
Tests for StepExecutor: claim, run, record.

Covers failure isolation inside a batch, failure classification,
timeouts, claim exclusivity and the concurrency bound.
"""

import asyncio

import pytest

from pyconductor import (
    ExecutionConfig,
    HandlerRegistry,
    PermanentError,
    RetryableError,
    StepExecutor,
    StepState,
    StepTemplate,
    TaskRequest,
    TaskTemplate,
    UnknownHandlerError,
)
from pyconductor.config import BackoffConfig
from pyconductor.executor import BackoffCalculator
from pyconductor.models import EntityKind

PARALLEL = TaskTemplate("parallel", [StepTemplate(f"p{i}") for i in range(5)])


@pytest.fixture
def parallel(harness, script):
    for step in PARALLEL.steps:
        harness.registry.register_handler(step.name, script.handler_for(step.name))
    harness.registry.register_template(PARALLEL)
    return harness


def executor_for(harness, **config) -> StepExecutor:
    return StepExecutor(
        harness.ledger,
        harness.registry,
        ExecutionConfig(**config),
        BackoffCalculator(BackoffConfig(jitter_enabled=False)),
        harness.clock,
    )


async def start(harness, name="parallel"):
    task = await harness.initializer.initialize_task(TaskRequest(name))
    snapshot = await harness.store.load_snapshot(task.task_id, harness.clock())
    return task, snapshot


# ==============================================================================
# TEST 1: Success path
# ==============================================================================


@pytest.mark.asyncio
async def test_success_records_results_and_completes(harness):
    task, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")

    [outcome] = await executor_for(harness).execute_steps(snapshot, [step])

    assert outcome.success
    assert outcome.attempts == 1
    assert outcome.result == {"step": "step_1"}
    stored = await harness.store.get_step(step.step_id)
    assert stored.status is StepState.COMPLETE
    assert stored.processed
    assert stored.processed_at == harness.clock.now
    assert stored.last_attempted_at == harness.clock.now
    assert stored.results == {"step": "step_1"}
    assert not stored.in_process
    history = await harness.ledger.history(EntityKind.STEP, step.step_id)
    assert [t.to_state for t in history] == ["pending", "in_progress", "complete"]


@pytest.mark.asyncio
async def test_empty_batch(harness):
    _, snapshot = await start(harness, "linear")

    assert await executor_for(harness).execute_steps(snapshot, []) == []


# ==============================================================================
# TEST 2: Failure isolation and classification
# ==============================================================================


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_siblings(parallel, script):
    script.plan("p1", RuntimeError("boom"))
    script.plan("p3", PermanentError("declined"))
    _, snapshot = await start(parallel)

    outcomes = await executor_for(parallel).execute_steps(snapshot, list(snapshot.steps))

    states = {o.name: o.state for o in outcomes}
    assert states == {
        "p0": StepState.COMPLETE,
        "p1": StepState.ERROR,
        "p2": StepState.COMPLETE,
        "p3": StepState.ERROR,
        "p4": StepState.COMPLETE,
    }
    assert sorted(script.calls) == ["p0", "p1", "p2", "p3", "p4"]


@pytest.mark.asyncio
async def test_unclassified_failure_is_retryable_with_default_backoff(parallel, script):
    script.plan("p0", RuntimeError("boom"))
    _, snapshot = await start(parallel)
    step = snapshot.step_by_name("p0")

    [outcome] = await executor_for(parallel).execute_steps(snapshot, [step])

    assert outcome.state is StepState.ERROR
    assert outcome.retryable
    assert outcome.backoff_request_seconds is None
    assert outcome.error_class == "RuntimeError"
    stored = await parallel.store.get_step(step.step_id)
    assert stored.attempts == 1
    assert not stored.processed
    assert stored.results["error"] == "boom"
    assert stored.results["error_class"] == "RuntimeError"
    assert "RuntimeError: boom" in stored.results["backtrace"]


@pytest.mark.asyncio
async def test_permanent_error_marks_step_non_retryable(parallel, script):
    script.plan("p0", PermanentError("card declined"))
    _, snapshot = await start(parallel)
    step = snapshot.step_by_name("p0")

    [outcome] = await executor_for(parallel).execute_steps(snapshot, [step])

    assert not outcome.retryable
    assert not (await parallel.store.get_step(step.step_id)).retryable


@pytest.mark.asyncio
async def test_retryable_error_stores_retry_after(parallel, script):
    script.plan("p0", RetryableError("rate limited", retry_after="7"))
    script.plan("p1", RetryableError("busy"))
    _, snapshot = await start(parallel)
    steps = [snapshot.step_by_name("p0"), snapshot.step_by_name("p1")]

    outcomes = await executor_for(parallel).execute_steps(snapshot, steps)

    assert [o.backoff_request_seconds for o in outcomes] == [7.0, 1.0]
    stored = await parallel.store.get_step(steps[0].step_id)
    assert stored.backoff_request_seconds == 7.0


@pytest.mark.asyncio
async def test_unusable_retry_after_falls_back_to_progression(parallel, script):
    script.plan("p0", RetryableError("weird", retry_after="later please"))
    _, snapshot = await start(parallel)

    [outcome] = await executor_for(parallel).execute_steps(
        snapshot, [snapshot.step_by_name("p0")]
    )

    assert outcome.backoff_request_seconds == 1.0


@pytest.mark.asyncio
async def test_timeout_recorded_as_retryable_failure(harness):
    async def slow(ctx):
        await asyncio.sleep(5)

    harness.registry.register_handler("slow", slow)
    harness.registry.register_template(TaskTemplate("slow_task", [StepTemplate("slow")]))
    _, snapshot = await start(harness, "slow_task")

    executor = executor_for(
        harness,
        batch_timeout_base_seconds=0.05,
        batch_timeout_per_step_seconds=0.0,
        max_batch_timeout_seconds=0.05,
    )
    [outcome] = await executor.execute_steps(snapshot, list(snapshot.steps))

    assert outcome.state is StepState.ERROR
    assert outcome.error_class == "TimeoutError"
    assert outcome.retryable
    assert not (await harness.store.get_step(outcome.step_id)).in_process


# ==============================================================================
# TEST 3: Claims and state re-checks
# ==============================================================================


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_claimed_step_is_skipped(harness, script):
    _, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")
    assert await harness.store.claim_step(step.step_id)

    [outcome] = await executor_for(harness).execute_steps(snapshot, [step])

    assert outcome.skipped
    assert outcome.state is None
    assert script.calls == []
    # the other owner still holds the claim
    assert (await harness.store.get_step(step.step_id)).in_process


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_concurrent_executors_run_step_once(harness, script):
    _, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")

    results = await asyncio.gather(
        executor_for(harness).execute_steps(snapshot, [step]),
        executor_for(harness).execute_steps(snapshot, [step]),
    )

    outcomes = [batch[0] for batch in results]
    assert script.count("step_1") == 1
    assert sum(1 for o in outcomes if o.success) == 1
    assert sum(1 for o in outcomes if o.skipped) == 1


@pytest.mark.asyncio
async def test_stale_snapshot_step_already_complete_is_skipped(harness, script):
    _, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")
    executor = executor_for(harness)

    await executor.execute_steps(snapshot, [step])
    [outcome] = await executor.execute_steps(snapshot, [step])

    assert outcome.skipped
    assert script.count("step_1") == 1


@pytest.mark.asyncio
async def test_error_step_walks_back_through_pending(harness, script):
    script.plan("step_1", RuntimeError("first attempt fails"))
    task, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")
    executor = executor_for(harness)

    await executor.execute_steps(snapshot, [step])
    retry_snapshot = await harness.store.load_snapshot(task.task_id, harness.clock())
    [outcome] = await executor.execute_steps(retry_snapshot, [retry_snapshot.step(step.step_id)])

    assert outcome.success
    assert outcome.attempts == 2
    history = await harness.ledger.history(EntityKind.STEP, step.step_id)
    assert [t.to_state for t in history] == [
        "pending",
        "in_progress",
        "error",
        "pending",
        "in_progress",
        "complete",
    ]
    stored = await harness.store.get_step(step.step_id)
    assert stored.backoff_request_seconds is None


@pytest.mark.asyncio
async def test_unknown_handler_raises_before_claiming(harness):
    _, snapshot = await start(harness, "linear")
    step = snapshot.step_by_name("step_1")
    executor = StepExecutor(harness.ledger, HandlerRegistry(), clock=harness.clock)

    with pytest.raises(UnknownHandlerError):
        await executor.execute_steps(snapshot, [step])

    stored = await harness.store.get_step(step.step_id)
    assert not stored.in_process
    assert stored.status is StepState.PENDING
    assert stored.attempts == 0


# ==============================================================================
# TEST 4: Concurrency bound
# ==============================================================================


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_batch_respects_concurrency(harness):
    in_flight = 0
    peak = 0

    async def tracked(ctx):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return ctx.step.name

    for step in PARALLEL.steps:
        harness.registry.register_handler(step.name, tracked)
    harness.registry.register_template(PARALLEL)
    _, snapshot = await start(harness)

    outcomes = await executor_for(harness).execute_steps(snapshot, list(snapshot.steps), 2)

    assert 1 <= peak <= 2
    assert all(o.success for o in outcomes)
    assert [o.name for o in outcomes] == ["p0", "p1", "p2", "p3", "p4"]
