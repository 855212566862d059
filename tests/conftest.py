"""
Pytest configuration and fixtures for pyconductor tests.

Provides storage backends, a controllable clock, reusable workflow
templates with scriptable handlers, and a fully wired orchestration
harness.
"""

import os
import shutil
import tempfile
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from hypothesis import strategies as st

from pyconductor import (
    EventPublisher,
    HandlerRegistry,
    InMemoryTaskQueue,
    InMemoryWorkflowStore,
    Orchestrator,
    OrchestratorConfig,
    RedisWorkflowStore,
    ResourcePool,
    SqliteWorkflowStore,
    StepContext,
    StepTemplate,
    TaskInitializer,
    TaskTemplate,
)
from pyconductor.models import Edge, Step, StepState, Task, TaskSnapshot, TaskState

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# ==============================================================================
# Clock
# ==============================================================================


class FakeClock:
    """Deterministic clock: callable like utc_now, advanced by hand."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ==============================================================================
# Storage
# ==============================================================================


@pytest.fixture
async def memory_store() -> AsyncGenerator[InMemoryWorkflowStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryWorkflowStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteWorkflowStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteWorkflowStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteWorkflowStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteWorkflowStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


REDIS_URL = os.getenv("PYCONDUCTOR_REDIS_URL")


@pytest.fixture(params=["memory", "sqlite", pytest.param("redis", marks=pytest.mark.redis)])
async def store(request):
    """Every test using this fixture runs against each backend.

    Redis runs only when PYCONDUCTOR_REDIS_URL points at a live server.
    """
    if request.param == "memory":
        backend = InMemoryWorkflowStore()
        yield backend
        await backend.reset()
    elif request.param == "sqlite":
        backend = SqliteWorkflowStore(":memory:")
        await backend.connect()
        yield backend
        await backend.close()
    else:
        if not REDIS_URL:
            pytest.skip("PYCONDUCTOR_REDIS_URL not set")
        backend = RedisWorkflowStore(REDIS_URL)
        await backend.connect()
        try:
            await backend.reset()
        except Exception as e:
            await backend.close()
            pytest.skip(f"Redis not reachable: {e}")
        yield backend
        await backend.reset()
        await backend.close()


# ==============================================================================
# Scriptable handlers and templates
# ==============================================================================


class Script:
    """
    Records handler calls and replays scripted behaviour per step name.

    Each scripted entry is consumed on one call: an exception instance is
    raised, anything else is returned. Unscripted calls return
    {"step": name}.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._plans: dict[str, list[Any]] = defaultdict(list)

    def plan(self, step_name: str, *outcomes: Any) -> None:
        self._plans[step_name].extend(outcomes)

    def count(self, step_name: str) -> int:
        return self.calls.count(step_name)

    def handler_for(self, step_name: str) -> Callable[[StepContext], Any]:
        async def handler(ctx: StepContext) -> Any:
            self.calls.append(step_name)
            plan = self._plans[step_name]
            if plan:
                outcome = plan.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
            return {"step": step_name}

        handler.__name__ = step_name
        return handler


LINEAR = TaskTemplate(
    "linear",
    [
        StepTemplate("step_1"),
        StepTemplate("step_2", depends_on=("step_1",)),
        StepTemplate("step_3", depends_on=("step_2",)),
    ],
)

DIAMOND = TaskTemplate(
    "diamond",
    [
        StepTemplate("step_1"),
        StepTemplate("step_2", depends_on=("step_1",)),
        StepTemplate("step_3", depends_on=("step_1",)),
        StepTemplate("step_4", depends_on=("step_2", "step_3")),
    ],
)

SKIPPABLE = TaskTemplate(
    "skippable",
    [
        StepTemplate("fetch"),
        StepTemplate("enrich", depends_on=("fetch",), skippable=True),
        StepTemplate("store", depends_on=("enrich",)),
    ],
)


@pytest.fixture
def script() -> Script:
    return Script()


@pytest.fixture
def registry(script: Script) -> HandlerRegistry:
    """Registry with the linear, diamond and skippable templates."""
    registry = HandlerRegistry()
    for template in (LINEAR, DIAMOND, SKIPPABLE):
        for step in template.steps:
            if not registry.has_handler(step.handler_name):
                registry.register_handler(step.handler_name, script.handler_for(step.name))
        registry.register_template(template)
    return registry


# ==============================================================================
# Orchestration harness
# ==============================================================================


@dataclass
class Harness:
    store: Any
    registry: HandlerRegistry
    queue: InMemoryTaskQueue
    events: EventPublisher
    clock: FakeClock
    pool: ResourcePool
    orchestrator: Orchestrator
    initializer: TaskInitializer
    received: list = field(default_factory=list)

    @property
    def ledger(self):
        return self.orchestrator.ledger

    async def step_states(self, task_id: str) -> dict[str, StepState]:
        return {s.name: s.status for s in await self.store.get_steps(task_id)}

    async def task_state(self, task_id: str) -> TaskState:
        task = await self.store.get_task(task_id)
        return task.status

    async def step(self, task_id: str, name: str) -> Step:
        steps = await self.store.get_steps(task_id)
        return next(s for s in steps if s.name == name)


@pytest.fixture
async def harness(store, registry, clock) -> AsyncGenerator[Harness, None]:
    queue = InMemoryTaskQueue()
    events = EventPublisher()
    pool = ResourcePool(20)
    orchestrator = Orchestrator.build(
        store, registry, queue, pool, OrchestratorConfig(), events, clock=clock
    )
    initializer = TaskInitializer(registry, orchestrator.ledger, queue)
    h = Harness(store, registry, queue, events, clock, pool, orchestrator, initializer)
    events.subscribe("*", h.received.append)
    yield h
    await orchestrator.reenqueuer.shutdown()
    await events.drain()


# ==============================================================================
# Pure snapshots (no storage)
# ==============================================================================


def build_snapshot(
    names: Iterable[str],
    edges: Iterable[tuple[str, str]] = (),
    task_status: TaskState = TaskState.IN_PROGRESS,
    last_failures: dict[str, datetime] | None = None,
    **overrides: dict[str, Any],
) -> TaskSnapshot:
    """
    Build a TaskSnapshot in memory.

    ``overrides`` maps a step name to Step field overrides, e.g.
    build_snapshot(["a", "b"], [("a", "b")], a={"status": StepState.COMPLETE}).
    ``last_failures`` is keyed by step name.
    """
    task = Task(task_id="task-1", name="test", status=task_status, requested_at=T0)
    steps = []
    for position, name in enumerate(names):
        fields = {
            "step_id": f"id-{name}",
            "task_id": task.task_id,
            "name": name,
            "handler_name": name,
            "position": position,
        }
        fields.update(overrides.get(name, {}))
        steps.append(Step(**fields))
    edge_objs = tuple(Edge(task.task_id, f"id-{p}", f"id-{c}") for p, c in edges)
    failures = {f"id-{n}": at for n, at in (last_failures or {}).items()}
    return TaskSnapshot(task, tuple(steps), edge_objs, failures, loaded_at=T0)


@pytest.fixture
def snapshot_factory():
    return build_snapshot


# Hypothesis strategies for property-based testing


@st.composite
def dag_strategy(draw, max_nodes: int = 8):
    """Random DAG as (node names, edges); edges only go from lower to higher index."""
    count = draw(st.integers(min_value=1, max_value=max_nodes))
    names = [f"n{i}" for i in range(count)]
    edges = []
    for child in range(1, count):
        parents = draw(st.sets(st.integers(min_value=0, max_value=child - 1), max_size=3))
        edges.extend((names[p], names[child]) for p in sorted(parents))
    return names, edges


pytest.dag_strategy = dag_strategy
