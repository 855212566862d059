"""
Task, step and edge value objects plus the immutable pass-loop snapshot.

Design: Value Object pattern
All records are frozen dataclasses. Updates produce new instances via
``evolve()`` so a snapshot handed to the readiness engine can never be
mutated behind its back; every pass reloads a fresh snapshot instead.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import cached_property
from typing import Any

from pyconductor.core.graph import WorkflowGraph
from pyconductor.models.status import StepState, TaskState


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class Task:
    """One workflow instance.

    The status field is populated by the store from the task's most-recent
    transition; it is never written directly.
    """

    task_id: str
    """Unique task identifier (UUIDv7 string)."""

    name: str
    """Name of the registered TaskTemplate this task instantiates."""

    context: Mapping[str, Any] = field(default_factory=dict)
    """Opaque caller-supplied payload, passed to every step handler."""

    status: TaskState = TaskState.PENDING
    """Current state (to_state of the most-recent transition)."""

    identity_hash: str = ""
    """Deduplication fingerprint of name, context, bypass steps and request minute."""

    requested_at: datetime = field(default_factory=utc_now)
    """When the task was requested."""

    bypass_steps: tuple[str, ...] = ()
    """Names of skippable steps to resolve without running."""

    version: str = "0.1.0"
    """Template version the task was created from."""

    def evolve(self, **changes: Any) -> Task:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class Step:
    """One DAG node belonging to exactly one task.

    Invariants:
        - attempts only increases
        - processed becomes True only on terminal success
    """

    step_id: str
    """Unique step identifier (UUIDv7 string)."""

    task_id: str
    """Owning task."""

    name: str
    """Step name, unique within its task."""

    handler_name: str
    """Registry key of the StepHandler that runs this step."""

    position: int = 0
    """Declaration order within the template (stable ordering key)."""

    status: StepState = StepState.PENDING
    """Current state (to_state of the most-recent transition)."""

    retryable: bool = True
    retry_limit: int = 3
    attempts: int = 0

    last_attempted_at: datetime | None = None
    """When the most recent attempt finished."""

    backoff_request_seconds: float | None = None
    """Explicit backoff override, e.g. from a Retry-After response."""

    processed: bool = False
    processed_at: datetime | None = None

    in_process: bool = False
    """Claimed by an executor; set and cleared through the store's atomic claim."""

    skippable: bool = False
    results: Any = None

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError(f"retry_limit must be >= 0, got {self.retry_limit}")
        if self.attempts < 0:
            raise ValueError(f"attempts must be >= 0, got {self.attempts}")

    def evolve(self, **changes: Any) -> Step:
        """Return a copy with the given fields replaced.

        Raises:
            ValueError: If the change would decrease attempts
        """
        if "attempts" in changes and changes["attempts"] < self.attempts:
            raise ValueError(
                f"attempts may only increase (step {self.step_id}: "
                f"{self.attempts} -> {changes['attempts']})"
            )
        return replace(self, **changes)


@dataclass(frozen=True)
class Edge:
    """Directed parent → child dependency between two steps of one task."""

    task_id: str
    from_step_id: str
    to_step_id: str
    name: str = "provides"


@dataclass(frozen=True)
class TaskRequest:
    """Caller's request to start a new task from a registered template."""

    name: str
    context: Mapping[str, Any] = field(default_factory=dict)
    bypass_steps: tuple[str, ...] = ()
    requested_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TaskSnapshot:
    """
    Immutable view of one task's steps, edges and failure history.

    Loaded fresh by the orchestrator before every discovery so readiness is
    always computed from current persisted state.
    """

    task: Task
    steps: tuple[Step, ...]
    edges: tuple[Edge, ...]
    last_failures: Mapping[str, datetime] = field(default_factory=dict)
    """step_id → created_at of the step's most recent transition into error."""

    loaded_at: datetime = field(default_factory=utc_now)

    @cached_property
    def graph(self) -> WorkflowGraph:
        """Dependency graph over step ids (validated acyclic)."""
        return WorkflowGraph(
            [s.step_id for s in self.steps],
            [(e.from_step_id, e.to_step_id) for e in self.edges],
        )

    @cached_property
    def _by_id(self) -> dict[str, Step]:
        return {s.step_id: s for s in self.steps}

    @property
    def task_id(self) -> str:
        return self.task.task_id

    def step(self, step_id: str) -> Step:
        """Look up a step by id.

        Raises:
            KeyError: If the step does not belong to this task
        """
        return self._by_id[step_id]

    def step_by_name(self, name: str) -> Step | None:
        return next((s for s in self.steps if s.name == name), None)

    def parents_of(self, step_id: str) -> list[Step]:
        return [self._by_id[p] for p in sorted(self.graph.parents(step_id), key=self._order)]

    def children_of(self, step_id: str) -> list[Step]:
        return [self._by_id[c] for c in sorted(self.graph.children(step_id), key=self._order)]

    def _order(self, step_id: str) -> tuple[int, str]:
        step = self._by_id[step_id]
        return (step.position, step.name)


__all__ = [
    "Task",
    "Step",
    "Edge",
    "TaskRequest",
    "TaskSnapshot",
    "utc_now",
]
