"""
WorkflowStore - Abstract interface for persistence backends.

Design Pattern: Adapter Pattern
WorkflowStore defines the target interface that all storage adapters
implement. SQLite, Redis and in-memory backends adapt to it.

Design Principle: Dependency Inversion (SOLID)
The ledger, readiness engine, executor and orchestrator depend on this
abstraction, never on a concrete backend, so tests run against
InMemoryWorkflowStore and production against SQLite or Redis unchanged.

Atomicity guarantees every backend must provide:
- create_task writes the task, its steps and edges as one unit
- append_transition flips the previous most-recent row off and inserts the
  new most-recent row as one unit, and only if the entity's current state
  still equals ``expected_from`` (compare-and-swap)
- claim_step sets in_process only if it was not already set
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pyconductor.core.errors import ConductorError
from pyconductor.models import (
    Edge,
    EntityKind,
    Step,
    StepState,
    Task,
    TaskSnapshot,
    Transition,
    utc_now,
)

__all__ = [
    "WorkflowStore",
    "StorageError",
    "TaskNotFoundError",
    "DuplicateTaskError",
    "StaleTransitionError",
]


class StorageError(ConductorError):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception.
    """


class TaskNotFoundError(StorageError):
    """No task exists with the requested id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class DuplicateTaskError(StorageError):
    """A task with the same identity hash already exists."""

    def __init__(self, identity_hash: str, existing_task_id: str | None = None):
        self.identity_hash = identity_hash
        self.existing_task_id = existing_task_id
        super().__init__(
            f"Task with identity hash {identity_hash} already exists"
            + (f" ({existing_task_id})" if existing_task_id else "")
        )


class StaleTransitionError(StorageError):
    """The entity's current state changed between read and append."""

    def __init__(
        self, entity_kind: EntityKind, entity_id: str, expected: str | None, actual: str | None
    ):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale {entity_kind} transition for {entity_id}: "
            f"expected current state {expected}, found {actual}"
        )


class WorkflowStore(ABC):
    """
    Abstract storage interface for workflow orchestration.

    Each method has one clear purpose. Backends return frozen model
    instances; ``status`` fields on returned tasks and steps always
    reflect the entity's most-recent transition.
    """

    async def connect(self) -> None:
        """Open connections / create schema. No-op for in-process backends."""

    async def close(self) -> None:
        """Release connections. No-op for in-process backends."""

    # ========================================================================
    # Task graph
    # ========================================================================

    @abstractmethod
    async def create_task(self, task: Task, steps: Sequence[Step], edges: Sequence[Edge]) -> Task:
        """
        Persist a new task with its steps and dependency edges atomically.

        No transitions are written; every entity starts in its implicit
        initial state (pending).

        Args:
            task: Task to create (status is ignored)
            steps: Steps belonging to the task
            edges: Parent → child edges between those steps

        Returns:
            The stored task

        Raises:
            DuplicateTaskError: If a task with the same identity_hash exists
            StorageError: If the write fails
        """

    @abstractmethod
    async def get_task(self, task_id: str) -> Task | None:
        """
        Fetch a task with its current status.

        Returns:
            The task, or None if it does not exist
        """

    @abstractmethod
    async def get_steps(self, task_id: str) -> list[Step]:
        """
        Fetch all steps of a task ordered by position.

        Returns:
            Steps with current status; empty if the task has none
        """

    @abstractmethod
    async def get_step(self, step_id: str) -> Step | None:
        """Fetch a single step with its current status, or None."""

    @abstractmethod
    async def get_edges(self, task_id: str) -> list[Edge]:
        """Fetch all dependency edges of a task."""

    @abstractmethod
    async def save_step(self, step: Step) -> Step:
        """
        Persist a step's execution fields.

        Writes attempts, retryable, last_attempted_at, backoff_request_seconds,
        processed, processed_at and results. Status and in_process are not
        touched: they change only through append_transition and
        claim_step/release_step.

        Raises:
            StorageError: If the step does not exist
        """

    # ========================================================================
    # Transitions (append-only ledger)
    # ========================================================================

    @abstractmethod
    async def append_transition(
        self,
        entity_kind: EntityKind,
        entity_id: str,
        expected_from: str | None,
        to_state: str,
        created_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> Transition:
        """
        Append a transition and make it the entity's only most-recent row.

        Args:
            entity_kind: TASK or STEP
            entity_id: task_id or step_id
            expected_from: State the caller validated against (None = no history)
            to_state: New state value
            created_at: Timestamp of the transition
            metadata: Optional free-form context

        Returns:
            The stored transition (most_recent=True)

        Raises:
            StaleTransitionError: If the current state is no longer expected_from
            StorageError: If the write fails
        """

    @abstractmethod
    async def get_transitions(self, entity_kind: EntityKind, entity_id: str) -> list[Transition]:
        """All transitions of an entity ordered by sort_key."""

    @abstractmethod
    async def get_current_state(self, entity_kind: EntityKind, entity_id: str) -> str | None:
        """to_state of the most-recent transition, or None if there is none."""

    @abstractmethod
    async def last_failure_times(self, task_id: str) -> dict[str, datetime]:
        """
        Most recent transition-into-error timestamp per step of a task.

        Steps that never failed are absent from the mapping.
        """

    # ========================================================================
    # Claims
    # ========================================================================

    @abstractmethod
    async def claim_step(self, step_id: str) -> bool:
        """
        Atomically set in_process if it is not already set.

        Returns:
            True if this caller now owns the step, False otherwise
        """

    @abstractmethod
    async def release_step(self, step_id: str) -> None:
        """Clear in_process."""

    # ========================================================================
    # Composite reads
    # ========================================================================

    async def load_snapshot(self, task_id: str, now: datetime | None = None) -> TaskSnapshot:
        """
        Load an immutable snapshot of a task for one discovery pass.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        steps = await self.get_steps(task_id)
        edges = await self.get_edges(task_id)
        failures = await self.last_failure_times(task_id)
        return TaskSnapshot(
            task=task,
            steps=tuple(steps),
            edges=tuple(edges),
            last_failures=failures,
            loaded_at=now or utc_now(),
        )

    async def steps_in_state(self, task_id: str, state: StepState) -> list[Step]:
        return [s for s in await self.get_steps(task_id) if s.status is state]

    async def reset(self) -> None:
        """Delete all data. Intended for tests."""
        raise NotImplementedError(f"{type(self).__name__} does not support reset()")
