"""In-memory storage implementation for pyconductor.

Design Pattern: Adapter Pattern
InMemoryWorkflowStore adapts plain dictionaries to the WorkflowStore
interface. A single asyncio.Lock serialises writers, which gives the
same atomicity the SQL backends get from transactions.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from pyconductor.models import (
    SORT_KEY_STEP,
    Edge,
    EntityKind,
    Step,
    StepState,
    Task,
    TaskState,
    Transition,
)
from pyconductor.storage.base import (
    DuplicateTaskError,
    StaleTransitionError,
    StorageError,
    WorkflowStore,
)


class InMemoryWorkflowStore(WorkflowStore):
    """In-memory storage for tests and single-process use.

    Can be substituted for SqliteWorkflowStore without changing client code.

    Usage:
        store = InMemoryWorkflowStore()
        await store.create_task(task, steps, edges)
    """

    def __init__(self):
        # Storage: {task_id: Task}; status is derived from transitions on read
        self._tasks: dict[str, Task] = {}

        # Storage: {step_id: Step}
        self._steps: dict[str, Step] = {}

        # Index: {task_id: [step_id, ...]} in position order
        self._task_steps: dict[str, list[str]] = {}

        self._edges: dict[str, list[Edge]] = {}

        # Index: {identity_hash: task_id}
        self._identity: dict[str, str] = {}

        # Ledger: {(kind, entity_id): [Transition, ...]} ordered by sort_key
        self._transitions: dict[tuple[EntityKind, str], list[Transition]] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryWorkflowStore"

    # ========================================================================
    # Task graph
    # ========================================================================

    async def create_task(self, task: Task, steps: Sequence[Step], edges: Sequence[Edge]) -> Task:
        async with self._lock:
            if task.task_id in self._tasks:
                raise StorageError(f"Task already exists: {task.task_id}")
            if task.identity_hash and task.identity_hash in self._identity:
                raise DuplicateTaskError(task.identity_hash, self._identity[task.identity_hash])
            step_ids = {s.step_id for s in steps}
            for edge in edges:
                if edge.from_step_id not in step_ids or edge.to_step_id not in step_ids:
                    raise StorageError(
                        f"Edge {edge.from_step_id} -> {edge.to_step_id} "
                        f"references a step outside task {task.task_id}"
                    )

            stored = replace(task, status=TaskState.PENDING)
            self._tasks[task.task_id] = stored
            ordered = sorted(steps, key=lambda s: (s.position, s.name))
            for step in ordered:
                self._steps[step.step_id] = replace(step, status=StepState.PENDING)
            self._task_steps[task.task_id] = [s.step_id for s in ordered]
            self._edges[task.task_id] = list(edges)
            if task.identity_hash:
                self._identity[task.identity_hash] = task.task_id
            return stored

    async def get_task(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            state = self._current(EntityKind.TASK, task_id)
            return replace(task, status=TaskState(state or "pending"))

    async def get_steps(self, task_id: str) -> list[Step]:
        async with self._lock:
            return [self._with_status(self._steps[sid]) for sid in self._task_steps.get(task_id, [])]

    async def get_step(self, step_id: str) -> Step | None:
        async with self._lock:
            step = self._steps.get(step_id)
            return self._with_status(step) if step is not None else None

    async def get_edges(self, task_id: str) -> list[Edge]:
        async with self._lock:
            return list(self._edges.get(task_id, []))

    async def save_step(self, step: Step) -> Step:
        async with self._lock:
            existing = self._steps.get(step.step_id)
            if existing is None:
                raise StorageError(f"Step not found: {step.step_id}")
            updated = replace(
                existing,
                attempts=step.attempts,
                retryable=step.retryable,
                last_attempted_at=step.last_attempted_at,
                backoff_request_seconds=step.backoff_request_seconds,
                processed=step.processed,
                processed_at=step.processed_at,
                results=step.results,
            )
            self._steps[step.step_id] = updated
            return self._with_status(updated)

    # ========================================================================
    # Transitions
    # ========================================================================

    async def append_transition(
        self,
        entity_kind: EntityKind,
        entity_id: str,
        expected_from: str | None,
        to_state: str,
        created_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> Transition:
        async with self._lock:
            if entity_kind is EntityKind.TASK and entity_id not in self._tasks:
                raise StorageError(f"Task not found: {entity_id}")
            if entity_kind is EntityKind.STEP and entity_id not in self._steps:
                raise StorageError(f"Step not found: {entity_id}")

            key = (entity_kind, entity_id)
            history = self._transitions.setdefault(key, [])
            current = history[-1].to_state if history else None
            if current != expected_from:
                raise StaleTransitionError(entity_kind, entity_id, expected_from, current)

            # Flip the previous most-recent row off, then append the new one
            if history:
                history[-1] = replace(history[-1], most_recent=False)
            transition = Transition(
                transition_id=str(uuid7()),
                entity_kind=entity_kind,
                entity_id=entity_id,
                from_state=current,
                to_state=to_state,
                sort_key=(history[-1].sort_key + SORT_KEY_STEP) if history else SORT_KEY_STEP,
                most_recent=True,
                created_at=created_at,
                metadata=dict(metadata or {}),
            )
            history.append(transition)
            return transition

    async def get_transitions(self, entity_kind: EntityKind, entity_id: str) -> list[Transition]:
        async with self._lock:
            return list(self._transitions.get((entity_kind, entity_id), []))

    async def get_current_state(self, entity_kind: EntityKind, entity_id: str) -> str | None:
        async with self._lock:
            return self._current(entity_kind, entity_id)

    async def last_failure_times(self, task_id: str) -> dict[str, datetime]:
        async with self._lock:
            failures: dict[str, datetime] = {}
            for step_id in self._task_steps.get(task_id, []):
                history = self._transitions.get((EntityKind.STEP, step_id), [])
                for transition in reversed(history):
                    if transition.to_state == StepState.ERROR.value:
                        failures[step_id] = transition.created_at
                        break
            return failures

    # ========================================================================
    # Claims
    # ========================================================================

    async def claim_step(self, step_id: str) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None:
                raise StorageError(f"Step not found: {step_id}")
            if step.in_process:
                return False
            self._steps[step_id] = replace(step, in_process=True)
            return True

    async def release_step(self, step_id: str) -> None:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None:
                raise StorageError(f"Step not found: {step_id}")
            self._steps[step_id] = replace(step, in_process=False)

    async def reset(self) -> None:
        """Clear all data (for testing)."""
        async with self._lock:
            self._tasks.clear()
            self._steps.clear()
            self._task_steps.clear()
            self._edges.clear()
            self._identity.clear()
            self._transitions.clear()

    # ========================================================================
    # Helpers (caller holds the lock)
    # ========================================================================

    def _current(self, entity_kind: EntityKind, entity_id: str) -> str | None:
        history = self._transitions.get((entity_kind, entity_id))
        return history[-1].to_state if history else None

    def _with_status(self, step: Step) -> Step:
        state = self._current(EntityKind.STEP, step.step_id)
        return replace(step, status=StepState(state or "pending"))
