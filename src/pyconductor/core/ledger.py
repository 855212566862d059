"""
StateLedger - guarded, append-only state transitions for tasks and steps.

Every state change goes through here:
1. Read the entity's current state from the store
2. Validate (current, target) against the entity's guard table
3. Append the transition with compare-and-swap on the current state
4. Publish the lifecycle event (fire-and-forget)

If another writer moved the entity between steps 1 and 3 the store raises
StaleTransitionError; the ledger re-reads and re-validates, so two racing
writers can never both succeed from the same starting state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any, cast

from pyconductor.core.events import EventPublisher
from pyconductor.core.state_machine import (
    STEP_MACHINE,
    TASK_MACHINE,
    StateMachine,
    event_name_for,
)
from pyconductor.models import EntityKind, StepState, TaskState, Transition, utc_now
from pyconductor.storage.base import StaleTransitionError, WorkflowStore

logger = logging.getLogger(__name__)

__all__ = ["StateLedger"]

MAX_CAS_ATTEMPTS = 3


class StateLedger:
    """Guarded transition writer shared by the executor, finalizer and orchestrator.

    Usage:
        ledger = StateLedger(store, events)
        await ledger.transition_task(task_id, TaskState.IN_PROGRESS)
        await ledger.safe_transition_step(step_id, StepState.COMPLETE, task_id=task_id)
    """

    def __init__(
        self,
        store: WorkflowStore,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._events = events
        self._clock = clock

    @property
    def store(self) -> WorkflowStore:
        return self._store

    # ========================================================================
    # Reads
    # ========================================================================

    async def task_state(self, task_id: str) -> TaskState:
        value = await self._store.get_current_state(EntityKind.TASK, task_id)
        return TASK_MACHINE.current(value)

    async def step_state(self, step_id: str) -> StepState:
        value = await self._store.get_current_state(EntityKind.STEP, step_id)
        return STEP_MACHINE.current(value)

    async def history(self, entity_kind: EntityKind, entity_id: str) -> list[Transition]:
        return await self._store.get_transitions(entity_kind, entity_id)

    # ========================================================================
    # Strict transitions
    # ========================================================================

    async def transition_task(
        self, task_id: str, to_state: TaskState, metadata: dict[str, Any] | None = None
    ) -> Transition:
        """
        Move a task to ``to_state``.

        Raises:
            GuardViolation: If the transition is not in the task guard table
        """
        transition = await self._apply(TASK_MACHINE, task_id, to_state, metadata, idempotent=False)
        return cast(Transition, transition)

    async def transition_step(
        self,
        step_id: str,
        to_state: StepState,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> Transition:
        """
        Move a step to ``to_state``.

        Raises:
            GuardViolation: If the transition is not in the step guard table
        """
        transition = await self._apply(
            STEP_MACHINE, step_id, to_state, metadata, idempotent=False, task_id=task_id
        )
        return cast(Transition, transition)

    # ========================================================================
    # Idempotent transitions
    # ========================================================================

    async def safe_transition_task(
        self, task_id: str, to_state: TaskState, metadata: dict[str, Any] | None = None
    ) -> Transition | None:
        """Like transition_task, but returns None if already in ``to_state``."""
        return await self._apply(TASK_MACHINE, task_id, to_state, metadata, idempotent=True)

    async def safe_transition_step(
        self,
        step_id: str,
        to_state: StepState,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> Transition | None:
        """Like transition_step, but returns None if already in ``to_state``."""
        return await self._apply(
            STEP_MACHINE, step_id, to_state, metadata, idempotent=True, task_id=task_id
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _apply(
        self,
        machine: StateMachine,
        entity_id: str,
        to_state: Enum,
        metadata: dict[str, Any] | None,
        idempotent: bool,
        task_id: str | None = None,
    ) -> Transition | None:
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current_value = await self._store.get_current_state(machine.kind, entity_id)
            effective = machine.current(current_value)

            if idempotent and effective == to_state:
                logger.debug(
                    f"{machine.kind} {entity_id} already {to_state.value}, skipping transition"
                )
                return None

            machine.validate(entity_id, machine.parse(current_value), to_state)

            try:
                transition = await self._store.append_transition(
                    machine.kind,
                    entity_id,
                    current_value,
                    to_state.value,
                    self._clock(),
                    metadata,
                )
            except StaleTransitionError as e:
                if attempt == MAX_CAS_ATTEMPTS:
                    raise
                logger.debug(f"Retrying transition after concurrent write: {e}")
                continue

            logger.debug(
                f"{machine.kind} {entity_id}: {current_value or '∅'} -> {to_state.value}"
            )
            self._publish(machine.kind, entity_id, transition, task_id)
            return transition

        return None

    def _publish(
        self, kind: EntityKind, entity_id: str, transition: Transition, task_id: str | None
    ) -> None:
        if self._events is None:
            return
        payload: dict[str, Any] = {
            f"{kind}_id": entity_id,
            "from_state": transition.from_state,
            "to_state": transition.to_state,
            "transitioned_at": transition.created_at,
        }
        if kind is EntityKind.STEP and task_id is not None:
            payload["task_id"] = task_id
        if transition.metadata:
            payload["metadata"] = dict(transition.metadata)
        self._events.publish(
            event_name_for(kind, transition.from_state, transition.to_state), payload
        )
