"""
Fire-and-forget lifecycle event notification.

Design Pattern: Observer Pattern
The ledger and orchestrator publish events; telemetry, alerting or tests
subscribe. Delivery is deferred to the event loop so publishing never
blocks the orchestration path, and a failing subscriber is logged and
forgotten: it can never fail a transition.

Usage:
    events = EventPublisher()
    events.subscribe("step.failed", alert_on_failure)
    events.subscribe("*", audit_log)

    ledger = StateLedger(store, events)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyconductor.models.task import utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "LifecycleEvent",
    "EventPublisher",
    "EventCallback",
    "WILDCARD",
    "WorkflowEvents",
]

WILDCARD = "*"


class WorkflowEvents:
    """Names of orchestration events that are not tied to a single transition."""

    VIABLE_STEPS_DISCOVERED = "workflow.viable_steps_discovered"
    NO_VIABLE_STEPS = "workflow.no_viable_steps"
    STEPS_EXECUTION_STARTED = "workflow.steps_execution_started"
    STEPS_EXECUTION_COMPLETED = "workflow.steps_execution_completed"
    TASK_FINALIZATION_STARTED = "workflow.task_finalization_started"
    TASK_FINALIZATION_COMPLETED = "workflow.task_finalization_completed"
    TASK_REENQUEUE_REQUESTED = "workflow.task_reenqueue_requested"
    PASS_ITERATION_LIMIT_REACHED = "workflow.pass_iteration_limit_reached"


@dataclass(frozen=True)
class LifecycleEvent:
    """A published notification."""

    name: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)

    @property
    def task_id(self) -> str | None:
        return self.payload.get("task_id")


EventCallback = Callable[[LifecycleEvent], Awaitable[None] | None]


class EventPublisher:
    """Thread-safe subscriber registry with deferred delivery."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventCallback]] = {}
        self._lock = threading.Lock()
        # Keep references so pending deliveries are not garbage collected.
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, name: str, callback: EventCallback) -> None:
        """Register a callback for an event name, or WILDCARD for all events."""
        with self._lock:
            self._subscribers.setdefault(name, []).append(callback)

    def unsubscribe(self, name: str, callback: EventCallback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def subscriber_count(self, name: str | None = None) -> int:
        with self._lock:
            if name is None:
                return sum(len(cbs) for cbs in self._subscribers.values())
            return len(self._subscribers.get(name, []))

    def publish(self, name: str, payload: Mapping[str, Any] | None = None) -> LifecycleEvent:
        """
        Publish an event without waiting for subscribers.

        Returns the event so callers can log or inspect it.
        """
        event = LifecycleEvent(name=name, payload=dict(payload or {}))
        with self._lock:
            callbacks = list(self._subscribers.get(name, ())) + list(
                self._subscribers.get(WILDCARD, ())
            )
        if not callbacks:
            return event

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for callback in callbacks:
            if loop is None and inspect.iscoroutinefunction(callback):
                logger.debug(f"No running loop; async subscriber skipped for {name}")
            elif loop is None:
                self._deliver_sync(callback, event)
            elif inspect.iscoroutinefunction(callback):
                task = loop.create_task(self._deliver_async(callback, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                loop.call_soon(self._deliver_sync, callback, event)
        return event

    async def drain(self) -> None:
        """Wait until every delivery scheduled so far has finished."""
        # Let call_soon deliveries run before collecting async ones.
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _deliver_sync(callback: EventCallback, event: LifecycleEvent) -> None:
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Event subscriber failed for {event.name}: {e}")

    @staticmethod
    async def _deliver_async(callback: EventCallback, event: LifecycleEvent) -> None:
        try:
            await callback(event)
        except Exception as e:
            logger.warning(f"Event subscriber failed for {event.name}: {e}")
