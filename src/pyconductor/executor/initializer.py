"""
TaskInitializer - turns a TaskRequest into a persisted, enqueued task.

1. Look up the registered TaskTemplate
2. Compute the identity hash (deduplicates identical requests within a minute)
3. Create Task + Steps + Edges in one atomic store write
4. Record initial transitions: task -> pending, steps -> pending,
   bypassed skippable steps -> resolved_manually
5. Enqueue the task
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import xxhash
from uuid_extensions import uuid7

from pyconductor.core.errors import ConfigurationError
from pyconductor.core.ledger import StateLedger
from pyconductor.executor.reenqueue import TaskQueue
from pyconductor.executor.registry import HandlerRegistry
from pyconductor.models import (
    Edge,
    Step,
    StepState,
    Task,
    TaskRequest,
    TaskState,
    TaskTemplate,
)

logger = logging.getLogger(__name__)

__all__ = ["TaskInitializer", "identity_hash"]


def identity_hash(
    name: str,
    context: Mapping[str, Any],
    bypass_steps: tuple[str, ...],
    requested_at: datetime,
) -> str:
    """
    Deduplication fingerprint of a task request.

    Requests with the same name, context and bypass steps made within the
    same minute hash identically.

    Example:
        identity_hash("checkout", {"order": 7}, (), datetime(2024, 1, 1, 12, 0, 30))
    """
    canonical = json.dumps(
        {
            "name": name,
            "context": context,
            "bypass_steps": sorted(bypass_steps),
            "requested_at": requested_at.strftime("%Y-%m-%d %H:%M"),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return xxhash.xxh64(canonical.encode("utf-8")).hexdigest()


class TaskInitializer:
    """
    Creates tasks from registered templates.

    Usage:
        initializer = TaskInitializer(registry, ledger, queue)
        task = await initializer.initialize_task(TaskRequest("checkout", {"order_id": 7}))
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        ledger: StateLedger,
        queue: TaskQueue | None = None,
    ):
        self._registry = registry
        self._ledger = ledger
        self._store = ledger.store
        self._queue = queue

    async def initialize_task(self, request: TaskRequest) -> Task:
        """
        Create, initialize and enqueue a task.

        Returns:
            The stored task (status pending)

        Raises:
            ConfigurationError: Unknown template, or bypass of an unknown or
                non-skippable step
            DuplicateTaskError: If an identical request already created a task
        """
        template = self._registry.get_template(request.name)
        bypass = self._validate_bypass(template, request.bypass_steps)

        task = Task(
            task_id=str(uuid7()),
            name=template.name,
            context=dict(request.context),
            identity_hash=identity_hash(
                template.name, request.context, request.bypass_steps, request.requested_at
            ),
            requested_at=request.requested_at,
            bypass_steps=tuple(request.bypass_steps),
            version=template.version,
        )
        steps, edges = self._build_graph(task.task_id, template)

        stored = await self._store.create_task(task, steps, edges)

        await self._ledger.transition_task(task.task_id, TaskState.PENDING)
        for step in steps:
            if step.name in bypass:
                await self._ledger.transition_step(
                    step.step_id,
                    StepState.RESOLVED_MANUALLY,
                    {"reason": "bypassed"},
                    task_id=task.task_id,
                )
            else:
                await self._ledger.transition_step(
                    step.step_id, StepState.PENDING, task_id=task.task_id
                )

        logger.info(
            f"Initialized task {task.task_id} ({template.name} v{template.version}, "
            f"{len(steps)} steps, {len(bypass)} bypassed)"
        )

        if self._queue is not None:
            await self._queue.enqueue(task.task_id)
        return stored

    def _validate_bypass(self, template: TaskTemplate, bypass_steps: tuple[str, ...]) -> set[str]:
        bypass = set(bypass_steps)
        for name in bypass:
            try:
                step = template.step(name)
            except KeyError as e:
                raise ConfigurationError(
                    f"Cannot bypass unknown step {name!r} of template {template.name!r}"
                ) from e
            if not step.skippable:
                raise ConfigurationError(
                    f"Step {name!r} of template {template.name!r} is not skippable"
                )
        return bypass

    def _build_graph(self, task_id: str, template: TaskTemplate) -> tuple[list[Step], list[Edge]]:
        steps = [
            Step(
                step_id=str(uuid7()),
                task_id=task_id,
                name=st.name,
                handler_name=st.handler_name,
                position=position,
                retryable=st.retryable,
                retry_limit=st.retry_limit,
                skippable=st.skippable,
            )
            for position, st in enumerate(template.steps)
        ]
        ids = {s.name: s.step_id for s in steps}
        edges = [
            Edge(task_id=task_id, from_step_id=ids[parent], to_step_id=ids[child])
            for parent, child in template.graph().edges()
        ]
        return steps, edges
