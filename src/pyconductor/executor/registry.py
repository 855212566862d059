"""
Step handlers and the dependency-injected registry that resolves them.

Design Pattern: Strategy + Registry
A StepHandler is the strategy for one kind of step. The HandlerRegistry
maps handler names to handlers and template names to TaskTemplates. It is
an ordinary object handed to the Orchestrator and TaskInitializer at
construction (there is no process-wide singleton), and every method is
guarded by an RLock so registration and lookup are safe from any thread.

Templates are validated when registered: a cyclic dependency graph or a
step whose handler was never registered fails here, never at runtime.

Usage:
    registry = HandlerRegistry()

    @registry.handler("charge_card")
    async def charge_card(ctx: StepContext) -> dict:
        return {"charged": ctx.task.context["amount"]}

    registry.register_template(
        TaskTemplate("checkout", [StepTemplate("charge_card")])
    )
"""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pyconductor.core.errors import ConfigurationError, UnknownHandlerError
from pyconductor.models import Step, Task, TaskSnapshot, TaskTemplate

logger = logging.getLogger(__name__)

__all__ = [
    "StepContext",
    "StepHandler",
    "FunctionHandler",
    "HandlerRegistry",
]


@dataclass(frozen=True)
class StepContext:
    """Everything a handler may look at while running one step.

    The snapshot is the one the step was discovered from; it is read-only.
    """

    snapshot: TaskSnapshot
    sequence: tuple[Step, ...]
    """All steps of the task in declaration order."""

    step: Step

    @property
    def task(self) -> Task:
        return self.snapshot.task

    def parent_results(self) -> dict[str, Any]:
        """Results of this step's parents, keyed by parent step name."""
        return {p.name: p.results for p in self.snapshot.parents_of(self.step.step_id)}


@runtime_checkable
class StepHandler(Protocol):
    """Business logic for one kind of step.

    ``execute`` returns the step's result payload on success. Raise
    PermanentError to stop retries, RetryableError (optionally with
    ``retry_after``) to retry with an explicit backoff; any other exception
    is retried with the default backoff.
    """

    async def execute(self, context: StepContext) -> Any: ...


class FunctionHandler:
    """Adapts a plain callable to the StepHandler protocol.

    Both ``async def f(ctx)`` and ``def f(ctx)`` are accepted; a sync
    callable runs inline on the event loop.
    """

    def __init__(self, fn: Callable[[StepContext], Awaitable[Any] | Any], name: str | None = None):
        self._fn = fn
        self.name = name or getattr(fn, "__name__", repr(fn))

    async def execute(self, context: StepContext) -> Any:
        result = self._fn(context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionHandler({self.name})"


class HandlerRegistry:
    """Thread-safe mapping of handler names and template names."""

    def __init__(self) -> None:
        self._handlers: dict[str, StepHandler] = {}
        self._templates: dict[str, TaskTemplate] = {}
        self._lock = threading.RLock()

    # ========================================================================
    # Handlers
    # ========================================================================

    def register_handler(
        self, name: str, handler: StepHandler | Callable[[StepContext], Any]
    ) -> StepHandler:
        """
        Register a handler under ``name``, replacing any previous one.

        Plain callables are wrapped in FunctionHandler.

        Raises:
            ConfigurationError: If ``name`` is empty or ``handler`` is unusable
        """
        if not name:
            raise ConfigurationError("Handler name must not be empty")
        if isinstance(handler, StepHandler):
            resolved: StepHandler = handler
        elif callable(handler):
            resolved = FunctionHandler(handler, name)
        else:
            raise ConfigurationError(
                f"Handler {name!r} must implement execute(context) or be callable"
            )

        with self._lock:
            if name in self._handlers:
                logger.debug(f"Replacing handler {name!r}")
            self._handlers[name] = resolved
        logger.debug(f"Registered step handler: {name}")
        return resolved

    def handler(self, name: str | None = None) -> Callable[[Callable], Callable]:
        """Decorator form of register_handler; defaults to the function name."""

        def decorator(fn: Callable) -> Callable:
            self.register_handler(name or fn.__name__, fn)
            return fn

        return decorator

    def get_handler(self, name: str) -> StepHandler:
        """
        Raises:
            UnknownHandlerError: If nothing is registered under ``name``
        """
        with self._lock:
            handler = self._handlers.get(name)
        if handler is None:
            raise UnknownHandlerError(name)
        return handler

    def has_handler(self, name: str) -> bool:
        with self._lock:
            return name in self._handlers

    def handler_names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    # ========================================================================
    # Templates
    # ========================================================================

    def register_template(self, template: TaskTemplate) -> TaskTemplate:
        """
        Validate and register a task template.

        Raises:
            CycleDetectedError: If the step dependencies form a cycle
            ConfigurationError: Duplicate step names or unknown dependencies
            UnknownHandlerError: If a step's handler is not registered
        """
        template.graph()

        with self._lock:
            for step in template.steps:
                if step.handler_name not in self._handlers:
                    raise UnknownHandlerError(step.handler_name, step.name)
            self._templates[template.name] = template

        logger.info(
            f"Registered task template {template.name} v{template.version} "
            f"({len(template.steps)} steps)"
        )
        return template

    def get_template(self, name: str) -> TaskTemplate:
        """
        Raises:
            ConfigurationError: If no template is registered under ``name``
        """
        with self._lock:
            template = self._templates.get(name)
        if template is None:
            raise ConfigurationError(f"No task template registered under {name!r}")
        return template

    def templates(self) -> Sequence[TaskTemplate]:
        with self._lock:
            return list(self._templates.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._templates
