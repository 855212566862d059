"""Exception hierarchy for configuration and state-machine faults.

Only these (and storage failures) propagate to callers. Step business-logic
failures are captured into step state by the executor and never escape a
batch; see pyconductor.models.retry for PermanentError / RetryableError.
"""

from __future__ import annotations

from collections.abc import Sequence

__all__ = [
    "ConductorError",
    "ConfigurationError",
    "CycleDetectedError",
    "UnknownHandlerError",
    "GuardViolation",
]


class ConductorError(Exception):
    """Base class for every error raised by pyconductor itself."""


class ConfigurationError(ConductorError):
    """Invalid template or registry configuration, fatal at registration time."""


class CycleDetectedError(ConfigurationError):
    """The dependency edges of a workflow form a cycle.

    Attributes:
        cycle: Closed node path, e.g. ("a", "b", "a")
    """

    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"Cycle detected in dependency graph: {' -> '.join(self.cycle)}")


class UnknownHandlerError(ConfigurationError):
    """A step references a handler that was never registered."""

    def __init__(self, handler_name: str, step_name: str | None = None):
        self.handler_name = handler_name
        self.step_name = step_name
        where = f" (step {step_name!r})" if step_name else ""
        super().__init__(f"No handler registered under {handler_name!r}{where}")


class GuardViolation(ConductorError):
    """A state transition not allowed by the guard table was requested.

    This is a programming fault: callers must never catch and ignore it.
    """

    def __init__(self, entity_kind: str, entity_id: str, from_state: str | None, to_state: str):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        source = from_state if from_state is not None else "∅"
        super().__init__(
            f"Invalid {entity_kind} transition for {entity_id}: {source} -> {to_state}"
        )
