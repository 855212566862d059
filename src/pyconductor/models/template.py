"""Workflow templates: the registered shape every task instance is built from."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from pyconductor.core.errors import ConfigurationError
from pyconductor.core.graph import WorkflowGraph


@dataclass(frozen=True)
class StepTemplate:
    """Declaration of one step in a TaskTemplate.

    Example:
        StepTemplate("charge_card", depends_on=("validate_order",), retry_limit=5)
    """

    name: str
    depends_on: tuple[str, ...] = ()
    handler: str | None = None
    """Registry key of the step's handler; defaults to the step name."""

    retryable: bool = True
    retry_limit: int = 3
    skippable: bool = False
    """Whether a task request may bypass this step."""

    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Step template name must not be empty")
        if self.retry_limit < 1:
            raise ConfigurationError(
                f"Step {self.name!r}: retry_limit must be >= 1, got {self.retry_limit}"
            )
        # Accept lists from callers while keeping the dataclass hashable.
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def handler_name(self) -> str:
        return self.handler or self.name


@dataclass(frozen=True)
class TaskTemplate:
    """A named, versioned DAG of step templates."""

    name: str
    steps: tuple[StepTemplate, ...]
    version: str = "0.1.0"
    description: str = ""
    _graph: WorkflowGraph | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.name:
            raise ConfigurationError("Task template name must not be empty")
        if not self.steps:
            raise ConfigurationError(f"Task template {self.name!r} declares no steps")

    def graph(self) -> WorkflowGraph:
        """
        Dependency graph over step names.

        Raises:
            ConfigurationError: Duplicate step names or unknown dependencies
            CycleDetectedError: If dependencies form a cycle
        """
        if self._graph is None:
            graph = WorkflowGraph(
                [s.name for s in self.steps],
                [(dep, s.name) for s in self.steps for dep in s.depends_on],
            )
            object.__setattr__(self, "_graph", graph)
        return self._graph

    def step(self, name: str) -> StepTemplate:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def handler_names(self) -> Sequence[str]:
        return [s.handler_name for s in self.steps]


__all__ = ["StepTemplate", "TaskTemplate"]
