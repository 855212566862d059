"""Core orchestration primitives.

Only the dependency-free pieces are re-exported here. The state machine,
ledger, readiness engine and events import the models package, which in
turn imports pyconductor.core.graph, so they are imported by full module
path to keep package initialisation acyclic.
"""

from pyconductor.core.errors import (
    ConductorError,
    ConfigurationError,
    CycleDetectedError,
    GuardViolation,
    UnknownHandlerError,
)
from pyconductor.core.graph import DagSummary, WorkflowGraph

__all__ = [
    "ConductorError",
    "ConfigurationError",
    "CycleDetectedError",
    "GuardViolation",
    "UnknownHandlerError",
    "DagSummary",
    "WorkflowGraph",
]
