"""Storage backends for workflow state persistence.

Provides multiple storage implementations behind a common interface:
    - WorkflowStore: Abstract interface
    - SqliteWorkflowStore: SQLite-backed storage
    - RedisWorkflowStore: Redis-backed distributed storage
    - InMemoryWorkflowStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the WorkflowStore interface.
    Clients depend on the abstraction, so backends swap freely.
"""

from pyconductor.storage.base import (
    DuplicateTaskError,
    StaleTransitionError,
    StorageError,
    TaskNotFoundError,
    WorkflowStore,
)

# Backends are imported lazily so that aiosqlite / redis are only loaded
# when the corresponding store is actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryWorkflowStore":
        from pyconductor.storage.memory import InMemoryWorkflowStore

        return InMemoryWorkflowStore
    elif name == "RedisWorkflowStore":
        from pyconductor.storage.redis import RedisWorkflowStore

        return RedisWorkflowStore
    elif name == "SqliteWorkflowStore":
        from pyconductor.storage.sqlite import SqliteWorkflowStore

        return SqliteWorkflowStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "WorkflowStore",
    "StorageError",
    "TaskNotFoundError",
    "DuplicateTaskError",
    "StaleTransitionError",
    "SqliteWorkflowStore",
    "RedisWorkflowStore",
    "InMemoryWorkflowStore",
]
