"""SQLite-backed storage implementation for pyconductor.

Design Pattern: Adapter Pattern
SqliteWorkflowStore adapts a SQLite database to the WorkflowStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- BEGIN IMMEDIATE transactions around multi-row writes
- Partial unique index guarantees one most_recent transition per entity
- Step claims use UPDATE ... WHERE in_process = 0 (optimistic concurrency)
- INTEGER timestamps (UTC milliseconds)
"""

from __future__ import annotations

import asyncio
import pickle
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
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

_STEP_COLUMNS = """
    s.step_id, s.task_id, s.name, s.handler_name, s.position, s.retryable,
    s.retry_limit, s.attempts, s.last_attempted_at, s.backoff_request_seconds,
    s.processed, s.processed_at, s.in_process, s.skippable, s.results,
    (SELECT t.to_state FROM transitions t
     WHERE t.entity_kind = 'step' AND t.entity_id = s.step_id AND t.most_recent = 1)
"""


def _to_millis(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value is not None else None


def _from_millis(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value / 1000.0, UTC) if value is not None else None


class SqliteWorkflowStore(WorkflowStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()
        try:
            await store.create_task(task, steps, edges)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteWorkflowStore:
        """
        Create a connected in-memory SQLite store for testing.

        Example:
            store = await SqliteWorkflowStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteWorkflowStore(in-memory)"
        return f"SqliteWorkflowStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit; multi-row writes use explicit BEGIN
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - tasks / steps / edges hold the workflow instance
        - transitions is the append-only ledger for both entity kinds
        - lowercase state values, INTEGER millisecond timestamps
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                context BLOB,
                identity_hash TEXT UNIQUE,
                requested_at INTEGER NOT NULL,
                bypass_steps BLOB,
                version TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                step_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(task_id),
                name TEXT NOT NULL,
                handler_name TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                retryable INTEGER NOT NULL DEFAULT 1,
                retry_limit INTEGER NOT NULL DEFAULT 3,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_attempted_at INTEGER,
                backoff_request_seconds REAL,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at INTEGER,
                in_process INTEGER NOT NULL DEFAULT 0,
                skippable INTEGER NOT NULL DEFAULT 0,
                results BLOB,
                UNIQUE (task_id, name)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS edges (
                task_id TEXT NOT NULL REFERENCES tasks(task_id),
                from_step_id TEXT NOT NULL REFERENCES steps(step_id),
                to_step_id TEXT NOT NULL REFERENCES steps(step_id),
                name TEXT NOT NULL DEFAULT 'provides',
                PRIMARY KEY (from_step_id, to_step_id)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS transitions (
                transition_id TEXT PRIMARY KEY,
                entity_kind TEXT CHECK( entity_kind IN ('task','step') ) NOT NULL,
                entity_id TEXT NOT NULL,
                from_state TEXT,
                to_state TEXT CHECK( to_state IN (
                    'pending','in_progress','complete','error','cancelled','resolved_manually'
                ) ) NOT NULL,
                sort_key INTEGER NOT NULL,
                most_recent INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                metadata BLOB,
                UNIQUE (entity_kind, entity_id, sort_key)
            )
        """)

        await self._connection.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_transitions_most_recent
            ON transitions(entity_kind, entity_id) WHERE most_recent = 1
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_steps_task
            ON steps(task_id, position)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_edges_task
            ON edges(task_id)
        """)

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ========================================================================
    # Task graph
    # ========================================================================

    async def create_task(self, task: Task, steps: Sequence[Step], edges: Sequence[Edge]) -> Task:
        self._check_connected()

        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                if task.identity_hash:
                    cursor = await self._connection.execute(
                        "SELECT task_id FROM tasks WHERE identity_hash = ?",
                        (task.identity_hash,),
                    )
                    row = await cursor.fetchone()
                    await cursor.close()
                    if row is not None:
                        raise DuplicateTaskError(task.identity_hash, row[0])

                await self._connection.execute(
                    """
                    INSERT INTO tasks (task_id, name, context, identity_hash,
                                       requested_at, bypass_steps, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task.task_id,
                        task.name,
                        pickle.dumps(dict(task.context)),
                        task.identity_hash or None,
                        _to_millis(task.requested_at),
                        pickle.dumps(tuple(task.bypass_steps)),
                        task.version,
                    ),
                )
                await self._connection.executemany(
                    """
                    INSERT INTO steps (step_id, task_id, name, handler_name, position,
                                       retryable, retry_limit, attempts, last_attempted_at,
                                       backoff_request_seconds, processed, processed_at,
                                       in_process, skippable, results)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    [
                        (
                            s.step_id,
                            task.task_id,
                            s.name,
                            s.handler_name,
                            s.position,
                            int(s.retryable),
                            s.retry_limit,
                            s.attempts,
                            _to_millis(s.last_attempted_at),
                            s.backoff_request_seconds,
                            int(s.processed),
                            _to_millis(s.processed_at),
                            int(s.skippable),
                            pickle.dumps(s.results),
                        )
                        for s in steps
                    ],
                )
                await self._connection.executemany(
                    """
                    INSERT INTO edges (task_id, from_step_id, to_step_id, name)
                    VALUES (?, ?, ?, ?)
                    """,
                    [(task.task_id, e.from_step_id, e.to_step_id, e.name) for e in edges],
                )
                await self._connection.execute("COMMIT")
            except DuplicateTaskError:
                await self._connection.execute("ROLLBACK")
                raise
            except Exception as e:
                await self._connection.execute("ROLLBACK")
                raise StorageError(f"Failed to create task {task.task_id}: {e}") from e

        return task.evolve(status=TaskState.PENDING)

    async def get_task(self, task_id: str) -> Task | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT k.task_id, k.name, k.context, k.identity_hash, k.requested_at,
                       k.bypass_steps, k.version,
                       (SELECT t.to_state FROM transitions t
                        WHERE t.entity_kind = 'task' AND t.entity_id = k.task_id
                          AND t.most_recent = 1)
                FROM tasks k
                WHERE k.task_id = ?
                """,
                (task_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            return None
        return Task(
            task_id=row[0],
            name=row[1],
            context=pickle.loads(row[2]) if row[2] else {},
            identity_hash=row[3] or "",
            requested_at=_from_millis(row[4]),
            bypass_steps=tuple(pickle.loads(row[5])) if row[5] else (),
            version=row[6],
            status=TaskState(row[7] or "pending"),
        )

    async def get_steps(self, task_id: str) -> list[Step]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_STEP_COLUMNS} FROM steps s WHERE s.task_id = ? "
                "ORDER BY s.position, s.name",
                (task_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_step(row) for row in rows]

    async def get_step(self, step_id: str) -> Step | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_STEP_COLUMNS} FROM steps s WHERE s.step_id = ?",
                (step_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_step(row) if row is not None else None

    async def get_edges(self, task_id: str) -> list[Edge]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT task_id, from_step_id, to_step_id, name FROM edges "
                "WHERE task_id = ? ORDER BY rowid",
                (task_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [Edge(task_id=r[0], from_step_id=r[1], to_step_id=r[2], name=r[3]) for r in rows]

    async def save_step(self, step: Step) -> Step:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE steps
                SET attempts = ?, retryable = ?, last_attempted_at = ?,
                    backoff_request_seconds = ?, processed = ?, processed_at = ?,
                    results = ?
                WHERE step_id = ?
                """,
                (
                    step.attempts,
                    int(step.retryable),
                    _to_millis(step.last_attempted_at),
                    step.backoff_request_seconds,
                    int(step.processed),
                    _to_millis(step.processed_at),
                    pickle.dumps(step.results),
                    step.step_id,
                ),
            )
            updated = cursor.rowcount
            await cursor.close()

        if updated == 0:
            raise StorageError(f"Step not found: {step.step_id}")
        stored = await self.get_step(step.step_id)
        return stored

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
        self._check_connected()

        table, key = ("tasks", "task_id") if entity_kind is EntityKind.TASK else ("steps", "step_id")

        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                cursor = await self._connection.execute(
                    f"SELECT 1 FROM {table} WHERE {key} = ?", (entity_id,)
                )
                exists = await cursor.fetchone()
                await cursor.close()
                if exists is None:
                    raise StorageError(f"{entity_kind} not found: {entity_id}")

                cursor = await self._connection.execute(
                    """
                    SELECT to_state, sort_key FROM transitions
                    WHERE entity_kind = ? AND entity_id = ? AND most_recent = 1
                    """,
                    (entity_kind.value, entity_id),
                )
                current = await cursor.fetchone()
                await cursor.close()

                current_state = current[0] if current else None
                if current_state != expected_from:
                    raise StaleTransitionError(
                        entity_kind, entity_id, expected_from, current_state
                    )

                sort_key = (current[1] + SORT_KEY_STEP) if current else SORT_KEY_STEP
                transition = Transition(
                    transition_id=str(uuid7()),
                    entity_kind=entity_kind,
                    entity_id=entity_id,
                    from_state=current_state,
                    to_state=to_state,
                    sort_key=sort_key,
                    most_recent=True,
                    created_at=created_at,
                    metadata=dict(metadata or {}),
                )

                await self._connection.execute(
                    """
                    UPDATE transitions SET most_recent = 0
                    WHERE entity_kind = ? AND entity_id = ? AND most_recent = 1
                    """,
                    (entity_kind.value, entity_id),
                )
                await self._connection.execute(
                    """
                    INSERT INTO transitions (transition_id, entity_kind, entity_id, from_state,
                                             to_state, sort_key, most_recent, created_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        transition.transition_id,
                        entity_kind.value,
                        entity_id,
                        current_state,
                        to_state,
                        sort_key,
                        _to_millis(created_at),
                        pickle.dumps(transition.metadata),
                    ),
                )
                await self._connection.execute("COMMIT")
            except StorageError:
                await self._connection.execute("ROLLBACK")
                raise
            except Exception as e:
                await self._connection.execute("ROLLBACK")
                raise StorageError(
                    f"Failed to append {entity_kind} transition for {entity_id}: {e}"
                ) from e

        return transition

    async def get_transitions(self, entity_kind: EntityKind, entity_id: str) -> list[Transition]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT transition_id, from_state, to_state, sort_key, most_recent,
                       created_at, metadata
                FROM transitions
                WHERE entity_kind = ? AND entity_id = ?
                ORDER BY sort_key
                """,
                (entity_kind.value, entity_id),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return [
            Transition(
                transition_id=row[0],
                entity_kind=entity_kind,
                entity_id=entity_id,
                from_state=row[1],
                to_state=row[2],
                sort_key=row[3],
                most_recent=bool(row[4]),
                created_at=_from_millis(row[5]),
                metadata=pickle.loads(row[6]) if row[6] else {},
            )
            for row in rows
        ]

    async def get_current_state(self, entity_kind: EntityKind, entity_id: str) -> str | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT to_state FROM transitions
                WHERE entity_kind = ? AND entity_id = ? AND most_recent = 1
                """,
                (entity_kind.value, entity_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return row[0] if row else None

    async def last_failure_times(self, task_id: str) -> dict[str, datetime]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT t.entity_id, MAX(t.created_at)
                FROM transitions t
                JOIN steps s ON s.step_id = t.entity_id
                WHERE t.entity_kind = 'step' AND t.to_state = 'error' AND s.task_id = ?
                GROUP BY t.entity_id
                """,
                (task_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {row[0]: _from_millis(row[1]) for row in rows}

    # ========================================================================
    # Claims
    # ========================================================================

    async def claim_step(self, step_id: str) -> bool:
        """Claim a step for execution.

        Design Pattern: Optimistic Concurrency Control
        UPDATE with WHERE in_process = 0 ensures only one executor claims each step.
        """
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "UPDATE steps SET in_process = 1 WHERE step_id = ? AND in_process = 0",
                (step_id,),
            )
            claimed = cursor.rowcount == 1
            await cursor.close()
            if claimed:
                return True

            cursor = await self._connection.execute(
                "SELECT 1 FROM steps WHERE step_id = ?", (step_id,)
            )
            exists = await cursor.fetchone()
            await cursor.close()
        if exists is None:
            raise StorageError(f"Step not found: {step_id}")
        return False

    async def release_step(self, step_id: str) -> None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "UPDATE steps SET in_process = 0 WHERE step_id = ?", (step_id,)
            )
            updated = cursor.rowcount
            await cursor.close()
        if updated == 0:
            raise StorageError(f"Step not found: {step_id}")

    async def reset(self) -> None:
        """Delete all rows (for testing)."""
        self._check_connected()

        async with self._lock:
            await self._connection.execute("DELETE FROM transitions")
            await self._connection.execute("DELETE FROM edges")
            await self._connection.execute("DELETE FROM steps")
            await self._connection.execute("DELETE FROM tasks")

    # ========================================================================
    # Row mapping
    # ========================================================================

    @staticmethod
    def _row_to_step(row: tuple) -> Step:
        """Convert database row to Step.

        Row format (matches _STEP_COLUMNS):
        0:step_id, 1:task_id, 2:name, 3:handler_name, 4:position, 5:retryable,
        6:retry_limit, 7:attempts, 8:last_attempted_at, 9:backoff_request_seconds,
        10:processed, 11:processed_at, 12:in_process, 13:skippable, 14:results,
        15:current state
        """
        return Step(
            step_id=row[0],
            task_id=row[1],
            name=row[2],
            handler_name=row[3],
            position=row[4],
            retryable=bool(row[5]),
            retry_limit=row[6],
            attempts=row[7],
            last_attempted_at=_from_millis(row[8]),
            backoff_request_seconds=row[9],
            processed=bool(row[10]),
            processed_at=_from_millis(row[11]),
            in_process=bool(row[12]),
            skippable=bool(row[13]),
            results=pickle.loads(row[14]) if row[14] is not None else None,
            status=StepState(row[15] or "pending"),
        )
