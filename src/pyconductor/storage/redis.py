"""Redis-based workflow store.

Lets orchestrator instances on separate machines coordinate through one
Redis server, relying on Redis atomicity instead of a consensus protocol.

Data Structures:
- pyconductor:task:{task_id} (STRING): pickled Task
- pyconductor:task:{task_id}:steps (LIST): step ids in position order
- pyconductor:task:{task_id}:edges (STRING): pickled edge list
- pyconductor:identity:{hash} (STRING): task_id owning an identity hash
- pyconductor:step:{step_id} (STRING): pickled Step execution fields
- pyconductor:claim:{step_id} (STRING): present while a step is in_process
- pyconductor:state:{kind}:{id} (HASH): to_state and sort_key of the most-recent transition
- pyconductor:transitions:{kind}:{id} (LIST): pickled transitions, oldest first
- pyconductor:failure:{step_id} (STRING): millis of the latest transition into error

Key Features:
- Compare-and-swap transition append in a Lua script (one round trip, atomic)
- SET NX step claims
- The most-recent flag is structural: only the last list element is current

Design: Adapter Pattern
Implements WorkflowStore for Redis.
"""

from __future__ import annotations

import pickle
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis
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

_APPEND_TRANSITION = """
local state_key = KEYS[1]
local history_key = KEYS[2]
local failure_key = KEYS[3]

local current = redis.call('HGET', state_key, 'to_state') or ''
local sort_key = redis.call('HGET', state_key, 'sort_key') or '0'

if current ~= ARGV[1] or sort_key ~= ARGV[2] then
    return 0
end

redis.call('RPUSH', history_key, ARGV[3])
redis.call('HSET', state_key, 'to_state', ARGV[4], 'sort_key', ARGV[5])
if ARGV[4] == 'error' and failure_key ~= '' then
    redis.call('SET', failure_key, ARGV[6])
end
return 1
"""


class RedisWorkflowStore(WorkflowStore):
    """Redis workflow store using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        store = RedisWorkflowStore("redis://localhost:6379")
        await store.connect()
        await store.create_task(task, steps, edges)
    """

    PREFIX = "pyconductor"

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis workflow store.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisWorkflowStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Values are pickled bytes
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established."""
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    # ========================================================================
    # Key builders
    # ========================================================================

    def _task_key(self, task_id: str) -> str:
        return f"{self.PREFIX}:task:{task_id}"

    def _task_steps_key(self, task_id: str) -> str:
        return f"{self.PREFIX}:task:{task_id}:steps"

    def _task_edges_key(self, task_id: str) -> str:
        return f"{self.PREFIX}:task:{task_id}:edges"

    def _identity_key(self, identity_hash: str) -> str:
        return f"{self.PREFIX}:identity:{identity_hash}"

    def _step_key(self, step_id: str) -> str:
        return f"{self.PREFIX}:step:{step_id}"

    def _claim_key(self, step_id: str) -> str:
        return f"{self.PREFIX}:claim:{step_id}"

    def _state_key(self, kind: EntityKind, entity_id: str) -> str:
        return f"{self.PREFIX}:state:{kind.value}:{entity_id}"

    def _history_key(self, kind: EntityKind, entity_id: str) -> str:
        return f"{self.PREFIX}:transitions:{kind.value}:{entity_id}"

    def _failure_key(self, step_id: str) -> str:
        return f"{self.PREFIX}:failure:{step_id}"

    def _entity_key(self, kind: EntityKind, entity_id: str) -> str:
        return self._task_key(entity_id) if kind is EntityKind.TASK else self._step_key(entity_id)

    # ========================================================================
    # Task graph
    # ========================================================================

    async def create_task(self, task: Task, steps: Sequence[Step], edges: Sequence[Edge]) -> Task:
        self._check_connected()

        if await self._redis.exists(self._task_key(task.task_id)):
            raise StorageError(f"Task already exists: {task.task_id}")

        if task.identity_hash:
            reserved = await self._redis.set(
                self._identity_key(task.identity_hash), task.task_id.encode(), nx=True
            )
            if not reserved:
                existing = await self._redis.get(self._identity_key(task.identity_hash))
                raise DuplicateTaskError(
                    task.identity_hash, existing.decode() if existing else None
                )

        stored = replace(task, status=TaskState.PENDING, context=dict(task.context))
        ordered = sorted(steps, key=lambda s: (s.position, s.name))
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._task_key(task.task_id), pickle.dumps(stored))
                for step in ordered:
                    pipe.set(
                        self._step_key(step.step_id),
                        pickle.dumps(replace(step, status=StepState.PENDING, in_process=False)),
                    )
                if ordered:
                    pipe.rpush(self._task_steps_key(task.task_id), *[s.step_id for s in ordered])
                pipe.set(self._task_edges_key(task.task_id), pickle.dumps(list(edges)))
                await pipe.execute()
        except redis.RedisError as e:
            if task.identity_hash:
                await self._redis.delete(self._identity_key(task.identity_hash))
            raise StorageError(f"Failed to create task {task.task_id}: {e}") from e

        return stored

    async def get_task(self, task_id: str) -> Task | None:
        self._check_connected()

        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.get(self._task_key(task_id))
            pipe.hget(self._state_key(EntityKind.TASK, task_id), "to_state")
            raw, state = await pipe.execute()

        if raw is None:
            return None
        task: Task = pickle.loads(raw)
        return replace(task, status=TaskState(state.decode() if state else "pending"))

    async def get_steps(self, task_id: str) -> list[Step]:
        self._check_connected()

        step_ids = [sid.decode() for sid in await self._redis.lrange(
            self._task_steps_key(task_id), 0, -1
        )]
        return await self._load_steps(step_ids)

    async def get_step(self, step_id: str) -> Step | None:
        self._check_connected()

        steps = await self._load_steps([step_id])
        return steps[0] if steps else None

    async def get_edges(self, task_id: str) -> list[Edge]:
        self._check_connected()

        raw = await self._redis.get(self._task_edges_key(task_id))
        return list(pickle.loads(raw)) if raw else []

    async def save_step(self, step: Step) -> Step:
        self._check_connected()

        key = self._step_key(step.step_id)
        raw = await self._redis.get(key)
        if raw is None:
            raise StorageError(f"Step not found: {step.step_id}")
        existing: Step = pickle.loads(raw)
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
        await self._redis.set(key, pickle.dumps(updated))
        stored = await self.get_step(step.step_id)
        return stored

    async def _load_steps(self, step_ids: list[str]) -> list[Step]:
        if not step_ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for step_id in step_ids:
                pipe.get(self._step_key(step_id))
                pipe.hget(self._state_key(EntityKind.STEP, step_id), "to_state")
                pipe.exists(self._claim_key(step_id))
            results = await pipe.execute()

        steps: list[Step] = []
        for i in range(0, len(results), 3):
            raw, state, claimed = results[i : i + 3]
            if raw is None:
                continue
            step: Step = pickle.loads(raw)
            steps.append(
                replace(
                    step,
                    status=StepState(state.decode() if state else "pending"),
                    in_process=bool(claimed),
                )
            )
        return steps

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

        if not await self._redis.exists(self._entity_key(entity_kind, entity_id)):
            raise StorageError(f"{entity_kind} not found: {entity_id}")

        state_key = self._state_key(entity_kind, entity_id)
        current = await self._redis.hgetall(state_key)
        current_state = current[b"to_state"].decode() if b"to_state" in current else None
        current_sort = int(current[b"sort_key"]) if b"sort_key" in current else 0

        if current_state != expected_from:
            raise StaleTransitionError(entity_kind, entity_id, expected_from, current_state)

        transition = Transition(
            transition_id=str(uuid7()),
            entity_kind=entity_kind,
            entity_id=entity_id,
            from_state=current_state,
            to_state=to_state,
            sort_key=current_sort + SORT_KEY_STEP,
            most_recent=True,
            created_at=created_at,
            metadata=dict(metadata or {}),
        )
        failure_key = self._failure_key(entity_id) if entity_kind is EntityKind.STEP else ""

        applied = await self._redis.eval(
            _APPEND_TRANSITION,
            3,
            state_key,
            self._history_key(entity_kind, entity_id),
            failure_key,
            expected_from or "",
            str(current_sort),
            pickle.dumps(transition),
            to_state,
            str(transition.sort_key),
            str(int(created_at.timestamp() * 1000)),
        )
        if applied != 1:
            actual = await self.get_current_state(entity_kind, entity_id)
            raise StaleTransitionError(entity_kind, entity_id, expected_from, actual)
        return transition

    async def get_transitions(self, entity_kind: EntityKind, entity_id: str) -> list[Transition]:
        self._check_connected()

        raw_items = await self._redis.lrange(self._history_key(entity_kind, entity_id), 0, -1)
        last = len(raw_items) - 1
        return [
            replace(pickle.loads(raw), most_recent=(i == last)) for i, raw in enumerate(raw_items)
        ]

    async def get_current_state(self, entity_kind: EntityKind, entity_id: str) -> str | None:
        self._check_connected()

        state = await self._redis.hget(self._state_key(entity_kind, entity_id), "to_state")
        return state.decode() if state else None

    async def last_failure_times(self, task_id: str) -> dict[str, datetime]:
        self._check_connected()

        step_ids = [sid.decode() for sid in await self._redis.lrange(
            self._task_steps_key(task_id), 0, -1
        )]
        if not step_ids:
            return {}
        values = await self._redis.mget([self._failure_key(sid) for sid in step_ids])
        return {
            sid: datetime.fromtimestamp(int(value) / 1000.0, UTC)
            for sid, value in zip(step_ids, values, strict=True)
            if value is not None
        }

    # ========================================================================
    # Claims
    # ========================================================================

    async def claim_step(self, step_id: str) -> bool:
        """Atomically claim a step (SET NX on the claim key)."""
        self._check_connected()

        if not await self._redis.exists(self._step_key(step_id)):
            raise StorageError(f"Step not found: {step_id}")
        claimed = await self._redis.set(self._claim_key(step_id), b"1", nx=True)
        return bool(claimed)

    async def release_step(self, step_id: str) -> None:
        self._check_connected()

        if not await self._redis.exists(self._step_key(step_id)):
            raise StorageError(f"Step not found: {step_id}")
        await self._redis.delete(self._claim_key(step_id))

    async def reset(self) -> None:
        """Delete all pyconductor:* keys, leaving other Redis data untouched."""
        self._check_connected()

        keys = []
        async for key in self._redis.scan_iter(match=f"{self.PREFIX}:*"):
            keys.append(key)

        if keys:
            await self._redis.delete(*keys)
