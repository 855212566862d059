"""
Redis-specific storage tests.

The WorkflowStore contract itself runs against Redis in test_storage.py;
these cover connection handling and key isolation. Tests needing a server
skip unless PYCONDUCTOR_REDIS_URL is set.
"""

import os

import pytest
import redis.asyncio as redis

from pyconductor import RedisWorkflowStore, StorageError

REDIS_URL = os.getenv("PYCONDUCTOR_REDIS_URL")

needs_server = pytest.mark.skipif(not REDIS_URL, reason="PYCONDUCTOR_REDIS_URL not set")


@pytest.mark.asyncio
async def test_operations_require_connection():
    store = RedisWorkflowStore("redis://localhost:6379")

    with pytest.raises(StorageError, match="Not connected"):
        await store.get_task("task-1")


def test_repr_shows_url():
    assert repr(RedisWorkflowStore("redis://cache:6380/2")) == "RedisWorkflowStore(redis://cache:6380/2)"


@pytest.mark.redis
@needs_server
@pytest.mark.asyncio
async def test_reset_leaves_foreign_keys_alone():
    client = redis.from_url(REDIS_URL)
    store = RedisWorkflowStore(REDIS_URL)
    await store.connect()
    try:
        await client.set("someone-else:key", b"keep")
        await client.set(f"{RedisWorkflowStore.PREFIX}:scratch", b"drop")

        await store.reset()

        assert await client.get("someone-else:key") == b"keep"
        assert await client.get(f"{RedisWorkflowStore.PREFIX}:scratch") is None
    finally:
        await client.delete("someone-else:key")
        await client.aclose()
        await store.close()


@pytest.mark.redis
@needs_server
@pytest.mark.asyncio
async def test_connect_twice_reuses_pool():
    store = RedisWorkflowStore(REDIS_URL)
    await store.connect()
    first = store._redis
    await store.connect()
    try:
        assert store._redis is first
    finally:
        await store.close()
