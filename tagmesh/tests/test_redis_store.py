"""
Redis Document Store Tests

Runs against the server named by REDIS_HOST / REDIS_PORT and is skipped
when none is reachable. Every test uses its own key prefix and removes
its keys afterwards.

Run: REDIS_HOST=localhost python -m pytest tagmesh/tests/test_redis_store.py -v
"""

from __future__ import annotations

import dataclasses
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tagmesh.core.errors import ErrorCode
from tagmesh.storage import BackendType, RedisConfig, open_local_store
from tagmesh.sync import replicate


@pytest_asyncio.fixture
async def redis_config():
    config = dataclasses.replace(
        RedisConfig.from_env(),
        key_prefix=f"tagmesh-test-{uuid.uuid4().hex[:8]}",
        connect_timeout_ms=300,
        poll_interval_ms=10,
    )
    yield config

    client = aioredis.Redis(**config.get_connection_kwargs())
    try:
        keys = [key async for key in client.scan_iter(match=f"{config.key_prefix}:*")]
        if keys:
            await client.delete(*keys)
    except RedisError:
        pass
    finally:
        await client.aclose()


@pytest_asyncio.fixture
async def store(redis_config):
    opened = await open_local_store("db", BackendType.REDIS, redis_config=redis_config)
    if opened.is_err():
        pytest.skip(f"Redis not reachable: {opened.error}")
    redis_store = opened.unwrap()
    yield redis_store
    await redis_store.close()


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_put_get_and_conflict(self, store):
        created = (await store.put({"_id": "a", "v": 1})).unwrap()
        assert created.revision.startswith("1-")

        doc = (await store.get("a")).unwrap()
        assert doc == {"_id": "a", "_rev": created.revision, "v": 1}

        stale = await store.put({"_id": "a", "v": 2})
        assert stale.error.is_conflict

        updated = (await store.put({"_id": "a", "_rev": created.revision, "v": 2})).unwrap()
        assert updated.revision.startswith("2-")

    @pytest.mark.asyncio
    async def test_missing_is_not_found(self, store):
        assert (await store.get("nope")).error.code == ErrorCode.STORAGE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_changes_keep_latest_per_key(self, store):
        first = (await store.put({"_id": "a"})).unwrap()
        await store.put({"_id": "b"})
        await store.put({"_id": "a", "_rev": first.revision, "v": 2})

        batch = (await store.changes()).unwrap()
        assert [c.key for c in batch.changes] == ["b", "a"]
        assert batch.last_seq == 3

        rest = (await store.changes(since=batch.last_seq, timeout_ms=30)).unwrap()
        assert len(rest) == 0

    @pytest.mark.asyncio
    async def test_all_docs_sorted(self, store):
        for key in ("c", "a", "b"):
            await store.put({"_id": key})
        rows = (await store.all_docs()).unwrap()
        assert [key for key, _ in rows] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_put_replica_winner_policy(self, store):
        assert (await store.put_replica({"_id": "a", "_rev": "2-aaa", "v": 1})).unwrap()
        assert not (await store.put_replica({"_id": "a", "_rev": "1-fff", "v": 2})).unwrap()
        assert (await store.put_replica({"_id": "a", "_rev": "2-bbb", "v": 3})).unwrap()
        assert (await store.get("a")).unwrap()["v"] == 3

    @pytest.mark.asyncio
    async def test_replicates_into_memory(self, store, registry):
        await store.put({"_id": "a", "v": 1})
        local = registry.open("local")
        result = (await replicate(store, local)).unwrap()
        assert result.docs_written == 1
        assert (await local.get("a")).unwrap() == (await store.get("a")).unwrap()

    @pytest.mark.asyncio
    async def test_closed_store(self, store):
        await store.close()
        assert (await store.get("a")).error.code == ErrorCode.STORAGE_CLOSED
