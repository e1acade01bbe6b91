"""Integration tests for the Redis storage backend."""

from __future__ import annotations

import pytest

from questweave.storage import RedisStorage
from questweave.storage import StoreTransactionFailed
from questweave.storage.base import Write


@pytest.fixture()
async def redis_storage(redis_client):
    # The client fixture owns the connection and closes it.
    return RedisStorage(redis_client)


class TestRedisReads:
    async def test_put_then_get(self, redis_storage):
        await redis_storage.put("events", "hero", "e1", {"id": "e1", "n": 1}, score=5.0)
        assert await redis_storage.get("events", "hero", "e1") == {"id": "e1", "n": 1}
        assert await redis_storage.get("events", "other", "e1") is None

    async def test_query_orders_and_windows(self, redis_storage):
        async with redis_storage.transaction("hero") as tx:
            tx.put("events", "b", {"id": "b"}, score=2.0)
            tx.put("events", "a", {"id": "a"}, score=1.0)
            tx.put("events", "c", {"id": "c"}, score=3.0)

        oldest = await redis_storage.query("events", "hero")
        newest = await redis_storage.query("events", "hero", newest_first=True, limit=2)
        window = await redis_storage.query("events", "hero", min_score=1.5, max_score=2.5)

        assert [d["id"] for d in oldest] == ["a", "b", "c"]
        assert [d["id"] for d in newest] == ["c", "b"]
        assert [d["id"] for d in window] == ["b"]

    async def test_count_and_subjects(self, redis_storage):
        await redis_storage.put("events", "hero", "e1", {"id": "e1"})
        await redis_storage.put("events", "rogue", "e1", {"id": "e1"})
        assert await redis_storage.count("events", "hero") == 1
        assert await redis_storage.subjects("events") == ["hero", "rogue"]

    async def test_dangling_index_entries_are_dropped(self, redis_storage, redis_client):
        await redis_storage.put("events", "hero", "e1", {"id": "e1"}, score=1.0)
        await redis_client.hdel("questweave:events:hero:docs", "e1")

        assert await redis_storage.query("events", "hero") == []
        assert await redis_storage.count("events", "hero") == 0


class TestRedisTransactions:
    async def test_delete_and_clear(self, redis_storage):
        async with redis_storage.transaction("hero") as tx:
            tx.put("active", "x", {"id": "x"})
            tx.put("active", "y", {"id": "y"})
        async with redis_storage.transaction("hero") as tx:
            tx.delete("active", "x")
        assert [d["id"] for d in await redis_storage.query("active", "hero")] == ["y"]

        async with redis_storage.transaction("hero") as tx:
            tx.clear("active")
        assert await redis_storage.count("active", "hero") == 0

    async def test_error_inside_block_discards_writes(self, redis_storage):
        with pytest.raises(KeyError):
            async with redis_storage.transaction("hero") as tx:
                tx.put("events", "e1", {"id": "e1"})
                raise KeyError("boom")
        assert await redis_storage.get("events", "hero", "e1") is None

    async def test_unknown_write_op_fails_the_commit(self, redis_storage):
        with pytest.raises(StoreTransactionFailed):
            async with redis_storage.transaction("hero") as tx:
                tx.put("events", "e1", {"id": "e1"})
                tx.writes.append(Write("upsert", "events", "e2"))
        assert await redis_storage.get("events", "hero", "e1") is None
