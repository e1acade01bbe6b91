"""Redis-backed storage.

Each ``(collection, subject)`` pair owns two keys:

- ``questweave:{collection}:{subject}:docs``: hash of record id to JSON document
- ``questweave:{collection}:{subject}:idx``: sorted set of record ids by score

``questweave:{collection}:subjects`` remembers which subjects hold data so
maintenance jobs can sweep every subject.  Commits run inside one
``MULTI``/``EXEC`` pipeline.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from questweave.storage.base import BaseStorage
from questweave.storage.base import StoreTransactionFailed
from questweave.storage.base import Transaction

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

_PREFIX = "questweave"


def _docs_key(collection: str, subject_id: str) -> str:
    return f"{_PREFIX}:{collection}:{subject_id}:docs"


def _index_key(collection: str, subject_id: str) -> str:
    return f"{_PREFIX}:{collection}:{subject_id}:idx"


def _subjects_key(collection: str) -> str:
    return f"{_PREFIX}:{collection}:subjects"


def _decode(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ---------------------------------------------------------------------------
# RedisStorage
# ---------------------------------------------------------------------------


class RedisStorage(BaseStorage):
    """Storage over ``redis.asyncio`` with transactional pipelines."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> RedisStorage:
        return cls(Redis.from_url(url))

    # -- read --

    async def get(
        self, collection: str, subject_id: str, record_id: str
    ) -> dict[str, Any] | None:
        raw = await self._redis.hget(_docs_key(collection, subject_id), record_id)
        return None if raw is None else json.loads(_decode(raw))

    async def get_many(
        self, collection: str, subject_id: str, record_ids: list[str]
    ) -> list[dict[str, Any]]:
        if not record_ids:
            return []
        raws = await self._redis.hmget(_docs_key(collection, subject_id), record_ids)
        return [json.loads(_decode(raw)) for raw in raws if raw is not None]

    async def query(
        self,
        collection: str,
        subject_id: str,
        *,
        min_score: float | None = None,
        max_score: float | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        low = "-inf" if min_score is None else min_score
        high = "+inf" if max_score is None else max_score
        paging: dict[str, int] = {}
        if limit is not None:
            if limit <= 0:
                return []
            paging = {"start": 0, "num": limit}

        index = _index_key(collection, subject_id)
        if newest_first:
            ids = await self._redis.zrevrangebyscore(index, high, low, **paging)
        else:
            ids = await self._redis.zrangebyscore(index, low, high, **paging)
        if not ids:
            return []

        record_ids = [_decode(rid) for rid in ids]
        raws = await self._redis.hmget(_docs_key(collection, subject_id), record_ids)
        stale = [rid for rid, raw in zip(record_ids, raws) if raw is None]
        if stale:
            # Index entries whose document vanished outside a commit.
            logger.warning(
                "Dropping %d dangling index entries in %s/%s",
                len(stale),
                collection,
                subject_id,
            )
            await self._redis.zrem(index, *stale)
        return [json.loads(_decode(raw)) for raw in raws if raw is not None]

    async def count(self, collection: str, subject_id: str) -> int:
        return int(await self._redis.zcard(_index_key(collection, subject_id)))

    async def subjects(self, collection: str) -> list[str]:
        members = await self._redis.smembers(_subjects_key(collection))
        return sorted(_decode(m) for m in members)

    async def close(self) -> None:
        await self._redis.aclose()

    # -- write --

    async def _commit(self, tx: Transaction) -> None:
        subject = tx.subject_id
        async with self._redis.pipeline(transaction=True) as pipe:
            for write in tx.writes:
                docs = _docs_key(write.collection, subject)
                index = _index_key(write.collection, subject)
                if write.op == "put":
                    pipe.hset(docs, write.record_id, json.dumps(write.document))
                    pipe.zadd(index, {write.record_id: write.score})
                    pipe.sadd(_subjects_key(write.collection), subject)
                elif write.op == "delete":
                    pipe.hdel(docs, write.record_id)
                    pipe.zrem(index, write.record_id)
                elif write.op == "clear":
                    pipe.delete(docs, index)
                else:
                    raise ValueError(f"unknown write op '{write.op}'")
            try:
                await pipe.execute()
            except (RedisError, OSError) as exc:
                raise StoreTransactionFailed(subject, str(exc)) from exc