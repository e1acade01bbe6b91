"""Process-local storage backend."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from questweave.storage.base import BaseStorage
from questweave.storage.base import Transaction

_Bucket = dict[str, tuple[float, str]]


class InMemoryStorage(BaseStorage):
    """Dictionary-backed storage with the same semantics as Redis.

    Documents are kept as JSON strings so readers never share mutable
    state with writers.  A commit stages every touched bucket and swaps
    them in only after all writes applied.
    """

    def __init__(self) -> None:
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._lock = asyncio.Lock()

    async def get(
        self, collection: str, subject_id: str, record_id: str
    ) -> dict[str, Any] | None:
        entry = self._buckets.get((collection, subject_id), {}).get(record_id)
        return None if entry is None else json.loads(entry[1])

    async def get_many(
        self, collection: str, subject_id: str, record_ids: list[str]
    ) -> list[dict[str, Any]]:
        bucket = self._buckets.get((collection, subject_id), {})
        return [json.loads(bucket[rid][1]) for rid in record_ids if rid in bucket]

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
        bucket = self._buckets.get((collection, subject_id), {})
        rows = sorted(
            (
                (score, rid, raw)
                for rid, (score, raw) in bucket.items()
                if (min_score is None or score >= min_score)
                and (max_score is None or score <= max_score)
            ),
            reverse=newest_first,
        )
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return [json.loads(raw) for _, _, raw in rows]

    async def count(self, collection: str, subject_id: str) -> int:
        return len(self._buckets.get((collection, subject_id), {}))

    async def subjects(self, collection: str) -> list[str]:
        return sorted(
            subject for (name, subject), bucket in self._buckets.items()
            if name == collection and bucket
        )

    async def close(self) -> None:
        return None

    async def _commit(self, tx: Transaction) -> None:
        async with self._lock:
            staged = self._apply(tx)
            self._buckets.update(staged)

    def _apply(self, tx: Transaction) -> dict[tuple[str, str], _Bucket]:
        staged: dict[tuple[str, str], _Bucket] = {}
        for write in tx.writes:
            key = (write.collection, tx.subject_id)
            if key not in staged:
                staged[key] = dict(self._buckets.get(key, {}))
            bucket = staged[key]
            if write.op == "put":
                bucket[write.record_id] = (write.score, json.dumps(write.document))
            elif write.op == "delete":
                bucket.pop(write.record_id, None)
            elif write.op == "clear":
                bucket.clear()
            else:
                raise ValueError(f"unknown write op '{write.op}'")
        return staged
