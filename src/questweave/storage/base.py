"""Repository boundary: per-subject collections with atomic commits.

Every persisted document lives in a *collection*, is owned by one
*subject* and carries a numeric *score* (usually a timestamp) used for
ordered reads.  All writes go through a :class:`Transaction` that is
buffered in memory and applied all-or-nothing when the ``transaction()``
block exits cleanly.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol
from typing import runtime_checkable

logger = logging.getLogger(__name__)


class StoreTransactionFailed(Exception):
    """A per-subject commit could not be applied; nothing was written."""

    retryable = True

    def __init__(self, subject_id: str, message: str) -> None:
        super().__init__(f"transaction for subject '{subject_id}' failed: {message}")
        self.subject_id = subject_id


@dataclass(frozen=True)
class Write:
    """One buffered mutation."""

    op: str
    collection: str
    record_id: str | None = None
    document: dict[str, Any] | None = None
    score: float = 0.0


@dataclass
class Transaction:
    """Buffered writes for one subject."""

    subject_id: str
    writes: list[Write] = field(default_factory=list)

    def put(
        self,
        collection: str,
        record_id: str,
        document: dict[str, Any],
        *,
        score: float = 0.0,
    ) -> None:
        self.writes.append(
            Write("put", collection, record_id, dict(document), float(score))
        )

    def delete(self, collection: str, record_id: str) -> None:
        self.writes.append(Write("delete", collection, record_id))

    def clear(self, collection: str) -> None:
        self.writes.append(Write("clear", collection))


@runtime_checkable
class Storage(Protocol):
    """Persistence operations the pipeline relies on."""

    async def get(
        self, collection: str, subject_id: str, record_id: str
    ) -> dict[str, Any] | None: ...

    async def get_many(
        self, collection: str, subject_id: str, record_ids: list[str]
    ) -> list[dict[str, Any]]: ...

    async def query(
        self,
        collection: str,
        subject_id: str,
        *,
        min_score: float | None = None,
        max_score: float | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def count(self, collection: str, subject_id: str) -> int: ...

    async def subjects(self, collection: str) -> list[str]: ...

    def transaction(self, subject_id: str): ...

    async def commit(self, tx: Transaction) -> None: ...

    async def put(
        self,
        collection: str,
        subject_id: str,
        record_id: str,
        document: dict[str, Any],
        *,
        score: float = 0.0,
    ) -> None: ...

    async def close(self) -> None: ...


class BaseStorage:
    """Shared transaction plumbing; subclasses implement ``_commit``."""

    @asynccontextmanager
    async def transaction(self, subject_id: str) -> AsyncIterator[Transaction]:
        """Yield a buffered transaction and commit it when the block exits.

        An exception inside the block discards the buffer and propagates.
        A failing commit raises :class:`StoreTransactionFailed`.
        """
        tx = Transaction(subject_id)
        yield tx
        await self.commit(tx)

    async def commit(self, tx: Transaction) -> None:
        """Apply a buffered transaction all-or-nothing."""
        if not tx.writes:
            return
        try:
            await self._commit(tx)
        except StoreTransactionFailed:
            raise
        except Exception as exc:
            logger.exception("Commit failed for subject %s", tx.subject_id)
            raise StoreTransactionFailed(tx.subject_id, str(exc)) from exc

    async def put(
        self,
        collection: str,
        subject_id: str,
        record_id: str,
        document: dict[str, Any],
        *,
        score: float = 0.0,
    ) -> None:
        """Single-document convenience write."""
        async with self.transaction(subject_id) as tx:
            tx.put(collection, record_id, document, score=score)

    async def _commit(self, tx: Transaction) -> None:
        raise NotImplementedError


@asynccontextmanager
async def write_scope(
    storage: Storage, subject_id: str, tx: Transaction | None = None
) -> AsyncIterator[Transaction]:
    """Buffer into *tx* when the caller owns one, else commit on exit."""
    if tx is not None:
        if tx.subject_id != subject_id:
            raise ValueError(
                f"transaction for '{tx.subject_id}' cannot hold writes for '{subject_id}'"
            )
        yield tx
        return
    async with storage.transaction(subject_id) as own:
        yield own
