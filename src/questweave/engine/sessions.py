"""Session context objects passed through the turn pipeline.

A session is created on a subject's first turn, carries the turn count
and last activity, and is evicted after a period of inactivity.  State
is persisted through the storage boundary keyed by subject and session.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel
from pydantic import Field

from questweave.config import SessionConfig
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

logger = logging.getLogger(__name__)

SESSIONS = "sessions"


class SessionContext(BaseModel):
    session_id: str
    subject_id: str
    turn_count: int = 0
    events_since_summary: int = 0
    scene: str = ""
    created_at: float = Field(default_factory=time.time)
    last_active_at: float = Field(default_factory=time.time)

    def touch(self, now: float) -> None:
        self.last_active_at = now


class SessionRegistry:
    """Loads, saves and evicts :class:`SessionContext` records."""

    def __init__(
        self,
        storage: Storage,
        config: SessionConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._config = config or SessionConfig()
        self._clock = clock

    async def open(self, subject_id: str, session_id: str) -> SessionContext:
        """Return the live session, starting a fresh one if absent or idle too long."""
        now = self._clock()
        doc = await self._storage.get(SESSIONS, subject_id, session_id)
        if doc is not None:
            session = SessionContext.model_validate(doc)
            if not self._idle(session, now):
                return session
            logger.info(
                "Session %s for subject %s expired after inactivity",
                session_id,
                subject_id,
            )
        return SessionContext(
            session_id=session_id,
            subject_id=subject_id,
            created_at=now,
            last_active_at=now,
        )

    async def get(self, subject_id: str, session_id: str) -> SessionContext | None:
        doc = await self._storage.get(SESSIONS, subject_id, session_id)
        return SessionContext.model_validate(doc) if doc is not None else None

    async def save(
        self, session: SessionContext, *, tx: Transaction | None = None
    ) -> None:
        session.touch(self._clock())
        async with write_scope(self._storage, session.subject_id, tx) as batch:
            batch.put(
                SESSIONS,
                session.session_id,
                session.model_dump(mode="json"),
                score=session.last_active_at,
            )

    async def evict_idle(self) -> int:
        """Delete every session idle longer than the configured timeout."""
        now = self._clock()
        cutoff = now - self._config.idle_timeout_seconds
        evicted = 0
        for subject_id in await self._storage.subjects(SESSIONS):
            docs = await self._storage.query(SESSIONS, subject_id, max_score=cutoff)
            if not docs:
                continue
            async with self._storage.transaction(subject_id) as tx:
                for doc in docs:
                    tx.delete(SESSIONS, doc["session_id"])
            evicted += len(docs)
        if evicted:
            logger.info("Evicted %d idle sessions", evicted)
        return evicted

    def _idle(self, session: SessionContext, now: float) -> bool:
        return now - session.last_active_at > self._config.idle_timeout_seconds
