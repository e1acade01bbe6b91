"""Tiered memory store.

Events are the immutable source of truth.  Every appended event gets a
1:1 *working* record that is pruned to the most recent ``working_cap``
per subject.  Aged-out events are compressed into *episodes*, and facts
that must never be forgotten live in the *long-term* tier where repeated
access reinforces them.  A bounded rolling *narrative summary* sits on
top of all tiers.

All writes for one subject go through a single storage transaction, so
an append either lands with its working record and pruning, or not at all.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import weakref
from collections.abc import Callable

from questweave.config import MemoryConfig
from questweave.memory.episodes import build_episode
from questweave.models.events import Event
from questweave.models.memory import CompleteContext
from questweave.models.memory import Episode
from questweave.models.memory import MemoryRecord
from questweave.models.memory import MemoryTier
from questweave.models.memory import NarrativeSummary
from questweave.models.memory import clamp_importance
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

EVENTS = "events"
EPISODES = "episodes"
SUMMARY = "summary"
CURSOR = "compression_cursor"

_TIER_COLLECTION = {
    MemoryTier.working: "memory_working",
    MemoryTier.episode: "memory_episode",
    MemoryTier.long_term: "memory_long_term",
}
_SUMMARY_ID = "current"
_CURSOR_ID = "cursor"
_DAY = 86400.0


def _working_id(event_id: str) -> str:
    return f"wm_{event_id}"


def _long_term_id(fact: str) -> str:
    normalized = " ".join(fact.lower().split())
    return "lt_" + hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:24]


def tier_collection(tier: MemoryTier) -> str:
    return _TIER_COLLECTION[tier]


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """Owner of every memory-tier mutation."""

    def __init__(
        self,
        storage: Storage,
        config: MemoryConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._config = config or MemoryConfig()
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def config(self) -> MemoryConfig:
        return self._config

    def _lock(self, subject_id: str) -> asyncio.Lock:
        # Held only while some task is using it; idle subjects drop out.
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Events + working tier
    # ------------------------------------------------------------------

    async def append_event(
        self, subject_id: str, event: Event, *, tx: Transaction | None = None
    ) -> Event:
        """Persist *event*, create its working record and prune, atomically."""
        await self.append_events(subject_id, [event], tx=tx)
        return event

    async def append_events(
        self,
        subject_id: str,
        events: list[Event],
        *,
        tx: Transaction | None = None,
    ) -> list[Event]:
        """Persist *events* with their working records and prune, atomically.

        With *tx* the writes join the caller's transaction and land when it
        commits.  Pruning accounts for the whole batch, so the working tier
        never exceeds ``working_cap`` once the batch is applied.
        """
        for event in events:
            if event.subject_id != subject_id:
                raise ValueError(
                    f"event subject '{event.subject_id}' does not match '{subject_id}'"
                )
        if not events:
            return []
        async with self._lock(subject_id):
            records = [self._working_record(event) for event in events]
            existing = await self._working_records(subject_id)
            keep, evict = self._split_working(existing + records)
            kept = {r.id for r in keep}
            fresh = {r.id for r in records}

            async with write_scope(self._storage, subject_id, tx) as batch:
                for event, record in zip(events, records):
                    batch.put(EVENTS, event.id, event.model_dump(mode="json"), score=event.timestamp)
                    if record.id in kept:
                        batch.put(
                            tier_collection(MemoryTier.working),
                            record.id,
                            record.model_dump(mode="json"),
                            score=record.created_at,
                        )
                for stale in evict:
                    if stale.id not in fresh:
                        batch.delete(tier_collection(MemoryTier.working), stale.id)

        if evict:
            logger.debug(
                "Pruned %d working records for subject %s", len(evict), subject_id
            )
        return list(events)

    def _working_record(self, event: Event) -> MemoryRecord:
        return MemoryRecord(
            id=_working_id(event.id),
            subject_id=event.subject_id,
            tier=MemoryTier.working,
            text=event.description,
            importance=self._config.working_importance,
            created_at=event.timestamp,
            last_accessed_at=event.timestamp,
            expires_at=event.timestamp + self._config.working_ttl_days * _DAY,
            metadata={
                "event_id": event.id,
                "event_type": event.type.value,
                "participants": list(event.participants),
                "quest_id": event.quest_id,
            },
        )

    async def get_working(self, subject_id: str, limit: int | None = None) -> list[Event]:
        """Return the most recent *limit* working events, oldest first."""
        limit = self._config.working_cap if limit is None else limit
        if limit <= 0:
            return []
        records = await self._storage.query(
            tier_collection(MemoryTier.working),
            subject_id,
            newest_first=True,
            limit=limit,
        )
        event_ids = [r["metadata"]["event_id"] for r in reversed(records)]
        docs = await self._storage.get_many(EVENTS, subject_id, event_ids)
        return [Event.model_validate(doc) for doc in docs]

    async def prune_working(self, subject_id: str) -> int:
        """Keep only the most recent ``working_cap`` working records."""
        async with self._lock(subject_id):
            _, evict = self._split_working(await self._working_records(subject_id))
            if not evict:
                return 0
            async with self._storage.transaction(subject_id) as tx:
                for record in evict:
                    tx.delete(tier_collection(MemoryTier.working), record.id)
        return len(evict)

    async def prune_all_working(self) -> int:
        """Prune every subject; brings stored data in line after a cap change."""
        pruned = 0
        for subject_id in await self._storage.subjects(tier_collection(MemoryTier.working)):
            pruned += await self.prune_working(subject_id)
        if pruned:
            logger.info("Pruned %d working records above the cap", pruned)
        return pruned

    async def working_count(self, subject_id: str) -> int:
        return await self._storage.count(tier_collection(MemoryTier.working), subject_id)

    async def get_event(self, subject_id: str, event_id: str) -> Event | None:
        doc = await self._storage.get(EVENTS, subject_id, event_id)
        return None if doc is None else Event.model_validate(doc)

    async def list_events(
        self,
        subject_id: str,
        *,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[Event]:
        docs = await self._storage.query(
            EVENTS,
            subject_id,
            min_score=since,
            max_score=until,
            newest_first=newest_first,
            limit=limit,
        )
        return [Event.model_validate(doc) for doc in docs]

    async def event_count(self, subject_id: str) -> int:
        return await self._storage.count(EVENTS, subject_id)

    async def _working_records(self, subject_id: str) -> list[MemoryRecord]:
        docs = await self._storage.query(tier_collection(MemoryTier.working), subject_id)
        return [MemoryRecord.model_validate(doc) for doc in docs]

    def _split_working(
        self, records: list[MemoryRecord]
    ) -> tuple[list[MemoryRecord], list[MemoryRecord]]:
        ordered = sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)
        cap = max(self._config.working_cap, 0)
        return ordered[:cap], ordered[cap:]

    # ------------------------------------------------------------------
    # Episode tier
    # ------------------------------------------------------------------

    async def compress_to_episode(
        self, subject_id: str, older_than: float | None = None
    ) -> Episode | None:
        """Compress uncompressed events older than *older_than* into one episode.

        Returns ``None`` when fewer than ``episode_min_batch`` events qualify.
        At most ``episode_max_batch`` events are consumed per call, oldest first.
        """
        now = self._clock()
        cutoff = (
            older_than
            if older_than is not None
            else now - self._config.episode_age_days * _DAY
        )
        async with self._lock(subject_id):
            cursor = await self._storage.get(CURSOR, subject_id, _CURSOR_ID)
            after = (cursor["timestamp"], cursor["event_id"]) if cursor else None
            candidates = await self.list_events(
                subject_id,
                since=after[0] if after else None,
                until=cutoff,
                newest_first=False,
            )
            eligible = [
                e
                for e in candidates
                if e.timestamp < cutoff and (after is None or (e.timestamp, e.id) > after)
            ]
            eligible.sort(key=lambda e: (e.timestamp, e.id))
            if len(eligible) < self._config.episode_min_batch:
                return None

            batch = eligible[: self._config.episode_max_batch]
            episode = build_episode(subject_id, batch)
            record = MemoryRecord(
                id=episode.id,
                subject_id=subject_id,
                tier=MemoryTier.episode,
                text=episode.summary_text,
                importance=self._config.episode_importance,
                created_at=now,
                last_accessed_at=now,
                expires_at=now + self._config.episode_ttl_days * _DAY,
                metadata={
                    "episode_id": episode.id,
                    "participants": episode.participants,
                    "event_count": episode.event_count,
                    "period_start": episode.period_start,
                    "period_end": episode.period_end,
                },
            )
            last = batch[-1]
            async with self._storage.transaction(subject_id) as tx:
                tx.put(EPISODES, episode.id, episode.model_dump(mode="json"), score=episode.period_end)
                tx.put(
                    tier_collection(MemoryTier.episode),
                    record.id,
                    record.model_dump(mode="json"),
                    score=record.created_at,
                )
                for event in batch:
                    tx.delete(tier_collection(MemoryTier.working), _working_id(event.id))
                tx.put(
                    CURSOR,
                    _CURSOR_ID,
                    {"timestamp": last.timestamp, "event_id": last.id},
                    score=last.timestamp,
                )

        logger.info(
            "Compressed %d events into episode %s for subject %s",
            episode.event_count,
            episode.id,
            subject_id,
        )
        return episode

    async def get_episodes(self, subject_id: str, count: int = 5) -> list[Episode]:
        """Return up to *count* live episodes, most recent first."""
        if count <= 0:
            return []
        now = self._clock()
        records = await self.get_records(subject_id, MemoryTier.episode)
        live = [r for r in records if not r.is_expired(now)][:count]
        docs = await self._storage.get_many(EPISODES, subject_id, [r.id for r in live])
        return [Episode.model_validate(doc) for doc in docs]

    # ------------------------------------------------------------------
    # Long-term tier
    # ------------------------------------------------------------------

    async def upsert_long_term(
        self,
        subject_id: str,
        fact: str,
        importance: float | None = None,
        *,
        metadata: dict | None = None,
        tx: Transaction | None = None,
    ) -> MemoryRecord:
        """Create or overwrite a never-expiring fact keyed by its normalized text."""
        fact = fact.strip()
        if not fact:
            raise ValueError("long-term fact must not be empty")
        now = self._clock()
        record_id = _long_term_id(fact)
        async with self._lock(subject_id):
            existing = await self._storage.get(
                tier_collection(MemoryTier.long_term), subject_id, record_id
            )
            created_at = existing["created_at"] if existing else now
            record = MemoryRecord(
                id=record_id,
                subject_id=subject_id,
                tier=MemoryTier.long_term,
                text=fact,
                importance=(
                    self._config.long_term_importance if importance is None else importance
                ),
                created_at=created_at,
                last_accessed_at=now,
                metadata={**(existing or {}).get("metadata", {}), **(metadata or {})},
            )
            await self._put_record(record, tx)
        return record

    async def reinforce(
        self,
        subject_id: str,
        fact: str,
        delta: float = 0.1,
        *,
        tx: Transaction | None = None,
    ) -> MemoryRecord | None:
        """Raise a fact's importance by *delta* (capped at 1) and refresh access time."""
        record_id = _long_term_id(fact)
        async with self._lock(subject_id):
            doc = await self._storage.get(
                tier_collection(MemoryTier.long_term), subject_id, record_id
            )
            if doc is None:
                return None
            record = MemoryRecord.model_validate(doc)
            updated = record.model_copy(
                update={
                    "importance": clamp_importance(record.importance + delta),
                    "last_accessed_at": self._clock(),
                }
            )
            await self._put_record(updated, tx)
        return updated

    async def get_long_term(
        self,
        subject_id: str,
        *,
        min_importance: float | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Return facts above the read threshold, most important first."""
        threshold = (
            self._config.long_term_read_threshold
            if min_importance is None
            else min_importance
        )
        limit = self._config.long_term_read_limit if limit is None else limit
        records = await self.get_records(subject_id, MemoryTier.long_term)
        kept = [r for r in records if r.importance > threshold]
        kept.sort(key=lambda r: (-r.importance, -r.last_accessed_at, r.id))
        return kept[:limit]

    async def _put_record(self, record: MemoryRecord, tx: Transaction | None = None) -> None:
        async with write_scope(self._storage, record.subject_id, tx) as batch:
            batch.put(
                tier_collection(record.tier),
                record.id,
                record.model_dump(mode="json"),
                score=record.created_at,
            )

    async def get_records(
        self,
        subject_id: str,
        tier: MemoryTier,
        *,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Raw tier read, newest first."""
        docs = await self._storage.query(
            tier_collection(tier),
            subject_id,
            min_score=since,
            newest_first=True,
            limit=limit,
        )
        return [MemoryRecord.model_validate(doc) for doc in docs]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def expire_stale(self, now: float | None = None) -> int:
        """Delete working and episode records past ``expires_at`` for every subject."""
        now = self._clock() if now is None else now
        removed = 0
        for tier in (MemoryTier.working, MemoryTier.episode):
            collection = tier_collection(tier)
            for subject_id in await self._storage.subjects(collection):
                async with self._lock(subject_id):
                    records = await self.get_records(subject_id, tier)
                    expired = [r for r in records if r.is_expired(now)]
                    if not expired:
                        continue
                    async with self._storage.transaction(subject_id) as tx:
                        for record in expired:
                            tx.delete(collection, record.id)
                            if tier is MemoryTier.episode:
                                tx.delete(EPISODES, record.id)
                removed += len(expired)
        if removed:
            logger.info("Expired %d stale memory records", removed)
        return removed

    # ------------------------------------------------------------------
    # Narrative summary
    # ------------------------------------------------------------------

    async def get_summary(self, subject_id: str) -> NarrativeSummary:
        doc = await self._storage.get(SUMMARY, subject_id, _SUMMARY_ID)
        if doc is None:
            text = self._config.default_summary
            return NarrativeSummary(
                subject_id=subject_id,
                text=text,
                word_count=len(text.split()),
                updated_at=0.0,
            )
        return NarrativeSummary.model_validate(doc)

    async def append_to_summary(self, subject_id: str, text: str) -> NarrativeSummary:
        """Append *text* and keep only the trailing ``summary_max_words`` words."""
        async with self._lock(subject_id):
            current = await self.get_summary(subject_id)
            return await self._write_summary(subject_id, f"{current.text} {text}")

    async def replace_summary(self, subject_id: str, text: str) -> NarrativeSummary:
        async with self._lock(subject_id):
            return await self._write_summary(subject_id, text)

    async def _write_summary(self, subject_id: str, text: str) -> NarrativeSummary:
        words = text.split()[-self._config.summary_max_words :]
        summary = NarrativeSummary(
            subject_id=subject_id,
            text=" ".join(words),
            word_count=len(words),
            updated_at=self._clock(),
        )
        async with self._storage.transaction(subject_id) as tx:
            tx.put(SUMMARY, _SUMMARY_ID, summary.model_dump(mode="json"), score=summary.updated_at)
        return summary

    # ------------------------------------------------------------------
    # Aggregate read
    # ------------------------------------------------------------------

    async def complete_context(self, subject_id: str) -> CompleteContext:
        working, episodes, long_term, summary = await asyncio.gather(
            self.get_working(subject_id),
            self.get_episodes(subject_id, count=3),
            self.get_long_term(subject_id),
            self.get_summary(subject_id),
        )
        return CompleteContext(
            subject_id=subject_id,
            working=working,
            episodes=episodes,
            long_term=long_term,
            summary=summary,
        )
