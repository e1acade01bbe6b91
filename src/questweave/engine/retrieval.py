"""Hybrid retrieval over the memory store.

Candidates are drawn from recent events, live episodes and every
long-term fact.  A keyword strategy is always available; a semantic
strategy runs alongside it when an embedding backend is configured and
silently drops out when that backend fails.  The final ranking uses
:func:`composite_score`, a pure function of age, relevance and importance.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable
from collections.abc import Sequence
from time import perf_counter

from questweave.config import RetrievalConfig
from questweave.engine.embeddings import EmbeddingAdapter
from questweave.engine.embeddings import EmbeddingCache
from questweave.engine.embeddings import EmbeddingUnavailable
from questweave.engine.embeddings import cosine_similarity
from questweave.memory.store import MemoryStore
from questweave.models.memory import ContextItem
from questweave.models.memory import ContextSource
from questweave.models.memory import MemoryTier
from questweave.observability import record_latency

logger = logging.getLogger(__name__)

_DAY = 86400.0

STOP_WORDS = frozenset(
    {"the", "and", "for", "with", "that", "this", "from", "have", "been", "your"}
)
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")

KEYWORD_HIT_POINTS = 10.0
RECENCY_MAX_BONUS = 20.0
HIGH_SIGNAL_BONUS = 15.0
PARTICIPANT_BONUS = 25.0


# ---------------------------------------------------------------------------
# Pure scoring helpers
# ---------------------------------------------------------------------------


def extract_keywords(text: str) -> list[str]:
    """Lowercase words longer than three characters, stop words removed, order kept."""
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    words = [w for w in cleaned.split() if len(w) > 3 and w not in STOP_WORDS]
    return list(dict.fromkeys(words))


def age_days(timestamp: float, now: float) -> float:
    return max(0.0, (now - timestamp) / _DAY)


def keyword_score(
    item: ContextItem,
    keywords: Sequence[str],
    query: str,
    now: float,
    high_signal_types: Sequence[str] = (),
) -> float:
    """Keyword relevance of one candidate.

    Ten points per keyword occurrence, a recency bonus that fades over
    twenty days, a flat bonus for high-signal event types and a larger
    one for every named participant the query mentions.
    """
    haystack = " ".join([item.text, *item.participants, item.event_type or ""]).lower()
    hits = sum(haystack.count(keyword) for keyword in keywords)
    score = hits * KEYWORD_HIT_POINTS
    score += max(0.0, RECENCY_MAX_BONUS - age_days(item.timestamp, now))
    if item.event_type and item.event_type in high_signal_types:
        score += HIGH_SIGNAL_BONUS
    query_lower = query.lower()
    score += PARTICIPANT_BONUS * sum(
        1 for name in item.participants if name and name.lower() in query_lower
    )
    return score


def composite_score(
    *,
    age: float,
    relevance: float,
    importance: float,
    recency_weight: float = 0.3,
    relevance_weight: float = 0.5,
    importance_weight: float = 0.2,
    decay_days: float = 30.0,
) -> float:
    """``wR·exp(-age/decay) + wV·relevance + wI·importance``."""
    return (
        recency_weight * math.exp(-max(age, 0.0) / decay_days)
        + relevance_weight * relevance
        + importance_weight * importance
    )


def _rank_key(item: ContextItem, score: float) -> tuple[float, float, str]:
    return (-score, -item.timestamp, item.id)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class KeywordStrategy:
    """Always-available lexical ranking."""

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        self._config = config or RetrievalConfig()

    def rank(
        self,
        candidates: Sequence[ContextItem],
        query: str,
        k: int,
        now: float,
    ) -> list[ContextItem]:
        """Return the top *k* candidates with ``keyword_score`` filled in."""
        keywords = extract_keywords(query)
        window_start = now - self._config.window_days * _DAY
        scored = [
            item.model_copy(
                update={
                    "keyword_score": keyword_score(
                        item, keywords, query, now, self._config.high_signal_types
                    )
                }
            )
            for item in candidates
            if item.source is ContextSource.long_term or item.timestamp >= window_start
        ]
        scored.sort(key=lambda item: _rank_key(item, item.keyword_score))
        return scored[: max(k, 0)]


class SemanticStrategy:
    """Cosine-similarity ranking over embedded candidate text."""

    def __init__(self, adapter: EmbeddingAdapter, *, cache_size: int = 1000) -> None:
        self._cache = EmbeddingCache(adapter, max_entries=cache_size)

    async def score(
        self, candidates: Sequence[ContextItem], query: str
    ) -> dict[str, float]:
        """Map candidate id to similarity in ``[0, 1]``.

        Raises :class:`EmbeddingUnavailable` when the backend fails.
        """
        if not candidates:
            return {}
        vectors = await self._cache.embed([query, *(c.text for c in candidates)])
        query_vector, item_vectors = vectors[0], vectors[1:]
        return {
            item.id: max(0.0, cosine_similarity(query_vector, vector))
            for item, vector in zip(candidates, item_vectors)
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RetrievalEngine:
    """Assemble ranked context for one subject and query."""

    def __init__(
        self,
        memory: MemoryStore,
        config: RetrievalConfig | None = None,
        *,
        semantic: SemanticStrategy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._memory = memory
        self._config = config or RetrievalConfig()
        self._keyword = KeywordStrategy(self._config)
        self._semantic = semantic
        self._clock = clock

    @property
    def semantic_enabled(self) -> bool:
        return self._semantic is not None

    async def retrieve(
        self, subject_id: str, query: str, k: int | None = None
    ) -> list[ContextItem]:
        """Return up to *k* context items ranked by composite score."""
        start = perf_counter()
        ok = False
        k = self._config.default_k if k is None else k
        try:
            if k <= 0:
                ok = True
                return []
            now = self._clock()
            candidates = await self.load_candidates(subject_id, now)
            keyword_ranked, semantic_scores = await asyncio.gather(
                self._keyword_query(candidates, query, k * 2, now),
                self._semantic_query(candidates, query),
            )
            ranked = self._combine(
                keyword_ranked, semantic_scores, candidates, query, k, now
            )
            ok = True
            return ranked
        finally:
            record_latency(
                operation="retrieval.retrieve",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def load_candidates(self, subject_id: str, now: float) -> list[ContextItem]:
        window_days = (
            max(self._config.window_days, self._config.semantic_window_days)
            if self._semantic is not None
            else self._config.window_days
        )
        since = now - window_days * _DAY
        limit = self._config.candidate_limit * (2 if self._semantic is not None else 1)
        events, episodes, facts = await asyncio.gather(
            self._memory.list_events(subject_id, since=since, limit=limit),
            self._memory.get_records(subject_id, MemoryTier.episode, since=since),
            self._memory.get_records(subject_id, MemoryTier.long_term),
        )

        items: list[ContextItem] = []
        high_signal = set(self._config.high_signal_types)
        for event in events:
            items.append(
                ContextItem(
                    source=ContextSource.quest if event.is_quest else ContextSource.event,
                    id=event.id,
                    text=event.description,
                    timestamp=event.timestamp,
                    importance=0.7 if event.type.value in high_signal else 0.5,
                    event_type=event.type.value,
                    participants=list(event.participants),
                )
            )
        for record in episodes:
            if record.is_expired(now):
                continue
            items.append(
                ContextItem(
                    source=ContextSource.episode,
                    id=record.id,
                    text=record.text,
                    timestamp=float(record.metadata.get("period_end", record.created_at)),
                    importance=record.importance,
                    participants=list(record.metadata.get("participants", [])),
                )
            )
        for record in facts:
            items.append(
                ContextItem(
                    source=ContextSource.long_term,
                    id=record.id,
                    text=record.text,
                    timestamp=record.last_accessed_at,
                    importance=record.importance,
                    participants=list(record.metadata.get("participants", [])),
                )
            )
        return items

    async def _keyword_query(
        self,
        candidates: Sequence[ContextItem],
        query: str,
        k: int,
        now: float,
    ) -> list[ContextItem]:
        return self._keyword.rank(candidates, query, k, now)

    async def _semantic_query(
        self, candidates: Sequence[ContextItem], query: str
    ) -> dict[str, float] | None:
        if self._semantic is None:
            return None
        start = perf_counter()
        try:
            scores = await self._semantic.score(candidates, query)
        except EmbeddingUnavailable as exc:
            logger.warning("Semantic retrieval unavailable, keyword only: %s", exc)
            record_latency(
                operation="retrieval.semantic",
                duration_ms=(perf_counter() - start) * 1000,
                ok=False,
            )
            return None
        record_latency(
            operation="retrieval.semantic",
            duration_ms=(perf_counter() - start) * 1000,
        )
        return scores

    def _combine(
        self,
        keyword_ranked: list[ContextItem],
        semantic_scores: dict[str, float] | None,
        candidates: Sequence[ContextItem],
        query: str,
        k: int,
        now: float,
    ) -> list[ContextItem]:
        pool: dict[str, ContextItem] = {item.id: item for item in keyword_ranked}
        if semantic_scores is not None:
            by_id = {item.id: item for item in candidates}
            top_semantic = sorted(
                semantic_scores.items(), key=lambda kv: (-kv[1], kv[0])
            )[: k * 2]
            keywords = extract_keywords(query)
            for item_id, _ in top_semantic:
                if item_id not in pool and item_id in by_id:
                    item = by_id[item_id]
                    pool[item_id] = item.model_copy(
                        update={
                            "keyword_score": keyword_score(
                                item,
                                keywords,
                                query,
                                now,
                                self._config.high_signal_types,
                            )
                        }
                    )

        max_keyword = max((item.keyword_score for item in pool.values()), default=0.0)
        cfg = self._config
        final: list[ContextItem] = []
        for item in pool.values():
            keyword_norm = item.keyword_score / max_keyword if max_keyword > 0 else 0.0
            semantic = None
            if semantic_scores is not None:
                semantic = semantic_scores.get(item.id, 0.0)
                relevance = cfg.semantic_weight * semantic + cfg.keyword_weight * keyword_norm
            else:
                relevance = keyword_norm
            score = composite_score(
                age=age_days(item.timestamp, now),
                relevance=relevance,
                importance=item.importance,
                recency_weight=cfg.recency_weight,
                relevance_weight=cfg.relevance_weight,
                importance_weight=cfg.importance_weight,
                decay_days=cfg.decay_days,
            )
            final.append(
                item.model_copy(
                    update={
                        "semantic_score": semantic,
                        "relevance": relevance,
                        "composite_score": score,
                    }
                )
            )
        final.sort(key=lambda item: _rank_key(item, item.composite_score))
        return final[:k]
