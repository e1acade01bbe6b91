"""Multi-tier response cache in front of the generative model.

Tiers, consulted in order:

1. **exact**: sha256 fingerprint of the normalized request.
2. **semantic**: a recent request for the same subject, world-state
   version and system prompt whose user prompt is similar enough.
3. **static**: reusable prompt fragments (world bible sections,
   character profiles) keyed by component type and identifier.

Entries in the first two tiers record the world-state version the
request was looked up under; a store whose version has since moved on
is dropped.  Any state-changing write bumps the version and clears the
subject's entries, so a response generated under old state is never served.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from threading import Lock

from pydantic import BaseModel

from questweave.config import CacheConfig
from questweave.engine.embeddings import EmbeddingAdapter
from questweave.engine.embeddings import EmbeddingUnavailable
from questweave.engine.embeddings import cosine_similarity
from questweave.engine.embeddings import lexical_similarity
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelResponse
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

logger = logging.getLogger(__name__)

EXACT = "cache_exact"
SEMANTIC = "cache_semantic"
STATIC = "cache_static"
STATE = "cache_state"
_STATIC_SUBJECT = "_static"
_STATE_ID = "version"


class CacheTier(str, Enum):
    exact = "exact"
    semantic = "semantic"
    static = "static"


class CachedResponse(BaseModel):
    fingerprint: str
    subject_id: str
    state_version: int
    system_fingerprint: str
    user_prompt: str
    response: ModelResponse
    embedding: list[float] | None = None
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a lookup; ``tier`` is None on a miss.

    ``state_version`` is the subject version the lookup ran under; pass it
    back to :meth:`ResponseCache.store` for the reply generated on a miss.
    """

    tier: CacheTier | None = None
    response: ModelResponse | None = None
    similarity: float | None = None
    state_version: int | None = None

    @property
    def hit(self) -> bool:
        return self.response is not None


@dataclass
class _Counters:
    hits: int = 0
    misses: int = 0


class ResponseCache:
    """Subject-scoped response cache backed by the storage boundary."""

    def __init__(
        self,
        storage: Storage,
        config: CacheConfig | None = None,
        *,
        embedder: EmbeddingAdapter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._config = config or CacheConfig()
        self._embedder = embedder
        self._clock = clock
        self._lock = Lock()
        self._counters = {tier: _Counters() for tier in CacheTier}
        self._bypassed = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Response tiers
    # ------------------------------------------------------------------

    async def lookup(self, subject_id: str, request: ModelRequest) -> CacheLookup:
        """Consult the exact then semantic tier for *request*."""
        if not self._config.enabled or not request.cacheable:
            with self._lock:
                self._bypassed += 1
            return CacheLookup()
        try:
            return await self._lookup(subject_id, request)
        except Exception:
            with self._lock:
                self._errors += 1
            raise

    async def _lookup(self, subject_id: str, request: ModelRequest) -> CacheLookup:
        now = self._clock()
        version = await self.state_version(subject_id)

        doc = await self._storage.get(EXACT, subject_id, request.fingerprint())
        if doc is not None:
            entry = CachedResponse.model_validate(doc)
            if self._live(entry, version, now):
                self._count(CacheTier.exact, hit=True)
                return CacheLookup(CacheTier.exact, entry.response, 1.0, version)
            await self._drop(subject_id, EXACT, entry.fingerprint)
        self._count(CacheTier.exact, hit=False)

        match = await self._semantic_match(subject_id, request, version, now)
        if match is not None:
            entry, similarity = match
            self._count(CacheTier.semantic, hit=True)
            return CacheLookup(CacheTier.semantic, entry.response, similarity, version)
        self._count(CacheTier.semantic, hit=False)
        return CacheLookup(state_version=version)

    async def _semantic_match(
        self,
        subject_id: str,
        request: ModelRequest,
        version: int,
        now: float,
    ) -> tuple[CachedResponse, float] | None:
        docs = await self._storage.query(
            SEMANTIC,
            subject_id,
            newest_first=True,
            limit=self._config.semantic_scan_limit,
        )
        system_fp = request.system_fingerprint()
        entries = [
            entry
            for entry in (CachedResponse.model_validate(d) for d in docs)
            if self._live(entry, version, now)
            and entry.system_fingerprint == system_fp
        ]
        if not entries:
            return None

        query_vector = await self._embed(request.user_prompt)
        best: tuple[CachedResponse, float] | None = None
        for entry in entries:
            if query_vector is not None and entry.embedding is not None:
                similarity = cosine_similarity(query_vector, entry.embedding)
            else:
                similarity = lexical_similarity(request.user_prompt, entry.user_prompt)
            if best is None or similarity > best[1]:
                best = (entry, similarity)
        if best is not None and best[1] >= self._config.similarity_threshold:
            return best
        return None

    async def store(
        self,
        subject_id: str,
        request: ModelRequest,
        response: ModelResponse,
        *,
        state_version: int | None = None,
    ) -> bool:
        """Populate the exact and semantic tiers after a successful call.

        *state_version* is the version from the lookup that missed.  When the
        subject was invalidated since, the reply is not stored and ``False``
        is returned.
        """
        if not self._config.enabled or not request.cacheable:
            return False
        now = self._clock()
        current = await self.state_version(subject_id)
        version = current if state_version is None else state_version
        if version != current:
            logger.debug(
                "Not caching reply for %s: generated under version %d, now %d",
                subject_id,
                version,
                current,
            )
            return False
        entry = CachedResponse(
            fingerprint=request.fingerprint(),
            subject_id=subject_id,
            state_version=version,
            system_fingerprint=request.system_fingerprint(),
            user_prompt=request.user_prompt,
            response=response,
            embedding=await self._embed(request.user_prompt),
            created_at=now,
            expires_at=now + self._config.exact_ttl_seconds,
        )
        semantic_entry = entry.model_copy(
            update={"expires_at": now + self._config.semantic_ttl_seconds}
        )
        async with self._storage.transaction(subject_id) as tx:
            tx.put(EXACT, entry.fingerprint, entry.model_dump(mode="json"), score=now)
            tx.put(
                SEMANTIC,
                entry.fingerprint,
                semantic_entry.model_dump(mode="json"),
                score=now,
            )
        return True

    async def state_version(self, subject_id: str) -> int:
        doc = await self._storage.get(STATE, subject_id, _STATE_ID)
        return int(doc["version"]) if doc else 0

    async def invalidate_subject(
        self, subject_id: str, *, tx: Transaction | None = None
    ) -> int:
        """Retire every response cached under the subject's current state."""
        version = await self.state_version(subject_id) + 1
        async with write_scope(self._storage, subject_id, tx) as batch:
            batch.clear(EXACT)
            batch.clear(SEMANTIC)
            batch.put(STATE, _STATE_ID, {"version": version}, score=self._clock())
        logger.debug("Cache invalidated for subject %s (version %d)", subject_id, version)
        return version

    # ------------------------------------------------------------------
    # Static components
    # ------------------------------------------------------------------

    async def get_component(self, component_type: str, identifier: str) -> str | None:
        doc = await self._storage.get(
            STATIC, _STATIC_SUBJECT, f"{component_type}:{identifier}"
        )
        if doc is None or doc["expires_at"] <= self._clock():
            self._count(CacheTier.static, hit=False)
            return None
        self._count(CacheTier.static, hit=True)
        return doc["content"]

    async def put_component(
        self, component_type: str, identifier: str, content: str
    ) -> None:
        now = self._clock()
        await self._storage.put(
            STATIC,
            _STATIC_SUBJECT,
            f"{component_type}:{identifier}",
            {
                "content": content,
                "created_at": now,
                "expires_at": now + self._config.static_ttl_seconds,
            },
            score=now,
        )

    async def invalidate_component(self, component_type: str, identifier: str) -> None:
        async with self._storage.transaction(_STATIC_SUBJECT) as tx:
            tx.delete(STATIC, f"{component_type}:{identifier}")

    async def component(
        self,
        component_type: str,
        identifier: str,
        build: Callable[[], str],
    ) -> str:
        """Return a cached component, building and caching it on a miss."""
        cached = await self.get_component(component_type, identifier)
        if cached is not None:
            return cached
        content = build()
        await self.put_component(component_type, identifier, content)
        return content

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, object]:
        with self._lock:
            tiers = {
                tier.value: {"hits": c.hits, "misses": c.misses}
                for tier, c in self._counters.items()
            }
            bypassed = self._bypassed
            errors = self._errors
        requests = tiers["exact"]["hits"] + tiers["exact"]["misses"]
        response_hits = tiers["exact"]["hits"] + tiers["semantic"]["hits"]
        return {
            "tiers": tiers,
            "requests": requests,
            "hit_rate": round(response_hits / requests, 3) if requests else 0.0,
            "bypassed": bypassed,
            "errors": errors,
        }

    def reset_stats(self) -> None:
        with self._lock:
            self._counters = {tier: _Counters() for tier in CacheTier}
            self._bypassed = 0
            self._errors = 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _count(self, tier: CacheTier, *, hit: bool) -> None:
        with self._lock:
            if hit:
                self._counters[tier].hits += 1
            else:
                self._counters[tier].misses += 1

    @staticmethod
    def _live(entry: CachedResponse, version: int, now: float) -> bool:
        return entry.state_version == version and entry.expires_at > now

    async def _drop(self, subject_id: str, collection: str, fingerprint: str) -> None:
        async with self._storage.transaction(subject_id) as tx:
            tx.delete(collection, fingerprint)

    async def _embed(self, text: str) -> list[float] | None:
        if self._embedder is None:
            return None
        try:
            return (await self._embedder.embed([text]))[0]
        except EmbeddingUnavailable as exc:
            logger.warning("Cache embedding unavailable, using lexical match: %s", exc)
            return None
