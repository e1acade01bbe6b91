"""Embedding backends and vector similarity helpers."""

from __future__ import annotations

import asyncio
import json
import math
import re
from collections import Counter
from collections import OrderedDict
from collections.abc import Sequence
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from questweave.config import EmbeddingConfig


class EmbeddingUnavailable(Exception):
    """Raised by embedding adapters when a call fails."""


@runtime_checkable
class EmbeddingAdapter(Protocol):
    """Protocol for text embedding providers."""

    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


class OpenAICompatibleEmbeddingAdapter(EmbeddingAdapter):
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 5.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_sync, list(texts))

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps({"model": self._model, "input": texts}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            raise EmbeddingUnavailable(f"embedding HTTP {exc.code}") from exc
        except (URLError, OSError) as exc:
            raise EmbeddingUnavailable(f"embedding network error: {exc}") from exc

        try:
            rows = sorted(json.loads(raw)["data"], key=lambda row: row["index"])
            vectors = [[float(x) for x in row["embedding"]] for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingUnavailable("embedding response missing data[].embedding") from exc
        if len(vectors) != len(texts):
            raise EmbeddingUnavailable(
                f"expected {len(texts)} embeddings, got {len(vectors)}"
            )
        return vectors


def build_embedding_adapter(config: EmbeddingConfig) -> EmbeddingAdapter | None:
    """Create an embedding adapter, or ``None`` when semantic search is off."""

    provider = config.provider.strip().lower()
    if provider in ("none", ""):
        return None
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbeddingAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
        )
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, none."
    )


# ---------------------------------------------------------------------------
# Memoisation
# ---------------------------------------------------------------------------


class EmbeddingCache:
    """Bounded LRU of text -> vector around an adapter."""

    def __init__(self, adapter: EmbeddingAdapter, *, max_entries: int = 1000) -> None:
        self._adapter = adapter
        self._max_entries = max_entries
        self._vectors: OrderedDict[str, list[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._vectors)

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        missing = [t for t in dict.fromkeys(texts) if t not in self._vectors]
        if missing:
            vectors = await self._adapter.embed(missing)
            for text, vector in zip(missing, vectors):
                self._remember(text, vector)
        result: list[list[float]] = []
        for text in texts:
            vector = self._vectors.get(text)
            if vector is None:
                # Evicted while filling a batch larger than the cache.
                vector = (await self._adapter.embed([text]))[0]
            else:
                self._vectors.move_to_end(text)
            result.append(vector)
        return result

    def _remember(self, text: str, vector: list[float]) -> None:
        self._vectors[text] = vector
        self._vectors.move_to_end(text)
        while len(self._vectors) > self._max_entries:
            self._vectors.popitem(last=False)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def lexical_similarity(a: str, b: str) -> float:
    """Cosine similarity of term-frequency vectors."""
    left = Counter(_TOKEN_RE.findall(a.lower()))
    right = Counter(_TOKEN_RE.findall(b.lower()))
    if not left or not right:
        return 0.0
    dot = sum(count * right[token] for token, count in left.items())
    norm = math.sqrt(sum(c * c for c in left.values())) * math.sqrt(
        sum(c * c for c in right.values())
    )
    return dot / norm if norm else 0.0
