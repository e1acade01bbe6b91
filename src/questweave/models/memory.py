"""Memory tier data models."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from questweave.models.events import EventType


class MemoryTier(str, Enum):
    """Retention tiers of the memory store."""

    working = "working"
    episode = "episode"
    long_term = "long_term"


def clamp_importance(value: float) -> float:
    """Clamp an importance score into ``[0, 1]``."""
    return min(1.0, max(0.0, float(value)))


class MemoryRecord(BaseModel):
    """A retrievable memory unit belonging to one tier."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    subject_id: str = Field(
        min_length=1,
        description="Character the memory belongs to.",
    )
    tier: MemoryTier = Field(
        description="Retention tier.",
    )
    text: str = Field(
        description="Retrievable text of the memory.",
    )
    importance: float = Field(
        default=0.5,
        description="Importance score, always clamped to [0, 1].",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Optional precomputed embedding vector.",
    )
    created_at: float = Field(
        default_factory=time.time,
        description="Unix epoch when the record was created.",
    )
    last_accessed_at: float = Field(
        default_factory=time.time,
        description="Unix epoch of the last reinforcement or read.",
    )
    expires_at: float | None = Field(
        default=None,
        description="Unix epoch after which the record is stale; None never expires.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Tier-specific details (event id, participants, episode body).",
    )

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_importance(value)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class KeyEvent(BaseModel):
    """Condensed view of an event kept inside an episode."""

    type: EventType
    description: str
    timestamp: float


class Episode(BaseModel):
    """Compressed summary of a batch of aged-out events."""

    id: str = Field(
        default_factory=lambda: f"ep_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as ep_{uuid4_hex}.",
    )
    subject_id: str
    period_start: float
    period_end: float
    event_count: int
    event_ids: list[str] = Field(default_factory=list)
    key_events: list[KeyEvent] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    total_stat_changes: dict[str, int] = Field(default_factory=dict)
    summary_text: str
    created_at: float = Field(default_factory=time.time)


class NarrativeSummary(BaseModel):
    """Bounded rolling prose digest, one per subject."""

    subject_id: str
    text: str
    word_count: int = 0
    updated_at: float = Field(default_factory=time.time)


class ContextSource(str, Enum):
    """Origin of a retrieved context item."""

    event = "event"
    quest = "quest"
    episode = "episode"
    long_term = "long_term"


class ContextItem(BaseModel):
    """One ranked piece of context assembled for a generation step."""

    source: ContextSource
    id: str
    text: str
    timestamp: float
    importance: float = 0.5
    event_type: str | None = None
    participants: list[str] = Field(default_factory=list)
    keyword_score: float = 0.0
    semantic_score: float | None = None
    relevance: float = 0.0
    composite_score: float = 0.0


class CompleteContext(BaseModel):
    """All memory tiers for a subject gathered in one read."""

    subject_id: str
    working: list[Any] = Field(default_factory=list)
    episodes: list[Episode] = Field(default_factory=list)
    long_term: list[MemoryRecord] = Field(default_factory=list)
    summary: NarrativeSummary
