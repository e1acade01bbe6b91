"""Memory domain: tiered memory store and event lifecycle."""

from __future__ import annotations

from typing import Any

from questweave.memory.episodes import build_episode
from questweave.memory.store import MemoryStore
from questweave.models.events import Event
from questweave.models.events import EventType
from questweave.models.events import StatCode

__all__ = ["MemoryStore", "build_episode", "create_event"]


def create_event(
    subject_id: str,
    event_type: EventType | str,
    description: str,
    *,
    participants: list[str] | None = None,
    stat_delta: dict[str, int] | None = None,
    quest_id: str | None = None,
    timestamp: float | None = None,
    context: dict[str, Any] | None = None,
) -> Event:
    """Factory for creating an Event with normalized fields.

    Stat codes are upper-cased and zero deltas dropped so episodes only
    aggregate real changes.
    """
    deltas = {
        StatCode(code.upper()): int(value)
        for code, value in (stat_delta or {}).items()
        if int(value) != 0
    }
    fields: dict[str, Any] = {
        "subject_id": subject_id,
        "type": EventType(event_type),
        "description": " ".join(description.split()),
        "participants": participants or [],
        "stat_delta": deltas,
        "quest_id": quest_id,
        "context": context or {},
    }
    if timestamp is not None:
        fields["timestamp"] = timestamp
    return Event(**fields)
