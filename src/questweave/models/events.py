"""Gameplay event models: the immutable source of truth for memory tiers."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator


class EventType(str, Enum):
    """Kinds of gameplay facts recorded against a subject."""

    goal_completion = "goal_completion"
    quest_start = "quest_start"
    quest_complete = "quest_complete"
    quest_fail = "quest_fail"
    npc_interaction = "npc_interaction"
    dm_interaction = "dm_interaction"
    choice_made = "choice_made"
    level_up = "level_up"
    skill_check = "skill_check"
    combat_start = "combat_start"
    combat_end = "combat_end"
    world_event = "world_event"


QUEST_EVENT_TYPES = frozenset(
    {EventType.quest_start, EventType.quest_complete, EventType.quest_fail}
)


class StatCode(str, Enum):
    """The six ability scores."""

    STR = "STR"
    DEX = "DEX"
    CON = "CON"
    INT = "INT"
    WIS = "WIS"
    CHA = "CHA"


class Event(BaseModel):
    """A single immutable gameplay fact."""

    model_config = {"frozen": True}

    id: str = Field(
        default_factory=lambda: f"evt_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as evt_{uuid4_hex}.",
    )
    subject_id: str = Field(
        min_length=1,
        description="Character the event belongs to.",
    )
    type: EventType = Field(
        description="Category of the gameplay fact.",
    )
    description: str = Field(
        min_length=1,
        description="Human-readable account of what happened.",
    )
    participants: list[str] = Field(
        default_factory=list,
        description="Named characters involved (deduplicated, order kept).",
    )
    stat_delta: dict[StatCode, int] = Field(
        default_factory=dict,
        description="Ability score changes produced by the event.",
    )
    quest_id: str | None = Field(
        default=None,
        description="Quest the event advanced, if any.",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary structured context captured with the event.",
    )

    @field_validator("participants")
    @classmethod
    def _dedupe_participants(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for name in value:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return seen

    @property
    def is_quest(self) -> bool:
        return self.type in QUEST_EVENT_TYPES
