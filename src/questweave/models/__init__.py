"""Shared domain models."""

from questweave.models.character import CharacterSheet
from questweave.models.character import ability_modifier
from questweave.models.events import Event
from questweave.models.events import EventType
from questweave.models.events import StatCode
from questweave.models.memory import CompleteContext
from questweave.models.memory import ContextItem
from questweave.models.memory import ContextSource
from questweave.models.memory import Episode
from questweave.models.memory import KeyEvent
from questweave.models.memory import MemoryRecord
from questweave.models.memory import MemoryTier
from questweave.models.memory import NarrativeSummary
from questweave.models.memory import clamp_importance

__all__ = [
    "CharacterSheet",
    "CompleteContext",
    "ContextItem",
    "ContextSource",
    "Episode",
    "Event",
    "EventType",
    "KeyEvent",
    "MemoryRecord",
    "MemoryTier",
    "NarrativeSummary",
    "StatCode",
    "ability_modifier",
    "clamp_importance",
]
