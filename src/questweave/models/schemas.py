"""Pydantic models for the turn pipeline and the MCP tool surface.

Input models validate tool arguments; output models shape responses.
FastMCP serializes Pydantic models automatically.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from questweave.combat.schemas import CombatState
from questweave.engine.skill_checks import SkillCheckResult
from questweave.models.events import EventType
from questweave.models.events import StatCode

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TurnStatus(str, Enum):
    """Overall outcome of a turn."""

    ok = "ok"
    degraded = "degraded"
    rejected = "rejected"
    error = "error"


class CacheOutcome(str, Enum):
    exact = "exact"
    semantic = "semantic"
    miss = "miss"
    bypass = "bypass"


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class TurnRequest(BaseModel):
    """One player action submitted to the pipeline."""

    subject_id: str = Field(
        min_length=1,
        description="Character whose turn is being processed.",
    )
    action: str = Field(
        min_length=1,
        max_length=2000,
        description="Free-text description of what the player does.",
    )
    session_id: str = Field(
        default="default",
        min_length=1,
        description="Client session the turn belongs to.",
    )
    explicit_roll: int | None = Field(
        default=None,
        description="A d20 result rolled by the player; never generated by the system.",
    )
    scene: str | None = Field(
        default=None,
        description="Optional description of the current scene.",
    )


class SubmitInitiativeInput(BaseModel):
    subject_id: str = Field(min_length=1)
    roll: int = Field(description="The player's own d20 initiative roll (1-20).")


class RecordEventInput(BaseModel):
    """Input for record_event tool."""

    subject_id: str = Field(min_length=1)
    type: EventType = Field(description="Gameplay event category.")
    description: str = Field(min_length=1, max_length=2000)
    participants: list[str] = Field(
        default_factory=list,
        description="Named characters involved in the event.",
    )
    stat_delta: dict[StatCode, int] = Field(
        default_factory=dict,
        description="Stat changes caused by the event.",
    )
    quest_id: str | None = None


class RememberFactInput(BaseModel):
    """Input for remember_fact tool."""

    subject_id: str = Field(min_length=1)
    fact: str = Field(min_length=1, max_length=1000)
    importance: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Initial importance in [0, 1]; defaults to the long-term default.",
    )


class GetMemoryInput(BaseModel):
    subject_id: str = Field(min_length=1)
    query: str | None = Field(
        default=None,
        description="Optional text to rank memories against.",
    )
    k: int = Field(default=5, ge=1, le=50)


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class ValidationSummary(BaseModel):
    score: int
    passed: bool
    low_confidence: bool = False
    degraded: bool = False
    violations: list[str] = Field(default_factory=list)


class TurnError(BaseModel):
    error_code: str
    message: str
    retryable: bool = False


class TurnResult(BaseModel):
    """Response from process_turn.  Always produced, even on failure."""

    subject_id: str
    session_id: str
    status: TurnStatus = TurnStatus.ok
    narrative: str = Field(
        default="",
        description="Narrator text to show the player.",
    )
    continuation: str | None = None
    skill_check: SkillCheckResult | None = None
    combat: CombatState | None = None
    validation: ValidationSummary | None = None
    cache: CacheOutcome = CacheOutcome.miss
    event_id: str | None = None
    turn_count: int = 0
    error: TurnError | None = None
    diagnostics: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Pipeline trace, one entry per step.",
    )


class CombatStateResult(BaseModel):
    subject_id: str
    status: str = "ok"
    phase: str
    combat: CombatState | None = None
    narrative: str = ""
    error_code: str | None = None
    message: str | None = None


class RecordEventResult(BaseModel):
    event_id: str = ""
    status: str = Field(
        default="accepted",
        description="Ingestion status (accepted, rejected, error).",
    )
    working_count: int = 0
    error_code: str | None = None
    message: str | None = None


class RememberFactResult(BaseModel):
    memory_id: str = ""
    importance: float = 0.0
    status: str = "accepted"
    error_code: str | None = None
    message: str | None = None


class MemoryItem(BaseModel):
    id: str
    source: str
    text: str
    timestamp: float
    importance: float
    score: float | None = None


class GetMemoryResult(BaseModel):
    subject_id: str
    status: str = "ok"
    summary: str = ""
    working: list[MemoryItem] = Field(default_factory=list)
    episodes: list[MemoryItem] = Field(default_factory=list)
    long_term: list[MemoryItem] = Field(default_factory=list)
    retrieved: list[MemoryItem] = Field(
        default_factory=list,
        description="Ranked context for the query, when one was given.",
    )
    error_code: str | None = None
    message: str | None = None
