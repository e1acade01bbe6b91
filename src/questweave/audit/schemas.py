"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    TURN_PROCESSED = "TURN_PROCESSED"
    TURN_DEGRADED = "TURN_DEGRADED"
    TURN_FAILED = "TURN_FAILED"
    SKILL_CHECK_RESOLVED = "SKILL_CHECK_RESOLVED"
    COMBAT_STARTED = "COMBAT_STARTED"
    COMBAT_RESOLVED = "COMBAT_RESOLVED"
    ENCOUNTER_RESET = "ENCOUNTER_RESET"
    EPISODE_COMPRESSED = "EPISODE_COMPRESSED"
    VALIDATION_REJECTED = "VALIDATION_REJECTED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    subject_id: str | None = Field(
        default=None,
        description="Character the event concerns, if any.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary event-specific data.",
    )
