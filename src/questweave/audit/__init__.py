"""Audit subsystem: async JSONL event logging."""

from questweave.audit.schemas import AuditEvent
from questweave.audit.schemas import AuditEventType
from questweave.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
