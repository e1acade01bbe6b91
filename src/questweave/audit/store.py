"""Async JSONL audit logger."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from questweave.audit.schemas import AuditEvent
from questweave.audit.schemas import AuditEventType
from questweave.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSONL audit trail of turn-level events.

    File I/O runs in ``asyncio.to_thread`` behind an ``asyncio.Lock``.
    Audit writes are best effort from the pipeline's point of view: use
    :meth:`emit` where a failed write must not abort the caller.
    """

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def log(self, event: AuditEvent) -> None:
        """Append *event* as a single JSON line to the audit file."""
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(
                partial(self._append, self.config.file_path, line),
            )

    async def emit(
        self,
        event_type: AuditEventType,
        subject_id: str | None = None,
        **payload: Any,
    ) -> bool:
        """Log an event, reporting an I/O failure instead of raising it."""
        event = AuditEvent(event_type=event_type, subject_id=subject_id, payload=payload)
        try:
            await self.log(event)
        except OSError:
            logger.exception("Failed to write %s audit event", event_type.value)
            return False
        return True

    @staticmethod
    def _append(path: str, line: str) -> None:
        with open(path, "a") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        subject_id: str | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Read events back from the audit file, optionally filtered."""
        path = Path(self.config.file_path)
        if not path.exists():
            return []

        async with self._lock:
            raw = await asyncio.to_thread(path.read_text)
        events: list[AuditEvent] = []
        for line_no, line in enumerate(raw.strip().splitlines(), start=1):
            try:
                evt = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning(
                    "Skipping malformed audit event line %d in %s",
                    line_no,
                    path,
                )
                continue
            if event_type is not None and evt.event_type != event_type:
                continue
            if subject_id is not None and evt.subject_id != subject_id:
                continue
            if since is not None and evt.timestamp < since:
                continue
            events.append(evt)
        return events
