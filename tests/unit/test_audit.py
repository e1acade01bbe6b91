"""Unit tests for the audit logger."""

from __future__ import annotations

import json
from pathlib import Path

from questweave.audit import AuditEvent
from questweave.audit import AuditEventType
from questweave.audit import AuditLogger
from questweave.config import AuditConfig


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: AuditEventType = AuditEventType.TURN_PROCESSED,
    timestamp: float = 1000.0,
    subject_id: str | None = "hero",
    payload: dict | None = None,
) -> AuditEvent:
    return AuditEvent(
        timestamp=timestamp,
        event_type=event_type,
        subject_id=subject_id,
        payload=payload or {},
    )


def _config(tmp_path: Path, *, enabled: bool = True) -> AuditConfig:
    return AuditConfig(file_path=str(tmp_path / "test_audit.jsonl"), enabled=enabled)


# ---------------------------------------------------------------------------
# AuditEvent schema
# ---------------------------------------------------------------------------


class TestAuditEventSchema:
    def test_audit_event_has_correct_schema(self):
        evt = _make_event(
            event_type=AuditEventType.SKILL_CHECK_RESOLVED,
            timestamp=1234.5,
            payload={"skill": "Athletics"},
        )
        assert evt.event_type == AuditEventType.SKILL_CHECK_RESOLVED
        assert evt.timestamp == 1234.5
        assert evt.subject_id == "hero"
        assert evt.payload == {"skill": "Athletics"}


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


class TestAuditLogWrite:
    async def test_log_event_writes_jsonl_line(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event())

        lines = Path(logger.config.file_path).read_text().strip().splitlines()
        assert len(lines) == 1
        data = json.loads(lines[0])
        assert data["event_type"] == "TURN_PROCESSED"
        assert data["subject_id"] == "hero"

    async def test_multiple_events_append(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event(timestamp=1.0))
        await logger.log(_make_event(timestamp=2.0))
        await logger.log(_make_event(timestamp=3.0))

        lines = Path(logger.config.file_path).read_text().strip().splitlines()
        assert len(lines) == 3

    async def test_disabled_audit_does_not_write(self, tmp_path: Path):
        cfg = _config(tmp_path, enabled=False)
        logger = AuditLogger(cfg)
        await logger.log(_make_event())

        assert not Path(cfg.file_path).exists()

    async def test_emit_builds_event_from_payload(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))

        assert await logger.emit(AuditEventType.COMBAT_STARTED, "hero", enemies=2) is True

        (event,) = await logger.read_events()
        assert event.event_type == AuditEventType.COMBAT_STARTED
        assert event.payload == {"enemies": 2}

    async def test_emit_reports_io_failure(self, tmp_path: Path):
        # The parent directory does not exist, so the append fails.
        cfg = AuditConfig(file_path=str(tmp_path / "missing" / "audit.jsonl"))
        logger = AuditLogger(cfg)

        assert await logger.emit(AuditEventType.TURN_FAILED, "hero") is False


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestAuditLogRead:
    async def test_read_events_filter_by_type(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event(AuditEventType.TURN_PROCESSED, 1.0))
        await logger.log(_make_event(AuditEventType.TURN_DEGRADED, 2.0))
        await logger.log(_make_event(AuditEventType.TURN_PROCESSED, 3.0))

        events = await logger.read_events(event_type=AuditEventType.TURN_PROCESSED)
        assert [e.timestamp for e in events] == [1.0, 3.0]

    async def test_read_events_filter_by_subject(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event(subject_id="hero"))
        await logger.log(_make_event(subject_id="rival"))

        events = await logger.read_events(subject_id="rival")
        assert [e.subject_id for e in events] == ["rival"]

    async def test_read_events_filter_by_since(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event(timestamp=100.0))
        await logger.log(_make_event(timestamp=200.0))
        await logger.log(_make_event(timestamp=300.0))

        events = await logger.read_events(since=200.0)
        assert [e.timestamp for e in events] == [200.0, 300.0]

    async def test_malformed_lines_are_skipped(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        await logger.log(_make_event())
        with open(logger.config.file_path, "a") as fh:
            fh.write("{not json\n")
        await logger.log(_make_event(timestamp=2.0))

        events = await logger.read_events()
        assert len(events) == 2

    async def test_read_events_empty_when_no_file(self, tmp_path: Path):
        logger = AuditLogger(_config(tmp_path))
        assert await logger.read_events() == []
