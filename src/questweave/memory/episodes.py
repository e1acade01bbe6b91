"""Episode construction from a batch of aged-out events."""

from __future__ import annotations

from collections.abc import Sequence

from questweave.models.events import Event
from questweave.models.events import StatCode
from questweave.models.memory import Episode
from questweave.models.memory import KeyEvent

_KEY_EVENT_LIMIT = 5


def build_episode(subject_id: str, events: Sequence[Event]) -> Episode:
    """Summarize *events* (chronological, non-empty) into an :class:`Episode`."""
    if not events:
        raise ValueError("cannot build an episode from zero events")

    participants: list[str] = []
    for event in events:
        for name in event.participants:
            if name not in participants:
                participants.append(name)

    totals = {code.value: 0 for code in StatCode}
    for event in events:
        for code, delta in event.stat_delta.items():
            totals[StatCode(code).value] += int(delta)

    return Episode(
        subject_id=subject_id,
        period_start=events[0].timestamp,
        period_end=events[-1].timestamp,
        event_count=len(events),
        event_ids=[e.id for e in events],
        key_events=[
            KeyEvent(type=e.type, description=e.description, timestamp=e.timestamp)
            for e in events[:_KEY_EVENT_LIMIT]
        ],
        participants=participants,
        total_stat_changes=totals,
        summary_text=summarize(len(events), participants, totals),
    )


def summarize(count: int, participants: Sequence[str], totals: dict[str, int]) -> str:
    text = f"During this period, the character completed {count} activities"
    if participants:
        text += f", involving {', '.join(participants)}"
    gains = [f"{code} {delta:+d}" for code, delta in totals.items() if delta]
    if gains:
        text += f", with stat changes {', '.join(gains)}"
    return text + "."
