"""Combat subsystem exceptions."""

from __future__ import annotations


class EncounterInvariantViolation(Exception):
    """More than one active encounter exists for a subject.

    Fatal for the subject's combat state: the encounter store is reset
    to no encounter and the current turn is aborted.
    """

    def __init__(self, subject_id: str, message: str) -> None:
        super().__init__(f"subject {subject_id}: {message}")
        self.subject_id = subject_id


class EncounterInitializationFailed(Exception):
    """The detected roster could not be turned into a valid encounter."""


class InvalidCombatAction(ValueError):
    """The requested action is not legal in the encounter's current state."""
