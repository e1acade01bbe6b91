"""Encounter persistence keyed by subject."""

from __future__ import annotations

import logging

from questweave.combat.errors import EncounterInvariantViolation
from questweave.combat.schemas import CombatEncounter
from questweave.combat.schemas import EncounterStatus
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

logger = logging.getLogger(__name__)

ACTIVE = "encounters"
ARCHIVE = "encounter_archive"


class EncounterRepository:
    """Active encounters live in one collection, finished ones in another.

    The active collection holds at most one document per subject; finding
    more is an invariant violation the caller must handle.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def get_active(self, subject_id: str) -> CombatEncounter | None:
        docs = await self._storage.query(ACTIVE, subject_id)
        if not docs:
            return None
        encounters = [CombatEncounter.model_validate(doc) for doc in docs]
        if len(encounters) > 1:
            raise EncounterInvariantViolation(
                subject_id,
                f"{len(encounters)} active encounters: "
                + ", ".join(e.id for e in encounters),
            )
        return encounters[0]

    async def create(
        self, encounter: CombatEncounter, *, tx: Transaction | None = None
    ) -> None:
        if await self.get_active(encounter.subject_id) is not None:
            raise EncounterInvariantViolation(
                encounter.subject_id, "an active encounter already exists"
            )
        await self.save(encounter, tx=tx)

    async def save(
        self, encounter: CombatEncounter, *, tx: Transaction | None = None
    ) -> None:
        if encounter.status != EncounterStatus.active:
            await self.archive(encounter, tx=tx)
            return
        async with write_scope(self._storage, encounter.subject_id, tx) as batch:
            batch.put(
                ACTIVE,
                encounter.id,
                encounter.model_dump(mode="json"),
                score=encounter.created_at,
            )

    async def archive(
        self, encounter: CombatEncounter, *, tx: Transaction | None = None
    ) -> None:
        """Move a resolved encounter out of the active collection."""
        async with write_scope(self._storage, encounter.subject_id, tx) as batch:
            batch.delete(ACTIVE, encounter.id)
            batch.put(
                ARCHIVE,
                encounter.id,
                encounter.model_dump(mode="json"),
                score=encounter.resolved_at or encounter.updated_at,
            )

    async def reset(self, subject_id: str) -> None:
        async with self._storage.transaction(subject_id) as tx:
            tx.clear(ACTIVE)
        logger.error("Combat state reset to no encounter for subject %s", subject_id)

    async def history(self, subject_id: str, limit: int = 10) -> list[CombatEncounter]:
        docs = await self._storage.query(
            ARCHIVE, subject_id, newest_first=True, limit=limit
        )
        return [CombatEncounter.model_validate(doc) for doc in docs]
