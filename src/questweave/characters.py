"""Character sheet repository."""

from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from questweave.models.character import CharacterSheet
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

CHARACTERS = "characters"
_SHEET_ID = "sheet"


@runtime_checkable
class CharacterRepository(Protocol):
    async def get(self, subject_id: str) -> CharacterSheet | None: ...

    async def save(
        self, sheet: CharacterSheet, *, tx: Transaction | None = None
    ) -> None: ...


class StoredCharacterRepository(CharacterRepository):
    """Sheets kept through the storage boundary, one per subject."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def get(self, subject_id: str) -> CharacterSheet | None:
        doc = await self._storage.get(CHARACTERS, subject_id, _SHEET_ID)
        return None if doc is None else CharacterSheet.model_validate(doc)

    async def save(
        self, sheet: CharacterSheet, *, tx: Transaction | None = None
    ) -> None:
        async with write_scope(self._storage, sheet.subject_id, tx) as batch:
            batch.put(CHARACTERS, _SHEET_ID, sheet.model_dump(mode="json"))
