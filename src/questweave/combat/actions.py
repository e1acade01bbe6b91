"""Free-text to combat action parsing."""

from __future__ import annotations

import re

from questweave.combat.schemas import ActionKind
from questweave.combat.schemas import CombatAction
from questweave.combat.schemas import CombatEncounter
from questweave.combat.schemas import Enemy
from questweave.combat.schemas import Modality
from questweave.combat.schemas import Zone

_DISENGAGE_RE = re.compile(r"\b(flee|run away|escape|disengage|retreat)\b")
_MOVE_AWAY_RE = re.compile(r"\b(back away|step back|fall back|back off)\b")
_MOVE_CLOSER_RE = re.compile(r"\b(move closer|approach|advance|close in|close the distance|rush)\b")
_RANGED_RE = re.compile(r"\b(shoot|fire|loose|bow|arrow|throw)\b")
_MELEE_RE = re.compile(r"\b(attack|strike|slash|stab|swing|hit|punch|kick|charge)\b")


def _match_target(text: str, encounter: CombatEncounter) -> Enemy | None:
    alive = encounter.alive_enemies()
    # Longest names first so "Bandit Captain" wins over "Bandit".
    for enemy in sorted(alive, key=lambda e: len(e.name), reverse=True):
        if enemy.name.lower() in text:
            return enemy
    for enemy in alive:
        if enemy.kind.lower() in text:
            return enemy
    return None


def _default_target(encounter: CombatEncounter, modality: Modality | None) -> Enemy | None:
    if modality != Modality.ranged:
        close = encounter.enemies_in(Zone.close)
        if close:
            return close[0]
    alive = encounter.alive_enemies()
    return alive[0] if alive else None


def parse_combat_action(text: str, encounter: CombatEncounter) -> CombatAction | None:
    """Map *text* to a mechanical action, or None when it has no combat meaning."""
    lowered = text.lower()
    target = _match_target(lowered, encounter)

    if _DISENGAGE_RE.search(lowered):
        return CombatAction(kind=ActionKind.disengage)
    if _MOVE_AWAY_RE.search(lowered):
        return CombatAction(
            kind=ActionKind.move, target_id=target.id if target else None, toward=False
        )
    if _MOVE_CLOSER_RE.search(lowered) and not _MELEE_RE.search(lowered):
        return CombatAction(
            kind=ActionKind.move, target_id=target.id if target else None, toward=True
        )

    modality: Modality | None = None
    if _RANGED_RE.search(lowered):
        modality = Modality.ranged
    elif _MELEE_RE.search(lowered):
        modality = Modality.melee
    else:
        return None
    if target is None:
        target = _default_target(encounter, modality)
    return CombatAction(
        kind=ActionKind.attack,
        target_id=target.id if target else None,
        modality=modality,
    )
