"""Deterministic skill-check resolution.

Resolution never consults the generative model: it is a function of
the character sheet, the requested skill and DC, and a dice source.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from questweave.dice import D20
from questweave.dice import DiceRoller
from questweave.dice import RandomDice
from questweave.dice import validate_player_roll
from questweave.models.character import CharacterSheet
from questweave.models.events import StatCode
from questweave.storage.base import Storage
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope

logger = logging.getLogger(__name__)

SKILL_CHECKS = "skill_checks"

SKILL_ABILITIES: dict[str, StatCode] = {
    "athletics": StatCode.STR,
    "acrobatics": StatCode.DEX,
    "sleight of hand": StatCode.DEX,
    "stealth": StatCode.DEX,
    "arcana": StatCode.INT,
    "history": StatCode.INT,
    "investigation": StatCode.INT,
    "nature": StatCode.INT,
    "religion": StatCode.INT,
    "animal handling": StatCode.WIS,
    "insight": StatCode.WIS,
    "medicine": StatCode.WIS,
    "perception": StatCode.WIS,
    "survival": StatCode.WIS,
    "deception": StatCode.CHA,
    "intimidation": StatCode.CHA,
    "performance": StatCode.CHA,
    "persuasion": StatCode.CHA,
}


def skill_ability(skill_type: str) -> StatCode:
    """Ability governing *skill_type*; unknown skills fall back to Strength."""
    return SKILL_ABILITIES.get(skill_type.strip().lower(), StatCode.STR)


def canonical_skill(skill_type: str) -> str:
    return " ".join(w.capitalize() if w != "of" else w for w in skill_type.strip().lower().split())


class SkillCheckResult(BaseModel):
    """Outcome of one check; immutable once computed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"chk_{uuid.uuid4().hex}")
    subject_id: str
    skill_type: str
    ability: StatCode
    dc: int
    roll: int = Field(ge=1, le=D20)
    rolls: list[int]
    modifier_breakdown: dict[str, int]
    total: int
    success: bool
    advantage: bool = False
    disadvantage: bool = False
    player_rolled: bool = False
    timestamp: float = Field(default_factory=time.time)

    def describe(self) -> str:
        ability_mod = self.modifier_breakdown.get(self.ability.value, 0)
        text = f"d20={self.roll} + {self.ability.value}({ability_mod:+d})"
        proficiency = self.modifier_breakdown.get("proficiency", 0)
        if proficiency:
            text += f" + Prof={proficiency}"
        return f"{text} = {self.total} vs DC {self.dc}"


class SkillCheckResolver:
    """Roll-and-add resolution with an injectable dice source."""

    def __init__(self, dice: DiceRoller | None = None) -> None:
        self._dice = dice or RandomDice()

    def resolve(
        self,
        sheet: CharacterSheet,
        skill_type: str,
        dc: int,
        *,
        advantage: bool = False,
        disadvantage: bool = False,
        explicit_roll: int | None = None,
    ) -> SkillCheckResult:
        """Resolve a check for *sheet*.

        Advantage and disadvantage cancel out.  With exactly one of them set
        two dice are drawn and the higher (advantage) or lower (disadvantage)
        is kept.  A player-supplied *explicit_roll* is the kept die.
        """
        if dc < 1:
            raise ValueError(f"dc must be positive, got {dc}")

        if explicit_roll is not None:
            kept = validate_player_roll(explicit_roll)
            rolls = [kept]
        else:
            rolls = self._draw(advantage, disadvantage)
            if advantage and not disadvantage:
                kept = max(rolls)
            elif disadvantage and not advantage:
                kept = min(rolls)
            else:
                kept = rolls[0]

        ability = skill_ability(skill_type)
        ability_mod = sheet.modifier(ability)
        proficiency = sheet.proficiency_bonus if sheet.is_proficient(skill_type) else 0
        total = kept + ability_mod + proficiency
        return SkillCheckResult(
            subject_id=sheet.subject_id,
            skill_type=canonical_skill(skill_type),
            ability=ability,
            dc=dc,
            roll=kept,
            rolls=rolls,
            modifier_breakdown={ability.value: ability_mod, "proficiency": proficiency},
            total=total,
            success=total >= dc,
            advantage=advantage,
            disadvantage=disadvantage,
            player_rolled=explicit_roll is not None,
        )

    def _draw(self, advantage: bool, disadvantage: bool) -> list[int]:
        count = 2 if advantage != disadvantage else 1
        return [self._dice.roll(D20) for _ in range(count)]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SkillCheckStats:
    total_checks: int = 0
    successes: int = 0
    success_rate: float = 0.0
    average_roll: float = 0.0
    average_total: float = 0.0


class SkillCheckHistory:
    """Append-only record of resolved checks per subject."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def record(
        self, result: SkillCheckResult, *, tx: Transaction | None = None
    ) -> None:
        async with write_scope(self._storage, result.subject_id, tx) as batch:
            batch.put(
                SKILL_CHECKS,
                result.id,
                result.model_dump(mode="json"),
                score=result.timestamp,
            )

    async def recent(self, subject_id: str, limit: int = 20) -> list[SkillCheckResult]:
        docs = await self._storage.query(
            SKILL_CHECKS, subject_id, newest_first=True, limit=limit
        )
        return [SkillCheckResult.model_validate(doc) for doc in docs]

    async def stats(self, subject_id: str) -> SkillCheckStats:
        docs = await self._storage.query(SKILL_CHECKS, subject_id)
        if not docs:
            return SkillCheckStats()
        results = [SkillCheckResult.model_validate(doc) for doc in docs]
        successes = sum(1 for r in results if r.success)
        count = len(results)
        return SkillCheckStats(
            total_checks=count,
            successes=successes,
            success_rate=round(successes / count, 3),
            average_roll=round(sum(r.roll for r in results) / count, 2),
            average_total=round(sum(r.total for r in results) / count, 2),
        )


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SkillCheckRequest:
    """Decision that an action warrants a check."""

    skill_type: str
    dc: int
    reasoning: str
    advantage: bool = False
    disadvantage: bool = False


_SKILL_PATTERNS: tuple[tuple[re.Pattern[str], str, str], ...] = (
    (re.compile(r"\b(climb|jump|leap|scale|ascend|swim)\b"), "Athletics", "physical exertion"),
    (re.compile(r"\b(sneak|hide|stealthily|quietly|silently)\b"), "Stealth", "moving unseen"),
    (re.compile(r"\b(search|investigate|examine|look for|inspect)\b"), "Perception", "searching"),
    (re.compile(r"\b(convince|persuade|negotiate|bargain)\b"), "Persuasion", "persuasion"),
    (re.compile(r"\b(lie|deceive|trick|bluff)\b"), "Deception", "deception"),
    (re.compile(r"\b(threaten|intimidate|scare|coerce)\b"), "Intimidation", "intimidation"),
    (re.compile(r"\b(balance|tumble|flip|dodge)\b"), "Acrobatics", "agility"),
    (re.compile(r"\b(recall|remember the lore|study the runes)\b"), "History", "recalling lore"),
    (re.compile(r"\b(heal|bandage|treat the wound)\b"), "Medicine", "treating wounds"),
    (re.compile(r"\b(track|forage|navigate)\b"), "Survival", "wilderness craft"),
)
_EASIER_RE = re.compile(r"\b(carefully|slowly|patiently)\b")
_HARDER_RE = re.compile(r"\b(quickly|desperately|hastily|recklessly)\b")
_ADVANTAGE_RE = re.compile(r"\b(with help|with the rope|aided by)\b")
_DISADVANTAGE_RE = re.compile(r"\b(in the dark|blindfolded|while injured)\b")


class SkillCheckDetector:
    """Rule-based decision whether an action needs a check, and at what DC."""

    def __init__(self, base_dc: int = 15) -> None:
        self._base_dc = base_dc

    def detect(self, action_text: str) -> SkillCheckRequest | None:
        lowered = action_text.lower()
        for pattern, skill, reason in _SKILL_PATTERNS:
            if not pattern.search(lowered):
                continue
            dc = self._base_dc
            if _EASIER_RE.search(lowered):
                dc -= 5
            if _HARDER_RE.search(lowered):
                dc += 5
            return SkillCheckRequest(
                skill_type=skill,
                dc=max(5, min(dc, 30)),
                reasoning=f"{reason} detected",
                advantage=bool(_ADVANTAGE_RE.search(lowered)),
                disadvantage=bool(_DISADVANTAGE_RE.search(lowered)),
            )
        return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SkillCheckService:
    """Resolver plus history, keyed by subject."""

    def __init__(
        self,
        history: SkillCheckHistory,
        *,
        resolver: SkillCheckResolver | None = None,
    ) -> None:
        self._history = history
        self._resolver = resolver or SkillCheckResolver()

    @property
    def history(self) -> SkillCheckHistory:
        return self._history

    def resolve(
        self,
        sheet: CharacterSheet,
        request: SkillCheckRequest,
        *,
        explicit_roll: int | None = None,
    ) -> SkillCheckResult:
        result = self._resolver.resolve(
            sheet,
            request.skill_type,
            request.dc,
            advantage=request.advantage,
            disadvantage=request.disadvantage,
            explicit_roll=explicit_roll,
        )
        logger.debug("Skill check for %s: %s", sheet.subject_id, result.describe())
        return result

    async def record(
        self, result: SkillCheckResult, *, tx: Transaction | None = None
    ) -> None:
        await self._history.record(result, tx=tx)
