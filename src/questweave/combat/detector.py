"""Combat detection: decide whether an action starts an encounter.

The rule-based detector is always available.  The model-backed detector
asks the generative model for a roster and parses the reply strictly;
any failure falls back to the rules.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from questweave.combat.schemas import CombatDetection
from questweave.combat.schemas import EnemySpec
from questweave.combat.schemas import Zone
from questweave.engine.llm import LLMAdapter
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelUnavailable
from questweave.engine.llm import parse_json_reply

logger = logging.getLogger(__name__)

_ATTACK_RE = re.compile(
    r"\b(attack|strike|stab|slash|punch|kick|shoot|fire at|charge at|lunge at)\b"
)
_AMBUSH_RE = re.compile(r"\b(ambush|ambushed|surrounded|surround|lunges?|charges?)\b")
_PATROL_RE = re.compile(r"\b(patrol|patrolling|sentries|guards approach)\b")
_RANGED_RE = re.compile(r"\b(archer|mage|ranger|sniper|caster|crossbow|bowman)\b", re.I)


def is_ranged_kind(*labels: str) -> bool:
    return any(_RANGED_RE.search(label or "") for label in labels)


@runtime_checkable
class CombatDetector(Protocol):
    async def detect(self, action: str, scene: str = "") -> CombatDetection: ...


class RuleBasedCombatDetector(CombatDetector):
    """Keyword triggers with a generic enemy roster."""

    async def detect(self, action: str, scene: str = "") -> CombatDetection:
        lowered = action.lower()
        scene_lowered = scene.lower()
        if _ATTACK_RE.search(lowered):
            return CombatDetection(
                triggered=True,
                reasoning="player initiated combat",
                enemies=[
                    EnemySpec(
                        name="Enemy",
                        ac=14,
                        hp=20,
                        attack_bonus=4,
                        damage="1d8+2",
                        zone=Zone.close,
                        description="Generic enemy combatant",
                    )
                ],
                narrative_setup="Combat begins!",
                fallback=True,
            )
        if _AMBUSH_RE.search(lowered) or _AMBUSH_RE.search(scene_lowered):
            return CombatDetection(
                triggered=True,
                reasoning="enemies are attacking",
                enemies=[
                    EnemySpec(
                        name="Attacker",
                        ac=13,
                        hp=15,
                        attack_bonus=3,
                        damage="1d6+1",
                        description="Hostile combatant",
                    )
                ],
                ambush=True,
                narrative_setup="You are under attack!",
                fallback=True,
            )
        return CombatDetection(triggered=False, reasoning="no combat trigger", fallback=True)


# ---------------------------------------------------------------------------
# Model-backed detection
# ---------------------------------------------------------------------------


class _EnemyReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    type: str = "humanoid"
    ac: int = Field(ge=1, le=30)
    hp: int = Field(ge=1)
    max_hp: int | None = Field(default=None, ge=1, alias="maxHp")
    attack_bonus: int | None = Field(default=None, alias="attackBonus")
    damage_roll: str | None = Field(default=None, alias="damageRoll")
    zone: Zone
    description: str = ""


class _DetectionReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    combat_triggered: bool = Field(alias="combatTriggered")
    reasoning: str = ""
    enemies: list[_EnemyReply] = Field(default_factory=list)
    ambush: bool = False
    narrative_setup: str = Field(default="", alias="narrativeSetup")


_DETECTOR_SYSTEM_PROMPT = (
    "You are a combat detection system for a fantasy role-playing game. "
    "Decide whether the player's action starts combat. Combat starts when "
    "the player attacks, is attacked, or provokes hostile enemies; talking, "
    "negotiating and exploring do not start combat.\n\n"
    "Zones: close (melee), near (30-60 ft), far (100+ ft). Ambushed enemies "
    "start close or near, patrols start near, archers prefer near or far.\n\n"
    "Respond with ONLY a JSON object: "
    '{"combatTriggered": bool, "reasoning": str, "ambush": bool, '
    '"enemies": [{"name": str, "type": str, "ac": int, "hp": int, '
    '"attackBonus": int, "damageRoll": "1d6+1", "zone": "close|near|far", '
    '"description": str}], "narrativeSetup": str}'
)


class ModelCombatDetector(CombatDetector):
    def __init__(
        self,
        llm: LLMAdapter,
        *,
        fallback: CombatDetector | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._llm = llm
        self._fallback = fallback or RuleBasedCombatDetector()
        self._timeout_seconds = timeout_seconds

    async def detect(self, action: str, scene: str = "") -> CombatDetection:
        request = ModelRequest(
            system_prompt=_DETECTOR_SYSTEM_PROMPT,
            user_prompt=f"Scene: {scene or 'unknown'}\nPlayer action: {action}",
            max_tokens=500,
            temperature=0.3,
            cacheable=False,
        )
        try:
            response = await self._llm.generate(
                request, timeout_seconds=self._timeout_seconds
            )
            reply = parse_json_reply(response.text, _DetectionReply)
            if reply.combat_triggered and not reply.enemies:
                raise ModelUnavailable("combat triggered without enemies")
        except ModelUnavailable as exc:
            logger.warning("Combat detector fell back to rules: %s", exc)
            return await self._fallback.detect(action, scene)
        return CombatDetection(
            triggered=reply.combat_triggered,
            reasoning=reply.reasoning,
            enemies=[
                EnemySpec(
                    name=e.name,
                    kind=e.type,
                    ac=e.ac,
                    hp=e.hp,
                    max_hp=e.max_hp,
                    attack_bonus=e.attack_bonus,
                    damage=e.damage_roll,
                    zone=e.zone,
                    description=e.description,
                )
                for e in reply.enemies
            ],
            ambush=reply.ambush,
            narrative_setup=reply.narrative_setup,
        )
