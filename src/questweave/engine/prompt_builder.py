"""Prompt construction for narrator requests.

The system prompt carries the stable parts of a turn (world bible,
character profile, narrative summary, style guidance) so it can be
fingerprinted for the semantic cache tier.  Everything that changes from
turn to turn goes into the user prompt.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from enum import Enum

from questweave.combat.schemas import CombatState
from questweave.engine.skill_checks import SkillCheckResult
from questweave.models.character import CharacterSheet
from questweave.models.events import StatCode
from questweave.models.memory import ContextItem
from questweave.world import CORE_RULES
from questweave.world import LOCATIONS
from questweave.world import NPCS
from questweave.world import NPCVoice
from questweave.world import PILLARS
from questweave.world import SETTING_NAME
from questweave.world import SETTING_TONE

ACTION_PREFIX = "Player action: "


class ResponseStyle(str, Enum):
    quick_question = "quick_question"
    specific_action = "specific_action"
    exploration = "exploration"
    dialogue = "dialogue"
    combat = "combat"
    dramatic_moment = "dramatic_moment"


STYLE_GUIDANCE: dict[ResponseStyle, str] = {
    ResponseStyle.quick_question: (
        "RESPONSE LENGTH: BRIEF (1-2 sentences). Give a direct, concise answer."
    ),
    ResponseStyle.specific_action: (
        "RESPONSE LENGTH: FOCUSED (one short paragraph, 3-5 sentences). "
        "Describe what the player did and what happened."
    ),
    ResponseStyle.exploration: (
        "RESPONSE LENGTH: DESCRIPTIVE (2-3 paragraphs). Paint the scene with "
        "sight, sound and smell. Let the player discover."
    ),
    ResponseStyle.dialogue: (
        "RESPONSE LENGTH: CONVERSATIONAL (1-2 exchanges). Focus on the NPC's "
        "voice and personality. Use direct speech."
    ),
    ResponseStyle.combat: (
        "RESPONSE LENGTH: PUNCHY (one paragraph, varied rhythm). Short "
        "sentences for impacts. End with what happens next."
    ),
    ResponseStyle.dramatic_moment: (
        "RESPONSE LENGTH: EVOCATIVE (3-4 paragraphs). A significant moment: "
        "build atmosphere and vary sentence length."
    ),
}

# Token ceilings per style
STYLE_MAX_TOKENS: dict[ResponseStyle, int] = {
    ResponseStyle.quick_question: 200,
    ResponseStyle.specific_action: 400,
    ResponseStyle.exploration: 700,
    ResponseStyle.dialogue: 400,
    ResponseStyle.combat: 400,
    ResponseStyle.dramatic_moment: 800,
}

_QUESTION_RE = re.compile(r"^(is|are|do|does|can|how many|what time|where|who|what's)\b")
_DIALOGUE_RE = re.compile(r"\b(ask|tell|say|speak|talk|reply|respond|greet|thank|inquire)\b")
_EXPLORE_RE = re.compile(
    r"\b(look|examine|inspect|survey|observe|search|investigate|explore|"
    r"check out|what do i see|describe|scan|study)\b"
)
_ARRIVAL_RE = re.compile(r"\b(arrive|enter|step into|approach|come to|reach)\b")


def classify_response_style(
    action: str,
    *,
    in_combat: bool = False,
    first_visit: bool = False,
    npc_present: bool = False,
) -> ResponseStyle:
    lowered = action.lower().strip()
    if in_combat:
        return ResponseStyle.combat
    if first_visit and _ARRIVAL_RE.search(lowered):
        return ResponseStyle.dramatic_moment
    if len(lowered) < 40 and _QUESTION_RE.search(lowered):
        return ResponseStyle.quick_question
    if npc_present and _DIALOGUE_RE.search(lowered):
        return ResponseStyle.dialogue
    if _EXPLORE_RE.search(lowered):
        return ResponseStyle.exploration
    if len(lowered) > 100:
        return ResponseStyle.exploration
    return ResponseStyle.specific_action


def mentions_npc(text: str) -> bool:
    lowered = text.lower()
    return any(name.lower() in lowered for npc in NPCS for name in npc.names)


# ---------------------------------------------------------------------------
# Static components
# ---------------------------------------------------------------------------


def _npc_line(npc: NPCVoice) -> str:
    line = f"- {npc.name}: {npc.voice}"
    if npc.always_does:
        line += f" Always {'; '.join(npc.always_does)}."
    return line


def world_bible_section() -> str:
    rules = "\n".join(f"- {rule}" for rule in CORE_RULES)
    pillars = ", ".join(f"{name} ({code})" for code, name in PILLARS.items())
    npcs = "\n".join(_npc_line(npc) for npc in NPCS)
    return (
        f"Setting: {SETTING_NAME}\n"
        f"Tone: {SETTING_TONE}\n"
        f"Core rules:\n{rules}\n"
        f"The Six Pillars: {pillars}\n"
        f"Known locations: {', '.join(LOCATIONS)}\n"
        f"Named characters:\n{npcs}"
    )


def character_profile(sheet: CharacterSheet) -> str:
    stats = ", ".join(f"{code.value} {sheet.stats[code]}" for code in StatCode)
    lines = [
        f"Name: {sheet.name}",
        f"Class: {sheet.character_class}",
        f"Level: {sheet.level}",
        f"Stats: {stats}",
    ]
    if sheet.skill_proficiencies:
        lines.append(f"Proficient in: {', '.join(sheet.skill_proficiencies)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def build_system_prompt(
    *,
    world_section: str,
    profile: str,
    summary: str,
    style: ResponseStyle,
) -> str:
    return (
        "You are the narrator of a tabletop role-playing game set in a world "
        "where real-world wellness fuels the hero's growth.\n\n"
        f"## RESPONSE STYLE GUIDANCE\n{STYLE_GUIDANCE[style]}\n\n"
        "## PLAYER AGENCY\n"
        "Never roll dice for the player and never decide the player's actions. "
        "Dice results given to you are final; narrate them, do not change them.\n\n"
        f"## WORLD\n{world_section}\n\n"
        f"## CHARACTER\n{profile}\n\n"
        f"## STORY SO FAR\n{summary}\n\n"
        "## RESPONSE FORMAT\n"
        "Respond ONLY with a JSON object, no markdown:\n"
        '{"narrative": str, "continuation": str, "world_state_changes": [str], '
        '"npcs_mentioned": [str], "long_term_facts": [str]}\n'
        "long_term_facts lists facts the story must never forget (promises, "
        "relationships, lasting changes); leave it empty otherwise."
    )


def _format_memory(index: int, item: ContextItem) -> str:
    return f"{index}. [{item.source.value}] {item.text}"


def build_user_prompt(
    action: str,
    *,
    memories: Sequence[ContextItem] = (),
    skill_check: SkillCheckResult | None = None,
    combat: CombatState | None = None,
    combat_events: Sequence[str] = (),
    revision_feedback: str | None = None,
) -> str:
    sections: list[str] = []
    if memories:
        lines = [_format_memory(i, item) for i, item in enumerate(memories, start=1)]
        sections.append(
            "## RELEVANT PAST EVENTS (stay consistent with these)\n" + "\n".join(lines)
        )
    if skill_check is not None:
        outcome = "SUCCESS" if skill_check.success else "FAILURE"
        sections.append(
            f"## SKILL CHECK\n{skill_check.skill_type}: {skill_check.describe()} -> {outcome}"
        )
    if combat is not None:
        lines = [
            f"Encounter: {combat.name} (round {combat.round}, {combat.phase.value})",
            f"Player HP: {combat.player_hp}/{combat.player_max_hp}",
        ]
        lines.extend(
            f"- {e['name']}: {e['hp']}/{e['max_hp']} HP at {e['zone']} range"
            for e in combat.enemies
        )
        if combat.awaiting_initiative:
            lines.append("Ask the player to roll a d20 for initiative.")
        lines.extend(f"> {entry}" for entry in combat_events)
        sections.append("## COMBAT\n" + "\n".join(lines))
    if revision_feedback:
        sections.append(f"## REVISION REQUIRED\n{revision_feedback}")
    sections.append(f"{ACTION_PREFIX}{action.strip()}")
    return "\n\n".join(sections)
