"""World bible: the fixed ground truth about Vitalia that narration must respect."""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field

SETTING_NAME = "The Kingdom of Vitalia"
SETTING_TONE = (
    "earnest but not preachy, challenges feel epic but achievable, light humor "
    "welcome, acknowledge struggle without being dark"
)

CORE_RULES: tuple[str, ...] = (
    "The Six Pillars are real magical forces that powered ancient civilization.",
    "Growth in the pillars manifests as both personal wellness and magical power.",
    "Magic enhances natural abilities; there are no flashy combat spells.",
    "Death doesn't exist in Vitalia: failed quests have consequences but never character death.",
    "NPCs remember player actions; relationships persist and evolve.",
    "Time moves forward; events have lasting consequences.",
)

PILLARS: dict[str, str] = {
    "STR": "Pillar of Might",
    "DEX": "Pillar of Grace",
    "CON": "Pillar of Endurance",
    "INT": "Pillar of Clarity",
    "WIS": "Pillar of Serenity",
    "CHA": "Pillar of Radiance",
}

LOCATIONS: tuple[str, ...] = (
    "Haven Village",
    "Elder Thorne's Hermitage",
    "Vitalia City",
    "The Forgotten Peaks",
    "The Whispering Woods",
    "The Mirror Lakes",
)


@dataclass(frozen=True)
class WorldRule:
    """A pattern that generated narration must never match."""

    name: str
    pattern: re.Pattern[str]
    description: str


# Outcomes the world cannot contain.  Any match is a critical violation.
FORBIDDEN_OUTCOMES: tuple[WorldRule, ...] = (
    WorldRule(
        "character_death",
        re.compile(r"\bcharacter death\b|\bpermanent(?:ly)? (?:death|dead)\b", re.I),
        "Characters never die in Vitalia.",
    ),
    WorldRule(
        "player_dies",
        re.compile(
            r"\byou (?:die|died|are dead|have died|perish|perished|breathe your last)\b"
            r"|\b(?:killed|slain|slew) you\b|\byour (?:life|story) (?:ends|is over)\b",
            re.I,
        ),
        "The player character cannot be killed.",
    ),
    WorldRule(
        "game_over",
        re.compile(r"\bgame over\b", re.I),
        "Failure has consequences but never ends the adventure.",
    ),
    WorldRule(
        "time_reversal",
        re.compile(r"\b(?:travel|went|go|going) back in time\b|\bundo(?:es)? the past\b", re.I),
        "Time moves forward; events cannot be undone.",
    ),
)

# Tones the narrator must avoid.  Minor unless the phrase shames the player.
FORBIDDEN_TONES: tuple[tuple[re.Pattern[str], str, bool], ...] = (
    (re.compile(r"\byou should\b", re.I), "lecturing the player", False),
    (re.compile(r"\bpathetic\b", re.I), "shaming the player", True),
    (re.compile(r"\byou failed\b", re.I), "guilt about failure", True),
    (re.compile(r"\b(?:lazy|weakling)\b", re.I), "shaming the player", True),
    (re.compile(r"\bjust believe in yourself\b", re.I), "toxic positivity", False),
)

# Flashy spells break the grounded magic system.
FORBIDDEN_MAGIC: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bfireballs?\b", re.I),
    re.compile(r"\blightning bolts?\b", re.I),
    re.compile(r"\bteleport(?:s|ed|ation)?\b", re.I),
)


@dataclass(frozen=True)
class NPCVoice:
    """Immutable personality constraints for a named character."""

    name: str
    voice: str
    aliases: tuple[str, ...] = ()
    never_says: tuple[str, ...] = ()
    max_sentence_words: int | None = None
    always_does: tuple[str, ...] = field(default_factory=tuple)

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name, *self.aliases)


NPCS: tuple[NPCVoice, ...] = (
    NPCVoice(
        name="Elder Thorne",
        aliases=("Thorne",),
        voice="Short sentences, direct, occasional dry humor.",
        never_says=("my dearest", "oh, how wonderful", "i am overjoyed", "marvelous"),
        max_sentence_words=18,
        always_does=("challenges the player to grow", "speaks plainly"),
    ),
    NPCVoice(
        name="Lady Seraphine",
        aliases=("Seraphine",),
        voice="Eloquent, encouraging, occasional playful teasing.",
        never_says=("foolish child", "you're hopeless", "pathetic", "i don't remember"),
        always_does=("notes stat imbalances", "references previous quests"),
    ),
    NPCVoice(
        name="The Forgotten Sage",
        aliases=("Forgotten Sage", "the Sage"),
        voice="Poetic, thoughtful, philosophical; asks more than answers.",
        never_says=("you must", "do it now", "here is the answer"),
        always_does=("speaks in riddles",),
    ),
)
