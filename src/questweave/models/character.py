"""Character sheet model used by skill checks and combat."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from questweave.models.events import StatCode


def ability_modifier(score: int) -> int:
    """Return the ability modifier for a raw ability score."""
    return (score - 10) // 2


class CharacterSheet(BaseModel):
    """Mechanical profile of a subject.

    Character CRUD is owned by an external service; the pipeline only
    reads sheets and writes back hit points after combat.
    """

    subject_id: str = Field(min_length=1)
    name: str = Field(default="Adventurer")
    character_class: str = Field(default="Wanderer")
    level: int = Field(default=1, ge=1, le=20)
    stats: dict[StatCode, int] = Field(default_factory=dict, validate_default=True)
    skill_proficiencies: list[str] = Field(default_factory=list)
    max_hp: int = Field(default=30, ge=1)
    current_hp: int | None = None
    armor_class: int = Field(default=12, ge=1)

    @field_validator("stats")
    @classmethod
    def _fill_missing_stats(cls, value: dict[StatCode, int]) -> dict[StatCode, int]:
        return {code: int(value.get(code, 10)) for code in StatCode}

    @property
    def hp(self) -> int:
        return self.max_hp if self.current_hp is None else self.current_hp

    @property
    def proficiency_bonus(self) -> int:
        return 2 + (self.level - 1) // 4

    def modifier(self, stat: StatCode) -> int:
        return ability_modifier(self.stats.get(stat, 10))

    def is_proficient(self, skill: str) -> bool:
        wanted = skill.strip().lower()
        return any(s.strip().lower() == wanted for s in self.skill_proficiencies)
