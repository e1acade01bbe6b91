"""Combat data contracts: rosters, encounters, actions and log entries."""

from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

PLAYER_ID = "player"


class Zone(str, Enum):
    """Distance band between an enemy and the player."""

    close = "close"
    near = "near"
    far = "far"

    def step(self, toward_close: bool) -> Zone:
        order = list(Zone)
        index = order.index(self) + (-1 if toward_close else 1)
        return order[max(0, min(index, len(order) - 1))]


class EncounterStatus(str, Enum):
    active = "active"
    victory = "victory"
    defeat = "defeat"
    fled = "fled"


class CombatPhase(str, Enum):
    no_encounter = "no_encounter"
    initializing = "initializing"
    awaiting_player_initiative = "awaiting_player_initiative"
    in_progress = "in_progress"
    resolved = "resolved"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class Modality(str, Enum):
    melee = "melee"
    ranged = "ranged"


class ActionKind(str, Enum):
    attack = "attack"
    move = "move"
    disengage = "disengage"


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class EnemySpec(BaseModel):
    """An enemy as proposed by a detector, before the encounter exists."""

    name: str = Field(min_length=1)
    kind: str = "humanoid"
    ac: int = Field(ge=1, le=30)
    hp: int = Field(ge=1)
    max_hp: int | None = Field(default=None, ge=1)
    attack_bonus: int | None = None
    damage: str | None = None
    zone: Zone | None = None
    ranged: bool | None = None
    dex_modifier: int | None = None
    description: str = ""


class CombatDetection(BaseModel):
    triggered: bool
    reasoning: str = ""
    enemies: list[EnemySpec] = Field(default_factory=list)
    ambush: bool = False
    patrol: bool = False
    narrative_setup: str = ""
    fallback: bool = False


# ---------------------------------------------------------------------------
# Encounter state
# ---------------------------------------------------------------------------


class Enemy(BaseModel):
    id: str
    name: str
    kind: str = "humanoid"
    ac: int
    hp: int
    max_hp: int
    attack_bonus: int
    damage: str
    ranged: bool = False
    dex_modifier: int = 0
    description: str = ""

    @property
    def defeated(self) -> bool:
        return self.hp <= 0


class PlayerState(BaseModel):
    hp: int
    max_hp: int
    ac: int
    dex_modifier: int = 0


class Combatant(BaseModel):
    """One slot in the initiative order."""

    id: str
    name: str
    is_player: bool = False
    initiative: int | None = None
    dex_modifier: int = 0


class CombatLogEntry(BaseModel):
    round: int
    actor: str
    action: str
    detail: str
    roll: int | None = None
    damage: int | None = None
    timestamp: float = Field(default_factory=time.time)


class CombatEncounter(BaseModel):
    id: str = Field(default_factory=lambda: f"enc_{uuid.uuid4().hex}")
    subject_id: str
    name: str
    status: EncounterStatus = EncounterStatus.active
    phase: CombatPhase = CombatPhase.initializing
    difficulty: Difficulty = Difficulty.medium
    round: int = 1
    turn_index: int = 0
    initiative_order: list[Combatant] = Field(default_factory=list)
    enemies: list[Enemy] = Field(default_factory=list)
    player: PlayerState
    zone_assignment: dict[str, Zone] = Field(default_factory=dict)
    ambush: bool = False
    log: list[CombatLogEntry] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    resolved_at: float | None = None

    def enemy(self, enemy_id: str) -> Enemy | None:
        return next((e for e in self.enemies if e.id == enemy_id), None)

    def alive_enemies(self) -> list[Enemy]:
        return [e for e in self.enemies if not e.defeated]

    def enemies_in(self, zone: Zone) -> list[Enemy]:
        return [e for e in self.alive_enemies() if self.zone_assignment.get(e.id) == zone]

    def current_combatant(self) -> Combatant | None:
        if not self.initiative_order:
            return None
        return self.initiative_order[self.turn_index % len(self.initiative_order)]

    def add_log(self, actor: str, action: str, detail: str, **kwargs: int | None) -> CombatLogEntry:
        entry = CombatLogEntry(
            round=self.round, actor=actor, action=action, detail=detail, **kwargs
        )
        self.log.append(entry)
        return entry

    def snapshot(self) -> CombatState:
        current = self.current_combatant()
        return CombatState(
            encounter_id=self.id,
            name=self.name,
            phase=self.phase,
            status=self.status,
            difficulty=self.difficulty,
            round=self.round,
            turn_index=self.turn_index,
            current_turn=current.name if current and self.phase == CombatPhase.in_progress else None,
            initiative_order=[
                {"id": c.id, "name": c.name, "initiative": c.initiative}
                for c in self.initiative_order
            ],
            enemies=[
                {
                    "id": e.id,
                    "name": e.name,
                    "hp": e.hp,
                    "max_hp": e.max_hp,
                    "ac": e.ac,
                    "zone": self.zone_assignment.get(e.id, Zone.close).value,
                    "ranged": e.ranged,
                }
                for e in self.enemies
            ],
            player_hp=self.player.hp,
            player_max_hp=self.player.max_hp,
            awaiting_initiative=self.phase == CombatPhase.awaiting_player_initiative,
            recent_log=[f"[R{e.round}] {e.actor}: {e.detail}" for e in self.log[-6:]],
        )


class CombatState(BaseModel):
    """Read-only view of an encounter for turn results and tools."""

    encounter_id: str
    name: str
    phase: CombatPhase
    status: EncounterStatus
    difficulty: Difficulty
    round: int
    turn_index: int
    current_turn: str | None = None
    initiative_order: list[dict] = Field(default_factory=list)
    enemies: list[dict] = Field(default_factory=list)
    player_hp: int
    player_max_hp: int
    awaiting_initiative: bool = False
    recent_log: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class CombatAction(BaseModel):
    kind: ActionKind
    target_id: str | None = None
    modality: Modality | None = None
    toward: bool = True


class CombatTurnReport(BaseModel):
    """Mechanical outcome of one player submission."""

    encounter: CombatEncounter
    entries: list[CombatLogEntry] = Field(default_factory=list)
    started: bool = False
    resolved: bool = False

    @property
    def state(self) -> CombatState:
        return self.encounter.snapshot()
