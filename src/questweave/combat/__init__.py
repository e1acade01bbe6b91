"""Combat subsystem: detection, encounters and turn resolution."""

from questweave.combat.actions import parse_combat_action
from questweave.combat.detector import CombatDetector
from questweave.combat.detector import ModelCombatDetector
from questweave.combat.detector import RuleBasedCombatDetector
from questweave.combat.errors import EncounterInitializationFailed
from questweave.combat.errors import EncounterInvariantViolation
from questweave.combat.errors import InvalidCombatAction
from questweave.combat.machine import CombatStateMachine
from questweave.combat.repository import EncounterRepository
from questweave.combat.schemas import CombatDetection
from questweave.combat.schemas import CombatEncounter
from questweave.combat.schemas import CombatPhase
from questweave.combat.schemas import CombatState
from questweave.combat.schemas import EncounterStatus
from questweave.combat.schemas import EnemySpec
from questweave.combat.schemas import Zone

__all__ = [
    "CombatDetection",
    "CombatDetector",
    "CombatEncounter",
    "CombatPhase",
    "CombatState",
    "CombatStateMachine",
    "EncounterInitializationFailed",
    "EncounterInvariantViolation",
    "EncounterRepository",
    "EnemySpec",
    "InvalidCombatAction",
    "ModelCombatDetector",
    "RuleBasedCombatDetector",
    "Zone",
    "parse_combat_action",
]
