"""Turn-based combat state machine.

Phases::

    no_encounter -> initializing -> awaiting_player_initiative
                 -> in_progress -> resolved (victory | defeat | fled)

The system rolls initiative for enemies only.  The player's initiative is
always supplied by the player through :meth:`CombatStateMachine.submit_initiative`.
Every mutation goes through this class so the one-active-encounter rule is
enforced in a single place.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from questweave.combat.detector import is_ranged_kind
from questweave.combat.errors import EncounterInitializationFailed
from questweave.combat.errors import EncounterInvariantViolation
from questweave.combat.errors import InvalidCombatAction
from questweave.combat.repository import EncounterRepository
from questweave.combat.schemas import PLAYER_ID
from questweave.combat.schemas import ActionKind
from questweave.combat.schemas import CombatAction
from questweave.combat.schemas import CombatDetection
from questweave.combat.schemas import CombatEncounter
from questweave.combat.schemas import CombatLogEntry
from questweave.combat.schemas import CombatPhase
from questweave.combat.schemas import CombatTurnReport
from questweave.combat.schemas import Combatant
from questweave.combat.schemas import Difficulty
from questweave.combat.schemas import Enemy
from questweave.combat.schemas import EncounterStatus
from questweave.combat.schemas import EnemySpec
from questweave.combat.schemas import Modality
from questweave.combat.schemas import PlayerState
from questweave.combat.schemas import Zone
from questweave.config import CombatConfig
from questweave.dice import D20
from questweave.dice import DiceExpression
from questweave.dice import DiceRoller
from questweave.dice import RandomDice
from questweave.dice import validate_player_roll
from questweave.models.character import CharacterSheet
from questweave.models.events import StatCode
from questweave.storage.base import Transaction

logger = logging.getLogger(__name__)


def difficulty_tier(enemies: list[Enemy]) -> Difficulty:
    if len(enemies) >= 4 or any(e.ac >= 16 or e.max_hp >= 40 for e in enemies):
        return Difficulty.hard
    if len(enemies) <= 2 and all(e.ac <= 13 and e.max_hp <= 20 for e in enemies):
        return Difficulty.easy
    return Difficulty.medium


def encounter_name(enemies: list[Enemy]) -> str:
    if len(enemies) == 1:
        return f"Duel with {enemies[0].name}"
    return f"Skirmish with {len(enemies)} enemies"


def sort_initiative(order: list[Combatant]) -> list[Combatant]:
    """Highest initiative first, ties to the higher DEX modifier, then list order."""
    return sorted(order, key=lambda c: (-(c.initiative or 0), -c.dex_modifier))


def advance_turn(encounter: CombatEncounter) -> None:
    encounter.turn_index += 1
    if encounter.turn_index >= len(encounter.initiative_order):
        encounter.turn_index = 0
        encounter.round += 1


class CombatStateMachine:
    def __init__(
        self,
        repository: EncounterRepository,
        config: CombatConfig | None = None,
        *,
        dice: DiceRoller | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._config = config or CombatConfig()
        self._dice = dice or RandomDice()
        self._clock = clock

    @property
    def repository(self) -> EncounterRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_active(self, subject_id: str) -> CombatEncounter | None:
        """Return the subject's active encounter.

        A violated one-active-encounter invariant resets the subject to no
        encounter before the error propagates.
        """
        try:
            return await self._repository.get_active(subject_id)
        except EncounterInvariantViolation:
            logger.exception("Encounter invariant violated for subject %s", subject_id)
            await self._repository.reset(subject_id)
            raise

    async def phase(self, subject_id: str) -> CombatPhase:
        encounter = await self.get_active(subject_id)
        return encounter.phase if encounter else CombatPhase.no_encounter

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def build_encounter(
        self,
        subject_id: str,
        detection: CombatDetection,
        sheet: CharacterSheet,
    ) -> CombatEncounter:
        """Build an encounter awaiting the player's initiative.

        Raises :class:`EncounterInitializationFailed` for an empty or
        malformed roster; nothing is persisted in that case.
        """
        if not detection.triggered or not detection.enemies:
            raise EncounterInitializationFailed("detection produced no enemies")
        try:
            enemies = [
                self._build_enemy(index, spec, detection.enemies)
                for index, spec in enumerate(detection.enemies)
            ]
        except ValueError as exc:
            raise EncounterInitializationFailed(f"malformed enemy data: {exc}") from exc

        now = self._clock()
        encounter = CombatEncounter(
            subject_id=subject_id,
            name=encounter_name(enemies),
            difficulty=difficulty_tier(enemies),
            enemies=enemies,
            player=PlayerState(
                hp=sheet.hp,
                max_hp=sheet.max_hp,
                ac=sheet.armor_class,
                dex_modifier=sheet.modifier(StatCode.DEX),
            ),
            zone_assignment={
                enemy.id: self._initial_zone(index, spec, enemy.ranged, detection)
                for index, (enemy, spec) in enumerate(zip(enemies, detection.enemies))
            },
            ambush=detection.ambush,
            created_at=now,
            updated_at=now,
        )
        encounter.initiative_order.append(
            Combatant(
                id=PLAYER_ID,
                name=sheet.name,
                is_player=True,
                dex_modifier=encounter.player.dex_modifier,
            )
        )
        for enemy in enemies:
            roll = self._dice.roll(D20)
            initiative = roll + enemy.dex_modifier
            encounter.initiative_order.append(
                Combatant(
                    id=enemy.id,
                    name=enemy.name,
                    initiative=initiative,
                    dex_modifier=enemy.dex_modifier,
                )
            )
            encounter.add_log(
                enemy.name,
                "initiative",
                f"rolls initiative {roll} {enemy.dex_modifier:+d} = {initiative}",
                roll=roll,
            )
        encounter.phase = CombatPhase.awaiting_player_initiative
        return encounter

    def _build_enemy(self, index: int, spec: EnemySpec, roster: list[EnemySpec]) -> Enemy:
        damage = spec.damage or self._config.enemy_default_damage
        DiceExpression.parse(damage)
        max_hp = spec.max_hp or spec.hp
        if spec.hp > max_hp:
            raise ValueError(f"{spec.name} has hp {spec.hp} above max_hp {max_hp}")
        name = spec.name
        if sum(1 for other in roster if other.name == spec.name) > 1:
            name = f"{spec.name} {sum(1 for other in roster[:index + 1] if other.name == spec.name)}"
        return Enemy(
            id=f"enemy_{index + 1}",
            name=name,
            kind=spec.kind,
            ac=spec.ac,
            hp=spec.hp,
            max_hp=max_hp,
            attack_bonus=(
                spec.attack_bonus
                if spec.attack_bonus is not None
                else self._config.enemy_default_attack_bonus
            ),
            damage=damage,
            ranged=spec.ranged if spec.ranged is not None else is_ranged_kind(spec.kind, spec.name),
            dex_modifier=(
                spec.dex_modifier if spec.dex_modifier is not None else max(0, spec.ac - 12)
            ),
            description=spec.description,
        )

    @staticmethod
    def _initial_zone(
        index: int, spec: EnemySpec, ranged: bool, detection: CombatDetection
    ) -> Zone:
        if spec.zone is not None:
            return Zone.near if ranged and spec.zone == Zone.close else spec.zone
        if ranged:
            return Zone.near if detection.ambush else Zone.far
        if detection.ambush:
            return Zone.close if index % 2 == 0 else Zone.near
        if detection.patrol:
            return Zone.near
        return Zone.close

    async def start(
        self,
        subject_id: str,
        detection: CombatDetection,
        sheet: CharacterSheet,
        *,
        tx: Transaction | None = None,
    ) -> CombatTurnReport:
        if await self.get_active(subject_id) is not None:
            raise InvalidCombatAction("an encounter is already in progress")
        encounter = self.build_encounter(subject_id, detection, sheet)
        await self._repository.create(encounter, tx=tx)
        logger.info(
            "Encounter %s started for subject %s (%s, %d enemies)",
            encounter.id,
            subject_id,
            encounter.difficulty.value,
            len(encounter.enemies),
        )
        return CombatTurnReport(
            encounter=encounter, entries=list(encounter.log), started=True
        )

    async def submit_initiative(
        self, subject_id: str, roll: int, *, tx: Transaction | None = None
    ) -> CombatTurnReport:
        """Place the player in the order and run enemy turns up to theirs."""
        roll = validate_player_roll(roll)
        encounter = await self.get_active(subject_id)
        if encounter is None or encounter.phase != CombatPhase.awaiting_player_initiative:
            raise InvalidCombatAction("no encounter is waiting for initiative")

        player = next(c for c in encounter.initiative_order if c.is_player)
        player.initiative = roll + encounter.player.dex_modifier
        encounter.initiative_order = sort_initiative(encounter.initiative_order)
        encounter.phase = CombatPhase.in_progress
        encounter.turn_index = 0
        encounter.round = 1
        entries = [
            encounter.add_log(
                player.name,
                "initiative",
                f"initiative {roll} {encounter.player.dex_modifier:+d} = {player.initiative}",
                roll=roll,
            )
        ]
        entries.extend(self._run_enemy_turns(encounter))
        await self._persist(encounter, tx)
        return CombatTurnReport(
            encounter=encounter,
            entries=entries,
            resolved=encounter.status != EncounterStatus.active,
        )

    # ------------------------------------------------------------------
    # Player actions
    # ------------------------------------------------------------------

    async def act(
        self,
        subject_id: str,
        action: CombatAction,
        sheet: CharacterSheet,
        *,
        explicit_roll: int | None = None,
        tx: Transaction | None = None,
    ) -> CombatTurnReport:
        """Apply the player's action, then run enemy turns until the player is up again."""
        if explicit_roll is not None:
            explicit_roll = validate_player_roll(explicit_roll)
        encounter = await self.get_active(subject_id)
        if encounter is None:
            raise InvalidCombatAction("no active encounter")
        if encounter.phase == CombatPhase.awaiting_player_initiative:
            raise InvalidCombatAction("submit your initiative roll first")

        entries: list[CombatLogEntry] = []
        current = encounter.current_combatant()
        if current is not None and not current.is_player:
            entries.extend(self._run_enemy_turns(encounter))

        if encounter.status == EncounterStatus.active:
            if action.kind == ActionKind.attack:
                entries.extend(self._player_attack(encounter, action, sheet, explicit_roll))
            elif action.kind == ActionKind.move:
                entries.extend(self._player_move(encounter, action, sheet))
            else:
                entries.extend(self._player_disengage(encounter, sheet, explicit_roll))
            self._check_resolution(encounter)

        if encounter.status == EncounterStatus.active:
            advance_turn(encounter)
            entries.extend(self._run_enemy_turns(encounter))

        await self._persist(encounter, tx)
        return CombatTurnReport(
            encounter=encounter,
            entries=entries,
            resolved=encounter.status != EncounterStatus.active,
        )

    def _player_attack(
        self,
        encounter: CombatEncounter,
        action: CombatAction,
        sheet: CharacterSheet,
        explicit_roll: int | None,
    ) -> list[CombatLogEntry]:
        target = encounter.enemy(action.target_id) if action.target_id else None
        if target is None or target.defeated:
            raise InvalidCombatAction("choose a standing enemy to attack")
        zone = encounter.zone_assignment.get(target.id, Zone.close)
        modality = action.modality or (Modality.melee if zone == Zone.close else Modality.ranged)
        if modality == Modality.melee and zone != Zone.close:
            raise InvalidCombatAction(
                f"{target.name} is out of melee reach ({zone.value})"
            )

        ability = StatCode.STR if modality == Modality.melee else StatCode.DEX
        ability_mod = sheet.modifier(ability)
        bonus = ability_mod + sheet.proficiency_bonus
        weapon = DiceExpression(1, 8 if modality == Modality.melee else 6, ability_mod)
        disadvantage = modality == Modality.ranged and zone in (Zone.close, Zone.far)
        roll = explicit_roll if explicit_roll is not None else self._d20(disadvantage)
        hit, critical = _attack_outcome(roll, bonus, target.ac)

        name = sheet.name
        if not hit:
            return [
                encounter.add_log(
                    name,
                    "attack",
                    f"misses {target.name} ({roll} {bonus:+d} vs AC {target.ac})",
                    roll=roll,
                )
            ]
        damage, _ = weapon.roll(self._dice, critical=critical)
        target.hp = max(0, target.hp - damage)
        verb = "critically hits" if critical else "hits"
        entries = [
            encounter.add_log(
                name,
                "attack",
                f"{verb} {target.name} for {damage} damage ({target.hp}/{target.max_hp} HP)",
                roll=roll,
                damage=damage,
            )
        ]
        if target.defeated:
            entries.append(encounter.add_log(target.name, "defeated", "is defeated"))
        return entries

    def _player_move(
        self,
        encounter: CombatEncounter,
        action: CombatAction,
        sheet: CharacterSheet,
    ) -> list[CombatLogEntry]:
        if action.toward:
            target = encounter.enemy(action.target_id) if action.target_id else None
            if target is None:
                distant = [
                    e for e in encounter.alive_enemies()
                    if encounter.zone_assignment.get(e.id) != Zone.close
                ]
                distant.sort(key=lambda e: list(Zone).index(encounter.zone_assignment[e.id]))
                target = distant[0] if distant else None
            if target is None or target.defeated:
                raise InvalidCombatAction("no enemy to close in on")
            zone = encounter.zone_assignment[target.id]
            if zone == Zone.close:
                raise InvalidCombatAction(f"already in melee range of {target.name}")
            encounter.zone_assignment[target.id] = zone.step(toward_close=True)
            return [
                encounter.add_log(
                    sheet.name,
                    "move",
                    f"closes in on {target.name} ({zone.value} -> "
                    f"{encounter.zone_assignment[target.id].value})",
                )
            ]
        for enemy in encounter.alive_enemies():
            zone = encounter.zone_assignment[enemy.id]
            encounter.zone_assignment[enemy.id] = zone.step(toward_close=False)
        return [encounter.add_log(sheet.name, "move", "backs away from the fight")]

    def _player_disengage(
        self,
        encounter: CombatEncounter,
        sheet: CharacterSheet,
        explicit_roll: int | None,
    ) -> list[CombatLogEntry]:
        close = len(encounter.enemies_in(Zone.close))
        dc = self._config.flee_base_dc + self._config.flee_dc_per_close_enemy * close
        roll = explicit_roll if explicit_roll is not None else self._dice.roll(D20)
        total = roll + sheet.modifier(StatCode.DEX)
        if total >= dc:
            self._resolve(encounter, EncounterStatus.fled)
            return [
                encounter.add_log(
                    sheet.name, "disengage", f"escapes ({total} vs DC {dc})", roll=roll
                )
            ]
        return [
            encounter.add_log(
                sheet.name,
                "disengage",
                f"fails to break away ({total} vs DC {dc})",
                roll=roll,
            )
        ]

    # ------------------------------------------------------------------
    # Enemy turns
    # ------------------------------------------------------------------

    def _run_enemy_turns(self, encounter: CombatEncounter) -> list[CombatLogEntry]:
        entries: list[CombatLogEntry] = []
        for _ in range(len(encounter.initiative_order)):
            if encounter.status != EncounterStatus.active:
                break
            current = encounter.current_combatant()
            if current is None or current.is_player:
                break
            enemy = encounter.enemy(current.id)
            if enemy is not None and not enemy.defeated:
                entries.extend(self._enemy_turn(encounter, enemy))
                self._check_resolution(encounter)
            if encounter.status == EncounterStatus.active:
                advance_turn(encounter)
        return entries

    def _enemy_turn(self, encounter: CombatEncounter, enemy: Enemy) -> list[CombatLogEntry]:
        zone = encounter.zone_assignment.get(enemy.id, Zone.close)
        if enemy.hp <= enemy.max_hp * self._config.enemy_retreat_hp_ratio:
            if zone == Zone.far:
                return [encounter.add_log(enemy.name, "hold", "hangs back, badly wounded")]
            retreat = zone.step(toward_close=False)
            encounter.zone_assignment[enemy.id] = retreat
            return [encounter.add_log(enemy.name, "move", f"retreats to {retreat.value}")]
        if not enemy.ranged and zone != Zone.close:
            advance = zone.step(toward_close=True)
            encounter.zone_assignment[enemy.id] = advance
            return [encounter.add_log(enemy.name, "move", f"advances to {advance.value}")]
        if enemy.ranged and zone != Zone.near:
            encounter.zone_assignment[enemy.id] = Zone.near
            return [encounter.add_log(enemy.name, "move", "takes position at near range")]
        return self._enemy_attack(encounter, enemy)

    def _enemy_attack(self, encounter: CombatEncounter, enemy: Enemy) -> list[CombatLogEntry]:
        player = encounter.player
        roll = self._d20(disadvantage=False)
        hit, critical = _attack_outcome(roll, enemy.attack_bonus, player.ac)
        if not hit:
            return [
                encounter.add_log(
                    enemy.name,
                    "attack",
                    f"misses ({roll} {enemy.attack_bonus:+d} vs AC {player.ac})",
                    roll=roll,
                )
            ]
        damage, _ = DiceExpression.parse(enemy.damage).roll(self._dice, critical=critical)
        player.hp = max(0, player.hp - damage)
        verb = "critically hits" if critical else "hits"
        return [
            encounter.add_log(
                enemy.name,
                "attack",
                f"{verb} for {damage} damage ({player.hp}/{player.max_hp} HP)",
                roll=roll,
                damage=damage,
            )
        ]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _check_resolution(self, encounter: CombatEncounter) -> None:
        if encounter.status != EncounterStatus.active:
            return
        if not encounter.alive_enemies():
            self._resolve(encounter, EncounterStatus.victory)
        elif encounter.player.hp <= 0:
            self._resolve(encounter, EncounterStatus.defeat)

    def _resolve(self, encounter: CombatEncounter, status: EncounterStatus) -> None:
        encounter.status = status
        encounter.phase = CombatPhase.resolved
        encounter.resolved_at = self._clock()
        encounter.add_log("encounter", "resolved", f"ends in {status.value}")
        logger.info(
            "Encounter %s for subject %s resolved: %s",
            encounter.id,
            encounter.subject_id,
            status.value,
        )

    async def _persist(
        self, encounter: CombatEncounter, tx: Transaction | None = None
    ) -> None:
        encounter.updated_at = self._clock()
        await self._repository.save(encounter, tx=tx)

    def _d20(self, disadvantage: bool) -> int:
        if disadvantage:
            return min(self._dice.roll(D20), self._dice.roll(D20))
        return self._dice.roll(D20)


def _attack_outcome(roll: int, bonus: int, armor_class: int) -> tuple[bool, bool]:
    """Return ``(hit, critical)``; a natural 20 always crits, a natural 1 always misses."""
    if roll == D20:
        return True, True
    if roll == 1:
        return False, False
    return roll + bonus >= armor_class, False
