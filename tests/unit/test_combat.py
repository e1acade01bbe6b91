"""Unit tests for the combat state machine, encounter storage and detection."""

from __future__ import annotations

import json
from dataclasses import dataclass
from dataclasses import field

import pytest

from questweave.combat import CombatDetection
from questweave.combat import CombatPhase
from questweave.combat import CombatStateMachine
from questweave.combat import EncounterInitializationFailed
from questweave.combat import EncounterInvariantViolation
from questweave.combat import EncounterRepository
from questweave.combat import EncounterStatus
from questweave.combat import EnemySpec
from questweave.combat import InvalidCombatAction
from questweave.combat import ModelCombatDetector
from questweave.combat import RuleBasedCombatDetector
from questweave.combat import Zone
from questweave.combat import parse_combat_action
from questweave.combat.schemas import ActionKind
from questweave.combat.schemas import CombatAction
from questweave.combat.schemas import Modality
from questweave.dice import InvalidPlayerRoll
from questweave.dice import ScriptedDice
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelResponse
from questweave.engine.llm import ModelUnavailable
from questweave.models.character import CharacterSheet

SUBJECT = "hero"


def _make_sheet(**overrides) -> CharacterSheet:
    stats = overrides.pop("stats", {"STR": 14, "DEX": 12})
    return CharacterSheet(subject_id=SUBJECT, stats=stats, **overrides)


def _enemy(name: str, **overrides) -> EnemySpec:
    defaults = {"ac": 12, "hp": 20, "dex_modifier": 0, "zone": Zone.close, "ranged": False}
    defaults.update(overrides)
    return EnemySpec(name=name, **defaults)


def _detection(*enemies: EnemySpec, **overrides) -> CombatDetection:
    return CombatDetection(triggered=True, enemies=list(enemies), **overrides)


def _make_machine(storage, clock, *rolls: int) -> tuple[CombatStateMachine, ScriptedDice]:
    dice = ScriptedDice(rolls)
    machine = CombatStateMachine(EncounterRepository(storage), dice=dice, clock=clock)
    return machine, dice


def _attack(target_id: str, modality: Modality | None = None) -> CombatAction:
    return CombatAction(kind=ActionKind.attack, target_id=target_id, modality=modality)


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


class TestEncounterStart:
    async def test_start_awaits_player_initiative(self, storage, clock):
        machine, dice = _make_machine(storage, clock, 15, 8, 5)
        report = await machine.start(
            SUBJECT,
            _detection(
                _enemy("Wolf"),
                _enemy("Bandit", zone=Zone.near),
                _enemy("Goblin", zone=Zone.near),
            ),
            _make_sheet(),
        )

        state = report.state
        assert report.started is True
        assert state.phase == CombatPhase.awaiting_player_initiative
        assert state.awaiting_initiative is True
        assert state.current_turn is None
        assert [e["zone"] for e in state.enemies] == ["close", "near", "near"]
        assert [e["id"] for e in state.enemies] == ["enemy_1", "enemy_2", "enemy_3"]
        assert dice.remaining == 0
        assert await machine.phase(SUBJECT) == CombatPhase.awaiting_player_initiative

    async def test_duplicate_names_are_numbered(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 4, 6)
        report = await machine.start(
            SUBJECT, _detection(_enemy("Goblin"), _enemy("Goblin")), _make_sheet()
        )
        assert [e["name"] for e in report.state.enemies] == ["Goblin 1", "Goblin 2"]

    async def test_default_zones_for_ambush(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 4, 6, 8)
        specs = [_enemy(n, zone=None) for n in ("A", "B")]
        specs.append(EnemySpec(name="Archer", ac=12, hp=10))
        report = await machine.start(
            SUBJECT, _detection(*specs, ambush=True), _make_sheet()
        )
        assert [e["zone"] for e in report.state.enemies] == ["close", "near", "near"]
        assert report.state.enemies[2]["ranged"] is True

    async def test_ranged_enemy_outside_ambush_starts_far(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 4)
        report = await machine.start(
            SUBJECT, _detection(EnemySpec(name="Archer", ac=12, hp=10)), _make_sheet()
        )
        assert report.state.enemies[0]["zone"] == "far"

    async def test_enemy_dex_defaults_from_armor_class(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10)
        report = await machine.start(
            SUBJECT,
            _detection(EnemySpec(name="Knight", ac=14, hp=20)),
            _make_sheet(),
        )
        knight = next(c for c in report.encounter.initiative_order if not c.is_player)
        assert knight.initiative == 12

    async def test_start_while_active_is_rejected(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10, 10)
        await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        with pytest.raises(InvalidCombatAction):
            await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())

    @pytest.mark.parametrize(
        "detection",
        [
            CombatDetection(triggered=False),
            CombatDetection(triggered=True, enemies=[]),
            _detection(_enemy("Wolf", damage="lots")),
            _detection(_enemy("Wolf", hp=30, max_hp=10)),
        ],
    )
    async def test_initialization_failure_persists_nothing(self, storage, clock, detection):
        machine, _ = _make_machine(storage, clock)
        with pytest.raises(EncounterInitializationFailed):
            await machine.start(SUBJECT, detection, _make_sheet())
        assert await machine.phase(SUBJECT) == CombatPhase.no_encounter


# ---------------------------------------------------------------------------
# Initiative
# ---------------------------------------------------------------------------


class TestInitiative:
    async def test_order_and_enemy_turns_before_player(self, storage, clock):
        # Wolf 15, player 11 + DEX 1 = 12, Bandit 8, Goblin 5; Wolf attacks and misses.
        machine, dice = _make_machine(storage, clock, 15, 8, 5, 2)
        await machine.start(
            SUBJECT,
            _detection(
                _enemy("Wolf"),
                _enemy("Bandit", zone=Zone.near),
                _enemy("Goblin", zone=Zone.near),
            ),
            _make_sheet(),
        )

        report = await machine.submit_initiative(SUBJECT, 11)

        state = report.state
        assert [c["name"] for c in state.initiative_order] == [
            "Wolf",
            "Adventurer",
            "Bandit",
            "Goblin",
        ]
        assert [c["initiative"] for c in state.initiative_order] == [15, 12, 8, 5]
        assert state.phase == CombatPhase.in_progress
        assert state.current_turn == "Adventurer"
        assert state.round == 1
        assert [e.actor for e in report.entries] == ["Adventurer", "Wolf"]
        assert report.entries[1].action == "attack"
        assert dice.remaining == 0

    async def test_invalid_roll_leaves_encounter_untouched(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10)
        await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())

        with pytest.raises(InvalidPlayerRoll):
            await machine.submit_initiative(SUBJECT, 21)
        assert await machine.phase(SUBJECT) == CombatPhase.awaiting_player_initiative

    async def test_initiative_without_pending_encounter(self, storage, clock):
        machine, _ = _make_machine(storage, clock)
        with pytest.raises(InvalidCombatAction):
            await machine.submit_initiative(SUBJECT, 10)

    async def test_initiative_only_once(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5)
        await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        await machine.submit_initiative(SUBJECT, 15)
        with pytest.raises(InvalidCombatAction):
            await machine.submit_initiative(SUBJECT, 15)

    async def test_action_before_initiative_is_rejected(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5)
        await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        with pytest.raises(InvalidCombatAction):
            await machine.act(SUBJECT, _attack("enemy_1"), _make_sheet(), explicit_roll=15)


# ---------------------------------------------------------------------------
# Player actions
# ---------------------------------------------------------------------------


class TestPlayerActions:
    async def _ready(self, machine, detection, sheet, roll=15):
        await machine.start(SUBJECT, detection, sheet)
        return await machine.submit_initiative(SUBJECT, roll)

    async def test_hit_then_enemies_advance_and_attack(self, storage, clock):
        # Initiative: Wolf 5, Bandit 4; damage d8=6; Wolf attacks with a natural 1.
        machine, dice = _make_machine(storage, clock, 5, 4, 6, 1)
        sheet = _make_sheet()
        await self._ready(
            machine, _detection(_enemy("Wolf"), _enemy("Bandit", zone=Zone.near)), sheet
        )

        report = await machine.act(SUBJECT, _attack("enemy_1"), sheet, explicit_roll=15)

        state = report.state
        assert state.enemies[0]["hp"] == 12
        assert state.enemies[1]["zone"] == "close"
        assert state.round == 2
        assert state.current_turn == "Adventurer"
        assert [(e.actor, e.action) for e in report.entries] == [
            ("Adventurer", "attack"),
            ("Wolf", "attack"),
            ("Bandit", "move"),
        ]
        assert report.entries[0].damage == 8
        assert dice.remaining == 0

    async def test_victory_archives_encounter(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10, 5)
        sheet = _make_sheet()
        await self._ready(machine, _detection(_enemy("Goblin", ac=10, hp=5)), sheet)

        report = await machine.act(SUBJECT, _attack("enemy_1"), sheet, explicit_roll=15)

        assert report.resolved is True
        assert report.encounter.status == EncounterStatus.victory
        assert report.state.phase == CombatPhase.resolved
        assert await machine.phase(SUBJECT) == CombatPhase.no_encounter
        history = await machine.repository.history(SUBJECT)
        assert [e.status for e in history] == [EncounterStatus.victory]
        assert history[0].resolved_at == clock()

    async def test_natural_twenty_doubles_damage_dice(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10, 3, 4, 2)
        sheet = _make_sheet()
        await self._ready(machine, _detection(_enemy("Ogre", ac=25, hp=30)), sheet)

        report = await machine.act(SUBJECT, _attack("enemy_1"), sheet, explicit_roll=20)

        assert report.entries[0].damage == 9
        assert "critically hits" in report.entries[0].detail

    async def test_natural_one_always_misses(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10, 2)
        sheet = _make_sheet(stats={"STR": 20})
        await self._ready(machine, _detection(_enemy("Rat", ac=2, hp=3)), sheet)

        report = await machine.act(SUBJECT, _attack("enemy_1"), sheet, explicit_roll=1)

        assert report.entries[0].detail.startswith("misses")
        assert report.state.enemies[0]["hp"] == 3

    async def test_ranged_attack_in_melee_has_disadvantage(self, storage, clock):
        # Two d20s (18, 4) keep 4; the Wolf's reply misses on 2.
        machine, dice = _make_machine(storage, clock, 10, 18, 4, 2)
        sheet = _make_sheet()
        await self._ready(machine, _detection(_enemy("Wolf")), sheet)

        report = await machine.act(SUBJECT, _attack("enemy_1", Modality.ranged), sheet)

        assert report.entries[0].roll == 4
        assert dice.remaining == 0

    async def test_melee_out_of_reach_is_rejected(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10)
        sheet = _make_sheet()
        await self._ready(machine, _detection(_enemy("Wolf", zone=Zone.near)), sheet)

        with pytest.raises(InvalidCombatAction):
            await machine.act(
                SUBJECT, _attack("enemy_1", Modality.melee), sheet, explicit_roll=15
            )
        active = await machine.get_active(SUBJECT)
        assert active.zone_assignment["enemy_1"] == Zone.near
        assert len(active.log) == 2

    async def test_attacking_unknown_target_is_rejected(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10)
        sheet = _make_sheet()
        await self._ready(machine, _detection(_enemy("Wolf")), sheet)
        with pytest.raises(InvalidCombatAction):
            await machine.act(SUBJECT, _attack("enemy_9"), sheet, explicit_roll=15)

    async def test_move_closer(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 10, 2)
        sheet = _make_sheet()
        await self._ready(
            machine,
            _detection(_enemy("Archer", zone=Zone.far, ranged=True, hp=10)),
            sheet,
        )

        report = await machine.act(
            SUBJECT, CombatAction(kind=ActionKind.move, toward=True), sheet
        )

        # Player closes to near, then the archer holds near and shoots (miss on 2).
        assert report.entries[0].detail == "closes in on Archer (far -> near)"
        assert report.state.enemies[0]["zone"] == "near"

    async def test_successful_disengage_flees(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5, 5)
        sheet = _make_sheet(stats={"DEX": 14})
        await self._ready(machine, _detection(_enemy("Wolf"), _enemy("Bandit")), sheet)

        report = await machine.act(
            SUBJECT, CombatAction(kind=ActionKind.disengage), sheet, explicit_roll=12
        )

        assert report.encounter.status == EncounterStatus.fled
        assert report.entries[0].detail == "escapes (14 vs DC 14)"
        assert await machine.phase(SUBJECT) == CombatPhase.no_encounter

    async def test_failed_disengage_keeps_fighting(self, storage, clock):
        machine, dice = _make_machine(storage, clock, 5, 5, 2, 3)
        sheet = _make_sheet(stats={"DEX": 14})
        await self._ready(machine, _detection(_enemy("Wolf"), _enemy("Bandit")), sheet)

        report = await machine.act(
            SUBJECT, CombatAction(kind=ActionKind.disengage), sheet, explicit_roll=5
        )

        assert report.encounter.status == EncounterStatus.active
        assert report.entries[0].detail == "fails to break away (7 vs DC 14)"
        assert report.state.round == 2
        assert dice.remaining == 0


# ---------------------------------------------------------------------------
# Enemy behaviour and defeat
# ---------------------------------------------------------------------------


class TestEnemyTurns:
    async def test_enemy_can_defeat_player(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 18, 15, 4)
        sheet = _make_sheet(current_hp=3)
        await machine.start(
            SUBJECT,
            _detection(_enemy("Ogre", hp=30, attack_bonus=5, damage="1d6+1")),
            sheet,
        )

        report = await machine.submit_initiative(SUBJECT, 2)

        assert report.resolved is True
        assert report.encounter.status == EncounterStatus.defeat
        assert report.encounter.player.hp == 0
        history = await machine.repository.history(SUBJECT)
        assert history[0].status == EncounterStatus.defeat

    async def test_badly_wounded_enemy_retreats(self, storage, clock):
        machine, dice = _make_machine(storage, clock, 18)
        await machine.start(
            SUBJECT, _detection(_enemy("Wolf", hp=4, max_hp=20)), _make_sheet()
        )

        report = await machine.submit_initiative(SUBJECT, 2)

        assert report.entries[-1].detail == "retreats to near"
        assert report.state.enemies[0]["zone"] == "near"
        assert dice.remaining == 0

    async def test_ranged_enemy_takes_position(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 18)
        await machine.start(
            SUBJECT,
            _detection(_enemy("Archer", zone=Zone.far, ranged=True, hp=10)),
            _make_sheet(),
        )

        report = await machine.submit_initiative(SUBJECT, 2)

        assert report.entries[-1].detail == "takes position at near range"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TestEncounterRepository:
    async def test_two_active_encounters_reset_the_subject(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5, 6)
        first = machine.build_encounter(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        second = machine.build_encounter(SUBJECT, _detection(_enemy("Bear")), _make_sheet())
        await machine.repository.save(first)
        await machine.repository.save(second)

        with pytest.raises(EncounterInvariantViolation) as exc_info:
            await machine.get_active(SUBJECT)

        assert exc_info.value.subject_id == SUBJECT
        assert await machine.get_active(SUBJECT) is None

    async def test_create_refuses_second_active(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5, 6)
        repo = machine.repository
        await repo.create(
            machine.build_encounter(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        )
        with pytest.raises(EncounterInvariantViolation):
            await repo.create(
                machine.build_encounter(SUBJECT, _detection(_enemy("Bear")), _make_sheet())
            )

    async def test_subjects_are_isolated(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5)
        await machine.start(SUBJECT, _detection(_enemy("Wolf")), _make_sheet())
        assert await machine.phase("someone-else") == CombatPhase.no_encounter


# ---------------------------------------------------------------------------
# Action parsing
# ---------------------------------------------------------------------------


class TestParseCombatAction:
    @pytest.fixture()
    def encounter(self, storage, clock):
        machine, _ = _make_machine(storage, clock, 5, 6, 7)
        return machine.build_encounter(
            SUBJECT,
            _detection(
                _enemy("Bandit", zone=Zone.near),
                _enemy("Bandit Captain", zone=Zone.near),
                _enemy("Wolf", kind="beast"),
            ),
            _make_sheet(),
        )

    def test_longest_name_wins(self, encounter):
        action = parse_combat_action("I shoot the Bandit Captain", encounter)
        assert action.kind == ActionKind.attack
        assert action.modality == Modality.ranged
        assert action.target_id == "enemy_2"

    def test_melee_defaults_to_close_enemy(self, encounter):
        action = parse_combat_action("I swing my sword wildly", encounter)
        assert action.modality == Modality.melee
        assert action.target_id == "enemy_3"

    def test_match_by_kind(self, encounter):
        action = parse_combat_action("I stab the beast", encounter)
        assert action.target_id == "enemy_3"

    def test_disengage(self, encounter):
        action = parse_combat_action("I try to flee into the woods", encounter)
        assert action.kind == ActionKind.disengage

    def test_move_toward_and_away(self, encounter):
        closer = parse_combat_action("I approach the bandit", encounter)
        away = parse_combat_action("I back away slowly", encounter)
        assert closer.kind == ActionKind.move and closer.toward is True
        assert closer.target_id == "enemy_1"
        assert away.kind == ActionKind.move and away.toward is False

    def test_non_combat_text(self, encounter):
        assert parse_combat_action("I admire the sunset", encounter) is None


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass
class _FakeLLM:
    replies: list[str] = field(default_factory=list)
    requests: list[ModelRequest] = field(default_factory=list)

    async def generate(self, request, *, timeout_seconds=8.0):
        self.requests.append(request)
        if not self.replies:
            raise ModelUnavailable("no reply scripted")
        return ModelResponse(text=self.replies.pop(0))


class TestRuleBasedDetector:
    async def test_attack_triggers_generic_enemy(self):
        detection = await RuleBasedCombatDetector().detect("I attack the guard")
        assert detection.triggered is True
        assert detection.fallback is True
        assert [e.name for e in detection.enemies] == ["Enemy"]
        assert detection.enemies[0].zone == Zone.close

    async def test_ambush_from_scene(self):
        detection = await RuleBasedCombatDetector().detect(
            "I look around", scene="Bandits have you surrounded"
        )
        assert detection.triggered is True
        assert detection.ambush is True

    async def test_peaceful_action(self):
        detection = await RuleBasedCombatDetector().detect("I greet Marcus warmly")
        assert detection.triggered is False


class TestModelDetector:
    async def test_parses_roster(self):
        reply = {
            "combatTriggered": True,
            "reasoning": "the wolves attack",
            "ambush": True,
            "enemies": [
                {
                    "name": "Grey Wolf",
                    "type": "beast",
                    "ac": 13,
                    "hp": 11,
                    "attackBonus": 4,
                    "damageRoll": "2d4+2",
                    "zone": "close",
                }
            ],
            "narrativeSetup": "Howls split the night.",
        }
        llm = _FakeLLM(replies=[f"```json\n{json.dumps(reply)}\n```"])

        detection = await ModelCombatDetector(llm).detect("I walk into the forest")

        assert detection.triggered is True
        assert detection.fallback is False
        enemy = detection.enemies[0]
        assert (enemy.name, enemy.kind, enemy.damage, enemy.zone) == (
            "Grey Wolf",
            "beast",
            "2d4+2",
            Zone.close,
        )
        assert llm.requests[0].cacheable is False

    async def test_malformed_reply_falls_back_to_rules(self):
        llm = _FakeLLM(replies=["the wolves are angry"])
        detection = await ModelCombatDetector(llm).detect("I attack the wolf")
        assert detection.fallback is True
        assert detection.triggered is True

    async def test_triggered_without_enemies_falls_back(self):
        llm = _FakeLLM(replies=[json.dumps({"combatTriggered": True, "enemies": []})])
        detection = await ModelCombatDetector(llm).detect("I hum a tune")
        assert detection.fallback is True
        assert detection.triggered is False
