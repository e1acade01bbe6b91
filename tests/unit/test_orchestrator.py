"""End-to-end tests for the turn orchestrator over in-memory storage."""

from __future__ import annotations

import gc
import json
from dataclasses import dataclass
from dataclasses import field

import pytest

from questweave.audit import AuditEventType
from questweave.audit import AuditLogger
from questweave.combat.detector import RuleBasedCombatDetector
from questweave.config import AuditConfig
from questweave.config import MemoryConfig
from questweave.config import OrchestratorConfig
from questweave.config import RetryConfig
from questweave.dice import ScriptedDice
from questweave.engine.llm import ModelResponse
from questweave.engine.llm import ModelUnavailable
from questweave.engine.orchestrator import TurnOrchestrator
from questweave.engine.orchestrator import fallback_narrative
from questweave.memory import create_event
from questweave.models.character import CharacterSheet
from questweave.models.events import EventType
from questweave.models.schemas import CacheOutcome
from questweave.models.schemas import TurnRequest
from questweave.models.schemas import TurnStatus

SUBJECT = "hero"


def _reply(narrative: str, **extra) -> str:
    return json.dumps({"narrative": narrative, **extra})


@dataclass
class _ScriptedLLM:
    """Replays replies in order; an exception instance is raised instead."""

    replies: list = field(default_factory=list)
    requests: list = field(default_factory=list)

    async def generate(self, request, *, timeout_seconds=8.0):
        self.requests.append(request)
        if not self.replies:
            raise ModelUnavailable("no reply scripted", retryable=False)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ModelResponse(text=reply)


@pytest.fixture()
def audit(tmp_path) -> AuditLogger:
    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def build(storage, clock, audit):
    def _build(llm, *rolls, backend=None, **kwargs):
        kwargs.setdefault("retry_config", RetryConfig(max_attempts=1))
        return TurnOrchestrator.from_storage(
            backend if backend is not None else storage,
            llm=llm,
            dice=ScriptedDice(rolls),
            combat_detector=RuleBasedCombatDetector(),
            audit=audit,
            clock=clock,
            **kwargs,
        )

    return _build


def _turn(action: str, **kwargs) -> TurnRequest:
    return TurnRequest(subject_id=SUBJECT, action=action, **kwargs)


# ---------------------------------------------------------------------------
# Happy path and caching
# ---------------------------------------------------------------------------


class TestPlainTurn:
    async def test_narrates_and_persists(self, build, audit):
        llm = _ScriptedLLM([_reply("The baker smiles and hands you a warm loaf.")])
        orchestrator = build(llm)

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.ok
        assert result.narrative == "The baker smiles and hands you a warm loaf."
        assert result.cache == CacheOutcome.miss
        assert result.turn_count == 1
        assert result.validation.score == 100
        assert [d["step"] for d in result.diagnostics] == [
            "session",
            "character",
            "retrieve",
            "skill_check",
            "combat",
            "prompt",
            "cache",
            "generate",
            "validate",
            "cache_store",
            "persist",
            "summary",
            "compress",
        ]
        event = await orchestrator.memory.get_event(SUBJECT, result.event_id)
        assert event.type == EventType.dm_interaction
        assert event.description == (
            "Adventurer: I greet the baker -> The baker smiles and hands you a warm loaf."
        )
        assert len(await audit.read_events(event_type=AuditEventType.TURN_PROCESSED)) == 1

    async def test_prompt_carries_character_and_style(self, build):
        llm = _ScriptedLLM([_reply("You look around.")])
        orchestrator = build(llm)
        await orchestrator.characters.save(
            CharacterSheet(subject_id=SUBJECT, name="Aria", stats={"WIS": 16})
        )

        await orchestrator.process_turn(_turn("I look around the square"))

        request = llm.requests[0]
        assert "Name: Aria" in request.system_prompt
        assert "DESCRIPTIVE" in request.system_prompt
        assert request.user_prompt.endswith("Player action: I look around the square")
        assert request.max_tokens == 700

    async def test_repeat_action_is_served_from_cache(self, build):
        llm = _ScriptedLLM([_reply("The baker smiles.")])
        orchestrator = build(llm, config=OrchestratorConfig(retrieval_k=0))

        first = await orchestrator.process_turn(_turn("I greet the baker"))
        second = await orchestrator.process_turn(_turn("I greet the baker"))

        assert first.cache == CacheOutcome.miss
        assert second.cache == CacheOutcome.exact
        assert second.narrative == "The baker smiles."
        assert second.turn_count == 2
        assert len(llm.requests) == 1

    async def test_long_term_facts_are_stored_and_invalidate_cache(self, build):
        llm = _ScriptedLLM(
            [_reply("Marcus grins at you.", long_term_facts=["Marcus owes you a favor."])]
        )
        orchestrator = build(llm)

        result = await orchestrator.process_turn(_turn("I help Marcus carry flour"))

        assert result.status == TurnStatus.ok
        facts = await orchestrator.memory.get_long_term(SUBJECT)
        assert [f.text for f in facts] == ["Marcus owes you a favor."]
        assert await orchestrator.cache.state_version(SUBJECT) == 1

    async def test_plain_narration_keeps_cache(self, build):
        orchestrator = build(_ScriptedLLM([_reply("The baker smiles.")]))
        await orchestrator.process_turn(_turn("I greet the baker"))
        assert await orchestrator.cache.state_version(SUBJECT) == 0

    async def test_retrieved_facts_are_reinforced(self, build):
        orchestrator = build(_ScriptedLLM([_reply("Marcus waves from the mill.")]))
        await orchestrator.memory.upsert_long_term(SUBJECT, "Marcus owes you a favor.")

        await orchestrator.process_turn(_turn("I visit Marcus"))

        facts = await orchestrator.memory.get_long_term(SUBJECT)
        assert facts[0].importance == pytest.approx(0.9)


# ---------------------------------------------------------------------------
# Skill checks
# ---------------------------------------------------------------------------


class TestSkillChecks:
    async def test_explicit_roll_is_used(self, build, audit):
        llm = _ScriptedLLM([_reply("You haul yourself over the ledge.")])
        orchestrator = build(llm)
        await orchestrator.characters.save(CharacterSheet(subject_id=SUBJECT, stats={"STR": 14}))

        result = await orchestrator.process_turn(_turn("I climb the cliff", explicit_roll=14))

        check = result.skill_check
        assert (check.skill_type, check.roll, check.total, check.dc) == ("Athletics", 14, 16, 15)
        assert check.success is True
        assert result.cache == CacheOutcome.bypass
        assert "## SKILL CHECK" in llm.requests[0].user_prompt
        assert await orchestrator.cache.state_version(SUBJECT) == 1
        types = [e.type for e in await orchestrator.memory.list_events(SUBJECT)]
        assert sorted(t.value for t in types) == ["dm_interaction", "skill_check"]
        resolved = await audit.read_events(event_type=AuditEventType.SKILL_CHECK_RESOLVED)
        assert resolved[0].payload["total"] == 16

    async def test_system_rolls_when_player_does_not(self, build):
        orchestrator = build(_ScriptedLLM([_reply("You slip on the wet rock.")]), 9)
        result = await orchestrator.process_turn(_turn("I climb the cliff"))
        assert result.skill_check.roll == 9
        assert result.skill_check.success is False
        stats = await orchestrator.skill_checks.history.stats(SUBJECT)
        assert stats.total_checks == 1

    async def test_invalid_roll_is_rejected_without_side_effects(self, build):
        llm = _ScriptedLLM([_reply("unused")])
        orchestrator = build(llm)

        result = await orchestrator.process_turn(_turn("I climb the cliff", explicit_roll=25))

        assert result.status == TurnStatus.rejected
        assert result.error.error_code == "invalid_roll"
        assert llm.requests == []
        assert await orchestrator.memory.event_count(SUBJECT) == 0


# ---------------------------------------------------------------------------
# Combat
# ---------------------------------------------------------------------------


class TestCombatFlow:
    async def test_start_initiative_and_attack(self, build, audit):
        llm = _ScriptedLLM(
            [
                _reply("A bandit draws a rusty blade."),
                _reply("You are quicker than the bandit."),
                _reply("Your strike lands hard."),
            ]
        )
        # Enemy initiative 10 (+2 DEX), weapon damage 8, enemy attack roll 1.
        orchestrator = build(llm, 10, 8, 1)

        started = await orchestrator.process_turn(_turn("I attack the bandit"))
        assert started.combat.awaiting_initiative is True
        assert started.cache == CacheOutcome.bypass
        assert "Ask the player to roll a d20 for initiative." in llm.requests[0].user_prompt
        assert len(await audit.read_events(event_type=AuditEventType.COMBAT_STARTED)) == 1

        ready = await orchestrator.process_turn(_turn("I roll initiative", explicit_roll=15))
        assert ready.combat.phase.value == "in_progress"
        assert ready.combat.current_turn == "Adventurer"
        assert ready.skill_check is None

        hit = await orchestrator.process_turn(_turn("I strike the enemy", explicit_roll=18))
        assert hit.combat.enemies[0]["hp"] == 12
        assert hit.combat.round == 2
        types = {e.type for e in await orchestrator.memory.list_events(SUBJECT)}
        assert EventType.combat_start in types

    async def test_waiting_for_initiative_without_roll(self, build):
        llm = _ScriptedLLM([_reply("Steel flashes."), _reply("The bandit circles you.")])
        orchestrator = build(llm, 10)
        await orchestrator.process_turn(_turn("I attack the bandit"))

        result = await orchestrator.process_turn(_turn("I swing my sword"))

        assert result.combat.awaiting_initiative is True
        assert "Waiting for the player's initiative roll" in llm.requests[1].user_prompt

    async def test_submit_initiative(self, build):
        orchestrator = build(_ScriptedLLM([_reply("Steel flashes.")]), 10)
        await orchestrator.process_turn(_turn("I attack the bandit"))

        bad = await orchestrator.submit_initiative(SUBJECT, 0)
        assert bad.status == "rejected"
        assert bad.error_code == "invalid_roll"

        ok = await orchestrator.submit_initiative(SUBJECT, 15)
        assert ok.status == "ok"
        assert ok.phase == "in_progress"
        assert "Adventurer initiative 15 +0 = 15." in ok.narrative

        again = await orchestrator.submit_initiative(SUBJECT, 15)
        assert again.error_code == "no_pending_initiative"

        state = await orchestrator.get_combat_state(SUBJECT)
        assert state.phase == "in_progress"
        assert state.combat.current_turn == "Adventurer"

    async def test_resolution_writes_hit_points_back(self, build, audit):
        llm = _ScriptedLLM(
            [
                _reply("A bandit draws a rusty blade."),
                _reply("You are quicker than the bandit."),
                _reply("You slip away into the trees."),
            ]
        )
        orchestrator = build(llm, 10)
        await orchestrator.characters.save(CharacterSheet(subject_id=SUBJECT, max_hp=30))

        await orchestrator.process_turn(_turn("I attack the bandit"))
        await orchestrator.process_turn(_turn("I roll initiative", explicit_roll=15))
        fled = await orchestrator.process_turn(_turn("I flee", explicit_roll=20))

        assert fled.status == TurnStatus.ok
        assert (await orchestrator.get_combat_state(SUBJECT)).phase == "no_encounter"
        sheet = await orchestrator.characters.get(SUBJECT)
        assert sheet.current_hp == 30
        resolved = await audit.read_events(event_type=AuditEventType.COMBAT_RESOLVED)
        assert resolved[0].payload["status"] == "fled"
        assert resolved[0].payload["player_hp"] == 30
        types = {e.type for e in await orchestrator.memory.list_events(SUBJECT)}
        assert EventType.combat_end in types

    async def test_no_encounter_state(self, build):
        state = await build(_ScriptedLLM()).get_combat_state(SUBJECT)
        assert state.phase == "no_encounter"
        assert state.combat is None

    async def test_invariant_violation_aborts_and_resets(self, build, audit):
        llm = _ScriptedLLM([_reply("unused")])
        orchestrator = build(llm, 5, 6)
        detection = await RuleBasedCombatDetector().detect("I attack the guard")
        sheet = CharacterSheet(subject_id=SUBJECT)
        for _ in range(2):
            encounter = orchestrator.combat.build_encounter(SUBJECT, detection, sheet)
            await orchestrator.combat.repository.save(encounter)

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.error
        assert result.error.error_code == "encounter_invariant_violation"
        assert result.error.retryable is False
        assert llm.requests == []
        assert (await orchestrator.get_combat_state(SUBJECT)).phase == "no_encounter"
        assert len(await audit.read_events(event_type=AuditEventType.ENCOUNTER_RESET)) == 1


# ---------------------------------------------------------------------------
# Model failures and validation
# ---------------------------------------------------------------------------


class TestNarrationFallbacks:
    async def test_model_unavailable_uses_template(self, build):
        orchestrator = build(_ScriptedLLM())

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.degraded
        assert result.narrative == fallback_narrative("I greet the baker")
        assert result.validation.degraded is True
        assert result.event_id is not None
        generate = next(d for d in result.diagnostics if d["step"] == "generate")
        assert generate["status"] == "failed"

    async def test_malformed_reply_uses_template(self, build):
        orchestrator = build(_ScriptedLLM(["The baker smiles, but not in JSON."]))
        result = await orchestrator.process_turn(_turn("I greet the baker"))
        assert result.status == TurnStatus.degraded
        assert result.narrative.startswith("You greet the baker.")

    async def test_transient_failure_is_retried(self, build):
        llm = _ScriptedLLM([ModelUnavailable("503"), _reply("The baker smiles.")])
        orchestrator = build(
            llm, retry_config=RetryConfig(max_attempts=2, initial_delay_seconds=0.0)
        )

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.ok
        assert len(llm.requests) == 2

    async def test_failed_validation_is_revised(self, build, audit):
        llm = _ScriptedLLM([_reply("Game over, hero."), _reply("The baker laughs kindly.")])
        orchestrator = build(llm)

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.ok
        assert result.narrative == "The baker laughs kindly."
        assert "## REVISION REQUIRED" in llm.requests[1].user_prompt
        assert llm.requests[1].cacheable is False
        rejected = await audit.read_events(event_type=AuditEventType.VALIDATION_REJECTED)
        assert len(rejected) == 1

    async def test_critical_violation_everywhere_uses_template(self, build):
        llm = _ScriptedLLM([_reply("Game over, hero.")] * 3)
        orchestrator = build(llm)

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert len(llm.requests) == 3
        assert result.status == TurnStatus.degraded
        assert result.narrative == fallback_narrative("I greet the baker")
        assert result.validation.low_confidence is True

    async def test_best_low_scoring_attempt_is_flagged(self, build):
        reply = _reply("That was pathetic.", long_term_facts=["Marcus owes you a favor."])
        orchestrator = build(_ScriptedLLM([reply] * 3))

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.degraded
        assert result.narrative == "That was pathetic."
        assert result.validation.low_confidence is True
        assert result.validation.score == 80
        assert await orchestrator.memory.get_long_term(SUBJECT) == []

    async def test_critical_attempt_never_beats_a_usable_one(self, build):
        shaming = _reply("You failed. How lazy and pathetic.")
        orchestrator = build(_ScriptedLLM([_reply("Game over."), shaming, shaming]))

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.degraded
        assert result.narrative == "You failed. How lazy and pathetic."
        assert result.narrative != fallback_narrative("I greet the baker")
        assert result.validation.low_confidence is True
        assert result.validation.score < 60


# ---------------------------------------------------------------------------
# Fatal storage errors
# ---------------------------------------------------------------------------


class TestStoreFailures:
    async def test_commit_failure_aborts_turn(self, build, failing_storage, audit):
        orchestrator = build(_ScriptedLLM([_reply("The baker smiles.")]), backend=failing_storage)
        failing_storage.fail = True

        result = await orchestrator.process_turn(_turn("I greet the baker"))

        assert result.status == TurnStatus.error
        assert result.error.error_code == "store_transaction_failed"
        assert result.error.retryable is True
        failed = await audit.read_events(event_type=AuditEventType.TURN_FAILED)
        assert failed[0].payload["error"] == "store_transaction_failed"

    async def test_failed_turn_leaves_no_partial_state(self, build, failing_storage, audit):
        llm = _ScriptedLLM([_reply("You slip on the wet rock."), _reply("You reach the top.")])
        orchestrator = build(llm, backend=failing_storage)
        failing_storage.fail = True
        failing_storage.fail_collection = "events"

        failed = await orchestrator.process_turn(_turn("I climb the cliff", explicit_roll=14))

        assert failed.error.error_code == "store_transaction_failed"
        assert failed.error.retryable is True
        assert await orchestrator.memory.event_count(SUBJECT) == 0
        assert (await orchestrator.skill_checks.history.stats(SUBJECT)).total_checks == 0
        assert await orchestrator.cache.state_version(SUBJECT) == 0
        assert await orchestrator.sessions.get(SUBJECT, "default") is None
        assert await audit.read_events(event_type=AuditEventType.SKILL_CHECK_RESOLVED) == []

        failing_storage.fail = False
        retried = await orchestrator.process_turn(_turn("I climb the cliff", explicit_roll=14))

        assert retried.status == TurnStatus.ok
        assert retried.turn_count == 1
        types = [e.type.value for e in await orchestrator.memory.list_events(SUBJECT)]
        assert sorted(types) == ["dm_interaction", "skill_check"]
        assert (await orchestrator.skill_checks.history.stats(SUBJECT)).total_checks == 1
        assert await orchestrator.cache.state_version(SUBJECT) == 1

    async def test_failed_turn_does_not_start_combat(self, build, failing_storage, audit):
        llm = _ScriptedLLM([_reply("Steel flashes."), _reply("Steel flashes again.")])
        orchestrator = build(llm, 10, 10, backend=failing_storage)
        failing_storage.fail = True

        failed = await orchestrator.process_turn(_turn("I attack the bandit"))

        assert failed.status == TurnStatus.error
        assert (await orchestrator.get_combat_state(SUBJECT)).phase == "no_encounter"
        assert await audit.read_events(event_type=AuditEventType.COMBAT_STARTED) == []

        failing_storage.fail = False
        started = await orchestrator.process_turn(_turn("I attack the bandit"))

        assert started.combat.awaiting_initiative is True
        assert len(await audit.read_events(event_type=AuditEventType.COMBAT_STARTED)) == 1
        events = await orchestrator.memory.list_events(SUBJECT)
        assert [e.type for e in events].count(EventType.combat_start) == 1


# ---------------------------------------------------------------------------
# External writes and subject locks
# ---------------------------------------------------------------------------


class TestExternalWrites:
    async def test_record_event_can_invalidate(self, build):
        orchestrator = build(_ScriptedLLM())
        event = create_event(SUBJECT, EventType.quest_complete, "Delivered the bread")

        working = await orchestrator.record_event(event, invalidate=True)

        assert working == 1
        assert await orchestrator.cache.state_version(SUBJECT) == 1
        assert (await orchestrator.memory.get_event(SUBJECT, event.id)).id == event.id

    async def test_record_event_keeps_cache_by_default(self, build):
        orchestrator = build(_ScriptedLLM())
        await orchestrator.record_event(
            create_event(SUBJECT, EventType.dm_interaction, "Chatted with Marcus")
        )
        assert await orchestrator.cache.state_version(SUBJECT) == 0

    async def test_remember_fact(self, build):
        orchestrator = build(_ScriptedLLM())

        record = await orchestrator.remember_fact(SUBJECT, "Marcus owes you a favor.", 0.9)

        assert record.importance == 0.9
        facts = await orchestrator.memory.get_long_term(SUBJECT)
        assert [f.id for f in facts] == [record.id]
        assert await orchestrator.cache.state_version(SUBJECT) == 1

    async def test_idle_subject_locks_are_released(self, build):
        orchestrator = build(_ScriptedLLM([_reply("The baker smiles.")]))

        await orchestrator.process_turn(_turn("I greet the baker"))
        gc.collect()

        assert SUBJECT not in orchestrator._locks
        assert SUBJECT not in orchestrator.memory._locks


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TestMaintenance:
    async def test_summary_is_extended_every_n_events(self, build, clock):
        llm = _ScriptedLLM([_reply("The baker smiles."), _reply("Marcus waves back.")])
        orchestrator = build(llm, config=OrchestratorConfig(summary_every_n_events=2))

        await orchestrator.process_turn(_turn("I greet the baker"))
        clock.advance(1)
        await orchestrator.process_turn(_turn("I wave at Marcus"))

        summary = await orchestrator.memory.get_summary(SUBJECT)
        assert summary.text.endswith(
            "Adventurer: I greet the baker. Adventurer: I wave at Marcus."
        )
        session = await orchestrator.sessions.get(SUBJECT, "default")
        assert session.events_since_summary == 0
        assert session.turn_count == 2

    async def test_working_memory_is_compressed(self, build, clock, audit):
        llm = _ScriptedLLM([_reply("The baker smiles."), _reply("Marcus waves back.")])
        orchestrator = build(
            llm,
            memory_config=MemoryConfig(episode_min_batch=1, episode_age_days=0),
            config=OrchestratorConfig(compress_every_n_turns=2),
        )

        await orchestrator.process_turn(_turn("I greet the baker"))
        clock.advance(10)
        await orchestrator.process_turn(_turn("I wave at Marcus"))

        episodes = await orchestrator.memory.get_episodes(SUBJECT)
        assert [e.event_count for e in episodes] == [1]
        assert len(await audit.read_events(event_type=AuditEventType.EPISODE_COMPRESSED)) == 1

    async def test_run_maintenance(self, build, clock):
        orchestrator = build(_ScriptedLLM([_reply("The baker smiles.")]))
        await orchestrator.process_turn(_turn("I greet the baker"))
        clock.advance(3600)

        counts = await orchestrator.run_maintenance()

        assert counts == {"expired_records": 0, "pruned_records": 0, "evicted_sessions": 1}
