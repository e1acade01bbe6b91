"""Turn orchestrator: one player action in, one turn result out.

Step order::

    session -> character -> retrieve -> skill_check -> combat -> prompt
            -> cache -> generate -> validate (revise) -> persist -> maintenance

Every step runs through :func:`run_step` and yields a tagged
:class:`StepResult`.  Steps up to persist only stage writes in one
per-subject transaction; persist commits it, so a failed turn leaves no
trace and a retry cannot duplicate anything.  Only
:class:`StoreTransactionFailed` and :class:`EncounterInvariantViolation`
abort a turn; the caller still gets a :class:`TurnResult` with
``status="error"`` rather than an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from questweave.audit import AuditEventType
from questweave.audit import AuditLogger
from questweave.characters import CharacterRepository
from questweave.characters import StoredCharacterRepository
from questweave.combat.actions import parse_combat_action
from questweave.combat.detector import CombatDetector
from questweave.combat.detector import RuleBasedCombatDetector
from questweave.combat.errors import EncounterInitializationFailed
from questweave.combat.errors import EncounterInvariantViolation
from questweave.combat.errors import InvalidCombatAction
from questweave.combat.machine import CombatStateMachine
from questweave.combat.repository import EncounterRepository
from questweave.combat.schemas import CombatPhase
from questweave.combat.schemas import CombatState
from questweave.combat.schemas import CombatTurnReport
from questweave.combat.schemas import EncounterStatus
from questweave.config import CacheConfig
from questweave.config import CombatConfig
from questweave.config import EmbeddingConfig
from questweave.config import LLMConfig
from questweave.config import MemoryConfig
from questweave.config import OrchestratorConfig
from questweave.config import RetrievalConfig
from questweave.config import RetryConfig
from questweave.config import SessionConfig
from questweave.config import ValidationConfig
from questweave.dice import DiceRoller
from questweave.dice import InvalidPlayerRoll
from questweave.dice import validate_player_roll
from questweave.engine.cache import CacheLookup
from questweave.engine.cache import ResponseCache
from questweave.engine.embeddings import EmbeddingAdapter
from questweave.engine.embeddings import build_embedding_adapter
from questweave.engine.llm import LLMAdapter
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelResponse
from questweave.engine.llm import ModelUnavailable
from questweave.engine.llm import NarrativeReply
from questweave.engine.llm import parse_narrative_reply
from questweave.engine.llm_adapters import build_llm_adapter
from questweave.engine.prompt_builder import STYLE_MAX_TOKENS
from questweave.engine.prompt_builder import build_system_prompt
from questweave.engine.prompt_builder import build_user_prompt
from questweave.engine.prompt_builder import character_profile
from questweave.engine.prompt_builder import classify_response_style
from questweave.engine.prompt_builder import mentions_npc
from questweave.engine.prompt_builder import world_bible_section
from questweave.engine.retrieval import RetrievalEngine
from questweave.engine.retrieval import SemanticStrategy
from questweave.engine.retry import RetryPolicy
from questweave.engine.sessions import SessionContext
from questweave.engine.sessions import SessionRegistry
from questweave.engine.skill_checks import SkillCheckDetector
from questweave.engine.skill_checks import SkillCheckHistory
from questweave.engine.skill_checks import SkillCheckResolver
from questweave.engine.skill_checks import SkillCheckResult
from questweave.engine.skill_checks import SkillCheckService
from questweave.engine.steps import StepResult
from questweave.engine.steps import StepStatus
from questweave.engine.steps import run_step
from questweave.engine.validation import ConsistencyValidator
from questweave.engine.validation import SubjectContext
from questweave.engine.validation import ValidationFailed
from questweave.engine.validation import ValidationResult
from questweave.memory import MemoryStore
from questweave.memory import create_event
from questweave.models.character import CharacterSheet
from questweave.models.events import Event
from questweave.models.events import EventType
from questweave.models.memory import ContextItem
from questweave.models.memory import ContextSource
from questweave.models.memory import MemoryRecord
from questweave.models.schemas import CacheOutcome
from questweave.models.schemas import CombatStateResult
from questweave.models.schemas import TurnError
from questweave.models.schemas import TurnRequest
from questweave.models.schemas import TurnResult
from questweave.models.schemas import TurnStatus
from questweave.models.schemas import ValidationSummary
from questweave.observability import record_latency
from questweave.storage.base import Storage
from questweave.storage.base import StoreTransactionFailed
from questweave.storage.base import Transaction

logger = logging.getLogger(__name__)

_FATAL = (StoreTransactionFailed, EncounterInvariantViolation)


def fallback_narrative(
    action: str,
    *,
    skill_check: SkillCheckResult | None = None,
    combat: CombatState | None = None,
    combat_events: list[str] | None = None,
) -> str:
    """Deterministic narration used when the model path is exhausted."""
    action = action.strip().rstrip(".!?")
    if action.lower().startswith("i "):
        parts = [f"You {action[2:]}."]
    else:
        parts = [f"You set out to {action[:1].lower()}{action[1:]}."]
    if skill_check is not None:
        outcome = "and it works" if skill_check.success else "but it does not go your way"
        parts.append(f"You attempt it ({skill_check.describe()}) {outcome}.")
    if combat_events:
        parts.append(" ".join(f"{line}." for line in combat_events[-3:]))
    if combat is not None and combat.awaiting_initiative:
        parts.append(f"{combat.name} begins! Roll a d20 for initiative.")
    elif combat is not None and combat.status != EncounterStatus.active:
        parts.append(f"The fight is over: {combat.status.value}.")
    parts.append("Vitalia waits to see what you do next.")
    return " ".join(parts)


@dataclass
class _Turn:
    """Scratch state for one turn.

    Every state change the turn makes is buffered in ``tx`` and committed
    once at the persist step; audit events for those changes wait in
    ``deferred`` until the commit lands.
    """

    request: TurnRequest
    session: SessionContext
    sheet: CharacterSheet
    tx: Transaction
    trace: list[StepResult] = field(default_factory=list)
    deferred: list[tuple[AuditEventType, dict]] = field(default_factory=list)
    memories: list[ContextItem] = field(default_factory=list)
    skill_check: SkillCheckResult | None = None
    combat: CombatState | None = None
    combat_report: CombatTurnReport | None = None
    combat_notes: list[str] = field(default_factory=list)
    roll_consumed: bool = False
    world_changed: bool = False
    cache_outcome: CacheOutcome = CacheOutcome.bypass
    event_id: str | None = None

    def record(self, step: StepResult) -> StepResult:
        self.trace.append(step)
        return step

    def defer(self, event_type: AuditEventType, **payload) -> None:
        self.deferred.append((event_type, payload))


@dataclass
class _Narration:
    reply: NarrativeReply
    validation: ValidationResult
    response: ModelResponse | None = None
    low_confidence: bool = False
    templated: bool = False


class TurnOrchestrator:
    """Runs the narrative turn pipeline for one subject at a time."""

    def __init__(
        self,
        *,
        storage: Storage,
        memory: MemoryStore,
        retrieval: RetrievalEngine,
        skill_checks: SkillCheckService,
        combat: CombatStateMachine,
        validator: ConsistencyValidator,
        cache: ResponseCache,
        llm: LLMAdapter,
        characters: CharacterRepository,
        sessions: SessionRegistry,
        combat_detector: CombatDetector | None = None,
        skill_detector: SkillCheckDetector | None = None,
        retry: RetryPolicy | None = None,
        audit: AuditLogger | None = None,
        llm_config: LLMConfig | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self.memory = memory
        self.retrieval = retrieval
        self.skill_checks = skill_checks
        self.combat = combat
        self.validator = validator
        self.cache = cache
        self.characters = characters
        self.sessions = sessions
        self._llm = llm
        self._combat_detector = combat_detector or RuleBasedCombatDetector()
        self._skill_detector = skill_detector or SkillCheckDetector()
        self._retry = retry or RetryPolicy()
        self._audit = audit
        self._llm_config = llm_config or LLMConfig()
        self._config = config or OrchestratorConfig()
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_storage(
        cls,
        storage: Storage,
        *,
        llm: LLMAdapter | None = None,
        embedder: EmbeddingAdapter | None = None,
        dice: DiceRoller | None = None,
        combat_detector: CombatDetector | None = None,
        audit: AuditLogger | None = None,
        llm_config: LLMConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
        retry_config: RetryConfig | None = None,
        memory_config: MemoryConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        validation_config: ValidationConfig | None = None,
        cache_config: CacheConfig | None = None,
        combat_config: CombatConfig | None = None,
        session_config: SessionConfig | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> TurnOrchestrator:
        """Wire every component over one storage backend."""
        llm_cfg = llm_config or LLMConfig()
        embed_cfg = embedding_config or EmbeddingConfig()
        if embedder is None:
            embedder = build_embedding_adapter(embed_cfg)
        memory = MemoryStore(storage, memory_config, clock=clock)
        semantic = (
            SemanticStrategy(embedder, cache_size=embed_cfg.cache_size)
            if embedder is not None
            else None
        )
        return cls(
            storage=storage,
            memory=memory,
            retrieval=RetrievalEngine(
                memory, retrieval_config, semantic=semantic, clock=clock
            ),
            skill_checks=SkillCheckService(
                SkillCheckHistory(storage), resolver=SkillCheckResolver(dice)
            ),
            combat=CombatStateMachine(
                EncounterRepository(storage), combat_config, dice=dice, clock=clock
            ),
            validator=ConsistencyValidator(validation_config),
            cache=ResponseCache(storage, cache_config, embedder=embedder, clock=clock),
            llm=llm or build_llm_adapter(llm_cfg),
            characters=StoredCharacterRepository(storage),
            sessions=SessionRegistry(storage, session_config, clock=clock),
            combat_detector=combat_detector,
            retry=RetryPolicy(retry_config),
            audit=audit,
            llm_config=llm_cfg,
            config=config,
            clock=clock,
        )

    def _lock(self, subject_id: str) -> asyncio.Lock:
        # Weakly held: a subject's lock lives only while a turn holds or awaits it.
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = self._locks[subject_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process_turn(self, request: TurnRequest) -> TurnResult:
        """Run the full pipeline for *request*; never raises."""
        start = perf_counter()
        ok = False
        try:
            if request.explicit_roll is not None:
                validate_player_roll(request.explicit_roll)
        except InvalidPlayerRoll as exc:
            return TurnResult(
                subject_id=request.subject_id,
                session_id=request.session_id,
                status=TurnStatus.rejected,
                error=TurnError(error_code="invalid_roll", message=str(exc)),
            )
        try:
            async with self._lock(request.subject_id):
                result = await self._process(request)
            ok = result.status in (TurnStatus.ok, TurnStatus.degraded)
            return result
        except _FATAL as exc:
            return await self._abort(request, exc)
        except Exception as exc:
            logger.exception("Turn pipeline crashed for subject %s", request.subject_id)
            await self._emit(
                AuditEventType.TURN_FAILED,
                request.subject_id,
                error=type(exc).__name__,
                message=str(exc),
            )
            return TurnResult(
                subject_id=request.subject_id,
                session_id=request.session_id,
                status=TurnStatus.error,
                narrative=fallback_narrative(request.action),
                error=TurnError(error_code="internal_error", message=str(exc)),
            )
        finally:
            record_latency(
                operation="turn.process",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def submit_initiative(self, subject_id: str, roll: int) -> CombatStateResult:
        """Accept the player's own initiative roll for the pending encounter."""
        async with self._lock(subject_id):
            tx = Transaction(subject_id)
            try:
                report = await self.combat.submit_initiative(subject_id, roll, tx=tx)
                resolved = None
                if report.resolved:
                    sheet = await self._load_sheet(subject_id)
                    event, resolved = await self._stage_combat_end(tx, sheet, report)
                    await self.memory.append_events(subject_id, [event], tx=tx)
                await self.cache.invalidate_subject(subject_id, tx=tx)
                await self._storage.commit(tx)
                if resolved is not None:
                    await self._emit(AuditEventType.COMBAT_RESOLVED, subject_id, **resolved)
            except InvalidPlayerRoll as exc:
                return self._combat_rejected(subject_id, "invalid_roll", str(exc))
            except InvalidCombatAction as exc:
                return self._combat_rejected(subject_id, "no_pending_initiative", str(exc))
            except EncounterInvariantViolation as exc:
                await self._emit(AuditEventType.ENCOUNTER_RESET, subject_id, message=str(exc))
                return self._combat_error(subject_id, "encounter_invariant_violation", exc)
            except StoreTransactionFailed as exc:
                return self._combat_error(subject_id, "store_transaction_failed", exc)
        return CombatStateResult(
            subject_id=subject_id,
            phase=report.encounter.phase.value,
            combat=report.state,
            narrative=" ".join(f"{e.actor} {e.detail}." for e in report.entries),
        )

    async def get_combat_state(self, subject_id: str) -> CombatStateResult:
        try:
            encounter = await self.combat.get_active(subject_id)
        except EncounterInvariantViolation as exc:
            await self._emit(AuditEventType.ENCOUNTER_RESET, subject_id, message=str(exc))
            return self._combat_error(subject_id, "encounter_invariant_violation", exc)
        if encounter is None:
            return CombatStateResult(
                subject_id=subject_id, phase=CombatPhase.no_encounter.value
            )
        return CombatStateResult(
            subject_id=subject_id,
            phase=encounter.phase.value,
            combat=encounter.snapshot(),
        )

    async def run_maintenance(self) -> dict[str, int]:
        """Expire stale memory, prune working tiers and evict idle sessions."""
        expired = await self.memory.expire_stale()
        pruned = await self.memory.prune_all_working()
        evicted = await self.sessions.evict_idle()
        return {
            "expired_records": expired,
            "pruned_records": pruned,
            "evicted_sessions": evicted,
        }

    async def record_event(self, event: Event, *, invalidate: bool = False) -> int:
        """Append an externally reported event; returns the working-tier size.

        Runs under the subject's turn lock so it never interleaves with a
        turn, and commits the event with any cache invalidation at once.
        """
        subject_id = event.subject_id
        async with self._lock(subject_id):
            tx = Transaction(subject_id)
            await self.memory.append_events(subject_id, [event], tx=tx)
            if invalidate:
                await self.cache.invalidate_subject(subject_id, tx=tx)
            await self._storage.commit(tx)
        return await self.memory.working_count(subject_id)

    async def remember_fact(
        self, subject_id: str, fact: str, importance: float | None = None
    ) -> MemoryRecord:
        async with self._lock(subject_id):
            tx = Transaction(subject_id)
            record = await self.memory.upsert_long_term(subject_id, fact, importance, tx=tx)
            await self.cache.invalidate_subject(subject_id, tx=tx)
            await self._storage.commit(tx)
        return record

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _process(self, request: TurnRequest) -> TurnResult:
        subject_id = request.subject_id
        trace: list[StepResult] = []

        session_step = await run_step(
            "session",
            lambda: self.sessions.open(subject_id, request.session_id),
            fallback=SessionContext(session_id=request.session_id, subject_id=subject_id),
        )
        trace.append(session_step)
        sheet_step = await run_step(
            "character",
            lambda: self._load_sheet(subject_id),
            fallback=CharacterSheet(subject_id=subject_id),
        )
        trace.append(sheet_step)
        turn = _Turn(
            request, session_step.value, sheet_step.value, Transaction(subject_id), trace
        )
        if request.scene:
            turn.session.scene = request.scene

        retrieved = turn.record(
            await run_step(
                "retrieve",
                lambda: self.retrieval.retrieve(
                    subject_id, request.action, self._config.retrieval_k
                ),
                fallback=[],
            )
        )
        turn.memories = list(retrieved.value or [])

        turn.record(await run_step("skill_check", lambda: self._skill_step(turn), fatal=_FATAL))
        turn.record(await run_step("combat", lambda: self._combat_step(turn), fatal=_FATAL))

        narration = await self._narrate(turn)
        await self._persist(turn, narration)
        await self._maintenance(turn)
        return await self._compose(turn, narration)

    async def _load_sheet(self, subject_id: str) -> CharacterSheet:
        return await self.characters.get(subject_id) or CharacterSheet(subject_id=subject_id)

    async def _skill_step(self, turn: _Turn) -> SkillCheckResult | None:
        phase = await self.combat.phase(turn.request.subject_id)
        if phase != CombatPhase.no_encounter:
            return None
        check = self._skill_detector.detect(turn.request.action)
        if check is None:
            return None
        turn.skill_check = self.skill_checks.resolve(
            turn.sheet, check, explicit_roll=turn.request.explicit_roll
        )
        turn.roll_consumed = turn.request.explicit_roll is not None
        turn.world_changed = True
        return turn.skill_check

    async def _combat_step(self, turn: _Turn) -> CombatState | None:
        subject_id = turn.request.subject_id
        action = turn.request.action
        encounter = await self.combat.get_active(subject_id)
        report: CombatTurnReport | None = None

        if encounter is None:
            if turn.skill_check is not None:
                return None
            detection = await self._combat_detector.detect(action, turn.session.scene)
            if not detection.triggered:
                return None
            try:
                report = await self.combat.start(subject_id, detection, turn.sheet, tx=turn.tx)
            except EncounterInitializationFailed as exc:
                logger.warning("Encounter initialization failed for %s: %s", subject_id, exc)
                turn.combat_notes.append("The threat fades before a fight can begin")
                return None
            turn.defer(
                AuditEventType.COMBAT_STARTED,
                encounter_id=report.encounter.id,
                enemies=len(report.encounter.enemies),
                difficulty=report.encounter.difficulty.value,
            )
        elif encounter.phase == CombatPhase.awaiting_player_initiative:
            if turn.request.explicit_roll is None:
                turn.combat = encounter.snapshot()
                turn.combat_notes.append("Waiting for the player's initiative roll")
                return turn.combat
            report = await self.combat.submit_initiative(
                subject_id, turn.request.explicit_roll, tx=turn.tx
            )
            turn.roll_consumed = True
        else:
            combat_action = parse_combat_action(action, encounter)
            if combat_action is None:
                turn.combat = encounter.snapshot()
                return turn.combat
            explicit = None if turn.roll_consumed else turn.request.explicit_roll
            try:
                report = await self.combat.act(
                    subject_id, combat_action, turn.sheet, explicit_roll=explicit, tx=turn.tx
                )
            except InvalidCombatAction as exc:
                turn.combat = encounter.snapshot()
                turn.combat_notes.append(str(exc))
                return turn.combat
            turn.roll_consumed = explicit is not None

        turn.combat_report = report
        turn.combat = report.state
        turn.combat_notes.extend(f"{e.actor} {e.detail}" for e in report.entries)
        turn.world_changed = True
        return turn.combat

    # ------------------------------------------------------------------
    # Generation and validation
    # ------------------------------------------------------------------

    async def _build_request(self, turn: _Turn, feedback: str | None = None) -> ModelRequest:
        sheet = turn.sheet
        style = classify_response_style(
            turn.request.action,
            in_combat=turn.combat is not None,
            npc_present=mentions_npc(turn.request.action),
        )
        world = await self.cache.component("world_bible", "vitalia", world_bible_section)
        profile = await self.cache.component(
            "character_profile",
            f"{sheet.subject_id}:{sheet.level}",
            lambda: character_profile(sheet),
        )
        summary = await self.memory.get_summary(sheet.subject_id)
        return ModelRequest(
            system_prompt=build_system_prompt(
                world_section=world, profile=profile, summary=summary.text, style=style
            ),
            user_prompt=build_user_prompt(
                turn.request.action,
                memories=turn.memories,
                skill_check=turn.skill_check,
                combat=turn.combat,
                combat_events=turn.combat_notes,
                revision_feedback=feedback,
            ),
            max_tokens=min(STYLE_MAX_TOKENS[style], self._llm_config.max_tokens),
            temperature=self._llm_config.temperature,
            # Dice outcomes make a reply specific to this turn.
            cacheable=feedback is None and turn.skill_check is None and turn.combat is None,
        )

    async def _generate(self, request: ModelRequest) -> tuple[ModelResponse, NarrativeReply]:
        timeout = self._llm_config.timeout_seconds

        async def call() -> tuple[ModelResponse, NarrativeReply]:
            started = perf_counter()
            ok = False
            try:
                response = await self._llm.generate(request, timeout_seconds=timeout)
                reply = parse_narrative_reply(response.text)
                ok = True
                return response, reply
            finally:
                record_latency(
                    operation="llm.generate",
                    duration_ms=(perf_counter() - started) * 1000,
                    ok=ok,
                )

        return await self._retry.run(call, timeout_seconds=timeout)

    async def _narrate(self, turn: _Turn) -> _Narration:
        subject_id = turn.request.subject_id
        prompt_step = turn.record(
            await run_step("prompt", lambda: self._build_request(turn))
        )
        if prompt_step.status is StepStatus.failed:
            return self._templated(turn)
        request: ModelRequest = prompt_step.value

        lookup_step = turn.record(
            await run_step(
                "cache",
                lambda: self.cache.lookup(subject_id, request),
                fallback=CacheLookup(),
            )
        )
        lookup: CacheLookup = lookup_step.value
        turn.cache_outcome = (
            CacheOutcome(lookup.tier.value)
            if lookup.hit and lookup.tier is not None
            else CacheOutcome.miss if request.cacheable else CacheOutcome.bypass
        )
        current: tuple[ModelResponse, NarrativeReply] | None = None
        if lookup.hit and lookup.response is not None:
            try:
                current = (lookup.response, parse_narrative_reply(lookup.response.text))
            except ModelUnavailable as exc:
                logger.warning("Discarding unusable cached reply for %s: %s", subject_id, exc)
                turn.cache_outcome = CacheOutcome.miss
        if current is None:
            generated = turn.record(await run_step("generate", lambda: self._generate(request)))
            if generated.status is StepStatus.failed:
                return self._templated(turn)
            current = generated.value

        subject_context = SubjectContext(
            subject_id=subject_id,
            character_name=turn.sheet.name,
            in_combat=turn.combat is not None,
        )
        attempts: list[_Narration] = []
        max_revisions = self.validator.config.max_revisions
        for revision in range(max_revisions + 1):
            response, reply = current
            validation = self.validator.validate(reply.narrative, subject_context, turn.memories)
            attempts.append(_Narration(reply, validation, response))
            try:
                self.validator.require_pass(validation)
                break
            except ValidationFailed as exc:
                await self._emit(
                    AuditEventType.VALIDATION_REJECTED,
                    subject_id,
                    score=exc.result.score,
                    revision=revision,
                    violations=[v.description for v in exc.result.violations],
                )
                if revision == max_revisions:
                    break
                revised = await self._build_request(turn, self.validator.feedback(exc.result))
                step = turn.record(
                    await run_step(f"revise_{revision + 1}", lambda: self._generate(revised))
                )
                if step.status is StepStatus.failed:
                    break
                current = step.value
                turn.cache_outcome = CacheOutcome.miss

        turn.record(
            StepResult(
                "validate",
                StepStatus.success if attempts[-1].validation.passed else StepStatus.degraded,
                reason=None if attempts[-1].validation.passed else "below threshold",
            )
        )
        usable = [a for a in attempts if not a.validation.has_critical]
        if not usable:
            logger.warning(
                "All narrations for %s hit a critical violation; using template", subject_id
            )
            worst_case = max(attempts, key=lambda a: a.validation.score).validation
            narration = self._templated(turn)
            narration.validation = worst_case.model_copy(update={"low_confidence": True})
            return narration
        best = max(usable, key=lambda a: a.validation.score)
        if best.validation.passed:
            if (
                best.response is not None
                and request.cacheable
                and best is attempts[0]
                and lookup.state_version is not None
            ):
                turn.record(
                    await run_step(
                        "cache_store",
                        lambda: self.cache.store(
                            subject_id,
                            request,
                            best.response,
                            state_version=lookup.state_version,
                        ),
                    )
                )
            return best
        best.low_confidence = True
        best.validation = best.validation.model_copy(update={"low_confidence": True})
        return best

    def _templated(self, turn: _Turn) -> _Narration:
        text = fallback_narrative(
            turn.request.action,
            skill_check=turn.skill_check,
            combat=turn.combat,
            combat_events=turn.combat_notes,
        )
        return _Narration(
            reply=NarrativeReply(narrative=text),
            validation=ValidationResult(
                score=self.validator.config.neutral_score, passed=True, degraded=True
            ),
            templated=True,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, turn: _Turn, narration: _Narration) -> None:
        step = await run_step("persist", lambda: self._write(turn, narration), fatal=_FATAL)
        turn.record(step)

    async def _write(self, turn: _Turn, narration: _Narration) -> Event:
        """Stage the turn's writes behind any combat changes and commit them once."""
        subject_id = turn.request.subject_id
        tx = turn.tx
        sheet = turn.sheet
        reply = narration.reply
        now = self._clock()
        events: list[Event] = []

        if turn.skill_check is not None:
            check = turn.skill_check
            await self.skill_checks.record(check, tx=tx)
            events.append(
                create_event(
                    subject_id,
                    EventType.skill_check,
                    f"{check.skill_type} check (DC {check.dc}): "
                    f"{'success' if check.success else 'failure'}, {check.describe()}",
                    timestamp=now,
                    context={"check_id": check.id},
                )
            )
            turn.defer(
                AuditEventType.SKILL_CHECK_RESOLVED,
                skill=check.skill_type,
                dc=check.dc,
                roll=check.roll,
                total=check.total,
                success=check.success,
            )

        report = turn.combat_report
        if report is not None and report.started:
            enemies = [e.name for e in report.encounter.enemies]
            events.append(
                create_event(
                    subject_id,
                    EventType.combat_start,
                    f"{report.encounter.name} begins against {', '.join(enemies)}",
                    participants=enemies,
                    timestamp=now,
                    context={"encounter_id": report.encounter.id},
                )
            )
        if report is not None and report.resolved:
            event, resolved = await self._stage_combat_end(tx, sheet, report)
            events.append(event)
            turn.defer(AuditEventType.COMBAT_RESOLVED, **resolved)

        event = create_event(
            subject_id,
            EventType.dm_interaction,
            f"{sheet.name}: {turn.request.action} -> {reply.narrative[:200]}",
            participants=list(reply.npcs_mentioned),
            timestamp=now,
            context={
                "session_id": turn.request.session_id,
                "validation_score": narration.validation.score,
                "low_confidence": narration.low_confidence,
                "templated": narration.templated,
            },
        )
        events.append(event)
        await self.memory.append_events(subject_id, events, tx=tx)

        for item in turn.memories:
            if item.source == ContextSource.long_term:
                await self.memory.reinforce(subject_id, item.text, tx=tx)
        if not narration.low_confidence and not narration.templated:
            for fact in reply.long_term_facts:
                await self.memory.upsert_long_term(
                    subject_id, fact, metadata={"source": event.id}, tx=tx
                )
                turn.world_changed = True
        if reply.world_state_changes:
            turn.world_changed = True
        if turn.world_changed:
            await self.cache.invalidate_subject(subject_id, tx=tx)

        turn.session.turn_count += 1
        turn.session.events_since_summary += len(events)
        await self.sessions.save(turn.session, tx=tx)

        await self._storage.commit(tx)
        turn.event_id = event.id
        for event_type, payload in turn.deferred:
            await self._emit(event_type, subject_id, **payload)
        return event

    async def _stage_combat_end(
        self, tx: Transaction, sheet: CharacterSheet, report: CombatTurnReport
    ) -> tuple[Event, dict]:
        """Stage the sheet's hit points and build the combat_end event.

        Nobody dies in Vitalia: a defeated character keeps 1 hit point.
        """
        encounter = report.encounter
        hp = max(encounter.player.hp, 1)
        await self.characters.save(sheet.model_copy(update={"current_hp": hp}), tx=tx)
        event = create_event(
            sheet.subject_id,
            EventType.combat_end,
            f"{encounter.name} ended in {encounter.status.value} after "
            f"{encounter.round} rounds",
            participants=[e.name for e in encounter.enemies],
            timestamp=self._clock(),
            context={"encounter_id": encounter.id, "status": encounter.status.value},
        )
        resolved = {
            "encounter_id": encounter.id,
            "status": encounter.status.value,
            "rounds": encounter.round,
            "player_hp": hp,
        }
        return event, resolved

    async def _maintenance(self, turn: _Turn) -> None:
        """Post-commit upkeep; failures here degrade the turn but never undo it."""
        subject_id = turn.request.subject_id
        session = turn.session

        async def summarize() -> bool:
            if session.events_since_summary < self._config.summary_every_n_events:
                return False
            recent = await self.memory.get_working(
                subject_id, limit=self._config.summary_every_n_events
            )
            digest = " ".join(event.description.split(" -> ")[0] + "." for event in recent)
            await self.memory.append_to_summary(subject_id, digest)
            session.events_since_summary = 0
            return True

        async def compress() -> bool:
            if session.turn_count % self._config.compress_every_n_turns != 0:
                return False
            episode = await self.memory.compress_to_episode(subject_id)
            if episode is None:
                return False
            await self._emit(
                AuditEventType.EPISODE_COMPRESSED,
                subject_id,
                episode_id=episode.id,
                event_count=episode.event_count,
            )
            return True

        summarized = turn.record(await run_step("summary", summarize))
        turn.record(await run_step("compress", compress))
        if summarized.value:
            turn.record(await run_step("session_save", lambda: self.sessions.save(session)))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _compose(self, turn: _Turn, narration: _Narration) -> TurnResult:
        degraded = (
            narration.low_confidence
            or narration.templated
            or any(step.status is not StepStatus.success for step in turn.trace)
        )
        validation = narration.validation
        result = TurnResult(
            subject_id=turn.request.subject_id,
            session_id=turn.request.session_id,
            status=TurnStatus.degraded if degraded else TurnStatus.ok,
            narrative=narration.reply.narrative,
            continuation=narration.reply.continuation,
            skill_check=turn.skill_check,
            combat=turn.combat,
            validation=ValidationSummary(
                score=validation.score,
                passed=validation.passed,
                low_confidence=narration.low_confidence or validation.low_confidence,
                degraded=validation.degraded,
                violations=[v.description for v in validation.violations],
            ),
            cache=turn.cache_outcome,
            event_id=turn.event_id,
            turn_count=turn.session.turn_count,
            diagnostics=[step.trace() for step in turn.trace],
        )
        await self._emit(
            AuditEventType.TURN_DEGRADED if degraded else AuditEventType.TURN_PROCESSED,
            result.subject_id,
            session_id=result.session_id,
            cache=result.cache.value,
            validation_score=validation.score,
            steps=[s["step"] for s in result.diagnostics if s["status"] != "success"],
        )
        return result

    async def _abort(self, request: TurnRequest, exc: Exception) -> TurnResult:
        if isinstance(exc, EncounterInvariantViolation):
            code = "encounter_invariant_violation"
            retryable = False
            await self._emit(AuditEventType.ENCOUNTER_RESET, request.subject_id, message=str(exc))
        else:
            code = "store_transaction_failed"
            retryable = True
        logger.error("Turn aborted for subject %s: %s", request.subject_id, exc)
        await self._emit(
            AuditEventType.TURN_FAILED, request.subject_id, error=code, message=str(exc)
        )
        return TurnResult(
            subject_id=request.subject_id,
            session_id=request.session_id,
            status=TurnStatus.error,
            error=TurnError(error_code=code, message=str(exc), retryable=retryable),
        )

    @staticmethod
    def _combat_rejected(subject_id: str, code: str, message: str) -> CombatStateResult:
        return CombatStateResult(
            subject_id=subject_id,
            status="rejected",
            phase=CombatPhase.no_encounter.value,
            error_code=code,
            message=message,
        )

    @staticmethod
    def _combat_error(subject_id: str, code: str, exc: Exception) -> CombatStateResult:
        return CombatStateResult(
            subject_id=subject_id,
            status="error",
            phase=CombatPhase.no_encounter.value,
            error_code=code,
            message=str(exc),
        )

    async def _emit(self, event_type: AuditEventType, subject_id: str, **payload) -> None:
        if self._audit is not None:
            await self._audit.emit(event_type, subject_id, **payload)
