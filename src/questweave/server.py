"""QuestWeave: FastMCP v2 server exposing the narrative turn pipeline.

Tools delegate to a :class:`TurnOrchestrator` wired over Redis (or the
in-memory backend when no URL is given).  Call ``configure(...)`` before
using the server.
"""

from __future__ import annotations

from dataclasses import asdict
from time import perf_counter

from fastmcp import FastMCP
from pydantic import ValidationError

from questweave.audit import AuditLogger
from questweave.config import AuditConfig
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
from questweave.engine.embeddings import EmbeddingAdapter
from questweave.engine.llm import LLMAdapter
from questweave.engine.orchestrator import TurnOrchestrator
from questweave.memory import create_event
from questweave.models.events import Event
from questweave.models.events import EventType
from questweave.models.memory import ContextItem
from questweave.models.memory import Episode
from questweave.models.memory import MemoryRecord
from questweave.models.schemas import CombatStateResult
from questweave.models.schemas import GetMemoryInput
from questweave.models.schemas import GetMemoryResult
from questweave.models.schemas import MemoryItem
from questweave.models.schemas import RecordEventInput
from questweave.models.schemas import RecordEventResult
from questweave.models.schemas import RememberFactInput
from questweave.models.schemas import RememberFactResult
from questweave.models.schemas import SubmitInitiativeInput
from questweave.models.schemas import TurnError
from questweave.models.schemas import TurnRequest
from questweave.models.schemas import TurnResult
from questweave.models.schemas import TurnStatus
from questweave.observability import latency_metrics_snapshot
from questweave.observability import record_latency
from questweave.storage import InMemoryStorage
from questweave.storage import RedisStorage
from questweave.storage import Storage
from questweave.storage import StoreTransactionFailed

mcp = FastMCP("QuestWeave")

# ---------------------------------------------------------------------------
# Pipeline instance (set via configure())
# ---------------------------------------------------------------------------

_storage: Storage | None = None
_orchestrator: TurnOrchestrator | None = None
_audit_logger: AuditLogger | None = None

# Event types that change world state and therefore retire cached replies.
_WORLD_CHANGING_EVENTS = {
    EventType.goal_completion,
    EventType.quest_start,
    EventType.quest_complete,
    EventType.quest_fail,
    EventType.level_up,
    EventType.combat_start,
    EventType.combat_end,
    EventType.world_event,
}


async def configure(
    redis_url: str | None = None,
    *,
    llm_config: LLMConfig | None = None,
    llm_adapter: LLMAdapter | None = None,
    embedding_config: EmbeddingConfig | None = None,
    embedding_adapter: EmbeddingAdapter | None = None,
    retry_config: RetryConfig | None = None,
    memory_config: MemoryConfig | None = None,
    retrieval_config: RetrievalConfig | None = None,
    validation_config: ValidationConfig | None = None,
    cache_config: CacheConfig | None = None,
    combat_config: CombatConfig | None = None,
    session_config: SessionConfig | None = None,
    orchestrator_config: OrchestratorConfig | None = None,
    audit_config: AuditConfig | None = None,
    dice: DiceRoller | None = None,
) -> None:
    """Initialize storage and the turn pipeline.

    Must be called before the MCP tools can function.  Without a
    *redis_url* the server keeps everything in process memory.
    """
    global _storage, _orchestrator, _audit_logger
    if _storage is not None:
        try:
            await _storage.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass

    _audit_logger = AuditLogger(audit_config or AuditConfig())
    _storage = (
        RedisStorage.from_url(redis_url) if redis_url is not None else InMemoryStorage()
    )
    _orchestrator = TurnOrchestrator.from_storage(
        _storage,
        llm=llm_adapter,
        embedder=embedding_adapter,
        dice=dice,
        audit=_audit_logger,
        llm_config=llm_config,
        embedding_config=embedding_config,
        retry_config=retry_config,
        memory_config=memory_config,
        retrieval_config=retrieval_config,
        validation_config=validation_config,
        cache_config=cache_config,
        combat_config=combat_config,
        session_config=session_config,
        config=orchestrator_config,
    )


async def shutdown() -> None:
    """Close backend clients and release server resources."""
    global _storage, _orchestrator, _audit_logger
    if _storage is not None:
        await _storage.close()
        _storage = None
    _orchestrator = None
    _audit_logger = None


def _get_orchestrator() -> TurnOrchestrator:
    """Return the orchestrator instance or raise."""
    if _orchestrator is None:
        raise RuntimeError("QuestWeave not configured. Call configure() first.")
    return _orchestrator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = str(err.get("msg", "Invalid input"))
    return f"{loc}: {msg}" if loc else msg


def _event_item(event: Event) -> MemoryItem:
    return MemoryItem(
        id=event.id,
        source="event",
        text=f"[{event.type.value}] {event.description}",
        timestamp=event.timestamp,
        importance=0.5,
    )


def _episode_item(episode: Episode) -> MemoryItem:
    return MemoryItem(
        id=episode.id,
        source="episode",
        text=episode.summary_text,
        timestamp=episode.period_end,
        importance=0.7,
    )


def _record_item(record: MemoryRecord) -> MemoryItem:
    return MemoryItem(
        id=record.id,
        source=record.tier.value,
        text=record.text,
        timestamp=record.created_at,
        importance=record.importance,
    )


def _context_item(item: ContextItem) -> MemoryItem:
    return MemoryItem(
        id=item.id,
        source=item.source.value,
        text=item.text,
        timestamp=item.timestamp,
        importance=item.importance,
        score=round(item.composite_score, 4),
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def process_turn(
    subject_id: str,
    action: str,
    session_id: str = "default",
    explicit_roll: int | None = None,
    scene: str | None = None,
) -> TurnResult:
    """Narrate the outcome of one player action.

    Args:
        subject_id: Character taking the turn.
        action: Free-text description of what the player does.
        session_id: Client session the turn belongs to.
        explicit_roll: The player's own d20 roll for a check, attack or
            initiative.  Dice are never rolled on the player's behalf.
        scene: Optional description of the current scene.
    """
    orchestrator = _get_orchestrator()
    try:
        request = TurnRequest.model_validate(
            {
                "subject_id": subject_id,
                "action": action,
                "session_id": session_id,
                "explicit_roll": explicit_roll,
                "scene": scene,
            }
        )
    except ValidationError as exc:
        return TurnResult(
            subject_id=subject_id,
            session_id=session_id,
            status=TurnStatus.rejected,
            error=TurnError(
                error_code="validation_error", message=_validation_message(exc)
            ),
        )
    # process_turn records its own latency under turn.process
    return await orchestrator.process_turn(request)


@mcp.tool
async def submit_initiative(subject_id: str, roll: int) -> CombatStateResult:
    """Submit the player's initiative roll for the pending encounter.

    Args:
        subject_id: Character in combat.
        roll: The player's d20 result (1-20).
    """
    start = perf_counter()
    ok = False
    try:
        orchestrator = _get_orchestrator()
        try:
            validated = SubmitInitiativeInput.model_validate(
                {"subject_id": subject_id, "roll": roll}
            )
        except ValidationError as exc:
            return CombatStateResult(
                subject_id=subject_id,
                status="rejected",
                phase="unknown",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        result = await orchestrator.submit_initiative(validated.subject_id, validated.roll)
        ok = result.status == "ok"
        return result
    finally:
        record_latency(
            operation="mcp.submit_initiative",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def get_combat_state(subject_id: str) -> CombatStateResult:
    """Return the subject's combat phase and encounter snapshot."""
    return await _get_orchestrator().get_combat_state(subject_id)


@mcp.tool
async def get_memory(
    subject_id: str,
    query: str | None = None,
    k: int = 5,
) -> GetMemoryResult:
    """Read every memory tier for a subject.

    Args:
        subject_id: Character whose memory is read.
        query: Optional text; when given, ranked context is returned too.
        k: Number of ranked items to return for the query.
    """
    start = perf_counter()
    ok = False
    try:
        orchestrator = _get_orchestrator()
        try:
            validated = GetMemoryInput.model_validate(
                {"subject_id": subject_id, "query": query, "k": k}
            )
        except ValidationError as exc:
            return GetMemoryResult(
                subject_id=subject_id,
                status="error",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        context = await orchestrator.memory.complete_context(validated.subject_id)
        retrieved: list[MemoryItem] = []
        if validated.query:
            items = await orchestrator.retrieval.retrieve(
                validated.subject_id, validated.query, validated.k
            )
            retrieved = [_context_item(item) for item in items]
        ok = True
        return GetMemoryResult(
            subject_id=validated.subject_id,
            summary=context.summary.text,
            working=[_event_item(event) for event in context.working],
            episodes=[_episode_item(episode) for episode in context.episodes],
            long_term=[_record_item(record) for record in context.long_term],
            retrieved=retrieved,
        )
    finally:
        record_latency(
            operation="mcp.get_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def record_event(
    subject_id: str,
    type: str,
    description: str,
    participants: list[str] | None = None,
    stat_delta: dict[str, int] | None = None,
    quest_id: str | None = None,
) -> RecordEventResult:
    """Record a gameplay event (goal completion, quest progress, ...).

    Args:
        subject_id: Character the event belongs to.
        type: Event type, e.g. goal_completion or quest_complete.
        description: What happened.
        participants: Named characters involved.
        stat_delta: Stat changes keyed by STR, DEX, CON, INT, WIS or CHA.
        quest_id: Quest the event advanced, if any.
    """
    start = perf_counter()
    ok = False
    try:
        orchestrator = _get_orchestrator()
        try:
            validated = RecordEventInput.model_validate(
                {
                    "subject_id": subject_id,
                    "type": type,
                    "description": description,
                    "participants": participants or [],
                    "stat_delta": {k.upper(): v for k, v in (stat_delta or {}).items()},
                    "quest_id": quest_id,
                }
            )
        except ValidationError as exc:
            return RecordEventResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        event = create_event(
            validated.subject_id,
            validated.type,
            validated.description,
            participants=validated.participants,
            stat_delta={code.value: delta for code, delta in validated.stat_delta.items()},
            quest_id=validated.quest_id,
        )
        try:
            working_count = await orchestrator.record_event(
                event,
                invalidate=event.type in _WORLD_CHANGING_EVENTS or bool(event.stat_delta),
            )
        except StoreTransactionFailed as exc:
            return RecordEventResult(
                status="error",
                error_code="store_transaction_failed",
                message=str(exc),
            )
        ok = True
        return RecordEventResult(event_id=event.id, working_count=working_count)
    finally:
        record_latency(
            operation="mcp.record_event",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def remember_fact(
    subject_id: str,
    fact: str,
    importance: float | None = None,
) -> RememberFactResult:
    """Store a fact the story must never forget.

    Args:
        subject_id: Character the fact belongs to.
        fact: The fact as one sentence.
        importance: Initial importance in [0, 1].
    """
    start = perf_counter()
    ok = False
    try:
        orchestrator = _get_orchestrator()
        try:
            validated = RememberFactInput.model_validate(
                {"subject_id": subject_id, "fact": fact, "importance": importance}
            )
        except ValidationError as exc:
            return RememberFactResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )
        try:
            record = await orchestrator.remember_fact(
                validated.subject_id, validated.fact, validated.importance
            )
        except StoreTransactionFailed as exc:
            return RememberFactResult(
                status="error",
                error_code="store_transaction_failed",
                message=str(exc),
            )
        ok = True
        return RememberFactResult(memory_id=record.id, importance=record.importance)
    finally:
        record_latency(
            operation="mcp.remember_fact",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def skill_check_stats(subject_id: str) -> dict:
    """Aggregate statistics over the subject's resolved skill checks."""
    stats = await _get_orchestrator().skill_checks.history.stats(subject_id)
    return {"subject_id": subject_id, **asdict(stats)}


@mcp.tool
async def cache_stats() -> dict:
    """Hit and miss counters for every response cache tier."""
    return _get_orchestrator().cache.stats()


@mcp.tool
async def latency_metrics() -> dict:
    """In-process latency aggregates per operation."""
    return {"operations": latency_metrics_snapshot()}
