"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing, just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMConfig:
    """Generative model provider settings used by the turn orchestrator."""

    provider: str = "noop"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    max_tokens: int = 800
    timeout_seconds: float = 8.0


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding backend settings for semantic retrieval and cache lookups."""

    provider: str = "none"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 5.0
    cache_size: int = 1000


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff around external calls."""

    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 4.0
    multiplier: float = 2.0


@dataclass(frozen=True)
class MemoryConfig:
    """Tier sizes, lifetimes and importance defaults for the memory store."""

    working_cap: int = 10
    episode_min_batch: int = 10
    episode_max_batch: int = 50
    episode_age_days: int = 7
    working_ttl_days: int = 30
    episode_ttl_days: int = 90
    working_importance: float = 0.5
    episode_importance: float = 0.7
    long_term_importance: float = 0.8
    long_term_read_threshold: float = 0.7
    long_term_read_limit: int = 20
    summary_max_words: int = 500
    default_summary: str = (
        "Your adventure in Vitalia is just beginning. "
        "The Six Pillars await discovery."
    )


@dataclass(frozen=True)
class RetrievalConfig:
    """Candidate windows and scoring weights for hybrid retrieval."""

    window_days: int = 30
    candidate_limit: int = 50
    semantic_window_days: int = 60
    # Hybrid relevance weights (must sum to 1.0)
    keyword_weight: float = 0.4
    semantic_weight: float = 0.6
    # Composite ranking weights (must sum to 1.0)
    recency_weight: float = 0.3
    relevance_weight: float = 0.5
    importance_weight: float = 0.2
    decay_days: float = 30.0
    high_signal_types: tuple[str, ...] = (
        "quest_complete",
        "npc_interaction",
        "level_up",
    )
    default_k: int = 5


@dataclass(frozen=True)
class ValidationConfig:
    """Scoring constants for the consistency gate."""

    pass_threshold: int = 85
    max_revisions: int = 2
    contradiction_penalty: int = 20
    minor_penalty: int = 5
    critical_penalty: int = 40
    neutral_score: int = 85


@dataclass(frozen=True)
class CacheConfig:
    """Per-tier lifetimes and the semantic match threshold."""

    enabled: bool = True
    exact_ttl_seconds: int = 24 * 3600
    semantic_ttl_seconds: int = 6 * 3600
    static_ttl_seconds: int = 7 * 24 * 3600
    similarity_threshold: float = 0.85
    semantic_scan_limit: int = 100


@dataclass(frozen=True)
class CombatConfig:
    """Defaults for encounter setup and combat resolution."""

    enemy_default_attack_bonus: int = 3
    enemy_default_damage: str = "1d6+1"
    enemy_retreat_hp_ratio: float = 0.25
    flee_base_dc: int = 10
    flee_dc_per_close_enemy: int = 2


@dataclass(frozen=True)
class SessionConfig:
    """Lifecycle of per-session context objects."""

    idle_timeout_seconds: float = 1800.0


@dataclass(frozen=True)
class OrchestratorConfig:
    """Turn pipeline cadence settings."""

    retrieval_k: int = 5
    summary_every_n_events: int = 5
    compress_every_n_turns: int = 10


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "questweave_audit.jsonl"
    enabled: bool = True
