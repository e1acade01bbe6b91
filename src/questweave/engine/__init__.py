"""Engine domain: retrieval, rules, generation and validation steps.

The turn orchestrator and prompt builder live in their own modules and
are imported directly, since they depend on the combat package.
"""

from questweave.engine.cache import CacheLookup
from questweave.engine.cache import CacheTier
from questweave.engine.cache import ResponseCache
from questweave.engine.embeddings import EmbeddingAdapter
from questweave.engine.embeddings import EmbeddingUnavailable
from questweave.engine.embeddings import build_embedding_adapter
from questweave.engine.llm import LLMAdapter
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelResponse
from questweave.engine.llm import ModelUnavailable
from questweave.engine.llm import NarrativeReply
from questweave.engine.llm import parse_narrative_reply
from questweave.engine.llm_adapters import NoopLLMAdapter
from questweave.engine.llm_adapters import OpenAICompatibleLLMAdapter
from questweave.engine.llm_adapters import build_llm_adapter
from questweave.engine.retrieval import RetrievalEngine
from questweave.engine.retry import RetryPolicy
from questweave.engine.sessions import SessionContext
from questweave.engine.sessions import SessionRegistry
from questweave.engine.skill_checks import SkillCheckDetector
from questweave.engine.skill_checks import SkillCheckResult
from questweave.engine.skill_checks import SkillCheckService
from questweave.engine.steps import StepResult
from questweave.engine.steps import StepStatus
from questweave.engine.steps import run_step
from questweave.engine.validation import ConsistencyValidator
from questweave.engine.validation import ValidationResult

__all__ = [
    "CacheLookup",
    "CacheTier",
    "ConsistencyValidator",
    "EmbeddingAdapter",
    "EmbeddingUnavailable",
    "LLMAdapter",
    "ModelRequest",
    "ModelResponse",
    "ModelUnavailable",
    "NarrativeReply",
    "NoopLLMAdapter",
    "OpenAICompatibleLLMAdapter",
    "ResponseCache",
    "RetrievalEngine",
    "RetryPolicy",
    "SessionContext",
    "SessionRegistry",
    "SkillCheckDetector",
    "SkillCheckResult",
    "SkillCheckService",
    "StepResult",
    "StepStatus",
    "ValidationResult",
    "build_embedding_adapter",
    "build_llm_adapter",
    "parse_narrative_reply",
    "run_step",
]
