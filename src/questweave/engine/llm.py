"""Generative model boundary: request/response contract and reply parsing."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Protocol
from typing import TypeVar
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ModelUnavailable(Exception):
    """The external model failed, timed out or replied with something unusable."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ModelRequest(BaseModel):
    """One text-completion request."""

    model_config = ConfigDict(frozen=True)

    system_prompt: str
    user_prompt: str
    max_tokens: int = Field(default=800, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    cacheable: bool = True

    def fingerprint(self) -> str:
        """Stable hash of the normalized prompt and the parameters that shape output."""
        payload = {
            "system": _normalize(self.system_prompt),
            "user": _normalize(self.user_prompt),
            "max_tokens": self.max_tokens,
            "temperature": round(self.temperature, 2),
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def system_fingerprint(self) -> str:
        raw = f"{_normalize(self.system_prompt)}|{self.max_tokens}|{round(self.temperature, 2)}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ModelResponse(BaseModel):
    text: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


@runtime_checkable
class LLMAdapter(Protocol):
    """Protocol for generative model adapters.

    Implementations raise :class:`ModelUnavailable` for every failure mode
    so callers can pick their fallback path.
    """

    async def generate(
        self,
        request: ModelRequest,
        *,
        timeout_seconds: float = 8.0,
    ) -> ModelResponse: ...


def _normalize(text: str) -> str:
    return " ".join(text.split()).lower()


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

# Regex to strip Markdown code fences wrapping JSON output
_CODE_FENCE_RE = re.compile(
    r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$",
    re.DOTALL,
)

ReplyT = TypeVar("ReplyT", bound=BaseModel)


class NarrativeReply(BaseModel):
    """Strict shape of a narrator reply."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    narrative: str = Field(min_length=1)
    continuation: str | None = None
    world_state_changes: list[str] = Field(default_factory=list)
    npcs_mentioned: list[str] = Field(default_factory=list)
    long_term_facts: list[str] = Field(default_factory=list)


def parse_json_reply(raw: str, model: type[ReplyT]) -> ReplyT:
    """Parse *raw* into *model*, failing closed.

    One optional code fence is stripped; anything else that is not a
    JSON object matching the schema raises :class:`ModelUnavailable`.
    """
    text = raw.strip()
    match = _CODE_FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ModelUnavailable(f"malformed model reply: {exc}") from exc
    if not isinstance(data, dict):
        raise ModelUnavailable("model reply must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ModelUnavailable(
            f"model reply failed schema validation: {exc.error_count()} errors"
        ) from exc


def parse_narrative_reply(raw: str) -> NarrativeReply:
    reply = parse_json_reply(raw, NarrativeReply)
    if not reply.narrative.strip():
        raise ModelUnavailable("model reply has an empty narrative")
    return reply
