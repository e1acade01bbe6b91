"""Concrete model adapters and factory helpers."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from questweave.config import LLMConfig
from questweave.engine.llm import LLMAdapter
from questweave.engine.llm import ModelRequest
from questweave.engine.llm import ModelResponse
from questweave.engine.llm import ModelUnavailable
from questweave.engine.llm import TokenUsage

_NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 404})
_ACTION_LINE_RE = re.compile(r"^player action:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


class NoopLLMAdapter(LLMAdapter):
    """Deterministic adapter that narrates the player action back as a template."""

    async def generate(
        self,
        request: ModelRequest,
        *,
        timeout_seconds: float = 8.0,
    ) -> ModelResponse:
        del timeout_seconds
        match = _ACTION_LINE_RE.search(request.user_prompt)
        action = match.group(1).strip().rstrip(".") if match else ""
        action = action or "pause to take stock"
        if action.lower().startswith("i "):
            action = action[2:]
        narrative = (
            f"You {action[0].lower() + action[1:]}. The air of Vitalia shifts around "
            "you as the world takes note of your choice. What do you do next?"
        )
        text = json.dumps({"narrative": narrative})
        return ModelResponse(
            text=text,
            token_usage=TokenUsage(
                input_tokens=len(request.system_prompt.split())
                + len(request.user_prompt.split()),
                output_tokens=len(narrative.split()),
            ),
        )


class _HTTPAdapter:
    """Shared urllib plumbing; requests run in a worker thread."""

    def __init__(self, *, model: str, api_key: str, base_url: str) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    async def generate(
        self,
        request: ModelRequest,
        *,
        timeout_seconds: float = 8.0,
    ) -> ModelResponse:
        return await asyncio.to_thread(
            self._generate_sync,
            request,
            timeout_seconds=timeout_seconds,
        )

    def _generate_sync(
        self, request: ModelRequest, *, timeout_seconds: float
    ) -> ModelResponse:
        raise NotImplementedError

    def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        http_request = Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", **headers},
            method="POST",
        )
        try:
            with urlopen(http_request, timeout=timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ModelUnavailable(
                f"provider HTTP {exc.code}: {detail[:200]}",
                retryable=exc.code not in _NON_RETRYABLE_STATUS,
            ) from exc
        except URLError as exc:
            raise ModelUnavailable(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise ModelUnavailable(f"provider IO error: {exc}") from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ModelUnavailable("provider returned non-JSON body") from exc
        if not isinstance(data, dict):
            raise ModelUnavailable("provider returned a non-object body")
        return data


class OpenAICompatibleLLMAdapter(_HTTPAdapter, LLMAdapter):
    """OpenAI-compatible chat-completions adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        super().__init__(model=model, api_key=api_key, base_url=base_url)

    def _generate_sync(
        self, request: ModelRequest, *, timeout_seconds: float
    ) -> ModelResponse:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        data = self._post(
            f"{self._base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self._api_key}"},
            timeout_seconds,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ModelUnavailable(
                "provider response missing choices[0].message.content"
            ) from exc
        if not isinstance(content, str):
            raise ModelUnavailable("provider response content must be a string")
        usage = data.get("usage") or {}
        return ModelResponse(
            text=content,
            token_usage=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens", 0)),
                output_tokens=int(usage.get("completion_tokens", 0)),
            ),
        )


class AnthropicLLMAdapter(_HTTPAdapter, LLMAdapter):
    """Anthropic Messages API adapter."""

    API_VERSION = "2023-06-01"

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.anthropic.com/v1",
    ) -> None:
        super().__init__(model=model, api_key=api_key, base_url=base_url)

    def _generate_sync(
        self, request: ModelRequest, *, timeout_seconds: float
    ) -> ModelResponse:
        payload = {
            "model": self._model,
            "system": request.system_prompt,
            "messages": [{"role": "user", "content": request.user_prompt}],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        data = self._post(
            f"{self._base_url}/messages",
            payload,
            {"x-api-key": self._api_key, "anthropic-version": self.API_VERSION},
            timeout_seconds,
        )
        try:
            blocks = data["content"]
            text = "".join(
                block["text"] for block in blocks if block.get("type") == "text"
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ModelUnavailable("provider response missing content blocks") from exc
        if not text:
            raise ModelUnavailable("provider response contained no text")
        usage = data.get("usage") or {}
        return ModelResponse(
            text=text,
            token_usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            ),
        )


def build_llm_adapter(config: LLMConfig) -> LLMAdapter:
    """Create a concrete adapter from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider in ("openai", "anthropic") and not config.api_key:
        raise ValueError(
            f"llm_config.api_key is required when provider='{provider}'"
        )
    if provider == "openai":
        return OpenAICompatibleLLMAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
        )
    if provider == "anthropic":
        base_url = config.base_url
        if "api.openai.com" in base_url:
            base_url = "https://api.anthropic.com/v1"
        return AnthropicLLMAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=base_url,
        )
    if provider == "noop":
        return NoopLLMAdapter()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, anthropic, noop."
    )
