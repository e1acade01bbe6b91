"""Bounded retry with exponential backoff around model calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from typing import TypeVar

from tenacity import AsyncRetrying
from tenacity import RetryCallState
from tenacity import retry_if_exception
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from questweave.config import RetryConfig
from questweave.engine.llm import ModelUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ModelUnavailable) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Model call attempt %d failed, retrying: %s", state.attempt_number, exc
    )


class RetryPolicy:
    """Run an async call with a per-attempt timeout and capped backoff.

    Only retryable :class:`ModelUnavailable` failures are retried.  A
    per-attempt timeout is reported as a retryable ``ModelUnavailable``.
    After the last attempt the final error propagates to the caller.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        timeout_seconds: float | None = None,
    ) -> T:
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.initial_delay_seconds,
                exp_base=self.config.multiplier,
                max=self.config.max_delay_seconds,
            ),
            before_sleep=_log_retry,
            reraise=True,
            **kwargs,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(call, timeout_seconds)
        raise RuntimeError("retry loop exited without a result")

    @staticmethod
    async def _attempt(
        call: Callable[[], Awaitable[T]], timeout_seconds: float | None
    ) -> T:
        if timeout_seconds is None:
            return await call()
        try:
            return await asyncio.wait_for(call(), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ModelUnavailable(
                f"model call timed out after {timeout_seconds}s"
            ) from exc
