"""Tagged per-step results for the turn pipeline."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any
from typing import Generic
from typing import TypeVar

from questweave.observability import record_latency

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepStatus(str, Enum):
    success = "success"
    degraded = "degraded"
    failed = "failed"


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """Outcome of one pipeline step.

    ``degraded`` carries a usable fallback value; ``failed`` carries none.
    """

    step: str
    status: StepStatus
    value: T | None = None
    reason: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.success

    def trace(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "step": self.step,
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.reason:
            entry["reason"] = self.reason
        return entry


async def run_step(
    step: str,
    call: Callable[[], Awaitable[T]],
    *,
    fallback: T | None = None,
    fatal: tuple[type[BaseException], ...] = (),
) -> StepResult[T]:
    """Run *call* as pipeline step *step*.

    Exceptions listed in *fatal* propagate so the caller can abort the
    turn.  Any other failure is logged and turned into a ``degraded``
    result when a *fallback* is given, ``failed`` otherwise.
    """
    start = perf_counter()
    try:
        value = await call()
    except fatal:
        record_latency(
            operation=f"turn.{step}",
            duration_ms=(perf_counter() - start) * 1000,
            ok=False,
        )
        raise
    except Exception as exc:
        duration_ms = (perf_counter() - start) * 1000
        record_latency(operation=f"turn.{step}", duration_ms=duration_ms, ok=False)
        reason = f"{type(exc).__name__}: {exc}"
        if fallback is not None:
            logger.warning("Step %s degraded: %s", step, reason)
            return StepResult(step, StepStatus.degraded, fallback, reason, duration_ms)
        logger.warning("Step %s failed: %s", step, reason)
        return StepResult(step, StepStatus.failed, None, reason, duration_ms)
    duration_ms = (perf_counter() - start) * 1000
    record_latency(operation=f"turn.{step}", duration_ms=duration_ms)
    return StepResult(step, StepStatus.success, value, None, duration_ms)
