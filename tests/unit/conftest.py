"""Unit test fixtures: in-memory storage, a controllable clock and fakes."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from questweave.storage import InMemoryStorage
from questweave.storage.base import Transaction

START = 1_700_000_000.0


@dataclass
class FakeClock:
    now: float = START

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStorage(InMemoryStorage):
    """In-memory storage whose commits fail once ``fail`` is set.

    With ``fail_collection`` set, only commits that write to that
    collection fail.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.fail_collection: str | None = None

    async def _commit(self, tx: Transaction) -> None:
        if self.fail and (
            self.fail_collection is None
            or any(w.collection == self.fail_collection for w in tx.writes)
        ):
            raise RuntimeError("disk on fire")
        await super()._commit(tx)


@pytest.fixture()
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture()
def failing_storage() -> FailingStorage:
    return FailingStorage()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def mcp_client(tmp_path):
    """Yield a FastMCP Client wired to a server over in-memory storage."""
    from fastmcp import Client

    from questweave.config import AuditConfig
    from questweave.config import RetryConfig
    from questweave.dice import ScriptedDice
    from questweave.server import configure
    from questweave.server import mcp
    from questweave.server import shutdown

    await configure(
        audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
        retry_config=RetryConfig(max_attempts=1),
        dice=ScriptedDice([10]),
    )
    try:
        async with Client(mcp) as client:
            yield client
    finally:
        await shutdown()
