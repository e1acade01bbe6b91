"""Storage subsystem: repository boundary for every persisted document."""

from questweave.storage.base import BaseStorage
from questweave.storage.base import Storage
from questweave.storage.base import StoreTransactionFailed
from questweave.storage.base import Transaction
from questweave.storage.base import write_scope
from questweave.storage.in_memory import InMemoryStorage
from questweave.storage.redis_store import RedisStorage

__all__ = [
    "BaseStorage",
    "InMemoryStorage",
    "RedisStorage",
    "Storage",
    "StoreTransactionFailed",
    "Transaction",
    "write_scope",
]
