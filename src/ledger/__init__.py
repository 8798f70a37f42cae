"""Strategy position ledger and its key-value backends."""

from src.ledger.positions import StrategyLedger
from src.ledger.store import (
    FileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    create_store,
)

__all__ = [
    "StrategyLedger",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "FileKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
]
