"""Key-value backends for the strategy ledger."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.config.settings import LedgerConfig
from src.errors import LedgerError


class KeyValueStore(Protocol):
    """Minimal string store: get/set/delete by key, no scans, no transactions."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local store. State is lost on restart."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        return None


class FileKeyValueStore:
    """Persist all keys in one JSON document, replaced atomically on every write."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._load_all().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            entries = self._load_all()
            entries[key] = value
            self._save_all(entries)

    async def delete(self, key: str) -> None:
        async with self._lock:
            entries = self._load_all()
            if entries.pop(key, None) is not None:
                self._save_all(entries)

    async def close(self) -> None:
        return None

    def _load_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "rb") as f:
                data = orjson.loads(f.read() or b"{}")
        except (OSError, orjson.JSONDecodeError) as exc:
            raise LedgerError(f"Cannot read ledger file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise LedgerError(f"Ledger file {self.path} is not a JSON object")
        return data

    def _save_all(self, entries: dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp, "wb") as f:
                f.write(orjson.dumps(entries, option=orjson.OPT_SORT_KEYS))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            raise LedgerError(f"Cannot write ledger file {self.path}: {exc}") from exc


class RedisKeyValueStore:
    """Redis-backed store shared by every process pointing at the same database."""

    def __init__(self, url: str, socket_timeout: float = 5.0) -> None:
        self.url = url
        self._client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise LedgerError(f"Redis GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(key, value)
        except RedisError as exc:
            raise LedgerError(f"Redis SET {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise LedgerError(f"Redis DEL {key} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def create_store(config: LedgerConfig) -> KeyValueStore:
    if config.backend == "redis":
        return RedisKeyValueStore(config.redis_url)
    if config.backend == "memory":
        return MemoryKeyValueStore()
    return FileKeyValueStore(config.path)
