"""Per-strategy position and trading balance ledger."""

from __future__ import annotations

from typing import Any

import orjson
import structlog

from src.errors import LedgerError
from src.ledger.store import KeyValueStore
from src.models import PositionRecord, StrategyKey, format_timestamp, utc_now


class StrategyLedger:
    """
    Position and balance state addressed only by `StrategyKey`.

    Keys written to the backing store:
    - `<prefix>position:<key>`: the open `PositionRecord`, deleted when the position closes
    - `<prefix>balance:<key>`: USDT to spend on the next buy
    - `<prefix>history:<key>`: marker written with any of the above, never deleted

    Every operation is a separate round-trip; nothing spans two keys atomically.
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_balance: float,
        key_prefix: str = "",
    ) -> None:
        self.store = store
        self.default_balance = default_balance
        self.key_prefix = key_prefix
        self.log = structlog.get_logger(__name__)

    def _key(self, kind: str, key: StrategyKey) -> str:
        return f"{self.key_prefix}{kind}:{key}"

    async def get_position(self, key: StrategyKey) -> PositionRecord | None:
        data = await self._read(self._key("position", key))
        if data is None:
            return None
        try:
            return PositionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError(f"Corrupt position record for {key}: {exc}") from exc

    async def set_position(self, key: StrategyKey, record: PositionRecord) -> None:
        await self._write(self._key("position", key), record.to_dict())
        await self._mark_history(key)
        self.log.info(
            "ledger_position_set",
            strategy=str(key),
            quantity=record.quantity,
            usdt_spent=record.usdt_spent,
            order_id=record.order_id,
        )

    async def clear_position(self, key: StrategyKey) -> None:
        await self._delete(self._key("position", key))
        self.log.info("ledger_position_cleared", strategy=str(key))

    async def can_buy(self, key: StrategyKey) -> bool:
        position = await self.get_position(key)
        return position is None or position.status != "active"

    async def can_sell(self, key: StrategyKey) -> bool:
        position = await self.get_position(key)
        return position is not None and position.status == "active" and position.quantity > 0

    async def get_balance(self, key: StrategyKey) -> float:
        data = await self._read(self._key("balance", key))
        if data is None:
            return self.default_balance
        try:
            return float(data["amount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError(f"Corrupt trading balance for {key}: {exc}") from exc

    async def has_balance(self, key: StrategyKey) -> bool:
        return await self._read(self._key("balance", key)) is not None

    async def set_balance(self, key: StrategyKey, amount: float) -> None:
        await self._write(
            self._key("balance", key),
            {"amount": amount, "updated_at": format_timestamp(utc_now())},
        )
        await self._mark_history(key)
        self.log.info("ledger_balance_set", strategy=str(key), amount=amount)

    async def is_first_trade(self, key: StrategyKey) -> bool:
        if await self._read(self._key("history", key)) is not None:
            return False
        # Records written before the history marker existed still count
        if await self.has_balance(key):
            return False
        return await self.get_position(key) is None

    async def snapshot(self, key: StrategyKey) -> dict[str, Any]:
        position = await self.get_position(key)
        return {
            "strategy": str(key),
            "position": position.to_dict() if position else None,
            "trading_balance": await self.get_balance(key),
            "first_trade": await self.is_first_trade(key),
            "can_buy": position is None,
            "can_sell": position is not None and position.quantity > 0,
        }

    async def _mark_history(self, key: StrategyKey) -> None:
        history_key = self._key("history", key)
        if await self._read(history_key) is None:
            await self._write(history_key, {"first_write_at": format_timestamp(utc_now())})

    async def _read(self, store_key: str) -> dict[str, Any] | None:
        try:
            raw = await self.store.get(store_key)
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger read {store_key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise LedgerError(f"Ledger value at {store_key} is not JSON") from exc
        if not isinstance(data, dict):
            raise LedgerError(f"Ledger value at {store_key} is not an object")
        return data

    async def _write(self, store_key: str, value: dict[str, Any]) -> None:
        try:
            await self.store.set(store_key, orjson.dumps(value).decode("utf-8"))
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger write {store_key} failed: {exc}") from exc

    async def _delete(self, store_key: str) -> None:
        try:
            await self.store.delete(store_key)
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger delete {store_key} failed: {exc}") from exc
