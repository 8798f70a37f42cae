"""Duplicate-signal cooldowns and the daily trade ceiling."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable

from src.config.settings import RiskConfig
from src.errors import InvalidState


CooldownKey = tuple[str, str, str]


def _utc_date() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class RiskGate:
    """
    Process-local execution limits shared by every in-flight signal.

    Cooldowns are keyed by (symbol, action, subcategory); the daily counter by
    UTC date string, so it resets when the date changes. All state is only
    touched while holding `_lock`.

    A signal claims its cooldown key with `reserve_cooldown` before anything
    is sent. The claim is pending until `record_execution` stamps it or
    `release_cooldown` drops it, and a pending claim blocks the same key.
    """

    def __init__(
        self,
        config: RiskConfig,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], str] = _utc_date,
    ) -> None:
        self.config = config
        self._clock = clock
        self._today = today
        self._lock = asyncio.Lock()
        self._cooldowns: dict[CooldownKey, float] = {}
        self._pending: set[CooldownKey] = set()
        self._daily_trades: dict[str, int] = {}

    async def reserve_cooldown(self, symbol: str, action: str, subcategory: str) -> None:
        """Claim the cooldown key, or refuse while it is pending or still cooling down."""
        key = (symbol, action, subcategory)
        async with self._lock:
            now = self._clock()
            self._prune(now)
            if key in self._pending:
                raise InvalidState(
                    f"Signal already executing for {symbol} {action} {subcategory}",
                    reason="COOLDOWN_ACTIVE",
                )
            last = self._cooldowns.get(key)
            if last is not None:
                remaining = self.config.cooldown_seconds - (now - last)
                raise InvalidState(
                    f"Signal in cooldown period for {symbol} {action} {subcategory} "
                    f"({remaining:.0f}s remaining)",
                    reason="COOLDOWN_ACTIVE",
                )
            self._pending.add(key)

    async def release_cooldown(self, symbol: str, action: str, subcategory: str) -> None:
        """Drop a claim whose order never stood."""
        async with self._lock:
            self._pending.discard((symbol, action, subcategory))

    async def reserve_daily_trade(self) -> int:
        """Count one trade against today's ceiling, or refuse when it is reached."""
        async with self._lock:
            today = self._today()
            trades = self._daily_trades.get(today, 0)
            if trades >= self.config.max_daily_trades:
                raise InvalidState(
                    f"Daily trade limit reached ({self.config.max_daily_trades})",
                    reason="DAILY_LIMIT_REACHED",
                )
            # Earlier dates can never be read again
            self._daily_trades = {today: trades + 1}
            return trades + 1

    async def record_execution(self, symbol: str, action: str, subcategory: str) -> None:
        key = (symbol, action, subcategory)
        async with self._lock:
            now = self._clock()
            self._pending.discard(key)
            self._cooldowns[key] = now
            self._prune(now)

    def _prune(self, now: float) -> None:
        window = self.config.cooldown_seconds
        self._cooldowns = {k: ts for k, ts in self._cooldowns.items() if now - ts < window}

    async def trades_today(self) -> int:
        async with self._lock:
            return self._daily_trades.get(self._today(), 0)

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            now = self._clock()
            active = {
                f"{symbol}:{action}:{subcategory}": round(self.config.cooldown_seconds - (now - ts), 1)
                for (symbol, action, subcategory), ts in self._cooldowns.items()
                if now - ts < self.config.cooldown_seconds
            }
            return {
                "trades_today": self._daily_trades.get(self._today(), 0),
                "max_daily_trades": self.config.max_daily_trades,
                "cooldown_seconds": self.config.cooldown_seconds,
                "active_cooldowns": active,
            }
