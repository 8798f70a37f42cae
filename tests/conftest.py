from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from src.config.settings import Settings
from src.errors import ExchangeError
from src.execution.orchestrator import TradeOrchestrator
from src.journal import EventBus, EventJournal
from src.ledger import MemoryKeyValueStore, StrategyLedger
from src.models import Balance, Order, Ticker
from src.risk.engine import RiskGate


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp).

    This repo's environment can deny access to dirs created under the system temp
    directory; using a workspace-local temp dir avoids that.
    """
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


def make_settings(enable_trading: bool = True, **overrides: Any) -> Settings:
    data: dict[str, Any] = {
        "run": {"mode": "demo", "enable_trading": enable_trading},
        "okx_api_key": "key",
        "okx_secret_key": "secret",
        "okx_passphrase": "phrase",
    }
    data.update(overrides)
    return Settings(**data, _env_file=None)


class FakeOKX:
    """In-memory stand-in for OKXRestClient that records submitted orders."""

    def __init__(
        self,
        price: float = 0.08,
        usdt: float = 10_000.0,
        known: tuple[str, ...] = ("DOGE-USDT", "BTC-USDT"),
    ) -> None:
        self.price = price
        self.usdt = usdt
        self.known = set(known)
        self.orders: list[Order] = []
        self.order_error: Exception | None = None
        self.protection_error: str | None = None
        self.ticker_error_after: int | None = None
        self.ticker_calls = 0
        self.aliases: dict[str, str] = {}
        self.balance_requests: list[str] = []

    async def resolve_symbol(self, symbol: str) -> str | None:
        await asyncio.sleep(0)
        return self.aliases.get(symbol) or (symbol if symbol in self.known else None)

    async def get_ticker(self, symbol: str) -> Ticker | None:
        await asyncio.sleep(0)
        self.ticker_calls += 1
        if self.ticker_error_after is not None and self.ticker_calls > self.ticker_error_after:
            raise ExchangeError("ticker timeout", delivered=None)
        return Ticker(symbol=symbol, last=self.price, bid=self.price, ask=self.price, volume_24h=0.0)

    async def get_balance(self, currency: str = "USDT") -> Balance | None:
        await asyncio.sleep(0)
        self.balance_requests.append(currency)
        return Balance(currency=currency, available=self.usdt, total=self.usdt)

    async def get_positions(self, symbol: str | None = None) -> list[dict[str, Any]]:
        return []

    async def get_fills_history(self, symbol: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return [{"ordId": order.order_id, "instId": order.symbol, "side": order.side} for order in self.orders][-limit:]

    async def place_order_with_protection(
        self,
        symbol: str,
        side: str,
        size: float,
        stop_loss_pct: float,
        take_profit_pct: float,
        order_type: str = "market",
        price: float | None = None,
        size_unit: str = "base",
        protective_order_type: str = "conditional",
    ) -> Order:
        await asyncio.sleep(0)
        if self.order_error is not None:
            raise self.order_error
        order = Order(
            order_id=f"ord-{len(self.orders) + 1}",
            symbol=symbol,
            side=side,
            size=size,
            order_type=order_type,
            size_unit=size_unit,
            price=price,
            protective_order_id=None if self.protection_error else "algo-1",
            protection_error=self.protection_error,
        )
        self.orders.append(order)
        return order

    async def place_market_order(self, symbol: str, side: str, size: float, size_unit: str = "base") -> Order:
        return await self.place_order_with_protection(symbol, side, size, 0, 0, size_unit=size_unit)

    async def place_limit_order(self, symbol: str, side: str, size: float, price: float) -> Order:
        return await self.place_order_with_protection(symbol, side, size, 0, 0, order_type="limit", price=price)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_okx() -> FakeOKX:
    return FakeOKX()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def build_orchestrator(workspace_tmp_path: Path, fake_okx: FakeOKX):
    """Factory for orchestrators wired to a memory ledger and a workspace journal."""

    def _build(settings: Settings | None = None, client: Any = None, store: Any = None) -> TradeOrchestrator:
        settings = settings or make_settings()
        journal = EventJournal(str(workspace_tmp_path / f"journal-{uuid4().hex[:8]}"))
        ledger = StrategyLedger(
            store or MemoryKeyValueStore(),
            default_balance=settings.trading.default_buy_amount_usdt,
        )
        return TradeOrchestrator(
            settings,
            client or fake_okx,
            ledger,
            RiskGate(settings.risk),
            event_bus=EventBus(journal),
        )

    return _build
