"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from src.errors import TradingError


Action = Literal["buy", "sell"]
OrderType = Literal["market", "limit"]
RecurringMode = Literal["amount", "quantity"]
SizeUnit = Literal["base", "quote"]


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Format timestamp as ISO-8601 with Z suffix."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class StrategyKey:
    """One independent position lifecycle: (coin, category, subcategory)."""

    coin: str
    category: str
    subcategory: str

    def __str__(self) -> str:
        return f"{self.coin}:{self.category}:{self.subcategory}"

    @classmethod
    def parse(cls, value: str) -> "StrategyKey":
        coin, category, subcategory = value.split(":", 2)
        return cls(coin=coin.upper(), category=category.lower(), subcategory=subcategory.lower())


@dataclass(frozen=True)
class Signal:
    action: Action
    symbol: str
    coin: str
    category: str = "default"
    subcategory: str = "default"
    order_type: OrderType = "market"
    price: float | None = None
    recurring_mode: RecurringMode = "amount"
    initial_amount: float | None = None
    initial_quantity: float | None = None

    @property
    def strategy_key(self) -> StrategyKey:
        return StrategyKey(coin=self.coin, category=self.category, subcategory=self.subcategory)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "coin": self.coin,
            "category": self.category,
            "subcategory": self.subcategory,
            "order_type": self.order_type,
            "price": self.price,
            "recurring_mode": self.recurring_mode,
            "initial_amount": self.initial_amount,
            "initial_quantity": self.initial_quantity,
        }


@dataclass(frozen=True)
class PositionRecord:
    quantity: float
    entry_price: float
    usdt_spent: float
    order_id: str
    opened_at: datetime
    status: Literal["active"] = "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "usdt_spent": self.usdt_spent,
            "order_id": self.order_id,
            "opened_at": format_timestamp(self.opened_at),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PositionRecord":
        return cls(
            quantity=float(data["quantity"]),
            entry_price=float(data["entry_price"]),
            usdt_spent=float(data["usdt_spent"]),
            order_id=str(data.get("order_id", "")),
            opened_at=parse_timestamp(data["opened_at"]),
            status=data.get("status", "active"),
        )


@dataclass(frozen=True)
class Balance:
    currency: str
    available: float
    total: float


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last: float
    bid: float
    ask: float
    volume_24h: float


@dataclass(frozen=True)
class Order:
    order_id: str
    symbol: str
    side: Action
    size: float
    order_type: OrderType
    size_unit: SizeUnit = "base"
    client_order_id: str | None = None
    price: float | None = None
    protective_order_id: str | None = None
    protection_error: str | None = None
    simulated: bool = False

    @property
    def degraded(self) -> bool:
        return self.protection_error is not None


@dataclass(frozen=True)
class OrderSize:
    """Sizing decision: how much to send and in which unit."""

    size: float
    unit: SizeUnit
    source: str
    usdt_amount: float | None = None


@dataclass(frozen=True)
class TradeReport:
    """Executed trade fields handed to the reporting journal."""

    order_id: str
    symbol: str
    coin: str
    action: Action
    order_type: OrderType
    quantity: float
    price: float
    total_value: float
    strategy_ref: str
    category: str
    subcategory: str
    recurring_mode: RecurringMode
    executed_at: datetime
    initial_amount: float | None = None
    initial_quantity: float | None = None
    buy_price: float | None = None
    profit_loss: float | None = None
    profit_percentage: float | None = None
    simulated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "coin": self.coin,
            "action": self.action,
            "order_type": self.order_type,
            "quantity": self.quantity,
            "price": self.price,
            "total_value": self.total_value,
            "strategy_ref": self.strategy_ref,
            "category": self.category,
            "subcategory": self.subcategory,
            "recurring_mode": self.recurring_mode,
            "executed_at": format_timestamp(self.executed_at),
            "initial_amount": self.initial_amount,
            "initial_quantity": self.initial_quantity,
            "buy_price": self.buy_price,
            "profit_loss": self.profit_loss,
            "profit_percentage": self.profit_percentage,
            "simulated": self.simulated,
        }


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    reason: str | None = None

    @classmethod
    def failure(cls, exc: Exception) -> "ExecutionResult":
        if isinstance(exc, TradingError):
            return cls(success=False, error=exc.message, error_type=type(exc).__name__, reason=exc.reason)
        return cls(
            success=False,
            error=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            reason="INTERNAL_ERROR",
        )

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "details": self.details}
        return {
            "success": False,
            "error": self.error,
            "error_type": self.error_type,
            "reason": self.reason,
        }
