"""Signal-to-order orchestration for per-strategy spot positions."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping
from uuid import uuid4

import structlog

from src.config.settings import Settings
from src.connectors.okx_client import OKXRestClient
from src.errors import ExchangeError, InvalidState, MalformedSignal, TradingError
from src.journal.bus import EventBus
from src.journal.events import EventType
from src.ledger.positions import StrategyLedger
from src.models import (
    ExecutionResult,
    Order,
    OrderSize,
    PositionRecord,
    Signal,
    StrategyKey,
    Ticker,
    TradeReport,
    format_timestamp,
    utc_now,
)
from src.risk.engine import RiskGate
from src.risk.sizing import OrderSizer, to_base_units
from src.strategy.signals import SignalNormalizer

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics

VALID_ACTIONS = ("buy", "sell")
KNOWN_QUOTES = ("USDT", "USDC")


class TradeOrchestrator:
    """
    Turn one signal into at most one order plus a ledger update.

    Buys are legal only while a strategy is idle and sells only while it holds a
    position. Work for the same `StrategyKey` is serialized behind one lock, so
    the eligibility check and the ledger write that follows it cannot interleave
    with another signal for that key. Different keys run concurrently.

    When the trading gate is closed orders are simulated, while the ledger,
    cooldowns and journal behave exactly as they would live.
    """

    def __init__(
        self,
        settings: Settings,
        client: OKXRestClient,
        ledger: StrategyLedger,
        risk_gate: RiskGate,
        sizer: OrderSizer | None = None,
        normalizer: SignalNormalizer | None = None,
        event_bus: EventBus | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.ledger = ledger
        self.risk = risk_gate
        self.sizer = sizer or OrderSizer(
            default_amount_usdt=settings.trading.default_buy_amount_usdt,
            min_balance_usdt=settings.risk.min_balance_usdt,
        )
        self.normalizer = normalizer or SignalNormalizer(settings.trading)
        self.event_bus = event_bus
        self._metrics = metrics
        self.trading_enabled, self.trading_block_reasons = settings.trading_gate()
        self.simulate = not self.trading_enabled
        self._key_locks: defaultdict[StrategyKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.log = structlog.get_logger(__name__)
        if self.simulate:
            self.log.warning("trading_gate_closed", reasons=self.trading_block_reasons)

    # --- entry points -------------------------------------------------------

    async def process_raw(
        self,
        payload: str | bytes | Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        """Normalize an inbound alert and process it."""
        try:
            signal = self.normalizer.normalize(payload, defaults)
        except TradingError as exc:
            return await self._reject(exc, {"raw": _preview(payload)})
        except Exception as exc:
            self.log.exception("signal_normalization_failed")
            return await self._reject(exc, {"raw": _preview(payload)})
        return await self.process(signal)

    async def process(self, signal: Signal) -> ExecutionResult:
        """Run every check, place the order and book it. Never raises."""
        started = time.perf_counter()
        self.log.info(
            "signal_received",
            action=signal.action,
            symbol=signal.symbol,
            strategy=_strategy_ref(signal),
            order_type=signal.order_type,
            recurring_mode=signal.recurring_mode,
        )
        await self._publish(EventType.SIGNAL_RECEIVED, signal.to_dict(), _strategy_ref(signal))
        if self._metrics and signal.action in VALID_ACTIONS:
            self._metrics.signals_received_total.labels(action=signal.action).inc()
        try:
            details = await self._execute(signal)
        except asyncio.CancelledError:
            raise
        except TradingError as exc:
            return await self._reject(exc, signal.to_dict())
        except Exception as exc:
            self.log.exception("signal_processing_failed", strategy=_strategy_ref(signal))
            return await self._reject(exc, signal.to_dict())
        finally:
            if self._metrics:
                self._metrics.signal_latency_ms.observe((time.perf_counter() - started) * 1000)
        return ExecutionResult(success=True, details=details)

    async def strategy_state(self, key: StrategyKey) -> dict[str, Any]:
        state = await self.ledger.snapshot(key)
        state["locked"] = self._key_locks[key].locked() if key in self._key_locks else False
        return state

    async def status(self) -> dict[str, Any]:
        return {
            "mode": self.settings.run.mode,
            "trading_enabled": self.trading_enabled,
            "trading_block_reasons": self.trading_block_reasons,
            "risk": await self.risk.snapshot(),
        }

    # --- pipeline -----------------------------------------------------------

    async def _execute(self, signal: Signal) -> dict[str, Any]:
        if signal.action not in VALID_ACTIONS:
            raise MalformedSignal(f"Invalid action: {signal.action}")

        symbol = await self.client.resolve_symbol(signal.symbol)
        if symbol is None:
            raise InvalidState(f"Invalid trading pair: {signal.symbol}", reason="UNKNOWN_INSTRUMENT")

        key = signal.strategy_key
        async with self._key_locks[key]:
            return await self._execute_for_key(signal, symbol, key)

    async def _execute_for_key(self, signal: Signal, symbol: str, key: StrategyKey) -> dict[str, Any]:
        if signal.action == "buy":
            if not await self.ledger.can_buy(key):
                raise InvalidState(f"Position already open for {key}", reason="POSITION_ALREADY_OPEN")
        elif not await self.ledger.can_sell(key):
            raise InvalidState(f"No open position to sell for {key}", reason="NO_OPEN_POSITION")

        # Strategies sharing (symbol, action, subcategory) share one cooldown across keys
        cooldown = (symbol, signal.action, signal.subcategory)
        await self.risk.reserve_cooldown(*cooldown)
        try:
            order, size, position, reference = await self._size_and_submit(signal, symbol, key)
        except BaseException:
            await self.risk.release_cooldown(*cooldown)
            raise
        await self.risk.record_execution(*cooldown)
        await self._publish(
            EventType.ORDER_PLACED,
            {
                "order_id": order.order_id,
                "client_order_id": order.client_order_id,
                "symbol": symbol,
                "side": order.side,
                "size": order.size,
                "size_unit": order.size_unit,
                "order_type": order.order_type,
                "protective_order_id": order.protective_order_id,
                "strategy_ref": str(key),
                "simulated": order.simulated,
            },
            str(key),
        )
        if order.degraded:
            await self._publish(
                EventType.PROTECTIVE_ORDER_FAILED,
                {"order_id": order.order_id, "symbol": symbol, "error": order.protection_error},
                str(key),
            )

        price = await self._fill_price(symbol, reference)
        if signal.action == "buy":
            report = await self._open_position(signal, key, order, size, price)
            await self._publish(EventType.POSITION_OPENED, report.to_dict(), str(key))
        else:
            report = await self._close_position(signal, key, order, position, price)
            await self._publish(EventType.POSITION_CLOSED, report.to_dict(), str(key))

        return {
            "message": f"{signal.action.capitalize()} order executed for {symbol}",
            "action": signal.action,
            "symbol": symbol,
            "strategy": str(key),
            "size": order.size,
            "unit": order.size_unit,
            "quantity": report.quantity,
            "order_id": order.order_id,
            "price": price,
            "total_value": report.total_value,
            "timestamp": format_timestamp(report.executed_at),
            "degraded": order.degraded,
            "protection_error": order.protection_error,
            "simulated": order.simulated,
        }

    async def _size_and_submit(
        self,
        signal: Signal,
        symbol: str,
        key: StrategyKey,
    ) -> tuple[Order, OrderSize, PositionRecord | None, Ticker]:
        trades_today = await self.risk.reserve_daily_trade()
        if self._metrics:
            self._metrics.daily_trades.set(trades_today)

        first_trade = await self.ledger.is_first_trade(key)
        reference = await self._reference_ticker(symbol)

        position: PositionRecord | None = None
        if signal.action == "buy":
            trading_balance = 0.0 if first_trade else await self.ledger.get_balance(key)
            available = await self._available_quote(self._quote_of(symbol))
            size = self.sizer.size_buy(signal, first_trade, trading_balance, available)
        else:
            position = await self.ledger.get_position(key)
            size = self.sizer.size_sell(signal, first_trade, position)

        self.log.info(
            "order_sized",
            strategy=str(key),
            action=signal.action,
            first_trade=first_trade,
            size=size.size,
            unit=size.unit,
            source=size.source,
        )
        order = await self._submit(signal, symbol, size)
        return order, size, position, reference

    def _quote_of(self, symbol: str) -> str:
        """Quote asset of a resolved instrument id, which may differ from the configured one."""
        normalized = symbol.upper().replace("_", "-")
        if "-" in normalized:
            return normalized.split("-", 1)[1]
        for quote in KNOWN_QUOTES:
            if normalized.endswith(quote) and len(normalized) > len(quote):
                return quote
        return self.settings.trading.quote_asset

    async def _reference_ticker(self, symbol: str) -> Ticker:
        ticker = await self.client.get_ticker(symbol)
        if ticker is None:
            raise ExchangeError(f"Unable to fetch current price for {symbol}")
        return ticker

    async def _available_quote(self, quote: str) -> float:
        if self.simulate and not self._has_credentials():
            # Nothing to ask the exchange with; the dry run trusts the ledger sizing
            return float("inf")
        balance = await self.client.get_balance(quote)
        return balance.available if balance else 0.0

    def _has_credentials(self) -> bool:
        return bool(
            self.settings.okx_api_key and self.settings.okx_secret_key and self.settings.okx_passphrase
        )

    async def _submit(self, signal: Signal, symbol: str, size: OrderSize) -> Order:
        side = signal.action
        if signal.order_type == "limit" and signal.price is not None:
            order_type, limit_price = "limit", signal.price
            quantity, unit = to_base_units(size, signal.price), "base"
        else:
            order_type, limit_price = "market", None
            quantity, unit = size.size, size.unit

        trading = self.settings.trading
        if self.simulate:
            order = Order(
                order_id=f"SIM-{uuid4().hex[:16]}",
                symbol=symbol,
                side=side,
                size=quantity,
                order_type=order_type,
                size_unit=unit,
                price=limit_price,
                simulated=True,
            )
            self.log.info("order_simulated", symbol=symbol, side=side, size=quantity, unit=unit)
        elif trading.attach_protective_orders:
            order = await self.client.place_order_with_protection(
                symbol,
                side,
                quantity,
                trading.stop_loss_pct,
                trading.take_profit_pct,
                order_type=order_type,
                price=limit_price,
                size_unit=unit,
                protective_order_type=trading.protective_order_type,
            )
        elif order_type == "limit":
            order = await self.client.place_limit_order(symbol, side, quantity, limit_price)
        else:
            order = await self.client.place_market_order(symbol, side, quantity, unit)

        if self._metrics:
            self._metrics.orders_placed_total.labels(
                side=side, simulated=str(order.simulated).lower()
            ).inc()
            if order.degraded:
                self._metrics.protective_order_failures_total.inc()
        return order

    async def _fill_price(self, symbol: str, reference: Ticker) -> float:
        """Estimate the fill from the post-trade ticker; the order already stands."""
        try:
            ticker = await self.client.get_ticker(symbol)
        except ExchangeError as exc:
            self.log.warning("post_trade_ticker_failed", symbol=symbol, error=exc.message)
            ticker = None
        if ticker is None:
            return reference.last
        return ticker.last

    async def _open_position(
        self,
        signal: Signal,
        key: StrategyKey,
        order: Order,
        size: OrderSize,
        price: float,
    ) -> TradeReport:
        if size.unit == "quote" and size.usdt_amount is not None:
            spent = size.usdt_amount
            quantity = spent / price if order.order_type == "market" else order.size
        else:
            quantity = order.size
            spent = quantity * (order.price or price)
        entry_price = order.price or price
        executed_at = utc_now()
        await self.ledger.set_position(
            key,
            PositionRecord(
                quantity=quantity,
                entry_price=entry_price,
                usdt_spent=spent,
                order_id=order.order_id,
                opened_at=executed_at,
            ),
        )
        self.log.info(
            "position_opened",
            strategy=str(key),
            quantity=quantity,
            entry_price=entry_price,
            usdt_spent=spent,
            order_id=order.order_id,
        )
        return self._report(signal, key, order, quantity, entry_price, spent, executed_at)

    async def _close_position(
        self,
        signal: Signal,
        key: StrategyKey,
        order: Order,
        position: PositionRecord | None,
        price: float,
    ) -> TradeReport:
        exit_price = order.price or price
        quantity = order.size
        proceeds = quantity * exit_price
        if signal.recurring_mode == "quantity" and position is not None:
            next_balance = position.usdt_spent
        else:
            next_balance = proceeds
        # Two separate writes: a crash between them leaves the position open with the new balance
        await self.ledger.set_balance(key, next_balance)
        await self.ledger.clear_position(key)

        profit_loss = profit_pct = buy_price = None
        if position is not None:
            buy_price = position.entry_price
            profit_loss = proceeds - position.usdt_spent
            if position.usdt_spent > 0:
                profit_pct = profit_loss / position.usdt_spent * 100
        executed_at = utc_now()
        self.log.info(
            "position_closed",
            strategy=str(key),
            quantity=quantity,
            exit_price=exit_price,
            proceeds=proceeds,
            next_balance=next_balance,
            recurring_mode=signal.recurring_mode,
            profit_loss=profit_loss,
        )
        return self._report(
            signal,
            key,
            order,
            quantity,
            exit_price,
            proceeds,
            executed_at,
            buy_price=buy_price,
            profit_loss=profit_loss,
            profit_percentage=profit_pct,
        )

    @staticmethod
    def _report(
        signal: Signal,
        key: StrategyKey,
        order: Order,
        quantity: float,
        price: float,
        total_value: float,
        executed_at: datetime,
        **pnl: float | None,
    ) -> TradeReport:
        return TradeReport(
            order_id=order.order_id,
            symbol=order.symbol,
            coin=signal.coin,
            action=signal.action,
            order_type=order.order_type,
            quantity=quantity,
            price=price,
            total_value=total_value,
            strategy_ref=str(key),
            category=signal.category,
            subcategory=signal.subcategory,
            recurring_mode=signal.recurring_mode,
            executed_at=executed_at,
            initial_amount=signal.initial_amount,
            initial_quantity=signal.initial_quantity,
            simulated=order.simulated,
            **pnl,
        )

    # --- reporting ----------------------------------------------------------

    async def _reject(self, exc: Exception, context: dict[str, Any]) -> ExecutionResult:
        result = ExecutionResult.failure(exc)
        self.log.warning(
            "signal_rejected",
            reason=result.reason,
            error=result.error,
            error_type=result.error_type,
            strategy=_context_ref(context),
        )
        if self._metrics:
            self._metrics.signals_rejected_total.labels(reason=result.reason).inc()
        await self._publish(
            EventType.SIGNAL_REJECTED,
            {"reason": result.reason, "error": result.error, "error_type": result.error_type, "signal": context},
            _context_ref(context),
        )
        return result

    async def _publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        strategy_ref: str | None = None,
    ) -> None:
        if self.event_bus is None:
            return
        try:
            await self.event_bus.publish(event_type, payload, strategy_ref)
        except asyncio.CancelledError:
            raise
        except Exception:
            # The trade already happened; a journal failure must not change the result
            self.log.exception("journal_publish_failed", event_type=event_type.value)


def _strategy_ref(signal: Signal) -> str:
    return f"{signal.coin}:{signal.category}:{signal.subcategory}"


def _context_ref(context: dict[str, Any]) -> str | None:
    if "coin" not in context:
        return None
    return f"{context['coin']}:{context.get('category')}:{context.get('subcategory')}"


def _preview(payload: Any, limit: int = 500) -> str:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    text = payload if isinstance(payload, str) else repr(payload)
    return text[:limit]
