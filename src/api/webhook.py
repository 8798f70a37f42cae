"""Webhook and operator HTTP API."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import structlog
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from src.connectors.okx_client import format_decimal
from src.errors import ExchangeError, LedgerError, OrderRejected
from src.execution.orchestrator import TradeOrchestrator
from src.journal.events import Event, EventType
from src.journal.store import EventJournal
from src.models import ExecutionResult, StrategyKey, format_timestamp, utc_now

log = structlog.get_logger(__name__)


def _serialize_event(event: Event) -> dict[str, Any]:
    return event.to_dict()


def _result_response(result: ExecutionResult) -> JSONResponse:
    if result.success:
        return JSONResponse(
            {
                "success": True,
                "message": result.details.get("message", "Signal processed successfully"),
                "details": result.details,
            }
        )
    status_code = 500 if result.reason == "INTERNAL_ERROR" else 400
    return JSONResponse(result.to_dict(), status_code=status_code)


async def _run_to_completion(orchestrator: TradeOrchestrator, payload: Any, defaults: Any = None) -> ExecutionResult:
    # A client disconnect cancels the handler, not the trade; the ledger must match the exchange
    return await asyncio.shield(orchestrator.process_raw(payload, defaults))


def create_app(orchestrator: TradeOrchestrator, journal: EventJournal | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    started_at = 0.0

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        nonlocal started_at
        started_at = time.time()
        yield

    app = FastAPI(
        title="OKX Signal Executor",
        description="Execute TradingView-style alerts against OKX spot with per-strategy ledgers",
        version="0.1.0",
        lifespan=lifespan,
    )
    settings = orchestrator.settings

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "OKX Signal Executor",
            "version": "0.1.0",
            "endpoints": {
                "health": "GET /health",
                "webhook": "POST /webhook",
                "manual_buy": "POST /manual/buy",
                "manual_sell": "POST /manual/sell",
                "account": "GET /account",
                "strategy": "GET /strategies/{coin}/{category}/{subcategory}",
                "test_buy": "POST /test/buy-token",
                "events": "GET /events?tail=N",
            },
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        status = await orchestrator.status()
        return {
            "status": "healthy",
            "uptime_sec": time.time() - started_at if started_at else 0.0,
            "mode": status["mode"],
            "trading_enabled": status["trading_enabled"],
            "trading_block_reasons": status["trading_block_reasons"],
            "cooldown_seconds": settings.risk.cooldown_seconds,
            "max_daily_trades": settings.risk.max_daily_trades,
            "trades_today": status["risk"]["trades_today"],
            "default_symbol": settings.trading.default_symbol,
        }

    @app.post("/webhook")
    async def webhook(request: Request) -> JSONResponse:
        body = await request.body()
        log.info("webhook_received", content_type=request.headers.get("content-type"), size=len(body))
        result = await _run_to_completion(orchestrator, body)
        return _result_response(result)

    async def _manual(action: str, body: dict[str, Any] | None) -> JSONResponse:
        payload = dict(body or {})
        payload.pop("side", None)
        payload["action"] = action
        defaults = {"symbol": settings.trading.default_symbol}
        log.info("manual_signal_received", action=action, fields=sorted(payload))
        result = await _run_to_completion(orchestrator, payload, defaults)
        return _result_response(result)

    @app.post("/manual/buy")
    async def manual_buy(body: dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        return await _manual("buy", body)

    @app.post("/manual/sell")
    async def manual_sell(body: dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        return await _manual("sell", body)

    @app.post("/test/buy-token")
    async def buy_test_token() -> JSONResponse:
        """Connectivity check: a small market buy on the default symbol, outside any strategy ledger."""
        if orchestrator.simulate:
            return JSONResponse(
                {
                    "success": False,
                    "error": "Trading is disabled",
                    "reason": "TRADING_DISABLED",
                    "trading_block_reasons": orchestrator.trading_block_reasons,
                },
                status_code=403,
            )
        symbol = settings.trading.default_symbol
        amount = settings.trading.test_buy_amount_usdt
        try:
            ticker = await orchestrator.client.get_ticker(symbol)
            if ticker is None:
                return JSONResponse(
                    {"success": False, "error": f"Failed to get {symbol} price", "reason": "EXCHANGE_ERROR"},
                    status_code=400,
                )
            order = await asyncio.shield(orchestrator.client.place_market_order(symbol, "buy", amount, "quote"))
        except ExchangeError as exc:
            log.warning("test_buy_failed", symbol=symbol, reason=exc.reason, error=exc.message)
            status_code = 400 if isinstance(exc, OrderRejected) else 502
            return JSONResponse(
                {"success": False, "error": exc.message, "reason": exc.reason},
                status_code=status_code,
            )
        log.info("test_buy_placed", symbol=symbol, usdt_spent=amount, price=ticker.last, order_id=order.order_id)
        return JSONResponse(
            {
                "success": True,
                "message": f"Bought {settings.trading.default_coin} with {format_decimal(amount)} "
                f"{settings.trading.quote_asset}",
                "details": {
                    "symbol": symbol,
                    "side": "buy",
                    "usdt_spent": amount,
                    "price": ticker.last,
                    "order_id": order.order_id,
                    "timestamp": format_timestamp(utc_now()),
                },
            }
        )

    @app.get("/account")
    async def account() -> JSONResponse:
        quote = settings.trading.quote_asset
        try:
            balance = await orchestrator.client.get_balance(quote)
            positions = await orchestrator.client.get_positions()
            fills = await orchestrator.client.get_fills_history(limit=20)
        except ExchangeError as exc:
            return JSONResponse(
                {"success": False, "error": exc.message, "reason": exc.reason},
                status_code=502,
            )
        return JSONResponse(
            {
                "success": True,
                "balance": {
                    "currency": quote,
                    "available": balance.available if balance else 0.0,
                    "total": balance.total if balance else 0.0,
                },
                "positions": positions,
                "recent_fills": fills,
            }
        )

    @app.get("/strategies/{coin}/{category}/{subcategory}")
    async def strategy(coin: str, category: str, subcategory: str) -> JSONResponse:
        key = StrategyKey(coin=coin.upper(), category=category.lower(), subcategory=subcategory.lower())
        try:
            state = await orchestrator.strategy_state(key)
        except LedgerError as exc:
            return JSONResponse({"success": False, "error": exc.message, "reason": exc.reason}, status_code=503)
        return JSONResponse({"success": True, **state})

    @app.get("/events")
    async def get_events(
        tail: int = Query(default=100, ge=1, le=1000, description="Number of recent events"),
        strategy: str | None = Query(default=None, description="Only events for COIN:category:subcategory"),
        event_type: EventType | None = Query(default=None, alias="type"),
    ) -> Any:
        """Get recent events from the journal, optionally for one strategy or event type."""
        if journal is None:
            return {"count": 0, "total": 0, "events": []}
        strategy_ref = None
        if strategy:
            try:
                strategy_ref = str(StrategyKey.parse(strategy))
            except ValueError:
                return JSONResponse({"detail": "strategy must be COIN:category:subcategory"}, status_code=422)
        recent_events = journal.tail(tail, strategy_ref, event_type)
        return {
            "count": len(recent_events),
            "total": journal.count(strategy_ref, event_type),
            "events": [_serialize_event(e) for e in recent_events],
        }

    return app
