"""Async OKX v5 REST client with request signing."""

from __future__ import annotations

import base64
import hmac
import time
from dataclasses import replace
from decimal import Decimal
from hashlib import sha256
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode
from uuid import uuid4

import httpx
import orjson
import structlog

from src.config.settings import Settings
from src.errors import ExchangeError, ExchangeUnreachable, OrderRejected
from src.models import Balance, Order, SizeUnit, Ticker, format_timestamp, utc_now

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics

# OKX answers "instrument does not exist" lookups with these codes
_UNKNOWN_INSTRUMENT_CODES = {"51001", "51000"}
_QUOTE_SWAPS = {"USDT": "USDC", "USDC": "USDT"}


def format_decimal(value: float) -> str:
    """Render a number the way OKX expects it: plain decimal, no exponent."""
    text = format(Decimal(str(value)).normalize(), "f")
    return text if text not in {"-0", ""} else "0"


def format_trigger_price(value: float) -> str:
    # Sub-unit coins need more than four decimals to keep the trigger meaningful
    return f"{value:.4f}" if value >= 1 else f"{value:.8f}".rstrip("0").rstrip(".")


class OKXRestClient:
    """OKX spot REST client: balances, tickers, instruments and orders."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.okx.base_url
        self.api_key = settings.okx_api_key
        self.api_secret = settings.okx_secret_key
        self.passphrase = settings.okx_passphrase
        self.simulated = settings.simulated_trading
        self.quote_asset = settings.trading.quote_asset
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.okx.request_timeout_sec,
            transport=transport,
        )
        self._resolved_symbols: dict[str, str] = {}
        self._metrics: Metrics | None = None
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    async def close(self) -> None:
        await self.http.aclose()

    # --- signing -------------------------------------------------------------

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        """Base64 HMAC-SHA256 over timestamp + method + requestPath + body."""
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(
            self.api_secret.encode("utf-8"), message.encode("utf-8"), sha256
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    def _headers(self, timestamp: str, signature: str) -> dict[str, str]:
        headers = {
            "OK-ACCESS-KEY": self.api_key,
            "OK-ACCESS-SIGN": signature,
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.passphrase,
            "Content-Type": "application/json",
        }
        if self.simulated:
            headers["x-simulated-trading"] = "1"
        return headers

    # --- account / market data ----------------------------------------------

    async def get_balance(self, currency: str = "USDT") -> Balance | None:
        data = await self._request("GET", "/api/v5/account/balance", params={"ccy": currency})
        if not data:
            return None
        for detail in data[0].get("details") or []:
            if str(detail.get("ccy", "")).upper() != currency.upper():
                continue
            return Balance(
                currency=currency.upper(),
                available=_to_float(detail, "availBal", "availEq"),
                total=_to_float(detail, "cashBal", "eq", "bal"),
            )
        return None

    async def get_ticker(self, symbol: str) -> Ticker | None:
        data = await self._request("GET", "/api/v5/market/ticker", params={"instId": symbol})
        if not data:
            return None
        row = data[0]
        last = _to_float(row, "last")
        if last <= 0:
            return None
        return Ticker(
            symbol=str(row.get("instId", symbol)),
            last=last,
            bid=_to_float(row, "bidPx"),
            ask=_to_float(row, "askPx"),
            volume_24h=_to_float(row, "vol24h"),
        )

    async def get_positions(self, symbol: str | None = None) -> list[dict[str, Any]]:
        params = {"instId": symbol} if symbol else None
        return await self._request("GET", "/api/v5/account/positions", params=params)

    async def get_fills_history(self, symbol: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"instType": "SPOT", "limit": min(limit, 100)}
        if symbol:
            params["instId"] = symbol
        return await self._request("GET", "/api/v5/trade/fills-history", params=params)

    # --- instruments --------------------------------------------------------

    async def validate_symbol(self, symbol: str) -> bool:
        return await self.resolve_symbol(symbol) is not None

    async def resolve_symbol(self, symbol: str) -> str | None:
        """Return the exchange's id for `symbol`, trying separator and quote variants."""
        cached = self._resolved_symbols.get(symbol)
        if cached:
            return cached
        for candidate in self.symbol_variants(symbol):
            if await self._instrument_exists(candidate):
                self._resolved_symbols[symbol] = candidate
                if candidate != symbol:
                    self.log.info("symbol_resolved", symbol=symbol, resolved=candidate)
                return candidate
        self.log.warning("symbol_unknown", symbol=symbol)
        return None

    def symbol_variants(self, symbol: str) -> list[str]:
        upper = symbol.upper()
        normalized = upper.replace("/", "-").replace("_", "-")
        variants = [upper]
        if "-" in normalized:
            base, quote = normalized.split("-", 1)
            variants.append(f"{base}{quote}")
            variants.append(f"{base}_{quote}")
            swapped = _QUOTE_SWAPS.get(quote)
            if swapped:
                variants.append(f"{base}-{swapped}")
        elif normalized.endswith(self.quote_asset) and len(normalized) > len(self.quote_asset):
            base = normalized[: -len(self.quote_asset)]
            variants.append(f"{base}-{self.quote_asset}")
        seen: set[str] = set()
        return [v for v in variants if not (v in seen or seen.add(v))]

    async def _instrument_exists(self, inst_id: str) -> bool:
        try:
            data = await self._request(
                "GET",
                "/api/v5/public/instruments",
                params={"instType": "SPOT", "instId": inst_id},
            )
        except ExchangeError as exc:
            if exc.code in _UNKNOWN_INSTRUMENT_CODES:
                return False
            raise
        return any(row.get("instId") == inst_id for row in data)

    # --- orders -------------------------------------------------------------

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        size: float,
        size_unit: SizeUnit = "base",
    ) -> Order:
        payload: dict[str, Any] = {
            "instId": symbol,
            "tdMode": "cash",
            "side": side,
            "ordType": "market",
            "sz": format_decimal(size),
            "clOrdId": self._client_order_id(),
        }
        if side == "buy":
            payload["tgtCcy"] = "quote_ccy" if size_unit == "quote" else "base_ccy"
        row = await self._submit_order("/api/v5/trade/order", payload)
        self.log.info("order_placed", symbol=symbol, side=side, size=size, unit=size_unit, order_type="market")
        return Order(
            order_id=str(row.get("ordId", "")),
            symbol=symbol,
            side=side,
            size=size,
            order_type="market",
            size_unit=size_unit,
            client_order_id=payload["clOrdId"],
        )

    async def place_limit_order(self, symbol: str, side: str, size: float, price: float) -> Order:
        payload = {
            "instId": symbol,
            "tdMode": "cash",
            "side": side,
            "ordType": "limit",
            "sz": format_decimal(size),
            "px": format_decimal(price),
            "clOrdId": self._client_order_id(),
        }
        row = await self._submit_order("/api/v5/trade/order", payload)
        self.log.info("order_placed", symbol=symbol, side=side, size=size, price=price, order_type="limit")
        return Order(
            order_id=str(row.get("ordId", "")),
            symbol=symbol,
            side=side,
            size=size,
            order_type="limit",
            size_unit="base",
            client_order_id=payload["clOrdId"],
            price=price,
        )

    async def place_order_with_protection(
        self,
        symbol: str,
        side: str,
        size: float,
        stop_loss_pct: float,
        take_profit_pct: float,
        order_type: str = "market",
        price: float | None = None,
        size_unit: SizeUnit = "base",
        protective_order_type: str = "conditional",
    ) -> Order:
        """
        Place the primary order, then attach a stop for the opposite side.

        The stop is best effort: if it cannot be placed the primary order stands
        and the returned order carries `protection_error`.
        """
        if order_type == "limit" and price is not None:
            order = await self.place_limit_order(symbol, side, size, price)
        else:
            order = await self.place_market_order(symbol, side, size, size_unit)

        try:
            protective_id = await self._place_protective_order(
                order, stop_loss_pct, take_profit_pct, protective_order_type
            )
        except ExchangeError as exc:
            self.log.warning(
                "protective_order_failed",
                symbol=symbol,
                side=side,
                order_id=order.order_id,
                error=exc.message,
                code=exc.code,
            )
            return replace(order, protection_error=exc.message)
        return replace(order, protective_order_id=protective_id)

    async def _place_protective_order(
        self,
        order: Order,
        stop_loss_pct: float,
        take_profit_pct: float,
        protective_order_type: str,
    ) -> str:
        ticker = await self.get_ticker(order.symbol)
        if ticker is None:
            raise ExchangeError(f"No ticker for {order.symbol}; protective order skipped")
        current = ticker.last
        if order.side == "buy":
            stop_price = current * (1 - stop_loss_pct / 100)
            take_profit = current * (1 + take_profit_pct / 100)
        else:
            stop_price = current * (1 + stop_loss_pct / 100)
            take_profit = current * (1 - take_profit_pct / 100)
        quantity = order.size / current if order.size_unit == "quote" else order.size
        opposite = "sell" if order.side == "buy" else "buy"
        payload: dict[str, Any] = {
            "instId": order.symbol,
            "tdMode": "cash",
            "side": opposite,
            "ordType": protective_order_type,
            "sz": format_decimal(round(quantity, 8)),
            "slTriggerPx": format_trigger_price(stop_price),
            "slOrdPx": "-1",
        }
        if opposite == "buy":
            payload["tgtCcy"] = "base_ccy"
        if protective_order_type == "oco":
            payload["tpTriggerPx"] = format_trigger_price(take_profit)
            payload["tpOrdPx"] = "-1"
        row = await self._submit_order("/api/v5/trade/order-algo", payload)
        self.log.info(
            "protective_order_placed",
            symbol=order.symbol,
            side=opposite,
            stop_price=payload["slTriggerPx"],
            take_profit=payload.get("tpTriggerPx"),
            algo_id=row.get("algoId"),
        )
        return str(row.get("algoId", ""))

    async def _submit_order(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            data = await self._request("POST", path, body=payload)
        except ExchangeError as exc:
            if exc.delivered and exc.code is not None:
                raise OrderRejected(
                    exc.message,
                    response=exc.response,
                    status_code=exc.status_code,
                    code=exc.code,
                    delivered=True,
                ) from exc
            raise
        row = data[0] if data else {}
        s_code = str(row.get("sCode", "0"))
        if s_code != "0":
            raise OrderRejected(
                f"Order rejected: {row.get('sMsg') or s_code}",
                response=data,
                code=s_code,
                delivered=True,
            )
        return row

    @staticmethod
    def _client_order_id() -> str:
        # OKX allows up to 32 alphanumeric characters
        return f"sx{uuid4().hex[:30]}"

    # --- transport ----------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        request_path = path
        if params:
            request_path = f"{path}?{urlencode(params)}"
        body_text = orjson.dumps(body).decode("utf-8") if body is not None else ""
        timestamp = format_timestamp(utc_now())
        signature = self.sign(timestamp, method, request_path, body_text)
        headers = self._headers(timestamp, signature)

        log_http = self.settings.monitoring.log_http
        max_body_chars = self.settings.monitoring.log_http_max_body_chars
        if log_http:
            self.log.info("rest_request", method=method, path=request_path, body=self._truncate(body_text, max_body_chars))

        start = time.perf_counter()
        try:
            response = await self.http.request(
                method,
                request_path,
                content=body_text.encode("utf-8") if body_text else None,
                headers=headers,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            self._record_error(path)
            self.log.warning("rest_connect_failed", method=method, path=path, error=str(exc))
            raise ExchangeUnreachable(f"OKX unreachable: {exc}") from exc
        except httpx.RequestError as exc:
            self._record_error(path)
            self.log.warning("rest_request_failed", method=method, path=path, error=str(exc))
            raise ExchangeError(f"OKX request failed: {exc}", delivered=None) from exc
        latency_ms = (time.perf_counter() - start) * 1000
        if self._metrics:
            self._metrics.rest_request_latency_ms.observe(latency_ms)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            self._record_error(path)
            self.log.error(
                "rest_invalid_response",
                method=method,
                path=path,
                status_code=response.status_code,
                error=self._truncate(response.text, max_body_chars),
            )
            raise ExchangeError(
                f"OKX returned HTTP {response.status_code} without a JSON body",
                response=response.text,
                status_code=response.status_code,
                delivered=True if response.status_code < 500 else None,
            )

        code = str(payload.get("code", ""))
        if log_http:
            self.log.info(
                "rest_response",
                method=method,
                path=path,
                status_code=response.status_code,
                code=code,
                latency_ms=round(latency_ms, 2),
            )
        if code != "0":
            self._record_error(path)
            self.log.warning(
                "rest_error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                code=code,
                msg=payload.get("msg"),
            )
            raise ExchangeError(
                f"OKX error {code}: {payload.get('msg') or 'unknown error'}",
                response=payload,
                status_code=response.status_code,
                code=code,
                delivered=True,
            )
        data = payload.get("data") or []
        return data if isinstance(data, list) else [data]

    def _record_error(self, path: str) -> None:
        if self._metrics:
            self._metrics.rest_error_total.labels(endpoint=path).inc()

    @staticmethod
    def _truncate(text: str, max_chars: int) -> str:
        if max_chars <= 0 or len(text) <= max_chars:
            return text
        return text[: max_chars - 3] + "..."


def _to_float(row: dict[str, Any], *keys: str) -> float:
    for key in keys:
        value = row.get(key)
        if value in (None, ""):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0
