from __future__ import annotations

import base64
import hmac
from hashlib import sha256

import httpx
import orjson
import pytest

from src.connectors.okx_client import OKXRestClient, format_decimal, format_trigger_price
from src.errors import ExchangeError, ExchangeUnreachable, OrderRejected


def _ok(data: list[dict]) -> httpx.Response:
    return httpx.Response(200, json={"code": "0", "msg": "", "data": data})


def _error(code: str, msg: str = "error") -> httpx.Response:
    return httpx.Response(200, json={"code": code, "msg": msg, "data": []})


class _Exchange:
    """Routes requests by path and records them for inspection."""

    def __init__(self, instruments: tuple[str, ...] = ("DOGE-USDT",), last: str = "0.08") -> None:
        self.instruments = set(instruments)
        self.last = last
        self.requests: list[httpx.Request] = []
        self.algo_response: httpx.Response | None = None
        self.order_response: httpx.Response | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/v5/public/instruments":
            inst_id = request.url.params.get("instId")
            if inst_id in self.instruments:
                return _ok([{"instId": inst_id}])
            return _error("51001", "Instrument ID does not exist")
        if path == "/api/v5/market/ticker":
            inst_id = request.url.params.get("instId")
            return _ok([{"instId": inst_id, "last": self.last, "bidPx": "0.0799", "askPx": "0.0801", "vol24h": "1000"}])
        if path == "/api/v5/account/balance":
            return _ok([{"details": [{"ccy": "USDT", "availBal": "250.5", "cashBal": "300"}]}])
        if path == "/api/v5/trade/order":
            return self.order_response or _ok([{"ordId": "12345", "clOrdId": "x", "sCode": "0", "sMsg": ""}])
        if path == "/api/v5/trade/order-algo":
            return self.algo_response or _ok([{"algoId": "algo-9", "sCode": "0"}])
        if path == "/api/v5/trade/fills-history":
            return _ok([{"ordId": "12345", "instId": request.url.params.get("instId"), "fillPx": "0.08"}])
        return httpx.Response(404, text="not found")

    def bodies(self, path: str) -> list[dict]:
        return [orjson.loads(r.content) for r in self.requests if r.url.path == path]


def _client(settings, exchange) -> OKXRestClient:
    return OKXRestClient(settings, transport=httpx.MockTransport(exchange))


@pytest.mark.asyncio
async def test_requests_are_signed_over_path_query_and_body(settings) -> None:
    exchange = _Exchange()
    client = _client(settings, exchange)

    await client.place_market_order("DOGE-USDT", "buy", 100.0, size_unit="quote")
    await client.get_balance("USDT")
    await client.close()

    for request in exchange.requests:
        timestamp = request.headers["OK-ACCESS-TIMESTAMP"]
        body = request.content.decode("utf-8")
        path = request.url.raw_path.decode("ascii")
        message = f"{timestamp}{request.method}{path}{body}"
        expected = base64.b64encode(hmac.new(b"secret", message.encode("utf-8"), sha256).digest()).decode()
        assert request.headers["OK-ACCESS-SIGN"] == expected
        assert request.headers["OK-ACCESS-KEY"] == "key"
        assert request.headers["OK-ACCESS-PASSPHRASE"] == "phrase"
        assert request.headers["x-simulated-trading"] == "1"
        assert timestamp.endswith("Z")
    assert exchange.requests[1].url.raw_path == b"/api/v5/account/balance?ccy=USDT"


def test_sign_matches_reference_vector(settings) -> None:
    client = OKXRestClient(settings)
    message = "2020-12-08T09:08:57.715ZGET/api/v5/account/balance?ccy=BTC"
    expected = base64.b64encode(hmac.new(b"secret", message.encode(), sha256).digest()).decode()
    assert client.sign("2020-12-08T09:08:57.715Z", "GET", "/api/v5/account/balance?ccy=BTC") == expected


@pytest.mark.asyncio
async def test_market_buy_in_quote_units_sets_target_currency(settings) -> None:
    exchange = _Exchange()
    client = _client(settings, exchange)

    order = await client.place_market_order("DOGE-USDT", "buy", 100.0, size_unit="quote")
    await client.close()

    body = exchange.bodies("/api/v5/trade/order")[0]
    assert body["tdMode"] == "cash"
    assert body["ordType"] == "market"
    assert body["sz"] == "100"
    assert body["tgtCcy"] == "quote_ccy"
    assert body["clOrdId"].startswith("sx")
    assert order.order_id == "12345"


@pytest.mark.asyncio
async def test_balance_and_ticker_parsing(settings) -> None:
    client = _client(settings, _Exchange())

    balance = await client.get_balance("USDT")
    missing = await client.get_balance("BTC")
    ticker = await client.get_ticker("DOGE-USDT")
    await client.close()

    assert balance.available == 250.5
    assert balance.total == 300.0
    assert missing is None
    assert ticker.last == 0.08
    assert ticker.bid == 0.0799


@pytest.mark.asyncio
async def test_resolve_symbol_tries_variants(settings) -> None:
    exchange = _Exchange(instruments=("DOGE-USDC",))
    client = _client(settings, exchange)

    resolved = await client.resolve_symbol("DOGE-USDT")
    unknown = await client.resolve_symbol("NOPE-USDT")
    await client.close()

    assert resolved == "DOGE-USDC"
    assert unknown is None
    tried = [r.url.params.get("instId") for r in exchange.requests]
    assert tried[:4] == ["DOGE-USDT", "DOGEUSDT", "DOGE_USDT", "DOGE-USDC"]


@pytest.mark.asyncio
async def test_validate_symbol_and_fills_history(settings) -> None:
    exchange = _Exchange()
    client = _client(settings, exchange)

    assert await client.validate_symbol("doge-usdt")
    assert not await client.validate_symbol("NOPE-USDT")
    fills = await client.get_fills_history("DOGE-USDT", limit=500)
    await client.close()

    assert fills[0]["fillPx"] == "0.08"
    params = exchange.requests[-1].url.params
    assert params["instType"] == "SPOT"
    assert params["limit"] == "100"
    assert params["instId"] == "DOGE-USDT"


def test_symbol_variants_without_separator(settings) -> None:
    client = OKXRestClient(settings)
    assert client.symbol_variants("dogeusdt") == ["DOGEUSDT", "DOGE-USDT"]


@pytest.mark.asyncio
async def test_protection_places_stop_below_entry_for_buy(settings) -> None:
    exchange = _Exchange(last="0.1")
    client = _client(settings, exchange)

    order = await client.place_order_with_protection("DOGE-USDT", "buy", 100.0, 2.0, 5.0, size_unit="quote")
    await client.close()

    algo = exchange.bodies("/api/v5/trade/order-algo")[0]
    assert algo["side"] == "sell"
    assert algo["ordType"] == "conditional"
    assert algo["slTriggerPx"] == "0.098"
    assert algo["slOrdPx"] == "-1"
    assert algo["sz"] == "1000"
    assert "tpTriggerPx" not in algo
    assert order.protective_order_id == "algo-9"
    assert not order.degraded


@pytest.mark.asyncio
async def test_oco_protection_for_sell_covers_above(settings) -> None:
    exchange = _Exchange(last="20")
    client = _client(settings, exchange)

    await client.place_order_with_protection(
        "DOGE-USDT", "sell", 5.0, 2.0, 5.0, protective_order_type="oco"
    )
    await client.close()

    algo = exchange.bodies("/api/v5/trade/order-algo")[0]
    assert algo["side"] == "buy"
    assert algo["tgtCcy"] == "base_ccy"
    assert algo["slTriggerPx"] == "20.4000"
    assert algo["tpTriggerPx"] == "19.0000"


@pytest.mark.asyncio
async def test_protection_failure_keeps_primary_order(settings) -> None:
    exchange = _Exchange()
    exchange.algo_response = _error("51000", "Parameter slTriggerPx error")
    client = _client(settings, exchange)

    order = await client.place_order_with_protection("DOGE-USDT", "buy", 100.0, 2.0, 5.0, size_unit="quote")
    await client.close()

    assert order.order_id == "12345"
    assert order.degraded
    assert "51000" in order.protection_error


@pytest.mark.asyncio
async def test_order_error_code_is_rejection(settings) -> None:
    exchange = _Exchange()
    exchange.order_response = _error("51008", "Insufficient balance")
    client = _client(settings, exchange)

    with pytest.raises(OrderRejected) as exc_info:
        await client.place_market_order("DOGE-USDT", "buy", 100.0, size_unit="quote")
    await client.close()

    assert exc_info.value.code == "51008"
    assert exc_info.value.delivered is True
    assert not exc_info.value.retry_safe


@pytest.mark.asyncio
async def test_order_item_scode_is_rejection(settings) -> None:
    exchange = _Exchange()
    exchange.order_response = _ok([{"ordId": "", "sCode": "51121", "sMsg": "Order quantity invalid"}])
    client = _client(settings, exchange)

    with pytest.raises(OrderRejected, match="Order quantity invalid"):
        await client.place_market_order("DOGE-USDT", "sell", 1.0)
    await client.close()


@pytest.mark.asyncio
async def test_connect_failure_is_retry_safe(settings) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OKXRestClient(settings, transport=httpx.MockTransport(refuse))

    with pytest.raises(ExchangeUnreachable) as exc_info:
        await client.place_market_order("DOGE-USDT", "buy", 100.0, size_unit="quote")
    await client.close()

    assert exc_info.value.retry_safe
    assert exc_info.value.reason == "EXCHANGE_UNREACHABLE"


@pytest.mark.asyncio
async def test_read_timeout_outcome_is_unknown(settings) -> None:
    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = OKXRestClient(settings, transport=httpx.MockTransport(stall))

    with pytest.raises(ExchangeError) as exc_info:
        await client.place_market_order("DOGE-USDT", "buy", 100.0, size_unit="quote")
    await client.close()

    assert exc_info.value.delivered is None
    assert not exc_info.value.retry_safe


@pytest.mark.asyncio
async def test_non_json_response_is_exchange_error(settings) -> None:
    client = OKXRestClient(
        settings,
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="Bad Gateway")),
    )

    with pytest.raises(ExchangeError) as exc_info:
        await client.get_ticker("DOGE-USDT")
    await client.close()

    assert exc_info.value.status_code == 502
    # A gateway error says nothing about whether OKX saw the request
    assert exc_info.value.delivered is None
    assert not exc_info.value.retry_safe


def test_number_formatting() -> None:
    assert format_decimal(100.0) == "100"
    assert format_decimal(0.00001) == "0.00001"
    assert format_decimal(1250.5) == "1250.5"
    assert format_trigger_price(20.4) == "20.4000"
    assert format_trigger_price(0.0784) == "0.0784"
    assert format_trigger_price(0.000012345678) == "0.00001235"
