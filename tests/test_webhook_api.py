"""Tests for the webhook API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.webhook import create_app
from src.errors import OrderRejected


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()


@pytest.fixture
def client(orchestrator) -> TestClient:
    app = create_app(orchestrator, orchestrator.event_bus.journal)
    with TestClient(app) as test_client:
        yield test_client


def test_root_endpoint(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "OKX Signal Executor"
    assert "webhook" in data["endpoints"]


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["mode"] == "demo"
    assert data["trading_enabled"] is True
    assert data["cooldown_seconds"] == 60
    assert data["max_daily_trades"] == 500
    assert data["uptime_sec"] >= 0


def test_webhook_json_alert(client: TestClient, fake_okx) -> None:
    response = client.post(
        "/webhook",
        json={"coin": "DOGE", "action": "buy", "cat": "momentum", "scat": "1m", "initialAmount": 100},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["details"]["strategy"] == "DOGE:momentum:1m"
    assert data["message"].startswith("Buy order executed")
    assert len(fake_okx.orders) == 1


def test_webhook_text_alert(client: TestClient) -> None:
    response = client.post(
        "/webhook",
        content="coin: doge\naction: buy\ninitialamount: 100",
        headers={"content-type": "text/plain"},
    )
    assert response.status_code == 200
    assert response.json()["details"]["symbol"] == "DOGE-USDT"


def test_webhook_malformed_alert(client: TestClient, fake_okx) -> None:
    response = client.post("/webhook", json={"coin": "DOGE"})
    assert response.status_code == 400
    data = response.json()
    assert data == {
        "success": False,
        "error": "Signal action is missing",
        "error_type": "MalformedSignal",
        "reason": "MALFORMED_SIGNAL",
    }
    assert fake_okx.orders == []


def test_webhook_internal_error_is_500(client: TestClient, fake_okx) -> None:
    fake_okx.order_error = RuntimeError("boom")
    response = client.post("/webhook", json={"coin": "DOGE", "action": "buy"})
    assert response.status_code == 500
    assert response.json()["reason"] == "INTERNAL_ERROR"


def test_manual_buy_then_sell(client: TestClient, fake_okx) -> None:
    bought = client.post("/manual/buy", json={"side": "sell"})
    assert bought.status_code == 200
    assert bought.json()["details"]["action"] == "buy"
    assert fake_okx.orders[0].size == 1000.0

    state = client.get("/strategies/doge/default/default").json()
    assert state["position"]["quantity"] == pytest.approx(12500.0)
    assert state["can_sell"] is True

    sold = client.post("/manual/sell")
    assert sold.status_code == 200
    assert fake_okx.orders[-1].side == "sell"
    state = client.get("/strategies/DOGE/default/default").json()
    assert state["position"] is None
    assert state["trading_balance"] == pytest.approx(1000.0)


def test_manual_sell_without_position(client: TestClient) -> None:
    response = client.post("/manual/sell", json={"symbol": "BTC-USDT"})
    assert response.status_code == 400
    assert response.json()["error_type"] == "InvalidState"


def test_account_endpoint(client: TestClient) -> None:
    response = client.get("/account")
    assert response.status_code == 200
    data = response.json()
    assert data["balance"] == {"currency": "USDT", "available": 10000.0, "total": 10000.0}
    assert data["positions"] == []
    assert data["recent_fills"] == []


def test_events_endpoint(client: TestClient) -> None:
    client.post("/manual/buy")
    response = client.get("/events?tail=2")
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert data["total"] == 3
    assert data["events"][-1]["event_type"] == "PositionOpened"


def test_events_endpoint_tail_limits(client: TestClient) -> None:
    assert client.get("/events?tail=0").status_code == 422
    assert client.get("/events?tail=1001").status_code == 422


def test_events_endpoint_filters(client: TestClient) -> None:
    client.post("/manual/buy")

    by_strategy = client.get("/events", params={"strategy": "DOGE:default:default"}).json()
    assert by_strategy["total"] == 3
    assert {e["strategy_ref"] for e in by_strategy["events"]} == {"DOGE:default:default"}

    orders = client.get("/events", params={"type": "OrderPlaced"}).json()
    assert orders["total"] == 1
    assert orders["events"][0]["payload"]["side"] == "buy"

    mixed_case = client.get("/events", params={"strategy": "doge:DEFAULT:default"}).json()
    assert mixed_case["total"] == 3

    other = client.get("/events", params={"strategy": "BTC:default:default"}).json()
    assert other == {"count": 0, "total": 0, "events": []}

    assert client.get("/events", params={"type": "NotAnEvent"}).status_code == 422
    assert client.get("/events", params={"strategy": "DOGE"}).status_code == 422


def test_request_id_header(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"
    assert client.get("/health").headers["X-Request-ID"]


def test_buy_token_places_fixed_quote_market_order(client: TestClient, fake_okx) -> None:
    response = client.post("/test/buy-token")

    assert response.status_code == 200
    details = response.json()["details"]
    assert details["symbol"] == "DOGE-USDT"
    assert details["usdt_spent"] == 10.0
    assert details["price"] == 0.08
    assert details["order_id"] == fake_okx.orders[0].order_id
    assert fake_okx.orders[0].size_unit == "quote"
    # The ledger is not involved
    assert client.get("/strategies/DOGE/default/default").json()["can_buy"] is True


def test_buy_token_respects_trading_gate(build_orchestrator, settings_factory, fake_okx) -> None:
    orchestrator = build_orchestrator(settings_factory(enable_trading=False))
    with TestClient(create_app(orchestrator)) as test_client:
        response = test_client.post("/test/buy-token")

    assert response.status_code == 403
    assert response.json()["reason"] == "TRADING_DISABLED"
    assert fake_okx.orders == []


def test_buy_token_reports_rejection(client: TestClient, fake_okx) -> None:
    fake_okx.order_error = OrderRejected("Order rejected: 51008", code="51008", delivered=True)

    response = client.post("/test/buy-token")

    assert response.status_code == 400
    assert response.json()["reason"] == "ORDER_REJECTED"
