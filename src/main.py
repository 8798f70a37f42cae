"""Service entrypoint: wire components and serve the webhook API."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import uvicorn

from src.api.webhook import create_app
from src.config.settings import Settings, load_settings
from src.connectors import OKXRestClient
from src.execution import TradeOrchestrator
from src.journal import EventBus, EventJournal, EventType
from src.ledger import StrategyLedger, create_store
from src.monitoring import Metrics, TradeLogger, configure_logging
from src.risk import OrderSizer, RiskGate
from src.strategy import SignalNormalizer

log = structlog.get_logger(__name__)


def build_orchestrator(
    settings: Settings,
    metrics: Metrics | None = None,
) -> tuple[TradeOrchestrator, EventJournal]:
    """Assemble the orchestrator and its collaborators from settings."""
    journal = EventJournal(settings.storage.journal_path)
    event_bus = EventBus(journal)
    trade_logger = TradeLogger(Path(settings.storage.logs_path) / "trades.csv")
    event_bus.register(trade_logger.handle_event, EventType.POSITION_OPENED, EventType.POSITION_CLOSED)

    client = OKXRestClient(settings)
    if metrics is not None:
        client.set_metrics(metrics)
    ledger = StrategyLedger(
        create_store(settings.ledger),
        default_balance=settings.trading.default_buy_amount_usdt,
        key_prefix=settings.ledger.key_prefix,
    )
    orchestrator = TradeOrchestrator(
        settings,
        client,
        ledger,
        RiskGate(settings.risk),
        sizer=OrderSizer(
            default_amount_usdt=settings.trading.default_buy_amount_usdt,
            min_balance_usdt=settings.risk.min_balance_usdt,
        ),
        normalizer=SignalNormalizer(settings.trading),
        event_bus=event_bus,
        metrics=metrics,
    )
    return orchestrator, journal


async def main_async() -> None:
    settings = load_settings()
    configure_logging(settings.monitoring.log_level, settings.storage.logs_path, settings.monitoring)

    metrics: Metrics | None = None
    if settings.monitoring.metrics_enabled:
        metrics = Metrics()
        metrics.start_server(settings.monitoring.metrics_port)

    orchestrator, journal = build_orchestrator(settings, metrics)
    trading_enabled, reasons = settings.trading_gate()
    await orchestrator.event_bus.publish(
        EventType.SYSTEM_STARTED,
        {
            "mode": settings.run.mode,
            "trading_enabled": trading_enabled,
            "trading_block_reasons": reasons,
            "ledger_backend": settings.ledger.backend,
        },
    )
    log.info(
        "service_starting",
        mode=settings.run.mode,
        trading_enabled=trading_enabled,
        host=settings.monitoring.api_host,
        port=settings.monitoring.api_port,
    )

    config = uvicorn.Config(
        create_app(orchestrator, journal),
        host=settings.monitoring.api_host,
        port=settings.monitoring.api_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        await orchestrator.event_bus.publish(EventType.SYSTEM_STOPPED, {"mode": settings.run.mode})
        await orchestrator.client.close()
        await orchestrator.ledger.store.close()
        log.info("service_stopped")


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
