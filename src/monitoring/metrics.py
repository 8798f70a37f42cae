"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class Metrics:
    """Expose signal pipeline metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        self.signals_received_total = Counter(
            "signals_received_total",
            "Signals received by action",
            ["action"],
            registry=self.registry,
        )
        self.signals_rejected_total = Counter(
            "signals_rejected_total",
            "Signals rejected by reason",
            ["reason"],
            registry=self.registry,
        )
        self.orders_placed_total = Counter(
            "orders_placed_total",
            "Orders placed by side",
            ["side", "simulated"],
            registry=self.registry,
        )
        self.protective_order_failures_total = Counter(
            "protective_order_failures_total",
            "Primary orders that went out without a protective stop",
            registry=self.registry,
        )
        self.daily_trades = Gauge(
            "daily_trades",
            "Trades counted against today's ceiling",
            registry=self.registry,
        )
        self.signal_latency_ms = Histogram(
            "signal_latency_ms",
            "End-to-end signal processing latency (ms)",
            registry=self.registry,
        )
        self.rest_request_latency_ms = Histogram(
            "rest_request_latency_ms",
            "REST latency (ms)",
            registry=self.registry,
        )
        self.rest_error_total = Counter(
            "rest_error_total",
            "REST errors by endpoint",
            ["endpoint"],
            registry=self.registry,
        )

    def start_server(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
