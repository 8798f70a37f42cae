"""Error taxonomy for the signal execution pipeline."""

from __future__ import annotations

from typing import Any


class TradingError(Exception):
    """Base class for every failure the pipeline reports to its caller."""

    reason = "TRADING_ERROR"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class MalformedSignal(TradingError):
    """The inbound alert is missing fields or carries invalid values."""

    reason = "MALFORMED_SIGNAL"


class InvalidState(TradingError):
    """The signal is well-formed but not allowed right now."""

    reason = "INVALID_STATE"


class InsufficientFunds(TradingError):
    reason = "INSUFFICIENT_FUNDS"

    def __init__(self, message: str, required: float, available: float) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


class LedgerError(TradingError):
    """The strategy ledger backing store failed or returned unreadable data."""

    reason = "LEDGER_ERROR"


class ExchangeError(TradingError):
    """
    Transport failure or non-zero exchange response.

    `delivered` tells whether the request reached the exchange:
    False means it never left (safe to retry), True means the exchange answered,
    None means the outcome is unknown (e.g. read timeout after sending).
    """

    reason = "EXCHANGE_ERROR"

    def __init__(
        self,
        message: str,
        response: Any = None,
        status_code: int | None = None,
        code: str | None = None,
        delivered: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.response = response
        self.status_code = status_code
        self.code = code
        self.delivered = delivered

    @property
    def retry_safe(self) -> bool:
        return self.delivered is False


class ExchangeUnreachable(ExchangeError):
    """The connection could not be established; nothing was sent."""

    reason = "EXCHANGE_UNREACHABLE"

    def __init__(self, message: str) -> None:
        super().__init__(message, delivered=False)


class OrderRejected(ExchangeError):
    """The exchange answered an order request with an error payload."""

    reason = "ORDER_REJECTED"
