"""Order sizing under the two capital-recycling policies."""

from __future__ import annotations

from src.errors import InsufficientFunds, InvalidState
from src.models import OrderSize, PositionRecord, Signal


class OrderSizer:
    """
    Decide how much to buy or sell for a signal.

    Buys are sized in USDT (quote) unless a first trade names an exact unit
    count; sells are always sized in base units.
    """

    def __init__(self, default_amount_usdt: float, min_balance_usdt: float = 0.0) -> None:
        self.default_amount_usdt = default_amount_usdt
        self.min_balance_usdt = min_balance_usdt

    def size_buy(
        self,
        signal: Signal,
        first_trade: bool,
        trading_balance: float,
        available_usdt: float,
    ) -> OrderSize:
        if first_trade:
            if signal.initial_quantity is not None:
                return OrderSize(size=signal.initial_quantity, unit="base", source="initial_quantity")
            if signal.initial_amount is not None:
                amount, source = signal.initial_amount, "initial_amount"
            else:
                amount, source = self.default_amount_usdt, "default_amount"
        else:
            amount, source = trading_balance, "trading_balance"

        if amount <= 0:
            raise InvalidState(f"Trading balance for {signal.strategy_key} is {amount}", reason="NO_TRADING_BALANCE")
        self._require_funds(amount, available_usdt)
        return OrderSize(size=amount, unit="quote", source=source, usdt_amount=amount)

    def size_sell(
        self,
        signal: Signal,
        first_trade: bool,
        position: PositionRecord | None,
    ) -> OrderSize:
        if first_trade:
            if signal.initial_quantity is not None:
                return OrderSize(size=signal.initial_quantity, unit="base", source="initial_quantity")
            if signal.recurring_mode == "amount":
                raise InvalidState(
                    "Amount mode requires an opening buy before the first sell",
                    reason="FIRST_SELL_REQUIRES_BUY",
                )
        if position is None or position.quantity <= 0:
            raise InvalidState(f"No open position for {signal.strategy_key}", reason="NO_OPEN_POSITION")
        # The ledger quantity is authoritative: the live wallet may hold coins outside this strategy
        return OrderSize(size=position.quantity, unit="base", source="position")

    def _require_funds(self, amount: float, available_usdt: float) -> None:
        required = max(amount, self.min_balance_usdt)
        if available_usdt < required:
            raise InsufficientFunds(
                f"Insufficient USDT balance. Need {required}, have {available_usdt}",
                required=required,
                available=available_usdt,
            )


def to_base_units(size: OrderSize, price: float) -> float:
    """Convert a sizing decision to base units at `price`."""
    if size.unit == "base":
        return size.size
    return size.size / price
