"""Trade CSV logger."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

from src.journal.events import Event

FIELDS = (
    "executed_at",
    "order_id",
    "strategy_ref",
    "symbol",
    "action",
    "order_type",
    "quantity",
    "price",
    "total_value",
    "recurring_mode",
    "buy_price",
    "profit_loss",
    "profit_percentage",
    "simulated",
)


class TradeLogger:
    """
    Append one CSV row per opened or closed position.

    Sell rows carry the entry price and realized P&L of the position they
    closed; on buy rows those columns are blank.
    """

    def __init__(self, log_path: str | Path) -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_path.exists():
            self._write(None, mode="w")

    def handle_event(self, event: Event) -> None:
        if event.event_type.is_trade:
            self._write(self._row(event), mode="a")

    @staticmethod
    def _row(event: Event) -> dict[str, Any]:
        row = {name: event.payload.get(name) for name in FIELDS}
        row["executed_at"] = row["executed_at"] or event.timestamp.isoformat()
        row["strategy_ref"] = event.strategy_ref or row["strategy_ref"]
        row["simulated"] = bool(row["simulated"])
        return {name: "" if value is None else value for name, value in row.items()}

    def _write(self, row: dict[str, Any] | None, mode: str) -> None:
        with open(self.log_path, mode, newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=FIELDS)
            if row is None:
                writer.writeheader()
            else:
                writer.writerow(row)
