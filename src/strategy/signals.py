"""Normalize inbound webhook alerts into canonical signals."""

from __future__ import annotations

import math
import re
from typing import Any, Mapping

import orjson

from src.config.settings import TradingConfig
from src.errors import MalformedSignal
from src.models import Signal

# Alert field name -> canonical field. Keys are compared after lower-casing and
# dropping "_", "-" and spaces, so "initial_amount" and "initialAmount" match.
FIELD_ALIASES: dict[str, str] = {
    "symbol": "symbol",
    "coin": "symbol",
    "ticker": "symbol",
    "cat": "category",
    "category": "category",
    "scat": "subcategory",
    "subcategory": "subcategory",
    "action": "action",
    "side": "action",
    "ordertype": "order_type",
    "type": "order_type",
    "price": "price",
    "recurringmode": "recurring_mode",
    "mode": "recurring_mode",
    "initialamount": "initial_amount",
    "initialquantity": "initial_quantity",
    "amount": "amount",
    "quantity": "quantity",
}

# Symbol sources in order of preference when an alert carries more than one.
_SYMBOL_KEYS = ("symbol", "coin", "ticker")

NOT_APPLICABLE = {"", "n/a", "na", "none", "null", "-"}

RECURRING_MODES = {
    "amount": "amount",
    "am": "amount",
    "quantity": "quantity",
    "qu": "quantity",
    "qty": "quantity",
}

_KEY_STRIP = re.compile(r"[\s_\-]+")
_LINE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_ \-]*?)\s*:\s*(.*?)\s*$")


class SignalNormalizer:
    """Parse JSON objects or `key: value` text blocks into `Signal` records."""

    def __init__(self, config: TradingConfig) -> None:
        self.quote_asset = config.quote_asset.upper()

    def normalize(
        self,
        raw: str | bytes | Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> Signal:
        fields = self._collect_fields(raw)
        if defaults:
            for key, value in self._canonical_fields(defaults).items():
                fields.setdefault(key, value)
        return self._build(fields)

    def _collect_fields(self, raw: str | bytes | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(raw, Mapping):
            return self._canonical_fields(raw)
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedSignal("Signal body is not valid UTF-8") from exc
        if not isinstance(raw, str):
            raise MalformedSignal(f"Unsupported signal payload type: {type(raw).__name__}")
        text = raw.strip()
        if not text:
            raise MalformedSignal("Empty signal body")
        if text.startswith("{"):
            try:
                decoded = orjson.loads(text)
            except orjson.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                return self._canonical_fields(decoded)
        return self._parse_text(text)

    def _parse_text(self, text: str) -> dict[str, Any]:
        pairs: dict[str, Any] = {}
        lines = [line for line in text.splitlines() if line.strip()]
        for line in lines:
            match = _LINE.match(line)
            if not match:
                continue
            key, value = match.group(1), match.group(2)
            pairs.setdefault(key, value)
        if not pairs and len(lines) == 1:
            # A bare strategy message such as "order buy @ 1 filled on DOGEUSDT"
            pairs["action"] = lines[0]
        return self._canonical_fields(pairs)

    @staticmethod
    def _canonical_fields(data: Mapping[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        symbol_candidates: dict[str, Any] = {}
        for key, value in data.items():
            flat = _KEY_STRIP.sub("", str(key).lower())
            canonical = FIELD_ALIASES.get(flat)
            if canonical is None:
                continue
            if _is_absent(value):
                continue
            if canonical == "symbol":
                symbol_candidates.setdefault(flat, value)
                continue
            fields.setdefault(canonical, value)
        for key in _SYMBOL_KEYS:
            if key in symbol_candidates:
                fields["symbol"] = symbol_candidates[key]
                break
        return fields

    def _build(self, fields: dict[str, Any]) -> Signal:
        action = self._parse_action(fields.get("action"))
        if "symbol" not in fields:
            raise MalformedSignal("Signal has no coin or symbol")
        symbol, coin = self._parse_symbol(str(fields["symbol"]))

        price = _positive_number(fields.get("price"), "price")
        order_type = self._parse_order_type(fields.get("order_type"), price)

        initial_amount = _positive_number(
            fields.get("initial_amount", fields.get("amount")), "initialAmount"
        )
        initial_quantity = _positive_number(
            fields.get("initial_quantity", fields.get("quantity")), "initialQuantity"
        )

        mode_raw = _lower(fields.get("recurring_mode"))
        recurring_mode = RECURRING_MODES.get(mode_raw or "", "amount")

        return Signal(
            action=action,
            symbol=symbol,
            coin=coin,
            category=_lower(fields.get("category")) or "default",
            subcategory=_lower(fields.get("subcategory")) or "default",
            order_type=order_type,
            price=price,
            recurring_mode=recurring_mode,
            initial_amount=initial_amount,
            initial_quantity=initial_quantity,
        )

    @staticmethod
    def _parse_action(value: Any) -> str:
        action = _lower(value)
        if not action:
            raise MalformedSignal("Signal action is missing")
        if action in {"buy", "sell"}:
            return action
        # TradingView strategy messages embed the side in free text
        if "order buy" in action:
            return "buy"
        if "order sell" in action:
            return "sell"
        raise MalformedSignal(f"Invalid signal action: {action}")

    def _parse_symbol(self, value: str) -> tuple[str, str]:
        text = value.strip().upper()
        if ":" in text:
            # Drop exchange prefixes such as "OKX:DOGEUSDT"
            text = text.rsplit(":", 1)[1]
        text = text.replace("/", "-").replace("_", "-")
        if not text:
            raise MalformedSignal("Signal has no coin or symbol")
        if "-" in text:
            base, quote = text.split("-", 1)
            if not base or not quote:
                raise MalformedSignal(f"Invalid symbol: {value}")
            return f"{base}-{quote}", base
        if text.endswith(self.quote_asset) and len(text) > len(self.quote_asset):
            base = text[: -len(self.quote_asset)]
            return f"{base}-{self.quote_asset}", base
        return f"{text}-{self.quote_asset}", text

    @staticmethod
    def _parse_order_type(value: Any, price: float | None) -> str:
        order_type = _lower(value)
        if not order_type:
            return "limit" if price is not None else "market"
        if order_type not in {"market", "limit"}:
            raise MalformedSignal(f"Invalid order type: {order_type}")
        if order_type == "limit" and price is None:
            raise MalformedSignal("Limit orders require a price")
        return order_type


def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip().lower() in NOT_APPLICABLE:
        return True
    return False


def _lower(value: Any) -> str | None:
    if _is_absent(value):
        return None
    return str(value).strip().lower()


def _positive_number(value: Any, name: str) -> float | None:
    if _is_absent(value):
        return None
    if isinstance(value, bool):
        raise MalformedSignal(f"{name} must be a number")
    try:
        number = float(str(value).strip().replace(",", ""))
    except ValueError as exc:
        raise MalformedSignal(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(number) or number <= 0:
        raise MalformedSignal(f"{name} must be positive, got {value!r}")
    return number
