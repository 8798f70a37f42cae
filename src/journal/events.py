"""Journal records for signals, orders and closed trades."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from src.models import format_timestamp, parse_timestamp, utc_now


class EventType(str, Enum):
    SIGNAL_RECEIVED = "SignalReceived"
    SIGNAL_REJECTED = "SignalRejected"
    ORDER_PLACED = "OrderPlaced"
    PROTECTIVE_ORDER_FAILED = "ProtectiveOrderFailed"
    POSITION_OPENED = "PositionOpened"
    POSITION_CLOSED = "PositionClosed"
    SYSTEM_STARTED = "SystemStarted"
    SYSTEM_STOPPED = "SystemStopped"

    @property
    def is_trade(self) -> bool:
        return self in (EventType.POSITION_OPENED, EventType.POSITION_CLOSED)


@dataclass(frozen=True)
class Event:
    """
    One journal line.

    `strategy_ref` is the canonical `COIN:category:subcategory` string for
    events tied to a strategy and None for process-level events.
    """

    event_id: str
    event_type: EventType
    timestamp: datetime
    sequence_num: int
    payload: dict[str, Any]
    strategy_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def matches(self, strategy_ref: str | None = None, event_type: EventType | None = None) -> bool:
        if strategy_ref is not None and self.strategy_ref != strategy_ref:
            return False
        return event_type is None or self.event_type == event_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "sequence_num": self.sequence_num,
            "strategy_ref": self.strategy_ref,
            "payload": self.payload,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            event_id=data["event_id"],
            event_type=EventType(data["event_type"]),
            timestamp=parse_timestamp(data["timestamp"]),
            sequence_num=int(data["sequence_num"]),
            payload=data.get("payload", {}),
            strategy_ref=data.get("strategy_ref"),
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def create(
        cls,
        event_type: EventType,
        payload: dict[str, Any],
        sequence_num: int,
        strategy_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "Event":
        return cls(
            event_id=uuid4().hex,
            event_type=event_type,
            timestamp=utc_now(),
            sequence_num=sequence_num,
            payload=payload,
            strategy_ref=strategy_ref,
            metadata=metadata or {},
        )
