"""Event bus: journal first, then notify subscribers."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from src.journal.events import Event, EventType
from src.journal.store import EventJournal

EventHandler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """
    Append each event to the journal, then hand it to subscribers.

    A failing subscriber is logged and skipped; it never affects the publisher
    or the other subscribers.
    """

    def __init__(self, journal: EventJournal) -> None:
        self._journal = journal
        self._subscriptions: list[tuple[frozenset[EventType] | None, EventHandler]] = []
        self._log = structlog.get_logger(__name__)

    @property
    def journal(self) -> EventJournal:
        return self._journal

    def register(self, handler: EventHandler, *event_types: EventType) -> None:
        """Subscribe `handler` to `event_types`, or to every event when none are given."""
        self._subscriptions.append((frozenset(event_types) or None, handler))

    async def publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        strategy_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        event = self._journal.append(event_type, payload, strategy_ref, metadata)
        for types, handler in self._subscriptions:
            if types is None or event.event_type in types:
                await self._deliver(handler, event)
        return event

    async def _deliver(self, handler: EventHandler, event: Event) -> None:
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.exception(
                "event_handler_failed",
                event_id=event.event_id,
                event_type=event.event_type.value,
                strategy=event.strategy_ref,
                handler=getattr(handler, "__name__", repr(handler)),
            )
