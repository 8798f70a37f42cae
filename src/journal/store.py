"""Append-only JSONL journal of signals, orders and trades."""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Any, Iterator

import orjson
import structlog

from src.journal.events import Event, EventType


class EventJournal:
    """
    One `events.jsonl` file per journal directory, one event per line.

    Sequence numbers continue across restarts. A line left half-written by a
    crash is skipped on read rather than failing the whole journal.
    """

    FILE_NAME = "events.jsonl"

    def __init__(self, journal_path: str | Path) -> None:
        self.journal_path = Path(journal_path)
        self.journal_path.mkdir(parents=True, exist_ok=True)
        self.events_file = self.journal_path / self.FILE_NAME
        self.log = structlog.get_logger(__name__)
        self._sequence = max((e.sequence_num for e in self._scan()), default=0)
        self._torn_tail = self._ends_mid_line()

    def last_sequence(self) -> int:
        return self._sequence

    def append(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        strategy_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        event = Event.create(event_type, payload, self._sequence + 1, strategy_ref, metadata)
        line = orjson.dumps(event.to_dict())
        with open(self.events_file, "ab") as handle:
            if self._torn_tail:
                handle.write(b"\n")
                self._torn_tail = False
            handle.write(line + b"\n")
        self._sequence = event.sequence_num
        return event

    def iter_events(
        self,
        strategy_ref: str | None = None,
        event_type: EventType | None = None,
    ) -> Iterator[Event]:
        return (e for e in self._scan() if e.matches(strategy_ref, event_type))

    def tail(
        self,
        limit: int,
        strategy_ref: str | None = None,
        event_type: EventType | None = None,
    ) -> list[Event]:
        if limit <= 0:
            return []
        return list(deque(self.iter_events(strategy_ref, event_type), maxlen=limit))

    def count(self, strategy_ref: str | None = None, event_type: EventType | None = None) -> int:
        return sum(1 for _ in self.iter_events(strategy_ref, event_type))

    def _ends_mid_line(self) -> bool:
        if not self.events_file.exists() or self.events_file.stat().st_size == 0:
            return False
        with open(self.events_file, "rb") as handle:
            handle.seek(-1, 2)
            return handle.read(1) != b"\n"

    def _scan(self) -> Iterator[Event]:
        if not self.events_file.exists():
            return
        with open(self.events_file, "rb") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    yield Event.from_dict(orjson.loads(line))
                except (orjson.JSONDecodeError, KeyError, ValueError):
                    self.log.warning("journal_line_skipped", path=str(self.events_file), line=line_no)
