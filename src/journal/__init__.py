"""Trade reporting journal."""

from src.journal.bus import EventBus
from src.journal.events import Event, EventType
from src.journal.store import EventJournal

__all__ = ["Event", "EventType", "EventJournal", "EventBus"]
