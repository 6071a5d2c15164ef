"""Calendar changes requested by the assistant, executed against a local calendar."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from config import CALENDAR_DEFAULT_DURATION_MIN, CALENDAR_FILE
from utils.persistent_store import PersistentStore

logger = logging.getLogger("maple.calendar")

CALENDAR_MUTATIONS = {"create", "move", "delete"}


@dataclass
class CalendarIntent:
    action: str  # create | move | delete | query | unclear
    response: str = ""
    event_title: Optional[str] = None
    start_time: Optional[str] = None  # ISO 8601
    end_time: Optional[str] = None
    duration: Optional[int] = None  # minutes
    original_event_id: Optional[str] = None
    conflicts: list = field(default_factory=list)
    needs_confirmation: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "response": self.response,
            "eventTitle": self.event_title,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "originalEventId": self.original_event_id,
            "conflicts": list(self.conflicts),
            "needsConfirmation": self.needs_confirmation,
        }


class CalendarBackend(Protocol):
    def create_event(self, title: str, start: str, end: str) -> str:
        ...

    def update_event(self, event_id: str, title: str, start: str, end: str) -> None:
        ...

    def delete_event(self, event_id: str) -> None:
        ...

    def list_events(self) -> list[dict]:
        ...


class LocalCalendar:
    """Calendar events in a crash-safe JSON file."""

    def __init__(self, file_path: str = CALENDAR_FILE):
        self._store = PersistentStore(file_path, default_data={"events": []})

    def create_event(self, title: str, start: str, end: str) -> str:
        event_id = uuid.uuid4().hex[:12]
        self._store.append_to_list(
            "events",
            {"id": event_id, "summary": title, "start": start, "end": end},
            max_items=5000,
        )
        logger.info("Calendar event created: %s (%s)", title, start)
        return event_id

    def update_event(self, event_id: str, title: str, start: str, end: str) -> None:
        if not self._store.update_in_list("events", event_id, {"summary": title, "start": start, "end": end}):
            raise ValueError(f"event {event_id} not found")
        logger.info("Calendar event moved: %s -> %s", event_id, start)

    def delete_event(self, event_id: str) -> None:
        if not self._store.remove_from_list("events", event_id):
            raise ValueError(f"event {event_id} not found")
        logger.info("Calendar event deleted: %s", event_id)

    def list_events(self) -> list[dict]:
        return list(self._store.get("events", []))


def _resolve_end_time(intent: CalendarIntent) -> str:
    if intent.end_time:
        return intent.end_time
    start = datetime.fromisoformat(intent.start_time.replace("Z", "+00:00"))
    return (start + timedelta(minutes=intent.duration or CALENDAR_DEFAULT_DURATION_MIN)).isoformat()


def execute_calendar_action(intent: CalendarIntent, calendar: CalendarBackend) -> str:
    """Apply a calendar intent and return the sentence to say back to the user."""
    try:
        if intent.action == "create":
            if not intent.event_title or not intent.start_time:
                return "I need a title and time to create an event."
            event_id = calendar.create_event(intent.event_title, intent.start_time, _resolve_end_time(intent))
            return f'Done! "{intent.event_title}" has been added to your calendar. (ID: {event_id})'

        if intent.action == "move":
            if not intent.original_event_id:
                return "I can't find which event to move. Could you be more specific?"
            if not intent.start_time:
                return "I need a new time to move the event to."
            title = intent.event_title or "Untitled Event"
            calendar.update_event(intent.original_event_id, title, intent.start_time, _resolve_end_time(intent))
            return f'Done! "{title}" has been moved to the new time.'

        if intent.action == "delete":
            if not intent.original_event_id:
                return "I can't find which event to delete. Could you be more specific?"
            calendar.delete_event(intent.original_event_id)
            return f'Done! "{intent.event_title or "The event"}" has been removed from your calendar.'

        return intent.response
    except Exception as e:
        logger.error("Calendar action failed: %s", e, exc_info=True)
        return f"Something went wrong: {e}. Please try again."
