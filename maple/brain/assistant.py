import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from brain.calendar_actions import CALENDAR_MUTATIONS, CalendarBackend, CalendarIntent
from config import (
    ANTHROPIC_API_KEY,
    ASSISTANT_HISTORY_TURNS,
    ASSISTANT_MAX_TOKENS,
    ASSISTANT_MODEL,
    ASSISTANT_TIMEZONE,
    SYSTEM_PROMPT_ASSISTANT,
)

logger = logging.getLogger("maple.assistant")

MAX_RETRIES = 2
BASE_BACKOFF = 1.0  # max ~3s total (1s + 2s); voice can't wait longer
MAX_EVENTS_IN_PROMPT = 40


class AssistantError(RuntimeError):
    """The assistant could not produce a usable reply."""


@dataclass
class AssistantIntent:
    """Structured reply: what to do plus what to say."""

    action: str
    response: str
    suggestions: list[str] = field(default_factory=list)
    event_title: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[int] = None
    original_event_id: Optional[str] = None
    conflicts: list = field(default_factory=list)
    needs_confirmation: bool = False

    @property
    def is_calendar_mutation(self) -> bool:
        """A create/move/delete that can be executed without asking first."""
        return self.action in CALENDAR_MUTATIONS and not self.needs_confirmation

    def calendar_intent(self) -> CalendarIntent:
        return CalendarIntent(
            action=self.action,
            response=self.response,
            event_title=self.event_title,
            start_time=self.start_time,
            end_time=self.end_time,
            duration=self.duration,
            original_event_id=self.original_event_id,
            conflicts=list(self.conflicts),
            needs_confirmation=self.needs_confirmation,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "AssistantIntent":
        response = data.get("response")
        if not isinstance(response, str) or not response.strip():
            raise AssistantError("reply has no 'response' text")
        duration = data.get("duration")
        return cls(
            action=str(data.get("action") or "advice"),
            response=response.strip(),
            suggestions=[str(s) for s in data.get("suggestions") or []],
            event_title=data.get("eventTitle"),
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            duration=int(duration) if isinstance(duration, (int, float)) else None,
            original_event_id=data.get("originalEventId"),
            conflicts=list(data.get("conflicts") or []),
            needs_confirmation=bool(data.get("needsConfirmation", False)),
        )

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "response": self.response,
            "suggestions": list(self.suggestions),
            "eventTitle": self.event_title,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "originalEventId": self.original_event_id,
            "conflicts": list(self.conflicts),
            "needsConfirmation": self.needs_confirmation,
        }


class AssistantClient:
    """Turns an utterance plus recent history into an AssistantIntent via Claude.

    process_message() raises AssistantError on any failure; callers decide
    what to say instead.
    """

    def __init__(self, calendar: Optional[CalendarBackend] = None, history_turns: int = ASSISTANT_HISTORY_TURNS):
        self._client = None
        self._calendar = calendar
        self._history_turns = history_turns

    def start(self) -> bool:
        """Initialize the Anthropic client."""
        if not ANTHROPIC_API_KEY:
            logger.error("ANTHROPIC_API_KEY not set. Add it to your .env file.")
            return False
        try:
            import anthropic

            self._client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, max_retries=0)
            logger.info("Assistant ready (%s)", ASSISTANT_MODEL)
            return True
        except Exception as e:
            logger.error("Failed to create Anthropic client: %s", e)
            return False

    def process_message(self, text: str, history: Sequence = ()) -> AssistantIntent:
        """Ask the model for a structured reply to ``text``.

        ``history`` holds prior ConversationMessage objects, oldest first.
        """
        if self._client is None:
            raise AssistantError("assistant not started")

        response = self._call_with_retry(
            model=ASSISTANT_MODEL,
            max_tokens=ASSISTANT_MAX_TOKENS,
            system=self._system_prompt(),
            messages=self._build_messages(text, history),
        )
        if response is None:
            raise AssistantError("API call failed")

        raw = self._safe_response_text(response)
        data = self._parse_json(raw)
        if not isinstance(data, dict):
            raise AssistantError(f"malformed reply: {raw!r:.100}")
        intent = AssistantIntent.from_dict(data)
        logger.info("Assistant: action=%s (%d chars)", intent.action, len(intent.response))
        return intent

    def _system_prompt(self) -> str:
        tz = ZoneInfo(ASSISTANT_TIMEZONE)
        now = datetime.now(tz).strftime("%A %Y-%m-%d %H:%M")
        events = "NOT CONNECTED. Do not invent calendar events."
        if self._calendar is not None:
            try:
                listed = self._calendar.list_events()[-MAX_EVENTS_IN_PROMPT:]
                events = "\n".join(
                    f"- [{e.get('id')}] {e.get('summary')} ({e.get('start')} to {e.get('end')})" for e in listed
                ) or "No events."
            except Exception as e:
                logger.warning("Could not read calendar for prompt: %s", e)
        return SYSTEM_PROMPT_ASSISTANT.format(now=now, timezone=ASSISTANT_TIMEZONE, events=events)

    def _build_messages(self, text: str, history: Sequence) -> list[dict]:
        """Alternating user/assistant turns ending with the new utterance."""
        messages: list[dict] = []
        recent = list(history)[-self._history_turns :] if self._history_turns > 0 else []
        for msg in recent + [None]:
            role = "user" if msg is None or msg.role == "user" else "assistant"
            content = text if msg is None else msg.text
            if not content:
                continue
            if not messages and role == "assistant":
                continue  # Anthropic requires the first turn to be the user's
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += "\n" + content
            else:
                messages.append({"role": role, "content": content})
        return messages

    def _call_with_retry(self, **kwargs):
        """Call Claude API with exponential backoff on failure."""
        for attempt in range(MAX_RETRIES):
            try:
                return self._client.messages.create(**kwargs)
            except Exception as e:
                wait = BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "API call failed (attempt %d/%d): %s. Retrying in %.1fs", attempt + 1, MAX_RETRIES, e, wait
                )
                time.sleep(wait)

        logger.error("API call failed after %d attempts", MAX_RETRIES)
        return None

    @staticmethod
    def _safe_response_text(response) -> Optional[str]:
        """Safely extract text from a Claude response."""
        try:
            for block in response.content or []:
                if getattr(block, "type", None) == "text" and block.text:
                    return block.text
            logger.warning(
                "Claude response has no text content (stop_reason=%s)",
                getattr(response, "stop_reason", "N/A"),
            )
            return None
        except Exception as e:
            logger.error("Failed to extract text from Claude response: %s", e)
            return None

    @staticmethod
    def _parse_json(text: Optional[str]) -> Optional[dict]:
        """Parse JSON from Claude response, handling markdown code fences."""
        if not text:
            return None
        text = text.strip()
        if text.startswith("```"):
            lines = text.split("\n", 1)
            if len(lines) > 1:
                text = lines[1]
            text = text.rsplit("```", 1)[0].strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Failed to parse JSON from response: %.100s...", text)
            return None
