"""Thread-safe shared state between the voice loop and whatever renders it."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from config import DASHBOARD_MAX_MESSAGES, VOICE_OUTPUT_ENABLED, WAKE_WORD_ENABLED
from voice.events import ConversationState

logger = logging.getLogger("maple.state")

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass
class ConversationMessage:
    role: str
    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)
    intent: Optional[dict] = None  # structured reply from the assistant
    calendar_intent: Optional[dict] = None  # set when a calendar change was executed

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "intent": self.intent,
            "calendarIntent": self.calendar_intent,
        }


class MapleState:
    """Shared state that the voice loop writes and renderers observe.

    All writes are thread-safe (protected by a lock). A version counter
    increments on every change, and subscribers are called after each change
    so renderers never have to poll. The message log is append-only for the
    voice loop; both the voice loop and the text chat write to it.
    """

    def __init__(self, wake_word_enabled: bool = WAKE_WORD_ENABLED, voice_enabled: bool = VOICE_OUTPUT_ENABLED):
        self._lock = threading.Lock()
        self._version = 0
        self._subscribers: list[Callable[["MapleState"], None]] = []

        self.voice_mode = ConversationState.IDLE
        self.live_transcript = ""
        self.messages: list[ConversationMessage] = []

        # Settings
        self.wake_word_enabled = wake_word_enabled
        self.voice_enabled = voice_enabled
        self.mic_enabled = True

    # -- Subscriptions --

    def subscribe(self, callback: Callable[["MapleState"], None]) -> Callable[[], None]:
        """Call ``callback(state)`` after every change. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(self)
            except Exception as e:
                logger.error("State subscriber failed: %s", e, exc_info=True)

    # -- Thread-safe setters --

    def set_voice_mode(self, mode: ConversationState) -> None:
        with self._lock:
            if self.voice_mode == mode:
                return
            self.voice_mode = mode
            self._version += 1
        self._notify()

    def set_live_transcript(self, text: str) -> None:
        with self._lock:
            if self.live_transcript == text:
                return
            self.live_transcript = text
            self._version += 1
        self._notify()

    def set_wake_word_enabled(self, enabled: bool) -> None:
        with self._lock:
            if self.wake_word_enabled == enabled:
                return
            self.wake_word_enabled = enabled
            self._version += 1
        self._notify()

    def set_voice_enabled(self, enabled: bool) -> None:
        with self._lock:
            if self.voice_enabled == enabled:
                return
            self.voice_enabled = enabled
            self._version += 1
        self._notify()

    def set_mic_enabled(self, enabled: bool) -> None:
        with self._lock:
            if self.mic_enabled == enabled:
                return
            self.mic_enabled = enabled
            self._version += 1
        self._notify()

    def add_message(
        self,
        role: str,
        text: str,
        intent: Optional[dict] = None,
        calendar_intent: Optional[dict] = None,
    ) -> ConversationMessage:
        """Append a message to the shared log and return it."""
        message = ConversationMessage(role=role, text=text, intent=intent, calendar_intent=calendar_intent)
        with self._lock:
            self.messages.append(message)
            self._version += 1
        self._notify()
        return message

    def clear_messages(self) -> None:
        """Clear the log (chat panel action; the voice loop never deletes)."""
        with self._lock:
            self.messages = []
            self._version += 1
        self._notify()

    def get_messages(self) -> list[ConversationMessage]:
        with self._lock:
            return list(self.messages)

    # -- Snapshot for WebSocket --

    @property
    def version(self) -> int:
        """Monotonic counter incremented on state changes. Used by WebSocket."""
        return self._version

    def to_dict(self) -> dict:
        """Snapshot state as a JSON-serializable dict for WebSocket push."""
        with self._lock:
            return {
                "voiceMode": self.voice_mode.value,
                "liveTranscript": self.live_transcript,
                "messages": [m.to_dict() for m in self.messages[-DASHBOARD_MAX_MESSAGES:]],
                "wakeWordEnabled": self.wake_word_enabled,
                "voiceEnabled": self.voice_enabled,
                "micEnabled": self.mic_enabled,
                "version": self._version,
            }
