"""Conversation states and the events that drive transitions between them.

Recognition callbacks, timers, the assistant call and speech output all run
on their own threads. None of them touch the conversation state directly:
each one turns its outcome into one of these events and posts it to the
state machine. Events from timers and async work carry the token of the
turn that scheduled them so late arrivals from an old turn can be dropped.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConversationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


@dataclass
class WakeDetected:
    pass


@dataclass
class ForceStart:
    pass


@dataclass
class PartialTranscript:
    text: str


@dataclass
class FinalTranscript:
    text: str
    confidence: float


@dataclass
class TranscriptRejected:
    text: str
    confidence: float
    reason: str


@dataclass
class RecognitionFailed:
    code: str


@dataclass
class SilenceTimeout:
    token: int


@dataclass
class ReplyReady:
    token: int
    intent: object  # brain.assistant.AssistantIntent


@dataclass
class ReplyFailed:
    token: int
    error: Optional[BaseException] = None


@dataclass
class SpeechFinished:
    token: int


@dataclass
class EchoDelayElapsed:
    token: int


@dataclass
class Stop:
    reason: str = "user"


@dataclass
class WakeWordToggled:
    enabled: bool


@dataclass
class VoiceOutputToggled:
    enabled: bool
