"""Global test configuration: mock hardware modules before any imports.

This file runs before pytest collects tests. We patch sys.modules so that
imports of hardware-dependent libraries (sounddevice, pyttsx3, ...) return
MagicMock objects instead of failing on headless CI machines. It also holds
the fakes the voice loop tests drive by hand: recognition sessions, timers,
an executor that runs inline and a speech output that finishes on demand.
"""

import sys
from dataclasses import dataclass, field
from typing import Optional
from unittest.mock import MagicMock

import pytest

# ---------------------------------------------------------------------------
# Mock hardware modules BEFORE any test file imports project code.
# Plain MagicMock (no spec) so attributes like sd.InputStream resolve.
# ---------------------------------------------------------------------------

_HARDWARE_MODULES = [
    # Audio I/O
    "sounddevice",
    # Speech-to-text (local)
    "faster_whisper",
    # TTS fallback
    "pyttsx3",
]

for _mod_name in _HARDWARE_MODULES:
    if _mod_name not in sys.modules:
        mock = MagicMock()
        mock.__name__ = _mod_name
        mock.__path__ = []  # needed for sub-package mocks
        sys.modules[_mod_name] = mock

from brain.assistant import AssistantIntent  # noqa: E402
from dashboard.state import MapleState  # noqa: E402
from perception.microphone import Microphone  # noqa: E402
from perception.recognition import RecognitionResult  # noqa: E402
from perception.visualizer import VisualizationFeed  # noqa: E402
from perception.wake_word import WakePhraseDetector  # noqa: E402
from voice.capture import SpeechCapture  # noqa: E402
from voice.mode import VoiceMode  # noqa: E402

# ---------------------------------------------------------------------------
# Mock Anthropic response objects
# ---------------------------------------------------------------------------
# Dataclass-based (not MagicMock) because source code does
#   getattr(block, "type", None) == "text"
# and MagicMock auto-creates attributes.


@dataclass
class MockTextBlock:
    type: str = "text"
    text: str = ""


def make_text_response(text: str):
    """Create a mock Claude response with a single text block."""
    response = MagicMock()
    response.content = [MockTextBlock(type="text", text=text)]
    response.stop_reason = "end_turn"
    return response


# ---------------------------------------------------------------------------
# Recognition sessions
# ---------------------------------------------------------------------------


class FakeRecognitionSession:
    """Stands in for RecognitionSession; the test plays the recognizer."""

    def __init__(self, fail_start: bool = False):
        self.continuous = False
        self.interim_results = True
        self.on_result = None
        self.on_error = None
        self.on_end = None
        self.mic_session = None
        self.started = False
        self.stopped = False
        self._fail_start = fail_start

    @property
    def is_running(self) -> bool:
        return self.started and not self.stopped

    def start(self, mic_session) -> None:
        if self._fail_start:
            raise RuntimeError("recognizer unavailable")
        self.mic_session = mic_session
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    # Recognizer side

    def emit(self, transcript: str, confidence: float = 0.9, is_final: bool = True) -> None:
        self.on_result(RecognitionResult(transcript, confidence, is_final))

    def emit_error(self, code: str) -> None:
        self.on_error(code)

    def end(self) -> None:
        """The platform ends the session on its own."""
        self.stopped = True
        self.on_end()


class SessionFactory:
    def __init__(self):
        self.sessions: list[FakeRecognitionSession] = []
        self.fail_next = False

    def __call__(self) -> FakeRecognitionSession:
        session = FakeRecognitionSession(fail_start=self.fail_next)
        self.sessions.append(session)
        return session

    @property
    def last(self) -> FakeRecognitionSession:
        return self.sessions[-1]

    def running(self) -> list[FakeRecognitionSession]:
        return [s for s in self.sessions if s.is_running]


# ---------------------------------------------------------------------------
# Timers, executor, clock
# ---------------------------------------------------------------------------


class FakeTimer:
    """threading.Timer look-alike that only fires when the test says so."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return self.started and not self.cancelled and not self.fired

    def fire(self) -> None:
        if not self.pending:
            return
        self.fired = True
        self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None) -> FakeTimer:
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def pending(self, interval: Optional[float] = None) -> list[FakeTimer]:
        return [t for t in self.timers if t.pending and (interval is None or t.interval == interval)]

    def fire(self, interval: float) -> int:
        """Fire every pending timer with this interval. Returns how many fired."""
        due = self.pending(interval)
        for timer in due:
            timer.fire()
        return len(due)


class ImmediateExecutor:
    """Runs submitted work inline on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fn(*args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        pass


class DeferredExecutor:
    """Holds submitted work until run_all(), so a turn can sit in processing."""

    def __init__(self):
        self.calls = []

    def submit(self, fn, *args, **kwargs):
        self.calls.append((fn, args, kwargs))

    def run_all(self) -> None:
        calls, self.calls = self.calls, []
        for fn, args, kwargs in calls:
            fn(*args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        pass


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Speech output
# ---------------------------------------------------------------------------


class FakeSpeechOutput:
    def __init__(self):
        self.spoken: list[str] = []
        self.cancel_count = 0
        self.stopped = False
        self._on_end = None

    @property
    def is_speaking(self) -> bool:
        return self._on_end is not None

    def speak(self, text, on_end=None) -> int:
        self.spoken.append(text)
        self._on_end = on_end
        return len(self.spoken)

    def cancel(self) -> None:
        self.cancel_count += 1
        self._on_end = None

    def finish(self) -> None:
        """The current utterance plays to the end."""
        callback, self._on_end = self._on_end, None
        if callback is not None:
            callback()

    def stop(self) -> None:
        self.stopped = True
        self.cancel()


# ---------------------------------------------------------------------------
# Voice loop rig
# ---------------------------------------------------------------------------

SILENCE = 15.0
ECHO = 0.8
WAKE_RESTART = 0.3


@dataclass
class VoiceRig:
    mode: VoiceMode
    state: MapleState
    microphone: Microphone
    wake: WakePhraseDetector
    wake_sessions: SessionFactory
    capture: SpeechCapture
    capture_sessions: SessionFactory
    speech: FakeSpeechOutput
    visualizer: VisualizationFeed
    assistant: MagicMock
    timers: TimerFactory
    clock: FakeClock
    executor: object
    modes: list = field(default_factory=list)

    def wake_up(self) -> None:
        self.wake_sessions.last.emit("hey maple", is_final=False)

    def say(self, text: str, confidence: float = 0.9) -> None:
        self.capture_sessions.last.emit(text, confidence)

    def finish_speaking(self) -> None:
        self.speech.finish()
        self.timers.fire(ECHO)

    def exclusive(self) -> bool:
        """Wake detector and capture never listen at the same time."""
        return not (self.wake.is_running and self.capture.is_active) and self.microphone.open_sessions <= 1


def plain_reply(text: str = "Sure thing.") -> AssistantIntent:
    return AssistantIntent(action="advice", response=text)


@pytest.fixture
def make_rig():
    """Build a VoiceMode over real components with fake recognizers and timers."""
    rigs = []

    def _make(
        wake_word_enabled: bool = True,
        voice_enabled: bool = True,
        executor=None,
        calendar=None,
        idle_after_failed_turn: bool = False,
        initialize: bool = True,
    ) -> VoiceRig:
        state = MapleState(wake_word_enabled=wake_word_enabled, voice_enabled=voice_enabled)
        microphone = Microphone(device=None, sample_rate=16000, blocksize=1280)
        timers = TimerFactory()
        clock = FakeClock()
        wake_sessions = SessionFactory()
        capture_sessions = SessionFactory()
        wake = WakePhraseDetector(
            microphone,
            session_factory=wake_sessions,
            phrases=["hey maple", "hi maple"],
            wake_word="maple",
            restart_delay=WAKE_RESTART,
            timer_factory=timers,
        )
        capture = SpeechCapture(session_factory=capture_sessions, confidence_threshold=0.6, cooldown=2.0, clock=clock)
        speech = FakeSpeechOutput()
        visualizer = VisualizationFeed()
        assistant = MagicMock()
        assistant.process_message.return_value = plain_reply()
        executor = executor or ImmediateExecutor()

        mode = VoiceMode(
            state=state,
            microphone=microphone,
            wake_detector=wake,
            capture=capture,
            speech_output=speech,
            visualizer=visualizer,
            assistant=assistant,
            calendar=calendar,
            silence_timeout=SILENCE,
            echo_delay=ECHO,
            idle_after_failed_turn=idle_after_failed_turn,
            timer_factory=timers,
            executor=executor,
            availability_check=lambda: True,
        )
        rig = VoiceRig(
            mode=mode,
            state=state,
            microphone=microphone,
            wake=wake,
            wake_sessions=wake_sessions,
            capture=capture,
            capture_sessions=capture_sessions,
            speech=speech,
            visualizer=visualizer,
            assistant=assistant,
            timers=timers,
            clock=clock,
            executor=executor,
        )
        state.subscribe(lambda s: rig.modes.append(s.voice_mode))
        if initialize:
            mode.initialize()
        rigs.append(rig)
        return rig

    yield _make

    for rig in rigs:
        rig.mode.destroy()
