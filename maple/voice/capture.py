"""Speech capture for one listening turn.

Wraps single-shot recognition sessions so the conversation loop sees one
continuous listening experience: partial transcripts are forwarded, final
transcripts are gated by confidence and by the response cooldown, and
sessions the recognizer ends on its own are restarted while the owner still
wants to listen.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import CONFIDENCE_THRESHOLD, RESPONSE_COOLDOWN
from perception.microphone import MicrophoneSession
from perception.recognition import ERROR_AUDIO_CAPTURE, RecognitionResult, RecognitionSession

logger = logging.getLogger("maple.capture")

REJECT_LOW_CONFIDENCE = "low-confidence"
REJECT_COOLDOWN = "cooldown"


@dataclass
class Utterance:
    text: str
    confidence: float


class SpeechCapture:
    def __init__(
        self,
        session_factory: Callable[[], RecognitionSession],
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        cooldown: float = RESPONSE_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.confidence_threshold = confidence_threshold
        self.cooldown = cooldown
        self._clock = clock

        # Callbacks (wired by the conversation loop)
        self.on_partial: Optional[Callable[[str], None]] = None
        self.on_final: Optional[Callable[[Utterance], None]] = None
        self.on_rejected: Optional[Callable[[Utterance, str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.should_continue: Callable[[], bool] = lambda: True

        self._lock = threading.Lock()
        self._active = False
        self._generation = 0
        self._session: Optional[RecognitionSession] = None
        self._mic_session: Optional[MicrophoneSession] = None
        self._last_response_time: Optional[float] = None
        self.sessions_started = 0

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, mic_session: MicrophoneSession) -> None:
        """Start capturing from ``mic_session``. Raises if the recognizer will not start."""
        self.stop()
        with self._lock:
            self._mic_session = mic_session
            self._active = True
            try:
                self._start_session()
            except Exception:
                self._active = False
                self._mic_session = None
                raise

    def restart(self) -> None:
        """Replace the current recognition session with a fresh one."""
        with self._lock:
            if not self._active:
                return
            stale, self._session = self._session, None
            self._generation += 1
        if stale is not None:
            stale.stop()
        self._start_or_fail()

    def stop(self) -> None:
        """Stop capturing. Idempotent."""
        with self._lock:
            self._active = False
            self._generation += 1
            stale, self._session = self._session, None
            self._mic_session = None
        if stale is not None:
            stale.stop()

    def mark_response(self) -> None:
        """Start the cooldown window from now."""
        self._last_response_time = self._clock()

    def cooldown_remaining(self) -> float:
        if self._last_response_time is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._last_response_time))

    def check(self, utterance: Utterance) -> Optional[str]:
        """Return the rejection reason for a final utterance, or None to accept it."""
        if not utterance.text or utterance.confidence < self.confidence_threshold:
            return REJECT_LOW_CONFIDENCE
        if self.cooldown_remaining() > 0:
            return REJECT_COOLDOWN
        return None

    # ── Session management ───────────────────────────────────────────

    def _start_session(self) -> None:
        """Create and start a session. Call with the lock held."""
        self._generation += 1
        generation = self._generation
        session = self._session_factory()
        session.continuous = False
        session.interim_results = True
        session.on_result = lambda result: self._on_result(generation, result)
        session.on_error = lambda code: self._on_error(generation, code)
        session.on_end = lambda: self._on_end(generation)
        session.start(self._mic_session)
        self._session = session
        self.sessions_started += 1

    def _start_or_fail(self) -> None:
        with self._lock:
            if not self._active or self._session is not None:
                return
            try:
                self._start_session()
                return
            except Exception as e:
                logger.error("Failed to restart recognition: %s", e)
                self._active = False
        self._emit(self.on_error, ERROR_AUDIO_CAPTURE)

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return self._active and generation == self._generation

    def _on_result(self, generation: int, result: RecognitionResult) -> None:
        if not self._is_current(generation):
            return
        if not result.is_final:
            self._emit(self.on_partial, result.transcript)
            return
        utterance = Utterance(text=result.transcript.strip(), confidence=result.confidence)
        reason = self.check(utterance)
        if reason is None:
            self._emit(self.on_final, utterance)
            return
        if reason == REJECT_LOW_CONFIDENCE:
            logger.info("Low confidence, ignoring: '%s' (%.2f)", utterance.text, utterance.confidence)
        else:
            logger.info("Cooldown active (%.1fs left), ignoring: '%s'", self.cooldown_remaining(), utterance.text)
        if self.on_rejected is not None:
            try:
                self.on_rejected(utterance, reason)
            except Exception as e:
                logger.error("on_rejected callback failed: %s", e, exc_info=True)

    def _on_error(self, generation: int, code: str) -> None:
        if not self._is_current(generation):
            return
        logger.info("Recognition error: %s", code)
        self._emit(self.on_error, code)

    def _on_end(self, generation: int) -> None:
        with self._lock:
            if not self._active or generation != self._generation:
                return
            self._session = None
        if not self.should_continue():
            return
        logger.debug("Recognizer stopped on its own while listening, restarting")
        self._start_or_fail()

    @staticmethod
    def _emit(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("Capture callback failed: %s", e, exc_info=True)
