"""Wake phrase detection over a continuous recognition session.

The detector owns the microphone while the voice loop is idle. It listens to
partial and final transcripts and fires once when one of them matches the
wake phrase set, then stops and releases the mic until it is resumed.
Sessions that the recognizer ends on its own (length limits) are restarted
after a short delay without the caller noticing.
"""

import logging
import re
import threading
from typing import Callable, Optional, Sequence

from config import WAKE_MAX_BARE_WORDS, WAKE_PHRASES, WAKE_RESTART_DELAY, WAKE_WORD
from perception.microphone import Microphone, MicrophoneBusyError, MicrophoneUnavailableError
from perception.recognition import TRANSIENT_ERRORS, RecognitionResult, RecognitionSession

logger = logging.getLogger("maple.wake")

MIC_OWNER = "wake"


def normalize_transcript(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    return " ".join(re.sub(r"[^a-z0-9' ]+", " ", text.lower()).split())


def matches_wake_phrase(
    transcript: str,
    phrases: Sequence[str] = WAKE_PHRASES,
    wake_word: str = WAKE_WORD,
    max_bare_words: int = WAKE_MAX_BARE_WORDS,
) -> bool:
    """Return True if the transcript contains a wake phrase.

    Two rules: a full wake phrase appears anywhere in the transcript (on word
    boundaries), or the transcript is at most ``max_bare_words`` words long
    and contains the bare wake word. The length cap keeps the name from
    triggering inside longer unrelated sentences.
    """
    text = normalize_transcript(transcript)
    if not text:
        return False
    padded = f" {text} "
    for phrase in phrases:
        normalized = normalize_transcript(phrase)
        if normalized and f" {normalized} " in padded:
            return True
    words = text.split()
    return len(words) <= max_bare_words and normalize_transcript(wake_word) in words


class WakePhraseDetector:
    """Low-priority continuous listener for the wake phrase.

    pause() and resume() are idempotent. After a detection the detector stays
    stopped until resume() is called.
    """

    def __init__(
        self,
        microphone: Microphone,
        session_factory: Callable[[], RecognitionSession],
        phrases: Sequence[str] = WAKE_PHRASES,
        wake_word: str = WAKE_WORD,
        restart_delay: float = WAKE_RESTART_DELAY,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self._microphone = microphone
        self._session_factory = session_factory
        self._phrases = list(phrases)
        self._wake_word = wake_word
        self._restart_delay = restart_delay
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._callback: Optional[Callable[[], None]] = None
        self._should_run = False
        self._destroyed = False
        self._generation = 0
        self._session: Optional[RecognitionSession] = None
        self._mic_session = None
        self._restart_timer = None
        self.detections = 0

    def on_wake_word(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    @property
    def is_running(self) -> bool:
        """True while the detector holds the mic and wants to listen."""
        with self._lock:
            return self._should_run and self._mic_session is not None

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def start(self) -> bool:
        return self.resume()

    def resume(self) -> bool:
        """Acquire the mic and start listening. No-op if already running."""
        with self._lock:
            if self._destroyed:
                return False
            if self._should_run:
                return True
            try:
                self._mic_session = self._microphone.acquire(MIC_OWNER)
            except (MicrophoneBusyError, MicrophoneUnavailableError) as e:
                logger.warning("Wake word detection could not start: %s", e)
                return False
            self._should_run = True
            if not self._start_session():
                self._should_run = False
                stale = self._detach()
            else:
                logger.info("Listening for wake phrase (%s)", ", ".join(self._phrases[:3]))
                return True
        self._shutdown(*stale)
        return False

    def pause(self) -> None:
        """Stop listening and release the mic. No-op if already paused."""
        with self._lock:
            if not self._should_run and self._mic_session is None:
                return
            self._should_run = False
            stale = self._detach()
        self._shutdown(*stale)
        logger.info("Wake word detection paused")

    def destroy(self) -> None:
        """Pause permanently. start()/resume() do nothing afterwards."""
        self.pause()
        self._destroyed = True
        logger.info("Wake word detector destroyed")

    # ── Session management (call with lock held) ─────────────────────

    def _start_session(self) -> bool:
        self._generation += 1
        generation = self._generation
        session = self._session_factory()
        session.on_result = lambda result: self._on_result(generation, result)
        session.on_error = lambda code: self._on_error(generation, code)
        session.on_end = lambda: self._on_end(generation)
        try:
            session.start(self._mic_session)
        except Exception as e:
            logger.error("Wake word session failed to start: %s", e)
            return False
        self._session = session
        return True

    def _detach(self):
        """Drop references to the live session; the caller stops them outside the lock."""
        self._generation += 1
        timer, self._restart_timer = self._restart_timer, None
        session, self._session = self._session, None
        mic_session, self._mic_session = self._mic_session, None
        return timer, session, mic_session

    def _shutdown(self, timer, session, mic_session) -> None:
        if timer is not None:
            timer.cancel()
        if session is not None:
            session.stop()
        self._microphone.release(mic_session)

    # ── Session callbacks (recognition worker thread) ────────────────

    def _on_result(self, generation: int, result: RecognitionResult) -> None:
        with self._lock:
            if generation != self._generation or not self._should_run:
                return
            if not matches_wake_phrase(result.transcript, self._phrases, self._wake_word):
                return
            logger.info("Wake phrase detected: '%s'", result.transcript)
            self._should_run = False
            self.detections += 1
            stale = self._detach()
            callback = self._callback
        self._shutdown(*stale)
        if callback is not None:
            try:
                callback()
            except Exception as e:
                logger.error("Wake word callback failed: %s", e, exc_info=True)

    def _on_error(self, generation: int, code: str) -> None:
        if code in TRANSIENT_ERRORS:
            return
        with self._lock:
            if generation != self._generation:
                return
            logger.warning("Wake word session error '%s': detection stopped until resumed", code)
            self._should_run = False
            stale = self._detach()
        self._shutdown(*stale)

    def _on_end(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._should_run:
                return
            logger.debug("Wake word session ended by recognizer, restarting in %.1fs", self._restart_delay)
            timer = self._timer_factory(self._restart_delay, self._restart, args=(generation,))
            timer.daemon = True
            self._restart_timer = timer
            timer.start()

    def _restart(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._should_run:
                return
            self._restart_timer = None
            if self._start_session():
                return
            self._should_run = False
            stale = self._detach()
        self._shutdown(*stale)
