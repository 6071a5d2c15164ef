"""Speech recognition sessions on top of a microphone session.

A ``RecognitionSession`` behaves like a browser recognition object: it is
started once, emits partial and final results with confidence scores, reports
errors with short string codes and fires ``on_end`` exactly once when it stops,
whether the caller stopped it or the session ended on its own (single-shot
session got its final result, nobody spoke, continuous session hit its length
limit). Speech is segmented by RMS energy and each segment is handed to an STT
provider, which does the actual recognition.

Timing inside a session is measured in audio time (samples consumed), not wall
clock, so a session is deterministic for a given stream of blocks.
"""

import logging
import threading
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Callable, Optional

import numpy as np

from config import (
    RECOGNITION_END_SILENCE,
    RECOGNITION_ENERGY_THRESHOLD,
    RECOGNITION_INTERIM_INTERVAL,
    RECOGNITION_MAX_SEGMENT,
    RECOGNITION_MAX_SESSION_SECONDS,
    RECOGNITION_MIN_SEGMENT,
    RECOGNITION_NO_SPEECH_TIMEOUT,
    SAMPLE_RATE,
)
from perception.microphone import MicrophoneSession, is_input_available
from perception.stt import STTProvider

logger = logging.getLogger("maple.recognition")

# Error codes (same vocabulary as the Web Speech API)
ERROR_NO_SPEECH = "no-speech"
ERROR_NETWORK = "network"
ERROR_AUDIO_CAPTURE = "audio-capture"
ERROR_NOT_ALLOWED = "not-allowed"

TRANSIENT_ERRORS = {ERROR_NO_SPEECH}


@dataclass
class RecognitionResult:
    transcript: str
    confidence: float
    is_final: bool


class RecognitionSession:
    """One recognition run: start() once, then results until on_end."""

    def __init__(
        self,
        stt_provider: STTProvider,
        continuous: bool = False,
        interim_results: bool = True,
        sample_rate: int = SAMPLE_RATE,
        energy_threshold: float = RECOGNITION_ENERGY_THRESHOLD,
        end_silence: float = RECOGNITION_END_SILENCE,
        max_segment: float = RECOGNITION_MAX_SEGMENT,
        min_segment: float = RECOGNITION_MIN_SEGMENT,
        interim_interval: float = RECOGNITION_INTERIM_INTERVAL,
        no_speech_timeout: float = RECOGNITION_NO_SPEECH_TIMEOUT,
        max_session_seconds: float = RECOGNITION_MAX_SESSION_SECONDS,
        name: str = "recognition",
    ):
        self._stt = stt_provider
        self.continuous = continuous
        self.interim_results = interim_results
        self.name = name
        self._sample_rate = sample_rate
        self._energy_threshold = energy_threshold
        self._end_silence = end_silence
        self._max_segment = max_segment
        self._min_segment = min_segment
        self._interim_interval = interim_interval
        self._no_speech_timeout = no_speech_timeout
        self._max_session_seconds = max_session_seconds

        # Callbacks (assigned by the owner before start())
        self.on_result: Optional[Callable[[RecognitionResult], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_end: Optional[Callable[[], None]] = None

        self._queue: Queue = Queue()
        self._thread: Optional[threading.Thread] = None
        self._mic_session: Optional[MicrophoneSession] = None
        self._running = False
        self._started = False
        self._ended = False
        self._end_lock = threading.Lock()

        # Segmentation state (audio time, seconds)
        self._elapsed = 0.0
        self._last_voice_time = 0.0
        self._in_speech = False
        self._segment: list[np.ndarray] = []
        self._segment_duration = 0.0
        self._trailing_silence = 0.0
        self._last_interim_time = 0.0
        self._final_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, mic_session: MicrophoneSession) -> None:
        """Attach to a live mic session and start recognizing.

        A session can only be started once; owners create a new one to restart.
        """
        if self._started:
            raise RuntimeError(f"{self.name} session already started")
        self._started = True
        self._running = True
        self._mic_session = mic_session
        mic_session.add_sink(self._enqueue)
        self._thread = threading.Thread(target=self._worker, daemon=True, name=f"{self.name}-session")
        self._thread.start()
        logger.debug("%s session started (continuous=%s)", self.name, self.continuous)

    def stop(self) -> None:
        """Stop recognizing. Idempotent, safe to call from a result callback."""
        if not self._running:
            return
        self._running = False
        self._detach()
        self._queue.put(None)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2)

    # ── Worker ───────────────────────────────────────────────────────

    def _enqueue(self, block: np.ndarray) -> None:
        if self._running:
            self._queue.put(block)

    def _detach(self) -> None:
        if self._mic_session is not None:
            self._mic_session.remove_sink(self._enqueue)

    def _worker(self) -> None:
        try:
            while self._running:
                try:
                    block = self._queue.get(timeout=0.25)
                except Empty:
                    if self._mic_session is not None and not self._mic_session.is_open:
                        logger.info("%s: microphone closed under session", self.name)
                        self._emit_error(ERROR_AUDIO_CAPTURE)
                        break
                    continue
                if block is None:
                    break
                if not self._process_block(block):
                    break
        except Exception as e:
            logger.error("%s session crashed: %s", self.name, e, exc_info=True)
            self._emit_error(ERROR_AUDIO_CAPTURE)
        finally:
            self._running = False
            self._detach()
            self._emit_end()

    def _process_block(self, block: np.ndarray) -> bool:
        """Advance segmentation by one block. Returns False when the session ends."""
        duration = len(block) / self._sample_rate
        self._elapsed += duration
        voiced = float(np.sqrt(np.mean(block**2))) >= self._energy_threshold if len(block) else False
        if voiced:
            self._last_voice_time = self._elapsed

        if not self._in_speech:
            if voiced:
                self._in_speech = True
                self._segment = [block]
                self._segment_duration = duration
                self._trailing_silence = 0.0
                self._last_interim_time = self._elapsed
            elif (
                not self.continuous
                and self._final_count == 0
                and self._elapsed - self._last_voice_time >= self._no_speech_timeout
            ):
                logger.info("%s: no speech for %.1fs", self.name, self._no_speech_timeout)
                self._emit_error(ERROR_NO_SPEECH)
                return False
        else:
            self._segment.append(block)
            self._segment_duration += duration
            self._trailing_silence = 0.0 if voiced else self._trailing_silence + duration

            if self._trailing_silence >= self._end_silence or self._segment_duration >= self._max_segment:
                if not self._finalize_segment():
                    return False
                if not self.continuous and self._final_count > 0:
                    return False
            elif self.interim_results and self._elapsed - self._last_interim_time >= self._interim_interval:
                self._last_interim_time = self._elapsed
                if not self._emit_interim():
                    return False

        if self.continuous and self._elapsed >= self._max_session_seconds:
            logger.debug("%s: session length limit reached", self.name)
            return False
        return True

    def _finalize_segment(self) -> bool:
        audio = np.concatenate(self._segment)
        speech_duration = self._segment_duration - self._trailing_silence
        self._in_speech = False
        self._segment = []
        self._segment_duration = 0.0
        self._trailing_silence = 0.0

        if speech_duration < self._min_segment:
            logger.debug("%s: segment too short (%.2fs), ignoring", self.name, speech_duration)
            return True

        result = self._stt.transcribe(audio, self._sample_rate)
        if result is None:
            self._emit_error(ERROR_NETWORK)
            return False
        if not result.text:
            return True
        self._final_count += 1
        self._emit_result(RecognitionResult(result.text.strip(), result.confidence, True))
        return True

    def _emit_interim(self) -> bool:
        result = self._stt.transcribe(np.concatenate(self._segment), self._sample_rate)
        if result is None:
            self._emit_error(ERROR_NETWORK)
            return False
        if result.text:
            self._emit_result(RecognitionResult(result.text.strip(), result.confidence, False))
        return True

    # ── Callbacks ────────────────────────────────────────────────────

    def _emit_result(self, result: RecognitionResult) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception as e:
            logger.error("%s on_result callback failed: %s", self.name, e, exc_info=True)

    def _emit_error(self, code: str) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(code)
        except Exception as e:
            logger.error("%s on_error callback failed: %s", self.name, e, exc_info=True)

    def _emit_end(self) -> None:
        with self._end_lock:
            if self._ended:
                return
            self._ended = True
        if self.on_end is None:
            return
        try:
            self.on_end()
        except Exception as e:
            logger.error("%s on_end callback failed: %s", self.name, e, exc_info=True)


def recognition_unavailable_reason() -> Optional[str]:
    """Why recognition cannot run on this host, or None when it can."""
    if not is_input_available():
        return "no audio input device found"
    from config import GROQ_API_KEY, STT_PROVIDER

    if STT_PROVIDER == "groq" and GROQ_API_KEY:
        return None
    try:
        import faster_whisper  # noqa: F401
    except ImportError:
        return "no speech-to-text backend (GROQ_API_KEY unset and faster-whisper not installed)"
    return None


def is_recognition_available() -> bool:
    """Return True if the host can run recognition at all (input device + STT backend)."""
    return recognition_unavailable_reason() is None
