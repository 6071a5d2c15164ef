import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from queue import Empty, Queue
from typing import Callable, Optional, Sequence

import numpy as np
import sounddevice as sd

from config import TTS_DEFAULT_WPM, TTS_MAX_PRIMARY_FAILURES, TTS_RATE, TTS_VOLUME

logger = logging.getLogger("maple.tts")

# Voice quality tiers, best first. Each test gets a voice name.
VOICE_TIERS: list[Callable[[str], bool]] = [
    lambda name: re.search(r"\(Premium\)|\(Enhanced\)", name, re.IGNORECASE) is not None,
    lambda name: re.search(r"Siri", name, re.IGNORECASE) is not None,
    lambda name: "Google" in name and "UK" in name,
    lambda name: re.search(r"\b(Daniel|Samantha|Alex|Karen|Moira)\b", name) is not None,
    lambda name: "Google" in name,
]


def _voice_language(voice) -> str:
    """Best-effort language tag for a pyttsx3 voice ('en_US', 'en-GB', ...)."""
    for lang in getattr(voice, "languages", None) or []:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", errors="ignore")
        lang = re.sub(r"^[^a-zA-Z]+", "", str(lang))
        if lang:
            return lang
    # macOS voice ids embed the locale: com.apple.voice.premium.en-US.Zoe
    match = re.search(r"\b([a-z]{2})[-_][A-Z]{2}\b", str(getattr(voice, "id", "")))
    return match.group(0) if match else ""


def pick_best_voice(voices: Sequence) -> Optional[object]:
    """Pick the best English voice by descending quality tiers.

    Premium/Enhanced voices first, then Siri, Google UK, a few known
    high-quality named voices, any Google voice, and finally the first
    English voice. Returns None if no English voice is installed.
    """
    english = [v for v in voices if _voice_language(v).lower().startswith("en")]
    if not english:
        return None
    for tier in VOICE_TIERS:
        for voice in english:
            if tier(str(getattr(voice, "name", ""))):
                return voice
    return english[0]


class TTSBackend(ABC):
    """Abstract interface for a TTS backend."""

    name = "tts"

    @abstractmethod
    def initialize(self) -> bool:
        ...

    @abstractmethod
    def synthesize_and_play(self, text: str, is_cancelled: Callable[[], bool] = lambda: False) -> None:
        """Speak ``text``, returning early once ``is_cancelled()`` turns true."""

    def interrupt(self) -> None:
        """Unblock in-progress playback. Safe to call from any thread."""

    @abstractmethod
    def shutdown(self) -> None:
        ...


class ElevenLabsBackend(TTSBackend):
    """ElevenLabs streaming TTS backend using sounddevice for playback."""

    name = "elevenlabs"

    def __init__(self, rate: float = TTS_RATE):
        self._rate = rate
        self._client = None
        self._voice_id = None
        self._model_id = None
        self._output_format = None
        self._sample_rate = None
        self._stability = None
        self._similarity = None
        self._active_stream = None

    def initialize(self) -> bool:
        from config import (
            ELEVENLABS_API_KEY,
            ELEVENLABS_MODEL,
            ELEVENLABS_OUTPUT_FORMAT,
            ELEVENLABS_SAMPLE_RATE,
            ELEVENLABS_VOICE_ID,
            ELEVENLABS_VOICE_SIMILARITY,
            ELEVENLABS_VOICE_STABILITY,
        )

        if not ELEVENLABS_API_KEY:
            logger.info("ELEVENLABS_API_KEY not set")
            return False
        try:
            from elevenlabs.client import ElevenLabs

            self._client = ElevenLabs(api_key=ELEVENLABS_API_KEY)
            self._voice_id = ELEVENLABS_VOICE_ID
            self._model_id = ELEVENLABS_MODEL
            self._output_format = ELEVENLABS_OUTPUT_FORMAT
            self._sample_rate = ELEVENLABS_SAMPLE_RATE
            self._stability = ELEVENLABS_VOICE_STABILITY
            self._similarity = ELEVENLABS_VOICE_SIMILARITY
            logger.info("ElevenLabs backend initialized (voice=%s, model=%s)", self._voice_id, self._model_id)
            return True
        except Exception as e:
            logger.error("ElevenLabs initialization failed: %s", e)
            return False

    def synthesize_and_play(self, text: str, is_cancelled: Callable[[], bool] = lambda: False) -> None:
        """Stream audio from ElevenLabs and play chunks as they arrive."""
        from elevenlabs import VoiceSettings

        if is_cancelled():
            return
        audio_stream = self._client.text_to_speech.stream(
            text=text,
            voice_id=self._voice_id,
            model_id=self._model_id,
            output_format=self._output_format,
            voice_settings=VoiceSettings(
                stability=self._stability,
                similarity_boost=self._similarity,
                speed=self._rate,
                use_speaker_boost=True,
            ),
        )

        stream_out = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
        )
        stream_out.start()
        self._active_stream = stream_out

        try:
            for chunk in audio_stream:
                if is_cancelled():
                    break
                if not isinstance(chunk, bytes) or len(chunk) == 0:
                    continue
                samples = np.frombuffer(chunk, dtype=np.int16).astype(np.float32) / 32768.0
                stream_out.write(samples.reshape(-1, 1))
        finally:
            if not is_cancelled():
                time.sleep(0.1)  # Let last chunk drain
            stream_out.stop()
            stream_out.close()
            self._active_stream = None

    def interrupt(self) -> None:
        # Cancellation itself is owned by the caller's is_cancelled; this only
        # unblocks a write in progress.
        stream = self._active_stream
        if stream is not None:
            try:
                stream.abort()
            except Exception:
                pass

    def shutdown(self) -> None:
        self.interrupt()
        self._client = None


class Pyttsx3Backend(TTSBackend):
    """Platform voice engine via pyttsx3 (offline)."""

    name = "pyttsx3"

    def __init__(self, rate: float = TTS_RATE, volume: float = TTS_VOLUME):
        self._rate = rate
        self._volume = volume
        self._engine = None
        self._is_cancelled: Callable[[], bool] = lambda: False
        self.voice_name: Optional[str] = None

    def initialize(self) -> bool:
        try:
            import pyttsx3

            self._engine = pyttsx3.init()
            base_rate = self._engine.getProperty("rate") or TTS_DEFAULT_WPM
            self._engine.setProperty("rate", int(base_rate * self._rate))
            self._engine.setProperty("volume", self._volume)
            self._select_voice()
            self._engine.connect("started-word", self._on_word)
            logger.info("pyttsx3 backend initialized (voice=%s)", self.voice_name)
            return True
        except Exception as e:
            logger.error("pyttsx3 initialization failed: %s", e)
            return False

    def synthesize_and_play(self, text: str, is_cancelled: Callable[[], bool] = lambda: False) -> None:
        if self._engine is None or is_cancelled():
            return
        self._is_cancelled = is_cancelled
        try:
            self._engine.say(text)
            self._engine.runAndWait()
        finally:
            self._is_cancelled = lambda: False

    def _on_word(self, name, location, length) -> None:
        # engine.stop() is only safe on the thread running runAndWait, which
        # is the one delivering this callback.
        if self._is_cancelled():
            self._engine.stop()

    def shutdown(self) -> None:
        self._engine = None

    def _select_voice(self) -> None:
        voice = pick_best_voice(self._engine.getProperty("voices") or [])
        if voice is not None:
            self._engine.setProperty("voice", voice.id)
            self.voice_name = voice.name


class SpeechOutput:
    """Speaks one utterance at a time on a worker thread.

    speak() replaces whatever is playing. Its ``on_end`` callback fires exactly
    once when the utterance finishes or fails, and never for an utterance that
    was cancelled. ElevenLabs is used when configured, with pyttsx3 as the
    platform fallback.
    """

    def __init__(
        self,
        rate: float = TTS_RATE,
        volume: float = TTS_VOLUME,
        backends: Optional[list[TTSBackend]] = None,
    ):
        self._rate = rate
        self._volume = volume
        self._queue: Queue = Queue()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._backend_overrides = backends

        self._primary: Optional[TTSBackend] = None
        self._fallback: Optional[TTSBackend] = None
        self._consecutive_primary_failures = 0
        self._max_consecutive_failures = TTS_MAX_PRIMARY_FAILURES

        self._generation = 0
        self._generation_lock = threading.Lock()

    def start(self) -> bool:
        """Start the TTS worker thread."""
        self._running = True
        self._thread = threading.Thread(target=self._worker, daemon=True, name="tts-worker")
        self._thread.start()
        logger.info("Speech output started")
        return True

    def speak(self, text: str, on_end: Optional[Callable[[], None]] = None) -> int:
        """Cancel anything in flight and speak ``text``. Returns the utterance id."""
        self.cancel()
        with self._generation_lock:
            utterance_id = self._generation
        self._queue.put((utterance_id, text, on_end))
        return utterance_id

    def cancel(self) -> None:
        """Stop speech immediately. Pending and current utterances never report on_end."""
        with self._generation_lock:
            self._generation += 1
        self._clear_queue()
        for backend in (self._primary, self._fallback):
            if backend is not None:
                try:
                    backend.interrupt()
                except Exception as e:
                    logger.debug("Backend interrupt failed: %s", e)
        try:
            sd.stop()
        except Exception:
            pass

    def _is_current(self, utterance_id: int) -> bool:
        with self._generation_lock:
            return utterance_id == self._generation

    def _clear_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                break

    def _init_backends(self) -> None:
        if self._backend_overrides is not None:
            ready = [b for b in self._backend_overrides if b.initialize()]
            self._primary = ready[0] if ready else None
            self._fallback = ready[1] if len(ready) > 1 else None
            return

        elevenlabs_backend = ElevenLabsBackend(rate=self._rate)
        pyttsx3_backend = Pyttsx3Backend(rate=self._rate, volume=self._volume)
        if elevenlabs_backend.initialize():
            self._primary = elevenlabs_backend
            logger.info("Using ElevenLabs as primary TTS")
        else:
            logger.info("ElevenLabs unavailable, using platform voice only")
        if pyttsx3_backend.initialize():
            if self._primary is None:
                self._primary = pyttsx3_backend
            else:
                self._fallback = pyttsx3_backend

    def _worker(self) -> None:
        """Background thread: initializes backends and processes queue."""
        # pyttsx3 requires init and use on the same thread
        self._init_backends()
        if self._primary is None:
            logger.error("No TTS backend available! Replies will not be spoken.")

        while self._running:
            try:
                item = self._queue.get(timeout=0.5)
            except Empty:
                continue
            if item is None:
                break

            utterance_id, text, on_end = item
            if not self._is_current(utterance_id):
                continue

            try:
                self._speak_with_fallback(text, lambda: not self._is_current(utterance_id))
            except Exception as e:
                logger.error("TTS error: %s", e)
            finally:
                if on_end is not None and self._is_current(utterance_id):
                    try:
                        on_end()
                    except Exception as e:
                        logger.error("TTS on_end callback failed: %s", e, exc_info=True)

    def _speak_with_fallback(self, text: str, is_cancelled: Callable[[], bool]) -> None:
        """Try primary backend, fall back to secondary on failure."""
        if self._primary is None:
            logger.error("No TTS available, speech dropped: %.50s", text)
            return
        if self._fallback is None or self._consecutive_primary_failures < self._max_consecutive_failures:
            try:
                self._primary.synthesize_and_play(text, is_cancelled)
                self._consecutive_primary_failures = 0
                return
            except Exception as e:
                if is_cancelled():
                    # Aborted stream, not a backend failure
                    return
                self._consecutive_primary_failures += 1
                if self._fallback is None:
                    raise
                logger.warning(
                    "%s failed (%d/%d): %s, falling back to %s",
                    self._primary.name,
                    self._consecutive_primary_failures,
                    self._max_consecutive_failures,
                    e,
                    self._fallback.name,
                )
        self._fallback.synthesize_and_play(text, is_cancelled)

    def stop(self) -> None:
        """Stop the speech output worker."""
        self.cancel()
        self._running = False
        self._queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout=5)
        for backend in (self._primary, self._fallback):
            if backend is not None:
                backend.shutdown()
        logger.info("Speech output stopped")


def is_tts_available() -> bool:
    """Return True if any speech backend can be constructed on this host."""
    from config import ELEVENLABS_API_KEY

    if ELEVENLABS_API_KEY:
        return True
    try:
        import pyttsx3  # noqa: F401
    except ImportError:
        return False
    return True
