"""STT (Speech-to-Text) provider abstraction.

Supports multiple backends (Groq Whisper API, local faster-whisper) with
automatic per-request fallback when the primary provider fails. Providers are
a black box to the voice loop: audio in, ``STTResult`` (or None) out.
"""

import io
import logging
import math
import struct
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import numpy as np

from config import RECOGNITION_LANGUAGE, SAMPLE_RATE

logger = logging.getLogger("maple.stt")

WHISPER_PROMPT = "Maple, personal assistant. Calendar, tasks, meetings, reminders."


@dataclass
class STTResult:
    """Result from a speech-to-text transcription."""

    text: str
    language: str
    confidence: float
    duration_ms: float  # how long transcription took


class STTProvider(Protocol):
    """Protocol for speech-to-text providers."""

    def transcribe(self, audio_data: np.ndarray, sample_rate: int = SAMPLE_RATE) -> Optional[STTResult]:
        """Transcribe audio. Returns STTResult or None on failure."""
        ...


def _segment_field(segment, name: str, default: float) -> float:
    if isinstance(segment, dict):
        value = segment.get(name, default)
    else:
        value = getattr(segment, name, default)
    return float(value) if value is not None else default


def estimate_confidence(segments: Iterable, text: str) -> float:
    """Turn Whisper segment statistics into a 0-1 confidence score.

    Each segment contributes exp(avg_logprob) * (1 - no_speech_prob). Without
    segment data a non-empty transcript counts as fully confident.
    """
    scores = []
    for seg in segments or []:
        avg_logprob = _segment_field(seg, "avg_logprob", 0.0)
        no_speech = _segment_field(seg, "no_speech_prob", 0.0)
        scores.append(math.exp(min(avg_logprob, 0.0)) * (1.0 - no_speech))
    if not scores:
        return 1.0 if text.strip() else 0.0
    return max(0.0, min(1.0, sum(scores) / len(scores)))


class LocalWhisperProvider:
    """Local faster-whisper STT provider with lazy model loading."""

    def __init__(self, model_name: str = "small", language: Optional[str] = RECOGNITION_LANGUAGE):
        self._model_name = model_name
        self._language = language
        self._model = None  # Lazy-loaded on first transcribe()

    def _ensure_model(self) -> bool:
        """Load the Whisper model if not already loaded. Returns True on success."""
        if self._model is not None:
            return True
        try:
            from faster_whisper import WhisperModel

            logger.info("Loading Whisper model (%s) via faster-whisper...", self._model_name)
            self._model = WhisperModel(
                self._model_name,
                device="cpu",
                compute_type="int8",
            )
            logger.info("Whisper model loaded (faster-whisper, int8)")
            return True
        except Exception as e:
            logger.error("Failed to load Whisper model: %s", e)
            return False

    def transcribe(self, audio_data: np.ndarray, sample_rate: int = SAMPLE_RATE) -> Optional[STTResult]:
        if not self._ensure_model():
            return None

        start = time.monotonic()
        try:
            segments, info = self._model.transcribe(
                audio_data,
                beam_size=5,
                language=self._language,
                vad_filter=True,
                initial_prompt=WHISPER_PROMPT,
            )
            segments = list(segments)
            text = " ".join(seg.text for seg in segments).strip()
            lang = info.language if info else "en"
            confidence = estimate_confidence(segments, text)
            duration_ms = (time.monotonic() - start) * 1000
            logger.info("Transcription [%s] (local, %.0fms, conf=%.2f): %s", lang, duration_ms, confidence, text)
            return STTResult(text=text, language=lang, confidence=confidence, duration_ms=duration_ms)
        except Exception as e:
            logger.error("Local transcription failed: %s", e)
            return None


class GroqWhisperProvider:
    """Groq Whisper API STT provider."""

    def __init__(self, api_key: str, model: str = "whisper-large-v3-turbo", language: Optional[str] = None):
        from groq import Groq

        self._client = Groq(api_key=api_key)
        self._model = model
        self._language = language
        logger.info("STT: Groq API (model: %s)", model)

    def transcribe(self, audio_data: np.ndarray, sample_rate: int = SAMPLE_RATE) -> Optional[STTResult]:
        start = time.monotonic()
        try:
            wav_bytes = _audio_to_wav(audio_data, sample_rate)

            kwargs = {}
            if self._language:
                kwargs["language"] = self._language
            response = self._client.audio.transcriptions.create(
                file=("audio.wav", wav_bytes),
                model=self._model,
                response_format="verbose_json",
                prompt=WHISPER_PROMPT,
                **kwargs,
            )
            text = response.text.strip() if response.text else ""
            lang = getattr(response, "language", "en") or "en"
            confidence = estimate_confidence(getattr(response, "segments", None), text)
            duration_ms = (time.monotonic() - start) * 1000
            logger.info("Transcription [%s] (groq, %.0fms, conf=%.2f): %s", lang, duration_ms, confidence, text)
            return STTResult(text=text, language=lang, confidence=confidence, duration_ms=duration_ms)
        except Exception as e:
            logger.error("Groq transcription failed: %s", e)
            return None


class FallbackSTTProvider:
    """Wraps a primary provider with automatic fallback to a secondary."""

    def __init__(self, primary: STTProvider, fallback: STTProvider):
        self._primary = primary
        self._fallback = fallback

    def transcribe(self, audio_data: np.ndarray, sample_rate: int = SAMPLE_RATE) -> Optional[STTResult]:
        result = self._primary.transcribe(audio_data, sample_rate)
        if result is not None:
            return result
        logger.warning("Primary STT failed, falling back to secondary provider")
        return self._fallback.transcribe(audio_data, sample_rate)


def create_stt_provider() -> STTProvider:
    """Factory: create the appropriate STT provider based on config."""
    from config import GROQ_API_KEY, GROQ_WHISPER_MODEL, STT_FALLBACK_ENABLED, STT_PROVIDER, WHISPER_MODEL

    if STT_PROVIDER == "groq" and GROQ_API_KEY:
        try:
            primary = GroqWhisperProvider(
                api_key=GROQ_API_KEY, model=GROQ_WHISPER_MODEL, language=RECOGNITION_LANGUAGE
            )
            if STT_FALLBACK_ENABLED:
                fallback = LocalWhisperProvider(model_name=WHISPER_MODEL)
                return FallbackSTTProvider(primary, fallback)
            return primary
        except Exception as e:
            logger.error("Failed to initialize Groq STT: %s. Falling back to local.", e)

    return LocalWhisperProvider(model_name=WHISPER_MODEL)


def _audio_to_wav(audio: np.ndarray, sample_rate: int) -> bytes:
    """Convert float32 numpy audio to 16-bit PCM WAV bytes."""
    pcm = (audio * 32767).clip(-32768, 32767).astype(np.int16)
    buf = io.BytesIO()
    data_size = len(pcm) * 2  # 2 bytes per int16 sample
    buf.write(b"RIFF")
    buf.write(struct.pack("<I", 36 + data_size))
    buf.write(b"WAVE")
    buf.write(b"fmt ")
    buf.write(struct.pack("<I", 16))  # fmt chunk size
    buf.write(struct.pack("<H", 1))  # PCM format
    buf.write(struct.pack("<H", 1))  # mono
    buf.write(struct.pack("<I", sample_rate))
    buf.write(struct.pack("<I", sample_rate * 2))  # byte rate
    buf.write(struct.pack("<H", 2))  # block align
    buf.write(struct.pack("<H", 16))  # bits per sample
    buf.write(b"data")
    buf.write(struct.pack("<I", data_size))
    buf.write(pcm.tobytes())
    return buf.getvalue()
