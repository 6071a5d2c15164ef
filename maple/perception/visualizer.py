"""Frequency magnitudes of the live microphone for the orb renderer.

``AudioAnalyser`` follows the Web Audio AnalyserNode conventions (Blackman
window, exponential smoothing between pulls, dB range mapped to 0-255) so the
renderer can keep drawing the same 64 radial bars. The analyser is only ever
a sink of the mic session: nothing it sees is played back.
"""

import logging
import threading
from typing import Optional

import numpy as np

from config import VISUALIZER_FFT_SIZE, VISUALIZER_MAX_DB, VISUALIZER_MIN_DB, VISUALIZER_SMOOTHING
from perception.microphone import MicrophoneSession

logger = logging.getLogger("maple.visualizer")


class AudioAnalyser:
    def __init__(
        self,
        fft_size: int = VISUALIZER_FFT_SIZE,
        smoothing: float = VISUALIZER_SMOOTHING,
        min_db: float = VISUALIZER_MIN_DB,
        max_db: float = VISUALIZER_MAX_DB,
    ):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")
        if min_db >= max_db:
            raise ValueError("min_db must be below max_db")
        self.fft_size = fft_size
        self.frequency_bin_count = fft_size // 2
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = np.blackman(fft_size)
        self._lock = threading.Lock()
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    def write(self, block: np.ndarray) -> None:
        """Append a block of mono samples, keeping the last fft_size."""
        block = np.asarray(block, dtype=np.float32).ravel()
        with self._lock:
            if len(block) >= self.fft_size:
                self._samples = block[-self.fft_size :].copy()
            else:
                self._samples = np.concatenate([self._samples[len(block) :], block])

    def reset(self) -> None:
        with self._lock:
            self._samples = np.zeros(self.fft_size, dtype=np.float32)
            self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    @property
    def level(self) -> float:
        """RMS of the most recent fft_size samples."""
        with self._lock:
            return float(np.sqrt(np.mean(self._samples.astype(np.float64) ** 2)))

    def get_float_frequency_data(self) -> np.ndarray:
        """Smoothed magnitudes in dB, one value per bin."""
        with self._lock:
            spectrum = np.fft.rfft(self._samples * self._window)[: self.frequency_bin_count]
            magnitude = np.abs(spectrum) / self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
            smoothed = self._smoothed.copy()
        with np.errstate(divide="ignore"):
            return 20.0 * np.log10(smoothed)

    def get_byte_frequency_data(self) -> np.ndarray:
        """Smoothed magnitudes scaled from [min_db, max_db] to 0-255."""
        db = self.get_float_frequency_data()
        scaled = (db - self.min_db) * (255.0 / (self.max_db - self.min_db))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)


class VisualizationFeed:
    """Pull-based frequency feed rebuilt around each listening session.

    The analyser is created on the first attach and kept until close(); only
    the connection to the mic session is torn down between turns.
    """

    def __init__(self, fft_size: int = VISUALIZER_FFT_SIZE, smoothing: float = VISUALIZER_SMOOTHING):
        self._fft_size = fft_size
        self._smoothing = smoothing
        self._analyser: Optional[AudioAnalyser] = None
        self._session: Optional[MicrophoneSession] = None
        self._closed = False

    @property
    def analyser(self) -> Optional[AudioAnalyser]:
        return self._analyser

    @property
    def is_attached(self) -> bool:
        return self._session is not None

    def attach(self, mic_session: MicrophoneSession) -> None:
        if self._closed:
            logger.debug("Visualization feed closed, not attaching")
            return
        self.detach()
        if self._analyser is None:
            self._analyser = AudioAnalyser(fft_size=self._fft_size, smoothing=self._smoothing)
            logger.info("Audio analyser created (%d bins)", self._analyser.frequency_bin_count)
        else:
            self._analyser.reset()
        mic_session.add_sink(self._analyser.write)
        self._session = mic_session

    def detach(self) -> None:
        session, self._session = self._session, None
        if session is not None and self._analyser is not None:
            session.remove_sink(self._analyser.write)

    def get_frequency_data(self) -> Optional[np.ndarray]:
        """Current byte magnitudes, or None before the first session."""
        analyser = self._analyser
        if analyser is None:
            return None
        return analyser.get_byte_frequency_data()

    def get_level(self) -> float:
        analyser = self._analyser
        return analyser.level if analyser is not None else 0.0

    def close(self) -> None:
        self.detach()
        self._analyser = None
        self._closed = True
