"""Exclusive access to the physical microphone.

The wake phrase detector and speech capture both need the mic, but never at
the same time. ``Microphone`` hands out at most one live ``MicrophoneSession``
and refuses a second owner until the first one has released it. Sessions are
never reused: every acquire opens a fresh sounddevice stream.
"""

import logging
import threading
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from config import AUDIO_INPUT_DEVICE, BLOCK_SAMPLES, SAMPLE_RATE

logger = logging.getLogger("maple.mic")

AudioSink = Callable[[np.ndarray], None]


class MicrophoneUnavailableError(RuntimeError):
    """The input device could not be opened (permission denied, no device)."""


class MicrophoneBusyError(RuntimeError):
    """Another owner still holds the microphone."""


class MicrophoneSession:
    """One live capture stream plus the sinks reading from it."""

    def __init__(self, owner: str):
        self.owner = owner
        self._stream = None
        self._sinks: list[AudioSink] = []
        self._sinks_lock = threading.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._stream is not None and not self._closed

    def add_sink(self, sink: AudioSink) -> None:
        with self._sinks_lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def remove_sink(self, sink: AudioSink) -> None:
        with self._sinks_lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    @property
    def sink_count(self) -> int:
        with self._sinks_lock:
            return len(self._sinks)

    def push(self, block: np.ndarray) -> None:
        """Fan one mono float32 block out to every sink."""
        if self._closed:
            return
        with self._sinks_lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(block)
            except Exception as e:
                logger.error("Audio sink failed (%s): %s", self.owner, e, exc_info=True)

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status):
        """sounddevice callback: runs on PortAudio thread. Keep minimal."""
        if status:
            logger.debug("Audio status (%s): %s", self.owner, status)
        self.push(indata[:, 0].copy())

    def _close(self) -> None:
        self._closed = True
        with self._sinks_lock:
            self._sinks = []
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            logger.debug("Stream stop failed (%s): %s", self.owner, e)
        try:
            stream.close()
        except Exception as e:
            logger.debug("Stream close failed (%s): %s", self.owner, e)


class Microphone:
    """Single system-wide access point to the input device."""

    def __init__(
        self,
        device: Optional[int] = AUDIO_INPUT_DEVICE,
        sample_rate: int = SAMPLE_RATE,
        blocksize: int = BLOCK_SAMPLES,
    ):
        self._device = device
        self._sample_rate = sample_rate
        self._blocksize = blocksize
        self._lock = threading.Lock()
        self._session: Optional[MicrophoneSession] = None
        self.opened_count = 0
        self.closed_count = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def owner(self) -> Optional[str]:
        """Name of the component holding the mic, or None when free."""
        with self._lock:
            return self._session.owner if self._session is not None else None

    @property
    def open_sessions(self) -> int:
        return self.opened_count - self.closed_count

    def acquire(self, owner: str) -> MicrophoneSession:
        """Open a fresh stream for ``owner``.

        Raises MicrophoneBusyError if the mic is still held (by anyone), and
        MicrophoneUnavailableError if the device cannot be opened. On failure
        nothing stays allocated.
        """
        with self._lock:
            if self._session is not None:
                raise MicrophoneBusyError(
                    f"microphone held by '{self._session.owner}', '{owner}' must wait for release"
                )
            session = MicrophoneSession(owner)
            stream = None
            try:
                stream = sd.InputStream(
                    device=self._device,
                    samplerate=self._sample_rate,
                    channels=1,
                    dtype="float32",
                    blocksize=self._blocksize,
                    callback=session._audio_callback,
                )
                stream.start()
            except Exception as e:
                if stream is not None:
                    try:
                        stream.close()
                    except Exception:
                        pass
                logger.error("Failed to open microphone for %s: %s", owner, e)
                raise MicrophoneUnavailableError(str(e)) from e
            session._stream = stream
            self._session = session
            self.opened_count += 1
        logger.info("Microphone acquired by %s", owner)
        return session

    def release(self, session: Optional[MicrophoneSession]) -> None:
        """Stop the session's stream and free the mic. Idempotent."""
        if session is None:
            return
        with self._lock:
            if session._closed:
                return
            session._close()
            self.closed_count += 1
            if self._session is session:
                self._session = None
        logger.info("Microphone released by %s", session.owner)


def is_input_available(device: Optional[int] = AUDIO_INPUT_DEVICE) -> bool:
    """Return True if the host exposes an input device."""
    try:
        info = sd.query_devices(device, kind="input")
        return bool(info)
    except Exception as e:
        logger.info("No audio input device: %s", e)
        return False
