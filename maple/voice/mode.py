"""Voice conversation loop: idle -> listening -> processing -> speaking -> listening.

Every trigger (wake phrase, transcripts, timers, assistant replies, end of
speech, stop) arrives as an event through _post(). Events are handled one at a
time in arrival order; an event posted while another is being handled is
queued and handled afterwards by the thread already draining the queue. That
keeps transitions atomic without the handlers ever being reentered.

Microphone handoff: the wake detector holds the mic while idle, speech capture
holds it while listening. Entering listening pauses the detector before the
mic is acquired; entering idle releases the mic before the detector resumes.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np

from brain.assistant import AssistantClient
from brain.calendar_actions import CalendarBackend, execute_calendar_action
from config import ECHO_DELAY, FALLBACK_REPLY, IDLE_AFTER_FAILED_TURN, SILENCE_TIMEOUT
from dashboard.state import ROLE_ASSISTANT, ROLE_USER, MapleState
from perception.microphone import Microphone, MicrophoneBusyError, MicrophoneSession, MicrophoneUnavailableError
from perception.recognition import TRANSIENT_ERRORS, is_recognition_available
from perception.tts import SpeechOutput
from perception.visualizer import VisualizationFeed
from perception.wake_word import WakePhraseDetector
from voice.capture import SpeechCapture
from voice.events import (
    ConversationState,
    EchoDelayElapsed,
    FinalTranscript,
    ForceStart,
    PartialTranscript,
    RecognitionFailed,
    ReplyFailed,
    ReplyReady,
    SilenceTimeout,
    SpeechFinished,
    Stop,
    TranscriptRejected,
    VoiceOutputToggled,
    WakeDetected,
    WakeWordToggled,
)

logger = logging.getLogger("maple.voice")

MIC_OWNER = "capture"


class VoiceMode:
    """Hands-free conversation state machine."""

    def __init__(
        self,
        state: MapleState,
        microphone: Microphone,
        wake_detector: WakePhraseDetector,
        capture: SpeechCapture,
        speech_output: SpeechOutput,
        visualizer: VisualizationFeed,
        assistant: AssistantClient,
        calendar: Optional[CalendarBackend] = None,
        silence_timeout: float = SILENCE_TIMEOUT,
        echo_delay: float = ECHO_DELAY,
        idle_after_failed_turn: bool = IDLE_AFTER_FAILED_TURN,
        fallback_reply: str = FALLBACK_REPLY,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        executor=None,
        availability_check: Callable[[], bool] = is_recognition_available,
    ):
        self._state = state
        self._microphone = microphone
        self._wake_detector = wake_detector
        self._capture = capture
        self._speech_output = speech_output
        self._visualizer = visualizer
        self._assistant = assistant
        self._calendar = calendar

        self.silence_timeout = silence_timeout
        self.echo_delay = echo_delay
        self.idle_after_failed_turn = idle_after_failed_turn
        self.fallback_reply = fallback_reply

        self._timer_factory = timer_factory
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="maple-assistant")
        self._availability_check = availability_check

        # Event queue
        self._queue_lock = threading.Lock()
        self._events: deque = deque()
        self._draining = False

        # Owned by the draining thread
        self._mode = ConversationState.IDLE
        self._token = 0
        self._silence_token = 0
        self._silence_timer = None
        self._echo_timer = None
        self._mic_session: Optional[MicrophoneSession] = None
        self._failed_turn = False
        self._initialized = False
        self._destroyed = False

        capture.on_partial = lambda text: self._post(PartialTranscript(text))
        capture.on_final = lambda u: self._post(FinalTranscript(u.text, u.confidence))
        capture.on_rejected = lambda u, reason: self._post(TranscriptRejected(u.text, u.confidence, reason))
        capture.on_error = lambda code: self._post(RecognitionFailed(code))
        capture.should_continue = lambda: self._mode == ConversationState.LISTENING

    # ── Public API ───────────────────────────────────────────────────

    @property
    def mode(self) -> ConversationState:
        return self._mode

    def initialize(self) -> None:
        """Wire wake detection to the loop and start it if enabled."""
        if self._initialized:
            return
        self._initialized = True
        self._wake_detector.on_wake_word(lambda: self._post(WakeDetected()))
        if self._state.wake_word_enabled:
            self._wake_detector.start()
        logger.info("Voice mode initialized (wake word %s)", "on" if self._state.wake_word_enabled else "off")

    def force_start(self) -> None:
        """Start listening without a wake phrase. Only effective while idle."""
        self._post(ForceStart())

    def stop(self) -> None:
        """Cancel the current turn and go back to idle. Idempotent."""
        self._post(Stop())

    def destroy(self) -> None:
        """Stop and release everything permanently."""
        if self._destroyed:
            return
        self._destroyed = True
        self._post(Stop(reason="destroy"))
        self._wake_detector.destroy()
        self._visualizer.close()
        self._speech_output.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        logger.info("Voice mode destroyed")

    def is_available(self) -> bool:
        return self._availability_check()

    def get_visualization_feed(self) -> Optional[np.ndarray]:
        """Current frequency magnitudes, or None before the first listening turn."""
        return self._visualizer.get_frequency_data()

    def set_wake_word_enabled(self, enabled: bool) -> None:
        self._post(WakeWordToggled(enabled))

    def set_voice_enabled(self, enabled: bool) -> None:
        self._post(VoiceOutputToggled(enabled))

    # ── Event dispatch ───────────────────────────────────────────────

    def _post(self, event) -> None:
        with self._queue_lock:
            self._events.append(event)
            if self._draining:
                return
            self._draining = True
        while True:
            with self._queue_lock:
                if not self._events:
                    self._draining = False
                    return
                event = self._events.popleft()
            try:
                self._handle(event)
            except Exception as e:
                logger.error("Voice loop failed handling %s: %s", type(event).__name__, e, exc_info=True)

    def _handle(self, event) -> None:
        logger.debug("%s in %s", event, self._mode.value)

        if isinstance(event, Stop):
            self._on_stop(event)
        elif isinstance(event, WakeWordToggled):
            self._on_wake_word_toggled(event.enabled)
        elif isinstance(event, VoiceOutputToggled):
            self._on_voice_output_toggled(event.enabled)
        elif self._mode == ConversationState.IDLE:
            self._handle_idle(event)
        elif self._mode == ConversationState.LISTENING:
            self._handle_listening(event)
        elif self._mode == ConversationState.PROCESSING:
            self._handle_processing(event)
        elif self._mode == ConversationState.SPEAKING:
            self._handle_speaking(event)

    def _handle_idle(self, event) -> None:
        if isinstance(event, WakeDetected):
            if not self._state.wake_word_enabled or self._destroyed:
                logger.debug("Wake phrase ignored, wake word disabled")
                return
            logger.info("Wake phrase heard, listening")
            self._enter_listening()
        elif isinstance(event, ForceStart):
            if self._destroyed:
                return
            self._enter_listening()

    def _handle_listening(self, event) -> None:
        if isinstance(event, PartialTranscript):
            self._state.set_live_transcript(event.text)
            self._arm_silence_timer()
        elif isinstance(event, TranscriptRejected):
            self._state.set_live_transcript("")
            self._capture.restart()
            self._arm_silence_timer()
        elif isinstance(event, FinalTranscript):
            self._accept_utterance(event.text)
        elif isinstance(event, SilenceTimeout):
            if event.token != self._silence_token:
                return
            logger.info("No speech for %.0fs, going idle", self.silence_timeout)
            self._enter_idle()
        elif isinstance(event, RecognitionFailed):
            if event.code in TRANSIENT_ERRORS:
                return
            logger.warning("Recognition failed (%s), going idle", event.code)
            self._enter_idle()

    def _handle_processing(self, event) -> None:
        if isinstance(event, ReplyReady) and event.token == self._token:
            self._capture.mark_response()
            intent = event.intent
            text = intent.response
            calendar_intent = None
            if intent.is_calendar_mutation and self._calendar is not None:
                cal = intent.calendar_intent()
                text = execute_calendar_action(cal, self._calendar)
                calendar_intent = cal.to_dict()
            self._failed_turn = False
            self._state.add_message(ROLE_ASSISTANT, text, intent=intent.to_dict(), calendar_intent=calendar_intent)
            self._speak(text)
        elif isinstance(event, ReplyFailed) and event.token == self._token:
            self._capture.mark_response()
            self._failed_turn = True
            self._state.add_message(ROLE_ASSISTANT, self.fallback_reply)
            self._speak(self.fallback_reply)

    def _handle_speaking(self, event) -> None:
        if isinstance(event, SpeechFinished) and event.token == self._token:
            self._cancel_echo_timer()
            timer = self._timer_factory(self.echo_delay, self._post, args=(EchoDelayElapsed(event.token),))
            timer.daemon = True
            self._echo_timer = timer
            timer.start()
        elif isinstance(event, EchoDelayElapsed) and event.token == self._token:
            self._echo_timer = None
            if self._failed_turn and self.idle_after_failed_turn:
                self._enter_idle()
            else:
                self._enter_listening()

    def _on_stop(self, event: Stop) -> None:
        if self._mode == ConversationState.IDLE and self._mic_session is None:
            if self._state.wake_word_enabled and not self._destroyed:
                self._wake_detector.resume()
            return
        logger.info("Voice mode stopped (%s)", event.reason)
        self._enter_idle()

    def _on_wake_word_toggled(self, enabled: bool) -> None:
        self._state.set_wake_word_enabled(enabled)
        if self._mode != ConversationState.IDLE:
            return
        if enabled and not self._destroyed:
            self._wake_detector.resume()
        else:
            self._wake_detector.pause()

    def _on_voice_output_toggled(self, enabled: bool) -> None:
        self._state.set_voice_enabled(enabled)
        if not enabled and self._mode == ConversationState.SPEAKING and self._echo_timer is None:
            self._speech_output.cancel()
            self._post(SpeechFinished(self._token))

    # ── Transitions ──────────────────────────────────────────────────

    def _set_mode(self, mode: ConversationState) -> None:
        if mode != self._mode:
            logger.info("Voice mode: %s -> %s", self._mode.value, mode.value)
        self._mode = mode
        self._token += 1
        self._state.set_voice_mode(mode)

    def _enter_listening(self) -> None:
        self._cancel_timers()
        self._wake_detector.pause()
        self._release_mic()
        try:
            self._mic_session = self._microphone.acquire(MIC_OWNER)
        except MicrophoneUnavailableError as e:
            logger.error("Cannot start listening: %s", e)
            self._state.set_mic_enabled(False)
            self._enter_idle()
            return
        except MicrophoneBusyError as e:
            logger.error("Cannot start listening: %s", e)
            self._enter_idle()
            return
        self._state.set_mic_enabled(True)

        self._visualizer.attach(self._mic_session)
        self._set_mode(ConversationState.LISTENING)
        self._state.set_live_transcript("")
        try:
            self._capture.start(self._mic_session)
        except Exception as e:
            logger.error("Speech capture failed to start: %s", e)
            self._enter_idle()
            return
        self._arm_silence_timer()

    def _enter_idle(self) -> None:
        self._cancel_timers()
        self._capture.stop()
        self._speech_output.cancel()
        self._release_mic()
        self._failed_turn = False
        self._set_mode(ConversationState.IDLE)
        self._state.set_live_transcript("")
        if self._state.wake_word_enabled and not self._destroyed:
            self._wake_detector.resume()

    def _accept_utterance(self, text: str) -> None:
        self._clear_silence_timer()
        self._capture.stop()
        self._release_mic()
        self._capture.mark_response()
        self._state.set_live_transcript("")

        history = self._state.get_messages()
        self._state.add_message(ROLE_USER, text)
        logger.info("Heard: '%s'", text)
        self._set_mode(ConversationState.PROCESSING)
        self._executor.submit(self._request_reply, self._token, text, history)

    def _request_reply(self, token: int, text: str, history) -> None:
        """Executor thread: ask the assistant and post the outcome."""
        try:
            intent = self._assistant.process_message(text, history)
        except Exception as e:
            logger.error("Assistant failed: %s", e)
            self._post(ReplyFailed(token, e))
            return
        self._post(ReplyReady(token, intent))

    def _speak(self, text: str) -> None:
        self._set_mode(ConversationState.SPEAKING)
        token = self._token
        if not self._state.voice_enabled:
            self._post(SpeechFinished(token))
            return
        self._speech_output.speak(text, on_end=lambda: self._post(SpeechFinished(token)))

    # ── Resources and timers ─────────────────────────────────────────

    def _release_mic(self) -> None:
        self._visualizer.detach()
        session, self._mic_session = self._mic_session, None
        self._microphone.release(session)

    def _arm_silence_timer(self) -> None:
        self._clear_silence_timer()
        token = self._silence_token
        timer = self._timer_factory(self.silence_timeout, self._post, args=(SilenceTimeout(token),))
        timer.daemon = True
        self._silence_timer = timer
        timer.start()

    def _clear_silence_timer(self) -> None:
        self._silence_token += 1
        timer, self._silence_timer = self._silence_timer, None
        if timer is not None:
            timer.cancel()

    def _cancel_echo_timer(self) -> None:
        timer, self._echo_timer = self._echo_timer, None
        if timer is not None:
            timer.cancel()

    def _cancel_timers(self) -> None:
        self._clear_silence_timer()
        self._cancel_echo_timer()
