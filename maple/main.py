"""
Maple voice assistant: entry point.

    wake phrase ──> listening ──> processing ──> speaking ──┐
        ^               ^                                   │
        │               └──────── anti-echo delay ──────────┘
        └──── silence timeout / stop

The dashboard starts first (instant UI), then the microphone, speech
recognition, speech output and the assistant client are wired into VoiceMode.
Heavy imports (sounddevice, faster-whisper, anthropic, fastapi) are deferred
to start() so `python main.py` shows output instantly.
"""

import logging
import signal
import sys
import threading
import time

# Configure logging EARLY so import progress is visible
logging.basicConfig(
    level=logging.INFO,
    format="[Maple] %(asctime)s %(name)s %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("maple")


# Catch unhandled exceptions in daemon threads so they don't die silently
def _daemon_thread_exception_hook(args):
    logger.error(
        "Unhandled exception in thread '%s': %s",
        args.thread.name if args.thread else "unknown",
        args.exc_value,
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


threading.excepthook = _daemon_thread_exception_hook

from config import DASHBOARD_PORT, VOICE_OUTPUT_ENABLED, WAKE_WORD_ENABLED  # noqa: E402
from dashboard.state import MapleState  # noqa: E402


class Maple:
    def __init__(
        self,
        wake_word_enabled: bool = WAKE_WORD_ENABLED,
        voice_enabled: bool = VOICE_OUTPUT_ENABLED,
        dashboard_port: int | None = DASHBOARD_PORT,
    ):
        self._running = False
        self._dashboard_port = dashboard_port
        self.state = MapleState(wake_word_enabled=wake_word_enabled, voice_enabled=voice_enabled)
        self.voice = None
        self.speech_output = None

    def start(self) -> bool:
        """Build and wire every component. Returns False if voice is unusable."""
        self._log_banner("Initializing Maple")

        if self._dashboard_port:
            self._log_step("Starting dashboard")
            from dashboard.server import create_app, start_server

            start_server(create_app(self.state), port=self._dashboard_port)

        self._log_step("Loading speech stack")
        from brain.assistant import AssistantClient
        from brain.calendar_actions import LocalCalendar
        from perception.microphone import Microphone
        from perception.recognition import RecognitionSession, recognition_unavailable_reason
        from perception.stt import create_stt_provider
        from perception.tts import SpeechOutput, is_tts_available
        from perception.visualizer import VisualizationFeed
        from perception.wake_word import WakePhraseDetector
        from voice.capture import SpeechCapture
        from voice.mode import VoiceMode

        reason = recognition_unavailable_reason()
        if reason is not None:
            logger.error("Voice mode unavailable: %s", reason)
            return False

        stt = create_stt_provider()
        microphone = Microphone()
        calendar = LocalCalendar()

        assistant = AssistantClient(calendar=calendar)
        if not assistant.start():
            logger.warning("Assistant unavailable; every turn will get the fallback reply")

        if not is_tts_available():
            logger.warning("No speech backend installed; replies will be shown but not spoken")
            self.state.set_voice_enabled(False)
        self.speech_output = SpeechOutput()
        self.speech_output.start()

        wake_detector = WakePhraseDetector(
            microphone,
            session_factory=lambda: RecognitionSession(stt, continuous=True, interim_results=True, name="wake"),
        )
        capture = SpeechCapture(session_factory=lambda: RecognitionSession(stt, name="capture"))

        self.voice = VoiceMode(
            state=self.state,
            microphone=microphone,
            wake_detector=wake_detector,
            capture=capture,
            speech_output=self.speech_output,
            visualizer=VisualizationFeed(),
            assistant=assistant,
            calendar=calendar,
        )

        if self._dashboard_port:
            from dashboard import server

            server.create_app(self.state, voice=self.voice, assistant=assistant, calendar=calendar)

        self.voice.initialize()
        logger.info("Maple ready.")
        return True

    def run(self):
        """Block until a shutdown signal arrives."""
        self._running = True
        signal.signal(signal.SIGINT, self._shutdown_handler)
        signal.signal(signal.SIGTERM, self._shutdown_handler)

        while self._running:
            time.sleep(0.5)

    def _shutdown_handler(self, signum, frame):
        """Handle Ctrl+C gracefully. Second Ctrl+C forces immediate exit."""
        if not self._running:
            logger.info("Force shutdown (second signal).")
            sys.exit(1)
        logger.info("Shutdown signal received. Press Ctrl+C again to force quit.")
        self._running = False

    def shutdown(self):
        logger.info("Shutting down Maple...")
        if self.voice is not None:
            self.voice.destroy()
        elif self.speech_output is not None:
            self.speech_output.stop()
        logger.info("Maple offline.")

    def _log_step(self, message: str):
        logger.info("%s...", message)

    def _log_banner(self, message: str):
        separator = "=" * 50
        logger.info(separator)
        logger.info(message)
        logger.info(separator)


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Maple voice assistant")
    parser.add_argument("--no-wake-word", action="store_true", help="Disable wake phrase detection")
    parser.add_argument("--mute", action="store_true", help="Show replies without speaking them")
    parser.add_argument("--listen", action="store_true", help="Start listening immediately")
    parser.add_argument("--dashboard-port", type=int, default=DASHBOARD_PORT, help="Dashboard HTTP port")
    parser.add_argument("--no-dashboard", action="store_true", help="Do not start the dashboard server")
    args = parser.parse_args()

    maple = Maple(
        wake_word_enabled=WAKE_WORD_ENABLED and not args.no_wake_word,
        voice_enabled=VOICE_OUTPUT_ENABLED and not args.mute,
        dashboard_port=None if args.no_dashboard else args.dashboard_port,
    )

    if not maple.start():
        logger.error("Failed to initialize. Exiting.")
        sys.exit(1)

    if args.listen:
        maple.voice.force_start()

    try:
        maple.run()
    except KeyboardInterrupt:
        pass
    finally:
        maple.shutdown()


if __name__ == "__main__":
    main()
