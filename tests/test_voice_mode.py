"""Tests for voice/mode.py: the conversation state machine."""

from unittest.mock import patch

from brain.assistant import AssistantError, AssistantIntent
from brain.calendar_actions import LocalCalendar
from conftest import ECHO, SILENCE, WAKE_RESTART, DeferredExecutor, plain_reply
from perception.microphone import MicrophoneUnavailableError
from voice.events import ConversationState

IDLE = ConversationState.IDLE
LISTENING = ConversationState.LISTENING
PROCESSING = ConversationState.PROCESSING
SPEAKING = ConversationState.SPEAKING


class TestInitialize:
    def test_starts_wake_detection_when_enabled(self, make_rig):
        rig = make_rig()
        assert rig.mode.mode == IDLE
        assert rig.wake.is_running
        assert rig.microphone.owner == "wake"

    def test_no_wake_detection_when_disabled(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        assert not rig.wake.is_running
        assert rig.microphone.owner is None

    def test_initialize_twice_is_harmless(self, make_rig):
        rig = make_rig()
        rig.mode.initialize()
        assert len(rig.wake_sessions.sessions) == 1

    def test_is_available_uses_check(self, make_rig):
        rig = make_rig()
        assert rig.mode.is_available() is True


class TestEnterListening:
    def test_wake_phrase_starts_listening(self, make_rig):
        rig = make_rig()
        with patch.object(rig.microphone, "acquire", wraps=rig.microphone.acquire) as acquire:
            rig.wake_up()
        capture_acquires = [c for c in acquire.call_args_list if c.args == ("capture",)]
        assert len(capture_acquires) == 1
        assert rig.mode.mode == LISTENING
        assert rig.state.voice_mode == LISTENING
        assert not rig.wake.is_running
        assert rig.capture.is_active
        assert rig.microphone.owner == "capture"
        assert len(rig.timers.pending(SILENCE)) == 1

    def test_wake_session_released_before_capture(self, make_rig):
        rig = make_rig()
        wake_session = rig.wake_sessions.last
        rig.wake_up()
        assert wake_session.stopped
        assert rig.microphone.open_sessions == 1

    def test_force_start_without_wake_word(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        rig.mode.force_start()
        assert rig.mode.mode == LISTENING
        assert rig.capture_sessions.last.is_running

    def test_force_start_only_from_idle(self, make_rig):
        rig = make_rig()
        rig.mode.force_start()
        rig.mode.force_start()
        assert len(rig.capture_sessions.sessions) == 1

    def test_visualization_feed_null_until_first_session(self, make_rig):
        rig = make_rig()
        assert rig.mode.get_visualization_feed() is None
        rig.wake_up()
        bins = rig.mode.get_visualization_feed()
        assert bins is not None
        assert len(bins) == 64

    def test_visualization_feed_attached_to_capture_session(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        assert rig.visualizer.is_attached
        rig.mode.stop()
        assert not rig.visualizer.is_attached
        # Analyser survives the turn
        assert rig.mode.get_visualization_feed() is not None

    def test_microphone_failure_aborts_to_idle(self, make_rig):
        rig = make_rig()
        real_acquire = rig.microphone.acquire

        def acquire(owner):
            if owner == "capture":
                raise MicrophoneUnavailableError("permission denied")
            return real_acquire(owner)

        with patch.object(rig.microphone, "acquire", side_effect=acquire):
            rig.wake_up()
        assert rig.mode.mode == IDLE
        assert not rig.capture.is_active
        assert rig.microphone.owner == "wake"
        assert rig.microphone.open_sessions == 1
        assert rig.timers.pending(SILENCE) == []
        assert rig.state.mic_enabled is False

        # Next successful turn marks the mic usable again
        rig.mode.force_start()
        assert rig.mode.mode == LISTENING
        assert rig.state.mic_enabled is True

    def test_recognizer_failure_aborts_to_idle(self, make_rig):
        rig = make_rig()
        rig.capture_sessions.fail_next = True
        rig.wake_up()
        assert rig.mode.mode == IDLE
        assert rig.microphone.owner == "wake"
        assert not rig.visualizer.is_attached
        assert rig.microphone.open_sessions == 1


class TestListening:
    def test_partial_updates_transcript_and_rearms_silence(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        first = rig.timers.pending(SILENCE)[0]
        rig.capture_sessions.last.emit("what's on", is_final=False)
        assert rig.state.live_transcript == "what's on"
        assert first.cancelled
        assert len(rig.timers.pending(SILENCE)) == 1

    def test_final_transcript_calls_assistant(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("schedule a meeting", 0.9)
        assert PROCESSING in rig.modes
        rig.assistant.process_message.assert_called_once()
        assert rig.assistant.process_message.call_args.args[0] == "schedule a meeting"

    def test_accepted_utterance_appended_as_user_message(self, make_rig):
        rig = make_rig(executor=DeferredExecutor())
        rig.wake_up()
        rig.say("schedule a meeting", 0.9)
        assert rig.mode.mode == PROCESSING
        messages = rig.state.get_messages()
        assert [(m.role, m.text) for m in messages] == [("user", "schedule a meeting")]

    def test_processing_releases_microphone(self, make_rig):
        rig = make_rig(executor=DeferredExecutor())
        rig.wake_up()
        rig.say("hello", 0.9)
        assert rig.microphone.open_sessions == 0
        assert not rig.capture.is_active
        assert not rig.wake.is_running
        assert rig.timers.pending(SILENCE) == []

    def test_history_excludes_current_utterance(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("first question")
        rig.finish_speaking()
        rig.clock.advance(3)
        rig.say("second question")
        history = rig.assistant.process_message.call_args.args[1]
        assert [m.text for m in history] == ["first question", "Sure thing."]

    def test_low_confidence_restarts_capture(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        first = rig.capture_sessions.last
        rig.say("mmm", 0.3)
        assert rig.mode.mode == LISTENING
        assert first.stopped
        assert rig.capture_sessions.last is not first
        assert rig.capture_sessions.last.is_running
        rig.assistant.process_message.assert_not_called()
        assert rig.state.get_messages() == []

    def test_rejected_final_clears_live_transcript(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.capture_sessions.last.emit("mmm hmm", 0.3, is_final=False)
        assert rig.state.live_transcript == "mmm hmm"
        rig.say("mmm hmm", 0.3)
        assert rig.mode.mode == LISTENING
        assert rig.state.live_transcript == ""

    def test_transient_error_keeps_listening(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.capture_sessions.last.emit_error("no-speech")
        assert rig.mode.mode == LISTENING

    def test_fatal_error_goes_idle(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.capture_sessions.last.emit_error("not-allowed")
        assert rig.mode.mode == IDLE
        assert rig.microphone.owner == "wake"

    def test_platform_end_restarts_capture_transparently(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.capture_sessions.last.end()
        assert rig.mode.mode == LISTENING
        assert len(rig.capture_sessions.sessions) == 2
        assert rig.capture_sessions.last.is_running
        assert rig.capture_sessions.last.mic_session is rig.capture_sessions.sessions[0].mic_session


class TestProcessing:
    def test_plain_reply_is_spoken(self, make_rig):
        rig = make_rig()
        rig.assistant.process_message.return_value = plain_reply("You have two meetings today.")
        rig.wake_up()
        rig.say("what's on today")
        assert rig.mode.mode == SPEAKING
        assert rig.speech.spoken == ["You have two meetings today."]
        reply = rig.state.get_messages()[-1]
        assert reply.role == "assistant"
        assert reply.text == "You have two meetings today."
        assert reply.intent["action"] == "advice"
        assert reply.calendar_intent is None

    def test_assistant_failure_speaks_fallback(self, make_rig):
        rig = make_rig()
        rig.assistant.process_message.side_effect = AssistantError("timeout")
        rig.wake_up()
        rig.say("schedule a meeting")
        fallback = "Something went wrong. Please try again."
        assert rig.state.get_messages()[-1].text == fallback
        assert rig.speech.spoken == [fallback]
        rig.finish_speaking()
        assert rig.mode.mode == LISTENING

    def test_failed_turn_can_end_in_idle(self, make_rig):
        rig = make_rig(idle_after_failed_turn=True)
        rig.assistant.process_message.side_effect = RuntimeError("boom")
        rig.wake_up()
        rig.say("schedule a meeting")
        rig.finish_speaking()
        assert rig.mode.mode == IDLE
        assert rig.wake.is_running

    def test_calendar_mutation_is_executed(self, make_rig, tmp_path):
        calendar = LocalCalendar(str(tmp_path / "calendar.json"))
        rig = make_rig(calendar=calendar)
        rig.assistant.process_message.return_value = AssistantIntent(
            action="create",
            response="I'll add that.",
            event_title="Standup",
            start_time="2026-10-19T09:00:00",
            duration=15,
        )
        rig.wake_up()
        rig.say("add standup tomorrow at nine")
        reply = rig.state.get_messages()[-1]
        assert reply.text.startswith('Done! "Standup" has been added to your calendar.')
        assert reply.calendar_intent["eventTitle"] == "Standup"
        assert rig.speech.spoken == [reply.text]
        events = calendar.list_events()
        assert len(events) == 1
        assert events[0]["end"] == "2026-10-19T09:15:00"

    def test_mutation_needing_confirmation_is_not_executed(self, make_rig, tmp_path):
        calendar = LocalCalendar(str(tmp_path / "calendar.json"))
        rig = make_rig(calendar=calendar)
        rig.assistant.process_message.return_value = AssistantIntent(
            action="delete",
            response="Delete the dentist appointment?",
            original_event_id="abc",
            needs_confirmation=True,
        )
        rig.wake_up()
        rig.say("remove the dentist")
        assert rig.speech.spoken == ["Delete the dentist appointment?"]
        assert rig.state.get_messages()[-1].calendar_intent is None

    def test_stale_reply_after_stop_is_dropped(self, make_rig):
        executor = DeferredExecutor()
        rig = make_rig(executor=executor)
        rig.wake_up()
        rig.say("schedule a meeting")
        rig.mode.stop()
        executor.run_all()
        assert rig.mode.mode == IDLE
        assert rig.speech.spoken == []
        assert [m.role for m in rig.state.get_messages()] == ["user"]

    def test_muted_voice_skips_speech(self, make_rig):
        rig = make_rig(voice_enabled=False)
        rig.wake_up()
        rig.say("hello")
        assert rig.speech.spoken == []
        assert rig.mode.mode == SPEAKING
        assert rig.timers.fire(ECHO) == 1
        assert rig.mode.mode == LISTENING


class TestSpeaking:
    def test_loop_returns_to_listening_after_echo_delay(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("hello")
        rig.speech.finish()
        assert rig.mode.mode == SPEAKING
        assert rig.microphone.open_sessions == 0
        rig.timers.fire(ECHO)
        assert rig.mode.mode == LISTENING
        assert rig.microphone.owner == "capture"
        assert not rig.wake.is_running
        assert len(rig.timers.pending(SILENCE)) == 1

    def test_each_turn_gets_a_fresh_mic_session(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        first_mic = rig.capture_sessions.last.mic_session
        rig.say("hello")
        rig.finish_speaking()
        assert rig.capture_sessions.last.mic_session is not first_mic
        assert not first_mic.is_open

    def test_stop_while_speaking_cancels_speech(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("hello")
        assert rig.speech.is_speaking
        cancels = rig.speech.cancel_count
        rig.mode.stop()
        assert rig.speech.cancel_count == cancels + 1
        assert not rig.speech.is_speaking
        assert rig.mode.mode == IDLE
        assert rig.wake.is_running

    def test_stop_during_echo_delay_cancels_timer(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("hello")
        rig.speech.finish()
        rig.mode.stop()
        assert rig.timers.pending(ECHO) == []
        assert rig.mode.mode == IDLE

    def test_muting_mid_reply_moves_on(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("hello")
        rig.mode.set_voice_enabled(False)
        assert not rig.speech.is_speaking
        assert rig.state.voice_enabled is False
        rig.timers.fire(ECHO)
        assert rig.mode.mode == LISTENING


class TestSilenceTimeout:
    def test_silence_returns_to_idle_and_resumes_wake(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        assert rig.timers.fire(SILENCE) == 1
        assert rig.mode.mode == IDLE
        assert not rig.capture.is_active
        assert rig.wake.is_running
        assert rig.microphone.owner == "wake"
        assert rig.microphone.open_sessions == 1

    def test_cancelled_silence_timer_does_not_fire(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        stale = rig.timers.pending(SILENCE)[0]
        rig.capture_sessions.last.emit("still talking", is_final=False)
        stale.cancelled = False  # fires anyway, as a racing Timer thread would
        stale.fire()
        assert rig.mode.mode == LISTENING

    def test_silence_without_wake_word_stays_idle(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        rig.mode.force_start()
        rig.timers.fire(SILENCE)
        assert rig.mode.mode == IDLE
        assert rig.microphone.open_sessions == 0


class TestStop:
    def test_stop_is_idempotent(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.mode.stop()
        first = (rig.mode.mode, rig.wake.is_running, rig.microphone.open_sessions)
        rig.mode.stop()
        second = (rig.mode.mode, rig.wake.is_running, rig.microphone.open_sessions)
        assert first == second == (IDLE, True, 1)

    def test_stop_when_idle_is_noop(self, make_rig):
        rig = make_rig()
        sessions = len(rig.wake_sessions.sessions)
        rig.mode.stop()
        assert rig.mode.mode == IDLE
        assert len(rig.wake_sessions.sessions) == sessions
        assert rig.microphone.open_sessions == 1

    def test_stop_from_every_state(self, make_rig):
        rig = make_rig(executor=DeferredExecutor())
        rig.wake_up()
        rig.mode.stop()
        assert rig.mode.mode == IDLE

        rig.wake_up()
        rig.say("hello")
        assert rig.mode.mode == PROCESSING
        rig.mode.stop()
        rig.mode.stop()
        assert rig.mode.mode == IDLE
        assert rig.microphone.open_sessions == 1

    def test_destroy_releases_everything(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.mode.destroy()
        assert rig.mode.mode == IDLE
        assert rig.wake.is_destroyed
        assert rig.microphone.open_sessions == 0
        assert rig.speech.stopped
        assert rig.mode.get_visualization_feed() is None

    def test_force_start_after_destroy_is_ignored(self, make_rig):
        rig = make_rig()
        rig.mode.destroy()
        rig.mode.force_start()
        assert rig.mode.mode == IDLE
        assert rig.microphone.open_sessions == 0


class TestSettings:
    def test_disabling_wake_word_pauses_detector(self, make_rig):
        rig = make_rig()
        rig.mode.set_wake_word_enabled(False)
        assert rig.state.wake_word_enabled is False
        assert not rig.wake.is_running
        assert rig.microphone.open_sessions == 0

    def test_enabling_wake_word_resumes_detector(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        rig.mode.set_wake_word_enabled(True)
        assert rig.wake.is_running

    def test_toggle_while_listening_waits_for_idle(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        rig.mode.force_start()
        rig.mode.set_wake_word_enabled(True)
        assert not rig.wake.is_running
        rig.mode.stop()
        assert rig.wake.is_running


class TestCooldown:
    def test_second_utterance_within_cooldown_is_discarded(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("first", 0.9)
        rig.finish_speaking()
        assert rig.mode.mode == LISTENING
        rig.clock.advance(1.0)
        rig.say("second", 0.95)
        assert rig.mode.mode == LISTENING
        assert rig.assistant.process_message.call_count == 1

    def test_utterance_after_cooldown_is_processed(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("first", 0.9)
        rig.finish_speaking()
        rig.clock.advance(2.5)
        rig.say("second", 0.9)
        assert rig.assistant.process_message.call_count == 2


class TestConfidenceGating:
    def test_low_confidence_never_reaches_assistant(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        for confidence in (0.0, 0.3, 0.59):
            rig.say("maybe", confidence)
        rig.assistant.process_message.assert_not_called()
        assert rig.mode.mode == LISTENING

    def test_threshold_is_inclusive(self, make_rig):
        rig = make_rig()
        rig.wake_up()
        rig.say("exactly enough", 0.6)
        rig.assistant.process_message.assert_called_once()


class TestMutualExclusion:
    def test_scripted_conversation_never_overlaps(self, make_rig):
        rig = make_rig()
        steps = [
            rig.wake_up,
            lambda: rig.capture_sessions.last.emit("add", is_final=False),
            lambda: rig.say("mmm", 0.2),
            lambda: rig.say("add lunch", 0.9),
            rig.speech.finish,
            lambda: rig.timers.fire(ECHO),
            lambda: rig.capture_sessions.last.end(),
            lambda: rig.timers.fire(SILENCE),
            lambda: rig.wake_sessions.last.end(),
            lambda: rig.timers.fire(WAKE_RESTART),
            rig.wake_up,
            lambda: rig.capture_sessions.last.emit_error("not-allowed"),
            rig.mode.force_start,
            rig.mode.stop,
            rig.mode.stop,
        ]
        for step in steps:
            step()
            assert rig.exclusive()

    def test_idle_never_leaves_capture_mic_open(self, make_rig):
        rig = make_rig(wake_word_enabled=False)
        for _ in range(3):
            rig.mode.force_start()
            rig.say("hello")
            rig.mode.stop()
            assert rig.mode.mode == IDLE
            assert rig.microphone.open_sessions == 0
        assert rig.microphone.opened_count == rig.microphone.closed_count == 3
