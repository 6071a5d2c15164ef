import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# API
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ASSISTANT_MODEL = "claude-haiku-4-5-20251001"  # Voice turns need low latency
ASSISTANT_MAX_TOKENS = 600
ASSISTANT_HISTORY_TURNS = 6  # Prior messages sent with each utterance
ASSISTANT_TIMEZONE = os.getenv("MAPLE_TIMEZONE", "America/Los_Angeles")

# ElevenLabs TTS (optional premium voice; platform voice is used without a key)
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "JBFqnCBsd6RMkjVDRZzb")
ELEVENLABS_MODEL = "eleven_flash_v2_5"  # Low latency (~75ms)
ELEVENLABS_OUTPUT_FORMAT = "pcm_24000"  # PCM S16LE 24kHz
ELEVENLABS_SAMPLE_RATE = 24000  # Must match output_format
ELEVENLABS_VOICE_STABILITY = 0.5
ELEVENLABS_VOICE_SIMILARITY = 0.75

# Speech output
TTS_RATE = 0.95  # Fraction of the engine's default speaking rate
TTS_DEFAULT_WPM = 200  # pyttsx3 default rate
TTS_VOLUME = 0.9
TTS_MAX_PRIMARY_FAILURES = 3  # Consecutive ElevenLabs failures before pyttsx3 takes over

# Audio devices (sounddevice index, or None for system default)
# Run `python -m sounddevice` to list available devices and their indices.
AUDIO_INPUT_DEVICE = int(os.getenv("AUDIO_INPUT_DEVICE")) if os.getenv("AUDIO_INPUT_DEVICE") else None
AUDIO_OUTPUT_DEVICE = int(os.getenv("AUDIO_OUTPUT_DEVICE")) if os.getenv("AUDIO_OUTPUT_DEVICE") else None
SAMPLE_RATE = 16000  # Whisper needs 16kHz
BLOCK_SAMPLES = 1280  # 80ms at 16kHz

# Speech-to-Text
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_WHISPER_MODEL = "whisper-large-v3-turbo"
STT_PROVIDER = os.getenv("MAPLE_STT_PROVIDER", "groq")  # "groq" (API) or "local" (faster-whisper on CPU)
STT_FALLBACK_ENABLED = True  # Fall back to local Whisper if Groq fails (per-request)
WHISPER_MODEL = "small"  # Only used by the local provider
RECOGNITION_LANGUAGE = "en"

# Recognition sessions (energy segmentation in front of the STT provider)
RECOGNITION_ENERGY_THRESHOLD = 0.015  # RMS float32 threshold for speech onset
RECOGNITION_END_SILENCE = 0.9  # Seconds of trailing silence that finalize a segment
RECOGNITION_MAX_SEGMENT = 15.0  # Max seconds per segment (prevents runaway)
RECOGNITION_MIN_SEGMENT = 0.3  # Shorter segments are treated as noise
RECOGNITION_INTERIM_INTERVAL = 1.2  # Seconds between interim re-transcriptions
RECOGNITION_NO_SPEECH_TIMEOUT = 8.0  # Single-shot session gives up after this much silence
RECOGNITION_MAX_SESSION_SECONDS = 60.0  # Continuous sessions end after this (restarted by owner)

# Voice conversation loop
SILENCE_TIMEOUT = 15.0  # No speech activity while listening -> idle
ECHO_DELAY = 0.8  # Pause after TTS ends before the mic reopens
RESPONSE_COOLDOWN = 2.0  # Min seconds between two accepted utterances
CONFIDENCE_THRESHOLD = 0.6  # Final transcripts below this are discarded
IDLE_AFTER_FAILED_TURN = _env_flag("MAPLE_IDLE_AFTER_FAILED_TURN", "false")
FALLBACK_REPLY = "Something went wrong. Please try again."

# Feature toggles
WAKE_WORD_ENABLED = _env_flag("MAPLE_WAKE_WORD_ENABLED", "true")
VOICE_OUTPUT_ENABLED = _env_flag("MAPLE_VOICE_ENABLED", "true")

# Wake phrase detection (transcript matching; variants are a product decision)
WAKE_WORD = os.getenv("MAPLE_WAKE_WORD", "maple").lower()
_raw_wake_phrases = os.getenv("MAPLE_WAKE_PHRASES", "")
WAKE_PHRASES: list[str] = [p.strip().lower() for p in _raw_wake_phrases.split(",") if p.strip()] or [
    f"hey {WAKE_WORD}",
    f"hi {WAKE_WORD}",
    f"okay {WAKE_WORD}",
    "hey mable",
    "hey mabel",
    "hey maypole",
    "hay maple",
]
WAKE_MAX_BARE_WORDS = 3  # Bare wake word only counts in transcripts this short
WAKE_RESTART_DELAY = 0.3  # Seconds before restarting a platform-ended wake session

# Visualization
VISUALIZER_FFT_SIZE = 128  # 64 frequency bins
VISUALIZER_SMOOTHING = 0.8
VISUALIZER_MIN_DB = -100.0
VISUALIZER_MAX_DB = -30.0

# Dashboard
DASHBOARD_PORT = int(os.getenv("MAPLE_DASHBOARD_PORT", "8420"))
DASHBOARD_MAX_MESSAGES = 200

# Local calendar store
DATA_DIR = os.getenv("MAPLE_DATA_DIR", "./maple_data")
CALENDAR_FILE = os.path.join(DATA_DIR, "calendar.json")
CALENDAR_DEFAULT_DURATION_MIN = 60

# System Prompts
SYSTEM_PROMPT_ASSISTANT = """You are Maple, a personal productivity assistant inside a life-management dashboard.
You help with the user's calendar, tasks, habits and email. The conversation is spoken aloud.

Current time: {now} ({timezone}).

CALENDAR EVENTS:
{events}

Respond with ONLY this JSON:
{{
  "action": "advice",
  "response": "Short spoken reply, 1-3 sentences.",
  "suggestions": ["optional", "follow-ups"]
}}

Valid action values: "create", "move", "delete", "query", "advice", "briefing", "query_tasks", "query_habits", "query_email", "unclear"

For calendar actions (create/move/delete), also include: eventTitle, startTime (ISO 8601), endTime, duration (minutes), originalEventId, conflicts, needsConfirmation.
- action="create"/"move"/"delete" ONLY for calendar operations
- Set needsConfirmation=true when the change conflicts with an existing event or is destructive and ambiguous
- action="advice" for tips, prioritization help, greetings, or general chat
- If the request is ambiguous, set action="unclear" and ask for clarification in "response"
- Keep "response" natural for speech: no markdown, no lists, no emoji."""
