"""
Configuration management for the voice ordering agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.voiceorder.vad import VADConfig

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"
    stream_path: str = "/ws"

    # Greeting / branding
    company_name: str = "Demo Bites"
    greeting_enabled: bool = True
    greeting_text: str = ""

    # Twilio (optional, only used for REST hang-up)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # OpenAI (STT, resolver, TTS)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    tts_sample_rate: int = 24000
    tts_transcoder: str = "audioop"  # "audioop" | "ffmpeg"
    ffmpeg_path: str = "ffmpeg"

    # Wire format
    sample_rate: int = 8000
    frame_duration_ms: int = 20

    # Voice activity detection
    vad_activity_threshold: float = 0.10
    vad_start_frames: int = 3
    vad_end_frames: int = 6
    vad_min_utterance_ms: int = 300
    vad_max_utterance_ms: int = 6000
    silence_guard_ratio: float = 0.90
    min_utterance_activity: float = 0.05

    # Turn-taking
    barge_in_enabled: bool = True
    barge_in_cooldown_ms: int = 250
    pacer_catch_up_frames: int = 2
    dedupe_transcripts: bool = True
    dedupe_replies: bool = True
    reply_dedupe_reset_ms: int = 900
    min_transcript_chars: int = 3

    # Timeouts and caching
    stt_timeout_seconds: float = 10.0
    resolver_timeout_seconds: float = 5.0
    tts_timeout_seconds: float = 10.0
    resolver_cache_ttl_seconds: float = 60.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}{self.stream_path}"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def frame_size_bytes(self) -> int:
        """Bytes per outbound/inbound frame (mu-law is 1 byte per sample)."""
        return int(self.sample_rate * self.frame_duration_ms / 1000)

    @property
    def greeting(self) -> str:
        if self.greeting_text:
            return self.greeting_text
        return (
            f"Hi! Welcome to {self.company_name}. I'm here to make ordering easy. "
            "Please choose a category to get started."
        )

    def vad_config(self) -> VADConfig:
        return VADConfig(
            activity_threshold=self.vad_activity_threshold,
            start_frames=self.vad_start_frames,
            end_frames=self.vad_end_frames,
            min_utterance_ms=self.vad_min_utterance_ms,
            max_utterance_ms=self.vad_max_utterance_ms,
            frame_duration_ms=self.frame_duration_ms,
        )

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        transcoder = (self.tts_transcoder or "").strip().lower()
        if transcoder not in ("audioop", "ffmpeg"):
            raise ConfigError(
                f"Invalid TTS_TRANSCODER '{self.tts_transcoder}'. Expected 'audioop' or 'ffmpeg'."
            )
        if not 0.0 < self.vad_activity_threshold <= 1.0:
            raise ConfigError("VAD_ACTIVITY_THRESHOLD must be in (0, 1]")
        if self.vad_start_frames < 1 or self.vad_end_frames < 1:
            raise ConfigError("VAD_START_FRAMES and VAD_END_FRAMES must be >= 1")
        if self.vad_min_utterance_ms > self.vad_max_utterance_ms:
            raise ConfigError("VAD_MIN_UTTERANCE_MS must not exceed VAD_MAX_UTTERANCE_MS")
        if self.frame_duration_ms <= 0 or self.sample_rate <= 0:
            raise ConfigError("FRAME_DURATION_MS and SAMPLE_RATE must be positive")
        if self.pacer_catch_up_frames < 1:
            raise ConfigError("PACER_CATCH_UP_FRAMES must be >= 1")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            stream_path=self.stream_path,
            company_name=self.company_name,
            openai_model=self.openai_model,
            openai_stt_model=self.openai_stt_model,
            openai_tts_model=self.openai_tts_model,
            tts_voice=self.tts_voice,
            tts_transcoder=self.tts_transcoder,
            frame_size_bytes=self.frame_size_bytes,
            vad_activity_threshold=self.vad_activity_threshold,
            vad_start_frames=self.vad_start_frames,
            vad_end_frames=self.vad_end_frames,
            vad_min_utterance_ms=self.vad_min_utterance_ms,
            vad_max_utterance_ms=self.vad_max_utterance_ms,
            barge_in_enabled=self.barge_in_enabled,
            barge_in_cooldown_ms=self.barge_in_cooldown_ms,
            pacer_catch_up_frames=self.pacer_catch_up_frames,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    stream_path = os.getenv("STREAM_PATH", "/ws").strip() or "/ws"
    if not stream_path.startswith("/"):
        stream_path = "/" + stream_path

    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        stream_path=stream_path,

        # Greeting
        company_name=os.getenv("COMPANY_NAME", "Demo Bites"),
        greeting_enabled=_get_bool("GREETING_ENABLED", True),
        greeting_text=os.getenv("GREETING_TEXT", ""),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        tts_voice=os.getenv("TTS_VOICE", "alloy"),
        tts_sample_rate=_get_int("TTS_SAMPLE_RATE", 24000),
        tts_transcoder=os.getenv("TTS_TRANSCODER", "audioop").strip().lower(),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),

        # Wire format
        sample_rate=_get_int("SAMPLE_RATE", 8000),
        frame_duration_ms=_get_int("FRAME_DURATION_MS", 20),

        # VAD
        vad_activity_threshold=_get_float("VAD_ACTIVITY_THRESHOLD", 0.10),
        vad_start_frames=_get_int("VAD_START_FRAMES", 3),
        vad_end_frames=_get_int("VAD_END_FRAMES", 6),
        vad_min_utterance_ms=_get_int("VAD_MIN_UTTERANCE_MS", 300),
        vad_max_utterance_ms=_get_int("VAD_MAX_UTTERANCE_MS", 6000),
        silence_guard_ratio=_get_float("SILENCE_GUARD_RATIO", 0.90),
        min_utterance_activity=_get_float("MIN_UTTERANCE_ACTIVITY", 0.05),

        # Turn-taking
        barge_in_enabled=_get_bool("BARGE_IN_ENABLED", True),
        barge_in_cooldown_ms=_get_int("BARGE_IN_COOLDOWN_MS", 250),
        pacer_catch_up_frames=_get_int("PACER_CATCH_UP_FRAMES", 2),
        dedupe_transcripts=_get_bool("DEDUPE_TRANSCRIPTS", True),
        dedupe_replies=_get_bool("DEDUPE_REPLIES", True),
        reply_dedupe_reset_ms=_get_int("REPLY_DEDUPE_RESET_MS", 900),
        min_transcript_chars=_get_int("MIN_TRANSCRIPT_CHARS", 3),

        # Timeouts / cache
        stt_timeout_seconds=_get_float("STT_TIMEOUT_SECONDS", 10.0),
        resolver_timeout_seconds=_get_float("RESOLVER_TIMEOUT_SECONDS", 5.0),
        tts_timeout_seconds=_get_float("TTS_TIMEOUT_SECONDS", 10.0),
        resolver_cache_ttl_seconds=_get_float("RESOLVER_CACHE_TTL_SECONDS", 60.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
