"""
Configuration management for the call bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import quote

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_url: str
    stream_url_override: str = ""
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Sarvam (STT + TTS)
    sarvam_api_key: str = ""
    sarvam_stt_model: str = "saarika:v2.5"
    sarvam_stt_language: str = "unknown"
    sarvam_tts_model: str = "bulbul:v2"
    sarvam_tts_voice: str = "anushka"
    tts_sample_rate: int = 16000
    streaming_stt_enabled: bool = True

    # DeepSeek (reply generation, OpenAI-compatible)
    deepseek_api_key: str = ""
    deepseek_model: str = "deepseek-chat"
    llm_timeout_seconds: float = 8.0
    llm_max_tokens: int = 80
    llm_temperature: float = 0.25
    reply_max_chars: int = 200

    # Language
    # - primary_language is the fallback locale for short/ambiguous turns
    # - lang_lock_strictness: 0 = loose, 1 = moderate, 2 = strict
    primary_language: str = "en-IN"
    lang_lock_strictness: int = 1

    # Audio bridge
    chunk_seconds: float = 0.9
    max_buffer_seconds: float = 15.0
    ignore_margin_ms: int = 350
    frame_duration_ms: int = 20
    audio_dir: str = "audio"
    audio_max_age_seconds: float = 600.0

    @property
    def base_url(self) -> str:
        """Public HTTP base URL without trailing slash."""
        return self.public_url.rstrip("/")

    @property
    def stream_url(self) -> str:
        """Get the media WebSocket URL handed to Twilio."""
        if self.stream_url_override:
            return self.stream_url_override
        if self.base_url.lower().startswith("https://"):
            return "wss://" + self.base_url[len("https://"):] + "/media"
        if self.base_url.lower().startswith("http://"):
            return "ws://" + self.base_url[len("http://"):] + "/media"
        return f"wss://{self.base_url}/media"

    @property
    def answer_url(self) -> str:
        return f"{self.base_url}/answer"

    def audio_url(self, filename: str) -> str:
        """Public URL of a hosted audio file under `audio_dir`."""
        return f"{self.base_url}/audio/{quote(filename)}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_url and not self.stream_url_override:
            missing.append("PUBLIC_URL")
        if self.public_url and not self.public_url.lower().startswith(("http://", "https://")):
            raise ConfigError("PUBLIC_URL must start with http:// or https://")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.sarvam_api_key:
            missing.append("SARVAM_API_KEY")

        if self.lang_lock_strictness not in (0, 1, 2):
            raise ConfigError(
                f"Invalid LANG_LOCK_STRICTNESS '{self.lang_lock_strictness}'. Expected 0, 1 or 2."
            )
        if self.chunk_seconds <= 0:
            raise ConfigError("CHUNK_SECONDS must be positive")
        if self.frame_duration_ms <= 0:
            raise ConfigError("FRAME_DURATION_MS must be positive")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_url=self.public_url,
            stream_url=self.stream_url,
            port=self.port,
            log_level=self.log_level,
            sarvam_stt_model=self.sarvam_stt_model,
            sarvam_stt_language=self.sarvam_stt_language,
            sarvam_tts_model=self.sarvam_tts_model,
            sarvam_tts_voice=self.sarvam_tts_voice,
            streaming_stt_enabled=self.streaming_stt_enabled,
            deepseek_model=self.deepseek_model,
            primary_language=self.primary_language,
            lang_lock_strictness=self.lang_lock_strictness,
            chunk_seconds=self.chunk_seconds,
            ignore_margin_ms=self.ignore_margin_ms,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            sarvam_key_set=bool(self.sarvam_api_key),
            deepseek_key_set=bool(self.deepseek_api_key),
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
    from src.callbridge.language import DEFAULT_LANGUAGE, normalize_language_code

    primary = normalize_language_code(os.getenv("PRIMARY_LANGUAGE", DEFAULT_LANGUAGE))
    if primary == "unknown":
        primary = DEFAULT_LANGUAGE

    config = Config(
        # Server
        public_url=os.getenv("PUBLIC_URL", "").strip(),
        stream_url_override=os.getenv("STREAM_URL", "").strip(),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Sarvam
        sarvam_api_key=os.getenv("SARVAM_API_KEY", ""),
        sarvam_stt_model=os.getenv("SARVAM_STT_MODEL", "saarika:v2.5"),
        sarvam_stt_language=os.getenv("SARVAM_STT_LANGUAGE", "unknown"),
        sarvam_tts_model=os.getenv("SARVAM_TTS_MODEL", "bulbul:v2"),
        sarvam_tts_voice=os.getenv("SARVAM_TTS_VOICE", "anushka"),
        tts_sample_rate=_get_int("TTS_SAMPLE_RATE", 16000),
        streaming_stt_enabled=_get_bool("STREAMING_STT_ENABLED", True),

        # DeepSeek
        deepseek_api_key=os.getenv("DEEPSEEK_API_KEY", ""),
        deepseek_model=os.getenv("DEEPSEEK_MODEL", "deepseek-chat"),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 8.0),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 80),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.25),
        reply_max_chars=_get_int("REPLY_MAX_CHARS", 200),

        # Language
        primary_language=primary,
        lang_lock_strictness=_get_int("LANG_LOCK_STRICTNESS", 1),

        # Audio bridge
        chunk_seconds=_get_float("CHUNK_SECONDS", 0.9),
        max_buffer_seconds=_get_float("MAX_BUFFER_SECONDS", 15.0),
        ignore_margin_ms=_get_int("IGNORE_MARGIN_MS", 350),
        frame_duration_ms=_get_int("FRAME_DURATION_MS", 20),
        audio_dir=os.getenv("AUDIO_DIR", "audio"),
        audio_max_age_seconds=_get_float("AUDIO_MAX_AGE_SECONDS", 600.0),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
