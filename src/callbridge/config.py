"""
Configuration management for the call bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

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
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    from_number: str = ""
    transfer_number: str = ""
    recording_enabled: bool = False
    recording_notice: str = "Esta ligação será gravada."

    # Dashboard API (HTTP basic auth)
    dashboard_username: str = "admin"
    dashboard_password: str = "password"

    # Deepgram (STT)
    # - endpointing: ms of silence before a segment is marked speech_final
    # - utterance_end_ms: ms of silence before the UtteranceEnd fallback fires
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "pt-BR"
    deepgram_endpointing_ms: int = 300
    deepgram_utterance_end_ms: int = 1000

    # OpenAI (LLM)
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-nano"
    llm_timeout_seconds: float = 30.0

    # TTS
    tts_provider: str = "deepgram"  # "deepgram" | "cartesia"
    deepgram_tts_voice: str = "aura-asteria-en"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model_id: str = "sonic-multilingual"
    cartesia_language: str = "pt"
    tts_timeout_seconds: float = 15.0

    # Conversation
    prompt_file: str = "prompt.json"
    phrase_break_marker: str = "•"
    max_tool_depth: int = 5
    tool_timeout_seconds: float = 20.0
    interruption_min_chars: int = 6
    apology_text: str = "Desculpe, tive um problema aqui. Pode repetir, por favor?"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        provider = (self.tts_provider or "deepgram").strip().lower()
        if provider not in ("deepgram", "cartesia"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'deepgram' or 'cartesia'."
            )
        if provider == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        if self.max_tool_depth < 1:
            raise ConfigError("MAX_TOOL_DEPTH must be at least 1.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            deepgram_utterance_end_ms=self.deepgram_utterance_end_ms,
            openai_model=self.openai_model,
            tts_provider=self.tts_provider,
            prompt_file=self.prompt_file,
            max_tool_depth=self.max_tool_depth,
            interruption_min_chars=self.interruption_min_chars,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            from_number_set=bool(self.from_number),
            transfer_number_set=bool(self.transfer_number),
            recording_enabled=self.recording_enabled,
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
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
    config = Config(
        # Server (SERVER is the original deployment's name for the public host)
        public_host=os.getenv("PUBLIC_HOST", os.getenv("SERVER", "")),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        from_number=os.getenv("FROM_NUMBER", ""),
        transfer_number=os.getenv("TRANSFER_NUMBER", ""),
        recording_enabled=_get_bool("RECORDING_ENABLED", False),
        recording_notice=os.getenv("RECORDING_NOTICE", "Esta ligação será gravada."),

        # Dashboard API
        dashboard_username=os.getenv("DASHBOARD_USERNAME", "admin"),
        dashboard_password=os.getenv("DASHBOARD_PASSWORD", "password"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "pt-BR"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4.1-nano"),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 30.0),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "deepgram").strip().lower(),
        deepgram_tts_voice=os.getenv("DEEPGRAM_TTS_VOICE", "aura-asteria-en"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model_id=os.getenv("CARTESIA_MODEL_ID", "sonic-multilingual"),
        cartesia_language=os.getenv("CARTESIA_LANGUAGE", "pt"),
        tts_timeout_seconds=_get_float("TTS_TIMEOUT_SECONDS", 15.0),

        # Conversation
        prompt_file=os.getenv("PROMPT_FILE", "prompt.json"),
        phrase_break_marker=os.getenv("PHRASE_BREAK_MARKER", "•"),
        max_tool_depth=_get_int("MAX_TOOL_DEPTH", 5),
        tool_timeout_seconds=_get_float("TOOL_TIMEOUT_SECONDS", 20.0),
        interruption_min_chars=_get_int("INTERRUPTION_MIN_CHARS", 6),
        apology_text=os.getenv(
            "APOLOGY_TEXT",
            "Desculpe, tive um problema aqui. Pode repetir, por favor?",
        ),
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
