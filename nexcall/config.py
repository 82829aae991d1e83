"""
Environment-driven settings for the NexCall backend.

Every value comes from the process environment (optionally populated from a
.env file by python-dotenv in main.py). Nothing here crashes when a provider
is not configured - the services degrade gracefully and report it.

Python 3.9 compatible - uses typing.Optional
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


@dataclass(frozen=True)
class Settings:
    """Snapshot of the runtime configuration."""

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_summary_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 4.0
    reply_temperature: float = 0.5
    reply_max_tokens: int = 300
    summary_temperature: float = 0.3
    summary_max_tokens: int = 200

    # Twilio
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_timeout_seconds: float = 5.0
    webhook_base_url: str = ""

    # Call flow
    transfer_number: str = "+33123456789"
    twiml_voice: str = "Polly.Joanna"
    twiml_language: str = "fr-FR"
    gather_timeout_seconds: int = 5
    default_phone_region: str = "FR"

    # Storage
    database_url: str = "sqlite+aiosqlite:///./nexcall.db"
    sql_echo: bool = False
    persistence_timeout_seconds: float = 2.0
    conversation_ttl_seconds: float = 3600.0

    debug: bool = False

    @property
    def gather_action_url(self) -> str:
        """Absolute URL Twilio posts gathered speech back to."""
        return f"{self.webhook_base_url.rstrip('/')}/twiml"

    @classmethod
    def from_env(cls) -> "Settings":
        openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=openai_model,
            openai_summary_model=os.getenv("OPENAI_SUMMARY_MODEL", openai_model),
            openai_timeout_seconds=_env_float("OPENAI_TIMEOUT_SECONDS", 4.0),
            reply_temperature=_env_float("OPENAI_REPLY_TEMPERATURE", 0.5),
            reply_max_tokens=_env_int("OPENAI_REPLY_MAX_TOKENS", 300),
            summary_temperature=_env_float("OPENAI_SUMMARY_TEMPERATURE", 0.3),
            summary_max_tokens=_env_int("OPENAI_SUMMARY_MAX_TOKENS", 200),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER"),
            twilio_timeout_seconds=_env_float("TWILIO_TIMEOUT_SECONDS", 5.0),
            webhook_base_url=os.getenv("WEBHOOK_BASE_URL", ""),
            transfer_number=os.getenv("TRANSFER_NUMBER", "+33123456789"),
            twiml_voice=os.getenv("TWIML_VOICE", "Polly.Joanna"),
            twiml_language=os.getenv("TWIML_LANGUAGE", "fr-FR"),
            gather_timeout_seconds=_env_int("GATHER_TIMEOUT_SECONDS", 5),
            default_phone_region=os.getenv("DEFAULT_PHONE_REGION", "FR"),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./nexcall.db"),
            sql_echo=_env_bool("SQL_ECHO"),
            persistence_timeout_seconds=_env_float("PERSISTENCE_TIMEOUT_SECONDS", 2.0),
            conversation_ttl_seconds=_env_float("CONVERSATION_TTL_SECONDS", 3600.0),
            debug=_env_bool("DEBUG"),
        )


def mask_secret(value: Optional[str]) -> str:
    """Mask a secret showing only the last 4 chars."""
    if not value:
        return "(not set)"
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the Settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
