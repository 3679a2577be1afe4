"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/voice_relay.db",
        description="SQLAlchemy connection string.",
    )
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_endpoint: str | None = Field(
        default=None, description="Base URL for the provider (optional for OpenAI)."
    )
    llm_api_key: str | None = Field(default=None)
    llm_model: str = Field(default="gpt-4o")
    llm_temperature: float = Field(default=0.4, ge=0.0, le=2.0)

    # Deepgram (speech recognition + synthesis)
    deepgram_api_key: str | None = Field(default=None)
    stt_model: str = Field(default="nova-2")
    default_voice_model: str = Field(default="aura-asteria-en")
    synthesis_timeout_seconds: float = Field(default=30.0, gt=0)

    # Reply fragmenting
    fragment_break_marker: str = Field(
        default="•",
        description="Marker the model inserts at natural pauses where a reply may be split.",
    )
    max_fragment_chars: int = Field(
        default=220,
        ge=20,
        description="Close a fragment at the last whitespace once it grows past this size.",
    )

    # Playback / barge-in
    barge_in_min_chars: int = Field(
        default=3,
        ge=1,
        description="Interim transcripts must be longer than this to interrupt playback.",
    )
    silence_placeholder_ms: int = Field(default=400, ge=20)
    fragment_stall_timeout_seconds: float = Field(
        default=8.0,
        gt=0,
        description="Skip a missing fragment once later ones have waited this long.",
    )
    max_buffered_fragments: int = Field(default=64, ge=1)

    # Twilio (Voice)
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_say_language: str = Field(default="en-US")
    twilio_call_notice: str = Field(default="This call may be monitored or recorded.")
    twilio_unavailable_message: str = Field(
        default="We are unable to take your call right now. Goodbye."
    )
    default_greeting: str = Field(default="Hello! • How can I help you today?")

    data_dir: Path = Field(default=Path("./data"))

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("fragment_break_marker")
    @classmethod
    def marker_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("fragment_break_marker may not be blank.")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
