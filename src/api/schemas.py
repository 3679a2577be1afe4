"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CallConfigurationCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    phone_number: str = Field(min_length=1, max_length=32, description="Callee number, E.164.")
    prompt: str = Field(description="Behavior prompt for the assistant on this number.")
    welcome_message: str | None = Field(default=None, description="Greeting played when the call connects.")
    voice_model: str = Field(default="aura-asteria-en", max_length=64)
    is_active: bool = True

    @field_validator("prompt")
    @classmethod
    def prompt_not_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Prompt may not be empty.")
        return text


class CallConfigurationUpdate(BaseModel):
    phone_number: str | None = Field(default=None, min_length=1, max_length=32)
    prompt: str | None = None
    welcome_message: str | None = None
    voice_model: str | None = Field(default=None, max_length=64)
    is_active: bool | None = None

    @field_validator("prompt")
    @classmethod
    def prompt_not_empty(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("Prompt may not be empty.")
        return value.strip() if value is not None else None


class CallConfigurationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    phone_number: str
    prompt: str
    welcome_message: str | None
    voice_model: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
