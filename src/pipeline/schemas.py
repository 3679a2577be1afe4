"""Pydantic schemas and plain records shared by the call pipeline."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, field_validator


class CallProfile(BaseModel):
    """Behavioral configuration resolved for the callee of one call."""

    model_config = ConfigDict(frozen=True)

    configuration_id: str
    phone_number: str
    prompt: str
    greeting: str | None = None
    voice_model: str
    is_active: bool = True

    @field_validator("prompt")
    @classmethod
    def prompt_not_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Prompt may not be empty.")
        return text


class SessionState(str, enum.Enum):
    INIT = "init"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(slots=True)
class SessionInfo:
    """Identity and counters of a single call session."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    call_sid: str | None = None
    stream_sid: str | None = None
    caller: str | None = None
    callee: str | None = None
    state: SessionState = SessionState.INIT
    epoch: int = 0
    interaction_count: int = 0
