"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from config.settings import get_settings
from db.repository import CallConfigurationRepository

if TYPE_CHECKING:  # pragma: no cover
    from pipeline.session import SessionDependencies


def get_repository() -> CallConfigurationRepository:
    return CallConfigurationRepository()


def get_session_dependencies() -> SessionDependencies:
    # Lazy imports keep provider SDKs out of the CRUD-only import path.
    from llm.factory import build_llm_client
    from pipeline.session import SessionDependencies
    from speech.transcriber import build_transcriber
    from speech.tts import build_synthesizer

    return SessionDependencies(
        lookup_profile=get_repository().get_active_profile,
        llm_factory=build_llm_client,
        synthesizer_factory=build_synthesizer,
        transcriber_factory=build_transcriber,
        settings=get_settings(),
    )
