"""Text-to-speech synthesis for the narrowband caller leg."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from config.settings import get_settings
from pipeline.errors import SynthesisFailedError

LOGGER = logging.getLogger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class BaseSynthesizer(ABC):
    """Interface for all text-to-speech synthesizers.

    Implementations must return raw G.711 mu-law audio at 8 kHz so the bytes can
    be forwarded to the caller without transcoding.
    """

    @abstractmethod
    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        """Synthesize speech for the given text."""


class DeepgramSynthesizer(BaseSynthesizer):
    """Deepgram Aura voices over the REST speak endpoint."""

    def __init__(self, voice: str | None = None) -> None:
        settings = get_settings()
        if not settings.deepgram_api_key:
            raise ValueError("Deepgram API key must be configured for speech synthesis.")

        self._api_key = settings.deepgram_api_key
        self._voice = voice or settings.default_voice_model
        self._timeout = settings.synthesis_timeout_seconds

    @property
    def voice(self) -> str:
        return self._voice

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        params = {
            "model": voice or self._voice,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    DEEPGRAM_SPEAK_URL,
                    params=params,
                    json={"text": text},
                    headers=headers,
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SynthesisFailedError(f"Deepgram speak request failed: {exc}") from exc

        if not response.content:
            raise SynthesisFailedError("Deepgram returned an empty audio payload.")
        return response.content


def build_synthesizer(voice_model: str | None = None) -> BaseSynthesizer:
    """Factory returning the configured synthesizer for one call."""

    return DeepgramSynthesizer(voice=voice_model)
