"""Streaming speech recognition for the caller leg (Deepgram live transcription)."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import websockets

from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass(frozen=True, slots=True)
class RecognitionResult:
    """Recognizer output; interim results are partial hypotheses of the current speech."""

    text: str
    is_final: bool


class TranscriptAccumulator:
    """Turns Deepgram result messages into interim hypotheses and complete utterances.

    Final segments are collected until Deepgram flags ``speech_final`` (a natural
    pause). If an ``UtteranceEnd`` arrives first, whatever was collected so far is
    emitted instead, unless the speech had already been finalized.
    """

    def __init__(self) -> None:
        self._final_text = ""
        self._speech_final = False

    def handle(self, message: dict[str, Any]) -> RecognitionResult | None:
        kind = message.get("type")

        if kind == "UtteranceEnd":
            if self._speech_final:
                LOGGER.debug("Speech was already final when UtteranceEnd was received")
                return None
            return self._take_utterance()

        if kind != "Results":
            return None

        alternatives = (message.get("channel") or {}).get("alternatives") or []
        text = str(alternatives[0].get("transcript") or "") if alternatives else ""

        if message.get("is_final") is True and text.strip():
            self._final_text += f" {text}"
            if message.get("speech_final") is True:
                self._speech_final = True
                return self._take_utterance()
            self._speech_final = False
            return None

        if not text.strip():
            return None
        return RecognitionResult(text=text, is_final=False)

    def _take_utterance(self) -> RecognitionResult | None:
        utterance = self._final_text.strip()
        self._final_text = ""
        if not utterance:
            return None
        return RecognitionResult(text=utterance, is_final=True)


class BaseTranscriber(ABC):
    """Interface for streaming recognizers fed with raw mu-law audio."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the recognition stream."""

    @abstractmethod
    async def send(self, audio: bytes) -> None:
        """Forward one chunk of caller audio."""

    @abstractmethod
    def results(self) -> AsyncIterator[RecognitionResult]:
        """Yield recognition results until the stream closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the recognition stream."""


class DeepgramTranscriber(BaseTranscriber):
    """Live transcription over Deepgram's WebSocket API."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.deepgram_api_key:
            raise ValueError("Deepgram API key must be configured for speech recognition.")

        query = urlencode(
            {
                "encoding": "mulaw",
                "sample_rate": 8000,
                "model": settings.stt_model,
                "punctuate": "true",
                "interim_results": "true",
                "endpointing": 200,
                "utterance_end_ms": 1000,
            }
        )
        self._url = f"{DEEPGRAM_LISTEN_URL}?{query}"
        self._headers = {"Authorization": f"Token {settings.deepgram_api_key}"}
        self._ws: Any = None

    async def connect(self) -> None:
        self._ws = await websockets.connect(
            self._url,
            additional_headers=self._headers,
            ping_interval=20,
            ping_timeout=20,
        )
        LOGGER.info("Deepgram live transcription connected")

    async def send(self, audio: bytes) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(audio)
        except websockets.ConnectionClosed as exc:
            LOGGER.critical("Deepgram connection closed while sending audio: %s", exc)

    async def results(self) -> AsyncIterator[RecognitionResult]:
        if self._ws is None:
            return
        accumulator = TranscriptAccumulator()
        async for message in self._ws:
            if isinstance(message, bytes):
                continue
            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                LOGGER.warning("Deepgram sent undecodable message: %s", message)
                continue
            if payload.get("type") == "Metadata":
                LOGGER.debug("Deepgram metadata: %s", payload)
                continue
            result = accumulator.handle(payload)
            if result is not None:
                yield result

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.send(json.dumps({"type": "CloseStream"}))
        except websockets.ConnectionClosed:
            pass
        await ws.close()
        LOGGER.info("Deepgram live transcription closed")


def build_transcriber() -> BaseTranscriber:
    """Factory returning the configured streaming recognizer."""

    return DeepgramTranscriber()
