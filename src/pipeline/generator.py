"""Streaming reply generation split into ordered fragments."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from llm.base import BaseLLMClient
from pipeline.errors import GenerationFailedError
from pipeline.events import FragmentReady
from prompts.loader import load_prompt

LOGGER = logging.getLogger(__name__)


def build_system_prompt(behavior_prompt: str, marker: str) -> str:
    """Combine a configured behavior prompt with the fragmenting instructions."""

    instructions = load_prompt("fragmenting.txt").replace("{marker}", marker)
    return f"{behavior_prompt.strip()}\n\n{instructions}"


class FragmentSplitter:
    """Accumulates streamed tokens and cuts them at break markers."""

    def __init__(self, marker: str, *, max_chars: int = 220) -> None:
        self._marker = marker
        self._max_chars = max_chars
        self._buffer = ""

    def feed(self, token: str) -> list[str]:
        self._buffer += token
        pieces: list[str] = []

        while True:
            pos = self._buffer.find(self._marker)
            if pos < 0:
                break
            end = pos + len(self._marker)
            pieces.append(self._buffer[:end])
            self._buffer = self._buffer[end:]

        # No marker in sight: fall back to a size-based cut at the last word boundary.
        if len(self._buffer) > self._max_chars:
            cut = self._buffer.rfind(" ", 0, self._max_chars)
            if cut <= 0:
                cut = self._max_chars
            pieces.append(self._buffer[:cut])
            self._buffer = self._buffer[cut:]

        return [piece.strip() for piece in pieces if self._has_content(piece)]

    def flush(self) -> str | None:
        tail, self._buffer = self._buffer, ""
        return tail.strip() if self._has_content(tail) else None

    def _has_content(self, text: str) -> bool:
        return bool(text.replace(self._marker, "").strip())


class ResponseGenerator:
    """Owns the conversation context of one call and turns utterances into fragments."""

    def __init__(
        self,
        llm: BaseLLMClient,
        *,
        system_prompt: str,
        greeting: str | None = None,
        break_marker: str = "•",
        max_fragment_chars: int = 220,
        temperature: float = 0.4,
    ) -> None:
        self._llm = llm
        self._marker = break_marker
        self._max_fragment_chars = max_fragment_chars
        self._temperature = temperature
        self._history: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
        if greeting:
            self._history.append({"role": "assistant", "content": greeting})
        self._cursor = 0
        self.last_reply: str | None = None

    @property
    def history(self) -> list[dict[str, str]]:
        return [dict(message) for message in self._history]

    @property
    def cursor(self) -> int:
        return self._cursor

    async def generate(self, text: str, interaction: int, epoch: int) -> AsyncIterator[FragmentReady]:
        """Stream one reply, yielding fragments with indices 0, 1, 2, ... for ``epoch``.

        Raises:
            GenerationFailedError: if the model call fails or the stream aborts.
        """

        self._cursor = 0
        self.last_reply = None
        self._history.append({"role": "user", "content": text})
        splitter = FragmentSplitter(self._marker, max_chars=self._max_fragment_chars)
        parts: list[str] = []

        LOGGER.debug("Interaction %s (epoch %s): %s", interaction, epoch, text)
        try:
            async for token in self._llm.stream_chat(list(self._history), temperature=self._temperature):
                parts.append(token)
                for piece in splitter.feed(token):
                    yield self._next_fragment(epoch, piece)
        except Exception as exc:
            LOGGER.error("LLM stream failed during interaction %s: %s", interaction, exc)
            raise GenerationFailedError(str(exc) or None) from exc

        tail = splitter.flush()
        if tail:
            yield self._next_fragment(epoch, tail)

        reply = "".join(parts).strip()
        self.last_reply = reply
        if reply:
            self._history.append({"role": "assistant", "content": reply})
        LOGGER.debug("Context length after interaction %s: %s", interaction, len(self._history))

    def _next_fragment(self, epoch: int, text: str) -> FragmentReady:
        fragment = FragmentReady(epoch=epoch, index=self._cursor, text=text)
        self._cursor += 1
        return fragment
