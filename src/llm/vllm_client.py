"""Client for self-hosted vLLM or TGI compatible inference endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable

import httpx

from config.settings import get_settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)


def parse_sse_line(line: str) -> tuple[bool, str | None]:
    """Parse one server-sent-events line.

    Returns:
        (done, content) where done marks the ``[DONE]`` terminator.
    """

    if not line.startswith("data:"):
        return False, None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return True, None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        LOGGER.warning("Skipping undecodable stream line: %s", data)
        return False, None
    choices = payload.get("choices") or []
    if not choices:
        return False, None
    delta = choices[0].get("delta") or {}
    return False, delta.get("content") or None


class VLLMClient(BaseLLMClient):
    """Minimal streaming client for a self-hosted inference server."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.llm_endpoint:
            raise ValueError("Self-hosted LLM endpoint must be configured.")

        self._endpoint = settings.llm_endpoint.rstrip("/")
        self._model = settings.llm_model
        self._api_key = settings.llm_api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def stream_chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.4,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self._model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": 768,
            "stream": True,
        }

        async with httpx.AsyncClient(timeout=httpx.Timeout(90, read=None)) as client:
            async with client.stream(
                "POST",
                f"{self._endpoint}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    done, chunk = parse_sse_line(line)
                    if done:
                        return
                    if chunk:
                        yield chunk
