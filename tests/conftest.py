from __future__ import annotations

import asyncio
import base64
import json
import os
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from llm.base import BaseLLMClient  # noqa: E402
from speech.transcriber import BaseTranscriber, RecognitionResult  # noqa: E402
from speech.tts import BaseSynthesizer  # noqa: E402


class FakeLLM(BaseLLMClient):
    """Replays scripted replies.

    An Exception in a script is raised mid-stream; a float pauses for that many seconds.
    """

    def __init__(self, *replies: list) -> None:
        self._replies = list(replies)
        self.calls: list[list[dict[str, str]]] = []

    async def stream_chat(self, messages, *, temperature: float = 0.4):
        self.calls.append(list(messages))
        script = self._replies.pop(0) if self._replies else []
        for item in script:
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            yield item


class FakeSynthesizer(BaseSynthesizer):
    """Returns the spoken text as bytes, after an optional per-text delay."""

    def __init__(self, *, delays: dict[str, float] | None = None, failing: set[str] | None = None) -> None:
        self.delays = delays or {}
        self.failing = failing or set()
        self.requests: list[str] = []

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        self.requests.append(text)
        await asyncio.sleep(self.delays.get(text, 0))
        if text in self.failing:
            raise RuntimeError(f"synthesis failed for {text!r}")
        return text.encode("utf-8")


class FakeTranscriber(BaseTranscriber):
    def __init__(self) -> None:
        self.audio: list[bytes] = []
        self.connected = False
        self.closed = False
        self._queue: asyncio.Queue[RecognitionResult | None] = asyncio.Queue()

    def push(self, text: str, *, is_final: bool) -> None:
        self._queue.put_nowait(RecognitionResult(text=text, is_final=is_final))

    async def connect(self) -> None:
        self.connected = True

    async def send(self, audio: bytes) -> None:
        self.audio.append(audio)

    async def results(self):
        while True:
            result = await self._queue.get()
            if result is None:
                return
            yield result

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str | None]] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls.append((code, reason))

    def frames(self) -> list[dict]:
        return [json.loads(item) for item in self.sent]

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.frames()]

    def spoken(self) -> list[str]:
        return [
            base64.b64decode(frame["media"]["payload"]).decode("utf-8", errors="replace")
            for frame in self.frames()
            if frame["event"] == "media"
        ]

    def marks(self) -> list[str]:
        return [frame["mark"]["name"] for frame in self.frames() if frame["event"] == "mark"]


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[bytes, str]] = []
        self.clears = 0

    def send_audio(self, audio: bytes, mark: str) -> None:
        self.sent.append((audio, mark))

    def clear(self) -> None:
        self.clears += 1

    @property
    def audio(self) -> list[bytes]:
        return [audio for audio, _ in self.sent]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    tmp_dir = tmp_path_factory.mktemp("runtime")
    db_path = tmp_dir / "voice_relay_test.db"

    # Must be set before importing modules that create the SQLAlchemy engine.
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{db_path.as_posix()}"
    os.environ["DATA_DIR"] = str(tmp_dir)
    # Ensure tests can rely on the schema existing without running Alembic.
    os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()

    # Ensure clean import with the test DB settings.
    for module_name in [
        "db.base",
        "db.models",
        "db.repository",
        "api.dependencies",
        "api.routes",
        "api.twilio_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
