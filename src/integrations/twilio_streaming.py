"""Twilio Media Streams message model and outbound transport."""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from pipeline.errors import ProtocolViolationError

LOGGER = logging.getLogger(__name__)


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConnectedFrame(_Frame):
    event: Literal["connected"]
    protocol: str | None = None


class StartMetadata(_Frame):
    stream_sid: str = Field(alias="streamSid")
    call_sid: str = Field(alias="callSid")
    account_sid: str | None = Field(default=None, alias="accountSid")
    custom_parameters: dict[str, str] = Field(default_factory=dict, alias="customParameters")


class StartFrame(_Frame):
    event: Literal["start"]
    stream_sid: str = Field(alias="streamSid")
    start: StartMetadata

    @property
    def caller(self) -> str | None:
        return self.start.custom_parameters.get("caller")

    @property
    def callee(self) -> str | None:
        return self.start.custom_parameters.get("callee")


class MediaPayload(_Frame):
    payload: str
    track: str | None = None


class MediaFrame(_Frame):
    event: Literal["media"]
    stream_sid: str | None = Field(default=None, alias="streamSid")
    media: MediaPayload


class MarkName(_Frame):
    name: str


class MarkFrame(_Frame):
    event: Literal["mark"]
    stream_sid: str | None = Field(default=None, alias="streamSid")
    mark: MarkName


class StopFrame(_Frame):
    event: Literal["stop"]
    stream_sid: str | None = Field(default=None, alias="streamSid")


class DtmfFrame(_Frame):
    event: Literal["dtmf"]
    dtmf: dict[str, Any] = Field(default_factory=dict)


InboundFrame = Annotated[
    Union[ConnectedFrame, StartFrame, MediaFrame, MarkFrame, StopFrame, DtmfFrame],
    Field(discriminator="event"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)


class OutboundMedia(_Frame):
    event: Literal["media"] = "media"
    stream_sid: str = Field(alias="streamSid")
    media: MediaPayload


class OutboundMark(_Frame):
    event: Literal["mark"] = "mark"
    stream_sid: str = Field(alias="streamSid")
    mark: MarkName


class OutboundClear(_Frame):
    event: Literal["clear"] = "clear"
    stream_sid: str = Field(alias="streamSid")


OutboundFrame = Union[OutboundMedia, OutboundMark, OutboundClear]


def parse_twilio_ws_message(text: str) -> InboundFrame:
    """Parse one inbound Media Streams message.

    Raises:
        ProtocolViolationError: if the message is not a known, well-formed frame.
    """

    try:
        return _INBOUND_ADAPTER.validate_json(text)
    except ValidationError as exc:
        raise ProtocolViolationError(f"Malformed Twilio frame: {exc.error_count()} error(s)") from exc


def encode_frame(frame: OutboundFrame) -> str:
    return frame.model_dump_json(by_alias=True, exclude_none=True)


class TextWebSocket(Protocol):
    async def send_text(self, data: str) -> None:  # pragma: no cover - protocol stub
        ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None:  # pragma: no cover
        ...


class TwilioTransport:
    """Outbound half of one Media Streams connection.

    Frames are queued synchronously and written by a single writer task, so the
    order in which the pipeline emits them is the order Twilio receives them.
    """

    def __init__(self, websocket: TextWebSocket) -> None:
        self._ws = websocket
        self._outbox: asyncio.Queue[OutboundFrame | None] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._closed = False
        self._broken = False
        self.stream_sid: str | None = None
        self.on_error: Callable[[BaseException], None] | None = None

    def bind(self, stream_sid: str) -> None:
        self.stream_sid = stream_sid

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name="twilio-writer")

    def send_audio(self, audio: bytes, mark: str) -> None:
        if self._closed or self._broken or not self.stream_sid:
            LOGGER.warning("Dropping outbound audio: transport not bound or closed")
            return
        payload = base64.b64encode(audio).decode("ascii")
        self._outbox.put_nowait(OutboundMedia(stream_sid=self.stream_sid, media=MediaPayload(payload=payload)))
        self._outbox.put_nowait(OutboundMark(stream_sid=self.stream_sid, mark=MarkName(name=mark)))

    def clear(self) -> None:
        """Drop unsent audio and tell Twilio to discard what it has buffered."""

        if self._closed or self._broken or not self.stream_sid:
            return
        dropped = 0
        while True:
            try:
                frame = self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if frame is None:
                # Keep the shutdown sentinel last.
                self._outbox.put_nowait(OutboundClear(stream_sid=self.stream_sid))
                self._outbox.put_nowait(None)
                return
            if isinstance(frame, OutboundMedia):
                dropped += 1
        if dropped:
            LOGGER.debug("Dropped %s unsent media frames", dropped)
        self._outbox.put_nowait(OutboundClear(stream_sid=self.stream_sid))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(None)
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)
        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError:
            # Already closed by the peer.
            LOGGER.debug("WebSocket already closed")

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is None:
                return
            try:
                await self._ws.send_text(encode_frame(frame))
            except Exception as exc:
                LOGGER.critical("Failed to write to Twilio stream: %s", exc)
                self._broken = True
                if self.on_error is not None:
                    self.on_error(exc)
                return
