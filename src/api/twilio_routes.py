"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that connects an inbound call to a Media Stream.
- The Media Streams WebSocket that runs one call session per connection.
"""

from __future__ import annotations

import asyncio
import logging
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, Request, Response, WebSocket, WebSocketDisconnect

from api.dependencies import get_session_dependencies
from config.settings import get_settings
from integrations.twilio_streaming import TwilioTransport, parse_twilio_ws_message
from pipeline.errors import ProtocolViolationError
from pipeline.events import StopRequested, TransportFailed
from pipeline.session import CallSession, SessionDependencies

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
    else:
        # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
        base = str(request.base_url).rstrip("/")
    return _to_ws_url(f"{base}/api/twilio/stream")


def _twiml_connect_stream(
    *,
    stream_url: str,
    caller: str,
    callee: str,
    notice: str,
    unavailable: str,
    language: str,
) -> str:
    lang = quoteattr(language)
    notice_xml = f"<Say language={lang}>{escape(notice)}</Say>" if notice else ""
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"{notice_xml}"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)}>"
        f"<Parameter name=\"caller\" value={quoteattr(caller)} />"
        f"<Parameter name=\"callee\" value={quoteattr(callee)} />"
        "</Stream>"
        "</Connect>"
        # Only reached when the stream ends without the call being hung up.
        f"<Say language={lang}>{escape(unavailable)}</Say>"
        "</Response>"
    )


@router.post("/voice")
async def twilio_voice_webhook(request: Request) -> Response:
    settings = get_settings()
    form = await request.form()

    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    caller = str(form.get("From") or "").strip()
    callee = str(form.get("To") or "").strip()
    LOGGER.info("Incoming call %s from %s to %s", call_sid, caller or "unknown", callee or "unknown")

    return _twiml_response(
        _twiml_connect_stream(
            stream_url=_stream_url(request),
            caller=caller,
            callee=callee,
            notice=settings.twilio_call_notice,
            unavailable=settings.twilio_unavailable_message,
            language=settings.twilio_say_language,
        )
    )


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    deps: SessionDependencies = Depends(get_session_dependencies),
) -> None:
    await websocket.accept()
    session = CallSession(TwilioTransport(websocket), deps)
    runner = asyncio.create_task(session.run(), name=f"session-{session.info.session_id}")
    try:
        while not runner.done():
            message = await websocket.receive_text()
            try:
                frame = parse_twilio_ws_message(message)
            except ProtocolViolationError as exc:
                LOGGER.warning("Ignoring malformed Twilio frame: %s", exc.detail)
                continue
            session.handle_frame(frame)
    except WebSocketDisconnect:
        session.post(StopRequested(reason="disconnect"))
    except Exception as exc:
        LOGGER.error("Media stream receive failed: %s", exc)
        session.post(TransportFailed(error=exc))
    finally:
        await runner
