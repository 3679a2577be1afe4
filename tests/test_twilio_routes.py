from __future__ import annotations

import base64
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeLLM, FakeSynthesizer, FakeTranscriber
from config.settings import Settings
from pipeline.errors import ConfigurationNotFoundError
from pipeline.schemas import CallProfile
from pipeline.session import SessionDependencies

PROFILE = CallProfile(
    configuration_id="acme",
    phone_number="+15550001111",
    prompt="You answer the phone for Acme Plumbing.",
    greeting="Welcome to Acme.",
    voice_model="aura-asteria-en",
)


def _start_message(callee: str) -> str:
    return json.dumps(
        {
            "event": "start",
            "streamSid": "MZ1",
            "start": {
                "streamSid": "MZ1",
                "callSid": "CA1",
                "customParameters": {"caller": "+15559998888", "callee": callee},
            },
        }
    )


def _deps(tmp_path) -> SessionDependencies:
    async def lookup(callee: str) -> CallProfile:
        if callee != PROFILE.phone_number:
            raise ConfigurationNotFoundError(f"No call configuration for number {callee}")
        return PROFILE

    return SessionDependencies(
        lookup_profile=lookup,
        llm_factory=lambda: FakeLLM(),
        synthesizer_factory=lambda voice: FakeSynthesizer(),
        transcriber_factory=FakeTranscriber,
        settings=Settings(data_dir=tmp_path),
    )


def test_voice_webhook_connects_call_to_media_stream(app):
    with TestClient(app) as client:
        resp = client.post(
            "/api/twilio/voice",
            data={"CallSid": "CA111", "From": "+15559998888", "To": "+15550001111"},
        )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    body = resp.text
    assert "<Connect><Stream url=\"ws://testserver/api/twilio/stream\">" in body
    assert "<Parameter name=\"caller\" value=\"+15559998888\" />" in body
    assert "<Parameter name=\"callee\" value=\"+15550001111\" />" in body
    # Notice before the stream, fallback message after it.
    assert body.index("may be monitored") < body.index("<Connect>") < body.index("unable to take your call")


def test_voice_webhook_uses_public_base_url(app, monkeypatch):
    from config.settings import get_settings

    monkeypatch.setattr(get_settings(), "public_base_url", "https://voice.example.com/")

    with TestClient(app) as client:
        resp = client.post("/api/twilio/voice", data={"CallSid": "CA111", "To": "+15550001111"})

    assert "wss://voice.example.com/api/twilio/stream" in resp.text


def test_media_stream_plays_greeting_and_closes_on_stop(app, tmp_path):
    import api.twilio_routes as twilio_routes

    app.dependency_overrides[twilio_routes.get_session_dependencies] = lambda: _deps(tmp_path)

    with TestClient(app) as client:
        with client.websocket_connect("/api/twilio/stream") as ws:
            ws.send_text(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
            ws.send_text(_start_message("+15550001111"))

            media = ws.receive_json()
            mark = ws.receive_json()
            assert media["event"] == "media"
            assert media["streamSid"] == "MZ1"
            assert base64.b64decode(media["media"]["payload"]) == b"Welcome to Acme."
            assert mark["event"] == "mark"

            ws.send_text("this is not a twilio frame")
            ws.send_text(json.dumps({"event": "mark", "streamSid": "MZ1", "mark": {"name": mark["mark"]["name"]}}))
            ws.send_text(json.dumps({"event": "stop", "streamSid": "MZ1"}))

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
            assert exc_info.value.code == 1000

    app.dependency_overrides.clear()


def test_media_stream_rejects_unconfigured_number(app, tmp_path):
    import api.twilio_routes as twilio_routes

    app.dependency_overrides[twilio_routes.get_session_dependencies] = lambda: _deps(tmp_path)

    with TestClient(app) as client:
        with client.websocket_connect("/api/twilio/stream") as ws:
            ws.send_text(_start_message("+19999999999"))

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
            assert exc_info.value.code == 1008

    app.dependency_overrides.clear()
