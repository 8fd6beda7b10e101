"""
Tests for the per-socket media stream handler.
"""

import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect

from src.voiceorder.media_stream import MediaStreamHandler
from src.voiceorder.session import CallRegistry


def _media(sid, payload=b"\x10" * 160, track="inbound"):
    return json.dumps({
        "event": "media",
        "streamSid": sid,
        "media": {"track": track, "payload": base64.b64encode(payload).decode()},
    })


def _start(sid, call_sid="CA1"):
    return json.dumps({"event": "start", "streamSid": sid, "start": {"callSid": call_sid, "tracks": ["inbound"]}})


@pytest.fixture
def websocket():
    ws = MagicMock()
    ws.send_text = AsyncMock()
    ws.receive_text = AsyncMock()
    return ws


@pytest.fixture
def controller():
    controller = MagicMock()
    controller.handle_frame = AsyncMock()
    return controller


@pytest.fixture
def registry():
    return CallRegistry()


@pytest.fixture
def handler(websocket, registry, controller):
    return MediaStreamHandler(websocket, registry, controller, metrics=SimpleNamespace(total_calls=0, errors=0))


class TestMessageRouting:

    @pytest.mark.asyncio
    async def test_start_media_stop(self, handler, registry, controller, twilio_start_message,
                                    twilio_media_message, twilio_stop_message, sample_ulaw_audio):
        await handler.handle_message(twilio_start_message)
        session = registry.get("MZ123456")
        assert session is not None
        assert session.call_sid == "CA789012"
        assert handler.metrics.total_calls == 1

        await handler.handle_message(twilio_media_message)
        controller.handle_frame.assert_awaited_once_with(session, sample_ulaw_audio)

        await handler.handle_message(twilio_stop_message)
        assert registry.get("MZ123456") is None
        assert session.closed
        assert handler.stream_sid is None

    @pytest.mark.asyncio
    async def test_session_send_writes_to_socket(self, handler, registry, websocket, twilio_start_message):
        await handler.handle_message(twilio_start_message)

        await registry.get("MZ123456").send('{"event":"clear"}')

        websocket.send_text.assert_awaited_once_with('{"event":"clear"}')

    @pytest.mark.asyncio
    async def test_mark_routed_to_controller(self, handler, registry, controller):
        await handler.handle_message(_start("MZ1"))
        await handler.handle_message(json.dumps({"event": "mark", "streamSid": "MZ1", "mark": {"name": "reply-1"}}))

        controller.on_mark.assert_called_once_with(registry.get("MZ1"), "reply-1")

    @pytest.mark.asyncio
    async def test_malformed_messages_dropped(self, handler, controller):
        await handler.handle_message("{not json")
        await handler.handle_message(json.dumps({"event": "media", "streamSid": "MZ1", "media": {}}))
        await handler.handle_message(json.dumps({"event": "bogus"}))

        assert handler.dropped_messages == 3
        controller.handle_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_media_for_unknown_call_dropped(self, handler, controller):
        await handler.handle_message(_media("MZ-unknown"))

        assert handler.dropped_messages == 1
        controller.handle_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outbound_track_ignored(self, handler, controller):
        await handler.handle_message(_start("MZ1"))
        await handler.handle_message(_media("MZ1", track="outbound"))

        controller.handle_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_two_calls_route_independently(self, websocket, registry, controller):
        first = MediaStreamHandler(websocket, registry, controller)
        second = MediaStreamHandler(websocket, registry, controller)
        await first.handle_message(_start("MZ1"))
        await second.handle_message(_start("MZ2"))

        await second.handle_message(_media("MZ2"))

        session = controller.handle_frame.await_args.args[0]
        assert session is registry.get("MZ2")

        await first.handle_message(json.dumps({"event": "stop", "streamSid": "MZ1"}))
        assert registry.get("MZ2") is not None
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_connected_and_dtmf_are_logged_only(self, handler, registry, controller):
        await handler.handle_message(json.dumps({"event": "connected", "protocol": "Call"}))
        await handler.handle_message(_start("MZ1"))
        await handler.handle_message(json.dumps({"event": "dtmf", "streamSid": "MZ1", "dtmf": {"digit": "1"}}))

        assert handler.dropped_messages == 0
        controller.handle_frame.assert_not_awaited()


class TestReceiveLoop:

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(self, handler, registry, websocket):
        websocket.receive_text.side_effect = [_start("MZ1"), _media("MZ1"), WebSocketDisconnect()]

        await handler.run()

        assert registry.get("MZ1") is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_end_the_loop(self, handler, registry, controller, websocket):
        controller.handle_frame.side_effect = [RuntimeError("boom"), None]
        websocket.receive_text.side_effect = [
            _start("MZ1"), _media("MZ1"), _media("MZ1"), WebSocketDisconnect(),
        ]

        await handler.run()

        assert controller.handle_frame.await_count == 2
        assert handler.metrics.errors == 1
        assert len(registry) == 0
