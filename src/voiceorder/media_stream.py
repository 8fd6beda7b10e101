"""
Twilio Media Streams socket handling.

One `MediaStreamHandler` per WebSocket. It parses each message, routes it to
the call's session through the shared `CallRegistry` and the `TurnController`,
and tears the call down on `stop` or when the socket goes away.

Malformed messages and messages for unknown calls are dropped.
"""

from typing import Any, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from src.voiceorder.session import CallRegistry, CallSession
from src.voiceorder.turn import TurnController
from src.voiceorder.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioStopEvent,
    event_stream_sid,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class MediaStreamHandler:
    """Bridges one Twilio media socket to the call registry."""

    def __init__(
        self,
        websocket: Any,
        registry: CallRegistry,
        controller: TurnController,
        *,
        metrics: Optional[Any] = None,
    ):
        self.websocket = websocket
        self.registry = registry
        self.controller = controller
        self.metrics = metrics
        self.stream_sid: Optional[str] = None
        self.dropped_messages = 0

    async def send(self, message: str) -> None:
        await self.websocket.send_text(message)

    def _drop(self, reason: str, **kw: Any) -> None:
        self.dropped_messages += 1
        logger.debug("Dropping Twilio message", reason=reason, **kw)

    def _session_for(self, event: Any) -> Optional[CallSession]:
        return self.registry.get(event_stream_sid(event) or self.stream_sid)

    async def handle_message(self, raw: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            self._drop("malformed", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.info("Twilio media stream connected")
            return

        if event_type == TwilioEventType.START:
            assert isinstance(event, TwilioStartEvent)
            self.stream_sid = event.stream_sid
            self.registry.create(event.stream_sid, self.send, call_sid=event.call_sid)
            if self.metrics is not None:
                self.metrics.total_calls += 1
            logger.info(
                "Media stream started",
                stream_sid=event.stream_sid,
                call_sid=event.call_sid,
                tracks=event.tracks,
            )
            return

        if event_type == TwilioEventType.MEDIA:
            assert isinstance(event, TwilioMediaEvent)
            if event.track and event.track != "inbound":
                return
            session = self._session_for(event)
            if session is None:
                self._drop("unknown_call", stream_sid=event.stream_sid)
                return
            await self.controller.handle_frame(session, event.payload)
            return

        if event_type == TwilioEventType.MARK:
            assert isinstance(event, TwilioMarkEvent)
            session = self._session_for(event)
            if session is None:
                self._drop("unknown_call", stream_sid=event.stream_sid)
                return
            self.controller.on_mark(session, event.name)
            return

        if event_type == TwilioEventType.DTMF:
            assert isinstance(event, TwilioDTMFEvent)
            logger.info("DTMF received", stream_sid=event.stream_sid or self.stream_sid, digit=event.digit)
            return

        if event_type == TwilioEventType.STOP:
            assert isinstance(event, TwilioStopEvent)
            sid = event.stream_sid or self.stream_sid
            if not sid or self.registry.remove(sid) is None:
                self._drop("unknown_call", stream_sid=sid)
            if sid == self.stream_sid:
                self.stream_sid = None
            logger.info("Media stream stopped", stream_sid=sid)

    def close(self) -> None:
        """Socket is gone: same cleanup as `stop`."""
        if self.stream_sid:
            self.registry.remove(self.stream_sid)
            self.stream_sid = None

    async def run(self) -> None:
        """Receive loop. Per-message errors are logged and skipped."""
        try:
            while True:
                try:
                    message = await self.websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info("WebSocket disconnected", stream_sid=self.stream_sid)
                    break

                try:
                    await self.handle_message(message)
                except Exception as e:
                    logger.error(
                        "Error handling WebSocket message",
                        stream_sid=self.stream_sid,
                        error=str(e),
                        exc_info=True,
                    )
                    if self.metrics is not None:
                        self.metrics.errors += 1
        finally:
            self.close()


async def serve_media_stream(
    websocket: WebSocket,
    registry: CallRegistry,
    controller: TurnController,
    *,
    metrics: Optional[Any] = None,
) -> None:
    await websocket.accept()
    handler = MediaStreamHandler(websocket, registry, controller, metrics=metrics)
    await handler.run()
