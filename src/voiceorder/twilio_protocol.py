"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (used on barge-in)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start") or {}
        stream_sid = message.get("streamSid") or start.get("streamSid") or ""
        if not stream_sid:
            raise ValueError("start event without streamSid")
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event. `payload` is decoded mu-law bytes."""
    stream_sid: str
    payload: bytes
    track: str = "inbound"
    chunk: int = 0
    timestamp: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media") or {}
        payload_b64 = media.get("payload") or message.get("payload")
        if not payload_b64:
            raise ValueError("media event without payload")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"media payload is not base64: {e}") from e

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            payload=payload,
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop") or {}
        return cls(stream_sid=message.get("streamSid") or stop.get("streamSid") or "")


TwilioEvent = Union[
    Dict[str, Any],
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    TwilioStopEvent,
]


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes) from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message is not JSON, has an unknown event type, or
            is missing a required field
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}") from None

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": base64.b64encode(audio_payload).decode("utf-8"),
        },
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once all audio queued before it has played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name,
        },
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This discards any audio Twilio has buffered but not yet played.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid,
    }
    return encoder.encode(message).decode("utf-8")


def decode_outbound(message: str) -> Dict[str, Any]:
    """Decode one of our own outbound messages (used by tests and debug logging)."""
    return decoder.decode(message.encode("utf-8"))


def event_stream_sid(event: TwilioEvent) -> Optional[str]:
    """Stream SID carried by a parsed event, if any."""
    if isinstance(event, dict):
        return event.get("streamSid")
    return getattr(event, "stream_sid", None) or None
