"""
Twilio Media Streams WebSocket protocol handler.

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
- clear: Clear buffered audio (for interruption)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

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
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start", {})
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media", {})
        try:
            payload = base64.b64decode(media.get("payload", ""))
        except (binascii.Error, ValueError):
            logger.warning("Undecodable media payload", stream_sid=message.get("streamSid", ""))
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str
    sequence_number: int = 0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark", {})
        try:
            sequence_number = int(message.get("sequenceNumber", 0))
        except (TypeError, ValueError):
            sequence_number = 0
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
            sequence_number=sequence_number,
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class CallState:
    """State for an active Twilio call."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    is_active: bool = True
    last_mark_sequence: int = 0


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid JSON: expected an object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Create a Twilio media message carrying raw mu-law audio."""
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

    Twilio echoes the mark back once all audio sent before it has played.
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
    """Create a Twilio clear message (flushes audio queued on Twilio's side)."""
    message = {
        "event": "clear",
        "streamSid": stream_sid,
    }
    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """
    High-level handler for Twilio WebSocket protocol.

    Tracks call identity and builds outbound messages for the current stream.
    """

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        return self.call_state.call_sid if self.call_state else ""

    @property
    def is_active(self) -> bool:
        return self.call_state is not None and self.call_state.is_active

    def handle_start(self, event: TwilioStartEvent) -> None:
        self.call_state = CallState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )
        logger.info("Call started", stream_sid=event.stream_sid, call_sid=event.call_sid)

    def handle_stop(self) -> None:
        if self.call_state:
            self.call_state.is_active = False
            logger.info(
                "Call stopped",
                stream_sid=self.call_state.stream_sid,
                call_sid=self.call_state.call_sid,
            )

    def handle_mark(self, event: TwilioMarkEvent) -> None:
        """Record the mark's sequence number; out-of-order acks are logged."""
        if not self.call_state:
            return
        if event.sequence_number and event.sequence_number < self.call_state.last_mark_sequence:
            logger.warning(
                "Mark acknowledged out of order",
                mark_name=event.name,
                sequence_number=event.sequence_number,
                last_sequence_number=self.call_state.last_mark_sequence,
            )
            return
        self.call_state.last_mark_sequence = event.sequence_number

    def create_media(self, audio_bytes: bytes) -> str:
        if not self.call_state or not audio_bytes:
            return ""
        return create_media_message(self.call_state.stream_sid, audio_bytes)

    def create_mark(self, name: str) -> str:
        if not self.call_state:
            return ""
        return create_mark_message(self.call_state.stream_sid, name)

    def create_clear(self) -> str:
        if not self.call_state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.call_state.stream_sid)
        return create_clear_message(self.call_state.stream_sid)
