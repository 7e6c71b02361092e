"""Inbound audio: Twilio media frames -> live transcription."""

from dataclasses import dataclass
from typing import Protocol

import structlog

from src.callbridge.twilio_protocol import TwilioMediaEvent

logger = structlog.get_logger(__name__)


class AudioSink(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def send_audio(self, audio_bytes: bytes) -> None: ...


@dataclass
class IngestMetrics:
    frames_received: int = 0
    frames_forwarded: int = 0
    frames_dropped: int = 0
    bytes_forwarded: int = 0


class AudioIngestService:
    """
    Forwards decoded caller audio to the transcription connection.

    Twilio payloads are already mu-law 8kHz, which Deepgram accepts as-is.
    Frames that arrive while the connection is not open are dropped.
    """

    def __init__(self, sink: AudioSink):
        self._sink = sink
        self._metrics = IngestMetrics()

    @property
    def metrics(self) -> IngestMetrics:
        return self._metrics

    async def handle_media(self, event: TwilioMediaEvent) -> None:
        if event.track not in ("inbound", ""):
            return

        audio = event.payload
        if not audio:
            return

        self._metrics.frames_received += 1
        if self._metrics.frames_received == 1:
            logger.info("Inbound media received", bytes=len(audio), track=event.track)

        if not self._sink.is_connected:
            self._metrics.frames_dropped += 1
            return

        await self._sink.send_audio(audio)
        self._metrics.frames_forwarded += 1
        self._metrics.bytes_forwarded += len(audio)
