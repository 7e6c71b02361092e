"""
Deepgram Speech-to-Text streaming client.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- Interim results feed barge-in detection
- `endpointing` marks `speech_final`; `utterance_end_ms` produces the
  UtteranceEnd fallback signal

Provider failures are connection-scoped: they are logged and the connection is
marked closed, but the call keeps running (it just stops hearing the caller).
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.callbridge.config import get_config
from src.callbridge.errors import TranscriptionProviderError
from src.callbridge.models import RESULTS, TranscriptEvent

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_bytes: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0
    utterance_ends: int = 0
    errors: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


def build_listen_url(config: Any) -> str:
    params = {
        "model": config.deepgram_model,
        "language": config.deepgram_language,
        "encoding": "mulaw",
        "sample_rate": 8000,
        "channels": 1,
        "punctuate": "true",
        "smart_format": "true",
        "interim_results": "true",
        "endpointing": config.deepgram_endpointing_ms,
        "utterance_end_ms": config.deepgram_utterance_end_ms,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


def parse_deepgram_message(data: dict) -> Optional[TranscriptEvent]:
    """
    Convert a Deepgram live message into a TranscriptEvent.

    Returns None for messages that carry no transcription signal
    (Metadata, SpeechStarted, ...).
    """
    msg_type = data.get("type", "")

    if msg_type == "UtteranceEnd":
        return TranscriptEvent.utterance_end()

    if msg_type != RESULTS:
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    text = alternatives[0].get("transcript", "") if alternatives else ""
    return TranscriptEvent(
        type=RESULTS,
        is_final=bool(data.get("is_final", False)),
        speech_final=bool(data.get("speech_final", False)),
        text=text or "",
    )


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[TranscriptEvent], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_event = on_event
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._receive_task: Optional[asyncio.Task] = None
        self._last_error: Optional[TranscriptionProviderError] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    @property
    def last_error(self) -> Optional[TranscriptionProviderError]:
        return self._last_error

    def set_event_callback(self, callback: Callable[[TranscriptEvent], Awaitable[None]]) -> None:
        self._on_event = callback

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            logger.info(
                "Connecting to Deepgram",
                model=self.config.deepgram_model,
                language=self.config.deepgram_language,
            )
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            self._record_error(
                TranscriptionProviderError(f"Deepgram connection failed: {type(e).__name__}: {e}")
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected")
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("Deepgram CloseStream failed", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram (dropped unless the connection is open)."""
        if not self._is_connected or not self._ws:
            return

        try:
            await self._ws.send(audio_bytes)
            self._metrics.total_audio_bytes += len(audio_bytes)
        except Exception as e:
            self._is_connected = False
            self._record_error(TranscriptionProviderError(f"Failed to send audio: {e}"))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue

                try:
                    await self._handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed as e:
            if self._is_connected:
                self._record_error(TranscriptionProviderError(f"Deepgram connection closed: {e}"))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._record_error(TranscriptionProviderError(f"Deepgram receive loop error: {e}"))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        if data.get("type") == "Error":
            self._record_error(
                TranscriptionProviderError(
                    f"Deepgram error: {data.get('description') or data.get('message') or 'unknown'}"
                )
            )
            return

        event = parse_deepgram_message(data)
        if event is None:
            logger.debug("Deepgram message ignored", type=data.get("type"))
            return

        if event.is_utterance_end:
            self._metrics.utterance_ends += 1
        else:
            self._metrics.record_transcript(event.is_final)

        logger.debug(
            "STT event",
            type=event.type,
            is_final=event.is_final,
            speech_final=event.speech_final,
            text=event.text[:50],
        )

        if self._on_event:
            await self._on_event(event)

    def _record_error(self, error: TranscriptionProviderError) -> None:
        self._metrics.errors += 1
        self._last_error = error
        logger.error("Transcription provider error", error=str(error))
