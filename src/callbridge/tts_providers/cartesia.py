from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

import structlog
import websockets

from src.callbridge.config import get_config
from src.callbridge.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

# Cartesia can emit mu-law 8kHz directly, which is what Twilio plays.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


class CartesiaError(Exception):
    """Cartesia reported an error for a synthesis request."""
    pass


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(
        self,
        *,
        characters: int,
        audio_ms: float,
        first_byte_ms: float,
        total_ms: float,
    ) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia streaming TTS client using the WebSocket API.

    One connection per request; concurrent requests do not share state.
    """

    name = "cartesia"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = CartesiaTTSMetrics()

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    def build_request(self, text: str, context_id: str) -> dict[str, Any]:
        return {
            "context_id": context_id,
            "model_id": self.config.cartesia_model_id,
            "transcript": text,
            "language": self.config.cartesia_language,
            "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_mulaw",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
            "continue": False,
        }

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[bytes, None]:
        if not text or not text.strip():
            return

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )
        context_id = uuid.uuid4().hex

        async with websockets.connect(url, open_timeout=10) as ws:
            await ws.send(json.dumps(self.build_request(text, context_id)))

            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    audio_data = bytes(message)
                else:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning("Invalid JSON from Cartesia")
                        continue

                    msg_type = data.get("type", "")
                    if msg_type == "done":
                        break
                    if msg_type == "error":
                        raise CartesiaError(str(data.get("message") or data.get("error") or data))
                    if msg_type != "chunk" or not data.get("data"):
                        continue
                    audio_data = base64.b64decode(data["data"])

                if not audio_data:
                    continue
                if first_byte_time is None:
                    first_byte_time = time.time()
                total_audio_bytes += len(audio_data)
                yield audio_data

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        # mu-law 8kHz: 8 bytes per ms
        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=total_audio_bytes / 8.0,
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )
