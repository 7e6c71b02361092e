from __future__ import annotations

from typing import Any, AsyncGenerator, Optional
from urllib.parse import urlencode

import httpx
import structlog

from src.callbridge.config import get_config
from src.callbridge.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura text-to-speech over REST.

    The response body is raw mu-law 8kHz (no container) and is streamed back
    as it arrives.
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_tts_voice,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }
        return f"{DEEPGRAM_SPEAK_URL}?{urlencode(params)}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.tts_timeout_seconds)
        return self._client

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[bytes, None]:
        if not text or not text.strip():
            return

        client = self._get_client()
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }
        async with client.stream("POST", self.build_url(), headers=headers, json={"text": text}) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise httpx.HTTPStatusError(
                    f"Deepgram TTS returned {response.status_code}: {body[:200]!r}",
                    request=response.request,
                    response=response,
                )
            async for audio in response.aiter_bytes():
                if audio:
                    yield audio

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
