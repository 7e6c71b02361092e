"""
Speech synthesis for reply fragments.

`generate` turns one ReplyFragment into one AudioChunk. Calls are independent
and may overlap; ordering is left to the playback sequencer. A failure only
affects its own fragment and is reported as SynthesisError.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from src.callbridge.config import get_config
from src.callbridge.errors import SynthesisError
from src.callbridge.models import AudioChunk, ReplyFragment
from src.callbridge.tts_providers.base import TTSProvider
from src.callbridge.tts_providers.cartesia import CartesiaTTS
from src.callbridge.tts_providers.deepgram import DeepgramTTS

logger = structlog.get_logger(__name__)

LABEL_MAX_CHARS = 40


@dataclass
class SynthesisMetrics:
    requests: int = 0
    failures: int = 0
    total_audio_bytes: int = 0
    avg_latency_ms: float = 0.0

    def record_success(self, audio_bytes: int, latency_ms: float) -> None:
        self.requests += 1
        self.total_audio_bytes += audio_bytes
        ok = self.requests - self.failures
        self.avg_latency_ms = (self.avg_latency_ms * (ok - 1) + latency_ms) / ok

    def record_failure(self) -> None:
        self.requests += 1
        self.failures += 1


def make_label(text: str) -> str:
    text = " ".join((text or "").split())
    if len(text) <= LABEL_MAX_CHARS:
        return text
    return text[: LABEL_MAX_CHARS - 3] + "..."


def create_provider(config: Any) -> TTSProvider:
    provider = (config.tts_provider or "deepgram").strip().lower()
    if provider == "deepgram":
        return DeepgramTTS(config)
    if provider == "cartesia":
        return CartesiaTTS(config)
    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechSynthesizer:
    """Per-call synthesizer with a pluggable provider."""

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider
        self._metrics = SynthesisMetrics()

    @property
    def metrics(self) -> SynthesisMetrics:
        return self._metrics

    @property
    def provider(self) -> Optional[TTSProvider]:
        return self._provider

    @property
    def provider_metrics(self) -> Optional[Any]:
        return self._provider.metrics if self._provider else None

    async def start(self) -> None:
        if self._provider is None:
            self._provider = create_provider(self.config)
        logger.info("TTS provider ready", provider=self._provider.name)

    async def stop(self) -> None:
        if self._provider:
            await self._provider.close()

    async def generate(self, fragment: ReplyFragment, turn_id: int = 0) -> AudioChunk:
        """
        Synthesize one fragment.

        Raises:
            SynthesisError: provider failure, timeout, or no audio produced
        """
        if self._provider is None:
            await self.start()

        started = time.time()
        try:
            audio = await asyncio.wait_for(
                self._collect(fragment.text),
                timeout=self.config.tts_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._metrics.record_failure()
            raise SynthesisError(
                fragment.sequence_index,
                f"timed out after {self.config.tts_timeout_seconds}s",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.record_failure()
            raise SynthesisError(fragment.sequence_index, f"{type(e).__name__}: {e}") from e

        if not audio:
            self._metrics.record_failure()
            raise SynthesisError(fragment.sequence_index, "provider returned no audio")

        latency_ms = (time.time() - started) * 1000
        self._metrics.record_success(len(audio), latency_ms)
        logger.debug(
            "Fragment synthesized",
            turn_id=turn_id,
            sequence_index=fragment.sequence_index,
            bytes=len(audio),
            latency_ms=round(latency_ms, 2),
        )
        return AudioChunk(
            sequence_index=fragment.sequence_index,
            audio_data=audio,
            label=make_label(fragment.text),
            turn_id=turn_id,
        )

    async def _collect(self, text: str) -> bytes:
        audio = bytearray()
        async for piece in self._provider.synthesize_streaming(text):
            audio.extend(piece)
        return bytes(audio)
