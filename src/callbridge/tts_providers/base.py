from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Optional


class TTSProvider(ABC):
    """
    A streaming text-to-speech backend producing Twilio-ready mu-law 8kHz.

    Each `synthesize_streaming` call is independent so several fragments can be
    synthesized concurrently. Failures are raised, not swallowed; the caller
    decides what a failed fragment means.
    """

    name: str = "tts"

    @property
    def metrics(self) -> Optional[Any]:
        """Provider-specific counters, if the provider keeps any."""
        return None

    @abstractmethod
    def synthesize_streaming(self, text: str) -> AsyncGenerator[bytes, None]:
        raise NotImplementedError

    async def close(self) -> None:
        return None
