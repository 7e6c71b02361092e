"""
Transcript finalization.

Two provider signals can each mark the end of a caller utterance:
- `speech_final` on a final result (endpointing detected a short pause)
- an `UtteranceEnd` event (a longer silence after the last word)

Exactly one of them may emit the utterance. The `speech_final` flag records
whether the pause signal already did, so the silence signal only fires as a
fallback when finalization is still pending.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from src.callbridge.models import TranscriptEvent, Utterance

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FinalizerState:
    accumulator: str = ""
    speech_final: bool = False


@dataclass(frozen=True)
class FinalizerOutput:
    utterance: Optional[Utterance] = None
    interim: Optional[str] = None


_NOTHING = FinalizerOutput()


def advance(state: FinalizerState, event: TranscriptEvent) -> tuple[FinalizerState, FinalizerOutput]:
    """Pure transition function for the finalizer state machine."""
    if event.is_utterance_end:
        if not state.speech_final and state.accumulator.strip():
            utterance = Utterance(text=state.accumulator.strip())
            return FinalizerState(accumulator="", speech_final=state.speech_final), FinalizerOutput(
                utterance=utterance
            )
        return state, _NOTHING

    text = event.text or ""
    if not text.strip():
        return state, _NOTHING

    if event.is_final:
        accumulator = f"{state.accumulator}{text} "
        if event.speech_final:
            return FinalizerState(accumulator="", speech_final=True), FinalizerOutput(
                utterance=Utterance(text=accumulator.strip())
            )
        return FinalizerState(accumulator=accumulator, speech_final=False), _NOTHING

    return state, FinalizerOutput(interim=text)


class TranscriptFinalizer:
    """
    Feeds provider events through `advance` and dispatches the results.

    Utterances and interim text go to separate callbacks; interim text never
    touches the accumulator.
    """

    def __init__(
        self,
        on_utterance: Optional[Callable[[Utterance], Awaitable[None]]] = None,
        on_interim: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self._state = FinalizerState()
        self._on_utterance = on_utterance
        self._on_interim = on_interim

    @property
    def state(self) -> FinalizerState:
        return self._state

    async def process(self, event: TranscriptEvent) -> FinalizerOutput:
        self._state, output = advance(self._state, event)

        if output.utterance is not None:
            logger.info(
                "Utterance finalized",
                source="utterance_end" if event.is_utterance_end else "speech_final",
                text=output.utterance.text[:80],
            )
            if self._on_utterance:
                await self._on_utterance(output.utterance)
        elif event.is_utterance_end:
            logger.debug("UtteranceEnd with nothing pending")

        if output.interim is not None and self._on_interim:
            await self._on_interim(output.interim)

        return output

    def reset(self) -> None:
        self._state = FinalizerState()
