"""
Ordered playback of synthesized audio.

Synthesis runs concurrently per reply fragment, so chunks complete in any
order. The sequencer holds early chunks and releases them to Twilio strictly by
sequence index within the current turn (hold-and-drain).

Every chunk sent is followed by a mark. Outstanding marks mean the agent is
still audible on the caller's side; interim caller speech while marks are
outstanding is a barge-in and flushes playback with a Twilio `clear`.

Mark names carry a playback generation (`g{gen}_t{turn}_c{index}`); the
generation is bumped on every flush so late acks for cleared audio are ignored.
"""

import asyncio
from dataclasses import dataclass, field
import time
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from src.callbridge.errors import TransportSendError
from src.callbridge.models import AudioChunk
from src.callbridge.twilio_protocol import TwilioProtocolHandler

logger = structlog.get_logger(__name__)

MAX_RTT_SAMPLES = 20


@dataclass
class PlaybackMetrics:
    chunks_sent: int = 0
    chunks_held: int = 0
    chunks_dropped: int = 0
    chunks_skipped: int = 0
    interruptions: int = 0
    mark_rtt_samples: List[float] = field(default_factory=list)

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)

    def record_rtt(self, rtt_ms: float) -> None:
        self.mark_rtt_samples.append(rtt_ms)
        if len(self.mark_rtt_samples) > MAX_RTT_SAMPLES:
            self.mark_rtt_samples.pop(0)


def mark_name(generation: int, turn_id: int, sequence_index: int) -> str:
    return f"g{generation}_t{turn_id}_c{sequence_index}"


def parse_mark_generation(name: str) -> Optional[int]:
    """Return the generation encoded in a mark name, or None for foreign marks."""
    if not isinstance(name, str) or not name.startswith("g"):
        return None
    try:
        return int(name.split("_", 1)[0][1:])
    except ValueError:
        return None


class PlaybackSequencer:
    """Per-call playback state machine (one turn active at a time)."""

    def __init__(
        self,
        protocol: TwilioProtocolHandler,
        send_message: Callable[[str], Awaitable[None]],
        *,
        interruption_min_chars: int = 6,
    ):
        self._protocol = protocol
        self._send_message = send_message
        self._interruption_min_chars = interruption_min_chars

        self._turn_id: Optional[int] = None
        self._next_to_send = 0
        # sequence_index -> chunk, or None for a fragment whose synthesis failed
        self._held: Dict[int, Optional[AudioChunk]] = {}
        self._interrupted = False
        self._generation = 0
        self._marks: Dict[str, float] = {}  # mark name -> send time

        self._lock = asyncio.Lock()
        self._metrics = PlaybackMetrics()

    @property
    def turn_id(self) -> Optional[int]:
        return self._turn_id

    @property
    def next_to_send(self) -> int:
        return self._next_to_send

    @property
    def held_indices(self) -> List[int]:
        return sorted(self._held)

    @property
    def outstanding_marks(self) -> List[str]:
        return list(self._marks)

    @property
    def is_speaking(self) -> bool:
        return bool(self._marks)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def metrics(self) -> PlaybackMetrics:
        return self._metrics

    async def begin_turn(self, turn_id: int) -> None:
        """Start sequencing a new agent turn; anything held for the old one is discarded."""
        async with self._lock:
            if self._held:
                self._metrics.chunks_dropped += sum(1 for c in self._held.values() if c is not None)
                logger.debug(
                    "Discarding held chunks from previous turn",
                    previous_turn=self._turn_id,
                    held=sorted(self._held),
                )
            self._turn_id = turn_id
            self._next_to_send = 0
            self._held.clear()
            self._interrupted = False

    async def buffer(self, chunk: AudioChunk) -> int:
        """
        Accept a synthesized chunk.

        Returns the number of chunks sent to the transport as a result.
        """
        async with self._lock:
            if chunk.turn_id != self._turn_id or self._interrupted:
                self._metrics.chunks_dropped += 1
                logger.debug(
                    "Dropping chunk",
                    reason="interrupted" if chunk.turn_id == self._turn_id else "stale_turn",
                    turn_id=chunk.turn_id,
                    current_turn=self._turn_id,
                    sequence_index=chunk.sequence_index,
                )
                return 0

            if chunk.sequence_index < self._next_to_send or chunk.sequence_index in self._held:
                logger.warning(
                    "Duplicate chunk ignored",
                    turn_id=chunk.turn_id,
                    sequence_index=chunk.sequence_index,
                )
                return 0

            if chunk.sequence_index != self._next_to_send:
                self._held[chunk.sequence_index] = chunk
                self._metrics.chunks_held += 1
                logger.debug(
                    "Holding chunk",
                    turn_id=chunk.turn_id,
                    sequence_index=chunk.sequence_index,
                    next_to_send=self._next_to_send,
                )
                return 0

            await self._send_chunk(chunk)
            self._next_to_send += 1
            return 1 + await self._drain()

    async def skip(self, turn_id: int, sequence_index: int) -> int:
        """Mark a fragment as unplayable so later chunks are not blocked behind it."""
        async with self._lock:
            if turn_id != self._turn_id or self._interrupted:
                return 0
            if sequence_index < self._next_to_send:
                return 0

            self._metrics.chunks_skipped += 1
            logger.info("Skipping unplayable fragment", turn_id=turn_id, sequence_index=sequence_index)

            if sequence_index != self._next_to_send:
                self._held[sequence_index] = None
                return 0

            self._next_to_send += 1
            return await self._drain()

    def acknowledge(self, name: str) -> float:
        """
        Handle a Twilio mark ack.

        Returns the round-trip time in ms, or 0 if the mark is stale/unknown.
        """
        generation = parse_mark_generation(name)
        if generation is not None and generation != self._generation:
            logger.debug(
                "Ignoring stale mark acknowledgment",
                mark_name=name,
                mark_generation=generation,
                current_generation=self._generation,
            )
            return 0.0

        sent_at = self._marks.pop(name, None)
        if sent_at is None:
            logger.debug("Unknown mark acknowledged", mark_name=name)
            return 0.0

        rtt_ms = (time.time() - sent_at) * 1000
        self._metrics.record_rtt(rtt_ms)
        logger.debug(
            "Audio completed mark",
            mark_name=name,
            rtt_ms=round(rtt_ms, 2),
            outstanding=len(self._marks),
        )
        return rtt_ms

    async def on_interrupt(self, text: str) -> bool:
        """
        Barge-in: flush playback if the agent is audible and the caller said enough.

        Returns True if a flush was issued.
        """
        async with self._lock:
            if not self._marks:
                return False
            if len((text or "").strip()) < self._interruption_min_chars:
                logger.debug("Interim text below interruption threshold", text=text)
                return False

            cleared = len(self._marks)
            discarded = sum(1 for c in self._held.values() if c is not None)
            self._marks.clear()
            self._held.clear()
            self._generation += 1
            self._interrupted = True
            self._metrics.interruptions += 1
            self._metrics.chunks_dropped += discarded

            logger.info(
                "Interruption, clearing stream",
                turn_id=self._turn_id,
                marks_cleared=cleared,
                chunks_discarded=discarded,
                playback_generation=self._generation,
            )
            await self._send(self._protocol.create_clear())
            return True

    def reset(self) -> None:
        self._marks.clear()
        self._held.clear()
        self._turn_id = None
        self._next_to_send = 0
        self._interrupted = False

    async def _drain(self) -> int:
        sent = 0
        while self._next_to_send in self._held:
            chunk = self._held.pop(self._next_to_send)
            if chunk is not None:
                await self._send_chunk(chunk)
                sent += 1
            self._next_to_send += 1
        return sent

    async def _send_chunk(self, chunk: AudioChunk) -> None:
        name = mark_name(self._generation, chunk.turn_id, chunk.sequence_index)
        await self._send(self._protocol.create_media(chunk.audio_data))
        self._marks[name] = time.time()
        await self._send(self._protocol.create_mark(name))
        self._metrics.chunks_sent += 1
        logger.debug(
            "Audio sent",
            turn_id=chunk.turn_id,
            sequence_index=chunk.sequence_index,
            label=chunk.label,
            bytes=len(chunk.audio_data),
            mark_name=name,
        )

    async def _send(self, message: str) -> None:
        if not message:
            raise TransportSendError("Media stream not started")
        try:
            await self._send_message(message)
        except Exception as e:
            raise TransportSendError(f"Failed to send to Twilio: {e}") from e
