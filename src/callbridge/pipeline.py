"""
Per-call orchestrator.

Wires the Twilio stream to transcription, the conversation agent, synthesis
and ordered playback:

    media -> AudioIngestService -> DeepgramSTT -> TranscriptFinalizer
        utterance -> turn queue -> ConversationAgent.submit
            fragment -> SpeechSynthesizer.generate (one task each)
                chunk -> PlaybackSequencer -> Twilio
        interim -> PlaybackSequencer.on_interrupt (barge-in)

Turns are processed one at a time by a worker task so the STT receive loop is
never blocked. Interruption only flushes playback; the agent turn that was
speaking runs to completion so the dialogue log stays consistent.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from src.callbridge.agent import ConversationAgent
from src.callbridge.config import Config, get_config
from src.callbridge.errors import SynthesisError, ToolChainDepthExceeded, TransportSendError
from src.callbridge.ingest import AudioIngestService
from src.callbridge.models import ReplyFragment, TranscriptEvent, Utterance
from src.callbridge.playback import PlaybackSequencer
from src.callbridge.recording import start_call_recording
from src.callbridge.stt import DeepgramSTT
from src.callbridge.transcript import TranscriptFinalizer
from src.callbridge.tts import SpeechSynthesizer
from src.callbridge.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

GREETING_TURN_ID = 0


class PipelineState(str, Enum):
    """Call lifecycle states."""
    IDLE = "idle"
    LISTENING = "listening"
    RESPONDING = "responding"
    STOPPED = "stopped"


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    llm_first_token_ms: float = 0.0
    llm_total_ms: float = 0.0
    fragments: int = 0
    tool_calls: int = 0
    total_turn_ms: float = 0.0
    was_interrupted: bool = False
    failed: bool = False

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    total_interruptions: int = 0
    synthesis_failures: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "total_interruptions": self.total_interruptions,
            "synthesis_failures": self.synthesis_failures,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


class VoicePipeline:
    """
    Main voice pipeline orchestrator (one instance per call).

    Components can be injected for testing; by default each call gets its own
    Deepgram connection, synthesizer and agent.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        *,
        agent: Optional[ConversationAgent] = None,
        stt: Optional[DeepgramSTT] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        recorder: Optional[Callable[[str], Awaitable[str]]] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message

        self._protocol = TwilioProtocolHandler()
        self._sequencer = PlaybackSequencer(
            self._protocol,
            send_message,
            interruption_min_chars=self.config.interruption_min_chars,
        )
        self._finalizer = TranscriptFinalizer(
            on_utterance=self._on_utterance,
            on_interim=self._on_interim,
        )

        self._stt = stt or DeepgramSTT(config=self.config)
        self._stt.set_event_callback(self._on_transcript_event)
        self._ingest = AudioIngestService(self._stt)

        self._synth = synthesizer or SpeechSynthesizer(self.config)
        self._agent = agent or ConversationAgent(self.config)
        self._agent.set_fragment_callback(self._on_fragment)
        self._recorder = recorder or (lambda call_sid: start_call_recording(call_sid, self.config))

        self._state = PipelineState.IDLE
        self._is_running = False
        self._turn_queue: asyncio.Queue[Utterance] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._recording_task: Optional[asyncio.Task] = None
        self._synthesis_tasks: Set[asyncio.Task] = set()

        self._current_turn = GREETING_TURN_ID
        self._turn_fragments = 0
        self._current_turn_metrics: Optional[TurnMetrics] = None
        self._call_metrics = CallMetrics()

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self._protocol.stream_sid

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    @property
    def agent(self) -> ConversationAgent:
        return self._agent

    @property
    def sequencer(self) -> PlaybackSequencer:
        return self._sequencer

    @property
    def finalizer(self) -> TranscriptFinalizer:
        return self._finalizer

    async def start(self) -> None:
        """Initialize pipeline components."""
        logger.info("Starting voice pipeline")

        await self._synth.start()

        self._is_running = True
        self._state = PipelineState.IDLE

        # Start turn worker (runs the agent without blocking the STT receive loop)
        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

        logger.info("Voice pipeline started")

    async def stop(self) -> None:
        """Stop all pipeline components. Safe to call more than once."""
        if self._state == PipelineState.STOPPED:
            return
        logger.info("Stopping voice pipeline")

        self._is_running = False
        self._state = PipelineState.STOPPED

        current = asyncio.current_task()
        tasks_to_cancel: List[asyncio.Task] = []
        for task in (self._turn_worker_task, self._stt_start_task, self._recording_task, *self._synthesis_tasks):
            if task and task is not current and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)

        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)
        self._synthesis_tasks.clear()

        await self._stt.disconnect()
        await self._synth.stop()
        self._sequencer.reset()

        self._call_metrics.end_time = time.time()
        metrics = self._call_metrics.to_dict()
        playback = self._sequencer.metrics
        synthesis = self._synth.metrics
        metrics.update(
            {
                "chunks_sent": playback.chunks_sent,
                "chunks_dropped": playback.chunks_dropped,
                "chunks_skipped": playback.chunks_skipped,
                "mark_rtt_ms": round(playback.avg_mark_rtt_ms, 2),
                "tts_requests": synthesis.requests,
                "tts_failures": synthesis.failures,
                "tts_avg_latency_ms": round(synthesis.avg_latency_ms, 2),
                "frames_forwarded": self._ingest.metrics.frames_forwarded,
                "frames_dropped": self._ingest.metrics.frames_dropped,
                "stt_errors": self._stt.metrics.errors,
                "dialogue_turns": len(self._agent.turns),
            }
        )
        provider_metrics = self._synth.provider_metrics
        if provider_metrics is not None:
            metrics["tts_provider"] = asdict(provider_metrics)
        logger.info("Voice pipeline stopped", metrics=metrics)

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._protocol.handle_mark(event)
            self._sequencer.acknowledge(event.name)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            self._protocol.handle_stop()
            await self.stop()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        """Handle call start event."""
        self._protocol.handle_start(event)

        self._call_metrics.call_sid = event.call_sid
        self._call_metrics.stream_sid = event.stream_sid
        self._state = PipelineState.LISTENING

        self._agent.set_call_sid(event.call_sid)

        # Start STT in the background so a slow handshake doesn't block the greeting.
        if self._stt_start_task and not self._stt_start_task.done():
            self._stt_start_task.cancel()
        self._stt_start_task = asyncio.create_task(self._start_stt_background())

        await self._speak_greeting()

    async def _start_stt_background(self) -> None:
        """Connect STT and log success/failure without blocking call audio output."""
        try:
            ok = await self._stt.connect()
            if ok:
                logger.info("STT ready")
            else:
                logger.error("STT failed to start", error=str(self._stt.last_error))
        except asyncio.CancelledError:
            pass

    async def _start_recording(self, call_sid: str) -> None:
        """Start the call recording; a failure is logged and the call goes on."""
        try:
            await self._recorder(call_sid)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Call recording failed", call_sid=call_sid, error=f"{type(e).__name__}: {e}")

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running:
            return
        await self._ingest.handle_media(event)

    async def _speak_greeting(self) -> None:
        """Turn 0: the recording notice (when recording) followed by the greeting."""
        greeting = self._agent.get_initial_greeting()
        self._current_turn = GREETING_TURN_ID
        self._turn_fragments = 0
        await self._sequencer.begin_turn(GREETING_TURN_ID)

        index = 0
        if self.config.recording_enabled:
            await self._on_fragment(
                ReplyFragment(sequence_index=index, text=self.config.recording_notice),
                GREETING_TURN_ID,
            )
            index += 1
            self._recording_task = asyncio.create_task(self._start_recording(self.call_sid))

        logger.info("Speaking greeting", text=greeting[:80])
        await self._on_fragment(ReplyFragment(sequence_index=index, text=greeting), GREETING_TURN_ID)

    async def _on_transcript_event(self, event: TranscriptEvent) -> None:
        await self._finalizer.process(event)

    async def _on_utterance(self, utterance: Utterance) -> None:
        if not self._is_running:
            return
        logger.info("User utterance queued", text=utterance.text[:80], queue_depth=self._turn_queue.qsize())
        await self._turn_queue.put(utterance)

    async def _on_interim(self, text: str) -> None:
        if not self._is_running:
            return
        try:
            interrupted = await self._sequencer.on_interrupt(text)
        except TransportSendError as e:
            await self._fail_call(e)
            return

        if interrupted:
            self._call_metrics.total_interruptions += 1
            if self._current_turn_metrics:
                self._current_turn_metrics.was_interrupted = True
            logger.info("Barge-in", turn_id=self._current_turn, text=text[:80])

    async def _on_fragment(self, fragment: ReplyFragment, turn_id: int) -> None:
        """Start synthesis for a fragment; playback order is restored by the sequencer."""
        if not self._is_running:
            return
        if turn_id == self._current_turn:
            self._turn_fragments = max(self._turn_fragments, fragment.sequence_index + 1)

        task = asyncio.create_task(self._synthesize_and_play(fragment, turn_id))
        self._synthesis_tasks.add(task)
        task.add_done_callback(self._synthesis_tasks.discard)

    async def _synthesize_and_play(self, fragment: ReplyFragment, turn_id: int) -> None:
        try:
            try:
                chunk = await self._synth.generate(fragment, turn_id)
            except SynthesisError as e:
                self._call_metrics.synthesis_failures += 1
                logger.warning(
                    "Fragment synthesis failed",
                    turn_id=turn_id,
                    sequence_index=fragment.sequence_index,
                    error=str(e),
                )
                await self._sequencer.skip(turn_id, fragment.sequence_index)
                return

            await self._sequencer.buffer(chunk)
        except TransportSendError as e:
            await self._fail_call(e)
        except asyncio.CancelledError:
            pass

    async def _fail_call(self, error: TransportSendError) -> None:
        if not self._is_running:
            return
        logger.error("Transport failed, ending call", call_sid=self.call_sid, error=str(error))
        self._is_running = False
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop())

    async def _turn_worker(self) -> None:
        """Background worker that processes queued utterances sequentially."""
        try:
            while self._is_running:
                try:
                    utterance = await asyncio.wait_for(self._turn_queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self._run_turn(utterance)
                finally:
                    self._turn_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _run_turn(self, utterance: Utterance) -> None:
        """Run a single conversation turn from a finalized utterance."""
        # Audio of the previous turn still in synthesis must reach the sequencer
        # before the turn switch, or it would be dropped as stale.
        await self._wait_for_pending_audio()

        self._start_turn()
        turn_id = self._current_turn
        metrics = self._current_turn_metrics
        self._state = PipelineState.RESPONDING

        await self._sequencer.begin_turn(turn_id)

        try:
            result = await self._agent.submit(utterance.text, turn_id)
            if metrics:
                metrics.llm_first_token_ms = result.first_token_ms
                metrics.llm_total_ms = result.total_ms
                metrics.fragments = result.fragments
                metrics.tool_calls = len(result.tool_calls)
        except asyncio.CancelledError:
            raise
        except ToolChainDepthExceeded as e:
            logger.error("Turn failed", turn_id=turn_id, error=str(e))
            await self._apologize(turn_id)
        except Exception as e:
            logger.error("Turn failed", turn_id=turn_id, error=f"{type(e).__name__}: {e}")
            await self._apologize(turn_id)
        finally:
            self._end_turn()
            if self._state == PipelineState.RESPONDING:
                self._state = PipelineState.LISTENING

    async def _wait_for_pending_audio(self) -> None:
        pending = [t for t in self._synthesis_tasks if not t.done()]
        if not pending:
            return
        logger.debug("Waiting for previous turn audio", pending=len(pending))
        await asyncio.gather(*pending, return_exceptions=True)

    async def _apologize(self, turn_id: int) -> None:
        if self._current_turn_metrics:
            self._current_turn_metrics.failed = True
        await self._on_fragment(
            ReplyFragment(sequence_index=self._turn_fragments, text=self.config.apology_text),
            turn_id,
        )

    def _start_turn(self) -> None:
        """Start a new conversation turn."""
        self._current_turn += 1
        self._turn_fragments = 0
        self._current_turn_metrics = TurnMetrics(
            turn_id=self._current_turn,
            start_time=time.time(),
        )

    def _end_turn(self) -> None:
        """End the current conversation turn."""
        if self._current_turn_metrics:
            self._current_turn_metrics.finalize()
            self._call_metrics.turns.append(self._current_turn_metrics)

            logger.info(
                "Turn completed",
                turn_id=self._current_turn_metrics.turn_id,
                llm_first_token_ms=round(self._current_turn_metrics.llm_first_token_ms, 2),
                llm_total_ms=round(self._current_turn_metrics.llm_total_ms, 2),
                fragments=self._current_turn_metrics.fragments,
                tool_calls=self._current_turn_metrics.tool_calls,
                total_turn_ms=round(self._current_turn_metrics.total_turn_ms, 2),
                was_interrupted=self._current_turn_metrics.was_interrupted,
                failed=self._current_turn_metrics.failed,
            )

            self._current_turn_metrics = None


async def create_pipeline(
    send_message: Callable[[str], Awaitable[None]],
) -> VoicePipeline:
    """
    Create and start a new voice pipeline.

    Args:
        send_message: Function to send messages to Twilio WebSocket

    Returns:
        Initialized and started VoicePipeline
    """
    pipeline = VoicePipeline(send_message)
    await pipeline.start()
    return pipeline
