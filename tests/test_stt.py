"""
Tests for Deepgram message handling and inbound audio forwarding.
"""

from urllib.parse import parse_qs, urlparse
from unittest.mock import AsyncMock

import pytest

from src.callbridge.ingest import AudioIngestService
from src.callbridge.models import TranscriptEvent
from src.callbridge.stt import DeepgramSTT, build_listen_url, parse_deepgram_message
from src.callbridge.twilio_protocol import TwilioMediaEvent


def results(text, is_final=False, speech_final=False):
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.9}]},
    }


class TestDeepgramMessages:
    def test_interim_result(self):
        event = parse_deepgram_message(results("quero um"))

        assert event == TranscriptEvent(is_final=False, speech_final=False, text="quero um")

    def test_speech_final_result(self):
        event = parse_deepgram_message(results("quero um AirPods", is_final=True, speech_final=True))

        assert event.is_final and event.speech_final
        assert event.text == "quero um AirPods"

    def test_utterance_end(self):
        event = parse_deepgram_message({"type": "UtteranceEnd", "last_word_end": 2.1})

        assert event.is_utterance_end

    def test_metadata_ignored(self):
        assert parse_deepgram_message({"type": "Metadata", "request_id": "x"}) is None

    def test_result_without_alternatives(self):
        event = parse_deepgram_message({"type": "Results", "is_final": True, "channel": {}})

        assert event.text == ""

    def test_listen_url_params(self, config):
        url = urlparse(build_listen_url(config))
        params = parse_qs(url.query)

        assert url.scheme == "wss"
        assert params["encoding"] == ["mulaw"]
        assert params["sample_rate"] == ["8000"]
        assert params["interim_results"] == ["true"]
        assert params["language"] == ["pt-BR"]
        assert params["utterance_end_ms"] == [str(config.deepgram_utterance_end_ms)]


class TestDeepgramSTT:
    @pytest.mark.asyncio
    async def test_events_forwarded_to_callback(self, config):
        on_event = AsyncMock()
        stt = DeepgramSTT(on_event=on_event, config=config)

        await stt._handle_message(results("oi", is_final=True))
        await stt._handle_message({"type": "UtteranceEnd"})

        assert on_event.await_count == 2
        assert stt.metrics.final_transcripts == 1
        assert stt.metrics.utterance_ends == 1

    @pytest.mark.asyncio
    async def test_error_message_recorded(self, config):
        on_event = AsyncMock()
        stt = DeepgramSTT(on_event=on_event, config=config)

        await stt._handle_message({"type": "Error", "description": "bad audio"})

        on_event.assert_not_awaited()
        assert "bad audio" in str(stt.last_error)
        assert stt.metrics.errors == 1

    @pytest.mark.asyncio
    async def test_send_audio_dropped_when_disconnected(self, config):
        stt = DeepgramSTT(config=config)

        await stt.send_audio(b"\xff" * 160)

        assert stt.metrics.total_audio_bytes == 0


class FakeSink:
    def __init__(self, connected):
        self.is_connected = connected
        self.sent = []

    async def send_audio(self, audio_bytes):
        self.sent.append(audio_bytes)


def media(payload, track="inbound"):
    return TwilioMediaEvent(stream_sid="MZ1", track=track, chunk=1, timestamp="0", payload=payload)


class TestAudioIngest:
    @pytest.mark.asyncio
    async def test_forwards_when_connected(self, sample_ulaw_audio):
        sink = FakeSink(connected=True)
        ingest = AudioIngestService(sink)

        await ingest.handle_media(media(sample_ulaw_audio))

        assert sink.sent == [sample_ulaw_audio]
        assert ingest.metrics.bytes_forwarded == 160

    @pytest.mark.asyncio
    async def test_drops_while_disconnected(self, sample_ulaw_audio):
        sink = FakeSink(connected=False)
        ingest = AudioIngestService(sink)

        await ingest.handle_media(media(sample_ulaw_audio))

        assert sink.sent == []
        assert ingest.metrics.frames_dropped == 1

    @pytest.mark.asyncio
    async def test_ignores_outbound_track_and_empty_payload(self, sample_ulaw_audio):
        sink = FakeSink(connected=True)
        ingest = AudioIngestService(sink)

        await ingest.handle_media(media(sample_ulaw_audio, track="outbound"))
        await ingest.handle_media(media(b""))

        assert sink.sent == []
        assert ingest.metrics.frames_received == 0
