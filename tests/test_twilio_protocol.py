"""
Tests for Twilio Media Streams protocol handling.
"""

import pytest
import json
import base64

from src.callbridge.twilio_protocol import (
    CallState,
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    create_clear_message,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)


def started_handler():
    handler = TwilioProtocolHandler()
    handler.handle_start(TwilioStartEvent(stream_sid="MZ123", call_sid="CA456", account_sid="AC789"))
    return handler


class TestMessageParsing:
    """Tests for parsing inbound Twilio messages."""

    def test_parse_connected_event(self):
        event_type, event = parse_twilio_message(json.dumps({"event": "connected", "protocol": "Call"}))

        assert event_type == TwilioEventType.CONNECTED
        assert event["protocol"] == "Call"

    def test_parse_start_event(self, twilio_start_message):
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.account_sid == "AC345678"
        assert event.tracks == ["inbound"]

    def test_parse_media_event_decodes_payload(self, twilio_media_message, sample_ulaw_audio):
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == sample_ulaw_audio

    def test_parse_media_event_with_bad_payload(self):
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {"track": "inbound", "payload": "!!not base64!!"},
        })

        _, event = parse_twilio_message(message)

        assert event.payload == b""

    def test_parse_mark_event_with_sequence_number(self):
        message = json.dumps({
            "event": "mark",
            "sequenceNumber": "7",
            "streamSid": "MZ123",
            "mark": {"name": "g0_t1_c0"},
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "g0_t1_c0"
        assert event.sequence_number == 7

    def test_parse_dtmf_event(self):
        message = json.dumps({"event": "dtmf", "streamSid": "MZ123", "dtmf": {"digit": "5"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, TwilioDTMFEvent)
        assert event.digit == "5"

    def test_parse_stop_event(self, twilio_stop_message):
        event_type, _ = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(json.dumps({"event": "unknown_event"}))


class TestMessageCreation:
    """Tests for outbound Twilio messages."""

    def test_create_media_message(self):
        audio_data = b"\x7f" * 800
        parsed = json.loads(create_media_message("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        parsed = json.loads(create_mark_message("MZ123", "g2_t5_c1"))

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "g2_t5_c1"}}

    def test_create_clear_message(self):
        parsed = json.loads(create_clear_message("MZ123"))

        assert parsed == {"event": "clear", "streamSid": "MZ123"}


class TestProtocolHandler:
    """Tests for TwilioProtocolHandler."""

    def test_handler_initial_state(self):
        handler = TwilioProtocolHandler()

        assert handler.stream_sid == ""
        assert handler.call_sid == ""
        assert handler.is_active is False

    def test_handle_start_and_stop(self):
        handler = started_handler()

        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"
        assert handler.is_active is True

        handler.handle_stop()

        assert handler.is_active is False

    def test_whole_chunk_sent_as_one_media_message(self):
        handler = started_handler()
        audio = b"\xff" * 4000

        parsed = json.loads(handler.create_media(audio))

        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio

    def test_mark_sequence_tracking(self):
        handler = started_handler()

        handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="a", sequence_number=3))
        handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="b", sequence_number=2))

        assert handler.call_state.last_mark_sequence == 3

        handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="c", sequence_number=4))

        assert handler.call_state.last_mark_sequence == 4

    def test_no_messages_before_start(self):
        handler = TwilioProtocolHandler()

        assert handler.create_media(b"\xff" * 160) == ""
        assert handler.create_mark("g0_t0_c0") == ""
        assert handler.create_clear() == ""

    def test_call_state_defaults(self):
        state = CallState()

        assert state.stream_sid == ""
        assert state.last_mark_sequence == 0
        assert state.is_active is True
