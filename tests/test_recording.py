"""
Tests for call recording.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.callbridge.config import ConfigError
from src.callbridge.recording import start_call_recording


class TestCallRecording:
    @pytest.mark.asyncio
    async def test_starts_dual_channel_recording(self, config):
        client = MagicMock()
        client.calls.return_value.recordings.create.return_value = SimpleNamespace(sid="RE777")

        recording_sid = await start_call_recording("CA789012", config=config, client=client)

        assert recording_sid == "RE777"
        client.calls.assert_called_once_with("CA789012")
        client.calls.return_value.recordings.create.assert_called_once_with(recording_channels="dual")

    @pytest.mark.asyncio
    async def test_call_sid_required(self, config):
        with pytest.raises(ValueError):
            await start_call_recording("", config=config, client=MagicMock())

    @pytest.mark.asyncio
    async def test_credentials_required(self, config):
        client = MagicMock()

        with pytest.raises(ConfigError):
            await start_call_recording("CA1", config=replace(config, twilio_auth_token=""), client=client)

        client.calls.assert_not_called()
