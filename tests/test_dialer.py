"""
Tests for outbound dialing.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.callbridge.config import ConfigError
from src.callbridge.dialer import make_outbound_call


class TestOutboundCall:
    @pytest.mark.asyncio
    async def test_call_points_twilio_at_incoming_webhook(self, config):
        client = MagicMock()
        client.calls.create.return_value = SimpleNamespace(sid="CA555")

        call_sid = await make_outbound_call(" +15551234567 ", config=config, client=client)

        assert call_sid == "CA555"
        client.calls.create.assert_called_once_with(
            url="https://test.ngrok.io/incoming",
            to="+15551234567",
            from_="+15550001111",
        )

    @pytest.mark.asyncio
    async def test_number_required(self, config):
        with pytest.raises(ValueError):
            await make_outbound_call("", config=config, client=MagicMock())

    @pytest.mark.asyncio
    async def test_from_number_required(self, config):
        client = MagicMock()

        with pytest.raises(ConfigError):
            await make_outbound_call("+15551234567", config=replace(config, from_number=""), client=client)

        client.calls.create.assert_not_called()
