"""Call recording through the Twilio REST API."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callbridge.config import Config, ConfigError, get_config

logger = structlog.get_logger(__name__)


def _create_client(config: Config) -> Any:
    from twilio.rest import Client

    return Client(config.twilio_account_sid, config.twilio_auth_token)


async def start_call_recording(
    call_sid: str,
    config: Optional[Config] = None,
    client: Optional[Any] = None,
) -> str:
    """
    Start a dual-channel recording of a live call.

    Returns:
        The Twilio recording SID

    Raises:
        ValueError: no call SID given
        ConfigError: Twilio credentials missing
    """
    if config is None:
        config = get_config()

    if not call_sid:
        raise ValueError("A call SID is required to record a call.")
    if not (config.twilio_account_sid and config.twilio_auth_token):
        raise ConfigError("Call recording needs TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN.")

    if client is None:
        client = _create_client(config)

    # The Twilio REST client is blocking.
    recording = await asyncio.to_thread(
        lambda: client.calls(call_sid).recordings.create(recording_channels="dual")
    )
    logger.info("Call recording started", call_sid=call_sid, recording_sid=recording.sid)
    return recording.sid
