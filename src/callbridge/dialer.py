"""Outbound calls through the Twilio REST API."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callbridge.config import Config, ConfigError, get_config

logger = structlog.get_logger(__name__)


def _create_client(config: Config) -> Any:
    from twilio.rest import Client

    return Client(config.twilio_account_sid, config.twilio_auth_token)


async def make_outbound_call(
    number: str,
    config: Optional[Config] = None,
    client: Optional[Any] = None,
) -> str:
    """
    Place a call to `number`; when it connects Twilio fetches our /incoming TwiML.

    Returns:
        The Twilio call SID

    Raises:
        ValueError: no number given
        ConfigError: Twilio credentials, FROM_NUMBER or PUBLIC_HOST missing
    """
    if config is None:
        config = get_config()

    number = (number or "").strip()
    if not number:
        raise ValueError("A target phone number is required.")

    if not (config.from_number and config.public_host and config.twilio_account_sid and config.twilio_auth_token):
        raise ConfigError("Outbound calling needs TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, FROM_NUMBER and PUBLIC_HOST.")

    if client is None:
        client = _create_client(config)

    logger.info("Initiating outbound call", to=number)

    # The Twilio REST client is blocking.
    call = await asyncio.to_thread(
        client.calls.create,
        url=f"{config.base_url}/incoming",
        to=number,
        from_=config.from_number,
    )
    logger.info("Outbound call initiated", call_sid=call.sid)
    return call.sid
