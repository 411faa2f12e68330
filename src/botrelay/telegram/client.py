"""Telethon client construction."""

import logging

from telethon import TelegramClient
from telethon.sessions import StringSession

from botrelay.core.config import TelegramSettings
from botrelay.core.config.constants import (
    CLIENT_TIMEOUT_SECONDS,
    CONNECTION_RETRIES,
    FLOOD_SLEEP_THRESHOLD,
    REQUEST_RETRIES,
)

logging.getLogger("telethon").setLevel(logging.WARNING)


def build_client(settings: TelegramSettings) -> TelegramClient:
    """Create an unconnected client for the configured user session."""
    return TelegramClient(
        StringSession(settings.session or None),
        settings.api_id,
        settings.api_hash,
        connection_retries=CONNECTION_RETRIES,
        retry_delay=1,
        auto_reconnect=True,
        timeout=CLIENT_TIMEOUT_SECONDS,
        request_retries=REQUEST_RETRIES,
        flood_sleep_threshold=FLOOD_SLEEP_THRESHOLD,
        use_ipv6=False,
    )
