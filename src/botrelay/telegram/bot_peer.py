"""Outbound actions towards the download bot."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from telethon.errors import RPCError

from botrelay.core.config.constants import (
    ENTITY_LOOKUP_ATTEMPTS,
    ENTITY_LOOKUP_DELAY_SECONDS,
)
from botrelay.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from botrelay.core.exceptions import BotUnreachableError

if TYPE_CHECKING:
    from botrelay.correlation.correlator import MenuReference

logger = logging.getLogger(__name__)

PEER_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, RPCError)


class BotPeer:
    """Send text to the bot and drive its inline keyboards."""

    def __init__(
        self,
        client: Any,  # noqa: ANN401
        username: str,
        *,
        lookup_attempts: int = ENTITY_LOOKUP_ATTEMPTS,
        lookup_delay: float = ENTITY_LOOKUP_DELAY_SECONDS,
    ) -> None:
        self.client = client
        self.username = username if username.startswith("@") else f"@{username}"
        self.lookup_attempts = lookup_attempts
        self.lookup_delay = lookup_delay

    async def resolve_entity(self) -> Any:  # noqa: ANN401
        """Look the bot up, retrying a few times before giving up."""
        for attempt in range(1, self.lookup_attempts + 1):
            try:
                return await self.client.get_entity(self.username)
            except ConnectionError:
                raise
            except PEER_EXCEPTIONS as exc:
                logger.warning(
                    "Failed to get bot entity %s, retries left: %s (%s)",
                    self.username,
                    self.lookup_attempts - attempt,
                    exc,
                )
                if attempt < self.lookup_attempts:
                    await asyncio.sleep(self.lookup_delay)
        raise BotUnreachableError(self.username, self.lookup_attempts)

    async def send_text(self, text: str) -> None:
        entity = await self.resolve_entity()
        await self.client.send_message(entity, text)
        logger.info("Sent to %s: %s", self.username, text)

    async def refresh_message(self, reference: MenuReference) -> Any:  # noqa: ANN401
        """Re-fetch a stored message by id. Return None when it is gone."""
        chat = reference.chat_id
        if chat is None:
            chat = await self.resolve_entity()
        message = await self.client.get_messages(chat, ids=reference.message_id)
        if message is None:
            logger.warning("Stored message %s no longer exists", reference.message_id)
        return message

    async def select_format(self, message: Any, fmt: str) -> str:  # noqa: ANN401
        """Click the inline button whose label contains `fmt`.

        Falls back to sending `fmt` as text when no button matches or the
        click fails. Returns ``"button"`` or ``"text"``.
        """
        rows = getattr(message, "buttons", None) or []
        buttons = [button for row in rows for button in row]
        match = next(
            (button for button in buttons if fmt in (getattr(button, "text", "") or "")),
            None,
        )

        if match is None:
            logger.warning(
                "Could not find button for format %s; available: %s",
                fmt,
                " | ".join(getattr(button, "text", "") for button in buttons) or "none",
            )
        else:
            try:
                await match.click()
            except ConnectionError:
                raise
            except PEER_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Error clicking format button; falling back to text",
                    error=exc,
                    context={"format": fmt, "button": match.text},
                )
            else:
                logger.info("Clicked button %r for format %s", match.text, fmt)
                return "button"

        await self.send_text(fmt)
        return "text"
