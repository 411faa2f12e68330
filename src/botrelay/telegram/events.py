"""Telethon event subscriptions and message adaptation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from telethon import events
from telethon.errors import RPCError

from botrelay.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_chat_event_error
from botrelay.telegram.classifier import InboundEvent, MediaDescriptor

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    MessageHandler = Callable[..., Awaitable[object]]

logger = logging.getLogger(__name__)

EVENT_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, RPCError)


def describe_media(message: Any) -> MediaDescriptor | None:  # noqa: ANN401
    """Reduce a Telethon message's attachment to its declared properties."""
    if getattr(message, "photo", None) is not None:
        return MediaDescriptor(mime_type="image/jpeg", is_photo=True)

    document = getattr(message, "document", None)
    if document is None:
        return None

    attributes = list(getattr(document, "attributes", None) or ())
    file_name = next(
        (
            attr.file_name
            for attr in attributes
            if getattr(attr, "file_name", None)
        ),
        None,
    )
    return MediaDescriptor(
        mime_type=getattr(document, "mime_type", "") or "",
        attribute_names=tuple(type(attr).__name__ for attr in attributes),
        file_name=file_name,
        size=getattr(document, "size", None),
    )


async def to_inbound_event(message: Any) -> InboundEvent:  # noqa: ANN401
    sender = await message.get_sender()
    return InboundEvent(
        sender=getattr(sender, "username", None),
        text=getattr(message, "text", None) or "",
        media=describe_media(message),
    )


def _is_reference_only(message: Any) -> bool:  # noqa: ANN401
    return not getattr(message, "text", None) and getattr(message, "media", None) is None


async def _full_message(client: Any, message: Any) -> Any:  # noqa: ANN401
    """Fetch the complete message when an edit update carried only its id."""
    if not _is_reference_only(message):
        return message
    refreshed = await client.get_messages(message.chat_id, ids=message.id)
    return refreshed or message


def register_event_handlers(client: Any, handle_message: MessageHandler) -> None:  # noqa: ANN401
    """Route new and edited incoming messages to `handle_message`.

    The bot frequently edits its "Downloading..." message in place and may
    replace it with the media itself, so edits are handled like new messages.
    """

    async def on_new_message(event: events.NewMessage.Event) -> None:
        try:
            await handle_message(event.message, is_edit=False)
        except EVENT_EXCEPTIONS as exc:
            log_chat_event_error(
                logger=logger,
                error=exc,
                event_name="new_message",
                chat_id=getattr(event, "chat_id", None),
                message_id=getattr(event.message, "id", None),
            )

    async def on_message_edited(event: events.MessageEdited.Event) -> None:
        try:
            message = await _full_message(client, event.message)
            await handle_message(message, is_edit=True)
        except EVENT_EXCEPTIONS as exc:
            log_chat_event_error(
                logger=logger,
                error=exc,
                event_name="message_edited",
                chat_id=getattr(event, "chat_id", None),
                message_id=getattr(event.message, "id", None),
            )

    client.add_event_handler(on_new_message, events.NewMessage(incoming=True))
    client.add_event_handler(on_message_edited, events.MessageEdited(incoming=True))
    logger.info("Listening to new and edited incoming messages")
