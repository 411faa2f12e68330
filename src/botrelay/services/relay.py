"""Glue between inbound bot replies, the correlator and HTTP callers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from botrelay.core.config.constants import AUDIO_ONLY_LABEL, STATUS_REQUESTING
from botrelay.core.exceptions import (
    MenuUnavailableError,
    NotConnectedError,
    RelayError,
    TransferFailedError,
)
from botrelay.core.models import Outcome, PayloadKind, RequestKind
from botrelay.telegram.bot_peer import PEER_EXCEPTIONS
from botrelay.telegram.classifier import (
    Classification,
    EventCategory,
    InboundEvent,
    classify_event,
)
from botrelay.telegram.events import to_inbound_event

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from botrelay.correlation.correlator import Correlator, PendingRequest
    from botrelay.services.transfer import TransferRelay
    from botrelay.telegram.bot_peer import BotPeer
    from botrelay.telegram.connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_LOST_MESSAGE = "Connection lost. Reconnecting..."
TRANSFER_INTERRUPTED_MESSAGE = "Download failed: transfer interrupted"


class RelayService:
    """Turn bot replies into resolved requests, one event at a time."""

    def __init__(
        self,
        *,
        client: Any,  # noqa: ANN401
        connection: ConnectionManager,
        correlator: Correlator,
        transfer: TransferRelay,
        bot: BotPeer,
        allowed_senders: Iterable[str],
    ) -> None:
        self.client = client
        self.connection = connection
        self.correlator = correlator
        self.transfer = transfer
        self.bot = bot
        self.allowed_senders = tuple(allowed_senders)
        self._event_lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()

    # -- inbound -----------------------------------------------------------

    async def handle_message(self, message: Any, *, is_edit: bool = False) -> Classification:  # noqa: ANN401
        """Classify one inbound message and feed it to the correlator.

        Calls are serialized in arrival order.
        """
        async with self._event_lock:
            event = await to_inbound_event(message)
            result = classify_event(event, self.allowed_senders)
            if result.category is EventCategory.IRRELEVANT:
                return result
            logger.debug(
                "%s %s message %s",
                "Edited" if is_edit else "New",
                result.category,
                getattr(message, "id", None),
            )
            if result.category is EventCategory.MENU:
                self._on_menu(message, result)
            elif result.category is EventCategory.PROGRESS:
                self._on_progress(result)
            elif result.category is EventCategory.PAYLOAD:
                await self._on_payload(message, event, result)
            return result

    def _on_menu(self, message: Any, result: Classification) -> None:  # noqa: ANN401
        self.correlator.remember_menu(
            message,
            message_id=message.id,
            chat_id=getattr(message, "chat_id", None),
        )
        logger.info("Format list detected: %s formats", len(result.formats))
        pending = self.correlator.claim(RequestKind.MENU)
        if pending is None:
            logger.info("Format list stored; no request was waiting for it")
            return
        self.correlator.complete(pending, Outcome(formats=result.formats))

    def _on_progress(self, result: Classification) -> None:
        if result.percent is None:
            return
        updated = self.correlator.broadcast_progress(result.percent)
        logger.info("Progress: %s%% (%s record(s))", result.percent, updated)

    async def _on_payload(
        self,
        message: Any,  # noqa: ANN401
        event: InboundEvent,
        result: Classification,
    ) -> None:
        kind = result.payload_kind
        if kind is None or event.media is None:
            return

        pending = self.correlator.claim(RequestKind.PAYLOAD, kind)
        if pending is None:
            if kind is PayloadKind.AUDIO and self.correlator.kinds.last_visual_at() is not None:
                logger.info("Discarding audio payload; a video or image was already delivered")
            else:
                logger.info("Ignoring %s payload; no request is waiting", kind)
            return

        logger.info("%s payload claimed by request %s", kind.capitalize(), pending.request_id)
        # The claim disarmed the deadline, so every exit path must resolve.
        outcome = Outcome.failure(TRANSFER_INTERRUPTED_MESSAGE)
        try:
            media = await self.transfer.persist(
                self.client,
                message,
                kind=kind,
                mime_type=event.media.mime_type,
                issued_at=pending.request_id,
                size=event.media.size,
            )
        except TransferFailedError as exc:
            outcome = Outcome.failure(str(exc))
        else:
            outcome = Outcome(media=media)
        finally:
            self.correlator.complete(pending, outcome)

    # -- outbound ----------------------------------------------------------

    async def _guard_outbound(self, action: Awaitable[T]) -> T:
        """Run a chat call, turning a dropped connection into NotConnectedError."""
        try:
            return await action
        except ConnectionError as exc:
            self.connection.mark_failed(exc)
            raise NotConnectedError(CONNECTION_LOST_MESSAGE) from exc

    async def _send_and_wait(self, url: str, kind: RequestKind) -> Outcome | None:
        self.connection.require_connected()
        pending = self.correlator.register(kind)
        try:
            await self._guard_outbound(self.bot.send_text(url))
        except (*PEER_EXCEPTIONS, RelayError) as exc:
            self.correlator.resolve(pending.request_id, Outcome.failure(str(exc)))
            raise
        return await pending.shot.wait()

    async def fetch_formats(self, url: str) -> Outcome | None:
        """Send `url` and wait for the bot's quality menu."""
        return await self._send_and_wait(url, RequestKind.MENU)

    async def download(self, url: str) -> Outcome | None:
        """Send `url` and wait for the saved media (or a menu)."""
        return await self._send_and_wait(url, RequestKind.ANY)

    async def start_format_download(self, url: str, fmt: str) -> int:
        """Pick `fmt` on the last menu and return a pollable request id."""
        self.connection.require_connected()
        menu = self.correlator.last_menu
        if menu is None:
            logger.error("No format message stored, cannot select %s", fmt)
            raise MenuUnavailableError

        request_id = self.correlator.next_request_id()
        self.correlator.track_progress(request_id, STATUS_REQUESTING)
        try:
            message = await self._guard_outbound(self.bot.refresh_message(menu))
        except (*PEER_EXCEPTIONS, RelayError):
            self.correlator.progress.pop(request_id, None)
            raise
        if message is None:
            self.correlator.progress.pop(request_id, None)
            raise MenuUnavailableError("Format menu expired. Please request formats again.")

        preferred = PayloadKind.AUDIO if fmt.upper() == AUDIO_ONLY_LABEL else None
        pending = self.correlator.register(
            RequestKind.PAYLOAD,
            request_id=request_id,
            preferred_kind=preferred,
        )
        logger.info("Selecting format %s for %s (requestId: %s)", fmt, url, request_id)
        try:
            await self._guard_outbound(self.bot.select_format(message, fmt))
        except (*PEER_EXCEPTIONS, RelayError) as exc:
            self.correlator.resolve(
                request_id,
                Outcome.failure(f"Failed to select format: {exc}"),
            )
            raise

        self.correlator.update_progress(
            request_id,
            progress=10,
            status=f"Processing {fmt} video...",
        )
        task = asyncio.create_task(
            self._watch_background(pending),
            name=f"botrelay-format-{request_id}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return request_id

    async def _watch_background(self, pending: PendingRequest) -> None:
        outcome = await pending.shot.wait()
        if outcome is None:
            logger.error(
                "Download failed or timed out for requestId: %s",
                pending.request_id,
            )
        elif not outcome.ok:
            logger.error(
                "Download failed for requestId %s: %s",
                pending.request_id,
                outcome.error,
            )

    def progress(self, request_id: int) -> dict[str, Any]:
        return self.correlator.progress_snapshot(request_id)

    async def close(self) -> None:
        self.correlator.close()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
