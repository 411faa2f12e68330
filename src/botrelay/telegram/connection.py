"""Lifecycle of the single Telegram user session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum
from typing import Any

from telethon.errors import AuthKeyDuplicatedError, RPCError

from botrelay.core.config.constants import (
    KEEPALIVE_INTERVAL_SECONDS,
    KEEPALIVE_TIMEOUT_SECONDS,
    RECONNECT_DELAY_SECONDS,
)
from botrelay.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from botrelay.core.exceptions import (
    SESSION_HALTED_MESSAGE,
    NotConnectedError,
    SessionHaltedError,
)

logger = logging.getLogger(__name__)

CONNECTION_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, RPCError)
UNAUTHORIZED_MESSAGE = (
    "Telegram session is not authorized; generate a session string and restart"
)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    HALTED = "halted"


class ConnectionManager:
    """Keep exactly one live session and recover it after failures.

    A duplicate-session error means two processes share one identity; the
    manager halts and waits for an operator instead of fighting the other
    process for the session.
    """

    def __init__(
        self,
        client: Any,  # noqa: ANN401
        *,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        keepalive_timeout: float = KEEPALIVE_TIMEOUT_SECONDS,
    ) -> None:
        self.client = client
        self.reconnect_delay = reconnect_delay
        self.keepalive_interval = keepalive_interval
        self.keepalive_timeout = keepalive_timeout
        self.state = ConnectionState.DISCONNECTED
        self.halt_reason: str | None = None
        self.reconnect_attempts = 0
        self._stopping = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def require_connected(self) -> None:
        """Raise unless outbound chat work can be attempted right now."""
        if self.state is ConnectionState.HALTED:
            raise SessionHaltedError(self.halt_reason)
        if not self.is_connected:
            raise NotConnectedError

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.info("Telegram connection: %s -> %s", self.state, state)
        self.state = state

    def _halt(self, reason: str) -> None:
        logger.error("Telegram connection halted: %s", reason)
        self.halt_reason = reason
        self._set_state(ConnectionState.HALTED)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> bool:
        """Connect once and start the liveness probe."""
        self._stopping = False
        connected = await self.connect()
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.create_task(
                self._keepalive_loop(),
                name="botrelay-keepalive",
            )
        return connected

    async def connect(self) -> bool:
        """Attempt a connection; on a transient failure schedule a retry."""
        if await self._attempt_connect():
            return True
        if self.state is not ConnectionState.HALTED:
            self.schedule_reconnect()
        return False

    async def _attempt_connect(self) -> bool:
        if self.state is ConnectionState.HALTED or self._stopping:
            return False

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self.client.connect()
            authorized = await self.client.is_user_authorized()
        except AuthKeyDuplicatedError:
            self._halt(SESSION_HALTED_MESSAGE)
            return False
        except CONNECTION_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Telegram connection attempt failed",
                error=exc,
                context={"attempt": self.reconnect_attempts},
            )
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        if not authorized:
            self._halt(UNAUTHORIZED_MESSAGE)
            return False

        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._watch_disconnect()
        return True

    def mark_failed(self, error: BaseException | None = None) -> None:
        """Record a failure observed anywhere and start recovery."""
        if isinstance(error, AuthKeyDuplicatedError):
            self._halt(SESSION_HALTED_MESSAGE)
            return
        if self.state is ConnectionState.HALTED or self._stopping:
            return
        if self.reconnect_pending:
            return
        self._set_state(ConnectionState.DISCONNECTED)
        self.schedule_reconnect()

    def schedule_reconnect(self) -> None:
        """Start the reconnect sequence unless one is already running."""
        if self.state is ConnectionState.HALTED or self._stopping:
            return
        if self.reconnect_pending:
            return
        self._set_state(ConnectionState.RECONNECT_SCHEDULED)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(),
            name="botrelay-reconnect",
        )

    async def _reconnect_loop(self) -> None:
        while not self._stopping and self.state is not ConnectionState.HALTED:
            self._set_state(ConnectionState.RECONNECT_SCHEDULED)
            await asyncio.sleep(self.reconnect_delay)
            self.reconnect_attempts += 1
            logger.info("Attempting to reconnect (attempt %s)", self.reconnect_attempts)
            with contextlib.suppress(*CONNECTION_EXCEPTIONS):
                await self.client.disconnect()
            if await self._attempt_connect():
                return

    def _watch_disconnect(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        disconnected = getattr(self.client, "disconnected", None)
        if disconnected is None:
            return
        self._watch_task = asyncio.create_task(
            self._watch(disconnected),
            name="botrelay-disconnect-watch",
        )

    async def _watch(self, disconnected: Any) -> None:  # noqa: ANN401
        error: BaseException | None = None
        try:
            await disconnected
        except CONNECTION_EXCEPTIONS as exc:
            error = exc
        if self._stopping or self.state is not ConnectionState.CONNECTED:
            return
        logger.warning("Telegram connection dropped: %s", error or "no error")
        self.mark_failed(error)

    async def _keepalive_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.keepalive_interval)
            if self.state is not ConnectionState.CONNECTED:
                continue
            try:
                await asyncio.wait_for(
                    self.client.get_me(),
                    timeout=self.keepalive_timeout,
                )
            except CONNECTION_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Keep-alive failed",
                    error=exc,
                )
                self.mark_failed(exc)
            else:
                logger.debug("Connection alive")

    async def stop(self) -> None:
        """Stop background tasks and disconnect. Safe to call twice."""
        self._stopping = True
        tasks = [
            task
            for task in (self._reconnect_task, self._keepalive_task, self._watch_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        with contextlib.suppress(*CONNECTION_EXCEPTIONS):
            await self.client.disconnect()
        if self.state is not ConnectionState.HALTED:
            self._set_state(ConnectionState.DISCONNECTED)
