"""Entrypoint module for wiring and starting services."""

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botrelay.core.config import RelaySettings, get_config, load_settings
from botrelay.correlation.correlator import Correlator
from botrelay.server import create_app, start_server
from botrelay.services.cleanup import cleanup_loop
from botrelay.services.relay import RelayService
from botrelay.services.transfer import TransferRelay
from botrelay.telegram.bot_peer import BotPeer
from botrelay.telegram.client import build_client
from botrelay.telegram.connection import ConnectionManager
from botrelay.telegram.events import register_event_handlers

if TYPE_CHECKING:
    from aiohttp.web import AppRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _EntrypointState:
    server_runner: "AppRunner | None" = None
    relay: RelayService | None = None
    cleanup_task: "asyncio.Task[None] | None" = None
    stop_event: asyncio.Event | None = None


_STATE = _EntrypointState()


def build_relay(settings: RelaySettings, client: Any) -> RelayService:  # noqa: ANN401
    """Assemble the relay around an unconnected chat client."""
    connection = ConnectionManager(
        client,
        reconnect_delay=settings.reconnect_delay_seconds,
        keepalive_interval=settings.keepalive_interval_seconds,
    )
    correlator = Correlator(
        menu_timeout=settings.menu_timeout_seconds,
        payload_timeout=settings.payload_timeout_seconds,
        progress_retention=settings.progress_retention_seconds,
    )
    return RelayService(
        client=client,
        connection=connection,
        correlator=correlator,
        transfer=TransferRelay(settings.downloads_dir),
        bot=BotPeer(client, settings.bot_username),
        allowed_senders=settings.allowed_senders,
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)


async def shutdown() -> None:
    """Best-effort shutdown of long-lived resources.

    This is safe to call multiple times.
    """
    logger.info("Shutting down...")
    if _STATE.cleanup_task is not None:
        _STATE.cleanup_task.cancel()
        await asyncio.gather(_STATE.cleanup_task, return_exceptions=True)
        _STATE.cleanup_task = None

    if _STATE.relay is not None:
        with contextlib.suppress(Exception):
            await _STATE.relay.close()
        with contextlib.suppress(Exception):
            await _STATE.relay.connection.stop()
        _STATE.relay = None

    if _STATE.server_runner is not None:
        with contextlib.suppress(Exception):
            await _STATE.server_runner.cleanup()
        _STATE.server_runner = None


async def main(config_file: str = "config.yaml") -> None:
    """Load settings, start the HTTP server and the chat session."""
    settings = load_settings(get_config(config_file))
    settings.downloads_dir.mkdir(parents=True, exist_ok=True)

    client = build_client(settings.telegram)
    relay = build_relay(settings, client)
    _STATE.relay = relay
    register_event_handlers(client, relay.handle_message)

    _STATE.server_runner = await start_server(create_app(relay, settings), settings)
    _STATE.stop_event = asyncio.Event()
    _install_signal_handlers(_STATE.stop_event)
    try:
        if await relay.connection.start():
            logger.info("Telegram client connected")
        _STATE.cleanup_task = asyncio.create_task(
            cleanup_loop(
                settings.downloads_dir,
                max_age_seconds=settings.retention_seconds,
                interval_seconds=settings.cleanup_interval_seconds,
            ),
            name="botrelay-cleanup",
        )
        await _STATE.stop_event.wait()
    finally:
        with contextlib.suppress(Exception):
            await asyncio.shield(shutdown())
