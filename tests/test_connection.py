from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from telethon.errors import AuthKeyDuplicatedError

from botrelay.core.exceptions import NotConnectedError, SessionHaltedError
from botrelay.telegram.connection import (
    UNAUTHORIZED_MESSAGE,
    ConnectionManager,
    ConnectionState,
)
from ._fakes import FakeTelegramClient


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def _manager(client: FakeTelegramClient, **kwargs: float) -> ConnectionManager:
    kwargs.setdefault("reconnect_delay", 0.01)
    kwargs.setdefault("keepalive_interval", 60)
    return ConnectionManager(client, **kwargs)


@pytest.mark.asyncio
async def test_start_connects(fake_client: FakeTelegramClient) -> None:
    manager = _manager(fake_client)

    assert await manager.start() is True
    assert manager.state is ConnectionState.CONNECTED
    manager.require_connected()

    await manager.stop()
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_duplicate_session_halts_without_reconnect(
    fake_client: FakeTelegramClient,
) -> None:
    fake_client.connect_errors.append(AuthKeyDuplicatedError(request=None))
    manager = _manager(fake_client)

    assert await manager.start() is False
    await asyncio.sleep(0.05)

    assert manager.state is ConnectionState.HALTED
    assert manager.reconnect_pending is False
    assert fake_client.connect_calls == 1
    with pytest.raises(SessionHaltedError):
        manager.require_connected()

    manager.schedule_reconnect()
    assert manager.reconnect_pending is False
    await manager.stop()
    assert manager.state is ConnectionState.HALTED


@pytest.mark.asyncio
async def test_unauthorized_session_halts(fake_client: FakeTelegramClient) -> None:
    fake_client.authorized = False
    manager = _manager(fake_client)

    assert await manager.start() is False

    assert manager.state is ConnectionState.HALTED
    assert manager.halt_reason == UNAUTHORIZED_MESSAGE
    await manager.stop()


@pytest.mark.asyncio
async def test_transient_failure_schedules_single_reconnect(
    fake_client: FakeTelegramClient,
) -> None:
    fake_client.connect_errors.append(ConnectionError("network down"))
    manager = _manager(fake_client)

    assert await manager.start() is False
    assert manager.reconnect_pending is True
    scheduled = manager._reconnect_task

    manager.schedule_reconnect()
    manager.mark_failed(ConnectionError("again"))
    assert manager._reconnect_task is scheduled

    await _wait_for(lambda: manager.is_connected)
    assert fake_client.connect_calls == 2
    assert manager.reconnect_attempts == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_dropped_connection_triggers_reconnect(
    fake_client: FakeTelegramClient,
) -> None:
    manager = _manager(fake_client)
    await manager.start()

    fake_client.drop(ConnectionError("reset by peer"))

    await _wait_for(lambda: fake_client.connect_calls == 2 and manager.is_connected)
    assert fake_client.disconnect_calls >= 1
    await manager.stop()


@pytest.mark.asyncio
async def test_failed_keepalive_probe_reconnects(fake_client: FakeTelegramClient) -> None:
    fake_client.get_me_error = TimeoutError()
    manager = _manager(fake_client, keepalive_interval=0.01)
    await manager.start()

    await _wait_for(lambda: fake_client.connect_calls >= 2)
    assert fake_client.get_me_calls >= 1
    await manager.stop()


@pytest.mark.asyncio
async def test_require_connected_while_disconnected(
    fake_client: FakeTelegramClient,
) -> None:
    manager = _manager(fake_client)

    with pytest.raises(NotConnectedError, match="not connected"):
        manager.require_connected()


@pytest.mark.asyncio
async def test_failures_after_stop_are_ignored(fake_client: FakeTelegramClient) -> None:
    manager = _manager(fake_client)
    await manager.start()
    await manager.stop()

    manager.mark_failed(ConnectionError("late"))

    assert manager.reconnect_pending is False
    assert manager.state is ConnectionState.DISCONNECTED
