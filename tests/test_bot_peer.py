from __future__ import annotations

import time

import pytest

from botrelay.core.exceptions import BotUnreachableError
from botrelay.correlation.correlator import MenuReference
from botrelay.telegram.bot_peer import BotPeer
from ._fakes import BOT_NAME, FakeTelegramClient, menu_message


def _peer(client: FakeTelegramClient, attempts: int = 3) -> BotPeer:
    return BotPeer(client, BOT_NAME, lookup_attempts=attempts, lookup_delay=0)


@pytest.mark.asyncio
async def test_entity_lookup_retries_then_succeeds(fake_client: FakeTelegramClient) -> None:
    fake_client.entity_errors = [ValueError("no user"), ValueError("no user")]
    peer = _peer(fake_client)

    await peer.send_text("https://example.com/v/1")

    assert fake_client.entity_calls == 3
    assert fake_client.sent == [(f"entity:@{BOT_NAME}", "https://example.com/v/1")]


@pytest.mark.asyncio
async def test_entity_lookup_gives_up(fake_client: FakeTelegramClient) -> None:
    fake_client.entity_errors = [ValueError("no user")] * 3
    peer = _peer(fake_client)

    with pytest.raises(BotUnreachableError) as excinfo:
        await peer.resolve_entity()

    assert excinfo.value.attempts == 3
    assert fake_client.sent == []


@pytest.mark.asyncio
async def test_entity_lookup_propagates_connection_errors(
    fake_client: FakeTelegramClient,
) -> None:
    fake_client.entity_errors = [ConnectionError("closed")]

    with pytest.raises(ConnectionError):
        await _peer(fake_client).resolve_entity()
    assert fake_client.entity_calls == 1


@pytest.mark.asyncio
async def test_select_format_clicks_matching_button(fake_client: FakeTelegramClient) -> None:
    menu = menu_message(5)

    method = await _peer(fake_client).select_format(menu, "720p")

    assert method == "button"
    assert menu.buttons is not None
    assert [button.clicks for row in menu.buttons for button in row] == [0, 1, 0]
    assert fake_client.sent == []


@pytest.mark.asyncio
async def test_select_format_falls_back_to_text_without_button(
    fake_client: FakeTelegramClient,
) -> None:
    menu = menu_message(5)

    method = await _peer(fake_client).select_format(menu, "144p")

    assert method == "text"
    assert fake_client.sent == [(f"entity:@{BOT_NAME}", "144p")]


@pytest.mark.asyncio
async def test_select_format_falls_back_to_text_when_click_fails(
    fake_client: FakeTelegramClient,
) -> None:
    menu = menu_message(5)
    assert menu.buttons is not None
    menu.buttons[1][0].error = RuntimeError("callback expired")

    method = await _peer(fake_client).select_format(menu, "MP3")

    assert method == "text"
    assert menu.buttons[1][0].clicks == 1
    assert fake_client.sent == [(f"entity:@{BOT_NAME}", "MP3")]


@pytest.mark.asyncio
async def test_refresh_message_returns_none_when_deleted(
    fake_client: FakeTelegramClient,
) -> None:
    menu = menu_message(9)
    fake_client.messages[9] = menu
    peer = _peer(fake_client)

    live = await peer.refresh_message(
        MenuReference(message_id=9, chat_id=777, message=menu, received_at=time.time())
    )
    gone = await peer.refresh_message(
        MenuReference(message_id=10, chat_id=777, message=menu, received_at=time.time())
    )

    assert live is menu
    assert gone is None
