from __future__ import annotations

from pathlib import Path

import pytest

from botrelay.correlation.correlator import Correlator
from botrelay.services.relay import RelayService
from botrelay.services.transfer import TransferRelay
from botrelay.telegram.bot_peer import BotPeer
from botrelay.telegram.connection import ConnectionManager, ConnectionState
from ._fakes import BOT_NAME, FakeTelegramClient


@pytest.fixture
def fake_client() -> FakeTelegramClient:
    return FakeTelegramClient()


@pytest.fixture
def downloads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def relay(fake_client: FakeTelegramClient, downloads_dir: Path) -> RelayService:
    connection = ConnectionManager(fake_client, reconnect_delay=0.01)
    connection.state = ConnectionState.CONNECTED
    return RelayService(
        client=fake_client,
        connection=connection,
        correlator=Correlator(
            menu_timeout=0.5,
            payload_timeout=0.5,
            progress_retention=0.2,
        ),
        transfer=TransferRelay(downloads_dir),
        bot=BotPeer(fake_client, f"@{BOT_NAME}", lookup_delay=0),
        allowed_senders=[BOT_NAME],
    )
