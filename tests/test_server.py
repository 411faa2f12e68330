from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from aiohttp import ClientResponse
from aiohttp.test_utils import TestClient, TestServer

from botrelay.core.config import RelaySettings, TelegramSettings
from botrelay.server import create_app
from botrelay.services.relay import RelayService
from botrelay.telegram.connection import ConnectionState
from ._fakes import FakeTelegramClient, menu_message, video_message

URL = "https://example.com/watch?v=abc"
FILE_SIZE = 1000


def _settings(tmp_path: Path, downloads_dir: Path) -> RelaySettings:
    return RelaySettings(
        telegram=TelegramSettings(api_id=1, api_hash="hash"),
        downloads_dir=downloads_dir,
        static_dir=tmp_path,
    )


@contextlib.asynccontextmanager
async def _client(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> AsyncIterator[TestClient]:
    app = create_app(relay, _settings(tmp_path, downloads_dir))
    async with TestClient(TestServer(app)) as client:
        yield client


async def _post(client: TestClient, path: str, payload: dict[str, str]) -> ClientResponse:
    return await client.post(path, json=payload)


async def _wait_sent(client: FakeTelegramClient, count: int = 1) -> None:
    async with asyncio.timeout(1):
        while len(client.sent) < count:
            await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_range_request_returns_partial_content(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    body = bytes(range(256)) * 4
    (downloads_dir / "video_1.mp4").write_bytes(body[:FILE_SIZE])

    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.get(
            "/downloads/video_1.mp4",
            headers={"Range": "bytes=100-199"},
        )
        data = await response.read()

    assert response.status == 206
    assert response.headers["Content-Range"] == f"bytes 100-199/{FILE_SIZE}"
    assert response.headers["Accept-Ranges"] == "bytes"
    assert data == body[100:200]


@pytest.mark.asyncio
async def test_full_download_and_disposition_toggle(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    (downloads_dir / "audio_2.mp3").write_bytes(b"a" * FILE_SIZE)

    async with _client(relay, tmp_path, downloads_dir) as client:
        inline = await client.get("/downloads/audio_2.mp3")
        inline_body = await inline.read()
        attachment = await client.get("/downloads/audio_2.mp3?download=true")
        await attachment.read()

    assert inline.status == 200
    assert len(inline_body) == FILE_SIZE
    assert inline.headers["Content-Type"] == "audio/mpeg"
    assert inline.headers["Content-Disposition"] == 'inline; filename="audio_2.mp3"'
    assert attachment.headers["Content-Disposition"].startswith("attachment;")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        "/downloads/missing.mp4",
        "/downloads/.hidden",
        "/downloads/video_3.mp4.part",
        "/downloads/%2E%2E%2Fsecret.txt",
    ],
)
async def test_unservable_files_are_not_found(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
    path: str,
) -> None:
    (downloads_dir / ".hidden").write_bytes(b"x")
    (downloads_dir / "video_3.mp4.part").write_bytes(b"x")
    (tmp_path / "secret.txt").write_text("nope")

    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.get(path)

    assert response.status == 404


@pytest.mark.asyncio
async def test_download_requires_url(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.post("/api/download", json={})
        payload = await response.json()

    assert response.status == 400
    assert payload == {"error": "URL is required"}


@pytest.mark.asyncio
async def test_download_is_unavailable_while_disconnected(
    relay: RelayService,
    fake_client: FakeTelegramClient,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    relay.connection.state = ConnectionState.DISCONNECTED

    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.post("/api/download", json={"url": URL})
        payload = await response.json()

    assert response.status == 503
    assert "not connected" in payload["error"]
    assert fake_client.sent == []


@pytest.mark.asyncio
async def test_download_returns_saved_media(
    relay: RelayService,
    fake_client: FakeTelegramClient,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        pending = asyncio.create_task(_post(client, "/api/download", {"url": URL}))
        await _wait_sent(fake_client)
        await relay.handle_message(video_message(20))
        response = await pending
        payload = await response.json()

    assert response.status == 200
    assert payload["success"] is True
    assert payload["kind"] == "video"
    assert payload["videoUrl"] == f"/downloads/{payload['fileName']}"
    assert (downloads_dir / payload["fileName"]).is_file()


@pytest.mark.asyncio
async def test_download_answered_by_menu_is_a_conflict(
    relay: RelayService,
    fake_client: FakeTelegramClient,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        pending = asyncio.create_task(_post(client, "/api/download", {"url": URL}))
        await _wait_sent(fake_client)
        await relay.handle_message(menu_message(5))
        response = await pending
        payload = await response.json()

    assert response.status == 409
    assert payload["formats"][1] == {"quality": "720p", "size": "50MB"}


@pytest.mark.asyncio
async def test_formats_timeout(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.post("/api/formats", json={"url": URL})
        payload = await response.json()

    assert response.status == 408
    assert payload == {"error": "Timeout waiting for formats from bot"}


@pytest.mark.asyncio
async def test_formats_then_format_download(
    relay: RelayService,
    fake_client: FakeTelegramClient,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    menu = menu_message(5)
    fake_client.messages[menu.id] = menu

    async with _client(relay, tmp_path, downloads_dir) as client:
        pending = asyncio.create_task(_post(client, "/api/formats", {"url": URL}))
        await _wait_sent(fake_client)
        await relay.handle_message(menu)
        formats_response = await pending
        formats_payload = await formats_response.json()

        started = await client.post(
            "/api/download-format",
            json={"url": URL, "format": "1080p"},
        )
        started_payload = await started.json()
        request_id = started_payload["requestId"]
        progress = await client.get(f"/api/progress/{request_id}")
        progress_payload = await progress.json()

    assert formats_response.status == 200
    assert [entry["quality"] for entry in formats_payload["formats"]] == [
        "1080p",
        "720p",
        "MP3",
    ]
    assert started.status == 200
    assert started_payload["success"] is True
    assert progress_payload["progress"] == 10
    assert progress_payload["complete"] is False
    await relay.close()


@pytest.mark.asyncio
async def test_download_format_validation(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        missing = await client.post("/api/download-format", json={"url": URL})
        no_menu = await client.post(
            "/api/download-format",
            json={"url": URL, "format": "720p"},
        )
        no_menu_payload = await no_menu.json()

    assert missing.status == 400
    assert no_menu.status == 400
    assert "No format selection available" in no_menu_payload["error"]


@pytest.mark.asyncio
async def test_unknown_progress_id(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.get("/api/progress/12345")
        payload = await response.json()

    assert response.status == 200
    assert payload["complete"] is True
    assert payload["success"] is False
    assert payload["error"] == "Request not found"


@pytest.mark.asyncio
async def test_health_reports_connection_state(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        connected = await (await client.get("/api/health")).json()
        relay.connection.state = ConnectionState.HALTED
        halted = await (await client.get("/api/health")).json()

    assert connected["chatSessionConnected"] is True
    assert connected["connectionState"] == "connected"
    assert halted["chatSessionConnected"] is False
    assert halted["connectionState"] == "halted"
    assert halted["telegram"] == "disconnected"


@pytest.mark.asyncio
async def test_cors_preflight_and_headers(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    async with _client(relay, tmp_path, downloads_dir) as client:
        preflight = await client.options(
            "/api/download",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
            },
        )
        health = await client.get("/api/health")

    assert preflight.status == 204
    assert "POST" in preflight.headers["Access-Control-Allow-Methods"]
    assert health.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_unexpected_handler_error_returns_json_500(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken(_request_id: int) -> dict[str, object]:
        msg = "broken"
        raise RuntimeError(msg)

    monkeypatch.setattr(relay, "progress", _broken)

    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.get("/api/progress/1")
        payload = await response.json()

    assert response.status == 500
    assert payload == {"error": "Internal server error"}


@pytest.mark.asyncio
async def test_index_serves_static_page(
    relay: RelayService,
    tmp_path: Path,
    downloads_dir: Path,
) -> None:
    (tmp_path / "index.html").write_text("<h1>relay</h1>", encoding="utf-8")

    async with _client(relay, tmp_path, downloads_dir) as client:
        response = await client.get("/")
        text = await response.text()

    assert response.status == 200
    assert "relay" in text
