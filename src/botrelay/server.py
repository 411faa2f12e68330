"""HTTP API for the relay."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from aiohttp import hdrs, web

from botrelay.core.config import RelaySettings
from botrelay.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from botrelay.core.exceptions import (
    MenuUnavailableError,
    NotConnectedError,
    SessionHaltedError,
)
from botrelay.core.models import Outcome
from botrelay.services.relay import RelayService
from botrelay.services.transfer import PARTIAL_SUFFIX, content_type_for
from botrelay.telegram.bot_peer import PEER_EXCEPTIONS

logger = logging.getLogger(__name__)

RequestHandler = Callable[[web.Request], Awaitable[web.StreamResponse]]
SERVER_HANDLER_EXCEPTIONS = COMMON_HANDLER_EXCEPTIONS

RELAY_KEY = web.AppKey("relay", RelayService)
SETTINGS_KEY = web.AppKey("settings", RelaySettings)

HTTP_REQUEST_TIMEOUT = 408
HTTP_CONFLICT = 409
HTTP_BAD_GATEWAY = 502
HTTP_SERVICE_UNAVAILABLE = 503

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Range"
CORS_EXPOSE_HEADERS = "Content-Range, Content-Length, Accept-Ranges, Content-Disposition"


@web.middleware
async def _error_middleware(
    request: web.Request,
    handler: RequestHandler,
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except SERVER_HANDLER_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Unhandled relay server error",
            error=exc,
            context={
                "method": request.method,
                "path": request.path,
            },
        )
        return web.json_response({"error": "Internal server error"}, status=500)


def _cors_middleware(origin: str) -> Callable[..., Awaitable[web.StreamResponse]]:
    def _apply(response: web.StreamResponse) -> None:
        response.headers[hdrs.ACCESS_CONTROL_ALLOW_ORIGIN] = origin
        response.headers[hdrs.ACCESS_CONTROL_EXPOSE_HEADERS] = CORS_EXPOSE_HEADERS

    @web.middleware
    async def middleware(
        request: web.Request,
        handler: RequestHandler,
    ) -> web.StreamResponse:
        if (
            request.method == hdrs.METH_OPTIONS
            and hdrs.ACCESS_CONTROL_REQUEST_METHOD in request.headers
        ):
            response = web.Response(status=204)
            response.headers[hdrs.ACCESS_CONTROL_ALLOW_METHODS] = CORS_ALLOW_METHODS
            response.headers[hdrs.ACCESS_CONTROL_ALLOW_HEADERS] = CORS_ALLOW_HEADERS
            _apply(response)
            return response
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            _apply(exc)
            raise
        _apply(response)
        return response

    return middleware


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _unavailable(exc: NotConnectedError | SessionHaltedError) -> web.Response:
    return _error(str(exc), HTTP_SERVICE_UNAVAILABLE)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _formats_payload(outcome: Outcome) -> list[dict[str, str]]:
    return [option.to_payload() for option in outcome.formats or ()]


# =============================================================================
# Handlers
# =============================================================================


async def download(request: web.Request) -> web.Response:
    """Send a URL to the bot and wait for the saved media."""
    body = await _read_json(request)
    url = str(body.get("url") or "").strip()
    if not url:
        return _error("URL is required", 400)

    relay = request.app[RELAY_KEY]
    try:
        outcome = await relay.download(url)
    except (NotConnectedError, SessionHaltedError) as exc:
        return _unavailable(exc)
    except PEER_EXCEPTIONS as exc:
        log_exception(logger=logger, message="Error in download endpoint", error=exc)
        return _error(f"Failed to process download: {exc}", 500)

    if outcome is None:
        return _error("Download timeout or no video received from bot", HTTP_REQUEST_TIMEOUT)
    if not outcome.ok:
        return _error(outcome.error or "Download failed", HTTP_BAD_GATEWAY)
    if outcome.formats is not None:
        return web.json_response(
            {
                "success": False,
                "error": "Format selection required",
                "formats": _formats_payload(outcome),
            },
            status=HTTP_CONFLICT,
        )

    media = outcome.media
    if media is None:
        return _error("No media received from bot", HTTP_BAD_GATEWAY)
    return web.json_response(
        {
            "success": True,
            "videoUrl": media.url,
            "fileName": media.file_name,
            "kind": media.kind.value,
        }
    )


async def formats(request: web.Request) -> web.Response:
    """Send a URL to the bot and return its quality menu."""
    body = await _read_json(request)
    url = str(body.get("url") or "").strip()
    if not url:
        return _error("URL is required", 400)

    relay = request.app[RELAY_KEY]
    try:
        outcome = await relay.fetch_formats(url)
    except (NotConnectedError, SessionHaltedError) as exc:
        return _unavailable(exc)
    except PEER_EXCEPTIONS as exc:
        log_exception(logger=logger, message="Error in formats endpoint", error=exc)
        return _error(f"Failed to get formats: {exc}", 500)

    if outcome is None or (outcome.ok and outcome.formats is None):
        logger.warning("No formats received, sending timeout error to frontend")
        return _error("Timeout waiting for formats from bot", HTTP_REQUEST_TIMEOUT)
    if not outcome.ok:
        return _error(outcome.error or "Failed to get formats", HTTP_BAD_GATEWAY)

    payload = _formats_payload(outcome)
    logger.info("Sending %s formats to frontend", len(payload))
    return web.json_response({"success": True, "formats": payload})


async def download_format(request: web.Request) -> web.Response:
    """Select a format on the last menu; the transfer continues in background."""
    body = await _read_json(request)
    url = str(body.get("url") or "").strip()
    fmt = str(body.get("format") or "").strip()
    if not url or not fmt:
        return _error("URL and format are required", 400)

    relay = request.app[RELAY_KEY]
    try:
        request_id = await relay.start_format_download(url, fmt)
    except (NotConnectedError, SessionHaltedError) as exc:
        return _unavailable(exc)
    except MenuUnavailableError as exc:
        return _error(str(exc), 400)
    except PEER_EXCEPTIONS as exc:
        log_exception(logger=logger, message="Error in download-format endpoint", error=exc)
        return _error(f"Failed to start download: {exc}", 500)

    return web.json_response({"success": True, "requestId": request_id})


async def progress(request: web.Request) -> web.Response:
    """Report a background download's progress."""
    relay = request.app[RELAY_KEY]
    try:
        request_id = int(request.match_info["request_id"])
    except ValueError:
        request_id = -1
    return web.json_response(relay.progress(request_id))


def _safe_download_path(relay: RelayService, filename: str) -> Path | None:
    if (
        not filename
        or Path(filename).name != filename
        or filename.startswith(".")
        or filename.endswith(PARTIAL_SUFFIX)
    ):
        return None
    path = relay.transfer.path_for(filename)
    return path if path.is_file() else None


async def serve_download(request: web.Request) -> web.StreamResponse:
    """Serve a saved file with byte-range support.

    ``?download=true`` switches the disposition from inline to attachment.
    """
    filename = request.match_info["filename"]
    path = _safe_download_path(request.app[RELAY_KEY], filename)
    if path is None:
        return _error("File not found", 404)

    disposition = "attachment" if request.query.get("download") == "true" else "inline"
    return web.FileResponse(
        path,
        headers={
            hdrs.CONTENT_TYPE: content_type_for(filename),
            hdrs.CONTENT_DISPOSITION: f'{disposition}; filename="{filename}"',
            hdrs.ACCEPT_RANGES: "bytes",
        },
    )


async def health(request: web.Request) -> web.Response:
    connection = request.app[RELAY_KEY].connection
    return web.json_response(
        {
            "status": "ok",
            "chatSessionConnected": connection.is_connected,
            "connectionState": connection.state.value,
            "telegram": "connected" if connection.is_connected else "disconnected",
        }
    )


async def index(request: web.Request) -> web.StreamResponse:
    index_file = request.app[SETTINGS_KEY].static_dir / "index.html"
    if not index_file.is_file():
        raise web.HTTPNotFound
    return web.FileResponse(index_file)


def create_app(relay: RelayService, settings: RelaySettings) -> web.Application:
    """Build the aiohttp application around an already wired relay."""
    app = web.Application(
        middlewares=[_cors_middleware(settings.cors_origin), _error_middleware],
    )
    app[RELAY_KEY] = relay
    app[SETTINGS_KEY] = settings
    app.add_routes(
        [
            web.post("/api/download", download),
            web.post("/api/formats", formats),
            web.post("/api/download-format", download_format),
            web.get("/api/progress/{request_id}", progress),
            web.get("/api/health", health),
            web.get("/downloads/{filename}", serve_download),
            web.get("/", index),
        ]
    )
    if settings.static_dir.is_dir():
        app.router.add_static("/static/", settings.static_dir)
    return app


async def start_server(app: web.Application, settings: RelaySettings) -> web.AppRunner:
    """Start serving `app`.

    Returns the underlying aiohttp runner so callers can clean it up on shutdown.
    """
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    logger.info("Server running on port %s", settings.port)
    return runner
