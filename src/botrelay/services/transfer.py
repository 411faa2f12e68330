"""Persist terminal bot payloads to local storage."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from telethon.errors import RPCError

from botrelay.core.config.constants import (
    TRANSFER_LOG_INTERVAL_SECONDS,
    TRANSFER_LOG_STEP_PERCENT,
)
from botrelay.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from botrelay.core.exceptions import TransferFailedError
from botrelay.core.models import PayloadKind, SavedMedia

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

TRANSFER_EXCEPTIONS = (*COMMON_HANDLER_EXCEPTIONS, RPCError, EOFError, BufferError)
PARTIAL_SUFFIX = ".part"

EXTENSION_BY_MIME = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "video/3gpp": ".3gp",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/flac": ".flac",
    "audio/wav": ".wav",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
DEFAULT_EXTENSION = {
    PayloadKind.VIDEO: ".mp4",
    PayloadKind.AUDIO: ".mp3",
    PayloadKind.IMAGE: ".jpg",
}
DEFAULT_MIME = {
    PayloadKind.VIDEO: "video/mp4",
    PayloadKind.AUDIO: "audio/mpeg",
    PayloadKind.IMAGE: "image/jpeg",
}
# First MIME listed for an extension wins.
MIME_BY_EXTENSION: dict[str, str] = {}
for _mime, _ext in EXTENSION_BY_MIME.items():
    MIME_BY_EXTENSION.setdefault(_ext, _mime)


def extension_for(kind: PayloadKind, mime_type: str | None) -> str:
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    return EXTENSION_BY_MIME.get(mime, DEFAULT_EXTENSION[kind])


def build_file_name(kind: PayloadKind, issued_at: int, mime_type: str | None) -> str:
    """Name a payload by kind and issue time, e.g. ``video_1700000000000.mp4``."""
    return f"{kind.value}_{issued_at}{extension_for(kind, mime_type)}"


def content_type_for(file_name: str) -> str:
    suffix = Path(file_name).suffix.lower()
    return MIME_BY_EXTENSION.get(suffix, "application/octet-stream")


class _TransferProgressLogger:
    """Log throughput every couple of seconds or every 10 percent."""

    def __init__(self, file_name: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.file_name = file_name
        self._clock = clock
        self.started = clock()
        self._last_log = self.started
        self._last_percent = 0.0

    def __call__(self, downloaded: int, total: int) -> None:
        if total <= 0:
            return
        now = self._clock()
        percent = downloaded / total * 100
        if (
            now - self._last_log < TRANSFER_LOG_INTERVAL_SECONDS
            and percent - self._last_percent < TRANSFER_LOG_STEP_PERCENT
        ):
            return
        elapsed = max(now - self.started, 1e-6)
        speed = downloaded / 1024 / 1024 / elapsed
        rate = downloaded / elapsed
        eta = (total - downloaded) / rate if rate > 0 else 0
        logger.info(
            "Transfer %s: %.1f%% | %.2f MB/s | ETA %.0fs",
            self.file_name,
            percent,
            speed,
            eta,
        )
        self._last_log = now
        self._last_percent = percent


def _write_atomically(partial: Path, final: Path, data: bytes) -> None:
    partial.write_bytes(data)
    partial.replace(final)


def _remove_quietly(*paths: Path) -> None:
    for path in paths:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


class TransferRelay:
    """Buffer a payload in memory, then write it to disk in one pass.

    The file becomes visible under its final name only once complete.
    """

    def __init__(self, downloads_dir: Path, *, url_prefix: str = "/downloads") -> None:
        self.downloads_dir = downloads_dir
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, file_name: str) -> Path:
        return self.downloads_dir / file_name

    async def persist(
        self,
        client: Any,  # noqa: ANN401
        message: Any,  # noqa: ANN401
        *,
        kind: PayloadKind,
        mime_type: str | None,
        issued_at: int,
        size: int | None = None,
    ) -> SavedMedia:
        """Download `message`'s media and save it. Raise TransferFailedError."""
        file_name = build_file_name(kind, issued_at, mime_type)
        final_path = self.path_for(file_name)
        partial_path = final_path.with_name(file_name + PARTIAL_SUFFIX)
        progress = _TransferProgressLogger(file_name)

        if size:
            logger.info(
                "Transfer started: %s (%.2f MB)", file_name, size / 1024 / 1024
            )

        try:
            self.downloads_dir.mkdir(parents=True, exist_ok=True)
            data = await client.download_media(
                message,
                file=bytes,
                progress_callback=progress,
            )
            if not data:
                msg = "empty payload"
                raise TransferFailedError(msg)
            await asyncio.to_thread(_write_atomically, partial_path, final_path, data)
        except TransferFailedError:
            _remove_quietly(partial_path, final_path)
            raise
        except TRANSFER_EXCEPTIONS as exc:
            log_exception(
                logger=logger,
                message="Transfer failed",
                error=exc,
                context={"file": file_name},
            )
            _remove_quietly(partial_path, final_path)
            raise TransferFailedError(exc) from exc
        except asyncio.CancelledError:
            _remove_quietly(partial_path, final_path)
            raise

        elapsed = max(time.monotonic() - progress.started, 1e-6)
        logger.info(
            "Transfer completed: %s in %.2fs (avg %.2f MB/s)",
            file_name,
            elapsed,
            len(data) / 1024 / 1024 / elapsed,
        )
        return SavedMedia(
            kind=kind,
            file_name=file_name,
            url=f"{self.url_prefix}/{file_name}",
            size=len(data),
            mime_type=content_type_for(file_name),
        )
