"""Periodic removal of old downloaded files."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from botrelay.core.error_handling import log_exception

logger = logging.getLogger(__name__)


def sweep_downloads(
    directory: Path,
    *,
    max_age_seconds: float,
    now: float | None = None,
) -> int:
    """Delete files in `directory` older than `max_age_seconds`.

    Returns the number of deleted files. Subdirectories are left alone.
    """
    if not directory.is_dir():
        return 0

    current = time.time() if now is None else now
    deleted = 0
    for path in directory.iterdir():
        try:
            if not path.is_file():
                continue
            if current - path.stat().st_mtime <= max_age_seconds:
                continue
            path.unlink(missing_ok=True)
        except OSError as exc:
            log_exception(
                logger=logger,
                message="Could not remove old download",
                error=exc,
                context={"path": str(path)},
            )
            continue
        deleted += 1
        logger.info("Deleted old file: %s", path.name)
    return deleted


async def cleanup_loop(
    directory: Path,
    *,
    max_age_seconds: float,
    interval_seconds: float,
) -> None:
    """Run `sweep_downloads` forever, every `interval_seconds`."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(
                sweep_downloads,
                directory,
                max_age_seconds=max_age_seconds,
            )
        except OSError as exc:
            log_exception(
                logger=logger,
                message="Download cleanup failed",
                error=exc,
                context={"directory": str(directory)},
            )
