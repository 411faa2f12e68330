"""Error logging shared by the relay's chat listener, transfers and HTTP API.

Every component reports failures through `log_exception` so log lines carry
the same ``message | key=value`` shape and a traceback.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Mapping
    from types import TracebackType

LOGGER = logging.getLogger(__name__)

# Failures a per-event or per-request handler recovers from. Telethon and
# aiohttp errors are added by the modules that import them.
COMMON_HANDLER_EXCEPTIONS = (
    AttributeError,
    LookupError,
    OSError,
    RuntimeError,
    TimeoutError,
    TypeError,
    ValueError,
    AssertionError,
)

_LOOP_CONTEXT_SKIP = frozenset({"exception", "message"})


def describe_context(context: Mapping[str, object]) -> str:
    """Render `context` as ``key=value`` pairs sorted by key."""
    return ", ".join(f"{key}={value!r}" for key, value in sorted(context.items()))


def log_exception(
    *,
    logger: logging.Logger,
    message: str,
    error: BaseException,
    context: Mapping[str, object] | None = None,
) -> None:
    line = f"{message} | {describe_context(context)}" if context else message
    logger.error("%s", line, exc_info=error)


def log_chat_event_error(
    *,
    logger: logging.Logger,
    error: BaseException,
    event_name: str,
    chat_id: object = None,
    message_id: object = None,
) -> None:
    """Log an exception raised while handling one inbound chat event.

    The listener keeps running; only the offending event is dropped.
    """
    log_exception(
        logger=logger,
        message="Unhandled chat event error",
        error=error,
        context={
            "event": event_name,
            "chat_id": chat_id,
            "message_id": message_id,
        },
    )


def register_asyncio_exception_handler(
    loop: asyncio.AbstractEventLoop,
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Send errors from unawaited tasks and loop callbacks to the relay log."""
    target = logger or LOGGER

    def _on_loop_error(
        _loop: asyncio.AbstractEventLoop,
        context: dict[str, Any],
    ) -> None:
        message = str(context.get("message") or "Background task failed")
        details = {
            key: value for key, value in context.items() if key not in _LOOP_CONTEXT_SKIP
        }
        error = context.get("exception")
        if isinstance(error, BaseException):
            log_exception(logger=target, message=message, error=error, context=details)
        elif details:
            target.error("%s | %s", message, describe_context(details))
        else:
            target.error("%s", message)

    loop.set_exception_handler(_on_loop_error)


def install_global_exception_hooks(*, logger: logging.Logger | None = None) -> None:
    """Log uncaught exceptions from the main thread and worker threads.

    Ctrl-C still goes to the previously installed hooks.
    """
    target = logger or LOGGER
    chained_excepthook = sys.excepthook
    chained_thread_hook = threading.excepthook

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            chained_excepthook(exc_type, exc_value, exc_traceback)
            return
        target.critical(
            "Relay process crashed",
            exc_info=(exc_type, exc_value, exc_traceback),
        )

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, KeyboardInterrupt):
            chained_thread_hook(args)
            return
        name = getattr(args.thread, "name", None) or "unknown"
        exc_info = None
        if isinstance(args.exc_value, BaseException):
            exc_info = (args.exc_type, args.exc_value, args.exc_traceback)
        target.error("Worker thread %s crashed", name, exc_info=exc_info)

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook
