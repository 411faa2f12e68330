"""Main entry point for running the botrelay application."""

import asyncio
import contextlib
import logging

import botrelay.entrypoint
from botrelay.core.error_handling import (
    install_global_exception_hooks,
    register_asyncio_exception_handler,
)


def main() -> None:
    """Run the application entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    install_global_exception_hooks()
    with asyncio.Runner() as runner:
        register_asyncio_exception_handler(runner.get_loop())
        try:
            runner.run(botrelay.entrypoint.main())
        except KeyboardInterrupt:
            # Disconnect the chat session before the event loop is torn down.
            with contextlib.suppress(KeyboardInterrupt):
                runner.run(botrelay.entrypoint.shutdown())


if __name__ == "__main__":
    main()
