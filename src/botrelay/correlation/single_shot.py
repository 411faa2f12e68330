"""Single-fire completion channel."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleShot(Generic[T]):
    """A future that can be completed once; later completions are ignored.

    Unlike a bare ``asyncio.Future``, completing an already-completed shot is
    not an error, which lets the timeout path and the event path race freely.
    """

    __slots__ = ("_future",)

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._future: asyncio.Future[T | None] = (
            loop or asyncio.get_running_loop()
        ).create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: T | None) -> bool:
        """Complete the shot. Return False if it was already completed."""
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    async def wait(self) -> T | None:
        """Wait for the value.

        Cancelling the waiter leaves the shot itself pending.
        """
        return await asyncio.shield(self._future)
