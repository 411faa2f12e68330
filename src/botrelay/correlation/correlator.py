"""Correlation of asynchronous bot replies with the requests that caused them.

The bot gives no conversation token, so correlation relies on there being a
single logical interaction in flight: the next matching reply resolves the
oldest waiting request of the matching class. Two callers submitting URLs at
nearly the same time can therefore receive each other's results. Fixing that
needs one chat session (or sub-conversation) per caller, which the upstream
bot integration does not offer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from botrelay.core.config.constants import (
    KIND_TRACKER_WINDOW_SECONDS,
    MENU_TIMEOUT_SECONDS,
    PAYLOAD_TIMEOUT_SECONDS,
    PROGRESS_RETENTION_SECONDS,
    STATUS_NOT_FOUND,
    STATUS_TIMEOUT,
)
from botrelay.core.models import (
    Outcome,
    PayloadKind,
    ProgressRecord,
    RequestKind,
)
from botrelay.correlation.single_shot import SingleShot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingRequest:
    """A caller waiting for one bot reply."""

    request_id: int
    kind: RequestKind
    shot: SingleShot[Outcome]
    preferred_kind: PayloadKind | None = None
    timer: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.time)

    def matches(self, kind: RequestKind) -> bool:
        return self.kind is kind or self.kind is RequestKind.ANY

    def accepts(
        self,
        payload_kind: PayloadKind,
        *,
        visual_delivered_at: float | None,
    ) -> bool:
        """Return True if a payload of `payload_kind` may satisfy this request.

        Audio is refused when a video or image was delivered after this
        request was registered: it is the trailing track of that interaction.
        """
        if not self.matches(RequestKind.PAYLOAD):
            return False
        if payload_kind is not PayloadKind.AUDIO:
            return True
        if self.preferred_kind is PayloadKind.AUDIO or visual_delivered_at is None:
            return True
        return visual_delivered_at < self.created_at


@dataclass(slots=True)
class MenuReference:
    """Pointer to the latest format menu; re-fetch before acting on it."""

    message_id: int
    chat_id: int | None
    message: Any
    received_at: float = field(default_factory=time.time)


class ReceivedKindTracker:
    """Remember which payload kind satisfied each request, for a short window.

    Timestamps come from `clock`, which must match the clock stamping
    `PendingRequest.created_at`.
    """

    def __init__(
        self,
        window_seconds: float = KIND_TRACKER_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._entries: dict[int, tuple[PayloadKind, float]] = {}

    def _prune(self) -> None:
        cutoff = self._clock() - self._window
        expired = [key for key, (_, seen) in self._entries.items() if seen < cutoff]
        for key in expired:
            del self._entries[key]

    def record(self, request_id: int, kind: PayloadKind) -> None:
        self._prune()
        self._entries[request_id] = (kind, self._clock())

    def last_visual_at(self) -> float | None:
        """When a video or image last satisfied a request within the window."""
        self._prune()
        seen = [at for kind, at in self._entries.values() if kind.is_visual]
        return max(seen, default=None)


class Correlator:
    """Owns the pending-request, progress and last-menu state."""

    def __init__(
        self,
        *,
        menu_timeout: float = MENU_TIMEOUT_SECONDS,
        payload_timeout: float = PAYLOAD_TIMEOUT_SECONDS,
        progress_retention: float = PROGRESS_RETENTION_SECONDS,
        kind_tracker: ReceivedKindTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.menu_timeout = menu_timeout
        self.payload_timeout = payload_timeout
        self.progress_retention = progress_retention
        self.kinds = kind_tracker or ReceivedKindTracker(clock=clock)
        self.pending: dict[int, PendingRequest] = {}
        self.progress: dict[int, ProgressRecord] = {}
        self.last_menu: MenuReference | None = None
        self._clock = clock
        self._last_request_id = 0
        self._purge_handles: dict[int, asyncio.TimerHandle] = {}

    # -- identifiers -------------------------------------------------------

    def next_request_id(self) -> int:
        """Issue a millisecond timestamp id, strictly increasing."""
        now_ms = int(self._clock() * 1000)
        self._last_request_id = max(now_ms, self._last_request_id + 1)
        return self._last_request_id

    # -- registration ------------------------------------------------------

    def register(
        self,
        kind: RequestKind,
        *,
        request_id: int | None = None,
        timeout: float | None = None,
        preferred_kind: PayloadKind | None = None,
    ) -> PendingRequest:
        """Add a waiting request and arm its deadline."""
        loop = asyncio.get_running_loop()
        rid = request_id if request_id is not None else self.next_request_id()
        if rid in self.pending:
            msg = f"Request {rid} is already pending"
            raise ValueError(msg)

        if timeout is None:
            timeout = (
                self.menu_timeout if kind is RequestKind.MENU else self.payload_timeout
            )

        pending = PendingRequest(
            request_id=rid,
            kind=kind,
            shot=SingleShot(loop),
            preferred_kind=preferred_kind,
            created_at=self._clock(),
        )
        pending.timer = loop.call_later(timeout, self._expire, rid)
        self.pending[rid] = pending
        logger.debug("Registered %s request %s (timeout=%ss)", kind, rid, timeout)
        return pending

    def track_progress(self, request_id: int, status: str) -> ProgressRecord:
        record = ProgressRecord(status=status)
        self.progress[request_id] = record
        return record

    def update_progress(self, request_id: int, *, progress: int, status: str) -> None:
        record = self.progress.get(request_id)
        if record is None or record.complete:
            return
        record.progress = progress
        record.status = status

    # -- matching ----------------------------------------------------------

    def claim(
        self,
        kind: RequestKind,
        payload_kind: PayloadKind | None = None,
    ) -> PendingRequest | None:
        """Pop the oldest request that the incoming reply can satisfy.

        Once claimed, the request's timer can no longer resolve it.
        """
        visual_delivered_at = self.kinds.last_visual_at()
        for rid, pending in self.pending.items():
            if not pending.matches(kind):
                continue
            if payload_kind is not None and not pending.accepts(
                payload_kind, visual_delivered_at=visual_delivered_at
            ):
                continue
            del self.pending[rid]
            if pending.timer is not None:
                pending.timer.cancel()
            return pending
        return None

    def complete(self, pending: PendingRequest, outcome: Outcome) -> bool:
        """Resolve a claimed request and reflect the outcome in its progress."""
        if not pending.shot.resolve(outcome):
            return False

        if outcome.media is not None:
            self.kinds.record(pending.request_id, outcome.media.kind)

        record = self.progress.get(pending.request_id)
        if record is not None and not record.complete:
            if outcome.ok and outcome.media is not None:
                record.mark_succeeded(outcome.media)
            elif not outcome.ok:
                record.mark_failed(outcome.error or "Request failed")
            self._schedule_progress_purge(pending.request_id)
        return True

    def resolve(self, request_id: int, outcome: Outcome) -> bool:
        """Resolve a request by id. No-op if it was already resolved."""
        pending = self.pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        return self.complete(pending, outcome)

    def _expire(self, request_id: int) -> None:
        pending = self.pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Timeout waiting for bot reply (requestId: %s)", request_id)
        record = self.progress.get(request_id)
        if record is not None and not record.complete:
            record.mark_failed(STATUS_TIMEOUT)
            self._schedule_progress_purge(request_id)
        pending.shot.resolve(None)

    # -- progress ----------------------------------------------------------

    def broadcast_progress(self, percent: int) -> int:
        """Apply a bot-reported percentage to every incomplete record."""
        updated = 0
        for record in self.progress.values():
            if record.complete:
                continue
            record.progress = percent
            record.status = f"Downloading: {percent}%"
            updated += 1
        return updated

    def progress_snapshot(self, request_id: int) -> dict[str, Any]:
        record = self.progress.get(request_id)
        if record is None:
            return {
                "progress": 0,
                "status": "Unknown request",
                "complete": True,
                "success": False,
                "error": STATUS_NOT_FOUND,
            }
        return record.to_payload()

    def _schedule_progress_purge(self, request_id: int) -> None:
        if request_id in self._purge_handles:
            return
        loop = asyncio.get_running_loop()
        self._purge_handles[request_id] = loop.call_later(
            self.progress_retention, self._purge_progress, request_id
        )

    def _purge_progress(self, request_id: int) -> None:
        self._purge_handles.pop(request_id, None)
        self.progress.pop(request_id, None)

    # -- menu --------------------------------------------------------------

    def remember_menu(
        self,
        message: object,
        *,
        message_id: int,
        chat_id: int | None,
    ) -> MenuReference:
        self.last_menu = MenuReference(
            message_id=message_id,
            chat_id=chat_id,
            message=message,
        )
        return self.last_menu

    # -- shutdown ----------------------------------------------------------

    def close(self) -> None:
        """Resolve every waiter with no result and drop timers."""
        for pending in list(self.pending.values()):
            if pending.timer is not None:
                pending.timer.cancel()
            pending.shot.resolve(None)
        self.pending.clear()
        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()
