"""Data models for botrelay."""

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class PayloadKind(StrEnum):
    """Media buckets a terminal payload can fall into."""

    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"

    @property
    def is_visual(self) -> bool:
        return self is not PayloadKind.AUDIO


class RequestKind(StrEnum):
    """Which class of bot reply a pending request is waiting for."""

    MENU = "menu"
    PAYLOAD = "payload"
    # Plain downloads: the bot may answer with media or, for multi-format
    # sources, with a menu.
    ANY = "any"


@dataclass(frozen=True, slots=True)
class FormatOption:
    """One entry of the bot's quality menu."""

    quality: str
    size: str

    def to_payload(self) -> dict[str, str]:
        return {"quality": self.quality, "size": self.size}


@dataclass(frozen=True, slots=True)
class SavedMedia:
    """A payload persisted to local storage and ready to be served."""

    kind: PayloadKind
    file_name: str
    url: str
    size: int
    mime_type: str


@dataclass(frozen=True, slots=True)
class Outcome:
    """Successful or failed resolution of a pending request.

    A timed out request resolves with ``None`` instead of an outcome.
    """

    formats: tuple[FormatOption, ...] | None = None
    media: SavedMedia | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(error=error)


@dataclass(slots=True)
class ProgressRecord:
    """Pollable state of a background format download."""

    progress: int = 5
    status: str = ""
    complete: bool = False
    success: bool = False
    media: SavedMedia | None = None
    error: str | None = None
    started_at: float = field(default_factory=time.time)

    def mark_succeeded(self, media: SavedMedia) -> None:
        self.progress = 100
        self.status = "Complete"
        self.complete = True
        self.success = True
        self.media = media

    def mark_failed(self, error: str) -> None:
        self.status = error
        self.complete = True
        self.success = False
        self.error = error

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "progress": self.progress,
            "status": self.status,
            "complete": self.complete,
            "success": self.success,
            "startTime": int(self.started_at * 1000),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.media is not None:
            payload["videoUrl"] = self.media.url
            payload["fileName"] = self.media.file_name
            payload["kind"] = self.media.kind.value
        return payload
