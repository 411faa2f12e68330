"""Classification of inbound bot messages.

Everything here is text and attribute sniffing coupled to the third-party
bot's exact wording, kept free of Telethon types so it can be tested on plain
values. `botrelay.telegram.events` turns Telethon messages into
`InboundEvent` instances.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from botrelay.core.config.constants import (
    MENU_MARKERS,
    PROGRESS_MARKERS,
    QUALITY_LABELS,
)
from botrelay.core.models import FormatOption, PayloadKind

_FORMAT_PATTERNS = tuple(
    (
        label,
        re.compile(rf"{re.escape(label)}\s*:\s*(\d+(?:\.\d+)?)\s*MB", re.IGNORECASE),
    )
    for label in QUALITY_LABELS
)
_PERCENT_RE = re.compile(r"(\d{1,3})\s?%")

VIDEO_EXTENSIONS = frozenset({"mp4", "m4v", "mkv", "webm", "mov", "avi", "3gp"})
AUDIO_EXTENSIONS = frozenset({"mp3", "m4a", "aac", "ogg", "oga", "opus", "flac", "wav"})
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "gif", "bmp", "heic"})

_VIDEO_ATTRIBUTES = frozenset({"DocumentAttributeVideo", "DocumentAttributeAnimated"})
_AUDIO_ATTRIBUTES = frozenset({"DocumentAttributeAudio"})
_IMAGE_ATTRIBUTES = frozenset({"DocumentAttributeImageSize"})
_IGNORED_ATTRIBUTES = frozenset({"DocumentAttributeSticker", "DocumentAttributeCustomEmoji"})


class EventCategory(StrEnum):
    MENU = "menu"
    PROGRESS = "progress"
    PAYLOAD = "payload"
    IRRELEVANT = "irrelevant"


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    """Declared properties of an attachment."""

    mime_type: str = ""
    attribute_names: tuple[str, ...] = ()
    file_name: str | None = None
    size: int | None = None
    is_photo: bool = False


@dataclass(frozen=True, slots=True)
class InboundEvent:
    """A chat message reduced to what classification needs."""

    sender: str | None
    text: str = ""
    media: MediaDescriptor | None = None


@dataclass(frozen=True, slots=True)
class Classification:
    category: EventCategory
    formats: tuple[FormatOption, ...] = ()
    percent: int | None = None
    payload_kind: PayloadKind | None = None


IRRELEVANT = Classification(EventCategory.IRRELEVANT)


def normalize_handle(handle: str | None) -> str:
    return (handle or "").strip().lstrip("@")


def is_allowed_sender(sender: str | None, allowed: Iterable[str]) -> bool:
    """Exact, case-sensitive handle match with the `@` prefix stripped."""
    name = normalize_handle(sender)
    if not name:
        return False
    return any(name == normalize_handle(handle) for handle in allowed)


def is_menu_text(text: str) -> bool:
    if not any(marker in text for marker in MENU_MARKERS):
        return False
    return any(label in text for label in QUALITY_LABELS)


def parse_formats(text: str) -> tuple[FormatOption, ...]:
    """Extract every `label: sizeMB` token. Missing labels are skipped."""
    formats: list[FormatOption] = []
    for label, pattern in _FORMAT_PATTERNS:
        match = pattern.search(text)
        if match:
            formats.append(FormatOption(quality=label, size=f"{match.group(1)}MB"))
    return tuple(formats)


def is_progress_text(text: str) -> bool:
    return any(marker in text for marker in PROGRESS_MARKERS)


def parse_progress_percent(text: str) -> int | None:
    """Return the last `NN%` figure in `text`, capped at 100."""
    matches = _PERCENT_RE.findall(text)
    if not matches:
        return None
    return min(int(matches[-1]), 100)


def _extension(file_name: str | None) -> str:
    if not file_name or "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[-1].lower()


def classify_media(media: MediaDescriptor) -> PayloadKind | None:
    """Bucket an attachment as video, audio or image.

    Video wins over audio: platforms often deliver a clip as a muted video
    plus a separate audio track, and callers want the video.
    """
    if media.is_photo:
        return PayloadKind.IMAGE

    attributes = set(media.attribute_names)
    if attributes & _IGNORED_ATTRIBUTES:
        return None
    if attributes & _VIDEO_ATTRIBUTES:
        return PayloadKind.VIDEO

    mime = (media.mime_type or "").lower()
    if mime.startswith("video/"):
        return PayloadKind.VIDEO
    if attributes & _AUDIO_ATTRIBUTES or mime.startswith("audio/"):
        return PayloadKind.AUDIO
    if attributes & _IMAGE_ATTRIBUTES or mime.startswith("image/"):
        return PayloadKind.IMAGE

    # Unknown MIME: substring checks, then the file name.
    if "video" in mime or "mp4" in mime:
        return PayloadKind.VIDEO
    if "audio" in mime or "mpeg" in mime:
        return PayloadKind.AUDIO
    if "image" in mime:
        return PayloadKind.IMAGE

    ext = _extension(media.file_name)
    if ext in VIDEO_EXTENSIONS:
        return PayloadKind.VIDEO
    if ext in AUDIO_EXTENSIONS:
        return PayloadKind.AUDIO
    if ext in IMAGE_EXTENSIONS:
        return PayloadKind.IMAGE
    return None


def classify_event(event: InboundEvent, allowed_senders: Iterable[str]) -> Classification:
    """Decide what an inbound message means before any correlation runs."""
    if not is_allowed_sender(event.sender, allowed_senders):
        return IRRELEVANT

    text = event.text or ""
    if text:
        if is_menu_text(text):
            return Classification(EventCategory.MENU, formats=parse_formats(text))
        if is_progress_text(text):
            return Classification(
                EventCategory.PROGRESS,
                percent=parse_progress_percent(text),
            )

    if event.media is None:
        return IRRELEVANT

    kind = classify_media(event.media)
    if kind is None:
        return IRRELEVANT
    return Classification(EventCategory.PAYLOAD, payload_kind=kind)
