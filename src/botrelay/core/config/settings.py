"""Typed view over the raw configuration mapping."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from botrelay.core.config.constants import (
    CLEANUP_INTERVAL_SECONDS,
    KEEPALIVE_INTERVAL_SECONDS,
    MENU_TIMEOUT_SECONDS,
    PAYLOAD_TIMEOUT_SECONDS,
    PROGRESS_RETENTION_SECONDS,
    RECONNECT_DELAY_SECONDS,
    RETENTION_SECONDS,
)
from botrelay.core.config.manager import ConfigValueError, ensure_list

DEFAULT_BOT_USERNAME = "@Ebenozdownbot"
DEFAULT_PORT = 3000


@dataclass(frozen=True, slots=True)
class TelegramSettings:
    """Credentials for the user session that talks to the bot."""

    api_id: int
    api_hash: str
    session: str = ""


@dataclass(frozen=True, slots=True)
class RelaySettings:
    """Everything the relay needs at startup."""

    telegram: TelegramSettings
    bot_username: str = DEFAULT_BOT_USERNAME
    extra_bot_usernames: tuple[str, ...] = ()
    host: str | None = None
    port: int = DEFAULT_PORT
    downloads_dir: Path = field(default_factory=lambda: Path("public/downloads"))
    static_dir: Path = field(default_factory=lambda: Path("public"))
    menu_timeout_seconds: float = MENU_TIMEOUT_SECONDS
    payload_timeout_seconds: float = PAYLOAD_TIMEOUT_SECONDS
    progress_retention_seconds: float = PROGRESS_RETENTION_SECONDS
    reconnect_delay_seconds: float = RECONNECT_DELAY_SECONDS
    keepalive_interval_seconds: float = KEEPALIVE_INTERVAL_SECONDS
    retention_seconds: float = RETENTION_SECONDS
    cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS
    cors_origin: str = "*"

    @property
    def allowed_senders(self) -> tuple[str, ...]:
        """Bot handles accepted as reply senders, without the `@` prefix."""
        handles = (self.bot_username, *self.extra_bot_usernames)
        return tuple(dict.fromkeys(handle.lstrip("@") for handle in handles if handle))


def _positive_number(raw: Mapping[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool):
        message = f"Config '{key}' must be a number, got {value!r}."
        raise ConfigValueError(message)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        message = f"Config '{key}' must be a number, got {value!r}."
        raise ConfigValueError(message) from exc
    if number <= 0:
        message = f"Config '{key}' must be positive, got {value!r}."
        raise ConfigValueError(message)
    return number


def _telegram_settings(raw: Mapping[str, Any]) -> TelegramSettings:
    section = raw.get("telegram")
    if not isinstance(section, Mapping):
        message = "Config must define a 'telegram' mapping with api_id and api_hash."
        raise ConfigValueError(message)

    try:
        api_id = int(section.get("api_id"))
    except (TypeError, ValueError) as exc:
        message = "Config 'telegram.api_id' must be an integer."
        raise ConfigValueError(message) from exc

    api_hash = str(section.get("api_hash") or "").strip()
    if not api_hash:
        message = "Config 'telegram.api_hash' is required."
        raise ConfigValueError(message)

    return TelegramSettings(
        api_id=api_id,
        api_hash=api_hash,
        session=str(section.get("session") or "").strip(),
    )


def load_settings(raw: Mapping[str, Any]) -> RelaySettings:
    """Build `RelaySettings` from a loaded config mapping."""
    try:
        port = int(raw.get("port", DEFAULT_PORT))
    except (TypeError, ValueError) as exc:
        message = f"Config 'port' must be an integer, got {raw.get('port')!r}."
        raise ConfigValueError(message) from exc

    downloads_dir = Path(str(raw.get("downloads_dir") or "public/downloads"))
    static_dir = Path(str(raw.get("static_dir") or "public"))

    return RelaySettings(
        telegram=_telegram_settings(raw),
        bot_username=str(raw.get("bot_username") or DEFAULT_BOT_USERNAME).strip(),
        extra_bot_usernames=tuple(
            str(name).strip() for name in ensure_list(raw.get("extra_bot_usernames"))
        ),
        host=raw.get("host") or None,
        port=port,
        downloads_dir=downloads_dir,
        static_dir=static_dir,
        menu_timeout_seconds=_positive_number(
            raw, "menu_timeout_seconds", MENU_TIMEOUT_SECONDS
        ),
        payload_timeout_seconds=_positive_number(
            raw, "payload_timeout_seconds", PAYLOAD_TIMEOUT_SECONDS
        ),
        progress_retention_seconds=_positive_number(
            raw, "progress_retention_seconds", PROGRESS_RETENTION_SECONDS
        ),
        reconnect_delay_seconds=_positive_number(
            raw, "reconnect_delay_seconds", RECONNECT_DELAY_SECONDS
        ),
        keepalive_interval_seconds=_positive_number(
            raw, "keepalive_interval_seconds", KEEPALIVE_INTERVAL_SECONDS
        ),
        retention_seconds=_positive_number(raw, "retention_seconds", RETENTION_SECONDS),
        cleanup_interval_seconds=_positive_number(
            raw, "cleanup_interval_seconds", CLEANUP_INTERVAL_SECONDS
        ),
        cors_origin=str(raw.get("cors_origin") or "*"),
    )
