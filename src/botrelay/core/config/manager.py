"""Configuration manager for loading and caching config."""

import os
import time
from pathlib import Path
from typing import Any

import yaml


class ConfigFileNotFoundError(FileNotFoundError):
    """Raised when a configuration file cannot be found."""

    def __init__(self, filename: str) -> None:
        """Initialize the error with the missing filename."""
        self.filename = filename
        super().__init__(filename)

    def __str__(self) -> str:
        """Return a readable error message."""
        return (
            f"Config file '{self.filename}' not found in current directory or "
            "/etc/secrets/"
        )


class ConfigFileEmptyError(ValueError):
    """Raised when a configuration file is empty or corrupted."""

    def __init__(self, path: Path) -> None:
        """Initialize the error with the invalid config path."""
        self.path = path
        super().__init__(path)

    def __str__(self) -> str:
        """Return a readable error message."""
        return f"Config file is empty or corrupted: {self.path}"


class ConfigValueError(ValueError):
    """Raised when a required setting is missing or malformed."""


class _ConfigCacheState:
    def __init__(self) -> None:
        self.cache: dict[str, Any] = {}
        self.mtime: float = 0
        self.check_time: float = 0


_CONFIG_STATE = _ConfigCacheState()
CONFIG_CACHE_TTL = 5  # Check file modification time every 5 seconds

# Environment variable -> (section, key). A section of None means top level.
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "TELEGRAM_API_ID": ("telegram", "api_id"),
    "TELEGRAM_API_HASH": ("telegram", "api_hash"),
    "TELEGRAM_SESSION": ("telegram", "session"),
    "BOT_USERNAME": (None, "bot_username"),
    "HOST": (None, "host"),
    "PORT": (None, "port"),
}


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Overlay secrets and deployment knobs taken from the environment."""
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or not value.strip():
            continue
        if section is None:
            config[key] = value.strip()
            continue
        target = config.get(section)
        if not isinstance(target, dict):
            target = {}
            config[section] = target
        target[key] = value.strip()
    return config


def _resolve_config_path(filename: str) -> Path:
    candidates = [Path(filename), Path("/etc/secrets") / filename]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    raise ConfigFileNotFoundError(filename)


def get_config(filename: str = "config.yaml") -> dict[str, Any]:
    """Load configuration from YAML file with caching.

    Only reloads if file has been modified (checked every `CONFIG_CACHE_TTL` seconds).
    Environment overrides are applied on every reload.
    """
    current_time = time.time()

    if (
        current_time - _CONFIG_STATE.check_time > CONFIG_CACHE_TTL
        or not _CONFIG_STATE.cache
    ):
        _CONFIG_STATE.check_time = current_time

        filepath = _resolve_config_path(filename)
        file_mtime = filepath.stat().st_mtime

        if file_mtime != _CONFIG_STATE.mtime or not _CONFIG_STATE.cache:
            _CONFIG_STATE.mtime = file_mtime
            with filepath.open(encoding="utf-8") as file:
                loaded_config = yaml.safe_load(file)
                # Handle empty/corrupted YAML that returns None
                if not isinstance(loaded_config, dict):
                    raise ConfigFileEmptyError(filepath)
                _CONFIG_STATE.cache = _apply_env_overrides(loaded_config)

    return _CONFIG_STATE.cache


def clear_config_cache() -> None:
    """Clear the config cache to force a reload on next `get_config()` call."""
    _CONFIG_STATE.cache = {}
    _CONFIG_STATE.mtime = 0
    _CONFIG_STATE.check_time = 0


def ensure_list(value: str | list[str] | None) -> list[str]:
    """Convert a value to a list if it isn't one already.

    Bot allow-lists may be configured as either a single handle or a list.

    Examples:
        >>> ensure_list("@SomeBot")
        ['@SomeBot']
        >>> ensure_list(None)
        []

    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)
