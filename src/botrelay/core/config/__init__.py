"""Configuration loading and constants for botrelay.

This package exposes the split configuration modules as a single interface.
"""

from botrelay.core.config.manager import (
    ConfigFileEmptyError,
    ConfigFileNotFoundError,
    ConfigValueError,
    clear_config_cache,
    ensure_list,
    get_config,
)
from botrelay.core.config.settings import (
    RelaySettings,
    TelegramSettings,
    load_settings,
)

__all__ = [
    "ConfigFileEmptyError",
    "ConfigFileNotFoundError",
    "ConfigValueError",
    "RelaySettings",
    "TelegramSettings",
    "clear_config_cache",
    "ensure_list",
    "get_config",
    "load_settings",
]
