"""Custom exceptions for botrelay."""

NOT_CONNECTED_MESSAGE = "Telegram client not connected. Please wait..."
SESSION_HALTED_MESSAGE = (
    "Telegram session halted: the same session is in use by another process"
)
MENU_UNAVAILABLE_MESSAGE = "No format selection available. Please try again."


class RelayError(RuntimeError):
    """Base class for relay failures surfaced to HTTP callers."""


class NotConnectedError(RelayError):
    """Raised when outbound chat work is attempted while disconnected."""

    def __init__(self, message: str | None = None) -> None:
        """Initialize with the default "not ready" message."""
        super().__init__(message or NOT_CONNECTED_MESSAGE)


class SessionHaltedError(RelayError):
    """Raised when the connection manager refuses to reconnect."""

    def __init__(self, reason: str | None = None) -> None:
        """Initialize with the halt reason."""
        self.reason = reason or SESSION_HALTED_MESSAGE
        super().__init__(self.reason)


class BotUnreachableError(RelayError):
    """Raised when the bot entity cannot be resolved."""

    def __init__(self, username: str, attempts: int) -> None:
        """Initialize with the bot handle and the number of attempts made."""
        self.username = username
        self.attempts = attempts
        super().__init__(f"Could not resolve bot {username} after {attempts} attempts")


class MenuUnavailableError(RelayError):
    """Raised when no usable format menu is stored."""

    def __init__(self, message: str | None = None) -> None:
        """Initialize with the default "no menu" message."""
        super().__init__(message or MENU_UNAVAILABLE_MESSAGE)


class TransferFailedError(RelayError):
    """Raised when a terminal payload could not be persisted."""

    def __init__(self, cause: BaseException | str) -> None:
        """Initialize from the underlying cause."""
        self.cause = cause
        super().__init__(f"Download failed: {cause}")
