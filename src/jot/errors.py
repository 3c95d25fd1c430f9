"""Error taxonomy shared by the remote client, chat client and orchestrator."""

from __future__ import annotations

_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class JotError(Exception):
    """Base class for all Jot errors."""


class ConfigError(JotError):
    """Configuration error."""


class RemoteApiError(JotError):
    """Non-2xx response from the remote assistant API."""

    def __init__(self, status: int, message: str, *, body: str = "") -> None:
        super().__init__(f"remote API error ({status}): {message}")
        self.status = status
        self.body = body

    @property
    def is_auth(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_transient(self) -> bool:
        return self.status in _TRANSIENT_STATUS or self.status >= 500


class RemoteUnavailableError(JotError):
    """Network failure or timeout talking to the remote assistant API."""


class TelegramError(JotError):
    """Telegram Bot API call failed."""

    def __init__(
        self,
        method: str,
        description: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"telegram {method} failed: {description}")
        self.method = method
        self.status = status
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        if self.status is None:
            return True
        return self.status in _TRANSIENT_STATUS or self.status >= 500


class ActivityParseError(JotError):
    """A remote activity payload is missing required fields."""


class SessionExistsError(JotError):
    """The thread already has a session bound to it."""


class NoSessionError(JotError):
    """The thread has no session bound to it."""


def is_transient(exc: BaseException) -> bool:
    """Return True for errors worth retrying: network, timeout, 5xx, 408, 429."""
    if isinstance(exc, RemoteUnavailableError):
        return True
    if isinstance(exc, (RemoteApiError, TelegramError)):
        return exc.is_transient
    return False


def summarize_error(exc: BaseException) -> str:
    """Short, user-facing description that never echoes response bodies."""
    if isinstance(exc, RemoteApiError):
        if exc.is_auth:
            return "the API key was rejected"
        if exc.is_not_found:
            return "the session no longer exists"
        if exc.status == 429:
            return "rate limited, try again shortly"
        if exc.is_transient:
            return "the service is temporarily unavailable"
        return f"request rejected ({exc.status})"
    if isinstance(exc, RemoteUnavailableError):
        return "the service could not be reached"
    if isinstance(exc, TelegramError):
        return "the message could not be delivered"
    return "unexpected error"
