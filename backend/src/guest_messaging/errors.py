from __future__ import annotations

from typing import Literal

ChannelErrorKind = Literal["system", "auth", "not_found", "rate_limited", "server_error", "unknown"]

_RETRYABLE_KINDS = frozenset({"auth", "rate_limited", "server_error"})


class MessagingError(Exception):
    """Base class for every error the messaging engine surfaces to callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MessagingError):
    """Raised when caller input is rejected (length, required fields, roles)."""

    status_code = 422


class NotFoundError(MessagingError):
    """Raised when a thread, message, delivery or mapping does not exist."""

    status_code = 404


class ConflictError(MessagingError):
    """Raised for duplicates, already-unsent messages and unique-key races."""

    status_code = 409


class PermissionDeniedError(MessagingError):
    """Raised when an actor is not allowed to perform an operation."""

    status_code = 403


class StoreUnavailableError(MessagingError):
    """Raised when the backing store cannot be reached."""

    status_code = 503


class ChannelError(MessagingError):
    """A categorized channel delivery failure.

    The orchestrator records ``message`` on the delivery row and re-raises the
    error, so callers always see the failure.
    """

    status_code = 502

    def __init__(self, kind: ChannelErrorKind, message: str, *, channel: str | None = None) -> None:
        super().__init__(message)
        self.kind: ChannelErrorKind = kind
        self.channel = channel

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"ChannelError(kind={self.kind!r}, channel={self.channel!r}, message={self.message!r})"
