# =============================================================================
# roomchat -- Error Types
# =============================================================================

from __future__ import annotations

from .types import ErrorKind


class ChatError(Exception):
    """Base exception for all roomchat errors."""

    kind: ErrorKind = ErrorKind.CONNECTION

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(reason)


class ChatConnectionError(ChatError):
    """Handshake or transport failure (failed to connect, lost connection)."""

    kind = ErrorKind.CONNECTION


class ChatSubscriptionError(ChatError):
    """Topic registration failure, including duplicate subscriptions."""

    kind = ErrorKind.SUBSCRIPTION


class HistoryUnavailableError(ChatError):
    """History fetch failed. Not fatal to a session."""

    kind = ErrorKind.HISTORY_UNAVAILABLE


class ChatTimeoutError(ChatError):
    """A bounded wait (connect, subscribe, history) expired."""

    kind = ErrorKind.TIMEOUT


class ChatPublishError(ChatError):
    """Local precondition failure on send. Never changes session state."""


class NotReadyError(ChatPublishError):
    """Send attempted while the session is not active."""

    kind = ErrorKind.NOT_READY


class EmptyMessageError(ChatPublishError):
    """Send attempted with blank content."""

    kind = ErrorKind.EMPTY_MESSAGE


class ChatProtocolError(ChatError):
    """Malformed STOMP frame or unexpected broker reply."""


class ChatSessionError(ChatError):
    """Lifecycle call made from a state that does not allow it."""


class RoomApiError(ChatError):
    """Room REST call failed."""

    def __init__(self, reason: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(reason)


class RoomExistsError(RoomApiError):
    """Room creation rejected because the id is taken."""


class RoomNotFoundError(RoomApiError):
    """Join rejected because the room does not exist."""
