# =============================================================================
# roomchat -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .constants import (
    PUBLISH_PREFIX,
    RETRY_BASE_DELAY,
    RETRY_FACTOR,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    TOPIC_PREFIX,
)


class SessionState(str, Enum):
    """Room session lifecycle state.

    Flow: IDLE -> CONNECTING -> SUBSCRIBING -> ACTIVE ->
    (LEAVING_CLEANUP | FAILED) -> IDLE. CONNECTING and SUBSCRIBING may
    also fail directly.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    LEAVING_CLEANUP = "leaving-cleanup"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Category reported to observers through ``on_error``."""

    CONNECTION = "connection"
    SUBSCRIPTION = "subscription"
    HISTORY_UNAVAILABLE = "history-unavailable"
    NOT_READY = "not-ready"
    EMPTY_MESSAGE = "empty-message"
    TIMEOUT = "timeout"


class RetryMode(str, Enum):
    """Backoff strategy between manual connect re-attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIBONACCI = "fibonacci"


@dataclass(frozen=True, slots=True)
class Message:
    """A chat message in a room.

    There is no transport-level message id, so two messages are treated
    as the same one when sender, content and room match and their
    timestamps are close (see :meth:`is_duplicate_of`).

    Attributes:
        sender: Display name of the author.
        content: Message text.
        room_id: Room the message belongs to.
        timestamp: Timezone-aware UTC instant.
    """

    sender: str
    content: str
    room_id: str
    timestamp: datetime

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        *,
        room_id: str | None = None,
        received_at: datetime | None = None,
    ) -> Message:
        """Build a message from the broker / REST JSON shape.

        Raises:
            ValueError: If the payload lacks ``sender`` or ``content``.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Message payload must be an object, got {type(payload).__name__}")
        sender = payload.get("sender")
        content = payload.get("content")
        if not isinstance(sender, str) or not isinstance(content, str):
            raise ValueError("Message payload requires string 'sender' and 'content'")

        rid = payload.get("roomId") or room_id or ""
        ts = parse_timestamp(payload.get("timeStamp", payload.get("timestamp")))
        if ts is None:
            ts = received_at or datetime.now(UTC)
        return cls(sender=sender, content=content, room_id=str(rid), timestamp=ts)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "content": self.content,
            "roomId": self.room_id,
            "timeStamp": int(self.timestamp.timestamp() * 1000),
        }

    def is_duplicate_of(self, other: Message, tolerance: float) -> bool:
        """Heuristic identity: same author, text and room within *tolerance* seconds."""
        if (
            self.sender != other.sender
            or self.content != other.content
            or self.room_id != other.room_id
        ):
            return False
        delta = abs((self.timestamp - other.timestamp).total_seconds())
        return delta < tolerance


@dataclass(frozen=True, slots=True)
class RoomTopic:
    """Broker addresses derived from a room id."""

    room_id: str

    @property
    def destination(self) -> str:
        return f"{TOPIC_PREFIX}{self.room_id}"

    @property
    def publish_destination(self) -> str:
        return f"{PUBLISH_PREFIX}{self.room_id}"

    def __str__(self) -> str:
        return self.destination


@dataclass(frozen=True, slots=True)
class StompFrame:
    """A single STOMP frame.

    Attributes:
        command: Frame command, e.g. ``"MESSAGE"``, ``"CONNECTED"``.
        headers: Decoded headers; on repeated keys the first one wins.
        body: Frame body as text.
    """

    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a server timestamp into an aware UTC datetime.

    Accepts epoch millis, ISO-8601 strings (naive means UTC) and the
    ``[year, month, day, hour, minute, second, nanos]`` array some JSON
    mappers emit for local date-times. Returns ``None`` when absent or
    unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    if isinstance(value, (list, tuple)) and len(value) >= 3:
        try:
            parts = [int(p) for p in value[:7]]
            nanos = parts[6] if len(parts) > 6 else 0
            return datetime(*parts[:6], microsecond=nanos // 1000, tzinfo=UTC)
        except (TypeError, ValueError):
            return None
    return None


@dataclass
class RetryPolicy:
    """Backoff for re-issuing ``connect`` after a failed attempt.

    Attributes:
        mode: Backoff strategy (default: exponential).
        base_delay: Delay in seconds before the second attempt.
        max_delay: Maximum delay cap in seconds.
        max_attempts: Total attempts including the first, ``-1`` for infinite.
        factor: Multiplier per attempt for exponential backoff.
        jitter: Randomize delays by +/-10%.
    """

    mode: RetryMode = RetryMode.EXPONENTIAL
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    max_attempts: int = RETRY_MAX_ATTEMPTS
    factor: float = RETRY_FACTOR
    jitter: bool = True
