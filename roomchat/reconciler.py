# =============================================================================
# roomchat -- Session Reconciler
# =============================================================================
#
# Merges the one-shot history snapshot with the live room stream.
#
#   subscribe armed ──> live frames ──> pending buffer ─┐
#   history fetch ─────────────────────> history ───────┴─> sequence
#                                                           │
#   after the drain: live frames ──> trailing-window dedup ─┘
#
# The live subscription is armed before the history request goes out, so
# a message published in between shows up in both sources. There is no
# message id on the wire; duplicates are recognised by sender, content,
# room and a timestamp tolerance.
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from ._logging import logger
from .constants import DEDUP_TOLERANCE, DEDUP_WINDOW
from .errors import ChatError, ChatTimeoutError, HistoryUnavailableError
from .protocol import json_loads
from .types import ErrorKind, Message, StompFrame

if TYPE_CHECKING:
    from .history import HistoryLoader

SequenceCallback = Callable[[tuple[Message, ...]], Any]
ErrorCallback = Callable[[ErrorKind, ChatError], Any]


class SessionReconciler:
    """Ordered, duplicate-free message sequence for one room session.

    Until history resolves, live messages are held in a pending buffer.
    History then seeds the sequence, the buffer is drained in arrival
    order (each entry checked against the whole sequence), and the
    reconciler switches to pass-through mode where each live message is
    checked against the last *window* entries only.

    All methods run on the event loop thread; frames arrive one at a time
    from the transport's receive loop.

    Args:
        room_id: Room of this session.
        session_id: Identity of the owning session. Results delivered
            after :meth:`close` are discarded.
        tolerance: Max timestamp distance in seconds for two otherwise
            equal messages to count as one.
        window: Trailing entries checked in pass-through mode.
        on_change: Called with a snapshot after every change.
        on_error: Called with ``(kind, error)`` for non-fatal problems.
    """

    def __init__(
        self,
        room_id: str,
        session_id: str,
        *,
        tolerance: float = DEDUP_TOLERANCE,
        window: int = DEDUP_WINDOW,
        on_change: SequenceCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._room_id = room_id
        self._session_id = session_id
        self._tolerance = tolerance
        self._window = max(1, window)
        self._on_change = on_change
        self._on_error = on_error

        self._sequence: list[Message] = []
        self._pending: list[Message] = []
        self._history_resolved = False
        self._history_ok: bool | None = None
        self._closed = False

        self._live_received = 0
        self._duplicates_dropped = 0
        self._malformed_dropped = 0
        self._late_dropped = 0

    # -- Properties -----------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def messages(self) -> tuple[Message, ...]:
        """Read-only snapshot of the merged sequence."""
        return tuple(self._sequence)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def passthrough(self) -> bool:
        """True once history has resolved (successfully or not)."""
        return self._history_resolved

    @property
    def history_ok(self) -> bool | None:
        """``None`` while loading, then whether history was available."""
        return self._history_ok

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Live stream ----------------------------------------------------------

    def on_frame(self, frame: StompFrame) -> None:
        """Subscription callback: decode a ``MESSAGE`` body and merge it."""
        if self._closed:
            self._late_dropped += 1
            logger.debug("Dropping frame for closed session %s", self._session_id)
            return
        try:
            message = Message.from_payload(json_loads(frame.body), room_id=self._room_id)
        except ValueError as exc:
            self._malformed_dropped += 1
            logger.warning("Dropping undecodable room message: %s", exc)
            return
        self.on_live(message)

    def on_live(self, message: Message) -> None:
        if self._closed:
            self._late_dropped += 1
            logger.debug("Dropping live message for closed session %s", self._session_id)
            return
        self._live_received += 1

        if not self._history_resolved:
            self._pending.append(message)
            return

        if self._is_duplicate(message, self._sequence[-self._window :]):
            self._duplicates_dropped += 1
            logger.debug("Duplicate live message from %s dropped", message.sender)
            return
        self._sequence.append(message)
        self._notify()

    # -- History --------------------------------------------------------------

    async def load_history(self, loader: HistoryLoader, *, timeout: float | None = None) -> None:
        """Fetch history through *loader* and merge it."""
        try:
            messages = await loader.load(self._room_id, timeout=timeout)
        except (HistoryUnavailableError, ChatTimeoutError) as exc:
            self.fail_history(exc)
            return
        self.resolve_history(messages)

    def resolve_history(self, messages: Iterable[Message]) -> None:
        """Seed the sequence with *messages* and drain the pending buffer."""
        if self._closed:
            self._late_dropped += 1
            logger.debug("Dropping late history for closed session %s", self._session_id)
            return
        if self._history_resolved:
            logger.warning("History for %s already resolved, ignoring", self._room_id)
            return

        self._history_resolved = True
        self._history_ok = True
        self._sequence = list(messages)
        history_len = len(self._sequence)

        pending, self._pending = self._pending, []
        for message in pending:
            if self._is_duplicate(message, self._sequence):
                self._duplicates_dropped += 1
                continue
            self._sequence.append(message)

        logger.debug(
            "History resolved for %s: %d stored, %d of %d buffered live appended",
            self._room_id,
            history_len,
            len(self._sequence) - history_len,
            len(pending),
        )
        self._notify()

    def fail_history(self, exc: ChatError) -> None:
        """Degrade: keep the session, show buffered live messages as they came."""
        if self._closed:
            self._late_dropped += 1
            return
        if self._history_resolved:
            return

        self._history_resolved = True
        self._history_ok = False
        pending, self._pending = self._pending, []
        self._sequence.extend(pending)

        logger.warning(
            "History unavailable for %s (%s), continuing with live messages only",
            self._room_id,
            exc.reason,
        )
        if self._on_error is not None:
            self._on_error(ErrorKind.HISTORY_UNAVAILABLE, exc)
        self._notify()

    # -- Teardown -------------------------------------------------------------

    def close(self) -> None:
        """Discard the sequence and ignore anything that arrives later."""
        self._closed = True
        self._pending.clear()
        self._sequence.clear()

    # -- Internal -------------------------------------------------------------

    def _is_duplicate(self, message: Message, against: Sequence[Message]) -> bool:
        for existing in reversed(against):
            if message.is_duplicate_of(existing, self._tolerance):
                return True
        return False

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.messages)

    def get_stats(self) -> dict[str, Any]:
        return {
            "session_id": self._session_id,
            "room_id": self._room_id,
            "sequence_size": len(self._sequence),
            "pending_size": len(self._pending),
            "passthrough": self._history_resolved,
            "history_ok": self._history_ok,
            "live_received": self._live_received,
            "duplicates_dropped": self._duplicates_dropped,
            "malformed_dropped": self._malformed_dropped,
            "late_dropped": self._late_dropped,
        }
