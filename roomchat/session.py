# =============================================================================
# roomchat -- Room Session
# =============================================================================
#
# Primary public API. Owns the session state machine, the transport
# connection, the reconciler and the dispatcher for one room at a time.
#
#   IDLE -> CONNECTING -> SUBSCRIBING -> ACTIVE -> LEAVING_CLEANUP -> IDLE
#               |              |           |
#               +--------------+-----------+----> FAILED -> IDLE
# =============================================================================

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from functools import partial
from typing import Any, Callable
from uuid import uuid4

from ._logging import logger
from .config import SessionConfig
from .dispatcher import OutboundDispatcher
from .errors import ChatConnectionError, ChatError, ChatSessionError, NotReadyError
from .history import HistoryLoader
from .reconciler import SessionReconciler
from .rooms import RoomApiClient
from .transport import StompConnection, StompTransport, Subscription
from .types import ErrorKind, Message, RoomTopic, SessionState

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.SUBSCRIBING, SessionState.FAILED}),
    SessionState.SUBSCRIBING: frozenset({SessionState.ACTIVE, SessionState.FAILED}),
    SessionState.ACTIVE: frozenset({SessionState.LEAVING_CLEANUP, SessionState.FAILED}),
    SessionState.LEAVING_CLEANUP: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE}),
}

_FAILABLE = frozenset(
    {SessionState.CONNECTING, SessionState.SUBSCRIBING, SessionState.ACTIVE}
)

_EVENTS = ("sequence_changed", "state_changed", "error")

Handler = Callable[..., Any]


class SessionObserver:
    """Base class for session observers. Override what you need."""

    def on_sequence_changed(self, messages: tuple[Message, ...]) -> Any:
        pass

    def on_state_changed(self, state: SessionState) -> Any:
        pass

    def on_error(self, kind: ErrorKind, detail: ChatError) -> Any:
        pass


class ChatSession:
    """A participant's real-time session in one chat room.

    Args:
        config: Endpoints, timeouts and reconciliation settings.
        transport: Broker transport. Defaults to :class:`StompTransport`.
        history: History loader. Defaults to one backed by a
            :class:`RoomApiClient` owned by this session.

    Example::

        async with ChatSession(SessionConfig(base_url="http://localhost:8080")) as session:
            session.add_observer(view)
            await session.connect("r1", "alice")
            session.send("hi")
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        transport: StompTransport | None = None,
        history: HistoryLoader | None = None,
    ) -> None:
        self._config = config or SessionConfig()
        cfg = self._config
        self._transport = transport or StompTransport(
            heartbeat=(cfg.heartbeat_outgoing, cfg.heartbeat_incoming)
        )
        self._api: RoomApiClient | None = None
        if history is None:
            self._api = RoomApiClient(
                cfg.base_url, api_prefix=cfg.api_prefix, timeout=cfg.history_timeout
            )
            history = HistoryLoader(
                self._api, page_size=cfg.history_page_size, timeout=cfg.history_timeout
            )
        self._history = history

        self._state = SessionState.IDLE
        self._session_id: str | None = None
        self._room_id: str | None = None
        self._sender: str | None = None
        self._last_error: ChatError | None = None

        self._handle: StompConnection | None = None
        self._subscription: Subscription | None = None
        self._reconciler: SessionReconciler | None = None
        self._dispatcher: OutboundDispatcher | None = None

        self._startup_task: asyncio.Task[None] | None = None
        self._history_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._sessions_started = 0

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Leave the room and release owned HTTP resources."""
        await self.leave()
        if self._api is not None:
            await self._api.aclose()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def sender(self) -> str | None:
        return self._sender

    @property
    def last_error(self) -> ChatError | None:
        return self._last_error

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot of the current room's message sequence."""
        if self._reconciler is None:
            return ()
        return self._reconciler.messages

    # -- Observers ------------------------------------------------------------

    def add_observer(self, observer: SessionObserver) -> None:
        for event in _EVENTS:
            self._handlers[event].append(getattr(observer, f"on_{event}"))

    def remove_observer(self, observer: SessionObserver) -> None:
        for event in _EVENTS:
            handler = getattr(observer, f"on_{event}")
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

    def on(self, event: str) -> Callable[[Handler], Handler]:
        """Decorator registering a handler for ``"sequence_changed"``,
        ``"state_changed"`` or ``"error"``.

        Example::

            @session.on("state_changed")
            def show(state):
                print(state.value)
        """
        if event not in _EVENTS:
            raise ValueError(f"Unknown session event {event!r}")

        def decorator(fn: Handler) -> Handler:
            self._handlers[event].append(fn)
            return fn

        return decorator

    def off(self, event: str, fn: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if fn in handlers:
            handlers.remove(fn)

    # -- Connect --------------------------------------------------------------

    async def connect(
        self,
        room_id: str,
        sender: str,
        *,
        timeout: float | None = None,
        history_timeout: float | None = None,
    ) -> None:
        """Enter *room_id* as *sender*.

        Returns once the live subscription is armed (``ACTIVE``); history
        keeps loading in the background and is reported through
        ``sequence_changed`` / ``error``.

        Raises:
            ChatSessionError: The session is not idle (or failed).
            ChatConnectionError: Handshake or transport failure.
            ChatSubscriptionError: The room topic could not be subscribed.
            ChatTimeoutError: *timeout* expired while connecting.
        """
        if self._state is SessionState.FAILED:
            self._set_state(SessionState.IDLE)
        if self._state is not SessionState.IDLE:
            raise ChatSessionError(f"Cannot connect while session is {self._state.value}")
        if not room_id or not sender:
            raise ChatSessionError("Room id and sender are required")

        session_id = uuid4().hex
        self._session_id = session_id
        self._room_id = room_id
        self._sender = sender
        self._last_error = None
        self._sessions_started += 1
        self._set_state(SessionState.CONNECTING)

        startup = asyncio.ensure_future(
            self._startup(session_id, timeout, history_timeout)
        )
        self._startup_task = startup
        try:
            await startup
        finally:
            if self._startup_task is startup:
                self._startup_task = None

    async def _startup(
        self,
        session_id: str,
        timeout: float | None,
        history_timeout: float | None,
    ) -> None:
        try:
            await self._open(session_id, timeout, history_timeout)
        except asyncio.CancelledError:
            exc = ChatConnectionError("Session left during startup")
            await self._fail(session_id, exc)
            raise exc from None
        except ChatError as exc:
            await self._fail(session_id, exc)
            raise

    async def _open(
        self,
        session_id: str,
        timeout: float | None,
        history_timeout: float | None,
    ) -> None:
        cfg = self._config
        room_id = self._room_id
        assert room_id is not None

        self._handle = await self._transport.connect(
            cfg.broker_url,
            timeout=cfg.connect_timeout if timeout is None else timeout,
            host=cfg.broker_host,
            on_lost=partial(self._on_transport_lost, session_id),
        )
        self._set_state(SessionState.SUBSCRIBING)

        reconciler = SessionReconciler(
            room_id,
            session_id,
            tolerance=cfg.dedup_tolerance,
            window=cfg.dedup_window,
            on_change=partial(self._on_sequence, session_id),
            on_error=partial(self._on_reconciler_error, session_id),
        )
        self._reconciler = reconciler
        topic = RoomTopic(room_id)

        # Arm the live subscription first; history goes out after it
        self._subscription = await self._transport.subscribe(
            self._handle,
            topic,
            reconciler.on_frame,
            receipt=cfg.subscribe_receipts,
            timeout=cfg.subscribe_timeout,
        )
        if not self._handle.is_open:
            raise ChatConnectionError("Connection lost while subscribing")
        self._dispatcher = OutboundDispatcher(self._transport, self._handle, topic)
        self._history_task = self._fire_task(
            reconciler.load_history(self._history, timeout=history_timeout)
        )
        self._set_state(SessionState.ACTIVE)
        logger.info("Session %s active in room %s as %s", session_id, room_id, self._sender)

    # -- Leave ----------------------------------------------------------------

    async def leave(self) -> None:
        """Leave the room. Idempotent: a no-op when already idle."""
        state = self._state
        if state in (SessionState.IDLE, SessionState.LEAVING_CLEANUP):
            return

        if state in (SessionState.CONNECTING, SessionState.SUBSCRIBING):
            task = self._startup_task
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait([task])
            if self._state in (SessionState.CONNECTING, SessionState.SUBSCRIBING):
                # Startup ended without reaching FAILED
                handle = self._handle
                self._teardown()
                self._set_state(SessionState.FAILED)
                await self._transport.disconnect(handle)
            if self._state is SessionState.FAILED:
                self._set_state(SessionState.IDLE)
            return

        if state is SessionState.FAILED:
            self._set_state(SessionState.IDLE)
            return

        self._set_state(SessionState.LEAVING_CLEANUP)
        handle = self._handle
        self._teardown()
        self._session_id = None
        await self._transport.disconnect(handle)
        self._notify("sequence_changed", ())
        self._set_state(SessionState.IDLE)
        logger.info("Left room %s", self._room_id)

    # -- Send -----------------------------------------------------------------

    def send(self, content: str) -> Message:
        """Publish *content* to the room.

        The message appears in :attr:`messages` once the broker echoes it.

        Raises:
            NotReadyError: The session is not active.
            EmptyMessageError: *content* is blank.
        """
        if self._dispatcher is None or self._sender is None or self._room_id is None:
            raise NotReadyError(f"Cannot send while session is {self._state.value}")
        message = Message(
            sender=self._sender,
            content=content,
            room_id=self._room_id,
            timestamp=datetime.now(UTC),
        )
        self._dispatcher.send(self._state, message)
        return message

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "session_id": self._session_id,
            "room_id": self._room_id,
            "sender": self._sender,
            "sessions_started": self._sessions_started,
            "last_error": self._last_error.reason if self._last_error else None,
            "messages_sent": self._dispatcher.messages_sent if self._dispatcher else 0,
            "reconciler": self._reconciler.get_stats() if self._reconciler else None,
            "connection": self._handle.get_stats() if self._handle else None,
        }

    # -- Internal: failure ----------------------------------------------------

    async def _fail(self, session_id: str, exc: ChatError) -> None:
        # State changes happen before the first await; leave() or a new
        # connect() may run while the socket is closing
        if session_id != self._session_id or self._state not in _FAILABLE:
            return
        handle = self._handle
        self._teardown()
        self._last_error = exc
        self._notify("sequence_changed", ())
        logger.error("Session %s failed: %s", session_id, exc.reason)
        self._set_state(SessionState.FAILED)
        self._notify("error", exc.kind, exc)
        await self._transport.disconnect(handle)

    def _on_transport_lost(self, session_id: str, exc: ChatError) -> None:
        if session_id != self._session_id:
            return
        # Startup failures surface through connect(); only a live session fails here
        if self._state is SessionState.ACTIVE:
            self._fire_task(self._fail(session_id, exc))

    def _teardown(self) -> None:
        if self._history_task is not None:
            self._history_task.cancel()
            self._history_task = None
        if self._reconciler is not None:
            self._reconciler.close()
            self._reconciler = None
        self._dispatcher = None
        self._subscription = None
        self._handle = None

    # -- Internal: reconciler callbacks ---------------------------------------

    def _on_sequence(self, session_id: str, messages: tuple[Message, ...]) -> None:
        if session_id != self._session_id:
            return
        self._notify("sequence_changed", messages)

    def _on_reconciler_error(self, session_id: str, kind: ErrorKind, exc: ChatError) -> None:
        if session_id != self._session_id:
            return
        self._notify("error", kind, exc)

    # -- Internal: state / fan-out --------------------------------------------

    def _set_state(self, new_state: SessionState) -> None:
        old = self._state
        if new_state not in _TRANSITIONS[old]:
            raise ChatSessionError(f"Illegal transition {old.value} -> {new_state.value}")
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        self._notify("state_changed", new_state)

    def _notify(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                logger.error("Observer error for '%s': %s", event, exc)

    def _fire_task(self, coro: Any) -> asyncio.Task[Any]:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
