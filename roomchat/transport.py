# =============================================================================
# roomchat -- STOMP Transport Adapter
# =============================================================================
#
# WebSocket upgrade + STOMP handshake, topic subscriptions, fire-and-forget
# publishing and idempotent teardown. One socket per StompConnection.
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Callable
from urllib.parse import urlsplit

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from ._logging import logger
from .constants import (
    CONNECTION_TIMEOUT,
    DISCONNECT_TIMEOUT,
    HEARTBEAT_GRACE_FACTOR,
    HEARTBEAT_INCOMING,
    HEARTBEAT_OUTGOING,
    MAX_MESSAGE_SIZE,
    STOMP_CONTENT_TYPE,
    STOMP_EOL,
    STOMP_SUBPROTOCOLS,
    SUBSCRIBE_TIMEOUT,
    WS_CLOSE_NORMAL,
)
from .errors import (
    ChatConnectionError,
    ChatError,
    ChatProtocolError,
    ChatSubscriptionError,
    ChatTimeoutError,
    NotReadyError,
)
from .protocol import StompCodec, json_dumps, negotiate_heartbeat, parse_heartbeat
from .types import RoomTopic, StompFrame

FrameHandler = Callable[[StompFrame], Any]
LostHandler = Callable[[ChatError], Any]


class Subscription:
    """A registered topic subscription on one connection."""

    __slots__ = ("id", "destination", "_on_message", "armed")

    def __init__(self, sub_id: str, destination: str, on_message: FrameHandler) -> None:
        self.id = sub_id
        self.destination = destination
        self._on_message = on_message
        self.armed = False

    def deliver(self, frame: StompFrame) -> None:
        try:
            self._on_message(frame)
        except Exception as exc:
            logger.error("Subscription handler error for '%s': %s", self.destination, exc)

    def __repr__(self) -> str:
        return f"Subscription(id={self.id!r}, destination={self.destination!r})"


class StompConnection:
    """Handle for one open broker connection.

    Owns the socket, the receive loop and the heart-beat loop. Created by
    :meth:`StompTransport.connect`; released by
    :meth:`StompTransport.disconnect` or by an unrecoverable transport
    error, which fires :attr:`on_lost` exactly once.
    """

    def __init__(
        self,
        ws: websockets.asyncio.client.ClientConnection,
        codec: StompCodec,
        *,
        endpoint: str,
        connected: StompFrame,
        on_lost: LostHandler | None = None,
    ) -> None:
        self._ws: websockets.asyncio.client.ClientConnection | None = ws
        self._codec = codec
        self._endpoint = endpoint
        self.on_lost = on_lost

        self.version = connected.headers.get("version", "1.0")
        self.server = connected.headers.get("server")
        self.session = connected.headers.get("session")
        self._server_heartbeat = parse_heartbeat(connected.headers.get("heart-beat"))

        self._closed = False
        self._send_lock = asyncio.Lock()
        self._ids = itertools.count()
        self._subscriptions: dict[str, Subscription] = {}
        self._topics: set[str] = set()
        self._receipts: dict[str, asyncio.Future[StompFrame]] = {}

        self._last_received = time.monotonic()
        self._last_sent = time.monotonic()
        self._frames_received = 0
        self._frames_sent = 0

        self._recv_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -- Properties -----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def has_subscription(self, destination: str) -> bool:
        return destination in self._topics

    def get_stats(self) -> dict[str, Any]:
        return {
            "endpoint": self._endpoint,
            "open": self.is_open,
            "version": self.version,
            "session": self.session,
            "subscriptions": [s.destination for s in self._subscriptions.values()],
            "frames_received": self._frames_received,
            "frames_sent": self._frames_sent,
            "pending_receipts": len(self._receipts),
        }

    # -- Lifecycle ------------------------------------------------------------

    def start(self, client_heartbeat: tuple[int, int]) -> None:
        """Start the receive loop and, when negotiated, heart-beats."""
        self._recv_task = asyncio.create_task(self._recv_loop())
        send_every, expect_every = negotiate_heartbeat(
            client_heartbeat, self._server_heartbeat
        )
        if send_every or expect_every:
            logger.debug(
                "Heart-beat: send every %.1fs, expect every %.1fs",
                send_every,
                expect_every,
            )
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(send_every, expect_every)
            )

    async def close(self) -> None:
        """Graceful shutdown. Safe to call repeatedly."""
        if self._closed and self._ws is None:
            return
        was_open = not self._closed
        self._closed = True
        ws, self._ws = self._ws, None

        if was_open and ws is not None:
            try:
                await asyncio.wait_for(
                    ws.send(self._codec.encode(self._codec.disconnect_frame())),
                    timeout=DISCONNECT_TIMEOUT,
                )
            except Exception as exc:
                logger.debug("DISCONNECT frame not sent: %s", exc)

        # Cancel tasks and await completion before closing the socket
        current = asyncio.current_task()
        tasks_to_await: list[asyncio.Task[Any]] = []
        for task in (self._heartbeat_task, self._recv_task, *self._background_tasks):
            if task is None or task is current:
                continue
            task.cancel()
            tasks_to_await.append(task)
        self._heartbeat_task = None
        self._recv_task = None
        self._background_tasks.clear()
        if tasks_to_await:
            await asyncio.gather(*tasks_to_await, return_exceptions=True)

        self._fail_receipts(ChatConnectionError("Connection closed"))
        if ws is not None:
            await _close_quietly(ws)
        logger.info("Disconnected from %s", self._endpoint)

    def _lose(self, exc: ChatError) -> None:
        """Implicit disconnect after an unrecoverable transport error."""
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._recv_task):
            if task is not None and task is not current:
                task.cancel()
        self._heartbeat_task = None
        self._recv_task = None
        self._fail_receipts(exc)
        if ws is not None:
            self._fire_task(_close_quietly(ws))

        logger.warning("Connection to %s lost: %s", self._endpoint, exc.reason)
        if self.on_lost is not None:
            try:
                self.on_lost(exc)
            except Exception as cb_exc:
                logger.error("Connection-lost handler error: %s", cb_exc)

    # -- Send -----------------------------------------------------------------

    async def send_frame(self, frame: StompFrame) -> bool:
        """Write one frame. Returns True on success."""
        return await self._send_raw(self._codec.encode(frame))

    def send_frame_nowait(self, frame: StompFrame) -> None:
        self._fire_task(self.send_frame(frame))

    async def _send_raw(self, data: str) -> bool:
        async with self._send_lock:
            ws = self._ws
            if ws is None or self._closed:
                return False
            try:
                await ws.send(data)
            except ConnectionClosed:
                logger.debug("Send failed: connection closed")
                return False
            except Exception as exc:
                logger.debug("Send failed: %s", exc)
                return False
            self._last_sent = time.monotonic()
            self._frames_sent += 1
            return True

    # -- Subscriptions / receipts ---------------------------------------------

    def register(self, destination: str, on_message: FrameHandler) -> Subscription:
        sub = Subscription(f"sub-{next(self._ids)}", destination, on_message)
        self._subscriptions[sub.id] = sub
        self._topics.add(destination)
        return sub

    def unregister(self, sub: Subscription) -> None:
        self._subscriptions.pop(sub.id, None)
        self._topics.discard(sub.destination)

    def expect_receipt(self) -> tuple[str, asyncio.Future[StompFrame]]:
        receipt_id = f"rcpt-{next(self._ids)}"
        fut: asyncio.Future[StompFrame] = asyncio.get_running_loop().create_future()
        self._receipts[receipt_id] = fut
        return receipt_id, fut

    def _fail_receipts(self, exc: ChatError) -> None:
        for fut in self._receipts.values():
            if not fut.done():
                fut.set_exception(exc)
        self._receipts.clear()

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self) -> None:
        """Read frames until the socket closes."""
        ws = self._ws
        assert ws is not None
        try:
            async for message in ws:
                self._last_received = time.monotonic()
                self.handle_raw(message)
                if self._closed:
                    return
        except ConnectionClosedError as exc:
            self._lose(ChatConnectionError(f"Connection lost: {exc}"))
            return
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
            self._lose(ChatConnectionError(f"Receive loop error: {exc}"))
            return
        # Clean close initiated by the broker
        self._lose(ChatConnectionError("Connection closed by broker"))

    def handle_raw(self, data: str | bytes) -> None:
        try:
            frames = self._codec.decode(data)
        except ChatProtocolError as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return
        for frame in frames:
            self._frames_received += 1
            self._handle_frame(frame)

    def _handle_frame(self, frame: StompFrame) -> None:
        if frame.command == "MESSAGE":
            sub = self._subscriptions.get(frame.headers.get("subscription", ""))
            if sub is None:
                logger.debug("MESSAGE for unknown subscription: %s", frame.headers)
                return
            sub.deliver(frame)
        elif frame.command == "RECEIPT":
            fut = self._receipts.pop(frame.headers.get("receipt-id", ""), None)
            if fut is not None and not fut.done():
                fut.set_result(frame)
        elif frame.command == "ERROR":
            reason = frame.headers.get("message") or frame.body.strip() or "Broker error"
            receipt_id = frame.headers.get("receipt-id")
            if receipt_id is not None:
                fut = self._receipts.pop(receipt_id, None)
                if fut is not None and not fut.done():
                    fut.set_exception(ChatSubscriptionError(reason))
            logger.error("Broker ERROR frame: %s", reason)
            # The broker closes the connection after an ERROR frame
            self._lose(ChatConnectionError(reason))
        else:
            logger.debug("Ignoring %s frame", frame.command)

    # -- Internal: heart-beats ------------------------------------------------

    async def _heartbeat_loop(self, send_every: float, expect_every: float) -> None:
        interval = min(v for v in (send_every, expect_every) if v)
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                return
            if self._closed:
                return

            now = time.monotonic()
            if expect_every:
                idle = now - self._last_received
                if idle > expect_every * HEARTBEAT_GRACE_FACTOR:
                    logger.warning("No broker heart-beat for %.0fs", idle)
                    self._lose(ChatConnectionError("Broker heart-beat timeout"))
                    return

            if send_every and now - self._last_sent >= send_every:
                if not await self._send_raw(STOMP_EOL):
                    logger.debug("Heart-beat send failed")


class StompTransport:
    """Connect / subscribe / publish / disconnect over STOMP-on-WebSocket.

    Args:
        heartbeat: ``(outgoing, incoming)`` heart-beat wish in ms.
        extra_headers: Additional HTTP headers for the upgrade request.
        connect_headers: Additional headers for the STOMP ``CONNECT`` frame.
    """

    def __init__(
        self,
        *,
        heartbeat: tuple[int, int] = (HEARTBEAT_OUTGOING, HEARTBEAT_INCOMING),
        extra_headers: dict[str, str] | None = None,
        connect_headers: dict[str, str] | None = None,
    ) -> None:
        self._heartbeat = heartbeat
        self._extra_headers = extra_headers or {}
        self._connect_headers = connect_headers or {}
        self._codec = StompCodec()

    @property
    def codec(self) -> StompCodec:
        return self._codec

    # -- Connect --------------------------------------------------------------

    async def connect(
        self,
        endpoint: str,
        *,
        timeout: float = CONNECTION_TIMEOUT,
        host: str | None = None,
        on_lost: LostHandler | None = None,
    ) -> StompConnection:
        """Open the socket and complete the broker handshake.

        Raises:
            ChatConnectionError: If the upgrade or the handshake fails.
            ChatTimeoutError: If both did not finish within *timeout*.
        """
        try:
            ws, connected, leftover = await asyncio.wait_for(
                self._open(endpoint, host or _host_of(endpoint)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ChatTimeoutError(f"Connection timed out after {timeout}s") from None

        conn = StompConnection(
            ws,
            self._codec,
            endpoint=endpoint,
            connected=connected,
            on_lost=on_lost,
        )
        conn.start(self._heartbeat)
        for frame in leftover:
            conn._handle_frame(frame)
        logger.info(
            "Connected to %s (STOMP %s, session=%s)",
            endpoint,
            conn.version,
            conn.session,
        )
        return conn

    async def _open(
        self, endpoint: str, host: str
    ) -> tuple[websockets.asyncio.client.ClientConnection, StompFrame, list[StompFrame]]:
        try:
            ws = await websockets.asyncio.client.connect(
                endpoint,
                additional_headers=self._extra_headers,
                subprotocols=list(STOMP_SUBPROTOCOLS),
                max_size=MAX_MESSAGE_SIZE,
                open_timeout=None,  # asyncio.wait_for handles timeout
            )
        except Exception as exc:
            raise ChatConnectionError(f"Failed to connect: {exc}") from exc

        try:
            frame = self._codec.connect_frame(host, self._heartbeat, self._connect_headers)
            await ws.send(self._codec.encode(frame))
            frames: list[StompFrame] = []
            while not frames:
                frames = self._codec.decode(await ws.recv())
        except ConnectionClosed as exc:
            await _close_quietly(ws)
            raise ChatConnectionError(f"Connection closed during handshake: {exc}") from exc
        except ChatProtocolError as exc:
            await _close_quietly(ws)
            raise ChatConnectionError(f"Bad handshake reply: {exc.reason}") from exc
        except BaseException:
            await _close_quietly(ws)
            raise

        reply, leftover = frames[0], frames[1:]
        if reply.command == "ERROR":
            await _close_quietly(ws)
            reason = reply.headers.get("message") or reply.body.strip() or "Broker refused connection"
            raise ChatConnectionError(reason)
        if reply.command != "CONNECTED":
            await _close_quietly(ws)
            raise ChatConnectionError(f"Unexpected {reply.command} frame during handshake")
        return ws, reply, leftover

    # -- Subscribe ------------------------------------------------------------

    async def subscribe(
        self,
        handle: StompConnection,
        topic: RoomTopic | str,
        on_message: FrameHandler,
        *,
        receipt: bool = False,
        timeout: float = SUBSCRIBE_TIMEOUT,
    ) -> Subscription:
        """Register *on_message* for *topic* and send ``SUBSCRIBE``.

        The handler is installed before the frame is written, so nothing
        the broker routes after accepting the subscription is missed.

        Raises:
            ChatSubscriptionError: Not connected, already subscribed to the
                topic on this connection, or the broker rejected it.
            ChatTimeoutError: *receipt* was requested and did not arrive.
        """
        destination = topic.destination if isinstance(topic, RoomTopic) else str(topic)
        if not handle.is_open:
            raise ChatSubscriptionError(f"Cannot subscribe to {destination}: not connected")
        if handle.has_subscription(destination):
            raise ChatSubscriptionError(f"Already subscribed to {destination}")

        sub = handle.register(destination, on_message)
        receipt_id: str | None = None
        fut: asyncio.Future[StompFrame] | None = None
        if receipt:
            receipt_id, fut = handle.expect_receipt()

        ok = await handle.send_frame(
            self._codec.subscribe_frame(sub.id, destination, receipt_id)
        )
        if not ok:
            handle.unregister(sub)
            raise ChatSubscriptionError(f"Failed to send SUBSCRIBE for {destination}")

        if fut is not None:
            try:
                await asyncio.wait_for(fut, timeout=timeout)
            except asyncio.TimeoutError:
                handle.unregister(sub)
                raise ChatTimeoutError(
                    f"No subscription receipt for {destination} after {timeout}s"
                ) from None
            except ChatError as exc:
                handle.unregister(sub)
                raise ChatSubscriptionError(
                    f"Subscription to {destination} failed: {exc.reason}"
                ) from exc

        sub.armed = True
        logger.info("Subscribed to %s (id=%s)", destination, sub.id)
        return sub

    # -- Publish --------------------------------------------------------------

    def publish(
        self,
        handle: StompConnection,
        destination: str,
        payload: str | dict[str, Any],
    ) -> None:
        """Fire-and-forget ``SEND``.

        Raises:
            NotReadyError: If the connection is not open. Delivery failures
                after this point are not reported.
        """
        if not handle.is_open:
            raise NotReadyError(f"Cannot publish to {destination}: not connected")
        body = payload if isinstance(payload, str) else json_dumps(payload)
        handle.send_frame_nowait(
            self._codec.send_frame(destination, body, STOMP_CONTENT_TYPE)
        )

    # -- Disconnect -----------------------------------------------------------

    async def disconnect(self, handle: StompConnection | None) -> None:
        """Close the connection. No-op on an already closed handle."""
        if handle is None:
            return
        await handle.close()


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
    except Exception:
        pass


def _host_of(endpoint: str) -> str:
    return urlsplit(endpoint).hostname or "localhost"
