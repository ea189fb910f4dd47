"""Tests for StompTransport (mocked WebSocket)."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
import websockets.asyncio.client

from roomchat.errors import (
    ChatConnectionError,
    ChatSubscriptionError,
    ChatTimeoutError,
    NotReadyError,
)
from roomchat.protocol import StompCodec
from roomchat.transport import StompTransport
from roomchat.types import RoomTopic, StompFrame

ENDPOINT = "ws://localhost:8080/chat/websocket"
codec = StompCodec()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, *replies: StompFrame, auto_receipt: bool = True):
        self.sent: list[str] = []
        self.closed = False
        self.auto_receipt = auto_receipt
        self.incoming: asyncio.Queue = asyncio.Queue()
        for frame in replies:
            self.push(frame)

    def push(self, frame: StompFrame | None) -> None:
        self.incoming.put_nowait(None if frame is None else codec.encode(frame))

    def sent_frames(self) -> list[StompFrame]:
        return [f for data in self.sent for f in codec.decode(data)]

    async def send(self, data: str) -> None:
        self.sent.append(data)
        for frame in codec.decode(data):
            if self.auto_receipt and "receipt" in frame.headers and frame.command == "SUBSCRIBE":
                self.push(StompFrame("RECEIPT", {"receipt-id": frame.headers["receipt"]}))

    async def recv(self) -> str:
        return await self.incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True


def _connected(**headers) -> StompFrame:
    return StompFrame("CONNECTED", {"version": "1.2", "heart-beat": "0,0", **headers})


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def transport():
    return StompTransport(heartbeat=(0, 0))


@pytest.fixture
def patch_ws(monkeypatch):
    """Route ``websockets.asyncio.client.connect`` to a FakeWebSocket."""
    calls = []

    def install(ws):
        async def fake_connect(endpoint, **kwargs):
            calls.append((endpoint, kwargs))
            return ws

        monkeypatch.setattr(websockets.asyncio.client, "connect", fake_connect)
        return calls

    return install


class TestConnect:
    @pytest.mark.asyncio
    async def test_handshake(self, transport, patch_ws):
        ws = FakeWebSocket(_connected(session="abc", server="Broker/1"))
        calls = patch_ws(ws)
        conn = await transport.connect(ENDPOINT, host="localhost")
        try:
            assert conn.is_open
            assert conn.version == "1.2"
            assert conn.session == "abc"
            endpoint, kwargs = calls[0]
            assert endpoint == ENDPOINT
            assert "v12.stomp" in kwargs["subprotocols"]
            frame = ws.sent_frames()[0]
            assert frame.command == "CONNECT"
            assert frame.headers["accept-version"] == "1.2,1.1,1.0"
            assert frame.headers["host"] == "localhost"
        finally:
            await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_error_reply_refused(self, transport, patch_ws):
        ws = FakeWebSocket(StompFrame("ERROR", {"message": "Bad credentials"}))
        patch_ws(ws)
        with pytest.raises(ChatConnectionError, match="Bad credentials"):
            await transport.connect(ENDPOINT)
        assert ws.closed

    @pytest.mark.asyncio
    async def test_unexpected_reply(self, transport, patch_ws):
        ws = FakeWebSocket(StompFrame("RECEIPT", {"receipt-id": "x"}))
        patch_ws(ws)
        with pytest.raises(ChatConnectionError):
            await transport.connect(ENDPOINT)

    @pytest.mark.asyncio
    async def test_upgrade_failure(self, transport, monkeypatch):
        async def refuse(endpoint, **kwargs):
            raise OSError("Connection refused")

        monkeypatch.setattr(websockets.asyncio.client, "connect", refuse)
        with pytest.raises(ChatConnectionError, match="Connection refused"):
            await transport.connect(ENDPOINT)

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, transport, patch_ws):
        ws = FakeWebSocket()  # never answers CONNECT
        patch_ws(ws)
        with pytest.raises(ChatTimeoutError):
            await transport.connect(ENDPOINT, timeout=0.05)
        assert ws.closed


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_and_deliver(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        received = []
        sub = await transport.subscribe(conn, RoomTopic("r1"), received.append)
        assert sub.armed
        assert conn.has_subscription("/topic/room/r1")
        frame = ws.sent_frames()[-1]
        assert frame.command == "SUBSCRIBE"
        assert frame.headers["destination"] == "/topic/room/r1"
        assert frame.headers["id"] == sub.id

        ws.push(StompFrame("MESSAGE", {"subscription": sub.id, "destination": "/topic/room/r1"}, "x"))
        ws.push(StompFrame("MESSAGE", {"subscription": "other"}, "ignored"))
        await _settle()
        assert [f.body for f in received] == ["x"]
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_duplicate_subscription_rejected(self, transport, patch_ws):
        patch_ws(FakeWebSocket(_connected()))
        conn = await transport.connect(ENDPOINT)
        await transport.subscribe(conn, RoomTopic("r1"), MagicMock())
        with pytest.raises(ChatSubscriptionError):
            await transport.subscribe(conn, "/topic/room/r1", MagicMock())
        assert len(conn.subscriptions) == 1
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_receipt_awaited(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        sub = await transport.subscribe(conn, RoomTopic("r1"), MagicMock(), receipt=True, timeout=1.0)
        assert sub.armed
        assert "receipt" in ws.sent_frames()[-1].headers
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, transport, patch_ws):
        patch_ws(FakeWebSocket(_connected(), auto_receipt=False))
        conn = await transport.connect(ENDPOINT)
        with pytest.raises(ChatTimeoutError):
            await transport.subscribe(conn, RoomTopic("r1"), MagicMock(), receipt=True, timeout=0.05)
        assert not conn.has_subscription("/topic/room/r1")
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_subscribe_on_closed_handle(self, transport, patch_ws):
        patch_ws(FakeWebSocket(_connected()))
        conn = await transport.connect(ENDPOINT)
        await transport.disconnect(conn)
        with pytest.raises(ChatSubscriptionError):
            await transport.subscribe(conn, RoomTopic("r1"), MagicMock())

    @pytest.mark.asyncio
    async def test_handler_error_does_not_break_loop(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        handler = MagicMock(side_effect=[RuntimeError("boom"), None])
        sub = await transport.subscribe(conn, RoomTopic("r1"), handler)
        ws.push(StompFrame("MESSAGE", {"subscription": sub.id}, "1"))
        ws.push(StompFrame("MESSAGE", {"subscription": sub.id}, "2"))
        await _settle()
        assert handler.call_count == 2
        assert conn.is_open
        await transport.disconnect(conn)


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_sends_json(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        transport.publish(conn, "/app/sendMessage/r1", {"sender": "a", "content": "hé"})
        await _settle()
        frame = ws.sent_frames()[-1]
        assert frame.command == "SEND"
        assert frame.headers["destination"] == "/app/sendMessage/r1"
        assert frame.headers["content-type"] == "application/json"
        assert json.loads(frame.body) == {"sender": "a", "content": "hé"}
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_publish_order_preserved(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        for i in range(5):
            transport.publish(conn, "/app/sendMessage/r1", {"n": i})
        await _settle()
        sends = [json.loads(f.body)["n"] for f in ws.sent_frames() if f.command == "SEND"]
        assert sends == [0, 1, 2, 3, 4]
        await transport.disconnect(conn)

    @pytest.mark.asyncio
    async def test_publish_not_ready_after_close(self, transport, patch_ws):
        patch_ws(FakeWebSocket(_connected()))
        conn = await transport.connect(ENDPOINT)
        await transport.disconnect(conn)
        with pytest.raises(NotReadyError):
            transport.publish(conn, "/app/sendMessage/r1", {"x": 1})


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_sends_frame_and_closes(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        await transport.disconnect(conn)
        assert ws.sent_frames()[-1].command == "DISCONNECT"
        assert ws.closed
        assert not conn.is_open

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        conn = await transport.connect(ENDPOINT)
        await transport.disconnect(conn)
        await transport.disconnect(conn)
        await transport.disconnect(None)
        assert [f.command for f in ws.sent_frames()].count("DISCONNECT") == 1

    @pytest.mark.asyncio
    async def test_explicit_disconnect_does_not_report_loss(self, transport, patch_ws):
        patch_ws(FakeWebSocket(_connected()))
        on_lost = MagicMock()
        conn = await transport.connect(ENDPOINT, on_lost=on_lost)
        await transport.disconnect(conn)
        await _settle()
        on_lost.assert_not_called()


class TestConnectionLoss:
    @pytest.mark.asyncio
    async def test_broker_close_reports_loss_once(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        on_lost = MagicMock()
        conn = await transport.connect(ENDPOINT, on_lost=on_lost)
        ws.push(None)
        await _settle()
        on_lost.assert_called_once()
        assert isinstance(on_lost.call_args[0][0], ChatConnectionError)
        assert not conn.is_open
        await transport.disconnect(conn)
        on_lost.assert_called_once()

    @pytest.mark.asyncio
    async def test_error_frame_reports_loss(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        on_lost = MagicMock()
        conn = await transport.connect(ENDPOINT, on_lost=on_lost)
        ws.push(StompFrame("ERROR", {"message": "Session closed"}))
        await _settle()
        on_lost.assert_called_once()
        assert on_lost.call_args[0][0].reason == "Session closed"
        assert not conn.is_open

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, transport, patch_ws):
        ws = FakeWebSocket(_connected())
        patch_ws(ws)
        on_lost = MagicMock()
        conn = await transport.connect(ENDPOINT, on_lost=on_lost)
        ws.incoming.put_nowait("MESSAGE\nno-terminator")
        await _settle()
        assert conn.is_open
        on_lost.assert_not_called()
        await transport.disconnect(conn)
