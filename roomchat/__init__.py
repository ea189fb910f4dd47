"""roomchat -- real-time chat room sessions over STOMP.

Async usage::

    from roomchat import ChatSession, SessionConfig, SessionObserver

    class Printer(SessionObserver):
        def on_sequence_changed(self, messages):
            print(messages[-1] if messages else "(empty)")

    async with ChatSession(SessionConfig(base_url="http://localhost:8080")) as session:
        session.add_observer(Printer())
        await session.connect("r1", "alice")
        session.send("hi")

Terminal client::

    roomchat --url http://localhost:8080 --room r1 --name alice

Optional extras::

    pip install roomchat[fast]   # orjson for message bodies
"""

from ._version import __version__
from .config import SessionConfig
from .dispatcher import OutboundDispatcher
from .errors import (
    ChatConnectionError,
    ChatError,
    ChatProtocolError,
    ChatPublishError,
    ChatSessionError,
    ChatSubscriptionError,
    ChatTimeoutError,
    EmptyMessageError,
    HistoryUnavailableError,
    NotReadyError,
    RoomApiError,
    RoomExistsError,
    RoomNotFoundError,
)
from .history import HistoryLoader
from .protocol import StompCodec
from .reconciler import SessionReconciler
from .retry import calculate_delay, connect_with_retry
from .rooms import RoomApiClient
from .session import ChatSession, SessionObserver
from .transport import StompConnection, StompTransport, Subscription
from .types import (
    ErrorKind,
    Message,
    RetryMode,
    RetryPolicy,
    RoomTopic,
    SessionState,
    StompFrame,
)

__all__ = [
    "ChatConnectionError",
    "ChatError",
    "ChatProtocolError",
    "ChatPublishError",
    "ChatSession",
    "ChatSessionError",
    "ChatSubscriptionError",
    "ChatTimeoutError",
    "EmptyMessageError",
    "ErrorKind",
    "HistoryLoader",
    "HistoryUnavailableError",
    "Message",
    "NotReadyError",
    "OutboundDispatcher",
    "RetryMode",
    "RetryPolicy",
    "RoomApiClient",
    "RoomApiError",
    "RoomExistsError",
    "RoomNotFoundError",
    "RoomTopic",
    "SessionConfig",
    "SessionObserver",
    "SessionReconciler",
    "SessionState",
    "StompCodec",
    "StompConnection",
    "StompFrame",
    "StompTransport",
    "Subscription",
    "__version__",
    "calculate_delay",
    "connect_with_retry",
]
