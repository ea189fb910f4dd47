# =============================================================================
# roomchat -- Session Configuration
# =============================================================================

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from urllib.parse import urlsplit, urlunsplit

from .constants import (
    API_PREFIX,
    BROKER_PATH,
    CONNECTION_TIMEOUT,
    DEDUP_TOLERANCE,
    DEDUP_WINDOW,
    DEFAULT_BASE_URL,
    HEARTBEAT_INCOMING,
    HEARTBEAT_OUTGOING,
    HISTORY_PAGE_SIZE,
    HISTORY_TIMEOUT,
    SOCKJS_WEBSOCKET_SUFFIX,
    SUBSCRIBE_TIMEOUT,
)

ENV_PREFIX = "ROOMCHAT_"


@dataclass
class SessionConfig:
    """Configuration for a :class:`~roomchat.session.ChatSession`.

    Attributes:
        base_url: HTTP(S) root of the chat server, e.g. ``"http://localhost:8080"``.
        broker_path: Path of the broker endpoint under *base_url*.
        sockjs: The broker endpoint is SockJS-enabled; connect to its raw
            WebSocket transport (``<broker_path>/websocket``).
        api_prefix: Path of the room REST API under *base_url*.
        connect_timeout: Seconds allowed for the socket upgrade plus the
            broker handshake.
        subscribe_timeout: Seconds to wait for a subscription receipt.
        history_timeout: Seconds allowed for the history request.
        history_page_size: Number of messages requested on entry.
        dedup_tolerance: Max timestamp distance (seconds) between two
            otherwise identical messages that are considered the same one.
        dedup_window: Trailing entries checked for duplicates in
            pass-through mode.
        heartbeat_outgoing: Client heart-beat interval in ms, ``0`` disables.
        heartbeat_incoming: Desired server heart-beat interval in ms, ``0``
            disables.
        subscribe_receipts: Ask the broker for a ``RECEIPT`` on subscribe
            and wait for it before the session becomes active.
    """

    base_url: str = DEFAULT_BASE_URL
    broker_path: str = BROKER_PATH
    sockjs: bool = True
    api_prefix: str = API_PREFIX
    connect_timeout: float = CONNECTION_TIMEOUT
    subscribe_timeout: float = SUBSCRIBE_TIMEOUT
    history_timeout: float = HISTORY_TIMEOUT
    history_page_size: int = HISTORY_PAGE_SIZE
    dedup_tolerance: float = DEDUP_TOLERANCE
    dedup_window: int = DEDUP_WINDOW
    heartbeat_outgoing: int = HEARTBEAT_OUTGOING
    heartbeat_incoming: int = HEARTBEAT_INCOMING
    subscribe_receipts: bool = False

    @property
    def broker_url(self) -> str:
        """WebSocket URL of the broker endpoint."""
        parts = urlsplit(self.base_url.rstrip("/"))
        scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
        path = parts.path + self.broker_path
        if self.sockjs:
            path += SOCKJS_WEBSOCKET_SUFFIX
        return urlunsplit((scheme, parts.netloc, path, "", ""))

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/") + self.api_prefix

    @property
    def broker_host(self) -> str:
        return urlsplit(self.base_url).hostname or "localhost"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> SessionConfig:
        """Build a config from ``ROOMCHAT_*`` variables.

        ``ROOMCHAT_BASE_URL``, ``ROOMCHAT_CONNECT_TIMEOUT`` and so on, one
        variable per field. Keyword *overrides* win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(raw, str(f.type))
        values.update(overrides)
        return cls(**values)


def _coerce(raw: str, kind: str) -> object:
    # Field annotations are strings under postponed evaluation
    if kind == "bool":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    return raw
