# =============================================================================
# roomchat -- STOMP Wire Codec
# =============================================================================
#
# Frame layout (STOMP 1.2):
#
#   COMMAND EOL
#   *( header EOL )
#   EOL
#   *OCTET
#   NULL
#   *( EOL )
#
# A WebSocket message may carry several frames or a bare EOL heart-beat.
# Header values are escaped (\\ \n \r \c) except in CONNECT / CONNECTED.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

from ._logging import logger
from .constants import MAX_MESSAGE_SIZE, STOMP_ACCEPT_VERSION, STOMP_EOL, STOMP_NULL
from .errors import ChatProtocolError
from .types import StompFrame

_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED", "STOMP"})

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "c": ":"}

try:
    import orjson

    def json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


class StompCodec:
    """Encode and decode STOMP text frames."""

    def encode(self, frame: StompFrame) -> str:
        escape = frame.command not in _UNESCAPED_COMMANDS
        lines = [frame.command]
        for key, value in frame.headers.items():
            if escape:
                key, value = _escape(key), _escape(str(value))
            lines.append(f"{key}:{value}")
        return STOMP_EOL.join(lines) + STOMP_EOL + STOMP_EOL + frame.body + STOMP_NULL

    def decode(self, data: str | bytes) -> list[StompFrame]:
        """Decode every frame in a WebSocket message.

        Heart-beats (bare EOLs) yield no frames.

        Raises:
            ChatProtocolError: On a frame without a header terminator or
                with a malformed header line.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        if len(data) > MAX_MESSAGE_SIZE:
            raise ChatProtocolError(f"Frame exceeds max size ({len(data)} bytes)")

        frames: list[StompFrame] = []
        pos = 0
        while pos < len(data):
            # Skip heart-beats and inter-frame EOLs
            while pos < len(data) and data[pos] in b"\r\n":
                pos += 1
            if pos >= len(data):
                break
            frame, pos = self._decode_one(data, pos)
            frames.append(frame)
        return frames

    def _decode_one(self, data: bytes, pos: int) -> tuple[StompFrame, int]:
        head_end = data.find(b"\n\n", pos)
        sep_len = 2
        crlf_end = data.find(b"\r\n\r\n", pos)
        if crlf_end != -1 and (head_end == -1 or crlf_end < head_end):
            head_end, sep_len = crlf_end, 4
        if head_end == -1:
            raise ChatProtocolError("Incomplete frame: missing header terminator")

        try:
            head = data[pos:head_end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ChatProtocolError(f"Frame headers are not UTF-8: {exc}") from exc
        head_lines = head.replace("\r\n", "\n").split("\n")
        command = head_lines[0].strip()
        if not command:
            raise ChatProtocolError("Frame without command")
        unescape = command not in _UNESCAPED_COMMANDS

        headers: dict[str, str] = {}
        for line in head_lines[1:]:
            key, sep, value = line.partition(":")
            if not sep:
                raise ChatProtocolError(f"Malformed header line: {line!r}")
            if unescape:
                key, value = _unescape(key), _unescape(value)
            # Repeated header: first occurrence wins
            headers.setdefault(key, value)

        body_start = head_end + sep_len
        length = headers.get("content-length")
        if length is not None:
            try:
                body_end = body_start + int(length)
            except ValueError as exc:
                raise ChatProtocolError(f"Bad content-length: {length!r}") from exc
            if body_end >= len(data) or data[body_end] != 0:
                raise ChatProtocolError("Frame body does not match content-length")
        else:
            body_end = data.find(b"\x00", body_start)
            if body_end == -1:
                raise ChatProtocolError("Incomplete frame: missing NULL terminator")

        try:
            body = data[body_start:body_end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ChatProtocolError(f"Frame body is not UTF-8: {exc}") from exc
        frame = StompFrame(command=command, headers=headers, body=body)
        return frame, body_end + 1

    # -- Frame builders --------------------------------------------------------

    def connect_frame(
        self,
        host: str,
        heartbeat: tuple[int, int],
        extra_headers: dict[str, str] | None = None,
    ) -> StompFrame:
        headers = {
            "accept-version": STOMP_ACCEPT_VERSION,
            "host": host,
            "heart-beat": f"{heartbeat[0]},{heartbeat[1]}",
        }
        if extra_headers:
            headers.update(extra_headers)
        return StompFrame("CONNECT", headers)

    def subscribe_frame(
        self, sub_id: str, destination: str, receipt: str | None = None
    ) -> StompFrame:
        headers = {"id": sub_id, "destination": destination, "ack": "auto"}
        if receipt is not None:
            headers["receipt"] = receipt
        return StompFrame("SUBSCRIBE", headers)

    def send_frame(self, destination: str, body: str, content_type: str) -> StompFrame:
        return StompFrame(
            "SEND",
            {
                "destination": destination,
                "content-type": content_type,
                "content-length": str(len(body.encode("utf-8"))),
            },
            body,
        )

    def disconnect_frame(self, receipt: str | None = None) -> StompFrame:
        return StompFrame("DISCONNECT", {"receipt": receipt} if receipt else {})


def parse_heartbeat(value: str | None) -> tuple[int, int]:
    """Parse a ``heart-beat`` header into ``(cx, cy)`` milliseconds."""
    if not value:
        return 0, 0
    try:
        sx, sy = value.split(",", 1)
        return max(0, int(sx)), max(0, int(sy))
    except ValueError:
        logger.debug("Ignoring malformed heart-beat header: %r", value)
        return 0, 0


def negotiate_heartbeat(
    client: tuple[int, int], server: tuple[int, int]
) -> tuple[float, float]:
    """Return ``(send_every, expect_every)`` in seconds, ``0`` when disabled.

    STOMP rule: each side uses the larger of what one end can send and
    the other end wants, or nothing when either says 0.
    """
    cx, cy = client
    sx, sy = server
    send_every = max(cx, sy) / 1000.0 if cx and sy else 0.0
    expect_every = max(cy, sx) / 1000.0 if cy and sx else 0.0
    return send_every, expect_every


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    out: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\":
            if i + 1 >= len(value) or value[i + 1] not in _UNESCAPES:
                raise ChatProtocolError(f"Invalid header escape in {value!r}")
            out.append(_UNESCAPES[value[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)
