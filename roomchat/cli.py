"""Terminal client for roomchat.

Joins (or creates) a room, prints the room's history and live messages,
and sends every line typed on stdin. ``/leave`` or EOF leaves the room.

    roomchat --url http://localhost:8080 --room r1 --name alice
    roomchat --url http://localhost:8080 --room r1 --name bob --create
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
from datetime import UTC, datetime
from typing import TextIO

from ._version import __version__
from .config import SessionConfig
from .errors import (
    ChatError,
    EmptyMessageError,
    NotReadyError,
    RoomApiError,
    RoomExistsError,
    RoomNotFoundError,
)
from .history import HistoryLoader
from .retry import connect_with_retry
from .rooms import RoomApiClient
from .session import ChatSession, SessionObserver
from .types import ErrorKind, Message, RetryPolicy, SessionState

LEAVE_COMMAND = "/leave"


def time_ago(timestamp: datetime, now: datetime | None = None) -> str:
    """Human-readable age of *timestamp*, e.g. ``"5 minutes ago"``."""
    now = now or datetime.now(UTC)
    seconds = int((now - timestamp).total_seconds())
    if seconds < 60:
        return "just now"
    for unit, size in (("day", 86_400), ("hour", 3_600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


def format_message(message: Message, me: str, now: datetime | None = None) -> str:
    who = f"{message.sender} (you)" if message.sender == me else message.sender
    return f"[{time_ago(message.timestamp, now)}] {who}: {message.content}"


class TerminalView(SessionObserver):
    """Prints new messages, connection changes and errors."""

    def __init__(self, me: str, out: TextIO | None = None) -> None:
        self._me = me
        self._out = out or sys.stdout
        self._shown = 0
        self.stopped = asyncio.Event()

    def on_sequence_changed(self, messages: tuple[Message, ...]) -> None:
        # Sequence restarted (left or new session)
        if len(messages) < self._shown:
            self._shown = 0
        for message in messages[self._shown :]:
            print(format_message(message, self._me), file=self._out)
        self._shown = len(messages)

    def on_state_changed(self, state: SessionState) -> None:
        if state is SessionState.ACTIVE:
            print("Connected to chat", file=self._out)
        elif state is SessionState.FAILED:
            self.stopped.set()

    def on_error(self, kind: ErrorKind, detail: ChatError) -> None:
        if kind is ErrorKind.HISTORY_UNAVAILABLE:
            print("Failed to load messages", file=self._out)
        else:
            print(f"Error: {detail.reason}", file=self._out)


async def enter_room(api: RoomApiClient, room_id: str, create: bool) -> str:
    if create:
        room = await api.create_room(room_id)
        print("Room created!")
    else:
        room = await api.join_room(room_id)
        print("Joined the room!")
    return room


async def chat(session: ChatSession, view: TerminalView, lines: asyncio.Queue[str | None]) -> None:
    """Forward stdin lines to the room until leave, EOF or failure."""
    stop = asyncio.ensure_future(view.stopped.wait())
    try:
        while session.is_active:
            get = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait({get, stop}, return_when=asyncio.FIRST_COMPLETED)
            if get not in done:
                get.cancel()
                return
            line = get.result()
            if line is None or line.strip() == LEAVE_COMMAND:
                return
            try:
                session.send(line.rstrip("\r\n"))
            except EmptyMessageError:
                continue
            except NotReadyError:
                print("Not connected")
                return
    finally:
        stop.cancel()


def _pump_stdin(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue[str | None]) -> None:
    def pump() -> None:
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            # Event loop already closed
            return

    threading.Thread(target=pump, name="roomchat-stdin", daemon=True).start()


async def run(args: argparse.Namespace) -> int:
    room_id = (args.room or "").strip()
    name = (args.name or "").strip()
    if not room_id or not name:
        print("All fields are required!", file=sys.stderr)
        return 2

    overrides = {"base_url": args.url} if args.url else {}
    config = SessionConfig.from_env(**overrides)

    loop = asyncio.get_running_loop()
    view = TerminalView(name)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, view.stopped.set)

    async with RoomApiClient(
        config.base_url, api_prefix=config.api_prefix, timeout=config.history_timeout
    ) as api:
        try:
            room_id = await enter_room(api, room_id, args.create)
        except RoomExistsError:
            print("Room already exists!", file=sys.stderr)
            return 1
        except RoomNotFoundError as exc:
            print(exc.reason, file=sys.stderr)
            return 1
        except RoomApiError:
            print("Error creating room" if args.create else "Error joining room", file=sys.stderr)
            return 1

        history = HistoryLoader(
            api, page_size=config.history_page_size, timeout=config.history_timeout
        )
        async with ChatSession(config, history=history) as session:
            session.add_observer(view)
            try:
                await connect_with_retry(
                    session, room_id, name, RetryPolicy(max_attempts=args.retries)
                )
            except ChatError as exc:
                print(f"Could not connect: {exc.reason}", file=sys.stderr)
                return 1

            print(f"Room: {room_id}  User: {name}  ({LEAVE_COMMAND} to leave)")
            lines: asyncio.Queue[str | None] = asyncio.Queue()
            _pump_stdin(loop, lines)
            await chat(session, view, lines)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="roomchat", description="Chat room terminal client")
    parser.add_argument("--url", help="Chat server base URL (default: $ROOMCHAT_BASE_URL or http://localhost:8080)")
    parser.add_argument("--room", required=True, help="Room id to join or create")
    parser.add_argument("--name", required=True, help="Your display name")
    parser.add_argument("--create", action="store_true", help="Create the room instead of joining")
    parser.add_argument("--retries", type=int, default=3, help="Connect attempts (default: 3, -1 = forever)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
