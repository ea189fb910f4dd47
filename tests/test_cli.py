"""Tests for the terminal client helpers."""

import asyncio
import io
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from roomchat.cli import TerminalView, build_parser, chat, format_message, time_ago
from roomchat.errors import ChatConnectionError, EmptyMessageError, HistoryUnavailableError
from roomchat.types import ErrorKind, Message, SessionState

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def _msg(sender="bob", content="hi", age=timedelta(0)) -> Message:
    return Message(sender=sender, content=content, room_id="r1", timestamp=NOW - age)


class TestTimeAgo:
    @pytest.mark.parametrize(
        "age, expected",
        [
            (timedelta(seconds=5), "just now"),
            (timedelta(minutes=1), "1 minute ago"),
            (timedelta(minutes=5), "5 minutes ago"),
            (timedelta(hours=2), "2 hours ago"),
            (timedelta(days=1, hours=3), "1 day ago"),
        ],
    )
    def test_buckets(self, age, expected):
        assert time_ago(NOW - age, NOW) == expected

    def test_future_timestamp(self):
        assert time_ago(NOW + timedelta(seconds=30), NOW) == "just now"


class TestFormatMessage:
    def test_other_sender(self):
        assert format_message(_msg(), "alice", NOW) == "[just now] bob: hi"

    def test_own_message_marked(self):
        assert format_message(_msg(sender="alice"), "alice", NOW) == "[just now] alice (you): hi"


class TestTerminalView:
    def test_prints_only_new_messages(self):
        out = io.StringIO()
        view = TerminalView("alice", out)
        view.on_sequence_changed((_msg(content="1"),))
        view.on_sequence_changed((_msg(content="1"), _msg(content="2")))
        lines = out.getvalue().splitlines()
        assert len(lines) == 2
        assert lines[1].endswith("bob: 2")

    def test_reset_on_shorter_sequence(self):
        out = io.StringIO()
        view = TerminalView("alice", out)
        view.on_sequence_changed((_msg(content="1"), _msg(content="2")))
        view.on_sequence_changed(())
        view.on_sequence_changed((_msg(content="3"),))
        assert out.getvalue().splitlines()[-1].endswith("bob: 3")

    def test_states(self):
        out = io.StringIO()
        view = TerminalView("alice", out)
        view.on_state_changed(SessionState.ACTIVE)
        assert "Connected to chat" in out.getvalue()
        assert not view.stopped.is_set()
        view.on_state_changed(SessionState.FAILED)
        assert view.stopped.is_set()

    def test_errors(self):
        out = io.StringIO()
        view = TerminalView("alice", out)
        view.on_error(ErrorKind.HISTORY_UNAVAILABLE, HistoryUnavailableError("down"))
        view.on_error(ErrorKind.CONNECTION, ChatConnectionError("lost"))
        assert out.getvalue().splitlines() == ["Failed to load messages", "Error: lost"]


class TestChatLoop:
    @pytest.mark.asyncio
    async def test_sends_lines_until_leave(self):
        session = MagicMock()
        session.is_active = True
        session.send = MagicMock(side_effect=[None, EmptyMessageError("empty"), None])
        view = TerminalView("alice", io.StringIO())
        lines = asyncio.Queue()
        for line in ("hello\n", "   \n", "bye\n", "/leave\n", "ignored\n"):
            lines.put_nowait(line)
        await chat(session, view, lines)
        assert [c.args[0] for c in session.send.call_args_list] == ["hello", "   ", "bye"]

    @pytest.mark.asyncio
    async def test_eof_stops(self):
        session = MagicMock()
        session.is_active = True
        lines = asyncio.Queue()
        lines.put_nowait(None)
        await chat(session, TerminalView("alice", io.StringIO()), lines)
        session.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_stops(self):
        session = MagicMock()
        session.is_active = True
        view = TerminalView("alice", io.StringIO())
        view.stopped.set()
        await chat(session, view, asyncio.Queue())
        session.send.assert_not_called()


class TestParser:
    def test_args(self):
        args = build_parser().parse_args(["--room", "r1", "--name", "alice", "--create"])
        assert args.room == "r1"
        assert args.name == "alice"
        assert args.create is True
        assert args.retries == 3
        assert args.url is None

    def test_room_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--name", "alice"])
