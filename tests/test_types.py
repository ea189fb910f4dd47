"""Tests for message and topic types."""

from datetime import UTC, datetime, timedelta

import pytest

from roomchat.types import Message, RoomTopic, SessionState, parse_timestamp

T1 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def _msg(sender="alice", content="hi", room_id="r1", ts=T1) -> Message:
    return Message(sender=sender, content=content, room_id=room_id, timestamp=ts)


class TestParseTimestamp:
    def test_epoch_millis(self):
        ms = int(T1.timestamp() * 1000)
        assert parse_timestamp(ms) == T1

    def test_iso_with_z(self):
        assert parse_timestamp("2024-05-01T12:00:00Z") == T1

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2024-05-01T12:00:00") == T1

    def test_offset_iso_normalized(self):
        assert parse_timestamp("2024-05-01T14:00:00+02:00") == T1

    def test_array_form(self):
        parsed = parse_timestamp([2024, 5, 1, 12, 0, 0, 500_000_000])
        assert parsed == T1 + timedelta(milliseconds=500)

    def test_array_without_nanos(self):
        assert parse_timestamp([2024, 5, 1, 12, 0]) == T1

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"x": 1}, [2024]])
    def test_unparseable_returns_none(self, value):
        assert parse_timestamp(value) is None


class TestMessagePayload:
    def test_from_payload(self):
        msg = Message.from_payload(
            {"sender": "bob", "content": "yo", "roomId": "r2", "timeStamp": "2024-05-01T12:00:00Z"}
        )
        assert msg == _msg(sender="bob", content="yo", room_id="r2")

    def test_room_id_fallback(self):
        msg = Message.from_payload(
            {"sender": "bob", "content": "yo", "timeStamp": 0}, room_id="r9"
        )
        assert msg.room_id == "r9"

    def test_missing_timestamp_uses_received_at(self):
        msg = Message.from_payload({"sender": "a", "content": "b"}, received_at=T1)
        assert msg.timestamp == T1

    def test_missing_sender_rejected(self):
        with pytest.raises(ValueError):
            Message.from_payload({"content": "hi"})

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            Message.from_payload(["not", "a", "dict"])

    def test_to_payload(self):
        payload = _msg().to_payload()
        assert payload == {
            "sender": "alice",
            "content": "hi",
            "roomId": "r1",
            "timeStamp": int(T1.timestamp() * 1000),
        }

    def test_message_is_immutable(self):
        msg = _msg()
        with pytest.raises(AttributeError):
            msg.content = "changed"


class TestDuplicateRule:
    def test_same_within_tolerance(self):
        assert _msg().is_duplicate_of(_msg(ts=T1 + timedelta(milliseconds=5)), 1.0)

    def test_outside_tolerance(self):
        assert not _msg().is_duplicate_of(_msg(ts=T1 + timedelta(seconds=2)), 1.0)

    def test_tolerance_is_exclusive(self):
        assert not _msg().is_duplicate_of(_msg(ts=T1 + timedelta(seconds=1)), 1.0)

    def test_different_sender(self):
        assert not _msg().is_duplicate_of(_msg(sender="bob"), 1.0)

    def test_different_content(self):
        assert not _msg().is_duplicate_of(_msg(content="hello"), 1.0)

    def test_different_room(self):
        assert not _msg().is_duplicate_of(_msg(room_id="r2"), 1.0)


class TestRoomTopic:
    def test_destinations(self):
        topic = RoomTopic("r1")
        assert topic.destination == "/topic/room/r1"
        assert topic.publish_destination == "/app/sendMessage/r1"
        assert str(topic) == "/topic/room/r1"


class TestSessionState:
    def test_values(self):
        assert SessionState.LEAVING_CLEANUP.value == "leaving-cleanup"
        assert SessionState("active") is SessionState.ACTIVE
