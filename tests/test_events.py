"""Tests for the per-session event ring (events.py)."""
from __future__ import annotations

from refinery.core.events import MAX_EVENTS, Event, EventLog


class TestEventLog:
    def test_append_returns_event(self):
        log = EventLog()
        event = log.append("info", "Starting orchestration")
        assert event.seq == 0
        assert event.level == "info"
        assert event.message == "Starting orchestration"
        assert event.time

    def test_caps_at_most_recent_hundred(self):
        log = EventLog()
        for i in range(150):
            log.append("info", f"event {i}")
        events = log.all()
        assert len(events) == MAX_EVENTS == 100
        assert [e.message for e in events] == [f"event {i}" for i in range(50, 150)]
        assert log.total == 150

    def test_since_survives_eviction(self):
        log = EventLog(capacity=5)
        for i in range(8):
            log.append("info", f"e{i}")
        assert [e.message for e in log.since(6)] == ["e6", "e7"]
        # Evicted entries are simply gone
        assert [e.seq for e in log.since(0)] == [3, 4, 5, 6, 7]

    def test_unknown_level_becomes_info(self):
        log = EventLog()
        assert log.append("shout", "hello").level == "info"

    def test_data_is_optional_in_dict(self):
        log = EventLog()
        plain = log.append("info", "no data").to_dict()
        assert "data" not in plain
        with_data = log.append("info", "winner", {"score": 0.9}).to_dict()
        assert with_data["data"] == {"score": 0.9}

    def test_list_roundtrip_keeps_sequence(self):
        log = EventLog()
        for i in range(3):
            log.append("info", f"e{i}")
        restored = EventLog.from_list(log.to_list())
        assert len(restored) == 3
        assert restored.append("info", "next").seq == 3


def test_event_from_dict_defaults():
    event = Event.from_dict({"message": "hi"})
    assert event.level == "info"
    assert event.seq == 0
    assert event.data is None
