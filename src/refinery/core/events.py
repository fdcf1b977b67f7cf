"""Per-session event log: an append-only ring of the most recent events.

Every event carries a monotonically increasing ``seq`` so readers can ask
for "everything after N" even after old entries have been evicted.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import threading
from typing import Any, Deque, Iterable, List, Optional

MAX_EVENTS = 100
EVENT_LEVELS = {"debug", "info", "warning", "error"}


@dataclass(frozen=True)
class Event:
    seq: int
    time: str
    level: str
    message: str
    data: Optional[Any] = None

    def to_dict(self) -> dict:
        record: dict = {
            "seq": self.seq,
            "time": self.time,
            "level": self.level,
            "message": self.message,
        }
        if self.data is not None:
            record["data"] = self.data
        return record

    @classmethod
    def from_dict(cls, d: dict) -> "Event":
        return cls(
            seq=int(d.get("seq", 0)),
            time=d.get("time", ""),
            level=d.get("level", "info"),
            message=d.get("message", ""),
            data=d.get("data"),
        )


class EventLog:
    """Ring buffer of at most ``capacity`` events, oldest evicted first."""

    def __init__(self, capacity: int = MAX_EVENTS, events: Iterable[Event] = ()) -> None:
        self.capacity = capacity
        self._events: Deque[Event] = deque(events, maxlen=capacity)
        self._next_seq = self._events[-1].seq + 1 if self._events else 0
        self._lock = threading.Lock()

    def append(self, level: str, message: str, data: Any = None) -> Event:
        if level not in EVENT_LEVELS:
            level = "info"
        with self._lock:
            event = Event(
                seq=self._next_seq,
                time=datetime.now(timezone.utc).isoformat(),
                level=level,
                message=message,
                data=data,
            )
            self._next_seq += 1
            self._events.append(event)
            return event

    def since(self, seq: int) -> List[Event]:
        """Events with ``event.seq >= seq`` still held in the ring."""
        with self._lock:
            return [e for e in self._events if e.seq >= seq]

    def all(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    @property
    def total(self) -> int:
        """Number of events ever appended, including evicted ones."""
        with self._lock:
            return self._next_seq

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def to_list(self) -> List[dict]:
        return [e.to_dict() for e in self.all()]

    @classmethod
    def from_list(cls, items: Iterable[dict], capacity: int = MAX_EVENTS) -> "EventLog":
        return cls(capacity=capacity, events=(Event.from_dict(d) for d in items))
