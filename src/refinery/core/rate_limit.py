from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class RateLimiter:
    """Sliding-window limiter keyed by route (``start``, ``callback``)."""

    max_calls: int
    window_seconds: int
    _store: Dict[str, list[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow(self, key: str) -> bool:
        if self.max_calls <= 0:
            return True
        now = time.monotonic()
        window_start = now - self.window_seconds
        with self._lock:
            calls = [t for t in self._store.get(key, []) if t >= window_start]
            if len(calls) >= self.max_calls:
                self._store[key] = calls
                return False
            calls.append(now)
            self._store[key] = calls
            return True
