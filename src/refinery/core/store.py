"""Key-value persistence for session state, configuration and caches.

``MemoryStore`` keeps everything in a dict.  ``JsonFileStore`` additionally
keeps one JSON file per key under a directory, so a ``put`` rewrites only
that key (atomic replace).  That is enough for a single-process service.

Expired entries are dropped when read and swept whenever keys are listed.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger("refinery.store")

_SUFFIX = ".json"


def _expired(record: Dict[str, Any], now: float) -> bool:
    expires_at = record.get("expires_at")
    return expires_at is not None and expires_at <= now


class MemoryStore:
    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            record = self._items.get(key)
            if record is None:
                return default
            if _expired(record, time.time()):
                del self._items[key]
                self._remove(key)
                return default
            return copy.deepcopy(record["value"])

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store *value* under *key*; *ttl* (seconds) makes the entry expire."""
        record = {
            "value": copy.deepcopy(value),
            "expires_at": time.time() + ttl if ttl else None,
        }
        with self._lock:
            self._items[key] = record
            self._write(key, record)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._items.pop(key, None) is not None
            if removed:
                self._remove(key)
            return removed

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            self._sweep_expired()
            return [k for k in self._items if k.startswith(prefix)]

    def _sweep_expired(self) -> None:
        now = time.time()
        for key in [k for k, record in self._items.items() if _expired(record, now)]:
            del self._items[key]
            self._remove(key)

    def _write(self, key: str, record: Dict[str, Any]) -> None:
        return None

    def _remove(self, key: str) -> None:
        return None


class JsonFileStore(MemoryStore):
    def __init__(self, root_dir: str) -> None:
        super().__init__()
        self._root_dir = root_dir
        self._load()

    @property
    def path(self) -> str:
        return self._root_dir

    def file_for(self, key: str) -> str:
        return os.path.join(self._root_dir, quote(key, safe="") + _SUFFIX)

    def _load(self) -> None:
        if not os.path.isdir(self._root_dir):
            return
        now = time.time()
        for name in sorted(os.listdir(self._root_dir)):
            if not name.endswith(_SUFFIX):
                continue
            path = os.path.join(self._root_dir, name)
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    record = json.load(handle)
            except (OSError, ValueError) as exc:
                logger.error("Failed to load store entry %s: %s", path, exc)
                continue
            if not isinstance(record, dict) or "value" not in record:
                logger.warning("Skipping malformed store entry %s", path)
                continue
            key = unquote(name[: -len(_SUFFIX)])
            if _expired(record, now):
                self._remove(key)
                continue
            self._items[key] = record

    def _write(self, key: str, record: Dict[str, Any]) -> None:
        os.makedirs(self._root_dir, exist_ok=True)
        path = self.file_for(key)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2, default=str)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def _remove(self, key: str) -> None:
        try:
            os.remove(self.file_for(key))
        except FileNotFoundError:
            pass
