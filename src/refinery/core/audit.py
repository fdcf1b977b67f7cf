"""JSONL audit trail for requests that change session or config state.

Records go to ``<data_dir>/audit.jsonl`` next to the session store and
are mirrored to the log directory's ``audit.jsonl``.
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from refinery.core.logging_config import append_line, get_audit_log_path

logger = logging.getLogger("refinery.audit")

AUDIT_FILE = "audit.jsonl"

SESSION_START = "session.start"
SESSION_CANCEL = "session.cancel"
SESSION_CALLBACK = "session.callback"
CONFIG_UPDATE = "config.update"


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return uuid.uuid4().hex[:12]


def audit_path(data_dir: str) -> str:
    return os.path.join(data_dir, AUDIT_FILE)


def log_event(
    data_dir: str,
    event_type: str,
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    if request_id:
        record["request_id"] = request_id
    line = json.dumps(record, default=str)

    path = audit_path(data_dir)
    append_line(path, line)

    mirror = get_audit_log_path()
    if os.path.abspath(mirror) != os.path.abspath(path):
        try:
            append_line(mirror, line)
        except OSError as exc:
            logger.warning("Audit mirror %s not writable: %s", mirror, exc)
    return record
