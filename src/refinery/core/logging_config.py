"""Centralized logging configuration for refinery.

Everything goes to stdout and a rotating ``refinery.log``; session events
and audit records additionally land in their own JSONL files so they can
be tailed or shipped without parsing free-form log lines.

Log directory structure::

    ~/.refinery/logs/
    ├── refinery.log            # All Python logger output (rotating)
    ├── session-events.log      # One JSON object per session event
    └── audit.jsonl             # Mirror of every data-dir audit record
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("refinery.logging")

# Set by setup_logging(); get_log_dir() falls back to the environment
_log_dir: Optional[str] = None

session_event_logger = logging.getLogger("refinery._session_events")

# Session event level -> stdlib level
_EVENT_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Libraries that log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".refinery" / "logs")
    return os.getenv("REFINERY_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files before any handler opens them."""
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.log.*", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError as exc:
                logger.debug("Could not remove %s: %s", path, exc)


def _rotating_handler(path: str, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def _reset_handlers(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure stdout and file handlers.  Safe to call more than once."""
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    root = logging.getLogger()
    root.setLevel(level)
    _reset_handlers(root)

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = _rotating_handler(os.path.join(log_dir, "refinery.log"), fmt)
    file_handler.setLevel(logging.DEBUG)
    root.addHandler(file_handler)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _setup_jsonl_logger(session_event_logger, os.path.join(log_dir, "session-events.log"))

    logging.getLogger("refinery").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Point *logger_instance* at a rotating file of raw JSON lines."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    _reset_handlers(logger_instance)
    # Message is already JSON
    logger_instance.addHandler(_rotating_handler(path, logging.Formatter("%(message)s")))


def log_session_event(session_id: str, event: dict[str, Any]) -> None:
    """Mirror a session event to ``session-events.log`` at the event's level."""
    level = _EVENT_LEVELS.get(str(event.get("level", "info")), logging.INFO)
    session_event_logger.log(level, json.dumps({"session_id": session_id, **event}, default=str))


def get_audit_log_path() -> str:
    """Return the path to the centralized audit JSONL log."""
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_line(path: str, line: str) -> None:
    """Append *line* to *path*, creating parent directories as needed."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")
        handle.flush()
