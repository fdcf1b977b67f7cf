from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    agent_url: str | None
    agent_key: str | None
    agent_timeout: float
    callback_secret: str | None
    score_webhook_url: str | None
    score_webhook_secret: str | None
    stream_interval: float
    rate_limit_calls: int
    rate_limit_seconds: int
    clear_logs_on_launch: bool

    @property
    def store_path(self) -> str:
        return os.path.join(self.data_dir, "store")

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".refinery")
        default_log_dir = str(Path(default_home) / "logs")
        default_data_dir = str(Path(default_home) / "data")
        return Settings(
            log_level=os.getenv("REFINERY_LOG_LEVEL", "info"),
            log_dir=os.getenv("REFINERY_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("REFINERY_DATA_DIR") or default_data_dir,
            host=os.getenv("REFINERY_HOST", "127.0.0.1"),
            port=int(os.getenv("REFINERY_PORT", "18800")),
            agent_url=os.getenv("REFINERY_AGENT_URL"),
            agent_key=os.getenv("REFINERY_AGENT_KEY"),
            agent_timeout=float(os.getenv("REFINERY_AGENT_TIMEOUT", "120")),
            callback_secret=os.getenv("REFINERY_CALLBACK_SECRET") or None,
            score_webhook_url=os.getenv("REFINERY_SCORE_WEBHOOK_URL") or None,
            score_webhook_secret=os.getenv("REFINERY_SCORE_WEBHOOK_SECRET") or None,
            stream_interval=float(os.getenv("REFINERY_STREAM_INTERVAL", "1.0")),
            rate_limit_calls=int(os.getenv("REFINERY_RATE_LIMIT_CALLS", "30")),
            rate_limit_seconds=int(os.getenv("REFINERY_RATE_LIMIT_SECONDS", "60")),
            clear_logs_on_launch=os.getenv("REFINERY_CLEAR_LOGS_ON_LAUNCH", "false").lower() in {"1", "true", "yes"},
        )
