from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Rollout
    poll_interval_s: int = _env_int("QMR_POLL_INTERVAL_S", 10)
    # Upper bound for a single pod to come back after being deleted (2h).
    wait_limit_s: int = _env_int("QMR_WAIT_LIMIT_S", 2 * 60 * 60)

    # Event log
    db_path: str = os.getenv("QMR_DB_PATH", "qmr.db")
    event_limit: int = _env_int("QMR_EVENT_LIMIT", 100)

    log_level: str = os.getenv("QMR_LOG_LEVEL", "INFO")


settings = Settings()
