from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from kubernetes import client


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Severity(str, Enum):
    normal = "Normal"
    warning = "Warning"


@dataclass(frozen=True)
class Event:
    severity: Severity
    reason: str
    message: str
    namespace: str = ""
    name: str = ""
    kind: str = ""
    ts: str = field(default_factory=utc_now)


def event_reason(kind: str, ok: bool) -> str:
    return f"{kind}{'Succeeded' if ok else 'Failed'}"


class EventRecorder(Protocol):
    def record(self, event: Event) -> None: ...


def emit(recorder: EventRecorder | None, event: Event, logger: logging.Logger) -> None:
    """Record an event without ever failing the caller."""
    if recorder is None:
        return
    try:
        recorder.record(event)
    except Exception as e:
        logger.warning("Event %s for %s/%s was not recorded: %s: %s", event.reason, event.namespace, event.name, type(e).__name__, e)


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    A directory (e.g. a bind mount) gets the DB file placed inside it.
    """
    p = os.path.abspath(db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "qmr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


class SqliteEventRecorder:
    """Keeps emitted events in a local SQLite table."""

    def __init__(self, db_path: str):
        self.db_path = _resolve_db_path(db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  severity TEXT NOT NULL, -- Normal|Warning
                  reason TEXT NOT NULL,
                  kind TEXT,
                  namespace TEXT,
                  name TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def record(self, event: Event) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, severity, reason, kind, namespace, name, message) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (event.ts, event.severity.value, event.reason, event.kind, event.namespace, event.name, event.message),
            )

    def latest(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]


class KubeEventRecorder:
    """Publishes events as core/v1 Event objects on the involved resource."""

    def __init__(self, core_api: client.CoreV1Api, component: str = "qmr-operator"):
        self.core_api = core_api
        self.component = component

    def record(self, event: Event) -> None:
        ts = datetime.now(timezone.utc).isoformat()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{event.name}.", "namespace": event.namespace},
            "involvedObject": {
                "apiVersion": "apps/v1",
                "kind": event.kind,
                "name": event.name,
                "namespace": event.namespace,
            },
            "type": event.severity.value,
            "reason": event.reason,
            "message": event.message,
            "source": {"component": self.component},
            "firstTimestamp": ts,
            "lastTimestamp": ts,
            "count": 1,
        }
        self.core_api.create_namespaced_event(event.namespace, body)
