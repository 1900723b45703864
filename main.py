"""Status app for the reconciler.

Syncers built through ``syncer_for`` record their events in the same SQLite
log that ``/events`` serves.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Query

from qmr.cluster import ClusterView
from qmr.events import SqliteEventRecorder
from qmr.reconciler import StatefulSetSyncer
from qmr.settings import settings
from qmr.store import ObjectStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="Quorum MySQL Reconciler")
recorder = SqliteEventRecorder(settings.db_path)


def syncer_for(store: ObjectStore, cluster: ClusterView, config_rev: str, secret_rev: str) -> StatefulSetSyncer:
    return StatefulSetSyncer(store, cluster, config_rev, secret_rev, recorder=recorder)


@app.on_event("startup")
def startup() -> None:
    recorder.init_db()


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/events")
def events(limit: int = Query(settings.event_limit, ge=1, le=1000)) -> list[dict]:
    """Newest first."""
    return recorder.latest(limit)
