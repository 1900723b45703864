import logging

import pytest

from qmr.errors import WaitTimeout, WriteConflict
from qmr.events import Severity
from qmr.reconciler import OperationResult, StatefulSetSyncer
from qmr.rollouts import RollingUpdater
from qmr.store import InMemoryStore

from conftest import fleet_status, make_view, seed_fleet


def _syncer(store, view, recorder, clock, config_rev="cm-1", secret_rev="sct-1"):
    updater = RollingUpdater(store, clock=clock, interval_s=10, limit_s=60)
    return StatefulSetSyncer(store, view, config_rev, secret_rev, updater=updater, recorder=recorder)


def _mark_rollout_pending(store, view):
    sfs = store.get("StatefulSet", view.namespace, "db-mysql")
    store.put(fleet_status(sfs))


def test_create_then_nothing_to_do(sim, view, recorder, clock):
    first = _syncer(sim, view, recorder, clock).sync()
    second = _syncer(sim, view, recorder, clock).sync()

    assert first.result == OperationResult.created
    assert second.result == OperationResult.none
    assert [e.reason for e in recorder.events] == ["StatefulSetSucceeded", "StatefulSetSucceeded"]
    assert all(e.severity == Severity.normal for e in recorder.events)
    assert "created successfully" in recorder.events[0].message


def test_unchanged_state_issues_no_write(sim, view, recorder, clock):
    _syncer(sim, view, recorder, clock).sync()
    version = sim.get("StatefulSet", "default", "db-mysql")["metadata"]["resourceVersion"]

    _syncer(sim, view, recorder, clock).sync()

    assert sim.get("StatefulSet", "default", "db-mysql")["metadata"]["resourceVersion"] == version


def test_config_change_updates_and_rolls_leader_last(sim, view, recorder, clock):
    _syncer(sim, view, recorder, clock).sync()
    _mark_rollout_pending(sim, view)
    seed_fleet(sim, view, ["db-0", "db-1", "db-2"], leader="db-1")

    outcome = _syncer(sim, view, recorder, clock, config_rev="cm-2").sync()

    assert outcome.result == OperationResult.updated
    assert sim.deleted() == ["db-0", "db-2", "db-1"]
    stored = sim.get("StatefulSet", "default", "db-mysql")
    assert stored["spec"]["template"]["metadata"]["annotations"]["config_rev"] == "cm-2"

    again = _syncer(sim, view, recorder, clock, config_rev="cm-2").sync()
    assert again.result == OperationResult.none


def test_unhealthy_fleet_defers_rollout_without_failing(sim, view, recorder, clock):
    _syncer(sim, view, recorder, clock).sync()
    _mark_rollout_pending(sim, view)
    seed_fleet(sim, view, ["db-0", "db-1", "db-2"], leader="db-1", unhealthy=("db-0",))

    outcome = _syncer(sim, view, recorder, clock, secret_rev="sct-2").sync()

    assert outcome.result == OperationResult.updated
    assert outcome.event.severity == Severity.normal
    assert sim.deleted() == []


def test_rollout_timeout_fails_sync_and_spares_the_leader(sim, view, recorder, clock):
    _syncer(sim, view, recorder, clock).sync()
    _mark_rollout_pending(sim, view)
    seed_fleet(sim, view, ["db-0", "db-1", "db-2"], leader="db-1")
    sim.stuck.add("db-2")

    with pytest.raises(WaitTimeout):
        _syncer(sim, view, recorder, clock, config_rev="cm-2").sync()

    assert "db-1" not in sim.deleted()
    failed = recorder.events[-1]
    assert failed.severity == Severity.warning
    assert failed.reason == "StatefulSetFailed"
    assert "failed syncing" in failed.message


def test_owner_deleted_is_soft(sim, recorder, clock, caplog):
    view = make_view(deleting=True)
    with caplog.at_level(logging.INFO):
        outcome = _syncer(sim, view, recorder, clock).sync()

    assert outcome.result == OperationResult.none
    assert outcome.event.severity == Severity.normal
    assert len(recorder.events) == 1
    assert sim.list("StatefulSet", "default", {}) == []
    assert "refusing to recreate" in caplog.text


class StaleReadStore(InMemoryStore):
    """Someone else writes between our read and our update."""

    def get(self, kind, namespace, name):
        obj = super().get(kind, namespace, name)
        self.put(obj)
        return obj


def test_write_conflict_propagates(view, recorder, clock):
    store = StaleReadStore()
    _syncer(store, view, recorder, clock).sync()

    with pytest.raises(WriteConflict):
        _syncer(store, view, recorder, clock, config_rev="cm-2").sync()

    assert recorder.events[-1].severity == Severity.warning


class BrokenRecorder:
    def record(self, event):
        raise RuntimeError("event sink down")


def test_event_failure_never_aborts_reconcile(sim, view, clock, caplog):
    with caplog.at_level(logging.WARNING):
        outcome = _syncer(sim, view, BrokenRecorder(), clock).sync()
    assert outcome.result == OperationResult.created
    assert "was not recorded" in caplog.text


def test_cluster_view_is_not_mutated(sim, view, recorder, clock):
    before = view.spec.model_dump()
    _syncer(sim, view, recorder, clock).sync()
    stored = sim.get("StatefulSet", "default", "db-mysql")
    stored["spec"]["template"]["metadata"]["labels"]["team"] = "x"
    assert view.spec.model_dump() == before


def test_server_defaulted_state_is_not_rewritten(sim, recorder, clock):
    view = make_view(
        metricsOpts={"enabled": True},
        podSpec={"slowLogTail": True, "auditLogTail": True},
        persistence={"storageClass": "fast"},
    )
    first = _syncer(sim, view, recorder, clock).sync()
    stored = sim.get("StatefulSet", "default", "db-mysql")
    assert stored["spec"]["template"]["spec"]["containers"][0]["ports"][0]["protocol"] == "TCP"
    assert stored["spec"]["template"]["spec"]["containers"][0]["terminationMessagePolicy"] == "File"

    results = [_syncer(sim, view, recorder, clock).sync().result for _ in range(2)]

    assert first.result == OperationResult.created
    assert results == [OperationResult.none, OperationResult.none]
    assert sim.get("StatefulSet", "default", "db-mysql")["metadata"]["resourceVersion"] == stored["metadata"]["resourceVersion"]
    assert all("unchanged successfully" in e.message for e in recorder.events[1:])


def test_failure_log_names_no_operation(sim, view, recorder, clock, caplog):
    _syncer(sim, view, recorder, clock).sync()
    _mark_rollout_pending(sim, view)
    seed_fleet(sim, view, ["db-0", "db-1", "db-2"], leader="db-1")
    sim.stuck.add("db-0")

    with caplog.at_level(logging.ERROR), pytest.raises(WaitTimeout):
        _syncer(sim, view, recorder, clock, config_rev="cm-2").sync()

    assert "Syncing StatefulSet default/db-mysql failed: WaitTimeout" in caplog.text
    assert "unchanged" not in caplog.text
