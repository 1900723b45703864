from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .cluster import ClusterView, ResourceKind
from .errors import IgnoreSignal, NotFound, OwnerDeleted
from .events import Event, EventRecorder, Severity, emit, event_reason
from .rollouts import RollingUpdater
from .store import ObjectStore
from .template import apply_desired_state, new_stateful_set

KIND = "StatefulSet"


class OperationResult(str, Enum):
    none = "unchanged"
    created = "created"
    updated = "updated"


@dataclass(frozen=True)
class SyncOutcome:
    result: OperationResult
    event: Event


class StatefulSetSyncer:
    """Creates or updates the fleet StatefulSet of one cluster.

    Safe to run at any time: an unchanged desired state issues no write.
    After an update, the pods are rolled by the RollingUpdater.
    """

    def __init__(
        self,
        store: ObjectStore,
        cluster: ClusterView,
        config_rev: str,
        secret_rev: str,
        updater: RollingUpdater | None = None,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.cluster = cluster
        self.config_rev = config_rev
        self.secret_rev = secret_rev
        self.logger = logger or logging.getLogger(__name__)
        self.updater = updater or RollingUpdater(store, logger=self.logger)
        self.recorder = recorder
        self.name = cluster.name_for_resource(ResourceKind.stateful_set)
        self.namespace = cluster.namespace
        # Desired-state buffer, refreshed from the store on every sync.
        self.sfs: dict[str, Any] = new_stateful_set(cluster)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def sync(self) -> SyncOutcome:
        """Reconcile once and emit exactly one event for the outcome.

        OwnerDeleted and IgnoreSignal are logged and reported as success.
        Any other error is recorded as a Warning event and re-raised.
        """
        result = OperationResult.none
        try:
            result = self._create_or_update()
        except OwnerDeleted as e:
            self.logger.info("Skipped %s %s: %s", KIND, self.key, e)
            event = self._event(Severity.normal, True, f"{KIND} {self.key} skipped: {e}")
        except IgnoreSignal as e:
            self.logger.debug("Syncer skipped %s %s: %s", KIND, self.key, e)
            event = self._event(Severity.normal, True, f"{KIND} {self.key} skipped: {e}")
        except Exception as e:
            event = self._event(Severity.warning, False, f"{KIND} {self.key} failed syncing: {e}")
            self.logger.error("Syncing %s %s failed: %s: %s", KIND, self.key, type(e).__name__, e)
            emit(self.recorder, event, self.logger)
            raise
        else:
            self.logger.debug("%s %s %s", result.value, KIND, self.key)
            event = self._event(Severity.normal, True, f"{KIND} {self.key} {result.value} successfully")

        emit(self.recorder, event, self.logger)
        return SyncOutcome(result=result, event=event)

    def _event(self, severity: Severity, ok: bool, message: str) -> Event:
        return Event(
            severity=severity,
            reason=event_reason(KIND, ok),
            message=message,
            namespace=self.namespace,
            name=self.name,
            kind=KIND,
        )

    def _mutate(self) -> None:
        apply_desired_state(self.sfs, self.cluster, self.config_rev, self.secret_rev)

    def _create_or_update(self) -> OperationResult:
        try:
            self.sfs = self.store.get(KIND, self.namespace, self.name)
        except NotFound:
            self.sfs = new_stateful_set(self.cluster)
            self._mutate()
            self.sfs = self.store.create(self.sfs)
            return OperationResult.created

        existing = copy.deepcopy(self.sfs)
        self._mutate()
        if existing == self.sfs:
            return OperationResult.none

        self.sfs = self.store.update(self.sfs)
        try:
            self.updater.run(self.sfs)
        except IgnoreSignal as e:
            # Written but not rolled; the next reconcile picks the rollout up.
            self.logger.debug("Rollout of %s %s deferred: %s", KIND, self.key, e)
        return OperationResult.updated
