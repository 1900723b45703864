from __future__ import annotations

import copy
import os
import sys
from typing import Any

import pytest

# Ensure project root is importable (so `import qmr` and `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from qmr.cluster import Cluster, ClusterView
from qmr.errors import NotFound
from qmr.store import InMemoryStore


class FakeClock:
    """Clock that only moves when someone sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ListRecorder:
    def __init__(self) -> None:
        self.events: list[Any] = []

    def record(self, event: Any) -> None:
        self.events.append(event)


def make_view(name: str = "db", namespace: str = "default", deleting: bool = False, **spec: Any) -> ClusterView:
    metadata: dict[str, Any] = {"name": name, "namespace": namespace, "uid": f"uid-{name}"}
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return ClusterView(Cluster.from_body({"metadata": metadata, "spec": spec}))


def make_pod(
    name: str,
    labels: dict[str, str] | None = None,
    role: str = "candidate",
    healthy: str = "yes",
    revision: str = "rev-old",
    phase: str = "Running",
    ready: bool = True,
    namespace: str = "default",
) -> dict[str, Any]:
    pod_labels = dict(labels or {})
    pod_labels.update({"role": role, "healthy": healthy, "controller-revision-hash": revision})
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": pod_labels},
        "status": {
            "phase": phase,
            "containerStatuses": [
                {"name": "mysql", "ready": ready},
                {"name": "xenon", "ready": ready},
            ],
        },
    }


def _default_containers(pod_spec: dict[str, Any]) -> None:
    pod_spec.setdefault("restartPolicy", "Always")
    pod_spec.setdefault("dnsPolicy", "ClusterFirst")
    pod_spec.setdefault("terminationGracePeriodSeconds", 30)
    for container in pod_spec.get("initContainers", []) + pod_spec.get("containers", []):
        container.setdefault("terminationMessagePath", "/dev/termination-log")
        container.setdefault("terminationMessagePolicy", "File")
        for port in container.get("ports", []):
            port.setdefault("protocol", "TCP")
        for probe in ("livenessProbe", "readinessProbe"):
            http_get = (container.get(probe) or {}).get("httpGet")
            if http_get is not None:
                http_get.setdefault("scheme", "HTTP")
    for volume in pod_spec.get("volumes", []):
        if "configMap" in volume:
            volume["configMap"].setdefault("defaultMode", 420)
        if "hostPath" in volume:
            volume["hostPath"].setdefault("type", "")


def apply_server_defaults(obj: dict[str, Any]) -> dict[str, Any]:
    """Fill in what the API server adds to a StatefulSet on every write."""
    if obj.get("kind") != "StatefulSet":
        return obj
    spec = obj.setdefault("spec", {})
    spec.setdefault("podManagementPolicy", "OrderedReady")
    spec.setdefault("revisionHistoryLimit", 10)
    template = spec.get("template") or {}
    template.setdefault("metadata", {}).setdefault("creationTimestamp", None)
    if template.get("spec"):
        _default_containers(template["spec"])
    for claim in spec.get("volumeClaimTemplates", []):
        claim.setdefault("apiVersion", "v1")
        claim.setdefault("kind", "PersistentVolumeClaim")
        claim.setdefault("spec", {}).setdefault("volumeMode", "Filesystem")
        claim.setdefault("status", {"phase": "Pending"})
    return obj


class DefaultingStore(InMemoryStore):
    """In-memory store that defaults written objects like the API server."""

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        return super().create(apply_server_defaults(copy.deepcopy(obj)))

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        return super().update(apply_server_defaults(copy.deepcopy(obj)))


class FleetSim(DefaultingStore):
    """In-memory store standing in for the StatefulSet controller.

    A deleted pod comes back on the new revision, running and healthy, after
    ``recreate_after`` lookups. Pods listed in ``stuck`` come back but never
    become healthy; pods in ``failing`` come back in the Failed phase.
    """

    def __init__(self, revision: str = "rev-new", recreate_after: int = 0) -> None:
        super().__init__()
        self.revision = revision
        self.recreate_after = recreate_after
        self.stuck: set[str] = set()
        self.failing: set[str] = set()
        self.journal: list[tuple[str, str]] = []
        self._pending: dict[tuple[str, str], list[Any]] = {}

    def delete(self, kind: str, namespace: str, name: str) -> None:
        if kind == "Pod":
            old = super().get(kind, namespace, name)
            self.journal.append(("delete", name))
            super().delete(kind, namespace, name)
            labels = {k: v for k, v in old["metadata"]["labels"].items() if k not in {"role", "healthy"}}
            healthy = "no" if name in self.stuck else "yes"
            phase = "Failed" if name in self.failing else "Running"
            pod = make_pod(name, labels, healthy=healthy, revision=self.revision, phase=phase, namespace=namespace)
            self._pending[(namespace, name)] = [self.recreate_after, pod]
            return
        super().delete(kind, namespace, name)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        if kind == "Pod":
            pending = self._pending.get((namespace, name))
            if pending is not None:
                if pending[0] > 0:
                    pending[0] -= 1
                    raise NotFound(f"Pod {namespace}/{name} not found")
                self.put(pending[1])
                del self._pending[(namespace, name)]
            obj = super().get(kind, namespace, name)
            labels = obj["metadata"]["labels"]
            if labels.get("controller-revision-hash") == self.revision and labels.get("healthy") == "yes":
                self.journal.append(("ready", name))
            return obj
        return super().get(kind, namespace, name)

    def deleted(self) -> list[str]:
        return [name for verb, name in self.journal if verb == "delete"]


def seed_fleet(
    store: InMemoryStore,
    view: ClusterView,
    names: list[str],
    leader: str | None = None,
    unhealthy: tuple[str, ...] = (),
    revision: str = "rev-old",
) -> None:
    selector = view.selector_labels()
    for name in names:
        store.put(
            make_pod(
                name,
                selector,
                role="leader" if name == leader else "candidate",
                healthy="no" if name in unhealthy else "yes",
                revision=revision,
                namespace=view.namespace,
            )
        )


def fleet_status(sfs: dict[str, Any], replicas: int = 3, ready: int = 3, updated: int = 0, revision: str = "rev-new") -> dict[str, Any]:
    out = copy.deepcopy(sfs)
    out["status"] = {
        "replicas": replicas,
        "readyReplicas": ready,
        "updatedReplicas": updated,
        "updateRevision": revision,
    }
    return out


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> ListRecorder:
    return ListRecorder()


@pytest.fixture
def view() -> ClusterView:
    return make_view()


@pytest.fixture
def sim() -> FleetSim:
    return FleetSim()
