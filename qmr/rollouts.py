from __future__ import annotations

import logging
from typing import Any

from .errors import NotFound, PodFailedPhase, UnhealthyPrecondition
from .poller import Clock, Poller
from .settings import settings
from .store import ObjectStore
from .template import HEALTHY_LABEL, REVISION_LABEL, ROLE_LABEL

LEADER = "leader"
HEALTHY = "yes"
# Containers whose readiness gates a replaced pod.
GATED_CONTAINERS = ("mysql", "xenon")


def _labels(pod: dict[str, Any]) -> dict[str, str]:
    return (pod.get("metadata") or {}).get("labels") or {}


def _pod_name(pod: dict[str, Any]) -> str:
    return pod["metadata"]["name"]


def is_leader(pod: dict[str, Any]) -> bool:
    return _labels(pod).get(ROLE_LABEL) == LEADER


def is_healthy(pod: dict[str, Any]) -> bool:
    return _labels(pod).get(HEALTHY_LABEL) == HEALTHY


def container_ready(pod: dict[str, Any], name: str) -> bool:
    for status in (pod.get("status") or {}).get("containerStatuses") or []:
        if status.get("name") == name:
            return bool(status.get("ready"))
    return False


class RollingUpdater:
    """Replaces the pods of an OnDelete StatefulSet one at a time, leader last.

    Followers go first so the quorum never drops below a majority; the leader
    goes last so a healthy quorum is there to elect its successor. A failure
    on any pod stops the rollout; pods already replaced stay replaced.
    """

    def __init__(
        self,
        store: ObjectStore,
        clock: Clock | None = None,
        interval_s: float | None = None,
        limit_s: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.clock = clock
        self.interval_s = interval_s if interval_s is not None else settings.poll_interval_s
        self.limit_s = limit_s if limit_s is not None else settings.wait_limit_s
        self.logger = logger or logging.getLogger(__name__)

    def run(self, sfs: dict[str, Any]) -> list[str]:
        """Roll the fleet onto the StatefulSet's update revision.

        Returns the pod names handled, in order. Does nothing while the fleet
        is already updated or not fully ready. Raises UnhealthyPrecondition,
        without touching any pod, when a pod is not healthy.
        """
        status = sfs.get("status") or {}
        replicas = int(status.get("replicas") or 0)
        if int(status.get("updatedReplicas") or 0) >= replicas:
            return []

        name = sfs["metadata"]["name"]
        namespace = sfs["metadata"].get("namespace") or "default"
        self.logger.info("StatefulSet %s/%s was changed, run update", namespace, name)

        if int(status.get("readyReplicas") or 0) < replicas:
            self.logger.info("Can't start/continue update of %s/%s: waiting for all replicas to be ready", namespace, name)
            return []

        selector = ((sfs.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
        pods = self.store.list("Pod", namespace, selector)

        unhealthy = [_pod_name(p) for p in pods if not is_healthy(p)]
        if unhealthy:
            raise UnhealthyPrecondition(f"can't start/continue update: pods {', '.join(unhealthy)} are unhealthy")

        leader = next((p for p in pods if is_leader(p)), None)
        order = [p for p in pods if p is not leader]
        if leader is not None:
            self.logger.info("Leader pod is %s, it is updated last", _pod_name(leader))
            order.append(leader)

        target = status.get("updateRevision") or ""
        done: list[str] = []
        for pod in order:
            self.apply_and_wait(pod, target)
            done.append(_pod_name(pod))

        self.logger.info("Update of %s/%s finished", namespace, name)
        return done

    def apply_and_wait(self, pod: dict[str, Any], target_revision: str) -> None:
        name = _pod_name(pod)
        namespace = pod["metadata"].get("namespace") or "default"

        if _labels(pod).get(REVISION_LABEL) == target_revision:
            self.logger.info("Pod %s is already updated", name)
        else:
            self.logger.info("Deleting pod %s", name)
            self.store.delete("Pod", namespace, name)

        def probe() -> bool:
            try:
                current = self.store.get("Pod", namespace, name)
            except NotFound:
                # Not recreated by the StatefulSet controller yet.
                return False
            return self.pod_replaced(current, target_revision)

        poller = Poller(self.interval_s, self.limit_s, clock=self.clock)
        result = poller.run(probe)
        self.logger.info("Pod %s is running (%d probes, %.0fs)", name, result.probes, result.elapsed_s)

    @staticmethod
    def pod_replaced(pod: dict[str, Any], target_revision: str) -> bool:
        """Readiness gate for a replaced pod. Raises PodFailedPhase on a failed pod."""
        phase = (pod.get("status") or {}).get("phase")
        if phase == "Failed":
            raise PodFailedPhase(f"pod {_pod_name(pod)} is in failed phase")
        return (
            phase == "Running"
            and all(container_ready(pod, c) for c in GATED_CONTAINERS)
            and _labels(pod).get(REVISION_LABEL) == target_revision
            and is_healthy(pod)
        )
