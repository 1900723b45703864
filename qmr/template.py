"""Desired state for the fleet StatefulSet.

``build_pod_template`` is a pure function of the cluster view and the two
revision fingerprints. ``apply_desired_state`` writes that template (plus the
StatefulSet level fields) over an object fetched from the store; both the
create and the update path go through it so they compute the same thing.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Iterable

from .cluster import METRICS_PORT, ClusterView, ResourceKind
from .containers import ContainerRole, build_container
from .errors import MergeFailure, OwnerDeleted

ROLE_LABEL = "role"
HEALTHY_LABEL = "healthy"
REVISION_LABEL = "controller-revision-hash"
CONFIG_REV_ANNOTATION = "config_rev"
SECRET_REV_ANNOTATION = "secret_rev"

# Pod spec fields owned by the user overlay: mirrored as-is, removed when unset.
_USER_OWNED_FIELDS = ("affinity", "tolerations", "priorityClassName")
_NAMED_LISTS = ("initContainers", "containers", "volumes")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def fill_defaults(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    """Copy values from ``src`` into ``dst`` only where ``dst`` is empty.

    Nested mappings are filled recursively; lists are never merged.
    """
    for key, value in src.items():
        current = dst.get(key)
        if _is_empty(current):
            if not _is_empty(value):
                dst[key] = copy.deepcopy(value)
        elif isinstance(current, dict) and isinstance(value, dict):
            fill_defaults(current, value)
    return dst


def _overlay(base: dict[str, Any], top: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in top.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _overlay(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _container_name(item: dict[str, Any]) -> str:
    return item["name"]


def _claim_name(item: dict[str, Any]) -> str:
    return item["metadata"]["name"]


def _merge_named(
    field: str,
    current: Any,
    desired: Iterable[dict[str, Any]],
    key: Callable[[dict[str, Any]], str] = _container_name,
) -> list[dict[str, Any]]:
    if current is None:
        current = []
    if not isinstance(current, list):
        raise MergeFailure(f"{field}: expected a list, got {type(current).__name__}")
    by_name: dict[str, dict[str, Any]] = {}
    for item in current:
        try:
            by_name[key(item)] = item
        except (KeyError, TypeError) as exc:
            raise MergeFailure(f"{field}: entry without a name: {item!r}") from exc

    merged: list[dict[str, Any]] = []
    for item in desired:
        existing = by_name.get(key(item))
        merged.append(_overlay(existing, item) if existing is not None else copy.deepcopy(item))
    return merged


def merge_pod_spec(current: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Rebuild an observed pod spec so it carries ``desired``.

    Containers, init containers and volumes are matched by name: desired keys
    win, keys only the observed entry has (API server defaults) are kept, and
    entries missing from ``desired`` are dropped.
    """
    if not isinstance(current, dict):
        raise MergeFailure(f"pod spec: expected a mapping, got {type(current).__name__}")

    out = copy.deepcopy(current)
    for field in _NAMED_LISTS:
        out[field] = _merge_named(field, current.get(field), desired.get(field) or [])
        if not out[field]:
            del out[field]

    for key, value in desired.items():
        if key in _NAMED_LISTS or key in _USER_OWNED_FIELDS:
            continue
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _overlay(out[key], value)
        else:
            out[key] = copy.deepcopy(value)

    for key in _USER_OWNED_FIELDS:
        if key in desired:
            out[key] = copy.deepcopy(desired[key])
        else:
            out.pop(key, None)
    return out


def ensure_pod_spec(view: ClusterView) -> dict[str, Any]:
    spec = view.spec
    init_containers = [
        build_container(ContainerRole.init_sidecar, view),
        build_container(ContainerRole.init_mysql, view),
    ]
    containers = [
        build_container(ContainerRole.mysql, view),
        build_container(ContainerRole.xenon, view),
    ]
    if spec.metrics_opts.enabled:
        containers.append(build_container(ContainerRole.metrics, view))
    if spec.pod_spec.slow_log_tail:
        containers.append(build_container(ContainerRole.slow_log, view))
    if spec.pod_spec.audit_log_tail:
        containers.append(build_container(ContainerRole.audit_log, view))

    pod_spec: dict[str, Any] = {
        "initContainers": init_containers,
        "containers": containers,
        "volumes": view.ensure_volumes(),
    }
    overlay = {
        "affinity": view.copy_of(spec.pod_spec.affinity),
        "schedulerName": spec.pod_spec.scheduler_name,
        "priorityClassName": spec.pod_spec.priority_class_name,
        "serviceAccountName": spec.pod_spec.service_account_name,
    }
    fill_defaults(pod_spec, overlay)
    fill_defaults(pod_spec, {"serviceAccountName": view.name_for_resource(ResourceKind.service_account)})
    if spec.pod_spec.tolerations:
        pod_spec["tolerations"] = view.copy_of(spec.pod_spec.tolerations)
    return pod_spec


def build_pod_template(view: ClusterView, config_rev: str, secret_rev: str) -> dict[str, Any]:
    """Desired pod template. Same inputs, same output."""
    spec = view.spec

    labels = view.labels()
    labels.update(spec.pod_spec.labels)
    # The consensus sidecar flips these once the pod has joined the quorum.
    labels[ROLE_LABEL] = "candidate"
    labels[HEALTHY_LABEL] = "no"

    annotations = dict(spec.pod_spec.annotations)
    if spec.metrics_opts.enabled:
        annotations["prometheus.io/scrape"] = "true"
        annotations["prometheus.io/port"] = str(METRICS_PORT)
    annotations[CONFIG_REV_ANNOTATION] = config_rev
    annotations[SECRET_REV_ANNOTATION] = secret_rev

    return {
        "metadata": {"labels": labels, "annotations": annotations},
        "spec": ensure_pod_spec(view),
    }


def _set_controller_reference(meta: dict[str, Any], owner: dict[str, Any]) -> None:
    refs = [
        ref
        for ref in meta.get("ownerReferences") or []
        if not ref.get("controller") and ref.get("uid") != owner["uid"]
    ]
    refs.append(owner)
    meta["ownerReferences"] = refs


def new_stateful_set(view: ClusterView) -> dict[str, Any]:
    """Identity-only StatefulSet, the starting point of the create path."""
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": view.name_for_resource(ResourceKind.stateful_set),
            "namespace": view.namespace,
        },
    }


def apply_desired_state(sfs: dict[str, Any], view: ClusterView, config_rev: str, secret_rev: str) -> dict[str, Any]:
    """Write the desired state over ``sfs`` in place and return it.

    Raises OwnerDeleted when the cluster is being deleted and ``sfs`` was never
    created: garbage collection already ran, so an orphan must not be adopted.
    """
    meta = sfs.setdefault("metadata", {})
    if view.is_deleting and not meta.get("creationTimestamp"):
        raise OwnerDeleted(f"owner {view.namespace}/{view.name} is deleted, refusing to recreate {meta.get('name')}")

    spec = sfs.setdefault("spec", {})
    spec["serviceName"] = view.name_for_resource(ResourceKind.stateful_set)
    spec["replicas"] = view.spec.replicas
    spec["selector"] = {"matchLabels": view.selector_labels()}
    spec["updateStrategy"] = {"type": "OnDelete"}

    desired = build_pod_template(view, config_rev, secret_rev)
    template = spec.setdefault("template", {})
    if not isinstance(template, dict):
        raise MergeFailure(f"template: expected a mapping, got {type(template).__name__}")
    template_meta = template.setdefault("metadata", {})
    template_meta["labels"] = desired["metadata"]["labels"]
    template_meta["annotations"] = desired["metadata"]["annotations"]
    template["spec"] = merge_pod_spec(template.get("spec") or {}, desired["spec"])

    if view.spec.persistence.enabled:
        spec["volumeClaimTemplates"] = _merge_named(
            "volumeClaimTemplates",
            spec.get("volumeClaimTemplates"),
            view.ensure_volume_claim_templates(),
            key=_claim_name,
        )

    # A cluster being deleted with cascade=false must not get its reference back.
    if not view.is_deleting:
        _set_controller_reference(meta, view.owner_reference())
    return sfs
