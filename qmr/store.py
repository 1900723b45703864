from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import NotFound, WriteConflict


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def selector_string(selector: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def matches(labels: dict[str, str] | None, selector: dict[str, str]) -> bool:
    labels = labels or {}
    return all(labels.get(k) == v for k, v in selector.items())


class ObjectStore(Protocol):
    """Typed get/create/update/list/delete by namespace and name.

    Objects are Kubernetes manifests as plain dicts.
    """

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def list(self, kind: str, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...


class InMemoryStore:
    """Object store kept in process memory.

    Behaves like the API server where it matters here: every write bumps
    resourceVersion, an update carrying a stale one is rejected, and writes
    through update() never touch status.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._version = 0

    @staticmethod
    def _key(obj: dict[str, Any]) -> tuple[str, str, str]:
        meta = obj.get("metadata") or {}
        return obj["kind"], meta.get("namespace") or "default", meta["name"]

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Insert or overwrite an object as-is, status included."""
        with self._lock:
            stored = copy.deepcopy(obj)
            meta = stored.setdefault("metadata", {})
            meta.setdefault("namespace", "default")
            meta.setdefault("uid", str(uuid.uuid4()))
            meta.setdefault("creationTimestamp", utc_now())
            meta["resourceVersion"] = self._next_version()
            self._objects[self._key(stored)] = stored
            return copy.deepcopy(stored)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        with self._lock:
            obj = self._objects.get((kind, namespace, name))
            if obj is None:
                raise NotFound(f"{kind} {namespace}/{name} not found")
            return copy.deepcopy(obj)

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._key(obj)
        with self._lock:
            if key in self._objects:
                raise WriteConflict(f"{key[0]} {key[1]}/{key[2]} already exists")
            stored = copy.deepcopy(obj)
            meta = stored["metadata"]
            meta["namespace"] = key[1]
            meta["uid"] = str(uuid.uuid4())
            meta["creationTimestamp"] = utc_now()
            meta["resourceVersion"] = self._next_version()
            stored.setdefault("status", {})
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._key(obj)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFound(f"{key[0]} {key[1]}/{key[2]} not found")
            sent = obj["metadata"].get("resourceVersion")
            if sent and sent != current["metadata"]["resourceVersion"]:
                raise WriteConflict(
                    f"{key[0]} {key[1]}/{key[2]}: resourceVersion {sent} is stale "
                    f"(current {current['metadata']['resourceVersion']})"
                )
            stored = copy.deepcopy(obj)
            meta = stored["metadata"]
            meta["uid"] = current["metadata"]["uid"]
            meta["creationTimestamp"] = current["metadata"]["creationTimestamp"]
            meta["resourceVersion"] = self._next_version()
            stored["status"] = copy.deepcopy(current.get("status", {}))
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def list(self, kind: str, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        with self._lock:
            found = [
                obj
                for (k, ns, _), obj in self._objects.items()
                if k == kind and ns == namespace and matches(obj["metadata"].get("labels"), selector)
            ]
            found.sort(key=lambda o: o["metadata"]["name"])
            return copy.deepcopy(found)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            if self._objects.pop((kind, namespace, name), None) is None:
                raise NotFound(f"{kind} {namespace}/{name} not found")


# kind -> (api attribute, method suffix)
_KIND_APIS: dict[str, tuple[str, str]] = {
    "StatefulSet": ("apps_api", "stateful_set"),
    "Pod": ("core_api", "pod"),
}


class KubernetesStore:
    """Object store backed by the Kubernetes API (official python client)."""

    def __init__(
        self,
        apps_api: client.AppsV1Api | None = None,
        core_api: client.CoreV1Api | None = None,
        api_client: client.ApiClient | None = None,
    ):
        self.api_client = api_client or client.ApiClient()
        self.apps_api = apps_api or client.AppsV1Api(self.api_client)
        self.core_api = core_api or client.CoreV1Api(self.api_client)

    @classmethod
    def from_environment(cls) -> "KubernetesStore":
        """In-cluster service account config, falling back to ~/.kube/config."""
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        return cls()

    def _call(self, kind: str, verb: str, *args: Any, **kwargs: Any) -> Any:
        try:
            api_attr, suffix = _KIND_APIS[kind]
        except KeyError:
            raise ValueError(f"unsupported kind {kind!r}") from None
        method = getattr(getattr(self, api_attr), f"{verb}_namespaced_{suffix}")
        try:
            return method(*args, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFound(f"{kind} {verb}: {exc.reason}") from exc
            if exc.status == 409:
                raise WriteConflict(f"{kind} {verb}: {exc.reason}") from exc
            raise

    def _to_dict(self, obj: Any) -> Any:
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        return self._to_dict(self._call(kind, "read", name, namespace))

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj["metadata"]
        return self._to_dict(self._call(obj["kind"], "create", meta.get("namespace") or "default", obj))

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj["metadata"]
        return self._to_dict(self._call(obj["kind"], "replace", meta["name"], meta.get("namespace") or "default", obj))

    def list(self, kind: str, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        resp = self._call(kind, "list", namespace, label_selector=selector_string(selector))
        return list(self._to_dict(resp).get("items") or [])

    def delete(self, kind: str, namespace: str, name: str) -> None:
        self._call(kind, "delete", name, namespace)
