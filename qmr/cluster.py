"""Cluster specification and its read-only view.

The models mirror the Cluster custom resource, defaults included, so a body
read from the API server can be validated as-is. ``ClusterView`` is what the
rest of the package consumes: naming, labels and volume builders. It never
hands out references into the underlying model.
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


API_GROUP = "mysql.qmr.io"
API_VERSION = f"{API_GROUP}/v1alpha1"
CLUSTER_KIND = "Cluster"

MYSQL_DEFAULT_VERSION = "5.7"
MYSQL_IMAGE_VERSIONS: dict[str, str] = {
    "5.7": "percona/percona-server:5.7.34",
    "8.0": "percona/percona-server:8.0.25",
}

# Ports
MYSQL_PORT = 3306
MYSQL_PORT_NAME = "mysql"
XENON_PORT = 8801
XENON_PORT_NAME = "xenon"
METRICS_PORT = 9104
METRICS_PORT_NAME = "metrics"

# Volumes and where containers mount them.
CONF_VOLUME = "conf"
CONF_MOUNT_PATH = "/etc/mysql"
CONF_MAP_VOLUME = "config-map"
CONF_MAP_MOUNT_PATH = "/mnt/config-map"
DATA_VOLUME = "data"
DATA_MOUNT_PATH = "/var/lib/mysql"
LOGS_VOLUME = "logs"
LOGS_MOUNT_PATH = "/var/log/mysql"
SCRIPTS_VOLUME = "scripts"
SCRIPTS_MOUNT_PATH = "/scripts"
XENON_VOLUME = "xenon"
XENON_MOUNT_PATH = "/etc/xenon"
INIT_FILE_VOLUME = "init-mysql"
INIT_FILE_MOUNT_PATH = "/docker-entrypoint-initdb.d"
SYS_VOLUME = "host-sys"
SYS_MOUNT_PATH = "/host-sys"
SYS_HOST_PATH = "/sys/kernel/mm/transparent_hugepage"

CONF_CLIENT_PATH = f"{CONF_MOUNT_PATH}/client.conf"


class ResourceKind(str, Enum):
    stateful_set = "StatefulSet"
    config_map = "ConfigMap"
    headless_svc = "HeadlessSVC"
    leader_service = "LeaderService"
    follower_service = "FollowerService"
    secret = "Secret"
    service_account = "ServiceAccount"
    role = "Role"
    role_binding = "RoleBinding"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MysqlOpts(_Model):
    root_host: str = "127.0.0.1"
    user: str = "qc_usr"
    database: str = "qingcloud"
    init_tokudb: bool = Field(True, alias="initTokuDB")
    mysql_conf: dict[str, str] = Field(default_factory=dict)
    resources: dict[str, Any] = Field(
        default_factory=lambda: {
            "limits": {"cpu": "500m", "memory": "1Gi"},
            "requests": {"cpu": "100m", "memory": "256Mi"},
        }
    )


class XenonOpts(_Model):
    image: str = "zhyass/xenon:1.1.5-alpha"
    admit_defeat_heartbeat_count: int = Field(5, alias="admitDefeatHearbeatCount")
    # milliseconds
    election_timeout: int = 10000
    resources: dict[str, Any] = Field(
        default_factory=lambda: {
            "limits": {"cpu": "100m", "memory": "256Mi"},
            "requests": {"cpu": "50m", "memory": "128Mi"},
        }
    )


class MetricsOpts(_Model):
    image: str = "prom/mysqld-exporter:v0.12.1"
    enabled: bool = False
    resources: dict[str, Any] = Field(
        default_factory=lambda: {
            "limits": {"cpu": "100m", "memory": "128Mi"},
            "requests": {"cpu": "10m", "memory": "32Mi"},
        }
    )


class PodSpec(_Model):
    image_pull_policy: str = Field("IfNotPresent", pattern="^(Always|IfNotPresent|Never)$")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    affinity: dict[str, Any] | None = None
    priority_class_name: str = ""
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    scheduler_name: str = ""
    service_account_name: str = ""
    resources: dict[str, Any] = Field(default_factory=lambda: {"requests": {"cpu": "10m", "memory": "32Mi"}})
    sidecar_image: str = "zhyass/sidecar:0.1"
    busybox_image: str = "busybox:1.32"
    slow_log_tail: bool = False
    audit_log_tail: bool = False


class Persistence(_Model):
    enabled: bool = True
    access_modes: list[str] = Field(default_factory=lambda: ["ReadWriteOnce"])
    storage_class: str | None = None
    size: str = "10Gi"


class ClusterSpec(_Model):
    replicas: int = Field(3, ge=0)
    mysql_opts: MysqlOpts = Field(default_factory=MysqlOpts)
    xenon_opts: XenonOpts = Field(default_factory=XenonOpts)
    metrics_opts: MetricsOpts = Field(default_factory=MetricsOpts)
    mysql_version: str = MYSQL_DEFAULT_VERSION
    pod_spec: PodSpec = Field(default_factory=PodSpec)
    persistence: Persistence = Field(default_factory=Persistence)


class ClusterMeta(_Model):
    name: str = Field(..., min_length=1)
    namespace: str = "default"
    uid: str = ""
    creation_timestamp: str | None = None
    deletion_timestamp: str | None = None


class Cluster(_Model):
    metadata: ClusterMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "Cluster":
        """Validate a raw custom resource body (camelCase keys)."""
        return cls.model_validate({"metadata": body.get("metadata") or {}, "spec": body.get("spec") or {}})


class ClusterView:
    """Read-only projection of a Cluster used to build desired state."""

    def __init__(self, cluster: Cluster):
        self._cluster = cluster

    @property
    def name(self) -> str:
        return self._cluster.metadata.name

    @property
    def namespace(self) -> str:
        return self._cluster.metadata.namespace

    @property
    def uid(self) -> str:
        return self._cluster.metadata.uid

    @property
    def is_deleting(self) -> bool:
        return bool(self._cluster.metadata.deletion_timestamp)

    @property
    def spec(self) -> ClusterSpec:
        # Frozen model; nested dicts must still be copied before use.
        return self._cluster.spec

    def name_for_resource(self, kind: ResourceKind) -> str:
        if kind in {ResourceKind.stateful_set, ResourceKind.config_map, ResourceKind.headless_svc}:
            return f"{self.name}-mysql"
        if kind == ResourceKind.secret:
            return f"{self.name}-secret"
        if kind == ResourceKind.leader_service:
            return f"{self.name}-leader"
        if kind == ResourceKind.follower_service:
            return f"{self.name}-follower"
        return self.name

    def labels(self) -> dict[str, str]:
        return {
            "mysql.qmr.io/cluster": self.name,
            "app.kubernetes.io/name": "mysql",
            "app.kubernetes.io/instance": self.name,
            "app.kubernetes.io/managed-by": "mysql.qmr.io",
            "app.kubernetes.io/component": "database",
        }

    def selector_labels(self) -> dict[str, str]:
        return {
            "app.kubernetes.io/name": "mysql",
            "app.kubernetes.io/instance": self.name,
            "app.kubernetes.io/managed-by": "mysql.qmr.io",
        }

    def mysql_version(self) -> str:
        version = self.spec.mysql_version
        if version not in MYSQL_IMAGE_VERSIONS:
            return MYSQL_DEFAULT_VERSION
        return version

    def mysql_image(self) -> str:
        return MYSQL_IMAGE_VERSIONS[self.mysql_version()]

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": CLUSTER_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def ensure_volumes(self) -> list[dict[str, Any]]:
        volumes: list[dict[str, Any]] = [
            {"name": CONF_VOLUME, "emptyDir": {}},
            {
                "name": CONF_MAP_VOLUME,
                "configMap": {"name": self.name_for_resource(ResourceKind.config_map)},
            },
            {"name": SCRIPTS_VOLUME, "emptyDir": {}},
            {"name": XENON_VOLUME, "emptyDir": {}},
            {"name": INIT_FILE_VOLUME, "emptyDir": {}},
            {"name": LOGS_VOLUME, "emptyDir": {}},
        ]
        if self.spec.mysql_opts.init_tokudb:
            volumes.append({"name": SYS_VOLUME, "hostPath": {"path": SYS_HOST_PATH}})
        if not self.spec.persistence.enabled:
            volumes.append({"name": DATA_VOLUME, "emptyDir": {}})
        return volumes

    def ensure_volume_claim_templates(self) -> list[dict[str, Any]]:
        persistence = self.spec.persistence
        claim_spec: dict[str, Any] = {
            "accessModes": list(persistence.access_modes),
            "resources": {"requests": {"storage": persistence.size}},
        }
        if persistence.storage_class:
            claim_spec["storageClassName"] = persistence.storage_class
        return [
            {
                "metadata": {"name": DATA_VOLUME, "labels": self.selector_labels()},
                "spec": claim_spec,
            }
        ]

    def copy_of(self, value: Any) -> Any:
        """Deep copy of a spec value, so callers can mutate freely."""
        return copy.deepcopy(value)
