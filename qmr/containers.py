"""Container role registry.

Every role maps to one pure builder returning the parts of a container
(image, command, env, probes, mounts...). ``build_container`` assembles those
parts into a Kubernetes container manifest, leaving out empty fields the way
the API server serializes them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .cluster import (
    CONF_CLIENT_PATH,
    CONF_MAP_MOUNT_PATH,
    CONF_MAP_VOLUME,
    CONF_MOUNT_PATH,
    CONF_VOLUME,
    DATA_MOUNT_PATH,
    DATA_VOLUME,
    INIT_FILE_MOUNT_PATH,
    INIT_FILE_VOLUME,
    LOGS_MOUNT_PATH,
    LOGS_VOLUME,
    METRICS_PORT,
    METRICS_PORT_NAME,
    MYSQL_PORT,
    MYSQL_PORT_NAME,
    SCRIPTS_MOUNT_PATH,
    SCRIPTS_VOLUME,
    SYS_MOUNT_PATH,
    SYS_VOLUME,
    XENON_MOUNT_PATH,
    XENON_PORT,
    XENON_PORT_NAME,
    XENON_VOLUME,
    ClusterView,
    ResourceKind,
)


class ContainerRole(str, Enum):
    mysql = "mysql"
    xenon = "xenon"
    init_sidecar = "init-sidecar"
    init_mysql = "init-mysql"
    metrics = "metrics"
    slow_log = "slow-log"
    audit_log = "audit-log"


@dataclass
class ContainerParts:
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    env: list[dict[str, Any]] = field(default_factory=list)
    lifecycle: dict[str, Any] | None = None
    resources: dict[str, Any] = field(default_factory=dict)
    ports: list[dict[str, Any]] = field(default_factory=list)
    liveness_probe: dict[str, Any] | None = None
    readiness_probe: dict[str, Any] | None = None
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)


def _mount(name: str, path: str) -> dict[str, Any]:
    return {"name": name, "mountPath": path}


def _env(name: str, value: str) -> dict[str, Any]:
    return {"name": name, "value": value}


def _port(name: str, port: int) -> dict[str, Any]:
    # Spelled out so a stored container compares equal after server defaulting.
    return {"name": name, "containerPort": port, "protocol": "TCP"}


def _env_from_secret(secret: str, name: str, key: str, optional: bool) -> dict[str, Any]:
    return {
        "name": name,
        "valueFrom": {"secretKeyRef": {"name": secret, "key": key, "optional": optional}},
    }


def _exec_probe(command: str, initial_delay: int, timeout: int, period: int, success: int, failure: int) -> dict[str, Any]:
    return {
        "exec": {"command": ["sh", "-c", command]},
        "initialDelaySeconds": initial_delay,
        "timeoutSeconds": timeout,
        "periodSeconds": period,
        "successThreshold": success,
        "failureThreshold": failure,
    }


def _tokudb_env(view: ClusterView) -> list[dict[str, Any]]:
    if view.spec.mysql_opts.init_tokudb:
        return [_env("INIT_TOKUDB", "1")]
    return []


def _mysql(view: ClusterView) -> ContainerParts:
    return ContainerParts(
        name=ContainerRole.mysql.value,
        image=view.mysql_image(),
        env=_tokudb_env(view),
        resources=view.copy_of(view.spec.mysql_opts.resources),
        ports=[_port(MYSQL_PORT_NAME, MYSQL_PORT)],
        liveness_probe=_exec_probe(
            f"mysqladmin --defaults-file={CONF_CLIENT_PATH} ping",
            initial_delay=30,
            timeout=5,
            period=10,
            success=1,
            failure=3,
        ),
        readiness_probe=_exec_probe(
            f'test $(mysql --defaults-file={CONF_CLIENT_PATH} -NB -e "SELECT 1") -eq 1',
            initial_delay=10,
            timeout=1,
            period=10,
            success=1,
            failure=3,
        ),
        volume_mounts=[
            _mount(CONF_VOLUME, CONF_MOUNT_PATH),
            _mount(DATA_VOLUME, DATA_MOUNT_PATH),
            _mount(LOGS_VOLUME, LOGS_MOUNT_PATH),
        ],
    )


def _xenon(view: ClusterView) -> ContainerParts:
    return ContainerParts(
        name=ContainerRole.xenon.value,
        image=view.spec.xenon_opts.image,
        lifecycle={
            "postStart": {
                "exec": {"command": ["sh", "-c", "until (xenoncli xenon ping && xenoncli cluster status); do sleep 2; done"]}
            }
        },
        resources=view.copy_of(view.spec.xenon_opts.resources),
        ports=[_port(XENON_PORT_NAME, XENON_PORT)],
        liveness_probe=_exec_probe("pgrep xenon", initial_delay=30, timeout=5, period=10, success=1, failure=3),
        readiness_probe=_exec_probe("xenoncli xenon ping", initial_delay=10, timeout=5, period=10, success=1, failure=3),
        volume_mounts=[
            _mount(SCRIPTS_VOLUME, SCRIPTS_MOUNT_PATH),
            _mount(XENON_VOLUME, XENON_MOUNT_PATH),
        ],
    )


def _init_sidecar(view: ClusterView) -> ContainerParts:
    spec = view.spec
    secret = view.name_for_resource(ResourceKind.secret)
    env: list[dict[str, Any]] = [
        {"name": "POD_HOSTNAME", "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.name"}}},
        _env("NAMESPACE", view.namespace),
        _env("SERVICE_NAME", view.name_for_resource(ResourceKind.headless_svc)),
        _env("ADMIT_DEFEAT_HEARBEAT_COUNT", str(spec.xenon_opts.admit_defeat_heartbeat_count)),
        _env("ELECTION_TIMEOUT", str(spec.xenon_opts.election_timeout)),
        _env("MY_MYSQL_VERSION", view.mysql_version()),
        _env_from_secret(secret, "MYSQL_ROOT_PASSWORD", "root-password", False),
        _env_from_secret(secret, "MYSQL_DATABASE", "mysql-database", True),
        _env_from_secret(secret, "MYSQL_USER", "mysql-user", True),
        _env_from_secret(secret, "MYSQL_PASSWORD", "mysql-password", True),
        _env_from_secret(secret, "MYSQL_REPL_USER", "replication-user", True),
        _env_from_secret(secret, "MYSQL_REPL_PASSWORD", "replication-password", True),
        _env_from_secret(secret, "METRICS_USER", "metrics-user", True),
        _env_from_secret(secret, "METRICS_PASSWORD", "metrics-password", True),
        _env_from_secret(secret, "OPERATOR_USER", "operator-user", True),
        _env_from_secret(secret, "OPERATOR_PASSWORD", "operator-password", True),
    ]
    env.extend(_tokudb_env(view))

    mounts = [
        _mount(CONF_VOLUME, CONF_MOUNT_PATH),
        _mount(CONF_MAP_VOLUME, CONF_MAP_MOUNT_PATH),
        _mount(SCRIPTS_VOLUME, SCRIPTS_MOUNT_PATH),
        _mount(XENON_VOLUME, XENON_MOUNT_PATH),
        _mount(INIT_FILE_VOLUME, INIT_FILE_MOUNT_PATH),
    ]
    if spec.mysql_opts.init_tokudb:
        mounts.append(_mount(SYS_VOLUME, SYS_MOUNT_PATH))
    if spec.persistence.enabled:
        mounts.append(_mount(DATA_VOLUME, DATA_MOUNT_PATH))

    return ContainerParts(
        name=ContainerRole.init_sidecar.value,
        image=spec.pod_spec.sidecar_image,
        command=["sidecar", "init"],
        env=env,
        resources=view.copy_of(spec.pod_spec.resources),
        volume_mounts=mounts,
    )


def _init_mysql(view: ClusterView) -> ContainerParts:
    secret = view.name_for_resource(ResourceKind.secret)
    env = [
        _env("MYSQL_ALLOW_EMPTY_PASSWORD", "yes"),
        _env("MYSQL_ROOT_HOST", view.spec.mysql_opts.root_host),
        _env_from_secret(secret, "MYSQL_ROOT_PASSWORD", "root-password", False),
    ]
    env.extend(_tokudb_env(view))
    return ContainerParts(
        name=ContainerRole.init_mysql.value,
        image=view.mysql_image(),
        env=env,
        resources=view.copy_of(view.spec.mysql_opts.resources),
        volume_mounts=[
            _mount(CONF_VOLUME, CONF_MOUNT_PATH),
            _mount(DATA_VOLUME, DATA_MOUNT_PATH),
            _mount(LOGS_VOLUME, LOGS_MOUNT_PATH),
            _mount(INIT_FILE_VOLUME, INIT_FILE_MOUNT_PATH),
        ],
    )


def _metrics(view: ClusterView) -> ContainerParts:
    def http_probe(initial_delay: int) -> dict[str, Any]:
        return {
            "httpGet": {"path": "/metrics", "port": METRICS_PORT, "scheme": "HTTP"},
            "initialDelaySeconds": initial_delay,
            "timeoutSeconds": 5,
            "periodSeconds": 10,
            "successThreshold": 1,
            "failureThreshold": 3,
        }

    return ContainerParts(
        name=ContainerRole.metrics.value,
        image=view.spec.metrics_opts.image,
        env=[
            _env_from_secret(view.name_for_resource(ResourceKind.secret), "DATA_SOURCE_NAME", "data-source", True),
        ],
        resources=view.copy_of(view.spec.metrics_opts.resources),
        ports=[_port(METRICS_PORT_NAME, METRICS_PORT)],
        liveness_probe=http_probe(15),
        readiness_probe=http_probe(5),
    )


def _log_tail(role: ContainerRole, log_file: str) -> Callable[[ClusterView], ContainerParts]:
    def build(view: ClusterView) -> ContainerParts:
        return ContainerParts(
            name=role.value,
            image=view.spec.pod_spec.busybox_image,
            command=["tail", "-F", log_file],
            resources=view.copy_of(view.spec.pod_spec.resources),
            volume_mounts=[_mount(LOGS_VOLUME, LOGS_MOUNT_PATH)],
        )

    return build


_REGISTRY: dict[ContainerRole, Callable[[ClusterView], ContainerParts]] = {
    ContainerRole.mysql: _mysql,
    ContainerRole.xenon: _xenon,
    ContainerRole.init_sidecar: _init_sidecar,
    ContainerRole.init_mysql: _init_mysql,
    ContainerRole.metrics: _metrics,
    ContainerRole.slow_log: _log_tail(ContainerRole.slow_log, f"{LOGS_MOUNT_PATH}/mysql-slow.log"),
    ContainerRole.audit_log: _log_tail(ContainerRole.audit_log, f"{LOGS_MOUNT_PATH}/mysql-audit.log"),
}


def container_parts(role: ContainerRole, view: ClusterView) -> ContainerParts:
    return _REGISTRY[ContainerRole(role)](view)


def build_container(role: ContainerRole, view: ClusterView) -> dict[str, Any]:
    """Container manifest for ``role``. Raises ValueError for an unknown role."""
    parts = container_parts(role, view)
    container: dict[str, Any] = {
        "name": parts.name,
        "image": parts.image,
        "imagePullPolicy": view.spec.pod_spec.image_pull_policy,
    }
    if parts.command:
        container["command"] = parts.command
    if parts.env:
        container["env"] = parts.env
    if parts.lifecycle:
        container["lifecycle"] = parts.lifecycle
    if parts.resources:
        container["resources"] = parts.resources
    if parts.ports:
        container["ports"] = parts.ports
    if parts.liveness_probe:
        container["livenessProbe"] = parts.liveness_probe
    if parts.readiness_probe:
        container["readinessProbe"] = parts.readiness_probe
    if parts.volume_mounts:
        container["volumeMounts"] = parts.volume_mounts
    return container
