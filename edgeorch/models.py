"""Desired and observed state.

All models are frozen: a TargetState handed to the engine is a snapshot and
can only be replaced, never edited. The JSON wire format is camelCase.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DesiredState = Literal["running", "stopped", "paused"]
LifecycleState = Literal["creating", "running", "stopped", "error", "unknown"]
Health = Literal["healthy", "unhealthy", "starting", "unknown"]
ErrorType = Literal["ImagePullBackOff", "ErrImagePull", "StartFailure", "CrashLoopBackOff", "Unknown"]
ProbeType = Literal["http", "tcp", "exec"]

# Networks every runtime provides; services may reference them without declaring them.
BUILTIN_NETWORKS = frozenset({"bridge", "host", "none", "default"})

# Labels stamped on every backend object the agent owns.
MANAGED_LABEL = "edgeorch.managed"
APP_ID_LABEL = "edgeorch.app-id"
APP_NAME_LABEL = "edgeorch.app-name"
SERVICE_ID_LABEL = "edgeorch.service-id"
SERVICE_NAME_LABEL = "edgeorch.service-name"
SPEC_LABEL = "edgeorch.spec"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HealthProbe(_Model):
    type: ProbeType

    # http
    path: str | None = None
    port: int | None = Field(None, ge=1, le=65535)
    scheme: Literal["http", "https"] = "http"
    headers: dict[str, str] = Field(default_factory=dict)
    expected_status: list[int] | None = None

    # tcp
    tcp_port: int | None = Field(None, ge=1, le=65535)

    # exec
    command: list[str] | None = None

    initial_delay_seconds: int = Field(0, ge=0)
    period_seconds: int = Field(10, ge=1)
    timeout_seconds: int = Field(1, ge=1)
    success_threshold: int = Field(1, ge=1)
    failure_threshold: int = Field(3, ge=1)

    @model_validator(mode="after")
    def _check_type_fields(self) -> "HealthProbe":
        if self.type == "http" and self.port is None:
            raise ValueError("http probe requires 'port'")
        if self.type == "tcp" and self.tcp_port is None and self.port is None:
            raise ValueError("tcp probe requires 'tcpPort'")
        if self.type == "exec" and not self.command:
            raise ValueError("exec probe requires 'command'")
        return self


class ResourceSpec(_Model):
    cpu: str | None = None  # "0.5", "2", "500m"
    memory: str | None = None  # "512M", "1G", "256Mi"


class Resources(_Model):
    limits: ResourceSpec | None = None
    requests: ResourceSpec | None = None


class ContainerConfig(_Model):
    image: str
    environment: dict[str, str] = Field(default_factory=dict)
    ports: list[str] = Field(default_factory=list)  # "8080:80", "53:53/udp"
    volumes: list[str] = Field(default_factory=list)  # "data:/var/lib/data", "/host:/ctr:ro"
    networks: list[str] = Field(default_factory=list)
    network_mode: str | None = None
    restart: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    working_dir: str | None = None
    user: str | None = None
    hostname: str | None = None
    domainname: str | None = None
    resources: Resources | None = None
    liveness_probe: HealthProbe | None = None
    readiness_probe: HealthProbe | None = None
    startup_probe: HealthProbe | None = None

    def named_volumes(self) -> list[str]:
        """Sources of volume mappings that refer to named volumes, not host paths."""
        out = []
        for spec in self.volumes:
            source = spec.split(":", 1)[0]
            if ":" in spec and source and not source.startswith(("/", ".", "~")):
                out.append(source)
        return out

    def has_probes(self) -> bool:
        return any([self.liveness_probe, self.readiness_probe, self.startup_probe])


class ServiceStatus(_Model):
    state: LifecycleState = "unknown"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    restart_count: int = 0
    health: Health = "unknown"
    message: str | None = None
    paused: bool = False


class ServiceError(_Model):
    type: ErrorType = "Unknown"
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    next_retry: datetime | None = None


class Service(_Model):
    service_id: int
    service_name: str = Field(..., min_length=1)
    app_id: int
    app_name: str
    image_name: str
    state: DesiredState = "running"
    config: ContainerConfig

    # Observed fields, filled in by drivers for CurrentState.
    container_id: str | None = None
    status: ServiceStatus | None = None
    error: ServiceError | None = None

    @property
    def key(self) -> str:
        return service_key(self.app_id, self.service_id)


class NetworkConfig(_Model):
    name: str = Field(..., min_length=1)
    driver: str | None = None
    internal: bool = False
    ipam: dict | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class VolumeConfig(_Model):
    name: str = Field(..., min_length=1)
    driver: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    driver_opts: dict[str, str] = Field(default_factory=dict)


class App(_Model):
    app_id: int
    app_name: str = Field(..., min_length=1)
    app_uuid: str | None = None
    services: list[Service] = Field(default_factory=list)
    networks: list[NetworkConfig] = Field(default_factory=list)
    volumes: list[VolumeConfig] = Field(default_factory=list)

    def service_by_id(self, service_id: int) -> Service | None:
        for svc in self.services:
            if svc.service_id == service_id:
                return svc
        return None


class K3sSettings(_Model):
    namespace: str | None = None
    in_cluster: bool = True


class TargetSettings(_Model):
    orchestrator: Literal["docker", "k3s"] | None = None
    k3s: K3sSettings | None = None
    reconciliation_interval_ms: int | None = Field(None, ge=1000)
    target_state_poll_interval_ms: int | None = Field(None, ge=1000)
    device_report_interval_ms: int | None = Field(None, ge=1000)
    metrics_interval_ms: int | None = Field(None, ge=1000)


class TargetState(_Model):
    apps: dict[str, App] = Field(default_factory=dict)
    settings: TargetSettings = Field(default_factory=TargetSettings)
    features: dict[str, bool] = Field(default_factory=dict)
    log_level: str | None = None

    @model_validator(mode="after")
    def _check_apps(self) -> "TargetState":
        for key, app in self.apps.items():
            if key != str(app.app_id):
                raise ValueError(f"app key '{key}' does not match appId {app.app_id}")
            names: set[str] = set()
            ids: set[int] = set()
            declared_networks = {n.name for n in app.networks}
            declared_volumes = {v.name for v in app.volumes}
            for svc in app.services:
                if svc.app_id != app.app_id:
                    raise ValueError(f"service '{svc.service_name}' belongs to app {svc.app_id}, not {app.app_id}")
                if svc.service_name in names:
                    raise ValueError(f"duplicate serviceName '{svc.service_name}' in app {app.app_id}")
                if svc.service_id in ids:
                    raise ValueError(f"duplicate serviceId {svc.service_id} in app {app.app_id}")
                names.add(svc.service_name)
                ids.add(svc.service_id)
                for net in svc.config.networks:
                    if net not in declared_networks and net not in BUILTIN_NETWORKS:
                        raise ValueError(f"service '{svc.service_name}' references undeclared network '{net}'")
                for vol in svc.config.named_volumes():
                    if vol not in declared_volumes:
                        raise ValueError(f"service '{svc.service_name}' references undeclared volume '{vol}'")
        return self

    def services(self) -> list[Service]:
        return [svc for app in self.apps.values() for svc in app.services]


class CurrentState(_Model):
    apps: dict[str, App] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def services(self) -> list[Service]:
        return [svc for app in self.apps.values() for svc in app.services]


class ReconciliationError(_Model):
    service_name: str
    error: str


class ReconciliationResult(_Model):
    success: bool = True
    services_created: int = 0
    services_updated: int = 0
    services_removed: int = 0
    errors: list[ReconciliationError] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class LogStreamOptions(_Model):
    follow: bool = False
    tail: int | None = Field(None, ge=0)
    since: datetime | None = None
    timestamps: bool = False
    stdout: bool = True
    stderr: bool = True


class CpuUsage(_Model):
    usage: float  # percent
    cores: int | None = None


class MemoryUsage(_Model):
    usage: int  # bytes
    limit: int | None = None
    percentage: float | None = None


class NetworkIO(_Model):
    rx_bytes: int
    tx_bytes: int


class ContainerMetrics(_Model):
    container_id: str
    service_name: str
    cpu: CpuUsage
    memory: MemoryUsage
    network: NetworkIO | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class DriverHealth(_Model):
    healthy: bool
    message: str | None = None
    last_check: datetime = Field(default_factory=utc_now)


class HealthCheckResult(_Model):
    healthy: bool
    message: str | None = None


def service_key(app_id: int, service_id: int) -> str:
    return f"{app_id}:{service_id}"


def scoped_name(app_id: int, name: str) -> str:
    """Backend name of an app-owned network or volume."""
    return f"{app_id}_{name}"


def desired_spec(service: Service) -> dict:
    """The part of a Service that describes what should run (no observed fields)."""
    return service.model_dump(
        mode="json",
        by_alias=True,
        include={"service_id", "service_name", "app_id", "app_name", "image_name", "state", "config"},
    )


def config_fingerprint(service: Service) -> str:
    """Hash of everything that forces a recreate when it changes.

    Desired ``state`` is excluded: it converges through start/stop/pause.
    """
    spec = desired_spec(service)
    spec.pop("state", None)
    raw = json.dumps(spec, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def state_hash(state: TargetState) -> str:
    raw = json.dumps(state.model_dump(mode="json", by_alias=True), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
