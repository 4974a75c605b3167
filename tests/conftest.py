from __future__ import annotations

import itertools
import threading
from typing import Any, Iterator

import pytest

from edgeorch.drivers.base import OrchestratorDriver
from edgeorch.models import (
    ContainerMetrics,
    CpuUsage,
    HealthCheckResult,
    HealthProbe,
    LogStreamOptions,
    MemoryUsage,
    NetworkConfig,
    Service,
    ServiceStatus,
    TargetState,
    VolumeConfig,
)
from edgeorch.settings import Settings


def make_cfg(**overrides: Any) -> Settings:
    base = dict(
        op_max_attempts=1,
        op_base_delay_ms=0,
        op_max_delay_ms=0,
        init_timeout_s=5.0,
        shutdown_timeout_s=5.0,
        error_jitter=0.0,
        reconcile_interval_s=3600,
        api_user="admin",
        api_password="secret",
    )
    base.update(overrides)
    return Settings(**base)


def make_service(
    name: str = "web",
    service_id: int = 1,
    app_id: int = 1,
    app_name: str = "demo",
    image: str = "nginx:1.25",
    state: str = "running",
    **config: Any,
) -> dict[str, Any]:
    return {
        "serviceId": service_id,
        "serviceName": name,
        "appId": app_id,
        "appName": app_name,
        "imageName": image,
        "state": state,
        "config": {"image": image, **config},
    }


def make_target(*services: dict[str, Any], networks: Any = (), volumes: Any = (), **extra: Any) -> dict[str, Any]:
    """Target-state JSON grouping ``services`` into apps by appId."""
    apps: dict[str, dict[str, Any]] = {}
    for svc in services:
        app = apps.setdefault(
            str(svc["appId"]),
            {"appId": svc["appId"], "appName": svc["appName"], "services": [], "networks": [], "volumes": []},
        )
        app["services"].append(svc)
    for app in apps.values():
        app["networks"] = [{"name": n} for n in networks]
        app["volumes"] = [{"name": v} for v in volumes]
    return {"apps": apps, **extra}


class FakeDriver(OrchestratorDriver):
    """In-memory backend that records every call.

    ``fail(op, target, exc, times)`` makes the next ``times`` calls of
    ``op`` on ``target`` (service or resource name) raise ``exc``.
    """

    name = "fake"

    def __init__(self, cfg: Settings | None = None, **kwargs: Any) -> None:
        super().__init__(cfg or make_cfg(), **kwargs)
        self.containers: dict[str, dict[str, Any]] = {}
        self.networks: dict[str, NetworkConfig] = {}
        self.volumes: dict[str, VolumeConfig] = {}
        self.calls: list[tuple[str, str]] = []
        self.health_results: dict[str, bool] = {}
        self.shutdown_calls = 0
        self.list_gate: threading.Event | None = None
        self.list_entered = threading.Event()
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)

    # -- test controls ------------------------------------------------------

    def fail(self, op: str, target: str, exc: BaseException, times: int = 1) -> None:
        self._failures.setdefault((op, target), []).extend([exc] * times)

    def ops(self, op: str) -> list[str]:
        return [target for name, target in self.calls if name == op]

    def cid_of(self, service_name: str) -> str:
        for cid, entry in self.containers.items():
            if entry["service"].service_name == service_name:
                return cid
        raise KeyError(service_name)

    def _record(self, op: str, target: str) -> None:
        self.calls.append((op, target))
        pending = self._failures.get((op, target))
        if pending:
            raise pending.pop(0)

    def _entry(self, cid: str) -> dict[str, Any]:
        from edgeorch.errors import ServiceNotFoundError

        if cid not in self.containers:
            raise ServiceNotFoundError(cid)
        return self.containers[cid]

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> None:
        self._mark_ready()

    def shutdown(self) -> None:
        if not self._begin_shutdown():
            return
        self.shutdown_calls += 1

    # -- per service --------------------------------------------------------

    def create_service(self, service: Service) -> str:
        self._record("create", service.service_name)
        cid = f"c{next(self._ids)}"
        self.containers[cid] = {"service": service, "state": service.state, "restarts": 0, "logs": []}
        return cid

    def start_service(self, service_id: str) -> None:
        entry = self._entry(service_id)
        self._record("start", entry["service"].service_name)
        entry["state"] = "running"

    def stop_service(self, service_id: str, timeout: int | None = None) -> None:
        entry = self._entry(service_id)
        self._record("stop", entry["service"].service_name)
        entry["state"] = "stopped"

    def pause_service(self, service_id: str) -> None:
        entry = self._entry(service_id)
        self._record("pause", entry["service"].service_name)
        entry["state"] = "paused"

    def remove_service(self, service_id: str, force: bool = False) -> None:
        entry = self._entry(service_id)
        self._record("remove", entry["service"].service_name)
        del self.containers[service_id]

    def restart_service(self, service_id: str, timeout: int | None = None) -> None:
        entry = self._entry(service_id)
        self._record("restart", entry["service"].service_name)
        entry["state"] = "running"
        entry["restarts"] += 1

    def _status(self, cid: str, entry: dict[str, Any]) -> ServiceStatus:
        state = entry["state"]
        monitored = self.health_monitor.health_of(entry["service"].key)
        if state == "running":
            return ServiceStatus(state="running", health=monitored or "healthy", restart_count=entry["restarts"])
        if state == "paused":
            return ServiceStatus(state="stopped", paused=True)
        if state == "error":
            return ServiceStatus(state="error", exit_code=1, health="unhealthy")
        return ServiceStatus(state="stopped", exit_code=0)

    def get_service_status(self, service_id: str) -> ServiceStatus:
        return self._status(service_id, self._entry(service_id))

    def list_services(self) -> list[Service]:
        self.list_entered.set()
        if self.list_gate is not None:
            self.list_gate.wait(5)
        return [
            entry["service"].model_copy(update={"container_id": cid, "status": self._status(cid, entry)})
            for cid, entry in list(self.containers.items())
        ]

    # -- logs / health / metrics -------------------------------------------

    def get_service_logs(self, service_id: str, options: LogStreamOptions | None = None) -> Iterator[str]:
        lines = list(self._entry(service_id)["logs"])
        if options is not None and options.tail is not None:
            lines = lines[-options.tail :] if options.tail else []
        return iter(lines)

    def execute_health_check(self, service_id: str, probe: HealthProbe | None = None) -> HealthCheckResult:
        ok = self.health_results.get(service_id, True)
        return HealthCheckResult(healthy=ok, message="ok" if ok else "failing")

    def get_service_metrics(self, service_id: str) -> ContainerMetrics:
        entry = self._entry(service_id)
        return ContainerMetrics(
            container_id=service_id,
            service_name=entry["service"].service_name,
            cpu=CpuUsage(usage=1.5, cores=2),
            memory=MemoryUsage(usage=1024, limit=4096, percentage=25.0),
        )

    def get_all_metrics(self) -> list[ContainerMetrics]:
        return [self.get_service_metrics(cid) for cid in self.containers]

    # -- networks / volumes -------------------------------------------------

    def create_network(self, network: NetworkConfig) -> None:
        self._record("create_network", network.name)
        self.networks[network.name] = network

    def remove_network(self, network_name: str) -> None:
        self._record("remove_network", network_name)
        self.networks.pop(network_name, None)

    def list_networks(self) -> list[NetworkConfig]:
        return list(self.networks.values())

    def create_volume(self, volume: VolumeConfig) -> None:
        self._record("create_volume", volume.name)
        self.volumes[volume.name] = volume

    def remove_volume(self, volume_name: str) -> None:
        self._record("remove_volume", volume_name)
        self.volumes.pop(volume_name, None)

    def list_volumes(self) -> list[VolumeConfig]:
        return list(self.volumes.values())


@pytest.fixture()
def cfg() -> Settings:
    return make_cfg()


@pytest.fixture()
def driver(cfg: Settings) -> Iterator[FakeDriver]:
    d = FakeDriver(cfg)
    d.init()
    yield d
    d.shutdown()


@pytest.fixture()
def events(driver: FakeDriver) -> list[Any]:
    received: list[Any] = []
    driver.notifier.subscribe("*", received.append)
    return received


def target_state(*services: dict[str, Any], **kwargs: Any) -> TargetState:
    return TargetState.model_validate(make_target(*services, **kwargs))
