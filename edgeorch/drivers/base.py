"""Orchestrator driver contract.

Every backend (docker, k3s, ...) subclasses :class:`OrchestratorDriver` and
implements the abstract operations. Bookkeeping that is the same for all
backends lives in helper objects the base holds: the target-state handle,
the notifier, the error tracker, the health monitor and the engine.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any, Iterator

from ..errors import DriverError, EdgeOrchError, ServiceNotFoundError
from ..events import Notifier
from ..failures import ErrorTracker
from ..health import HealthMonitor, select_probe
from ..models import (
    APP_ID_LABEL,
    APP_NAME_LABEL,
    App,
    ContainerMetrics,
    CurrentState,
    DriverHealth,
    HealthCheckResult,
    HealthProbe,
    LogStreamOptions,
    NetworkConfig,
    ReconciliationResult,
    Service,
    ServiceStatus,
    TargetState,
    VolumeConfig,
)
from ..reconciler import ReconciliationEngine
from ..settings import Settings, settings as default_settings
from ..state import TargetStateHandle

log = logging.getLogger(__name__)


class OrchestratorDriver(abc.ABC):
    name: str = "base"
    version: str = "1.0.0"

    def __init__(
        self,
        cfg: Settings | None = None,
        notifier: Notifier | None = None,
        errors: ErrorTracker | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.notifier = notifier or Notifier()
        self.errors = errors or ErrorTracker(self.cfg)
        self.target = TargetStateHandle()
        self.health_monitor = HealthMonitor(self.notifier, on_healthy=self._on_healthy)
        self.engine = ReconciliationEngine(self, self.cfg)
        self.ready = False
        self._closed = False
        self._lifecycle_lock = threading.Lock()
        self._health_keys: dict[str, str] = {}  # container_id -> service key

    # -- lifecycle ----------------------------------------------------------

    @abc.abstractmethod
    def init(self) -> None:
        """Connect and verify the backend. Raises DriverInitError if unreachable."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Release everything. Must be safe to call more than once."""

    def is_ready(self) -> bool:
        return self.ready

    def get_health(self) -> DriverHealth:
        return DriverHealth(
            healthy=self.ready,
            message="Driver is operational" if self.ready else "Driver not initialized",
        )

    def _mark_ready(self) -> None:
        with self._lifecycle_lock:
            self.ready = True
            self._closed = False
        self.engine.open()
        self._log("info", "Driver ready")

    def _begin_shutdown(self) -> bool:
        """Stop shared helpers. Returns False if shutdown already happened."""
        with self._lifecycle_lock:
            if self._closed:
                return False
            self._closed = True
            self.ready = False
        self.engine.close(self.cfg.shutdown_timeout_s)
        self.health_monitor.stop_all()
        self._health_keys.clear()
        return True

    # -- state --------------------------------------------------------------

    def set_target_state(self, state: TargetState | dict[str, Any]) -> None:
        snap = self.target.submit(state)
        self._log("debug", "Target state updated", version=snap.version, apps=len(snap.state.apps))

    def get_target_state(self) -> TargetState | None:
        snap = self.target.latest()
        return snap.state if snap else None

    def reconcile(self) -> ReconciliationResult | None:
        """Run one pass. Returns None if a pass was already in flight."""
        return self.engine.reconcile()

    def get_current_state(self) -> CurrentState:
        try:
            services = self.list_services()
            networks = self.list_networks()
            volumes = self.list_volumes()
        except EdgeOrchError:
            raise
        except Exception as e:
            raise DriverError(f"{self.name}: failed to read current state: {e}") from e

        apps: dict[str, dict[str, Any]] = {}

        def _app(app_id: int, app_name: str) -> dict[str, Any]:
            return apps.setdefault(
                str(app_id),
                {"app_id": app_id, "app_name": app_name, "services": [], "networks": [], "volumes": []},
            )

        for svc in services:
            err = self.errors.get(svc.key)
            if err is not None:
                svc = svc.model_copy(update={"error": err})
            _app(svc.app_id, svc.app_name)["services"].append(svc)
        for net in networks:
            owner = net.labels.get(APP_ID_LABEL)
            if owner and owner.isdigit():
                _app(int(owner), net.labels.get(APP_NAME_LABEL, owner))["networks"].append(net)
        for vol in volumes:
            owner = vol.labels.get(APP_ID_LABEL)
            if owner and owner.isdigit():
                _app(int(owner), vol.labels.get(APP_NAME_LABEL, owner))["volumes"].append(vol)

        return CurrentState(apps={k: App(**v) for k, v in apps.items()})

    # -- per service --------------------------------------------------------

    @abc.abstractmethod
    def create_service(self, service: Service) -> str:
        """Create the workload; start it unless desired state is stopped. Returns its instance id."""

    @abc.abstractmethod
    def start_service(self, service_id: str) -> None:
        """Start a stopped instance or resume a paused one."""

    @abc.abstractmethod
    def stop_service(self, service_id: str, timeout: int | None = None) -> None: ...

    @abc.abstractmethod
    def pause_service(self, service_id: str) -> None: ...

    @abc.abstractmethod
    def remove_service(self, service_id: str, force: bool = False) -> None: ...

    @abc.abstractmethod
    def restart_service(self, service_id: str, timeout: int | None = None) -> None: ...

    @abc.abstractmethod
    def get_service_status(self, service_id: str) -> ServiceStatus: ...

    @abc.abstractmethod
    def list_services(self) -> list[Service]: ...

    def find_service(self, service_id: str) -> Service:
        for svc in self.list_services():
            if svc.container_id == service_id:
                return svc
        raise ServiceNotFoundError(service_id)

    # -- logs ---------------------------------------------------------------

    @abc.abstractmethod
    def get_service_logs(self, service_id: str, options: LogStreamOptions | None = None) -> Iterator[str]:
        """Lazy iterator of log lines; endless with ``follow=True`` until closed."""

    # -- health -------------------------------------------------------------

    @abc.abstractmethod
    def execute_health_check(self, service_id: str, probe: HealthProbe | None = None) -> HealthCheckResult:
        """Run ``probe`` (or the service's governing probe) once."""

    def start_health_monitoring(self, service_id: str) -> None:
        svc = self.find_service(service_id)
        self._health_keys[service_id] = svc.key
        self.health_monitor.start(
            svc.key,
            svc.service_name,
            svc.config,
            lambda probe: self.execute_health_check(service_id, probe),
        )

    def stop_health_monitoring(self, service_id: str) -> None:
        key = self._health_keys.pop(service_id, None)
        if key is not None:
            self.health_monitor.stop(key)

    def monitored_health(self, service: Service) -> str | None:
        return self.health_monitor.health_of(service.key)

    def _on_healthy(self, key: str) -> None:
        if self.errors.clear(key):
            self._log("info", "Service error cleared after recovery", service=key)

    def governing_probe(self, service: Service) -> HealthProbe | None:
        return select_probe(service.config, self.health_monitor.startup_done(service.key))

    # -- metrics ------------------------------------------------------------

    @abc.abstractmethod
    def get_service_metrics(self, service_id: str) -> ContainerMetrics: ...

    @abc.abstractmethod
    def get_all_metrics(self) -> list[ContainerMetrics]: ...

    # -- networks -----------------------------------------------------------

    @abc.abstractmethod
    def create_network(self, network: NetworkConfig) -> None: ...

    @abc.abstractmethod
    def remove_network(self, network_name: str) -> None: ...

    @abc.abstractmethod
    def list_networks(self) -> list[NetworkConfig]: ...

    # -- volumes ------------------------------------------------------------

    @abc.abstractmethod
    def create_volume(self, volume: VolumeConfig) -> None: ...

    @abc.abstractmethod
    def remove_volume(self, volume_name: str) -> None: ...

    @abc.abstractmethod
    def list_volumes(self) -> list[VolumeConfig]: ...

    # -- logging helpers ----------------------------------------------------

    def _log(self, level: str, message: str, **meta: Any) -> None:
        extra = {"component": "OrchestratorDriver", "driver": self.name}
        if meta:
            details = " ".join(f"{k}={v}" for k, v in meta.items())
            message = f"{message} ({details})"
        log.log(getattr(logging, level.upper()), message, extra=extra)
