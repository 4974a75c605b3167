from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterator

from . import db
from .alerts import AlertSink
from .drivers import OrchestratorDriver, create_driver
from .errors import DriverInitError, InvalidTargetStateError, ServiceNotFoundError
from .events import (
    ALL,
    HealthChanged,
    ReconciliationComplete,
    ServiceErrored,
    ServiceStarted,
    ServiceStopped,
)
from .models import ContainerMetrics, LogStreamOptions, ReconciliationResult, Service, TargetState
from .resilience import CircuitBreaker, call_with_timeout
from .settings import Settings, settings as default_settings

log = logging.getLogger(__name__)


class Agent:
    """Wires a driver to persistence, alerts and the periodic reconcile loop."""

    def __init__(
        self,
        cfg: Settings | None = None,
        driver: OrchestratorDriver | None = None,
        db_path: str | None = None,
        alerts: AlertSink | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.driver = driver or create_driver(self.cfg.orchestrator, self.cfg)
        self.db_path = db_path or self.cfg.db_path
        self.alerts = alerts or AlertSink(self.cfg)
        self.breaker = breaker or CircuitBreaker(self.cfg.breaker_max_failures, self.cfg.breaker_cooldown_ms)
        self.last_result: ReconciliationResult | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thr: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False
        self._lock = threading.Lock()

    # -- lifecycle ----------------------------------------------------------

    def start(self, run_loop: bool = True) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        db.init_db(self.db_path)
        self._unsubscribe = self.driver.notifier.subscribe(ALL, self._record_event)
        self.alerts.attach(self.driver.notifier)

        try:
            try:
                call_with_timeout(self.driver.init, self.cfg.init_timeout_s)
            except TimeoutError as e:
                raise DriverInitError(
                    f"{self.driver.name} driver did not initialize within {self.cfg.init_timeout_s}s"
                ) from e
        except Exception as e:
            # Undo the wiring so a later start() can try again.
            self._detach()
            with self._lock:
                self._started = False
            db.log_event("ERROR", f"{self.driver.name} driver failed to initialize: {e}", path=self.db_path)
            raise
        db.log_event("INFO", f"{self.driver.name} driver initialized", path=self.db_path)

        restored = db.load_target_state(self.db_path)
        if restored is not None:
            self.driver.set_target_state(restored)
            log.info("Restored target state with %d app(s)", len(restored.apps))

        if run_loop:
            self._stop.clear()
            self._thr = threading.Thread(target=self._loop, name="reconcile-loop", daemon=True)
            self._thr.start()

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._started = False
        self._stop.set()
        self._wake.set()
        if self._thr is not None and self._thr is not threading.current_thread():
            self._thr.join(timeout=self.cfg.shutdown_timeout_s)
        try:
            call_with_timeout(self.driver.shutdown, self.cfg.shutdown_timeout_s)
        except TimeoutError:
            log.warning("Driver shutdown did not finish within %ss", self.cfg.shutdown_timeout_s)
        self._detach()
        db.log_event("INFO", f"{self.driver.name} driver stopped", path=self.db_path)

    def _detach(self) -> None:
        self.alerts.detach()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- target state -------------------------------------------------------

    def set_target_state(self, state: TargetState | dict[str, Any]) -> TargetState:
        """Validate, persist and schedule a pass. Invalid input keeps the old state."""
        self.driver.set_target_state(state)
        accepted = self.driver.get_target_state()
        if accepted is None:
            raise InvalidTargetStateError("target state was not accepted by the driver")
        if db.save_target_state(accepted, self.db_path):
            db.log_event("INFO", f"Target state updated ({len(accepted.apps)} apps)", path=self.db_path)
        wanted = accepted.settings.orchestrator
        if wanted and wanted != self.driver.name:
            log.warning("Target state asks for orchestrator '%s' but '%s' is running", wanted, self.driver.name)
        if accepted.log_level:
            level = getattr(logging, accepted.log_level.upper(), None)
            if isinstance(level, int):
                logging.getLogger().setLevel(level)
        self.trigger()
        return accepted

    def get_target_state(self) -> TargetState | None:
        return self.driver.get_target_state()

    # -- reconcile loop -----------------------------------------------------

    def trigger(self) -> None:
        """Wake the loop for an immediate pass."""
        self._wake.set()

    def reconcile_now(self) -> ReconciliationResult | None:
        result = self.driver.reconcile()
        if result is not None:
            self.last_result = result
        return result

    def interval_s(self) -> float:
        target = self.driver.get_target_state()
        if target is not None and target.settings.reconciliation_interval_ms:
            return target.settings.reconciliation_interval_ms / 1000.0
        return float(max(1, self.cfg.reconcile_interval_s))

    def _loop(self) -> None:
        db.log_event("INFO", "Reconcile loop started", path=self.db_path)
        while not self._stop.is_set():
            self._tick()
            self._wake.wait(self._next_wait())
            self._wake.clear()

    def _next_wait(self) -> float:
        if self.breaker.is_open():
            return max(0.1, self.breaker.cooldown_remaining() / 1000.0)
        return self.interval_s()

    def _tick(self) -> None:
        if self.breaker.is_open():
            return
        try:
            result = self.reconcile_now()
        except Exception as e:
            self.breaker.record_failure()
            log.error("Reconciliation pass failed: %s: %s", type(e).__name__, e)
            db.log_event("ERROR", f"Reconciliation failed: {type(e).__name__}: {e}", path=self.db_path)
            if self.breaker.is_open():
                msg = (
                    f"Reconciliation halted after {self.breaker.failure_count} consecutive failures, "
                    f"retrying in {self.breaker.cooldown_remaining() / 1000.0:.0f}s"
                )
                log.error(msg)
                db.log_event("ERROR", msg, path=self.db_path)
            return
        if result is not None:
            self.breaker.record_success()

    # -- management ---------------------------------------------------------

    def services(self) -> list[Service]:
        return self.driver.get_current_state().services()

    def _app_services(self, app_id: int) -> list[Service]:
        found = [svc for svc in self.services() if svc.app_id == app_id and svc.container_id]
        if not found:
            raise ServiceNotFoundError(f"app {app_id}")
        return found

    def _each_service(self, app_id: int, action: str, op: Callable[[str], None]) -> list[str]:
        done = []
        for svc in self._app_services(app_id):
            self.driver.engine.run_exclusive(svc.key, lambda cid=svc.container_id: op(cid))
            db.log_event("INFO", f"{action} requested via API", event=action, service_name=svc.service_name, path=self.db_path)
            done.append(svc.service_name)
        return done

    def start_app(self, app_id: int) -> list[str]:
        return self._each_service(app_id, "start", self.driver.start_service)

    def stop_app(self, app_id: int) -> list[str]:
        def _stop(cid: str) -> None:
            self.driver.stop_health_monitoring(cid)
            self.driver.stop_service(cid, self.cfg.stop_timeout_s)

        return self._each_service(app_id, "stop", _stop)

    def restart_app(self, app_id: int) -> list[str]:
        return self._each_service(
            app_id, "restart", lambda cid: self.driver.restart_service(cid, self.cfg.stop_timeout_s)
        )

    def logs(self, service_id: str, options: LogStreamOptions | None = None) -> Iterator[str]:
        return self.driver.get_service_logs(service_id, options)

    def metrics(self, service_id: str | None = None) -> list[ContainerMetrics]:
        if service_id:
            return [self.driver.get_service_metrics(service_id)]
        return self.driver.get_all_metrics()

    # -- event log ----------------------------------------------------------

    def _record_event(self, event: Any) -> None:
        if isinstance(event, ServiceStarted):
            db.log_event("INFO", f"Started ({event.container_id})", event.name, event.service_name, self.db_path)
        elif isinstance(event, ServiceStopped):
            suffix = f", exit code {event.exit_code}" if event.exit_code is not None else ""
            db.log_event("INFO", f"Stopped ({event.container_id}{suffix})", event.name, event.service_name, self.db_path)
        elif isinstance(event, ServiceErrored):
            db.log_event("ERROR", str(event.error), event.name, event.service_name, self.db_path)
        elif isinstance(event, HealthChanged):
            level = "WARNING" if event.health == "unhealthy" else "INFO"
            db.log_event(level, f"Health is {event.health}", event.name, event.service_name, self.db_path)
        elif isinstance(event, ReconciliationComplete):
            r = event.result
            if r.services_created or r.services_updated or r.services_removed or r.errors:
                db.log_event(
                    "WARNING" if r.errors else "INFO",
                    f"Reconciled: created={r.services_created} updated={r.services_updated} "
                    f"removed={r.services_removed} errors={len(r.errors)}",
                    event.name,
                    path=self.db_path,
                )
