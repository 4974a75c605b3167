"""Diff-and-apply between the target state and what the driver observes.

One pass:

 1. promote the latest target state submission
 2. read the current state from the driver
 3. create missing networks/volumes of desired apps
 4. remove services that are no longer desired
 5. per app, in declaration order: create, recreate or transition services
 6. remove networks of apps that are gone

Every per-service step runs isolated: its failure is recorded as a
ServiceError and listed in the result, and the pass carries on.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Literal, TypeVar

from .errors import DriverNotReadyError, ServiceOperationError, is_retryable
from .events import ReconciliationComplete, ServiceErrored, ServiceStarted, ServiceStopped
from .models import (
    APP_ID_LABEL,
    APP_NAME_LABEL,
    App,
    CurrentState,
    ReconciliationError,
    ReconciliationResult,
    Service,
    ServiceStatus,
    config_fingerprint,
    scoped_name,
)
from .resilience import KeyedLock, RetryConfig, RetryPolicy, SingleFlightLock
from .settings import Settings

if TYPE_CHECKING:
    from .drivers.base import OrchestratorDriver

log = logging.getLogger(__name__)

T = TypeVar("T")

Action = Literal["create", "recreate", "start", "stop", "pause", "remove"]

# Actions that are skipped while a previous failure is still backing off.
BACKOFF_ACTIONS = frozenset({"create", "recreate", "start", "pause"})


def plan_action(desired: Service, observed: Service | None) -> Action | None:
    """Smallest step that moves ``observed`` toward ``desired`` (None if converged)."""
    if observed is None:
        return "create"
    if config_fingerprint(desired) != config_fingerprint(observed):
        return "recreate"

    status = observed.status or ServiceStatus()
    active = status.state in {"running", "creating"} and not status.paused
    if desired.state == "running":
        return None if active else "start"
    if desired.state == "stopped":
        return "stop" if (active or status.paused) else None
    return None if status.paused else "pause"


@dataclass
class Outcome:
    service_name: str
    created: int = 0
    updated: int = 0
    removed: int = 0
    error: str | None = None
    skipped: bool = False


@dataclass
class _Step:
    action: Action
    key: str
    service_name: str
    desired: Service | None = None
    observed: Service | None = None
    blocked_by: str | None = None


def _required(value: T | None, step: _Step) -> T:
    if value is None:
        raise RuntimeError(f"{step.action} of {step.service_name} planned without the service it acts on")
    return value


class ReconciliationEngine:
    def __init__(self, driver: OrchestratorDriver, cfg: Settings, sleep: Callable[[float], None] = time.sleep) -> None:
        self.driver = driver
        self.cfg = cfg
        self.lock = SingleFlightLock()
        self.service_locks = KeyedLock()
        self._sleep = sleep
        self._closed = False

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> None:
        self._closed = False

    def close(self, timeout_s: float | None = None) -> bool:
        """Stop taking new steps and wait for the pass in flight to drain."""
        self._closed = True
        return self.lock.wait_idle(timeout_s)

    # -- public -------------------------------------------------------------

    def reconcile(self) -> ReconciliationResult | None:
        if not self.driver.is_ready() or self._closed:
            raise DriverNotReadyError(f"{self.driver.name} driver is not ready")
        acquired, result = self.lock.try_execute(self._run_pass)
        if not acquired:
            log.info("Reconciliation already in progress, skipping")
            return None
        return result

    def run_exclusive(self, key: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` inside the critical section of one service."""
        with self.service_locks.hold(key):
            return fn()

    # -- pass ---------------------------------------------------------------

    def _run_pass(self) -> ReconciliationResult:
        snap = self.driver.target.begin_pass()
        if snap is None:
            log.debug("No target state yet, nothing to reconcile")
            result = ReconciliationResult()
            self.driver.notifier.emit(ReconciliationComplete(result=result))
            return result

        target = snap.state
        current = self.driver.get_current_state()
        observed = {svc.key: svc for svc in current.services()}
        desired = {svc.key: svc for svc in target.services()}

        self._settle_errors(current, set(observed) | set(desired))

        log.info(
            "Reconciling target v%s: %d desired / %d observed services",
            snap.version,
            len(desired),
            len(observed),
        )

        outcomes: list[Outcome] = []
        blocked: dict[str, set[str]] = {}
        for app_key, app in target.apps.items():
            res_outcomes, failed = self._ensure_resources(app, current.apps.get(app_key))
            outcomes.extend(res_outcomes)
            blocked[app_key] = failed

        removals = [
            _Step("remove", key, svc.service_name, observed=svc) for key, svc in observed.items() if key not in desired
        ]
        per_app: list[list[_Step]] = []
        for app_key, app in target.apps.items():
            steps: list[_Step] = []
            for svc in app.services:
                cur = observed.get(svc.key)
                action = plan_action(svc, cur)
                if action is None:
                    self._ensure_monitoring(svc, cur)
                    continue
                step = _Step(action, svc.key, svc.service_name, desired=svc, observed=cur)
                missing = self._missing_resources(svc, blocked.get(app_key, set()))
                if missing and action in {"create", "recreate"}:
                    step.blocked_by = missing
                steps.append(step)
            if steps:
                per_app.append(steps)

        with ThreadPoolExecutor(max_workers=max(1, self.cfg.max_parallel_ops), thread_name_prefix="reconcile") as pool:
            # Removals first so a replacement never collides with its predecessor.
            outcomes.extend(pool.map(self._apply, removals))
            for app_outcomes in pool.map(self._apply_sequence, per_app):
                outcomes.extend(app_outcomes)

        outcomes.extend(self._remove_orphan_networks(target.apps, current))

        result = ReconciliationResult(
            success=True,
            services_created=sum(o.created for o in outcomes),
            services_updated=sum(o.updated for o in outcomes),
            services_removed=sum(o.removed for o in outcomes),
            errors=[ReconciliationError(service_name=o.service_name, error=o.error) for o in outcomes if o.error],
        )
        log.info(
            "Reconciliation complete: created=%d updated=%d removed=%d errors=%d",
            result.services_created,
            result.services_updated,
            result.services_removed,
            len(result.errors),
        )
        self.driver.notifier.emit(ReconciliationComplete(result=result))
        return result

    # -- helpers ------------------------------------------------------------

    def _call(self, fn: Callable[[], T]) -> T:
        policy = RetryPolicy(
            RetryConfig(
                max_attempts=self.cfg.op_max_attempts,
                base_delay_ms=self.cfg.op_base_delay_ms,
                max_delay_ms=self.cfg.op_max_delay_ms,
                backoff_multiplier=self.cfg.op_backoff_multiplier,
                on_retry=lambda attempt, e, left: log.warning(
                    "Driver call failed (attempt %d, %d left): %s", attempt, left, e
                ),
            ),
            is_retryable=is_retryable,
            sleep=self._sleep,
        )
        return policy.execute(fn)

    def _settle_errors(self, current: CurrentState, known: set[str]) -> None:
        for svc in current.services():
            st = svc.status
            if st is not None and st.state == "running" and st.health == "healthy" and not st.paused:
                if self.driver.errors.clear(svc.key):
                    log.info("Service %s recovered, error cleared", svc.service_name)
        self.driver.errors.forget_missing(known)

    @staticmethod
    def _missing_resources(svc: Service, failed: set[str]) -> str | None:
        for name in list(svc.config.networks) + svc.config.named_volumes():
            if name in failed:
                return name
        return None

    def _ensure_resources(self, app: App, current_app: App | None) -> tuple[list[Outcome], set[str]]:
        outcomes: list[Outcome] = []
        failed: set[str] = set()
        owner = {APP_ID_LABEL: str(app.app_id), APP_NAME_LABEL: app.app_name}

        have_networks = {n.name for n in current_app.networks} if current_app else set()
        for net in app.networks:
            name = scoped_name(app.app_id, net.name)
            if name in have_networks:
                continue
            spec = net.model_copy(update={"name": name, "labels": {**net.labels, **owner}})
            try:
                self._call(lambda: self.driver.create_network(spec))
                log.info("Created network %s", name)
            except Exception as e:
                log.error("Failed to create network %s: %s", name, e)
                failed.add(net.name)
                outcomes.append(Outcome(service_name=f"{app.app_name}/network:{net.name}", error=str(e)))

        have_volumes = {v.name for v in current_app.volumes} if current_app else set()
        for vol in app.volumes:
            name = scoped_name(app.app_id, vol.name)
            if name in have_volumes:
                continue
            spec = vol.model_copy(update={"name": name, "labels": {**vol.labels, **owner}})
            try:
                self._call(lambda: self.driver.create_volume(spec))
                log.info("Created volume %s", name)
            except Exception as e:
                log.error("Failed to create volume %s: %s", name, e)
                failed.add(vol.name)
                outcomes.append(Outcome(service_name=f"{app.app_name}/volume:{vol.name}", error=str(e)))

        return outcomes, failed

    def _remove_orphan_networks(self, target_apps: dict[str, App], current: CurrentState) -> list[Outcome]:
        # Volumes of removed apps are kept.
        outcomes: list[Outcome] = []
        for app_key, app in current.apps.items():
            if app_key in target_apps:
                continue
            for net in app.networks:
                try:
                    self._call(lambda: self.driver.remove_network(net.name))
                    log.info("Removed network %s of app %s", net.name, app.app_name)
                except Exception as e:
                    outcomes.append(Outcome(service_name=f"{app.app_name}/network:{net.name}", error=str(e)))
        return outcomes

    def _ensure_monitoring(self, desired: Service, observed: Service | None) -> None:
        if observed is None or not observed.container_id or not desired.config.has_probes():
            return
        if desired.state != "running" or self.driver.health_monitor.is_monitoring(desired.key):
            return
        try:
            self.driver.start_health_monitoring(observed.container_id)
        except Exception as e:
            log.warning("Could not start health monitoring for %s: %s", desired.service_name, e)

    def _apply_sequence(self, steps: list[_Step]) -> list[Outcome]:
        return [self._apply(step) for step in steps]

    def _apply(self, step: _Step) -> Outcome:
        if self._closed:
            return Outcome(service_name=step.service_name, skipped=True)
        if step.action in BACKOFF_ACTIONS and self.driver.errors.cooling_down(step.key):
            err = self.driver.errors.get(step.key)
            log.info(
                "Skipping %s of %s, backing off until %s", step.action, step.service_name, err.next_retry if err else "?"
            )
            return Outcome(service_name=step.service_name, skipped=True)

        with self.service_locks.hold(step.key):
            try:
                return self._execute(step)
            except Exception as e:
                err = self.driver.errors.record_failure(step.key, e, operation=step.action)
                log.error(
                    "%s of %s failed (%s, retry #%d): %s",
                    step.action,
                    step.service_name,
                    err.type,
                    err.retry_count,
                    err.message,
                )
                self.driver.notifier.emit(ServiceErrored(service_name=step.service_name, error=e))
                return Outcome(service_name=step.service_name, error=f"{err.type}: {err.message}")

    def _execute(self, step: _Step) -> Outcome:
        out = Outcome(service_name=step.service_name)
        driver = self.driver
        desired, observed = step.desired, step.observed

        if step.blocked_by is not None:
            raise ServiceOperationError(
                step.service_name, f"required network/volume '{step.blocked_by}' is unavailable", "StartFailure"
            )

        if step.action == "remove":
            self._remove(_required(observed, step))
            out.removed = 1
            return out

        desired = _required(desired, step)
        if step.action == "recreate":
            self._remove(_required(observed, step))
            self._create(desired)
            out.updated = 1
            return out

        if step.action == "create":
            self._create(desired)
            out.created = 1
            return out

        observed = _required(observed, step)
        cid = _required(observed.container_id or None, step)
        if step.action == "start":
            self._call(lambda: driver.start_service(cid))
            log.info("Started %s", desired.service_name)
            driver.notifier.emit(ServiceStarted(service_name=desired.service_name, container_id=cid))
            self._ensure_monitoring(desired, observed)
        elif step.action == "stop":
            driver.stop_health_monitoring(cid)
            self._call(lambda: driver.stop_service(cid, self.cfg.stop_timeout_s))
            log.info("Stopped %s", desired.service_name)
            exit_code = observed.status.exit_code if observed.status else None
            driver.notifier.emit(ServiceStopped(service_name=desired.service_name, container_id=cid, exit_code=exit_code))
        elif step.action == "pause":
            self._call(lambda: driver.pause_service(cid))
            log.info("Paused %s", desired.service_name)
        out.updated = 1
        return out

    def _create(self, desired: Service) -> str:
        cid = self._call(lambda: self.driver.create_service(desired))
        log.info("Created %s (%s) from %s", desired.service_name, cid, desired.image_name)
        if desired.state == "running":
            self.driver.notifier.emit(ServiceStarted(service_name=desired.service_name, container_id=cid))
            if desired.config.has_probes():
                try:
                    self.driver.start_health_monitoring(cid)
                except Exception as e:
                    log.warning("Could not start health monitoring for %s: %s", desired.service_name, e)
        return cid

    def _remove(self, observed: Service) -> None:
        cid = observed.container_id
        if not cid:
            return
        self.driver.stop_health_monitoring(cid)
        self._call(lambda: self.driver.remove_service(cid, False))
        log.info("Removed %s (%s)", observed.service_name, cid)
        exit_code = observed.status.exit_code if observed.status else None
        self.driver.notifier.emit(ServiceStopped(service_name=observed.service_name, container_id=cid, exit_code=exit_code))
