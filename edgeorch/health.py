from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from .events import HealthChanged, Notifier
from .models import ContainerConfig, Health, HealthCheckResult, HealthProbe

log = logging.getLogger(__name__)

ExecRunner = Callable[[list[str], float], tuple[int, str]]


def check_http(
    url: str,
    timeout_s: float = 2.0,
    headers: dict[str, str] | None = None,
    expected_status: list[int] | None = None,
    client: httpx.Client | None = None,
) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx/3xx counts as healthy unless ``expected_status`` narrows it.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        if client is None:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url, headers=headers)
        else:
            resp = client.get(url, headers=headers, timeout=timeout_s)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if expected_status:
            ok = resp.status_code in expected_status
        else:
            ok = 200 <= resp.status_code < 400
        return ok, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def check_tcp(host: str, port: int, timeout_s: float = 1.0) -> tuple[bool, str]:
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True, f"TCP {port} open"
    except OSError as e:
        return False, f"TCP {port}: {e}"


def run_probe(
    probe: HealthProbe,
    host: str,
    exec_runner: ExecRunner | None = None,
    client: httpx.Client | None = None,
) -> HealthCheckResult:
    if probe.type == "http":
        path = probe.path or "/"
        if not path.startswith("/"):
            path = "/" + path
        url = f"{probe.scheme}://{host}:{probe.port}{path}"
        ok, msg, _latency = check_http(url, probe.timeout_seconds, probe.headers, probe.expected_status, client)
        return HealthCheckResult(healthy=ok, message=msg)
    if probe.type == "tcp":
        ok, msg = check_tcp(host, probe.tcp_port or probe.port or 0, probe.timeout_seconds)
        return HealthCheckResult(healthy=ok, message=msg)
    if exec_runner is None:
        return HealthCheckResult(healthy=False, message="exec probes are not supported by this driver")
    exit_code, output = exec_runner(list(probe.command or []), float(probe.timeout_seconds))
    return HealthCheckResult(healthy=exit_code == 0, message=f"exit {exit_code}: {output.strip()[:200]}")


def select_probe(config: ContainerConfig, startup_done: bool) -> HealthProbe | None:
    """The probe that currently decides a service's health."""
    if not startup_done and config.startup_probe is not None:
        return config.startup_probe
    return config.readiness_probe or config.liveness_probe


class HealthStateMachine:
    """starting -> healthy | unhealthy, with consecutive-result thresholds.

    Methods that change state return the new state, or None when nothing
    changed, so callers only notify on real transitions.
    """

    def __init__(self, success_threshold: int = 1, failure_threshold: int = 3) -> None:
        self.state: Health = "starting"
        self.success_threshold = max(1, success_threshold)
        self.failure_threshold = max(1, failure_threshold)
        self.successes = 0
        self.failures = 0
        self.probe_kind: str | None = None
        self.startup_done = False

    def _move(self, new: Health) -> Health | None:
        if new == self.state:
            return None
        self.state = new
        if new == "healthy":
            self.startup_done = True
        return new

    def observe(self, ok: bool) -> Health | None:
        if ok:
            self.successes += 1
            self.failures = 0
            if self.state != "healthy" and self.successes >= self.success_threshold:
                return self._move("healthy")
        else:
            self.failures += 1
            self.successes = 0
            if self.state != "unhealthy" and self.failures >= self.failure_threshold:
                return self._move("unhealthy")
        return None

    def set_probe(self, probe: HealthProbe | None) -> Health | None:
        """Adopt the governing probe; a different probe type restarts evaluation."""
        if probe is not None:
            self.success_threshold = probe.success_threshold
            self.failure_threshold = probe.failure_threshold
        if self.startup_done is False:
            return None
        kind = probe.type if probe else None
        if self.probe_kind is None or kind == self.probe_kind:
            self.probe_kind = kind
            return None
        self.probe_kind = kind
        self.successes = 0
        self.failures = 0
        return self._move("starting")

    def stop(self) -> Health | None:
        return self._move("unknown")


ProbeRunner = Callable[[HealthProbe | None], HealthCheckResult]


@dataclass
class _Watch:
    key: str
    service_name: str
    config: ContainerConfig
    run: ProbeRunner
    machine: HealthStateMachine
    stop: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


class HealthMonitor:
    """One polling thread per monitored service."""

    def __init__(self, notifier: Notifier, on_healthy: Callable[[str], None] | None = None) -> None:
        self.notifier = notifier
        self.on_healthy = on_healthy
        self._lock = threading.Lock()
        self._watches: dict[str, _Watch] = {}

    def is_monitoring(self, key: str) -> bool:
        with self._lock:
            return key in self._watches

    def health_of(self, key: str) -> Health | None:
        with self._lock:
            w = self._watches.get(key)
        return w.machine.state if w else None

    def startup_done(self, key: str) -> bool:
        with self._lock:
            w = self._watches.get(key)
        return bool(w and w.machine.startup_done)

    def start(self, key: str, service_name: str, config: ContainerConfig, run: ProbeRunner) -> None:
        with self._lock:
            existing = self._watches.get(key)
            if existing is not None:
                # Same service re-registered (e.g. after recreate): keep the machine.
                existing.config = config
                existing.run = run
                return
            w = _Watch(key=key, service_name=service_name, config=config, run=run, machine=HealthStateMachine())
            self._watches[key] = w
        w.thread = threading.Thread(target=self._loop, args=(w,), name=f"health-{service_name}", daemon=True)
        w.thread.start()
        log.info("Health monitoring started for %s", service_name)

    def stop(self, key: str, wait: bool = True) -> None:
        with self._lock:
            w = self._watches.pop(key, None)
        if w is None:
            return
        w.stop.set()
        if wait and w.thread is not None and w.thread is not threading.current_thread():
            w.thread.join(timeout=5)
        self._transition(w, w.machine.stop())
        log.info("Health monitoring stopped for %s", w.service_name)

    def stop_all(self) -> None:
        with self._lock:
            keys = list(self._watches)
        for k in keys:
            self.stop(k)

    def evaluate(self, key: str) -> Health | None:
        """Run one probe round for ``key`` and apply it to its state machine."""
        with self._lock:
            w = self._watches.get(key)
        if w is None:
            return None
        return self._tick(w)

    def _tick(self, w: _Watch) -> Health | None:
        probe = select_probe(w.config, w.machine.startup_done)
        self._transition(w, w.machine.set_probe(probe))
        try:
            result = w.run(probe)
        except Exception as e:
            log.warning("Health probe for %s raised: %s", w.service_name, e)
            result = HealthCheckResult(healthy=False, message=str(e))
        changed = w.machine.observe(result.healthy)
        self._transition(w, changed)
        return changed

    def _transition(self, w: _Watch, new: Health | None) -> None:
        if new is None:
            return
        log.info("Health of %s changed to %s", w.service_name, new)
        self.notifier.emit(HealthChanged(service_name=w.service_name, health=new))
        if new == "healthy" and self.on_healthy is not None:
            self.on_healthy(w.key)

    def _loop(self, w: _Watch) -> None:
        probe = select_probe(w.config, False)
        if probe is not None and probe.initial_delay_seconds:
            if w.stop.wait(probe.initial_delay_seconds):
                return
        while not w.stop.is_set():
            self._tick(w)
            probe = select_probe(w.config, w.machine.startup_done)
            period = probe.period_seconds if probe else 10
            w.stop.wait(period)
