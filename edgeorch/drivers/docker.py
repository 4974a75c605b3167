from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..errors import DriverInitError, ServiceNotFoundError, ServiceOperationError, is_retryable
from ..events import Notifier
from ..failures import ErrorTracker
from ..health import run_probe
from ..models import (
    APP_ID_LABEL,
    APP_NAME_LABEL,
    BUILTIN_NETWORKS,
    MANAGED_LABEL,
    SERVICE_ID_LABEL,
    SERVICE_NAME_LABEL,
    SPEC_LABEL,
    ContainerMetrics,
    CpuUsage,
    HealthCheckResult,
    HealthProbe,
    LogStreamOptions,
    MemoryUsage,
    NetworkConfig,
    NetworkIO,
    Service,
    ServiceStatus,
    VolumeConfig,
    desired_spec,
    scoped_name,
)
from ..settings import Settings
from ..units import parse_cpu, parse_memory
from .base import OrchestratorDriver

CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$")

_RESTART_POLICIES = {"no", "always", "unless-stopped", "on-failure"}


def validate_container_name(name: str) -> None:
    if not CONTAINER_NAME_RE.match(name):
        raise ValueError(f"Invalid container name '{name}'. Use letters, digits and _.- (max 128 chars).")


def container_name(service: Service) -> str:
    return f"{service.app_name}_{service.service_name}_{service.app_id}"


def parse_ports(specs: list[str]) -> dict[str, Any]:
    """["8080:80", "127.0.0.1:53:53/udp", "9000"] -> docker-py ``ports`` mapping."""
    ports: dict[str, Any] = {}
    for spec in specs:
        proto = "tcp"
        if "/" in spec:
            spec, proto = spec.rsplit("/", 1)
        parts = spec.split(":")
        if len(parts) == 1:
            ports[f"{parts[0]}/{proto}"] = None
        elif len(parts) == 2:
            ports[f"{parts[1]}/{proto}"] = int(parts[0])
        elif len(parts) == 3:
            ports[f"{parts[2]}/{proto}"] = (parts[0], int(parts[1]))
        else:
            raise ValueError(f"Invalid port mapping '{spec}'")
    return ports


def parse_mounts(app_id: int, specs: list[str]) -> dict[str, dict[str, str]]:
    """["data:/var/lib/data", "/etc/x:/x:ro"] -> docker-py ``volumes`` mapping.

    Named volumes are mapped to their app-scoped backend name.
    """
    mounts: dict[str, dict[str, str]] = {}
    for spec in specs:
        parts = spec.split(":")
        if len(parts) < 2:
            raise ValueError(f"Invalid volume mapping '{spec}'")
        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) > 2 else "rw"
        if not source.startswith(("/", ".", "~")):
            source = scoped_name(app_id, source)
        mounts[source] = {"bind": target, "mode": mode}
    return mounts


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw or raw.startswith("0001-01-01"):
        return None
    # Docker uses nanosecond precision; datetime handles microseconds.
    raw = raw.rstrip("Z")
    if "." in raw:
        head, frac = raw.split(".", 1)
        raw = f"{head}.{frac[:6]}"
    try:
        return datetime.fromisoformat(raw + "+00:00")
    except ValueError:
        return None


class DockerDriver(OrchestratorDriver):
    """Drives a standalone Docker engine through docker-py.

    Containers carry the serialized service spec in a label so the observed
    configuration can be compared with the desired one exactly.
    """

    name = "docker"
    version = "1.0.0"

    def __init__(
        self,
        cfg: Settings | None = None,
        notifier: Notifier | None = None,
        errors: ErrorTracker | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        super().__init__(cfg, notifier, errors)
        self._client = client

    # -- lifecycle ----------------------------------------------------------

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            raise DriverInitError("Docker client not initialized")
        return self._client

    def init(self) -> None:
        try:
            if self._client is None:
                if self.cfg.docker_base_url:
                    self._client = docker.DockerClient(base_url=self.cfg.docker_base_url, timeout=self.cfg.docker_timeout_s)
                else:
                    self._client = docker.from_env(timeout=self.cfg.docker_timeout_s)
            self._client.ping()
        except DockerException as e:
            raise DriverInitError(f"Docker is not available: {e}") from e
        self._mark_ready()

    def shutdown(self) -> None:
        if not self._begin_shutdown():
            return
        if self._client is not None:
            try:
                self._client.close()
            except DockerException as e:
                self._log("warning", "Error while closing docker client", error=e)
        self._log("info", "Driver shut down")

    def get_health(self):
        health = super().get_health()
        if not self.ready:
            return health
        try:
            self.client.ping()
        except DockerException as e:
            return health.model_copy(update={"healthy": False, "message": f"Docker ping failed: {e}"})
        return health

    # -- helpers ------------------------------------------------------------

    def _get(self, service_id: str):
        try:
            return self.client.containers.get(service_id)
        except NotFound as e:
            raise ServiceNotFoundError(service_id) from e

    def _service_from_container(self, container) -> Service | None:
        labels = container.labels or {}
        raw = labels.get(SPEC_LABEL)
        if not raw:
            return None
        try:
            spec = json.loads(raw)
        except ValueError:
            self._log("warning", "Container has an unreadable spec label", container=container.name)
            return None
        spec["containerId"] = container.id
        spec["status"] = self._status_from_attrs(container.attrs, spec).model_dump()
        return Service.model_validate(spec)

    def _status_from_attrs(self, attrs: dict[str, Any], spec: dict[str, Any] | None = None) -> ServiceStatus:
        st = attrs.get("State") or {}
        docker_status = st.get("Status", "")
        exit_code = st.get("ExitCode")
        paused = bool(st.get("Paused")) or docker_status == "paused"

        if docker_status == "running" and not paused:
            state = "running"
        elif docker_status == "restarting":
            state = "creating"
        elif docker_status in {"created", "paused"}:
            state = "stopped"
        elif docker_status == "exited":
            state = "stopped" if exit_code == 0 else "error"
        elif docker_status == "dead":
            state = "error"
        else:
            state = "unknown"

        health = "unknown"
        docker_health = (st.get("Health") or {}).get("Status")
        monitored = None
        if spec is not None:
            key = f"{spec.get('appId')}:{spec.get('serviceId')}"
            monitored = self.health_monitor.health_of(key)
        if monitored is not None:
            health = monitored
        elif docker_health in {"healthy", "unhealthy", "starting"}:
            health = docker_health
        elif state == "running":
            # No probe of any kind: a running container counts as healthy.
            has_probes = bool(spec and any(spec.get("config", {}).get(k) for k in ("livenessProbe", "readinessProbe", "startupProbe")))
            health = "starting" if has_probes else "healthy"

        return ServiceStatus(
            state=state,
            started_at=_parse_ts(st.get("StartedAt")),
            finished_at=_parse_ts(st.get("FinishedAt")) if state != "running" else None,
            exit_code=exit_code if state != "running" else None,
            restart_count=int(attrs.get("RestartCount") or 0),
            health=health,
            message=st.get("Error") or ("paused" if paused else None),
            paused=paused,
        )

    def _wrap(self, service_name: str, op: str, e: Exception) -> ServiceOperationError:
        if isinstance(e, ImageNotFound):
            return ServiceOperationError(service_name, f"image not found: {e.explanation or e}", "ErrImagePull", cause=e)
        if isinstance(e, APIError):
            msg = str(e.explanation or e)
            lower = msg.lower()
            if op == "pull" or "pull access denied" in lower or "manifest unknown" in lower:
                return ServiceOperationError(service_name, msg, "ErrImagePull", retryable=e.is_server_error(), cause=e)
            kind = "StartFailure" if op in {"create", "start"} else "Unknown"
            return ServiceOperationError(service_name, msg, kind, retryable=e.is_server_error(), cause=e)
        return ServiceOperationError(service_name, str(e), "Unknown", retryable=is_retryable(e), cause=e)

    def _ensure_image(self, service: Service) -> None:
        try:
            self.client.images.get(service.config.image)
            return
        except ImageNotFound:
            pass
        try:
            self._log("info", "Pulling image", image=service.config.image)
            self.client.images.pull(service.config.image)
        except (ImageNotFound, APIError) as e:
            raise self._wrap(service.service_name, "pull", e) from e

    def _run_kwargs(self, service: Service) -> dict[str, Any]:
        cfg = service.config
        labels = {
            **cfg.labels,
            MANAGED_LABEL: "true",
            APP_ID_LABEL: str(service.app_id),
            APP_NAME_LABEL: service.app_name,
            SERVICE_ID_LABEL: str(service.service_id),
            SERVICE_NAME_LABEL: service.service_name,
            SPEC_LABEL: json.dumps(desired_spec(service), sort_keys=True, separators=(",", ":")),
        }
        restart = cfg.restart or "no"
        if restart not in _RESTART_POLICIES:
            raise ServiceOperationError(service.service_name, f"unsupported restart policy '{restart}'", "StartFailure")

        kwargs: dict[str, Any] = {
            "name": container_name(service),
            "environment": dict(cfg.environment),
            "labels": labels,
            "restart_policy": {"Name": restart},
            "detach": True,
        }
        if cfg.command:
            kwargs["command"] = cfg.command
        if cfg.entrypoint:
            kwargs["entrypoint"] = cfg.entrypoint
        if cfg.working_dir:
            kwargs["working_dir"] = cfg.working_dir
        if cfg.user:
            kwargs["user"] = cfg.user
        if cfg.hostname:
            kwargs["hostname"] = cfg.hostname
        if cfg.domainname:
            kwargs["domainname"] = cfg.domainname
        if cfg.ports:
            kwargs["ports"] = parse_ports(cfg.ports)
        if cfg.volumes:
            kwargs["volumes"] = parse_mounts(service.app_id, cfg.volumes)
        if cfg.network_mode:
            kwargs["network_mode"] = cfg.network_mode
        elif cfg.networks:
            kwargs["network"] = self._network_name(service.app_id, cfg.networks[0])
        limits = cfg.resources.limits if cfg.resources else None
        if limits is not None:
            if limits.cpu:
                kwargs["nano_cpus"] = int(parse_cpu(limits.cpu) * 1e9)
            if limits.memory:
                kwargs["mem_limit"] = parse_memory(limits.memory)
        requests = cfg.resources.requests if cfg.resources else None
        if requests is not None and requests.memory:
            kwargs["mem_reservation"] = parse_memory(requests.memory)
        return kwargs

    @staticmethod
    def _network_name(app_id: int, name: str) -> str:
        return name if name in BUILTIN_NETWORKS else scoped_name(app_id, name)

    # -- per service --------------------------------------------------------

    def create_service(self, service: Service) -> str:
        name = container_name(service)
        validate_container_name(name)
        self._ensure_image(service)
        try:
            container = self.client.containers.create(service.config.image, **self._run_kwargs(service))
        except (ImageNotFound, APIError) as e:
            raise self._wrap(service.service_name, "create", e) from e

        try:
            for extra in service.config.networks[1:]:
                if not service.config.network_mode:
                    self.client.networks.get(self._network_name(service.app_id, extra)).connect(container)
            if service.state in {"running", "paused"}:
                container.start()
            if service.state == "paused":
                container.pause()
        except (NotFound, APIError) as e:
            # Leave no half-configured container behind.
            try:
                container.remove(force=True)
            except DockerException:
                pass
            raise self._wrap(service.service_name, "start", e) from e

        self._log("info", "Created container", container=name, image=service.config.image, state=service.state)
        return container.id

    def start_service(self, service_id: str) -> None:
        c = self._get(service_id)
        c.reload()
        try:
            if c.status == "paused":
                c.unpause()
            elif c.status != "running":
                c.start()
        except APIError as e:
            raise self._wrap(c.name, "start", e) from e

    def stop_service(self, service_id: str, timeout: int | None = None) -> None:
        c = self._get(service_id)
        try:
            c.stop(timeout=timeout if timeout is not None else self.cfg.stop_timeout_s)
        except APIError as e:
            raise self._wrap(c.name, "stop", e) from e

    def pause_service(self, service_id: str) -> None:
        c = self._get(service_id)
        c.reload()
        try:
            if c.status == "paused":
                return
            if c.status != "running":
                c.start()
            c.pause()
        except APIError as e:
            raise self._wrap(c.name, "pause", e) from e

    def remove_service(self, service_id: str, force: bool = False) -> None:
        try:
            c = self.client.containers.get(service_id)
        except NotFound:
            return
        try:
            if not force:
                c.reload()
                if c.status == "paused":
                    c.unpause()
                if c.status in {"running", "paused", "restarting"}:
                    c.stop(timeout=self.cfg.stop_timeout_s)
            c.remove(force=force)
        except NotFound:
            return
        except APIError as e:
            raise self._wrap(c.name, "remove", e) from e

    def restart_service(self, service_id: str, timeout: int | None = None) -> None:
        c = self._get(service_id)
        try:
            c.restart(timeout=timeout if timeout is not None else self.cfg.stop_timeout_s)
        except APIError as e:
            raise self._wrap(c.name, "restart", e) from e

    def get_service_status(self, service_id: str) -> ServiceStatus:
        c = self._get(service_id)
        c.reload()
        spec = None
        raw = (c.labels or {}).get(SPEC_LABEL)
        if raw:
            try:
                spec = json.loads(raw)
            except ValueError:
                spec = None
        return self._status_from_attrs(c.attrs, spec)

    def list_services(self) -> list[Service]:
        containers = self.client.containers.list(all=True, filters={"label": [f"{MANAGED_LABEL}=true"]})
        out: list[Service] = []
        for c in containers:
            svc = self._service_from_container(c)
            if svc is not None:
                out.append(svc)
        return out

    # -- logs ---------------------------------------------------------------

    def get_service_logs(self, service_id: str, options: LogStreamOptions | None = None) -> Iterator[str]:
        opts = options or LogStreamOptions()
        c = self._get(service_id)
        kwargs: dict[str, Any] = {
            "stream": True,
            "follow": opts.follow,
            "stdout": opts.stdout,
            "stderr": opts.stderr,
            "timestamps": opts.timestamps,
        }
        if opts.tail is not None:
            kwargs["tail"] = opts.tail
        if opts.since is not None:
            kwargs["since"] = opts.since
        return self._iter_lines(c.logs(**kwargs))

    @staticmethod
    def _iter_lines(chunks) -> Iterator[str]:
        buf = b""
        try:
            for chunk in chunks:
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    yield line.decode("utf-8", errors="replace")
            if buf:
                yield buf.decode("utf-8", errors="replace")
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

    # -- health -------------------------------------------------------------

    def _container_host(self, container) -> str:
        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        for net in networks.values():
            ip = net.get("IPAddress")
            if ip:
                return ip
        return container.name

    def execute_health_check(self, service_id: str, probe: HealthProbe | None = None) -> HealthCheckResult:
        c = self._get(service_id)
        c.reload()
        if c.status != "running":
            return HealthCheckResult(healthy=False, message=f"container is {c.status}")
        if probe is None:
            svc = self._service_from_container(c)
            probe = self.governing_probe(svc) if svc is not None else None
        if probe is None:
            docker_health = (c.attrs.get("State", {}).get("Health") or {}).get("Status")
            if docker_health:
                return HealthCheckResult(healthy=docker_health == "healthy", message=f"docker healthcheck: {docker_health}")
            return HealthCheckResult(healthy=True, message="running")

        def _exec(cmd: list[str], _timeout: float) -> tuple[int, str]:
            res = c.exec_run(cmd)
            output = res.output.decode("utf-8", errors="replace") if isinstance(res.output, bytes) else str(res.output)
            return res.exit_code, output

        return run_probe(probe, self._container_host(c), exec_runner=_exec)

    # -- metrics ------------------------------------------------------------

    def _metrics_for(self, container, service_name: str) -> ContainerMetrics:
        stats = container.stats(stream=False)
        cpu_stats = stats.get("cpu_stats") or {}
        pre = stats.get("precpu_stats") or {}
        cpu_delta = (cpu_stats.get("cpu_usage", {}).get("total_usage", 0)) - (pre.get("cpu_usage", {}).get("total_usage", 0))
        sys_delta = (cpu_stats.get("system_cpu_usage") or 0) - (pre.get("system_cpu_usage") or 0)
        cores = cpu_stats.get("online_cpus") or len(cpu_stats.get("cpu_usage", {}).get("percpu_usage") or []) or 1
        cpu_pct = (cpu_delta / sys_delta) * cores * 100.0 if sys_delta > 0 and cpu_delta > 0 else 0.0

        mem = stats.get("memory_stats") or {}
        usage = int(mem.get("usage") or 0)
        cache = int((mem.get("stats") or {}).get("inactive_file") or 0)
        usage = max(0, usage - cache)
        limit = mem.get("limit")
        pct = round(usage / limit * 100.0, 2) if limit else None

        nets = stats.get("networks") or {}
        net_io = None
        if nets:
            net_io = NetworkIO(
                rx_bytes=sum(int(n.get("rx_bytes", 0)) for n in nets.values()),
                tx_bytes=sum(int(n.get("tx_bytes", 0)) for n in nets.values()),
            )
        return ContainerMetrics(
            container_id=container.id,
            service_name=service_name,
            cpu=CpuUsage(usage=round(cpu_pct, 2), cores=cores),
            memory=MemoryUsage(usage=usage, limit=limit, percentage=pct),
            network=net_io,
        )

    def get_service_metrics(self, service_id: str) -> ContainerMetrics:
        c = self._get(service_id)
        name = (c.labels or {}).get(SERVICE_NAME_LABEL, c.name)
        return self._metrics_for(c, name)

    def get_all_metrics(self) -> list[ContainerMetrics]:
        out = []
        for c in self.client.containers.list(filters={"label": [f"{MANAGED_LABEL}=true"]}):
            try:
                out.append(self._metrics_for(c, (c.labels or {}).get(SERVICE_NAME_LABEL, c.name)))
            except (NotFound, APIError) as e:
                self._log("warning", "Could not read metrics", container=c.name, error=e)
        return out

    # -- networks -----------------------------------------------------------

    def create_network(self, network: NetworkConfig) -> None:
        try:
            self.client.networks.get(network.name)
            return
        except NotFound:
            pass
        kwargs: dict[str, Any] = {
            "driver": network.driver or "bridge",
            "internal": network.internal,
            "labels": {**network.labels, MANAGED_LABEL: "true"},
        }
        if network.ipam:
            pools = [docker.types.IPAMPool(**{k: v for k, v in cfg.items() if k in {"subnet", "gateway", "iprange"}})
                     for cfg in network.ipam.get("config", [])]
            kwargs["ipam"] = docker.types.IPAMConfig(driver=network.ipam.get("driver", "default"), pool_configs=pools)
        self.client.networks.create(network.name, **kwargs)
        self._log("info", "Created network", network=network.name)

    def remove_network(self, network_name: str) -> None:
        try:
            self.client.networks.get(network_name).remove()
        except NotFound:
            return

    def list_networks(self) -> list[NetworkConfig]:
        out = []
        for n in self.client.networks.list(filters={"label": f"{MANAGED_LABEL}=true"}):
            attrs = n.attrs or {}
            out.append(
                NetworkConfig(
                    name=n.name,
                    driver=attrs.get("Driver"),
                    internal=bool(attrs.get("Internal")),
                    labels=attrs.get("Labels") or {},
                )
            )
        return out

    # -- volumes ------------------------------------------------------------

    def create_volume(self, volume: VolumeConfig) -> None:
        try:
            self.client.volumes.get(volume.name)
            return
        except NotFound:
            pass
        self.client.volumes.create(
            name=volume.name,
            driver=volume.driver or "local",
            driver_opts=dict(volume.driver_opts),
            labels={**volume.labels, MANAGED_LABEL: "true"},
        )
        self._log("info", "Created volume", volume=volume.name)

    def remove_volume(self, volume_name: str) -> None:
        try:
            self.client.volumes.get(volume_name).remove()
        except NotFound:
            return

    def list_volumes(self) -> list[VolumeConfig]:
        out = []
        for v in self.client.volumes.list(filters={"label": f"{MANAGED_LABEL}=true"}):
            attrs = v.attrs or {}
            out.append(
                VolumeConfig(
                    name=v.name,
                    driver=attrs.get("Driver"),
                    labels=attrs.get("Labels") or {},
                    driver_opts=attrs.get("Options") or {},
                )
            )
        return out
