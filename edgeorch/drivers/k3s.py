"""k3s backend speaking to the Kubernetes REST API with httpx.

Each service is one Deployment with 1 replica (running) or 0 (stopped). The
Deployment name is the service's instance id. The serialized service spec is
kept in an annotation so the observed configuration round-trips exactly.
Pods share one flat network, so networks are accepted and ignored.
"""

from __future__ import annotations

import json
import os
import re
from datetime import datetime
from typing import Any, Iterator

import httpx

from ..errors import (
    DriverInitError,
    ServiceNotFoundError,
    ServiceOperationError,
    UnsupportedOperationError,
    is_retryable,
)
from ..events import Notifier
from ..failures import ErrorTracker
from ..health import run_probe
from ..models import (
    APP_ID_LABEL,
    APP_NAME_LABEL,
    MANAGED_LABEL,
    SERVICE_ID_LABEL,
    SERVICE_NAME_LABEL,
    SPEC_LABEL,
    ContainerMetrics,
    CpuUsage,
    ErrorType,
    HealthCheckResult,
    HealthProbe,
    LogStreamOptions,
    MemoryUsage,
    NetworkConfig,
    Service,
    ServiceStatus,
    VolumeConfig,
    desired_spec,
    scoped_name,
    utc_now,
)
from ..settings import Settings
from ..units import parse_cpu, parse_memory
from .base import OrchestratorDriver

# Pod-template label selecting the pods of one Deployment.
DEPLOYMENT_LABEL = "edgeorch.deployment"
# Original (unsanitized) name and labels of PVCs.
VOLUME_ANNOTATION = "edgeorch.volume"

_DNS_RE = re.compile(r"[^a-z0-9-]+")

_WAITING_ERRORS: dict[str, ErrorType] = {
    "ErrImagePull": "ErrImagePull",
    "InvalidImageName": "ErrImagePull",
    "ImagePullBackOff": "ImagePullBackOff",
    "CrashLoopBackOff": "CrashLoopBackOff",
    "CreateContainerConfigError": "StartFailure",
    "CreateContainerError": "StartFailure",
    "RunContainerError": "StartFailure",
}


def dns_name(*parts: Any, limit: int = 63) -> str:
    """RFC 1123 label built from ``parts``."""
    raw = "-".join(str(p) for p in parts if p not in (None, "")).lower()
    name = _DNS_RE.sub("-", raw).strip("-")
    return name[:limit].rstrip("-") or "svc"


def label_value(value: str) -> str:
    v = re.sub(r"[^A-Za-z0-9_.-]+", "-", value)[:63]
    return v.strip("-_.")


def deployment_name(service: Service) -> str:
    return dns_name(service.app_name, service.service_name, service.app_id)


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _probe(probe: HealthProbe | None, liveness_like: bool = False) -> dict[str, Any] | None:
    if probe is None:
        return None
    if probe.type == "http":
        action: dict[str, Any] = {
            "httpGet": {
                "path": probe.path or "/",
                "port": probe.port,
                "scheme": probe.scheme.upper(),
                "httpHeaders": [{"name": k, "value": v} for k, v in probe.headers.items()],
            }
        }
    elif probe.type == "tcp":
        action = {"tcpSocket": {"port": probe.tcp_port or probe.port}}
    else:
        action = {"exec": {"command": list(probe.command or [])}}
    return {
        **action,
        "initialDelaySeconds": probe.initial_delay_seconds,
        "periodSeconds": probe.period_seconds,
        "timeoutSeconds": probe.timeout_seconds,
        # Kubernetes rejects anything but 1 on liveness and startup probes.
        "successThreshold": 1 if liveness_like else probe.success_threshold,
        "failureThreshold": probe.failure_threshold,
    }


def _container_ports(specs: list[str]) -> list[dict[str, Any]]:
    ports = []
    for spec in specs:
        proto = "TCP"
        if "/" in spec:
            spec, p = spec.rsplit("/", 1)
            proto = p.upper()
        ports.append({"containerPort": int(spec.split(":")[-1]), "protocol": proto})
    return ports


class K3sDriver(OrchestratorDriver):
    name = "k3s"
    version = "1.0.0"

    def __init__(
        self,
        cfg: Settings | None = None,
        notifier: Notifier | None = None,
        errors: ErrorTracker | None = None,
        client: httpx.Client | None = None,
        namespace: str | None = None,
    ) -> None:
        super().__init__(cfg, notifier, errors)
        self._client = client
        self._owns_client = client is None
        self.namespace = namespace or self.cfg.k3s_namespace

    # -- lifecycle ----------------------------------------------------------

    def _token(self) -> str | None:
        if self.cfg.k3s_token:
            return self.cfg.k3s_token
        path = self.cfg.k3s_token_path
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
        return None

    def _build_client(self) -> httpx.Client:
        headers = {"Accept": "application/json"}
        token = self._token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        verify: Any = self.cfg.k3s_verify_tls
        if verify and self.cfg.k3s_ca_path and os.path.exists(self.cfg.k3s_ca_path):
            verify = self.cfg.k3s_ca_path
        return httpx.Client(base_url=self.cfg.k3s_api_url, headers=headers, verify=verify, timeout=self.cfg.k3s_timeout_s)

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            raise DriverInitError("Kubernetes client not initialized")
        return self._client

    def init(self) -> None:
        try:
            if self._client is None:
                self._client = self._build_client()
            r = self._client.get("/version")
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise DriverInitError(f"Kubernetes API is not available: {e}") from e
        info = r.json()
        self._log("info", "Connected to Kubernetes API", version=info.get("gitVersion"), namespace=self.namespace)
        self._mark_ready()

    def shutdown(self) -> None:
        if not self._begin_shutdown():
            return
        if self._client is not None and self._owns_client:
            self._client.close()
        self._log("info", "Driver shut down")

    def get_health(self):
        health = super().get_health()
        if not self.ready:
            return health
        try:
            self.client.get("/version").raise_for_status()
        except httpx.HTTPError as e:
            return health.model_copy(update={"healthy": False, "message": f"Kubernetes API check failed: {e}"})
        return health

    # -- REST helpers -------------------------------------------------------

    def _ns(self, kind: str, name: str | None = None, group: str = "apps/v1") -> str:
        base = "/api/v1" if group == "v1" else f"/apis/{group}"
        path = f"{base}/namespaces/{self.namespace}/{kind}"
        return f"{path}/{name}" if name else path

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        r = self.client.request(method, path, **kwargs)
        r.raise_for_status()
        return r.json() if r.content else {}

    def _deployment(self, name: str) -> dict[str, Any]:
        try:
            return self._request("GET", self._ns("deployments", name))
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ServiceNotFoundError(name) from e
            raise

    def _patch(self, name: str, body: dict[str, Any]) -> None:
        try:
            self._request(
                "PATCH",
                self._ns("deployments", name),
                content=json.dumps(body),
                headers={"Content-Type": "application/merge-patch+json"},
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ServiceNotFoundError(name) from e
            raise self._wrap(name, e) from e

    def _pods(self, selector: str) -> list[dict[str, Any]]:
        return self._request("GET", self._ns("pods", group="v1"), params={"labelSelector": selector}).get("items", [])

    def _wrap(self, service_name: str, e: httpx.HTTPError, error_type: ErrorType = "Unknown") -> ServiceOperationError:
        if isinstance(e, httpx.HTTPStatusError):
            try:
                msg = e.response.json().get("message") or str(e)
            except ValueError:
                msg = e.response.text or str(e)
        else:
            msg = str(e)
        return ServiceOperationError(service_name, msg, error_type, retryable=is_retryable(e), cause=e)

    # -- manifests ----------------------------------------------------------

    def _deployment_manifest(self, service: Service) -> dict[str, Any]:
        cfg = service.config
        name = deployment_name(service)
        labels = {
            MANAGED_LABEL: "true",
            APP_ID_LABEL: str(service.app_id),
            APP_NAME_LABEL: label_value(service.app_name),
            SERVICE_ID_LABEL: str(service.service_id),
            SERVICE_NAME_LABEL: label_value(service.service_name),
        }
        pod_labels = {**labels, DEPLOYMENT_LABEL: name}

        container: dict[str, Any] = {
            "name": dns_name(service.service_name),
            "image": cfg.image,
            "env": [{"name": k, "value": v} for k, v in cfg.environment.items()],
        }
        # Docker's entrypoint/command are Kubernetes' command/args.
        if cfg.entrypoint:
            container["command"] = list(cfg.entrypoint)
        if cfg.command:
            container["args"] = list(cfg.command)
        if cfg.working_dir:
            container["workingDir"] = cfg.working_dir
        if cfg.ports:
            container["ports"] = _container_ports(cfg.ports)
        if cfg.resources is not None:
            res: dict[str, dict[str, str]] = {}
            for kind, spec in (("limits", cfg.resources.limits), ("requests", cfg.resources.requests)):
                if spec is None:
                    continue
                values = {k: v for k, v in (("cpu", spec.cpu), ("memory", spec.memory)) if v}
                if values:
                    res[kind] = values
            if res:
                container["resources"] = res
        for field_name, probe, liveness_like in (
            ("livenessProbe", cfg.liveness_probe, True),
            ("readinessProbe", cfg.readiness_probe, False),
            ("startupProbe", cfg.startup_probe, True),
        ):
            mapped = _probe(probe, liveness_like)
            if mapped is not None:
                container[field_name] = mapped

        volumes: list[dict[str, Any]] = []
        mounts: list[dict[str, Any]] = []
        for i, spec in enumerate(cfg.volumes):
            parts = spec.split(":")
            source, target = parts[0], parts[1]
            read_only = len(parts) > 2 and parts[2] == "ro"
            vol_name = f"vol-{i}"
            if source.startswith(("/", ".", "~")):
                volumes.append({"name": vol_name, "hostPath": {"path": source}})
            else:
                claim = dns_name(scoped_name(service.app_id, source), limit=253)
                volumes.append({"name": vol_name, "persistentVolumeClaim": {"claimName": claim}})
            mounts.append({"name": vol_name, "mountPath": target, "readOnly": read_only})
        if mounts:
            container["volumeMounts"] = mounts

        pod_spec: dict[str, Any] = {"containers": [container], "restartPolicy": "Always"}
        if volumes:
            pod_spec["volumes"] = volumes
        if cfg.network_mode == "host":
            pod_spec["hostNetwork"] = True
        if cfg.hostname:
            pod_spec["hostname"] = dns_name(cfg.hostname)
        if cfg.domainname:
            pod_spec["subdomain"] = dns_name(cfg.domainname)

        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": name,
                "labels": labels,
                "annotations": {SPEC_LABEL: json.dumps(desired_spec(service), sort_keys=True, separators=(",", ":"))},
            },
            "spec": {
                "replicas": 1 if service.state == "running" else 0,
                "selector": {"matchLabels": {DEPLOYMENT_LABEL: name}},
                "strategy": {"type": "Recreate"},
                "template": {"metadata": {"labels": pod_labels}, "spec": pod_spec},
            },
        }

    # -- status -------------------------------------------------------------

    @staticmethod
    def _waiting(pods: list[dict[str, Any]]) -> tuple[str, str] | None:
        for pod in pods:
            for cs in (pod.get("status") or {}).get("containerStatuses") or []:
                waiting = (cs.get("state") or {}).get("waiting")
                if waiting and waiting.get("reason") in _WAITING_ERRORS:
                    return waiting["reason"], waiting.get("message") or waiting["reason"]
        return None

    @staticmethod
    def _pod_ready(pod: dict[str, Any]) -> bool:
        for cond in (pod.get("status") or {}).get("conditions") or []:
            if cond.get("type") == "Ready":
                return cond.get("status") == "True"
        return False

    def _status(self, dep: dict[str, Any], pods: list[dict[str, Any]], spec: dict[str, Any] | None) -> ServiceStatus:
        replicas = (dep.get("spec") or {}).get("replicas", 0)
        dep_status = dep.get("status") or {}
        ready = dep_status.get("readyReplicas", 0) or 0
        live = [p for p in pods if not (p.get("metadata") or {}).get("deletionTimestamp")]

        waiting = self._waiting(live)
        started_at = None
        restart_count = 0
        exit_code = None
        finished_at = None
        running_pod = False
        for pod in live:
            pst = pod.get("status") or {}
            if pst.get("phase") == "Running":
                running_pod = True
            for cs in pst.get("containerStatuses") or []:
                restart_count += int(cs.get("restartCount") or 0)
                cstate = cs.get("state") or {}
                if "running" in cstate:
                    started_at = _parse_ts(cstate["running"].get("startedAt"))
                term = cstate.get("terminated") or (cs.get("lastState") or {}).get("terminated")
                if term:
                    exit_code = term.get("exitCode")
                    finished_at = _parse_ts(term.get("finishedAt"))

        message = None
        if replicas == 0:
            state = "stopped"
        elif waiting is not None:
            state = "error"
            message = f"{waiting[0]}: {waiting[1]}"
        elif running_pod:
            state = "running"
        else:
            state = "creating"

        health = "unknown"
        monitored = None
        has_probes = bool(spec and any(spec.get("config", {}).get(k) for k in ("livenessProbe", "readinessProbe", "startupProbe")))
        if spec is not None:
            monitored = self.health_monitor.health_of(f"{spec.get('appId')}:{spec.get('serviceId')}")
        if monitored is not None:
            health = monitored
        elif state == "running":
            if not has_probes:
                health = "healthy"
            else:
                health = "healthy" if ready >= 1 else "starting"
        elif state == "error":
            health = "unhealthy"

        return ServiceStatus(
            state=state,
            started_at=started_at,
            finished_at=finished_at if state != "running" else None,
            exit_code=exit_code if state != "running" else None,
            restart_count=restart_count,
            health=health,
            message=message,
        )

    @staticmethod
    def _spec_of(dep: dict[str, Any]) -> dict[str, Any] | None:
        raw = ((dep.get("metadata") or {}).get("annotations") or {}).get(SPEC_LABEL)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    # -- per service --------------------------------------------------------

    def create_service(self, service: Service) -> str:
        if service.state == "paused":
            raise UnsupportedOperationError("k3s driver cannot pause workloads")
        manifest = self._deployment_manifest(service)
        name = manifest["metadata"]["name"]
        try:
            self._request("POST", self._ns("deployments"), json=manifest)
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 409:
                raise self._wrap(service.service_name, e, "StartFailure") from e
            # Left behind by an earlier failed pass: take it over.
            try:
                self._request("PUT", self._ns("deployments", name), json=manifest)
            except httpx.HTTPStatusError as put_err:
                raise self._wrap(service.service_name, put_err, "StartFailure") from put_err
            except httpx.TransportError as put_err:
                raise self._wrap(service.service_name, put_err) from put_err
        except httpx.TransportError as e:
            raise self._wrap(service.service_name, e) from e
        self._log("info", "Created deployment", deployment=name, image=service.config.image, state=service.state)
        return name

    def start_service(self, service_id: str) -> None:
        dep = self._deployment(service_id)
        if (dep.get("spec") or {}).get("replicas", 0) >= 1:
            # Already scaled up: surface a stuck pod instead of pretending to start it.
            waiting = self._waiting(self._pods(f"{DEPLOYMENT_LABEL}={service_id}"))
            if waiting is not None:
                reason, message = waiting
                raise ServiceOperationError(service_id, f"{reason}: {message}", _WAITING_ERRORS[reason])
            return
        self._patch(service_id, {"spec": {"replicas": 1}})

    def stop_service(self, service_id: str, timeout: int | None = None) -> None:
        self._patch(service_id, {"spec": {"replicas": 0}})

    def pause_service(self, service_id: str) -> None:
        raise UnsupportedOperationError("k3s driver cannot pause workloads")

    def remove_service(self, service_id: str, force: bool = False) -> None:
        params: dict[str, Any] = {"propagationPolicy": "Background"}
        if force:
            params["gracePeriodSeconds"] = 0
        try:
            self._request("DELETE", self._ns("deployments", service_id), params=params)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return
            raise self._wrap(service_id, e) from e

    def restart_service(self, service_id: str, timeout: int | None = None) -> None:
        stamp = utc_now().isoformat()
        self._patch(
            service_id,
            {"spec": {"template": {"metadata": {"annotations": {"kubectl.kubernetes.io/restartedAt": stamp}}}}},
        )

    def get_service_status(self, service_id: str) -> ServiceStatus:
        dep = self._deployment(service_id)
        pods = self._pods(f"{DEPLOYMENT_LABEL}={service_id}")
        return self._status(dep, pods, self._spec_of(dep))

    def list_services(self) -> list[Service]:
        deps = self._request("GET", self._ns("deployments"), params={"labelSelector": f"{MANAGED_LABEL}=true"})
        pods = self._pods(f"{MANAGED_LABEL}=true")
        by_dep: dict[str, list[dict[str, Any]]] = {}
        for pod in pods:
            owner = ((pod.get("metadata") or {}).get("labels") or {}).get(DEPLOYMENT_LABEL)
            if owner:
                by_dep.setdefault(owner, []).append(pod)

        out: list[Service] = []
        for dep in deps.get("items", []):
            spec = self._spec_of(dep)
            if spec is None:
                continue
            name = dep["metadata"]["name"]
            spec["containerId"] = name
            spec["status"] = self._status(dep, by_dep.get(name, []), spec).model_dump()
            out.append(Service.model_validate(spec))
        return out

    # -- logs ---------------------------------------------------------------

    def _first_pod(self, service_id: str) -> dict[str, Any]:
        self._deployment(service_id)
        pods = self._pods(f"{DEPLOYMENT_LABEL}={service_id}")
        if not pods:
            raise ServiceOperationError(service_id, "no pod is scheduled for this service")
        return pods[0]

    def get_service_logs(self, service_id: str, options: LogStreamOptions | None = None) -> Iterator[str]:
        opts = options or LogStreamOptions()
        pod = self._first_pod(service_id)
        params: dict[str, Any] = {"follow": str(opts.follow).lower(), "timestamps": str(opts.timestamps).lower()}
        if opts.tail is not None:
            params["tailLines"] = opts.tail
        if opts.since is not None:
            params["sinceTime"] = opts.since.isoformat().replace("+00:00", "Z")
        path = self._ns("pods", pod["metadata"]["name"], group="v1") + "/log"
        return self._stream_lines(path, params)

    def _stream_lines(self, path: str, params: dict[str, Any]) -> Iterator[str]:
        with self.client.stream("GET", path, params=params, timeout=None) as r:
            r.raise_for_status()
            for line in r.iter_lines():
                yield line

    # -- health -------------------------------------------------------------

    def execute_health_check(self, service_id: str, probe: HealthProbe | None = None) -> HealthCheckResult:
        dep = self._deployment(service_id)
        pods = self._pods(f"{DEPLOYMENT_LABEL}={service_id}")
        running = [p for p in pods if (p.get("status") or {}).get("phase") == "Running"]
        if not running:
            waiting = self._waiting(pods)
            msg = f"{waiting[0]}: {waiting[1]}" if waiting else "no running pod"
            return HealthCheckResult(healthy=False, message=msg)
        pod = running[0]
        if probe is None:
            spec = self._spec_of(dep)
            svc = Service.model_validate(spec) if spec else None
            probe = self.governing_probe(svc) if svc is not None else None
        pod_ip = (pod.get("status") or {}).get("podIP")
        if probe is not None and probe.type != "exec" and pod_ip:
            return run_probe(probe, pod_ip)
        # Exec probes run inside the kubelet; their verdict is the Ready condition.
        ready = self._pod_ready(pod)
        return HealthCheckResult(healthy=ready, message="pod ready" if ready else "pod not ready")

    # -- metrics ------------------------------------------------------------

    def _pod_metrics(self, selector: str) -> list[dict[str, Any]]:
        path = f"/apis/metrics.k8s.io/v1beta1/namespaces/{self.namespace}/pods"
        try:
            return self._request("GET", path, params={"labelSelector": selector}).get("items", [])
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise UnsupportedOperationError("metrics.k8s.io is not available in this cluster") from e
            raise

    def _metrics_for(self, dep: dict[str, Any], items: list[dict[str, Any]]) -> ContainerMetrics:
        name = dep["metadata"]["name"]
        cores = 0.0
        usage = 0
        for item in items:
            for c in item.get("containers") or []:
                u = c.get("usage") or {}
                cores += parse_cpu(u.get("cpu", "0")) or 0.0
                usage += parse_memory(u.get("memory", "0")) or 0
        limit = None
        for c in (((dep.get("spec") or {}).get("template") or {}).get("spec") or {}).get("containers") or []:
            mem = ((c.get("resources") or {}).get("limits") or {}).get("memory")
            if mem:
                limit = (limit or 0) + (parse_memory(mem) or 0)
        labels = (dep.get("metadata") or {}).get("labels") or {}
        spec = self._spec_of(dep)
        service_name = spec.get("serviceName") if spec else labels.get(SERVICE_NAME_LABEL, name)
        return ContainerMetrics(
            container_id=name,
            service_name=service_name,
            cpu=CpuUsage(usage=round(cores * 100.0, 2)),
            memory=MemoryUsage(usage=usage, limit=limit, percentage=round(usage / limit * 100.0, 2) if limit else None),
        )

    def get_service_metrics(self, service_id: str) -> ContainerMetrics:
        dep = self._deployment(service_id)
        return self._metrics_for(dep, self._pod_metrics(f"{DEPLOYMENT_LABEL}={service_id}"))

    def get_all_metrics(self) -> list[ContainerMetrics]:
        deps = self._request("GET", self._ns("deployments"), params={"labelSelector": f"{MANAGED_LABEL}=true"})
        items = self._pod_metrics(f"{MANAGED_LABEL}=true")
        by_dep: dict[str, list[dict[str, Any]]] = {}
        for item in items:
            owner = ((item.get("metadata") or {}).get("labels") or {}).get(DEPLOYMENT_LABEL)
            if owner:
                by_dep.setdefault(owner, []).append(item)
        return [self._metrics_for(dep, by_dep.get(dep["metadata"]["name"], [])) for dep in deps.get("items", [])]

    # -- networks -----------------------------------------------------------

    def create_network(self, network: NetworkConfig) -> None:
        self._log("debug", "Networks are flat in k3s, ignoring", network=network.name)

    def remove_network(self, network_name: str) -> None:
        return None

    def list_networks(self) -> list[NetworkConfig]:
        return []

    # -- volumes ------------------------------------------------------------

    def create_volume(self, volume: VolumeConfig) -> None:
        name = dns_name(volume.name, limit=253)
        labels = {k: label_value(v) for k, v in volume.labels.items()}
        labels[MANAGED_LABEL] = "true"
        spec: dict[str, Any] = {
            "accessModes": [volume.driver_opts.get("accessMode", "ReadWriteOnce")],
            "resources": {"requests": {"storage": volume.driver_opts.get("size", "1Gi")}},
        }
        storage_class = volume.driver_opts.get("storageClass") or (
            volume.driver if volume.driver not in (None, "local") else None
        )
        if storage_class:
            spec["storageClassName"] = storage_class
        body = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": name,
                "labels": labels,
                "annotations": {
                    VOLUME_ANNOTATION: json.dumps({"name": volume.name, "labels": volume.labels}, sort_keys=True)
                },
            },
            "spec": spec,
        }
        try:
            self._request("POST", self._ns("persistentvolumeclaims", group="v1"), json=body)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 409:
                return
            raise
        self._log("info", "Created volume claim", volume=name)

    def remove_volume(self, volume_name: str) -> None:
        try:
            self._request("DELETE", self._ns("persistentvolumeclaims", dns_name(volume_name, limit=253), group="v1"))
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                raise

    def list_volumes(self) -> list[VolumeConfig]:
        data = self._request(
            "GET", self._ns("persistentvolumeclaims", group="v1"), params={"labelSelector": f"{MANAGED_LABEL}=true"}
        )
        out = []
        for item in data.get("items", []):
            meta = item.get("metadata") or {}
            raw = (meta.get("annotations") or {}).get(VOLUME_ANNOTATION)
            try:
                original = json.loads(raw) if raw else {}
            except ValueError:
                original = {}
            out.append(
                VolumeConfig(
                    name=original.get("name") or meta["name"],
                    driver=(item.get("spec") or {}).get("storageClassName"),
                    labels=original.get("labels") or dict(meta.get("labels") or {}),
                )
            )
        return out
