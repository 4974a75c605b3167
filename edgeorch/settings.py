from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("EDGE_DB_PATH", "edgeorch.db")
    orchestrator: str = os.getenv("EDGE_ORCHESTRATOR", "docker")  # docker|k3s
    reconcile_interval_s: int = _env_int("EDGE_RECONCILE_INTERVAL_S", 30)
    init_timeout_s: float = _env_float("EDGE_INIT_TIMEOUT_S", 30.0)
    shutdown_timeout_s: float = _env_float("EDGE_SHUTDOWN_TIMEOUT_S", 60.0)
    max_parallel_ops: int = _env_int("EDGE_MAX_PARALLEL_OPS", 4)
    stop_timeout_s: int = _env_int("EDGE_STOP_TIMEOUT_S", 10)
    log_level: str = os.getenv("EDGE_LOG_LEVEL", "INFO")

    # Retry of a single driver call inside one pass
    op_max_attempts: int = _env_int("EDGE_OP_MAX_ATTEMPTS", 3)
    op_base_delay_ms: int = _env_int("EDGE_OP_BASE_DELAY_MS", 500)
    op_max_delay_ms: int = _env_int("EDGE_OP_MAX_DELAY_MS", 5000)
    op_backoff_multiplier: float = _env_float("EDGE_OP_BACKOFF_MULTIPLIER", 2.0)

    # Cross-pass backoff of a failing service (ServiceError.next_retry)
    error_base_delay_ms: int = _env_int("EDGE_ERROR_BASE_DELAY_MS", 1000)
    error_max_delay_ms: int = _env_int("EDGE_ERROR_MAX_DELAY_MS", 30000)
    error_backoff_multiplier: float = _env_float("EDGE_ERROR_BACKOFF_MULTIPLIER", 2.0)
    error_jitter: float = _env_float("EDGE_ERROR_JITTER", 0.0)

    # Reconcile loop circuit breaker
    breaker_max_failures: int = _env_int("EDGE_BREAKER_MAX_FAILURES", 10)
    breaker_cooldown_ms: int = _env_int("EDGE_BREAKER_COOLDOWN_MS", 5 * 60 * 1000)

    # Docker backend
    docker_base_url: str | None = os.getenv("EDGE_DOCKER_HOST")
    docker_timeout_s: int = _env_int("EDGE_DOCKER_TIMEOUT_S", 60)

    # k3s backend
    k3s_api_url: str = os.getenv("EDGE_K3S_API_URL", "https://kubernetes.default.svc")
    k3s_token: str | None = os.getenv("EDGE_K3S_TOKEN")
    k3s_token_path: str = os.getenv(
        "EDGE_K3S_TOKEN_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/token"
    )
    k3s_ca_path: str | None = os.getenv(
        "EDGE_K3S_CA_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    )
    k3s_verify_tls: bool = _env_bool("EDGE_K3S_VERIFY_TLS", True)
    k3s_namespace: str = os.getenv("EDGE_K3S_NAMESPACE", "default")
    k3s_timeout_s: float = _env_float("EDGE_K3S_TIMEOUT_S", 10.0)

    # Management API (HTTP basic auth)
    api_user: str = os.getenv("EDGE_API_USER", "admin")
    api_password: str = os.getenv("EDGE_API_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("EDGE_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("EDGE_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("EDGE_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("EDGE_SMTP_USER")
    smtp_password: str | None = os.getenv("EDGE_SMTP_PASSWORD")
    email_from: str | None = os.getenv("EDGE_EMAIL_FROM")
    email_to: str | None = os.getenv("EDGE_EMAIL_TO")


settings = Settings()
