from __future__ import annotations

from typing import Any

from ..settings import Settings, settings as default_settings
from .base import OrchestratorDriver
from .docker import DockerDriver
from .k3s import K3sDriver

DRIVERS: dict[str, type[OrchestratorDriver]] = {
    DockerDriver.name: DockerDriver,
    K3sDriver.name: K3sDriver,
}


def create_driver(name: str | None = None, cfg: Settings | None = None, **kwargs: Any) -> OrchestratorDriver:
    """Instantiate (but do not init) the driver for ``name``, default from settings."""
    cfg = cfg or default_settings
    key = (name or cfg.orchestrator).strip().lower()
    try:
        cls = DRIVERS[key]
    except KeyError:
        raise ValueError(f"Unknown orchestrator '{key}'. Choose one of: {', '.join(sorted(DRIVERS))}") from None
    return cls(cfg, **kwargs)


__all__ = ["DRIVERS", "DockerDriver", "K3sDriver", "OrchestratorDriver", "create_driver"]
