from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AgentHealth(BaseModel):
    driver: str
    version: str
    healthy: bool
    message: str | None = None
    last_reconciliation: dict[str, Any] | None = None


class TargetAccepted(BaseModel):
    accepted: bool = True
    apps: int = Field(..., ge=0, description="Number of apps in the accepted target state")
    services: int = Field(..., ge=0)


class AppActionResponse(BaseModel):
    app_id: int
    action: str = Field(..., description="start|stop|restart")
    services: list[str] = Field(default_factory=list, description="Names of the services acted on")


class EventRecord(BaseModel):
    id: int
    ts: str
    level: str
    event: str | None = None
    service_name: str | None = None
    message: str
