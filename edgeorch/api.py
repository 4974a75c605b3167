from __future__ import annotations

import secrets
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .agent import Agent
from .api_models import AgentHealth, AppActionResponse, EventRecord, TargetAccepted
from .errors import (
    DriverError,
    DriverNotReadyError,
    InvalidTargetStateError,
    ServiceNotFoundError,
    ServiceOperationError,
    UnsupportedOperationError,
)
from .log import setup_logging
from .models import LogStreamOptions
from .settings import settings

app = FastAPI(title="edgeorch agent", version="1.0.0")
security = HTTPBasic()

_agent: Agent | None = None


def get_agent() -> Agent:
    if _agent is None:
        raise DriverNotReadyError("agent is not running")
    return _agent


def get_current_username(
    credentials: HTTPBasicCredentials = Depends(security),
    agent: Agent = Depends(get_agent),
) -> str:
    ok_user = secrets.compare_digest(credentials.username, agent.cfg.api_user)
    ok_pass = secrets.compare_digest(credentials.password, agent.cfg.api_password)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    global _agent
    setup_logging(settings.log_level)
    if _agent is None:
        _agent = Agent(settings)
    _agent.start()


@app.on_event("shutdown")
def shutdown() -> None:
    if _agent is not None:
        _agent.stop()


# -- error mapping ----------------------------------------------------------


def _error(code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(InvalidTargetStateError)
def _invalid_target(_request: Request, exc: InvalidTargetStateError) -> JSONResponse:
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


@app.exception_handler(ServiceNotFoundError)
def _not_found(_request: Request, exc: ServiceNotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(UnsupportedOperationError)
def _unsupported(_request: Request, exc: UnsupportedOperationError) -> JSONResponse:
    return _error(status.HTTP_501_NOT_IMPLEMENTED, exc)


@app.exception_handler(ServiceOperationError)
def _operation_failed(_request: Request, exc: ServiceOperationError) -> JSONResponse:
    return _error(status.HTTP_502_BAD_GATEWAY, exc)


@app.exception_handler(DriverError)
def _driver_error(_request: Request, exc: DriverError) -> JSONResponse:
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


# -- endpoints --------------------------------------------------------------


@app.get("/health", response_model=AgentHealth)
def health(agent: Agent = Depends(get_agent)) -> AgentHealth:
    h = agent.driver.get_health()
    return AgentHealth(
        driver=agent.driver.name,
        version=agent.driver.version,
        healthy=h.healthy,
        message=h.message,
        last_reconciliation=agent.last_result.to_wire() if agent.last_result else None,
    )


@app.get("/state/target")
def get_target(agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)) -> dict[str, Any]:
    state = agent.get_target_state()
    if state is None:
        raise HTTPException(status_code=404, detail="No target state set")
    return state.to_wire()


@app.put("/state/target", response_model=TargetAccepted)
def put_target(
    payload: dict[str, Any] = Body(...),
    agent: Agent = Depends(get_agent),
    _user: str = Depends(get_current_username),
) -> TargetAccepted:
    accepted = agent.set_target_state(payload)
    return TargetAccepted(apps=len(accepted.apps), services=len(accepted.services()))


@app.get("/state/current")
def get_current(agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)) -> dict[str, Any]:
    return agent.driver.get_current_state().to_wire()


@app.post("/reconcile")
def reconcile(agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)) -> dict[str, Any]:
    result = agent.reconcile_now()
    if result is None:
        raise HTTPException(status_code=409, detail="Reconciliation already in progress")
    return result.to_wire()


@app.get("/services")
def list_services(agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)) -> list[dict[str, Any]]:
    return [svc.to_wire() for svc in agent.services()]


@app.get("/services/{service_id}/status")
def service_status(
    service_id: str, agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)
) -> dict[str, Any]:
    return agent.driver.get_service_status(service_id).to_wire()


@app.get("/services/{service_id}/logs")
def service_logs(
    service_id: str,
    tail: int | None = Query(100, ge=0),
    follow: bool = False,
    timestamps: bool = False,
    agent: Agent = Depends(get_agent),
    _user: str = Depends(get_current_username),
) -> StreamingResponse:
    lines = agent.logs(service_id, LogStreamOptions(tail=tail, follow=follow, timestamps=timestamps))
    return StreamingResponse((line + "\n" for line in lines), media_type="text/plain")


@app.post("/apps/{app_id}/{action}", response_model=AppActionResponse)
def app_action(
    app_id: int, action: str, agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)
) -> AppActionResponse:
    handlers = {"start": agent.start_app, "stop": agent.stop_app, "restart": agent.restart_app}
    if action not in handlers:
        raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
    return AppActionResponse(app_id=app_id, action=action, services=handlers[action](app_id))


@app.get("/metrics")
def metrics(
    service_id: str | None = None, agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)
) -> list[dict[str, Any]]:
    return [m.to_wire() for m in agent.metrics(service_id)]


@app.get("/events", response_model=list[EventRecord])
def events(
    limit: int = Query(50, ge=1, le=1000), agent: Agent = Depends(get_agent), _user: str = Depends(get_current_username)
) -> list[EventRecord]:
    return [EventRecord(**row) for row in db.latest_events(limit, agent.db_path)]
