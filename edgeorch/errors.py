from __future__ import annotations

import docker.errors
import httpx
import requests

from .models import ErrorType


class EdgeOrchError(Exception):
    pass


# -- lifecycle / fatal ------------------------------------------------------


class DriverError(EdgeOrchError):
    """The backend as a whole failed (unreachable, state read failed, ...)."""


class DriverInitError(DriverError):
    pass


class DriverNotReadyError(DriverError):
    pass


# -- configuration ----------------------------------------------------------


class InvalidTargetStateError(EdgeOrchError):
    pass


# -- per service ------------------------------------------------------------


class ServiceNotFoundError(EdgeOrchError):
    def __init__(self, service_id: str) -> None:
        super().__init__(f"Service '{service_id}' not found")
        self.service_id = service_id


class UnsupportedOperationError(EdgeOrchError):
    pass


class ServiceOperationError(EdgeOrchError):
    """A create/start/stop/remove on one service failed.

    ``error_type`` is the classification recorded in the ServiceError.
    """

    def __init__(
        self,
        service_name: str,
        message: str,
        error_type: ErrorType = "Unknown",
        retryable: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.service_name = service_name
        self.message = message
        self.error_type = error_type
        self.retryable = retryable
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"


_TRANSIENT = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def is_retryable(exc: BaseException) -> bool:
    """Default classifier for retrying a single driver call."""
    if isinstance(exc, ServiceOperationError):
        return exc.retryable
    if isinstance(exc, (DriverInitError, InvalidTargetStateError, UnsupportedOperationError, ServiceNotFoundError)):
        return False
    if isinstance(exc, _TRANSIENT):
        return True
    if isinstance(exc, docker.errors.ImageNotFound):
        return False
    if isinstance(exc, docker.errors.APIError):
        return exc.is_server_error()
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


def classify_error(exc: BaseException, operation: str = "create") -> ErrorType:
    """Map an exception from a service operation to a ServiceError type.

    Escalation to the *BackOff / CrashLoop types happens in the tracker,
    which knows the history; this only looks at the single failure.
    """
    if isinstance(exc, ServiceOperationError):
        return exc.error_type
    if isinstance(exc, docker.errors.ImageNotFound):
        return "ErrImagePull"
    if isinstance(exc, docker.errors.APIError):
        explanation = str(exc.explanation or exc).lower()
        if "pull access denied" in explanation or "manifest unknown" in explanation or "no such image" in explanation:
            return "ErrImagePull"
        if operation in {"create", "start", "recreate"}:
            return "StartFailure"
    if operation in {"start"}:
        return "StartFailure"
    return "Unknown"
