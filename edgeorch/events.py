"""Named notifications emitted by drivers and the reconciliation engine.

Consumers register plain callbacks; there is no global bus. A failing
callback is logged and does not affect the emitter or other callbacks.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, ClassVar

from .models import Health, ReconciliationResult

log = logging.getLogger(__name__)

SERVICE_STARTED = "service-started"
SERVICE_STOPPED = "service-stopped"
SERVICE_ERROR = "service-error"
HEALTH_CHANGED = "health-changed"
RECONCILIATION_COMPLETE = "reconciliation-complete"
ALL = "*"


@dataclass(frozen=True)
class ServiceStarted:
    name: ClassVar[str] = SERVICE_STARTED
    service_name: str
    container_id: str


@dataclass(frozen=True)
class ServiceStopped:
    name: ClassVar[str] = SERVICE_STOPPED
    service_name: str
    container_id: str
    exit_code: int | None = None


@dataclass(frozen=True)
class ServiceErrored:
    name: ClassVar[str] = SERVICE_ERROR
    service_name: str
    error: BaseException


@dataclass(frozen=True)
class HealthChanged:
    name: ClassVar[str] = HEALTH_CHANGED
    service_name: str
    health: Health


@dataclass(frozen=True)
class ReconciliationComplete:
    name: ClassVar[str] = RECONCILIATION_COMPLETE
    result: ReconciliationResult


Event = Any
Listener = Callable[[Event], None]


class Notifier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``event_name`` (or ``"*"``). Returns an unsubscribe function."""
        with self._lock:
            self._listeners.setdefault(event_name, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                lst = self._listeners.get(event_name, [])
                if listener in lst:
                    lst.remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event.name, [])) + list(self._listeners.get(ALL, []))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.exception("Listener for '%s' failed", event.name)
