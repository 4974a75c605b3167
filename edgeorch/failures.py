from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta
from typing import Callable

from .errors import classify_error
from .models import ErrorType, ServiceError, utc_now
from .resilience import backoff_delay_ms
from .settings import Settings, settings as default_settings

# Failures of the same kind after which the type escalates.
CRASH_LOOP_AFTER = 3


class ErrorTracker:
    """Per-service failure history used to back off broken services.

    Keyed by ``service_key(app_id, service_id)``. ``next_retry`` follows the
    same formula as the retry policy, driven by the accumulated retry count.
    """

    def __init__(
        self,
        cfg: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.cfg = cfg or default_settings
        self._clock = clock
        self._rng = rng
        self._lock = threading.Lock()
        self._errors: dict[str, ServiceError] = {}

    def _escalate(self, new_type: ErrorType, prev: ServiceError | None, retry_count: int) -> ErrorType:
        if prev is None:
            return new_type
        if new_type == "ErrImagePull" and prev.type in {"ErrImagePull", "ImagePullBackOff"}:
            return "ImagePullBackOff"
        if new_type == "StartFailure" and prev.type in {"StartFailure", "CrashLoopBackOff"}:
            return "CrashLoopBackOff" if retry_count >= CRASH_LOOP_AFTER else "StartFailure"
        return new_type

    def record_failure(self, key: str, exc: BaseException, operation: str = "create") -> ServiceError:
        now = self._clock()
        with self._lock:
            prev = self._errors.get(key)
            retry_count = (prev.retry_count if prev else 0) + 1
            err_type = self._escalate(classify_error(exc, operation), prev, retry_count)
            delay_ms = backoff_delay_ms(
                retry_count,
                self.cfg.error_base_delay_ms,
                self.cfg.error_backoff_multiplier,
                self.cfg.error_max_delay_ms,
                self.cfg.error_jitter,
                self._rng,
            )
            err = ServiceError(
                type=err_type,
                message=str(getattr(exc, "message", None) or exc) or type(exc).__name__,
                timestamp=now,
                retry_count=retry_count,
                next_retry=now + timedelta(milliseconds=delay_ms),
            )
            self._errors[key] = err
            return err

    def get(self, key: str) -> ServiceError | None:
        with self._lock:
            return self._errors.get(key)

    def cooling_down(self, key: str) -> bool:
        """True while ``next_retry`` for this service lies in the future."""
        with self._lock:
            err = self._errors.get(key)
        if err is None or err.next_retry is None:
            return False
        return self._clock() < err.next_retry

    def clear(self, key: str) -> bool:
        with self._lock:
            return self._errors.pop(key, None) is not None

    def snapshot(self) -> dict[str, ServiceError]:
        with self._lock:
            return dict(self._errors)

    def forget_missing(self, keys: set[str]) -> None:
        """Drop history for services that are neither desired nor running."""
        with self._lock:
            for k in list(self._errors):
                if k not in keys:
                    del self._errors[k]
