"""Retry, circuit breaking and single-flight guards.

These are shared by the reconciliation engine, the reconcile loop and the
driver lifecycle. None of them know anything about containers.
"""

from __future__ import annotations

import math
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, TypeVar

T = TypeVar("T")


def backoff_delay_ms(
    attempt: int,
    base_delay_ms: float,
    multiplier: float,
    max_delay_ms: float,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff for a 1-based attempt number.

    delay = min(max_delay_ms, base_delay_ms * multiplier ** (attempt - 1))

    ``jitter`` is a fraction (0.3 means +/-30%) applied after capping.
    """
    exponent = max(1, int(attempt)) - 1
    if multiplier > 1 and 0 < base_delay_ms < max_delay_ms:
        # Past this exponent the delay is capped; larger ones overflow a float.
        exponent = min(exponent, math.ceil(math.log(max_delay_ms / base_delay_ms, multiplier)))
    delay = min(max_delay_ms, base_delay_ms * multiplier**exponent)
    if jitter > 0:
        spread = (rng() * 2 - 1) * jitter
        return float(int(delay * (1 + spread)))
    return delay


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    jitter: float = 0.0
    on_retry: Callable[[int, BaseException, int], None] | None = None
    on_failure: Callable[[BaseException, int], None] | None = None
    on_success: Callable[[], None] | None = None

    def delay_for(self, attempt: int) -> float:
        return backoff_delay_ms(
            attempt, self.base_delay_ms, self.backoff_multiplier, self.max_delay_ms, self.jitter
        )


def _always_retry(_exc: BaseException) -> bool:
    return True


class RetryPolicy:
    """Run a fallible callable up to ``max_attempts`` times.

    The classifier decides whether an exception is worth another attempt;
    a non-retryable exception is re-raised at once.
    """

    def __init__(
        self,
        config: RetryConfig,
        is_retryable: Callable[[BaseException], bool] = _always_retry,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.is_retryable = is_retryable
        self._sleep = sleep
        self.consecutive_failures = 0

    def execute(self, fn: Callable[[], T]) -> T:
        cfg = self.config
        max_attempts = max(1, int(cfg.max_attempts))
        attempt = 0

        while True:
            attempt += 1
            try:
                result = fn()
            except Exception as e:
                self.consecutive_failures += 1

                if not self.is_retryable(e) or attempt >= max_attempts:
                    if cfg.on_failure:
                        cfg.on_failure(e, attempt)
                    raise

                if cfg.on_retry:
                    cfg.on_retry(attempt, e, max_attempts - attempt)
                self._sleep(cfg.delay_for(attempt) / 1000.0)
                continue

            self.consecutive_failures = 0
            if cfg.on_success:
                cfg.on_success()
            return result

    def execute_safe(self, fn: Callable[[], T]) -> T | None:
        """Like :meth:`execute` but returns None once retries are exhausted."""
        try:
            return self.execute(fn)
        except Exception:
            return None

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.config.max_attempts - self.consecutive_failures)

    def has_exhausted_retries(self) -> bool:
        return self.consecutive_failures >= self.config.max_attempts

    def reset(self) -> None:
        self.consecutive_failures = 0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class CircuitBreaker:
    """Consecutive-failure gate with a fixed cooldown.

    Independent of any retry session: callers record outcomes of whole
    iterations (a poll, a reconcile pass) and check ``is_open()`` first.
    """

    def __init__(
        self,
        max_failures: int = 10,
        cooldown_ms: float = 5 * 60 * 1000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.max_failures = max(1, int(max_failures))
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.max_failures and self._opened_at is None:
                self._opened_at = self._clock()

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def is_open(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return False
            if self._clock() - self._opened_at >= self.cooldown_ms:
                # Cooldown elapsed: close and start counting from scratch.
                self._failures = 0
                self._opened_at = None
                return False
            return True

    def cooldown_remaining(self) -> float:
        with self._lock:
            if self._opened_at is None:
                return 0.0
            return max(0.0, self.cooldown_ms - (self._clock() - self._opened_at))

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures


class SingleFlightLock:
    """At most one execution at a time; late callers are turned away."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def is_locked(self) -> bool:
        return self._lock.locked()

    def wait_idle(self, timeout_s: float | None = None) -> bool:
        """Block until no execution is in flight. False if ``timeout_s`` ran out."""
        acquired = self._lock.acquire(timeout=-1 if timeout_s is None else timeout_s)
        if acquired:
            self._lock.release()
        return acquired

    def try_execute(self, fn: Callable[[], T]) -> tuple[bool, T | None]:
        """Return ``(True, result)`` if ``fn`` ran, ``(False, None)`` if busy.

        Exceptions from ``fn`` propagate after the lock is released.
        """
        if not self._lock.acquire(blocking=False):
            return False, None
        try:
            return True, fn()
        finally:
            self._lock.release()


class KeyedLock:
    """One re-entrant lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._get(key)
        with lock:
            yield


def call_with_timeout(fn: Callable[..., T], timeout_s: float | None, *args: Any, **kwargs: Any) -> T:
    """Run a blocking call on a helper thread and give up after ``timeout_s``.

    On timeout the call is abandoned (Python threads cannot be killed) and
    ``TimeoutError`` is raised to the caller.
    """
    if timeout_s is None:
        return fn(*args, **kwargs)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="edgeorch-timeout")
    try:
        fut = pool.submit(fn, *args, **kwargs)
        try:
            return fut.result(timeout=timeout_s)
        except FutureTimeout:
            fut.cancel()
            raise TimeoutError(f"{getattr(fn, '__name__', 'call')} did not finish within {timeout_s}s") from None
    finally:
        pool.shutdown(wait=False)
