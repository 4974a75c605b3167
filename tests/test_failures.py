from datetime import datetime, timedelta, timezone

import docker.errors
import pytest

from conftest import make_cfg
from edgeorch.errors import ServiceOperationError, classify_error, is_retryable
from edgeorch.events import Notifier, ServiceStarted
from edgeorch.failures import ErrorTracker

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class Clock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def tracker(clock):
    return ErrorTracker(make_cfg(error_base_delay_ms=1000, error_max_delay_ms=30000), clock=clock)


def test_next_retry_follows_backoff(tracker, clock):
    start_fail = ServiceOperationError("web", "exit 1", "StartFailure")
    expected = [1000, 2000, 4000, 8000, 16000, 30000, 30000]
    for n, delay in enumerate(expected, start=1):
        err = tracker.record_failure("1:1", start_fail)
        assert err.retry_count == n
        assert err.next_retry == clock.now + timedelta(milliseconds=delay)


def test_repeated_image_pull_escalates_to_backoff(tracker):
    exc = docker.errors.ImageNotFound("no such image")
    assert tracker.record_failure("1:1", exc).type == "ErrImagePull"
    assert tracker.record_failure("1:1", exc).type == "ImagePullBackOff"
    assert tracker.record_failure("1:1", exc).type == "ImagePullBackOff"


def test_repeated_start_failure_becomes_crash_loop(tracker):
    exc = ServiceOperationError("web", "exited", "StartFailure")
    types = [tracker.record_failure("1:1", exc).type for _ in range(4)]
    assert types == ["StartFailure", "StartFailure", "CrashLoopBackOff", "CrashLoopBackOff"]


def test_error_message_is_not_double_prefixed(tracker):
    err = tracker.record_failure("1:1", ServiceOperationError("web", "port in use", "StartFailure"))
    assert err.message == "port in use"


def test_cooling_down_until_next_retry(tracker, clock):
    tracker.record_failure("1:1", RuntimeError("x"))
    assert tracker.cooling_down("1:1")
    clock.now = T0 + timedelta(milliseconds=999)
    assert tracker.cooling_down("1:1")
    clock.now = T0 + timedelta(milliseconds=1000)
    assert not tracker.cooling_down("1:1")
    assert not tracker.cooling_down("9:9")


def test_clear_and_forget(tracker):
    tracker.record_failure("1:1", RuntimeError("a"))
    tracker.record_failure("1:2", RuntimeError("b"))
    assert tracker.clear("1:1") is True
    assert tracker.clear("1:1") is False
    tracker.forget_missing({"1:1"})
    assert tracker.snapshot() == {}


def test_classify_error():
    assert classify_error(docker.errors.ImageNotFound("x")) == "ErrImagePull"
    assert classify_error(docker.errors.APIError("pull access denied for foo")) == "ErrImagePull"
    assert classify_error(docker.errors.APIError("port is already allocated"), "create") == "StartFailure"
    assert classify_error(RuntimeError("x"), "start") == "StartFailure"
    assert classify_error(RuntimeError("x"), "stop") == "Unknown"


def test_is_retryable():
    assert is_retryable(ConnectionError())
    assert is_retryable(TimeoutError())
    assert not is_retryable(ValueError())
    assert not is_retryable(docker.errors.ImageNotFound("x"))
    assert is_retryable(ServiceOperationError("web", "x", retryable=True))
    assert not is_retryable(ServiceOperationError("web", "x"))


def test_notifier_isolates_failing_listener():
    notifier = Notifier()
    got = []

    def broken(_event):
        raise RuntimeError("listener bug")

    notifier.subscribe("service-started", broken)
    notifier.subscribe("service-started", got.append)
    wildcard = []
    unsubscribe = notifier.subscribe("*", wildcard.append)

    event = ServiceStarted(service_name="web", container_id="c1")
    notifier.emit(event)
    assert got == [event]
    assert wildcard == [event]

    unsubscribe()
    notifier.emit(event)
    assert wildcard == [event]
    assert len(got) == 2
