import threading
from datetime import timedelta

import pytest

from conftest import FakeDriver, make_cfg, make_service, make_target
from edgeorch.errors import DriverNotReadyError, InvalidTargetStateError, ServiceOperationError
from edgeorch.events import ReconciliationComplete, ServiceErrored, ServiceStarted, ServiceStopped
from edgeorch.models import Service, ServiceStatus
from edgeorch.reconciler import plan_action

# -- planning -----------------------------------------------------------------


def _svc(state="running", **config):
    return Service.model_validate(make_service(state=state, **config))


def _observed(svc, state="running", paused=False):
    return svc.model_copy(update={"container_id": "c1", "status": ServiceStatus(state=state, paused=paused)})


@pytest.mark.parametrize(
    "desired_state,observed_state,paused,expected",
    [
        ("running", "running", False, None),
        ("running", "creating", False, None),
        ("running", "stopped", False, "start"),
        ("running", "error", False, "start"),
        ("running", "stopped", True, "start"),
        ("stopped", "running", False, "stop"),
        ("stopped", "stopped", False, None),
        ("stopped", "stopped", True, "stop"),
        ("paused", "running", False, "pause"),
        ("paused", "stopped", True, None),
    ],
)
def test_plan_action_for_state_transitions(desired_state, observed_state, paused, expected):
    desired = _svc(desired_state)
    observed = _observed(_svc("running"), observed_state, paused)
    assert plan_action(desired, observed) == expected


def test_plan_action_create_and_recreate():
    desired = _svc()
    assert plan_action(desired, None) == "create"
    changed = _observed(_svc(environment={"A": "1"}))
    assert plan_action(desired, changed) == "recreate"


# -- passes -------------------------------------------------------------------


def test_reconcile_refuses_before_init(cfg):
    d = FakeDriver(cfg)
    with pytest.raises(DriverNotReadyError):
        d.reconcile()


def test_reconcile_without_target_is_a_noop(driver, events):
    result = driver.reconcile()
    assert result.success
    assert (result.services_created, result.services_updated, result.services_removed) == (0, 0, 0)
    assert driver.calls == []
    assert isinstance(events[-1], ReconciliationComplete)


def test_creates_missing_service_and_leaves_converged_one_alone(driver):
    a = make_service("a", 1, image="img-x")
    driver.set_target_state(make_target(a))
    driver.reconcile()
    driver.calls.clear()

    b = make_service("b", 2, image="img-y", state="stopped")
    driver.set_target_state(make_target(a, b))
    result = driver.reconcile()

    assert (result.services_created, result.services_updated, result.services_removed) == (1, 0, 0)
    assert result.errors == []
    assert driver.ops("create") == ["b"]
    assert [c for c in driver.calls if c[1] == "a"] == []
    observed = {s.service_name: s for s in driver.get_current_state().services()}
    assert observed["b"].status.state == "stopped"
    assert observed["a"].status.state == "running"


def test_removes_services_no_longer_desired(driver, events):
    a, c = make_service("a", 1), make_service("c", 3)
    driver.set_target_state(make_target(a, c))
    driver.reconcile()
    cid = driver.cid_of("c")

    driver.set_target_state(make_target(a))
    result = driver.reconcile()

    assert (result.services_created, result.services_updated, result.services_removed) == (0, 0, 1)
    assert driver.ops("remove") == ["c"]
    assert result.errors == []
    stopped = [e for e in events if isinstance(e, ServiceStopped)]
    assert [(e.service_name, e.container_id) for e in stopped] == [("c", cid)]


def test_replaced_service_is_removed_before_its_successor_is_created(driver):
    driver.set_target_state(make_target(make_service("web", 1)))
    driver.reconcile()
    driver.calls.clear()

    driver.set_target_state(make_target(make_service("web", 2)))
    result = driver.reconcile()

    assert (result.services_created, result.services_updated, result.services_removed) == (1, 0, 1)
    assert driver.calls == [("remove", "web"), ("create", "web")]
    assert [s.service_id for s in driver.get_current_state().services()] == [2]


def test_second_pass_on_unchanged_target_does_nothing(driver):
    driver.set_target_state(make_target(make_service("a", 1), make_service("b", 2, state="stopped")))
    first = driver.reconcile()
    assert first.services_created == 2
    calls = list(driver.calls)

    second = driver.reconcile()
    assert (second.services_created, second.services_updated, second.services_removed) == (0, 0, 0)
    assert driver.calls == calls


def test_failure_of_one_service_does_not_block_others(driver, events):
    driver.fail("create", "bad", ServiceOperationError("bad", "image broken", "StartFailure"))
    driver.set_target_state(make_target(make_service("good", 1), make_service("bad", 2)))

    result = driver.reconcile()

    assert result.success
    assert result.services_created == 1
    assert [(e.service_name, e.error) for e in result.errors] == [("bad", "StartFailure: image broken")]
    assert sorted(driver.ops("create")) == ["bad", "good"]
    errored = [e for e in events if isinstance(e, ServiceErrored)]
    assert [e.service_name for e in errored] == ["bad"]
    err = driver.errors.get("1:2")
    assert err.type == "StartFailure"
    assert err.retry_count == 1


def test_failed_service_is_skipped_while_backing_off(driver):
    driver.fail("create", "bad", ServiceOperationError("bad", "boom", "StartFailure"))
    driver.set_target_state(make_target(make_service("bad", 1)))
    driver.reconcile()

    result = driver.reconcile()
    assert driver.ops("create") == ["bad"]
    assert result.errors == []
    assert result.services_created == 0

    # Once next_retry has passed, the service is tried again.
    err = driver.errors.get("1:1")
    driver.errors._clock = lambda: err.next_retry + timedelta(milliseconds=1)
    result = driver.reconcile()
    assert driver.ops("create") == ["bad", "bad"]
    assert result.services_created == 1


def test_long_failing_service_does_not_break_the_pass(driver):
    for _ in range(1024):
        driver.errors.record_failure("1:2", ServiceOperationError("bad", "pull denied", "ErrImagePull"))
    resume_at = driver.errors.get("1:2").next_retry + timedelta(milliseconds=1)
    driver.errors._clock = lambda: resume_at
    driver.fail("create", "bad", ServiceOperationError("bad", "pull denied", "ErrImagePull"))
    driver.set_target_state(make_target(make_service("good", 1), make_service("bad", 2)))

    result = driver.reconcile()

    assert result.services_created == 1
    assert [e.service_name for e in result.errors] == ["bad"]
    err = driver.errors.get("1:2")
    assert err.retry_count == 1025
    assert err.type == "ImagePullBackOff"
    assert err.next_retry - err.timestamp <= timedelta(milliseconds=driver.cfg.error_max_delay_ms)


def test_error_cleared_once_service_runs_healthy(driver):
    driver.fail("create", "web", ServiceOperationError("web", "boom", "StartFailure"))
    driver.set_target_state(make_target(make_service("web", 1)))
    driver.reconcile()
    err = driver.errors.get("1:1")
    driver.errors._clock = lambda: err.next_retry + timedelta(seconds=1)

    assert driver.reconcile().services_created == 1
    assert driver.errors.get("1:1") is not None

    driver.reconcile()
    assert driver.errors.get("1:1") is None


def test_configuration_change_recreates_service(driver, events):
    driver.set_target_state(make_target(make_service("web", 1, environment={"V": "1"})))
    driver.reconcile()
    old = driver.cid_of("web")

    driver.set_target_state(make_target(make_service("web", 1, environment={"V": "2"})))
    result = driver.reconcile()

    assert (result.services_created, result.services_updated, result.services_removed) == (0, 1, 0)
    assert driver.ops("remove") == ["web"]
    assert driver.ops("create") == ["web", "web"]
    new = driver.cid_of("web")
    assert new != old
    assert driver.containers[new]["service"].config.environment == {"V": "2"}


def test_desired_state_changes_use_start_stop_pause(driver, events):
    driver.set_target_state(make_target(make_service("web", 1)))
    driver.reconcile()

    driver.set_target_state(make_target(make_service("web", 1, state="stopped")))
    assert driver.reconcile().services_updated == 1
    assert driver.ops("stop") == ["web"]

    driver.set_target_state(make_target(make_service("web", 1, state="running")))
    assert driver.reconcile().services_updated == 1
    assert driver.ops("start") == ["web"]

    driver.set_target_state(make_target(make_service("web", 1, state="paused")))
    assert driver.reconcile().services_updated == 1
    assert driver.ops("pause") == ["web"]
    assert driver.ops("create") == ["web"]
    started = [e for e in events if isinstance(e, ServiceStarted)]
    assert len(started) == 2


def test_networks_and_volumes_are_app_scoped(driver):
    driver.set_target_state(
        make_target(
            make_service("web", 1, networks=["backend"], volumes=["data:/data"]),
            networks=["backend"],
            volumes=["data"],
        )
    )
    driver.reconcile()
    assert driver.ops("create_network") == ["1_backend"]
    assert driver.ops("create_volume") == ["1_data"]
    assert driver.networks["1_backend"].labels["edgeorch.app-id"] == "1"

    driver.reconcile()
    assert driver.ops("create_network") == ["1_backend"]


def test_network_failure_blocks_dependent_service_only(driver):
    driver.fail("create_network", "1_backend", ServiceOperationError("backend", "no subnet"))
    driver.set_target_state(
        make_target(make_service("api", 1, networks=["backend"]), make_service("cache", 2), networks=["backend"])
    )

    result = driver.reconcile()

    assert driver.ops("create") == ["cache"]
    names = sorted(e.service_name for e in result.errors)
    assert names == ["api", "demo/network:backend"]


def test_removed_app_loses_networks_but_keeps_volumes(driver):
    driver.set_target_state(
        make_target(make_service("web", 1, volumes=["data:/d"], networks=["net"]), networks=["net"], volumes=["data"])
    )
    driver.reconcile()

    driver.set_target_state({"apps": {}})
    result = driver.reconcile()

    assert result.services_removed == 1
    assert driver.ops("remove_network") == ["1_net"]
    assert driver.ops("remove_volume") == []
    assert "1_data" in driver.volumes


def test_overlapping_reconcile_is_dropped(driver):
    driver.set_target_state(make_target(make_service("web", 1)))
    driver.list_gate = threading.Event()
    driver.list_entered.clear()
    results = {}
    t = threading.Thread(target=lambda: results.setdefault("first", driver.reconcile()))
    t.start()
    assert driver.list_entered.wait(5)

    assert driver.reconcile() is None

    driver.list_gate.set()
    t.join(5)
    assert results["first"].services_created == 1
    assert driver.ops("create") == ["web"]


def test_invalid_target_keeps_previous_state(driver):
    driver.set_target_state(make_target(make_service("web", 1)))
    with pytest.raises(InvalidTargetStateError):
        driver.set_target_state(make_target(make_service("web", 1, volumes=["ghost:/g"])))
    assert driver.get_target_state().apps["1"].services[0].service_name == "web"


def test_transient_driver_errors_are_retried_within_a_pass():
    d = FakeDriver(make_cfg(op_max_attempts=3))
    d.init()
    try:
        d.fail("create", "web", ConnectionError("daemon hiccup"), times=2)
        d.set_target_state(make_target(make_service("web", 1)))
        result = d.reconcile()
        assert result.services_created == 1
        assert d.ops("create") == ["web", "web", "web"]
        assert result.errors == []
    finally:
        d.shutdown()


def test_health_monitoring_starts_for_services_with_probes(driver):
    probe = {"type": "tcp", "tcpPort": 5432, "initialDelaySeconds": 3600}
    driver.set_target_state(make_target(make_service("db", 1, readinessProbe=probe), make_service("web", 2)))
    driver.reconcile()
    assert driver.health_monitor.is_monitoring("1:1")
    assert not driver.health_monitor.is_monitoring("1:2")

    driver.set_target_state(make_target(make_service("web", 2)))
    driver.reconcile()
    assert not driver.health_monitor.is_monitoring("1:1")


def test_shutdown_is_idempotent_and_blocks_reconcile(cfg):
    d = FakeDriver(cfg)
    d.init()
    d.shutdown()
    d.shutdown()
    assert d.shutdown_calls == 1
    with pytest.raises(DriverNotReadyError):
        d.reconcile()


def test_step_without_its_service_is_rejected(driver):
    from edgeorch.reconciler import _Step

    with pytest.raises(RuntimeError, match="remove of web planned without the service"):
        driver.engine._execute(_Step(action="remove", key="1:1", service_name="web"))
