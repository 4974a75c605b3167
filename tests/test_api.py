import base64

import pytest
from fastapi.testclient import TestClient

from conftest import FakeDriver, make_cfg, make_service, make_target
from edgeorch.agent import Agent
from edgeorch.alerts import AlertSink
from edgeorch.api import app, get_agent


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth("admin", "secret")


@pytest.fixture()
def agent(tmp_path):
    cfg = make_cfg()
    a = Agent(
        cfg,
        driver=FakeDriver(cfg),
        db_path=str(tmp_path / "api.db"),
        alerts=AlertSink(cfg, send=lambda subject, body: True),
    )
    a.start(run_loop=False)
    yield a
    a.stop()


@pytest.fixture()
def client(agent):
    # No "with": startup hooks would build a real agent.
    app.dependency_overrides[get_agent] = lambda: agent
    yield TestClient(app)
    app.dependency_overrides.clear()


def _apply(client, *services, **kwargs):
    r = client.put("/state/target", json=make_target(*services, **kwargs), headers=AUTH)
    assert r.status_code == 200, r.text
    return r.json()


def test_health_needs_no_auth(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["driver"] == "fake"
    assert body["healthy"] is True
    assert body["last_reconciliation"] is None


def test_endpoints_require_basic_auth(client):
    assert client.get("/services").status_code == 401
    assert client.get("/services", headers=_basic_auth("admin", "wrong")).status_code == 401
    assert client.get("/services", headers=AUTH).status_code == 200


def test_target_state_roundtrip(client):
    assert client.get("/state/target", headers=AUTH).status_code == 404

    accepted = _apply(client, make_service("web", 1), make_service("db", 2))
    assert accepted == {"accepted": True, "apps": 1, "services": 2}

    r = client.get("/state/target", headers=AUTH)
    assert r.status_code == 200
    services = r.json()["apps"]["1"]["services"]
    assert [s["serviceName"] for s in services] == ["web", "db"]


def test_invalid_target_is_rejected(client):
    _apply(client, make_service("web", 1))
    r = client.put("/state/target", json=make_target(make_service("web", 1, volumes=["ghost:/g"])), headers=AUTH)
    assert r.status_code == 422
    assert r.json()["error"] == "InvalidTargetStateError"
    # Previous target is kept.
    config = client.get("/state/target", headers=AUTH).json()["apps"]["1"]["services"][0]["config"]
    assert not config.get("volumes")


def test_reconcile_and_inspect_services(client, agent):
    _apply(client, make_service("web", 1), make_service("worker", 2, state="stopped"))

    r = client.post("/reconcile", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["servicesCreated"] == 2

    services = client.get("/services", headers=AUTH).json()
    states = {s["serviceName"]: s["status"]["state"] for s in services}
    assert states == {"web": "running", "worker": "stopped"}

    cid = agent.driver.cid_of("web")
    status = client.get(f"/services/{cid}/status", headers=AUTH).json()
    assert status["state"] == "running"
    assert client.get("/services/nope/status", headers=AUTH).status_code == 404

    current = client.get("/state/current", headers=AUTH).json()
    assert len(current["apps"]["1"]["services"]) == 2

    health = client.get("/health").json()
    assert health["last_reconciliation"]["servicesCreated"] == 2


def test_reconcile_while_busy_returns_conflict(client, agent):
    lock = agent.driver.engine.lock._lock
    lock.acquire()
    try:
        assert client.post("/reconcile", headers=AUTH).status_code == 409
    finally:
        lock.release()


def test_app_actions(client, agent):
    _apply(client, make_service("web", 1), make_service("db", 2))
    client.post("/reconcile", headers=AUTH)

    r = client.post("/apps/1/stop", headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert (body["app_id"], body["action"]) == (1, "stop")
    assert sorted(body["services"]) == ["db", "web"]
    assert sorted(agent.driver.ops("stop")) == ["db", "web"]

    assert client.post("/apps/1/restart", headers=AUTH).status_code == 200
    assert sorted(agent.driver.ops("restart")) == ["db", "web"]

    assert client.post("/apps/42/start", headers=AUTH).status_code == 404
    assert client.post("/apps/1/explode", headers=AUTH).status_code == 404


def test_logs_are_streamed_as_text(client, agent):
    _apply(client, make_service("web", 1))
    client.post("/reconcile", headers=AUTH)
    cid = agent.driver.cid_of("web")
    agent.driver.containers[cid]["logs"].extend(["booting", "ready", "serving"])

    r = client.get(f"/services/{cid}/logs", params={"tail": 2}, headers=AUTH)

    assert r.status_code == 200
    assert r.text == "ready\nserving\n"


def test_metrics(client, agent):
    _apply(client, make_service("web", 1))
    client.post("/reconcile", headers=AUTH)
    cid = agent.driver.cid_of("web")

    all_metrics = client.get("/metrics", headers=AUTH).json()
    assert [m["serviceName"] for m in all_metrics] == ["web"]
    one = client.get("/metrics", params={"service_id": cid}, headers=AUTH).json()
    assert one[0]["memory"]["percentage"] == 25.0


def test_events_are_listed_newest_first(client):
    _apply(client, make_service("web", 1))
    client.post("/reconcile", headers=AUTH)

    r = client.get("/events", params={"limit": 10}, headers=AUTH)

    assert r.status_code == 200
    messages = [e["message"] for e in r.json()]
    assert messages[0] == "Reconciled: created=1 updated=0 removed=0 errors=0"
    assert "Target state updated (1 apps)" in messages
