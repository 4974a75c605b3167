import io
import json

import pytest

import cli


class _Resp:
    def __init__(self, status_code=200, payload=None, lines=()):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self._lines = list(lines)
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_lines(self, decode_unicode=False):
        return iter(self._lines)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class Calls(list):
    """Records requests made through the patched ``requests`` functions."""

    def __init__(self, monkeypatch):
        super().__init__()
        self._monkeypatch = monkeypatch

    def fake(self, method, response):
        def _call(url, **kwargs):
            self.append((method, url, kwargs))
            return response

        self._monkeypatch.setattr(cli.requests, method, _call)


@pytest.fixture()
def calls(monkeypatch):
    for name in ("EDGE_API_URL", "EDGE_API_USER", "EDGE_API_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    return Calls(monkeypatch)


def test_health_has_no_auth(calls, capsys):
    calls.fake("get", _Resp(payload={"driver": "docker", "healthy": True}))
    assert cli.main(["--api", "http://edge:8000/", "health"]) == 0
    method, url, kwargs = calls[0]
    assert url == "http://edge:8000/health"
    assert "auth" not in kwargs
    assert json.loads(capsys.readouterr().out)["driver"] == "docker"


def test_apply_reads_file_and_puts_target(calls, tmp_path):
    target = {"apps": {}}
    path = tmp_path / "target.json"
    path.write_text(json.dumps(target), encoding="utf-8")
    calls.fake("put", _Resp(payload={"accepted": True, "apps": 0, "services": 0}))

    rc = cli.main(["--user", "ops", "--password", "pw", "apply", str(path)])

    assert rc == 0
    method, url, kwargs = calls[0]
    assert (method, url) == ("put", "http://localhost:8000/state/target")
    assert kwargs["json"] == target
    assert kwargs["auth"] == ("ops", "pw")


def test_apply_from_stdin(calls, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO('{"apps": {}}'))
    calls.fake("put", _Resp(payload={"accepted": True}))
    assert cli.main(["apply", "-"]) == 0
    assert calls[0][2]["json"] == {"apps": {}}


def test_error_response_gives_exit_code_1(calls, capsys):
    calls.fake("post", _Resp(409, payload={"detail": "Reconciliation already in progress"}))
    assert cli.main(["reconcile"]) == 1
    assert "already in progress" in capsys.readouterr().out


def test_app_actions_post_to_app_endpoint(calls):
    calls.fake("post", _Resp(payload={"app_id": 3, "action": "restart", "services": ["web"]}))
    assert cli.main(["restart", "3"]) == 0
    assert calls[0][1] == "http://localhost:8000/apps/3/restart"


def test_logs_are_printed_line_by_line(calls, capsys):
    calls.fake("get", _Resp(lines=["one", "two"]))
    assert cli.main(["logs", "abc123", "--tail", "5"]) == 0
    _, url, kwargs = calls[0]
    assert url == "http://localhost:8000/services/abc123/logs"
    assert kwargs["params"] == {"tail": 5, "follow": "false"}
    assert kwargs["stream"] is True
    assert capsys.readouterr().out.splitlines() == ["one", "two"]


def test_events_limit(calls):
    calls.fake("get", _Resp(payload=[]))
    assert cli.main(["events", "--limit", "3"]) == 0
    assert calls[0][2]["params"] == {"limit": 3}
