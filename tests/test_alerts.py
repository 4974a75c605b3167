import logging
import smtplib

from conftest import make_cfg
from edgeorch import alerts
from edgeorch.alerts import AlertSink, send_email
from edgeorch.errors import ServiceOperationError
from edgeorch.events import HealthChanged, Notifier, ServiceErrored
from edgeorch.log import setup_logging

MAIL_CFG = dict(
    enable_email=True,
    smtp_host="smtp.test",
    smtp_port=587,
    smtp_user="u",
    smtp_password="p",
    email_from="edge@test",
    email_to="ops@test",
)


def test_send_email_disabled_by_default():
    assert send_email("s", "b", make_cfg()) is False


def test_send_email_needs_complete_settings():
    assert send_email("s", "b", make_cfg(**{**MAIL_CFG, "email_to": None})) is False


def test_send_email_failure_is_logged_not_raised(monkeypatch, caplog):
    def refuse(host, port):
        raise smtplib.SMTPConnectError(421, "try later")

    monkeypatch.setattr(alerts.smtplib, "SMTP", refuse)
    with caplog.at_level(logging.WARNING, logger="edgeorch.alerts"):
        assert send_email("s", "b", make_cfg(**MAIL_CFG)) is False
    assert "Alert e-mail failed" in caplog.text


def test_alert_sink_mails_errors_and_unhealthy_only():
    notifier = Notifier()
    sent = []
    sink = AlertSink(make_cfg(), send=lambda subject, body: sent.append((subject, body)) or True)
    sink.attach(notifier)

    notifier.emit(ServiceErrored(service_name="web", error=ServiceOperationError("web", "image not found", "ErrImagePull")))
    notifier.emit(HealthChanged(service_name="db", health="healthy"))
    notifier.emit(HealthChanged(service_name="db", health="unhealthy"))

    assert [s for s, _ in sent] == ["[edgeorch] web failed", "[edgeorch] db is unhealthy"]
    assert "image not found" in sent[0][1]

    sink.detach()
    notifier.emit(ServiceErrored(service_name="web", error=RuntimeError("again")))
    assert len(sent) == 2


def test_setup_logging_adds_one_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        setup_logging("debug")
        setup_logging("warning")
        ours = [h for h in root.handlers if getattr(h, "_edgeorch", False)]
        assert len(ours) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for h in root.handlers:
            if h not in before:
                root.removeHandler(h)
        root.setLevel(level)
