from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable

from .events import HEALTH_CHANGED, SERVICE_ERROR, HealthChanged, Notifier, ServiceErrored
from .settings import Settings, settings as default_settings

log = logging.getLogger(__name__)


def send_email(subject: str, body: str, cfg: Settings | None = None) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - EDGE_ENABLE_EMAIL=true
      - EDGE_SMTP_HOST / EDGE_SMTP_PORT
      - EDGE_SMTP_USER / EDGE_SMTP_PASSWORD
      - EDGE_EMAIL_FROM / EDGE_EMAIL_TO
    """
    cfg = cfg or default_settings
    if not cfg.enable_email:
        return False
    if not all(
        [
            cfg.smtp_host,
            cfg.smtp_port,
            cfg.smtp_user,
            cfg.smtp_password,
            cfg.email_from,
            cfg.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = cfg.email_from
        msg["To"] = cfg.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port)
        server.starttls()
        server.login(cfg.smtp_user, cfg.smtp_password)
        server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.warning("Alert e-mail failed: %s", e)
        return False


class AlertSink:
    """Mails on service errors and on services turning unhealthy."""

    def __init__(self, cfg: Settings | None = None, send: Callable[[str, str], bool] | None = None) -> None:
        self.cfg = cfg or default_settings
        self._send = send or (lambda subject, body: send_email(subject, body, self.cfg))
        self._unsubscribe: list[Callable[[], None]] = []

    def attach(self, notifier: Notifier) -> None:
        self._unsubscribe.append(notifier.subscribe(SERVICE_ERROR, self.on_service_error))
        self._unsubscribe.append(notifier.subscribe(HEALTH_CHANGED, self.on_health_changed))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def on_service_error(self, event: ServiceErrored) -> None:
        self._send(
            f"[edgeorch] {event.service_name} failed",
            f"Service '{event.service_name}' failed during reconciliation:\n\n{event.error}",
        )

    def on_health_changed(self, event: HealthChanged) -> None:
        if event.health != "unhealthy":
            return
        self._send(
            f"[edgeorch] {event.service_name} is unhealthy",
            f"Health checks of service '{event.service_name}' are failing.",
        )
