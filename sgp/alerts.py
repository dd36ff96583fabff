from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .health import UnitHealth
from .settings import settings
from .topology import ServiceUnit


def unit_alert(unit: ServiceUnit, revision: int, health: UnitHealth) -> tuple[str, str]:
    """Subject and body for a unit health transition.

    The body lists every container of the group with its role, image and
    probe state, so the failing one is visible without opening the events.
    """
    status = "RECOVERED" if health.healthy else "DOWN"
    subject = f"{status}: unit {unit.name} revision {revision} ({health.state})"
    lines = [
        f"Unit: {unit.name}",
        f"Region: {unit.region}",
        f"Ingress: {unit.ingress.value}",
        f"Revision: {revision}",
        f"Version: {unit.version}",
        f"State: {health.state}",
        "",
        "Containers:",
    ]
    for c in unit.containers:
        state = health.containers.get(c.role.value, "unknown")
        marker = "" if state == "ready" else "  <--"
        lines.append(f"  {c.role.value:<5} {state:<8} {c.image}{marker}")
    return subject, "\n".join(lines) + "\n"


def send_email(subject: str, body: str) -> bool:
    """Send a unit health alert if SMTP settings are configured.

    Environment variables:
      - SGP_ENABLE_EMAIL=true
      - SGP_SMTP_HOST / SGP_SMTP_PORT
      - SGP_SMTP_USER / SGP_SMTP_PASSWORD
      - SGP_EMAIL_FROM / SGP_EMAIL_TO

    Alerting never interrupts reconciliation, so delivery failures
    are reported through the return value.
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = f"[{settings.app_name}] {subject}"
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError):
        return False
