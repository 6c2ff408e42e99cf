from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .db import log_event
from .settings import Settings, settings as default_settings


def _smtp_ready(cfg: Settings) -> bool:
    if not cfg.enable_email:
        return False
    return all([cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to])


def build_alert(project_id: str, container_name: str, detail: str, cfg: Settings) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = cfg.email_from
    msg["To"] = cfg.email_to
    msg["Subject"] = f"GATEWAY NEEDS ATTENTION: {project_id} ({container_name})"
    msg.set_content(
        f"Project: {project_id}\n"
        f"Container: {container_name}\n"
        f"Detail: {detail}\n"
        "The container was created and left running; no rollback was attempted.\n"
    )
    return msg


def alert_operator(project_id: str, container_name: str, detail: str, settings: Settings | None = None) -> bool:
    """Mail the operator about a gateway left in place for inspection.

    Sent only with GWM_ENABLE_EMAIL=true and a complete GWM_SMTP_* / GWM_EMAIL_*
    configuration. Returns whether a message went out; a delivery failure is
    journaled and never fails the operation that raised the alert.
    """
    cfg = settings or default_settings
    if not _smtp_ready(cfg):
        return False

    msg = build_alert(project_id, container_name, detail, cfg)
    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email failed: {type(e).__name__}: {e}", project_id, "alert")
        return False
    log_event("INFO", f"Alert email sent to {cfg.email_to}", project_id, "alert")
    return True
