# paydesk/services/__init__.py
# ============================================================================
# PAYDESK — SERVICES MODULE
# ============================================================================
# Notification sinks (invoice email)
# ============================================================================

import logging
from typing import Optional

from paydesk.config import Settings
from paydesk.services.mailer import (
    INotifier,
    InvoiceMail,
    SendGridMailer,
    SMTPMailer,
    compose_invoice_mail,
)

logger = logging.getLogger("Paydesk.Services")


def build_notifier(settings: Settings) -> Optional[INotifier]:
    """Mail sink for the configured backend, or None when unconfigured."""
    backend = settings.resolve_mail_backend()

    if backend == "smtp":
        return SMTPMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            use_ssl=settings.smtp_secure,
            timeout=settings.sink_timeout_seconds,
        )
    if backend == "sendgrid":
        return SendGridMailer(
            api_key=settings.sendgrid_api_key,
            timeout=settings.sink_timeout_seconds,
        )

    logger.warning("No mail sink configured (need MAIL_FROM plus SMTP or SendGrid) - emails disabled")
    return None


__all__ = [
    "INotifier",
    "InvoiceMail",
    "SendGridMailer",
    "SMTPMailer",
    "build_notifier",
    "compose_invoice_mail",
]
