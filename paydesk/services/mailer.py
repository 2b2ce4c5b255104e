# paydesk/services/mailer.py
# ============================================================================
# PAYDESK — INVOICE MAILER
# ============================================================================
# Notification sinks: SMTP (aiosmtplib) and SendGrid v3 Web API (httpx).
# Both send the same message: a short plain-text note with the invoice PDF
# attached, optionally bcc'd to the store.
# ============================================================================

import base64
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import Optional

import aiosmtplib
import httpx

from paydesk.errors import SinkError, TransientSinkError
from paydesk.pipeline.retry import raise_for_transient_status
from paydesk.schemas.billing import BillingFacts
from paydesk.storage.base import PDF_MIME

logger = logging.getLogger("Paydesk.Mailer")

SENDGRID_API_BASE = "https://api.sendgrid.com"
SENDGRID_SEND_ENDPOINT = "/v3/mail/send"


@dataclass
class InvoiceMail:
    """Rendered email content, transport independent."""
    sender: str
    recipient: str
    subject: str
    body: str
    filename: str
    attachment: bytes
    bcc: Optional[str] = None


def compose_invoice_mail(
    facts: BillingFacts,
    filename: str,
    attachment: bytes,
    sender: str,
    store_name: str,
    bcc: Optional[str] = None,
) -> InvoiceMail:
    recipient = facts.customer.email or ""
    greeting = f"Hi {facts.customer.name}," if facts.customer.name else "Hello,"
    body = "\n".join([
        greeting,
        "",
        f"Thank you for your order with {store_name}.",
        f"Order ID: {facts.order_id}",
        f"Payment ID: {facts.payment_id}",
        f"Total Paid: {facts.total_display}",
        "",
        "Your invoice is attached to this email.",
        "",
        store_name,
    ])
    # No point bcc'ing the store on a mail it is already receiving
    if bcc and parseaddr(bcc)[1].lower() == recipient.lower():
        bcc = None
    return InvoiceMail(
        sender=sender,
        recipient=recipient,
        subject=f"Invoice for order {facts.order_id} - {store_name}",
        body=body,
        filename=filename,
        attachment=attachment,
        bcc=bcc,
    )


class INotifier(ABC):
    """Delivers an invoice email; returns a transport message id."""

    name: str = "notifier"
    idempotent: bool = False

    @abstractmethod
    async def send(self, mail: InvoiceMail) -> str:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# SMTP
# =============================================================================

class SMTPMailer(INotifier):

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    @staticmethod
    def build_message(mail: InvoiceMail) -> EmailMessage:
        message = EmailMessage()
        message["From"] = mail.sender
        message["To"] = mail.recipient
        if mail.bcc:
            message["Bcc"] = mail.bcc
        message["Subject"] = mail.subject
        message["Message-ID"] = make_msgid(domain=parseaddr(mail.sender)[1].split("@")[-1] or None)
        message.set_content(mail.body)
        message.add_attachment(
            mail.attachment,
            maintype="application",
            subtype="pdf",
            filename=mail.filename,
        )
        return message

    async def send(self, mail: InvoiceMail) -> str:
        message = self.build_message(mail)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.use_ssl,
                start_tls=False if self.use_ssl else None,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPConnectError as e:
            raise TransientSinkError(
                f"SMTP server unreachable: {e}", may_have_applied=False
            ) from e
        except aiosmtplib.SMTPResponseException as e:
            # 4xx replies are temporary by definition
            if 400 <= e.code < 500:
                raise TransientSinkError(
                    f"SMTP temporary failure {e.code}: {e.message}", may_have_applied=False
                ) from e
            raise SinkError(f"SMTP rejected message {e.code}: {e.message}") from e

        logger.info(f"Invoice mail sent via SMTP to {mail.recipient} ({mail.filename})")
        return message["Message-ID"]


# =============================================================================
# SENDGRID
# =============================================================================

class SendGridMailer(INotifier):

    name = "sendgrid"

    def __init__(
        self,
        api_key: str,
        api_base_url: str = SENDGRID_API_BASE,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            logger.warning("SendGrid mailer has no API key configured")
        self._client = httpx.AsyncClient(
            base_url=api_base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": "paydesk-mailer/1.0",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _parse_email(addr: str) -> dict:
        """'Display Name <email>' or plain email into SendGrid format."""
        name, email = parseaddr(addr)
        result = {"email": email or addr.strip()}
        if name:
            result["name"] = name
        return result

    def build_payload(self, mail: InvoiceMail) -> dict:
        personalization = {"to": [self._parse_email(mail.recipient)]}
        if mail.bcc:
            personalization["bcc"] = [self._parse_email(mail.bcc)]

        return {
            "personalizations": [personalization],
            "from": self._parse_email(mail.sender),
            "subject": mail.subject,
            "content": [{"type": "text/plain", "value": mail.body}],
            "attachments": [{
                "content": base64.b64encode(mail.attachment).decode("ascii"),
                "type": PDF_MIME,
                "filename": mail.filename,
                "disposition": "attachment",
            }],
        }

    async def send(self, mail: InvoiceMail) -> str:
        response = await self._client.post(SENDGRID_SEND_ENDPOINT, json=self.build_payload(mail))
        raise_for_transient_status(response, "SendGrid")

        if response.status_code not in (200, 201, 202):
            try:
                body = response.json()
            except ValueError:
                body = None
            errors = body.get("errors") if isinstance(body, dict) else None
            if isinstance(errors, list) and errors:
                detail = "; ".join(
                    str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
                )
            else:
                detail = response.text[:200]
            raise SinkError(f"SendGrid rejected message ({response.status_code}): {detail}")

        message_id = response.headers.get("X-Message-Id", f"sg-{uuid.uuid4().hex[:16]}")
        logger.info(f"Invoice mail sent via SendGrid to {mail.recipient} (sg_msg_id={message_id})")
        return message_id
