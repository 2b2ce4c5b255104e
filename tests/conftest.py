"""
Pytest configuration and shared fixtures for paydesk tests.
"""

import httpx
import pytest

from paydesk.config import StoreProfile
from paydesk.invoices import InvoiceRenderer
from paydesk.pipeline.journal import InMemoryOrderJournal
from paydesk.pipeline.orchestrator import VerificationOrchestrator
from paydesk.pipeline.retry import RetryPolicy
from paydesk.pipeline.signature import sign_payment
from paydesk.services.mailer import INotifier, InvoiceMail
from paydesk.storage.base import ArchiveReceipt, IArchiveSink

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class RecordingArchive(IArchiveSink):
    """Archive sink that remembers uploads and can be told to fail."""

    name = "drive"

    def __init__(self, fail_with: Exception = None, idempotent: bool = False):
        self.fail_with = fail_with
        self.idempotent = idempotent
        self.uploads: list[tuple[str, bytes]] = []
        self.calls = 0

    async def archive(self, filename: str, content: bytes) -> ArchiveReceipt:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.uploads.append((filename, content))
        return ArchiveReceipt(
            reference=f"file-{len(self.uploads)}",
            url=f"https://drive.example/file-{len(self.uploads)}",
            name=filename,
        )


class RecordingNotifier(INotifier):

    name = "smtp"

    def __init__(self, fail_with: Exception = None):
        self.fail_with = fail_with
        self.sent: list[InvoiceMail] = []
        self.calls = 0

    async def send(self, mail: InvoiceMail) -> str:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(mail)
        return f"<msg-{len(self.sent)}@example.com>"


@pytest.fixture
def store():
    return StoreProfile(
        name="Acme Kirana",
        email="billing@acme.example",
        phone="+91 90000 00000",
        address="12 MG Road, Bengaluru",
    )


@pytest.fixture
def journal():
    return InMemoryOrderJournal()


@pytest.fixture
def archive():
    return RecordingArchive()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, timeout_seconds=2.0, backoff_seconds=0.0)


@pytest.fixture
def orchestrator(journal, store, archive, notifier, fast_retry):
    return VerificationOrchestrator(
        journal=journal,
        renderer=InvoiceRenderer(store),
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        archive_sink=archive,
        notifier=notifier,
        retry_policy=fast_retry,
        mail_from="Acme Kirana <billing@acme.example>",
        store_name=store.name,
    )


@pytest.fixture
def signed():
    """Build a valid verify payload for an order/payment pair."""
    def _signed(order_id: str = "order_ABC", payment_id: str = "pay_XYZ", **extra) -> dict:
        body = {
            "orderId": order_id,
            "paymentId": payment_id,
            "signature": sign_payment(order_id, payment_id, KEY_SECRET),
        }
        body.update(extra)
        return body
    return _signed


def json_transport(handler):
    """httpx MockTransport from a (request) -> (status, json) function."""
    def _handle(request: httpx.Request) -> httpx.Response:
        status, payload = handler(request)
        return httpx.Response(status, json=payload)
    return httpx.MockTransport(_handle)
