"""
Verification Orchestrator
=========================
Turns an unauthenticated "payment succeeded" claim into a fulfilled order:

1. validate the claim (fields present, HMAC signature matches)
2. record the verification in the ledger
3. resolve billing facts (journal first, request as fallback)
4. render the invoice
5. fan out to the archival sink, then the notification sink
6. respond

Only steps 1 and 4 can fail the request. Sink failures are logged and
reported as sub-fields of an otherwise successful result.

Gateway webhooks for captured payments go through the same fulfillment path
as a detached background task, guarded by the same per-order lock and replay
cache, so a client confirmation and a webhook for one payment fulfil once.
"""

import asyncio
import json
import os
import tempfile
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Optional

import structlog

from paydesk.errors import MissingSecretError, RenderError
from paydesk.invoices.renderer import InvoiceRenderer
from paydesk.pipeline.journal import IOrderJournal
from paydesk.pipeline.retry import RetryPolicy, call_with_retry
from paydesk.pipeline.signature import verify_payment_signature, verify_webhook_signature
from paydesk.schemas.billing import (
    ArchiveOutcome,
    BillingFacts,
    CartItem,
    Customer,
    FactsSource,
    InvoiceSummary,
    NotifyOutcome,
    NotifyStatus,
    VerificationEvent,
    VerifyRequest,
    VerifyResult,
    WebhookResult,
)
from paydesk.services.mailer import INotifier, InvoiceMail, compose_invoice_mail
from paydesk.storage.base import IArchiveSink

FULFILLMENT_EVENTS = frozenset({"payment.captured", "order.paid"})


class FulfillmentState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    FACTS_RESOLVED = "facts_resolved"
    RENDERED = "rendered"
    ARCHIVED = "archived"
    ARCHIVE_SKIPPED = "archive_skipped"
    NOTIFIED = "notified"
    NOTIFY_SKIPPED = "notify_skipped"
    RESPONDED = "responded"
    REJECTED = "rejected"


# =============================================================================
# INVOICE ARTIFACT
# =============================================================================

@dataclass
class InvoiceArtifact:
    """Rendered invoice owned by a single fulfillment run."""
    filename: str
    content: bytes
    path: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)

    def spill(self, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="invoice-", suffix=".pdf", dir=directory)
        self.path = path
        with os.fdopen(fd, "wb") as fh:
            fh.write(self.content)
        return path

    def read(self) -> bytes:
        if self.path is None:
            return self.content
        with open(self.path, "rb") as fh:
            return fh.read()

    def discard(self) -> None:
        if self.path and os.path.exists(self.path):
            os.remove(self.path)
        self.path = None


@dataclass
class _OrderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class VerificationOrchestrator:
    """
    Verification and fulfillment for confirmed payments.

    Example:
        orchestrator = VerificationOrchestrator(
            journal=FileOrderJournal("orders_store.jsonl", "payments_verified.txt"),
            renderer=InvoiceRenderer(StoreProfile(name="Acme")),
            key_secret=os.environ["RAZORPAY_KEY_SECRET"],
        )
        result = await orchestrator.verify(VerifyRequest.model_validate(body))
        return JSONResponse(result.to_response(), status_code=result.status_code)
    """

    def __init__(
        self,
        journal: IOrderJournal,
        renderer: InvoiceRenderer,
        key_secret: Optional[str],
        webhook_secret: Optional[str] = None,
        archive_sink: Optional[IArchiveSink] = None,
        notifier: Optional[INotifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        mail_from: Optional[str] = None,
        mail_bcc: Optional[str] = None,
        store_name: str = "Your Store",
        currency: str = "INR",
        tmp_dir: Optional[str] = None,
        notify_in_background: bool = False,
        replay_cache_size: int = 1024,
    ):
        self.journal = journal
        self.renderer = renderer
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.archive_sink = archive_sink
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.mail_from = mail_from
        self.mail_bcc = mail_bcc
        self.store_name = store_name
        self.currency = currency
        self.tmp_dir = tmp_dir
        self.notify_in_background = notify_in_background
        self.replay_cache_size = replay_cache_size

        self._locks: dict[str, _OrderLock] = {}
        self._completed: OrderedDict[tuple[str, str], VerifyResult] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None, **context):
        return self._base_logger.bind(
            component="verification_orchestrator",
            correlation_id=correlation_id or str(uuid.uuid4()),
            **context,
        )

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    @property
    def active_order_locks(self) -> int:
        return len(self._locks)

    @property
    def cached_results(self) -> int:
        return len(self._completed)

    # =========================================================================
    # CLIENT VERIFICATION
    # =========================================================================

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        log = self._get_logger(order_id=request.order_id, payment_id=request.payment_id)
        log.info("verify_received", state=FulfillmentState.RECEIVED.value)

        missing = request.missing_fields
        if missing:
            log.warning("verify_rejected", reason="missing_fields", missing=missing)
            return self._reject(400, "Missing fields")

        try:
            valid = verify_payment_signature(
                request.order_id, request.payment_id, request.signature, self.key_secret
            )
        except MissingSecretError:
            log.error("verify_rejected", reason="key_secret_missing")
            return self._reject(500, "Payment verification not configured")

        if not valid:
            log.warning("verify_rejected", reason="invalid_signature")
            return self._reject(400, "Invalid signature")

        log.info("payment_verified", state=FulfillmentState.SIGNATURE_CHECKED.value)
        await self._record_verification(request.order_id, request.payment_id, "verify", log)

        return await self._fulfill(
            order_id=request.order_id,
            payment_id=request.payment_id,
            customer=request.customer,
            cart=request.cart,
            amount_paise=request.amount_minor_units,
            log=log,
        )

    # =========================================================================
    # GATEWAY WEBHOOK
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        log = self._get_logger()

        verified = False
        if not self.webhook_secret:
            log.warning("webhook_unverified", reason="webhook_secret_missing")
        elif not verify_webhook_signature(raw_body, signature, self.webhook_secret):
            log.warning("webhook_rejected", reason="invalid_signature")
            return WebhookResult(accepted=False, status_code=400, message="Invalid signature")
        else:
            verified = True

        try:
            event = json.loads(raw_body)
        except ValueError:
            log.warning("webhook_rejected", reason="invalid_json")
            return WebhookResult(accepted=False, status_code=400, verified=verified, message="Invalid JSON")

        event_name = event.get("event") if isinstance(event, dict) else None
        log.info("webhook_received", webhook_event=event_name, verified=verified)

        scheduled = False
        if verified and event_name in FULFILLMENT_EVENTS:
            payment = self._payment_from_event(event)
            if payment is None:
                log.warning("webhook_payment_missing", webhook_event=event_name)
            else:
                self._spawn(
                    self._fulfill_from_webhook(payment, event_name),
                    name=f"webhook-fulfillment:{payment['payment_id']}",
                )
                scheduled = True

        return WebhookResult(
            accepted=True,
            verified=verified,
            event=event_name,
            fulfillment_scheduled=scheduled,
        )

    @staticmethod
    def _entity(payload: dict, key: str) -> dict:
        wrapper = payload.get(key)
        entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
        return entity if isinstance(entity, dict) else {}

    @classmethod
    def _payment_from_event(cls, event: dict) -> Optional[dict[str, Any]]:
        payload = event.get("payload")
        if not isinstance(payload, dict):
            return None
        payment = cls._entity(payload, "payment")
        order = cls._entity(payload, "order")

        order_id = payment.get("order_id") or order.get("id")
        payment_id = payment.get("id")
        if not (order_id and payment_id):
            return None

        amount = payment.get("amount", order.get("amount_paid"))
        return {
            "order_id": str(order_id),
            "payment_id": str(payment_id),
            "amount_paise": amount if isinstance(amount, int) and amount > 0 else None,
            "customer": Customer(email=payment.get("email"), phone=payment.get("contact")),
        }

    async def _fulfill_from_webhook(self, payment: dict[str, Any], event_name: str) -> VerifyResult:
        log = self._get_logger(
            order_id=payment["order_id"],
            payment_id=payment["payment_id"],
            webhook_event=event_name,
        )
        await self._record_verification(payment["order_id"], payment["payment_id"], "webhook", log)
        result = await self._fulfill(
            order_id=payment["order_id"],
            payment_id=payment["payment_id"],
            customer=payment["customer"],
            cart=[],
            amount_paise=payment["amount_paise"],
            log=log,
        )
        log.info("webhook_fulfillment_finished", ok=result.ok, replayed=result.replayed)
        return result

    # =========================================================================
    # FULFILLMENT
    # =========================================================================

    async def _record_verification(self, order_id: str, payment_id: str, source: str, log) -> None:
        if payment_id in self.journal.verified_payments(order_id):
            log.info("repeat_verification", source=source)
        event = VerificationEvent(order_id=order_id, payment_id=payment_id, source=source)
        if not await self.journal.record_verification(event):
            log.warning("verification_not_recorded", source=source)

    async def _fulfill(
        self,
        order_id: str,
        payment_id: str,
        customer: Customer,
        cart: list[CartItem],
        amount_paise: Optional[int],
        log,
    ) -> VerifyResult:
        async with self._order_lock(order_id):
            cached = self._replayable(order_id, payment_id)
            if cached is not None:
                log.info("fulfillment_replayed")
                return cached.model_copy(update={"replayed": True})

            result = await self._run(order_id, payment_id, customer, cart, amount_paise, log)
            if result.ok:
                self._remember(order_id, payment_id, result)
            return result

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        entry = self._locks.setdefault(order_id, _OrderLock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[order_id]

    def _replayable(self, order_id: str, payment_id: str) -> Optional[VerifyResult]:
        key = (order_id, payment_id)
        cached = self._completed.get(key)
        if cached is not None:
            self._completed.move_to_end(key)
        return cached

    def _remember(self, order_id: str, payment_id: str, result: VerifyResult) -> None:
        self._completed[(order_id, payment_id)] = result
        self._completed.move_to_end((order_id, payment_id))
        # Least recently used results go first
        while len(self._completed) > max(0, self.replay_cache_size):
            self._completed.popitem(last=False)

    def resolve_facts(
        self,
        order_id: str,
        payment_id: str,
        customer: Customer,
        cart: list[CartItem],
        amount_paise: Optional[int] = None,
    ) -> BillingFacts:
        """Journal facts when the order is known, request facts otherwise."""
        record = self.journal.lookup(order_id)
        if record is not None:
            return BillingFacts(
                order_id=order_id,
                payment_id=payment_id,
                amount_paise=record.amount_paise,
                currency=record.currency,
                customer=record.customer,
                cart=record.cart if record.cart else cart,
                source=FactsSource.JOURNAL,
            )
        return BillingFacts(
            order_id=order_id,
            payment_id=payment_id,
            amount_paise=amount_paise,
            currency=self.currency,
            customer=customer,
            cart=cart,
            source=FactsSource.REQUEST,
        )

    async def _run(
        self,
        order_id: str,
        payment_id: str,
        customer: Customer,
        cart: list[CartItem],
        amount_paise: Optional[int],
        log,
    ) -> VerifyResult:
        facts = self.resolve_facts(order_id, payment_id, customer, cart, amount_paise)
        if facts.source is FactsSource.REQUEST:
            log.warning("order_not_in_journal", state=FulfillmentState.FACTS_RESOLVED.value)
        else:
            log.info("facts_resolved", state=FulfillmentState.FACTS_RESOLVED.value)

        try:
            content = await asyncio.to_thread(self.renderer.render, facts)
        except RenderError as e:
            log.error("invoice_render_failed", error=str(e))
            return self._reject(500, "Invoice generation failed", order_id, payment_id)

        artifact = InvoiceArtifact(filename=facts.invoice_filename, content=content)
        try:
            try:
                if self.tmp_dir:
                    await asyncio.to_thread(artifact.spill, self.tmp_dir)
                payload = await asyncio.to_thread(artifact.read)
            except OSError as e:
                log.error("invoice_artifact_failed", error=str(e), tmp_dir=self.tmp_dir)
                return self._reject(500, "Invoice generation failed", order_id, payment_id)

            log.info("invoice_rendered",
                     state=FulfillmentState.RENDERED.value,
                     filename=artifact.filename,
                     size_bytes=artifact.size)

            archive = await self._archive(artifact.filename, payload, log)
            notify = await self._notify(facts, artifact.filename, payload, log)
        finally:
            try:
                await asyncio.to_thread(artifact.discard)
            except OSError as e:
                log.warning("temp_file_cleanup_failed", path=artifact.path, error=str(e))

        log.info("verify_completed",
                 state=FulfillmentState.RESPONDED.value,
                 archived=archive.archived,
                 notify_status=notify.status.value)

        return VerifyResult(
            ok=True,
            order_id=order_id,
            payment_id=payment_id,
            state=FulfillmentState.RESPONDED.value,
            invoice=InvoiceSummary(
                filename=artifact.filename,
                bytes=artifact.size,
                total=facts.total_display,
                facts_source=facts.source,
            ),
            archive=archive,
            notify=notify,
        )

    # -------------------------------------------------------------------------
    # Sinks
    # -------------------------------------------------------------------------

    async def _archive(self, filename: str, payload: bytes, log) -> ArchiveOutcome:
        sink = self.archive_sink
        if sink is None:
            log.info("archive_skipped", state=FulfillmentState.ARCHIVE_SKIPPED.value, reason="not_configured")
            return ArchiveOutcome()

        try:
            receipt = await call_with_retry(
                lambda: sink.archive(filename, payload),
                self.retry_policy,
                name=f"archive:{sink.name}",
                idempotent=sink.idempotent,
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            log.error("archive_failed",
                      state=FulfillmentState.ARCHIVE_SKIPPED.value,
                      backend=sink.name,
                      error=error)
            return ArchiveOutcome(attempted=True, backend=sink.name, error=error)

        log.info("invoice_archived",
                 state=FulfillmentState.ARCHIVED.value,
                 backend=sink.name,
                 reference=receipt.reference)
        return ArchiveOutcome(
            attempted=True,
            archived=True,
            backend=sink.name,
            reference=receipt.reference,
            url=receipt.url,
        )

    async def _notify(self, facts: BillingFacts, filename: str, payload: bytes, log) -> NotifyOutcome:
        notifier = self.notifier
        if notifier is None or not self.mail_from:
            log.info("notify_skipped", state=FulfillmentState.NOTIFY_SKIPPED.value, reason="not_configured")
            return NotifyOutcome()

        recipient = facts.customer.email
        if not recipient:
            log.info("notify_skipped", state=FulfillmentState.NOTIFY_SKIPPED.value, reason="no_customer_email")
            return NotifyOutcome(backend=notifier.name)

        mail = compose_invoice_mail(
            facts,
            filename=filename,
            attachment=payload,
            sender=self.mail_from,
            store_name=self.store_name,
            bcc=self.mail_bcc,
        )

        if self.notify_in_background:
            self._spawn(self._send_mail(notifier, mail, log), name=f"invoice-mail:{facts.order_id}")
            log.info("notify_queued", backend=notifier.name)
            return NotifyOutcome(
                attempted=True,
                status=NotifyStatus.QUEUED,
                backend=notifier.name,
                recipient=recipient,
            )

        try:
            message_id = await self._send_mail(notifier, mail, log)
        except Exception as e:
            error = str(e) or type(e).__name__
            log.error("notify_failed",
                      state=FulfillmentState.NOTIFY_SKIPPED.value,
                      backend=notifier.name,
                      error=error)
            return NotifyOutcome(
                attempted=True,
                status=NotifyStatus.FAILED,
                backend=notifier.name,
                recipient=recipient,
                error=error,
            )

        return NotifyOutcome(
            attempted=True,
            status=NotifyStatus.SENT,
            backend=notifier.name,
            recipient=recipient,
            message_id=message_id,
        )

    async def _send_mail(self, notifier: INotifier, mail: InvoiceMail, log) -> str:
        message_id = await call_with_retry(
            lambda: notifier.send(mail),
            self.retry_policy,
            name=f"notify:{notifier.name}",
            idempotent=notifier.idempotent,
        )
        log.info("invoice_emailed",
                 state=FulfillmentState.NOTIFIED.value,
                 backend=notifier.name,
                 message_id=message_id)
        return message_id

    def _reject(
        self,
        status_code: int,
        error: str,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> VerifyResult:
        return VerifyResult(
            ok=False,
            status_code=status_code,
            error=error,
            order_id=order_id,
            payment_id=payment_id,
            state=FulfillmentState.REJECTED.value,
        )

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._base_logger.error("background_task_failed",
                                    component="verification_orchestrator",
                                    task=task.get_name(),
                                    error=str(exc) or type(exc).__name__)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for detached work; cancel whatever is still running after ``timeout``."""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)
