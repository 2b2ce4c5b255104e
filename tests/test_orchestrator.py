"""
Tests for payment verification and invoice fulfillment.
"""

import asyncio
import json
import os

import pytest

from conftest import KEY_SECRET, WEBHOOK_SECRET, RecordingArchive, RecordingNotifier
from paydesk.errors import RenderError, SinkError, TransientSinkError
from paydesk.invoices import InvoiceRenderer
from paydesk.pipeline.orchestrator import FulfillmentState, InvoiceArtifact, VerificationOrchestrator
from paydesk.pipeline.signature import sign_payload, sign_payment
from paydesk.schemas.billing import CartItem, Customer, NotifyStatus, OrderRecord, VerifyRequest


async def _seed(journal, order_id="order_ABC", amount=50000, email="asha@example.com"):
    await journal.append(OrderRecord(
        order_id=order_id,
        amount_paise=amount,
        customer=Customer(name="Asha", email=email),
        cart=[CartItem(name="Tea", qty=2, price=250)],
    ))


def _webhook_body(event="payment.captured", order_id="order_ABC", payment_id="pay_XYZ") -> bytes:
    return json.dumps({
        "event": event,
        "payload": {
            "payment": {"entity": {
                "id": payment_id,
                "order_id": order_id,
                "amount": 50000,
                "email": "hook@example.com",
                "contact": "+919000000000",
            }},
        },
    }).encode()


class TestVerifyRejections:

    async def test_missing_fields(self, orchestrator):
        result = await orchestrator.verify(VerifyRequest.model_validate({"orderId": "order_ABC"}))
        assert result.status_code == 400
        assert result.to_response() == {"ok": False, "error": "Missing fields"}

    async def test_blank_fields_count_as_missing(self, orchestrator):
        request = VerifyRequest.model_validate({"orderId": " ", "paymentId": "pay", "signature": "sig"})
        result = await orchestrator.verify(request)
        assert result.error == "Missing fields"

    async def test_signature_for_other_payment(self, orchestrator, journal, archive, signed):
        body = signed("order_ABC", "pay_OTHER")
        body["paymentId"] = "pay_XYZ"
        result = await orchestrator.verify(VerifyRequest.model_validate(body))

        assert result.status_code == 400
        assert result.to_response() == {"ok": False, "error": "Invalid signature"}
        assert result.state == FulfillmentState.REJECTED.value
        assert journal.events == []
        assert archive.calls == 0

    async def test_missing_key_secret(self, orchestrator, signed):
        orchestrator.key_secret = None
        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))
        assert result.status_code == 500
        assert result.error == "Payment verification not configured"

    async def test_render_failure(self, orchestrator, archive, signed, monkeypatch):
        def boom(facts):
            raise RenderError("no canvas")

        monkeypatch.setattr(orchestrator.renderer, "render", boom)
        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.status_code == 500
        assert result.error == "Invoice generation failed"
        assert archive.calls == 0


class TestVerifyFulfillment:

    async def test_journal_facts_full_fan_out(self, orchestrator, journal, archive, notifier, signed):
        await _seed(journal)
        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))
        body = result.to_response()

        assert result.status_code == 200
        assert body["ok"] is True
        assert body["orderId"] == "order_ABC"
        assert body["paymentId"] == "pay_XYZ"
        assert body["replayed"] is False
        assert body["invoice"]["filename"] == "invoice-order_ABC.pdf"
        assert body["invoice"]["total"] == "₹500.00"
        assert body["invoice"]["facts_source"] == "journal"
        assert body["archive"]["archived"] is True
        assert body["driveFileId"] == "file-1"
        assert body["driveViewLink"] == "https://drive.example/file-1"
        assert body["notify"]["status"] == "sent"

        filename, content = archive.uploads[0]
        assert filename == "invoice-order_ABC.pdf"
        assert content.startswith(b"%PDF")
        assert notifier.sent[0].recipient == "asha@example.com"
        assert notifier.sent[0].attachment == content
        assert [e.payment_id for e in journal.events] == ["pay_XYZ"]

    async def test_checkout_field_names(self, orchestrator, journal):
        await _seed(journal)
        request = VerifyRequest.model_validate({
            "razorpay_order_id": "order_ABC",
            "razorpay_payment_id": "pay_XYZ",
            "razorpay_signature": sign_payment("order_ABC", "pay_XYZ", KEY_SECRET),
        })
        result = await orchestrator.verify(request)
        assert result.ok is True

    async def test_unknown_order_uses_request_facts(self, orchestrator, archive, notifier, signed):
        body = signed(
            "order_NEW", "pay_1",
            amountMinorUnits=50000,
            customer={"name": "Ravi", "email": "ravi@example.com"},
            cart=[{"name": "Coffee", "qty": 1, "price": 500}],
        )
        result = await orchestrator.verify(VerifyRequest.model_validate(body))

        assert result.ok is True
        assert result.invoice.facts_source.value == "request"
        assert result.invoice.total == "₹500.00"
        assert notifier.sent[0].recipient == "ravi@example.com"
        assert archive.uploads[0][0] == "invoice-order_NEW.pdf"

    async def test_unknown_order_without_amount(self, orchestrator, signed):
        result = await orchestrator.verify(VerifyRequest.model_validate(signed("order_NEW", "pay_1")))
        assert result.ok is True
        assert result.invoice.total == "Paid"

    async def test_journal_cart_falls_back_to_request_cart(self, orchestrator, journal, signed):
        await journal.append(OrderRecord(order_id="order_ABC", amount_paise=100))
        facts = orchestrator.resolve_facts(
            "order_ABC", "pay_XYZ", Customer(), [CartItem(name="Jam", qty=1, price=1)]
        )
        assert facts.cart[0].name == "Jam"
        assert facts.amount_paise == 100

    async def test_both_sinks_failing_is_still_ok(self, orchestrator, journal, signed):
        await _seed(journal)
        orchestrator.archive_sink = RecordingArchive(fail_with=SinkError("quota exceeded"))
        orchestrator.notifier = RecordingNotifier(fail_with=RuntimeError("smtp down"))

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))
        body = result.to_response()

        assert body["ok"] is True
        assert body["archive"]["archived"] is False
        assert body["archive"]["error"] == "quota exceeded"
        assert "driveFileId" not in body
        assert body["notify"]["status"] == "failed"
        assert body["notify"]["error"] == "smtp down"

    async def test_transient_sink_errors_are_retried(self, orchestrator, journal, signed):
        await _seed(journal)
        failing = RecordingArchive(fail_with=TransientSinkError("503"), idempotent=True)
        orchestrator.archive_sink = failing

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.ok is True
        assert failing.calls == orchestrator.retry_policy.max_attempts

    async def test_non_idempotent_sink_is_not_repeated_after_5xx(self, orchestrator, journal, signed):
        await _seed(journal)
        failing = RecordingArchive(fail_with=TransientSinkError("503"))
        orchestrator.archive_sink = failing

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.ok is True
        assert result.archive.archived is False
        assert failing.calls == 1

    async def test_rate_limited_mail_is_retried(self, orchestrator, journal, signed):
        await _seed(journal)
        failing = RecordingNotifier(
            fail_with=TransientSinkError("429", may_have_applied=False)
        )
        orchestrator.notifier = failing

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.notify.status is NotifyStatus.FAILED
        assert failing.calls == orchestrator.retry_policy.max_attempts

    async def test_mail_timeout_is_not_repeated(self, orchestrator, journal, signed):
        await _seed(journal)
        failing = RecordingNotifier(fail_with=asyncio.TimeoutError())
        orchestrator.notifier = failing

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.notify.status is NotifyStatus.FAILED
        assert failing.calls == 1


    async def test_unconfigured_sinks_are_skipped(self, orchestrator, signed):
        orchestrator.archive_sink = None
        orchestrator.notifier = None
        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.ok is True
        assert result.archive.attempted is False
        assert result.notify.status is NotifyStatus.SKIPPED

    async def test_no_customer_email_skips_notify(self, orchestrator, journal, notifier, signed):
        await _seed(journal, email=None)
        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.notify.status is NotifyStatus.SKIPPED
        assert result.notify.attempted is False
        assert notifier.calls == 0

    async def test_background_notify(self, orchestrator, journal, notifier, signed):
        await _seed(journal)
        orchestrator.notify_in_background = True

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))
        assert result.notify.status is NotifyStatus.QUEUED

        assert await orchestrator.drain(timeout=5) == 0
        assert len(notifier.sent) == 1
        assert orchestrator.pending_tasks == 0


class TestIdempotency:

    async def test_repeat_verify_replays_without_sinks(self, orchestrator, journal, archive, notifier, signed):
        await _seed(journal)
        request = VerifyRequest.model_validate(signed())

        first = await orchestrator.verify(request)
        second = await orchestrator.verify(request)

        assert first.replayed is False
        assert second.replayed is True
        assert second.invoice == first.invoice
        assert archive.calls == 1
        assert notifier.calls == 1
        assert len(journal.events) == 2

    async def test_concurrent_verifies_fulfil_once(self, orchestrator, journal, archive, signed):
        await _seed(journal)
        request = VerifyRequest.model_validate(signed())

        results = await asyncio.gather(*(orchestrator.verify(request) for _ in range(3)))

        assert all(r.ok for r in results)
        assert sorted(r.replayed for r in results) == [False, True, True]
        assert archive.calls == 1

    async def test_order_locks_released_after_fulfillment(self, orchestrator, journal, signed):
        for n in range(25):
            await _seed(journal, order_id=f"order_{n}")
        results = await asyncio.gather(*(
            orchestrator.verify(VerifyRequest.model_validate(signed(f"order_{n}", f"pay_{n}")))
            for n in range(25)
        ))

        assert all(r.ok for r in results)
        assert orchestrator.active_order_locks == 0

    async def test_replay_cache_is_bounded(self, journal, store, archive, fast_retry, signed):
        orchestrator = VerificationOrchestrator(
            journal=journal,
            renderer=InvoiceRenderer(store),
            key_secret=KEY_SECRET,
            archive_sink=archive,
            retry_policy=fast_retry,
            replay_cache_size=3,
        )
        for n in range(6):
            await orchestrator.verify(VerifyRequest.model_validate(signed(f"order_{n}", f"pay_{n}")))

        assert orchestrator.cached_results == 3
        assert orchestrator.active_order_locks == 0

        # Evicted entries fulfil again; recent ones still replay
        oldest = await orchestrator.verify(VerifyRequest.model_validate(signed("order_0", "pay_0")))
        newest = await orchestrator.verify(VerifyRequest.model_validate(signed("order_5", "pay_5")))
        assert oldest.replayed is False
        assert newest.replayed is True
        assert orchestrator.cached_results == 3

    async def test_failed_render_is_not_cached(self, orchestrator, archive, signed, monkeypatch):
        request = VerifyRequest.model_validate(signed())
        original = orchestrator.renderer.render

        def boom(facts):
            raise RenderError("transient")

        monkeypatch.setattr(orchestrator.renderer, "render", boom)
        assert (await orchestrator.verify(request)).ok is False

        monkeypatch.setattr(orchestrator.renderer, "render", original)
        result = await orchestrator.verify(request)
        assert result.ok is True
        assert result.replayed is False


class TestTempFiles:

    class ListingArchive(RecordingArchive):
        def __init__(self, directory, fail_with=None):
            super().__init__(fail_with=None)
            self.directory = directory
            self.seen = []
            self.error = fail_with

        async def archive(self, filename, content):
            self.seen = os.listdir(self.directory)
            if self.error is not None:
                raise self.error
            return await super().archive(filename, content)

    @pytest.mark.parametrize("fail_with", [None, SinkError("rejected")])
    async def test_spilled_file_removed(self, orchestrator, tmp_path, signed, fail_with):
        spill_dir = tmp_path / "spill"
        orchestrator.tmp_dir = str(spill_dir)
        sink = self.ListingArchive(str(spill_dir), fail_with=fail_with)
        orchestrator.archive_sink = sink

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.ok is True
        assert len(sink.seen) == 1
        assert os.listdir(spill_dir) == []

    async def test_removed_when_notify_crashes(self, orchestrator, tmp_path, signed, monkeypatch):
        orchestrator.tmp_dir = str(tmp_path)

        async def crash(*args, **kwargs):
            raise RuntimeError("mailer crashed")

        monkeypatch.setattr(orchestrator, "_notify", crash)
        with pytest.raises(RuntimeError):
            await orchestrator.verify(VerifyRequest.model_validate(signed()))
        assert os.listdir(tmp_path) == []

    def test_artifact_without_spill_reads_memory(self):
        artifact = InvoiceArtifact(filename="a.pdf", content=b"%PDF")
        assert artifact.read() == b"%PDF"
        artifact.discard()
        assert artifact.path is None


class TestWebhook:

    async def test_no_secret_accepts_without_fulfillment(self, orchestrator, archive):
        orchestrator.webhook_secret = None
        result = await orchestrator.handle_webhook(_webhook_body(), None)

        assert result.accepted is True
        assert result.status_code == 200
        assert result.verified is False
        assert result.fulfillment_scheduled is False
        await orchestrator.drain(timeout=5)
        assert archive.calls == 0

    async def test_bad_signature(self, orchestrator):
        result = await orchestrator.handle_webhook(_webhook_body(), "deadbeef")
        assert result.status_code == 400
        assert result.message == "Invalid signature"

    async def test_bad_json(self, orchestrator):
        body = b"not-json"
        result = await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))
        assert result.status_code == 400
        assert result.message == "Invalid JSON"

    async def test_other_events_are_acknowledged(self, orchestrator, archive):
        body = _webhook_body(event="payment.failed")
        result = await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))

        assert result.accepted is True
        assert result.event == "payment.failed"
        assert result.fulfillment_scheduled is False

    async def test_captured_payment_fulfils_in_background(self, orchestrator, journal, archive, notifier):
        await _seed(journal)
        body = _webhook_body()
        result = await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))

        assert result.verified is True
        assert result.fulfillment_scheduled is True
        await orchestrator.drain(timeout=5)

        assert archive.calls == 1
        assert notifier.sent[0].recipient == "asha@example.com"
        assert journal.events[0].source == "webhook"

    async def test_webhook_uses_payment_entity_when_order_unknown(self, orchestrator, notifier):
        body = _webhook_body(order_id="order_UNSEEN")
        await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))
        await orchestrator.drain(timeout=5)

        assert notifier.sent[0].recipient == "hook@example.com"
        assert "₹500.00" in notifier.sent[0].body

    async def test_webhook_and_verify_fulfil_once(self, orchestrator, journal, archive, signed):
        await _seed(journal)
        body = _webhook_body()
        await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))
        await orchestrator.drain(timeout=5)

        result = await orchestrator.verify(VerifyRequest.model_validate(signed()))

        assert result.ok is True
        assert result.replayed is True
        assert archive.calls == 1

    async def test_payload_without_payment(self, orchestrator):
        body = json.dumps({"event": "order.paid", "payload": {}}).encode()
        result = await orchestrator.handle_webhook(body, sign_payload(body, WEBHOOK_SECRET))
        assert result.accepted is True
        assert result.fulfillment_scheduled is False


class TestBackgroundTasks:

    async def test_failed_task_is_logged_and_forgotten(self, store):
        orchestrator = VerificationOrchestrator(
            journal=None, renderer=InvoiceRenderer(store), key_secret=KEY_SECRET
        )

        async def fail():
            raise RuntimeError("detached failure")

        task = orchestrator._spawn(fail(), name="failing")
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)
        assert orchestrator.pending_tasks == 0

    async def test_drain_cancels_stragglers(self, orchestrator):
        orchestrator._spawn(asyncio.sleep(10), name="sleeper")
        assert await orchestrator.drain(timeout=0.01) == 1
        assert orchestrator.pending_tasks == 0
