# paydesk/pipeline/__init__.py
# ============================================================================
# PAYDESK — PAYMENT PIPELINE
# ============================================================================
# Leaf components only; import the orchestrator from
# paydesk.pipeline.orchestrator (it depends on storage and services, which
# depend on paydesk.pipeline.retry).
# ============================================================================

from paydesk.pipeline.journal import FileOrderJournal, InMemoryOrderJournal, IOrderJournal
from paydesk.pipeline.retry import RetryPolicy, call_with_retry
from paydesk.pipeline.signature import (
    sign_payload,
    sign_payment,
    verify_payment_signature,
    verify_webhook_signature,
)

__all__ = [
    "FileOrderJournal",
    "InMemoryOrderJournal",
    "IOrderJournal",
    "RetryPolicy",
    "call_with_retry",
    "sign_payload",
    "sign_payment",
    "verify_payment_signature",
    "verify_webhook_signature",
]
