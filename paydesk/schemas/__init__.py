# paydesk/schemas/__init__.py
# ============================================================================
# PAYDESK — SCHEMAS MODULE
# ============================================================================

from paydesk.schemas.billing import (
    ArchiveOutcome,
    BillingFacts,
    CartItem,
    CreateOrderRequest,
    Customer,
    FactsSource,
    InvoiceSummary,
    NotifyOutcome,
    NotifyStatus,
    OrderRecord,
    VerificationEvent,
    VerifyRequest,
    VerifyResult,
    WebhookResult,
    money_from_paise,
)

__all__ = [
    "ArchiveOutcome",
    "BillingFacts",
    "CartItem",
    "CreateOrderRequest",
    "Customer",
    "FactsSource",
    "InvoiceSummary",
    "NotifyOutcome",
    "NotifyStatus",
    "OrderRecord",
    "VerificationEvent",
    "VerifyRequest",
    "VerifyResult",
    "WebhookResult",
    "money_from_paise",
]
