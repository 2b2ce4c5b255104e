"""
Billing Schemas
===============
Order records, verification events and the request/response shapes that flow
through the verification pipeline.

On-disk and wire field names follow the gateway checkout (``orderId``,
``amountPaise``, ``razorpay_order_id``); Python attributes stay snake_case.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money_from_paise(paise: Optional[int]) -> str:
    return f"₹{(int(paise or 0) / 100):.2f}"


# =============================================================================
# CUSTOMER & CART
# =============================================================================

CUSTOMER_FIELD_LIMITS = {
    "name": 100,
    "email": 100,
    "phone": 20,
    "address1": 120,
    "address2": 120,
    "city": 60,
    "state": 60,
    "pincode": 20,
}


class Customer(BaseModel):
    """Contact and address facts. No validation beyond truncation."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _truncate(cls, value: Any, info) -> Optional[str]:
        if value is None:
            return None
        return str(value)[: CUSTOMER_FIELD_LIMITS[info.field_name]]


class CartItem(BaseModel):
    """One invoice line. ``price`` is in major units (rupees)."""
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    qty: int = Field(default=1, ge=1)
    price: float = Field(default=0.0, ge=0)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("qty", mode="before")
    @classmethod
    def _coerce_qty(cls, value: Any) -> int:
        try:
            qty = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 1
        return qty if qty >= 1 else 1

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> float:
        try:
            price = float(value)
        except (TypeError, ValueError):
            return 0.0
        return price if math.isfinite(price) and price >= 0 else 0.0

    @property
    def line_total(self) -> float:
        return self.qty * self.price


class CustomerCartModel(BaseModel):
    """Base for anything carrying a customer and a cart from client input.

    Non-object customers and non-list carts degrade to empty values.
    """

    customer: Customer = Field(default_factory=Customer)
    cart: list[CartItem] = Field(default_factory=list)

    @field_validator("customer", mode="before")
    @classmethod
    def _coerce_customer(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, Customer)) else {}

    @field_validator("cart", mode="before")
    @classmethod
    def _coerce_cart(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, CartItem))]


# =============================================================================
# JOURNAL RECORDS
# =============================================================================

class OrderRecord(CustomerCartModel):
    """Immutable billing facts captured at order creation."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    order_id: str = Field(alias="orderId", min_length=1)
    amount_paise: int = Field(alias="amountPaise", ge=0)
    currency: str = "INR"
    created_at: datetime = Field(default_factory=utcnow)

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True) + "\n"


class VerificationEvent(BaseModel):
    """Ledger entry written after a payment signature checks out."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    order_id: str = Field(alias="razorpay_order_id")
    payment_id: str = Field(alias="razorpay_payment_id")
    verified_at: datetime = Field(default_factory=utcnow)
    source: str = "verify"

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True) + "\n"


# =============================================================================
# REQUESTS
# =============================================================================

class CreateOrderRequest(CustomerCartModel):
    model_config = ConfigDict(extra="ignore")

    amount: Any = None


class VerifyRequest(CustomerCartModel):
    """Client payment confirmation. Accepts camelCase or checkout-native keys."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("orderId", "razorpay_order_id", "order_id"),
    )
    payment_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("paymentId", "razorpay_payment_id", "payment_id"),
    )
    signature: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("signature", "razorpay_signature"),
    )
    amount_minor_units: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("amountMinorUnits", "amountPaise", "amount_minor_units"),
    )

    @field_validator("order_id", "payment_id", "signature", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("amount_minor_units", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Optional[int]:
        try:
            amount = int(value)
        except (TypeError, ValueError, OverflowError):
            return None
        return amount if amount >= 0 else None

    @property
    def missing_fields(self) -> list[str]:
        return [
            name for name, value in (
                ("orderId", self.order_id),
                ("paymentId", self.payment_id),
                ("signature", self.signature),
            ) if not value
        ]


# =============================================================================
# PIPELINE VALUES
# =============================================================================

class FactsSource(str, Enum):
    JOURNAL = "journal"
    REQUEST = "request"


class BillingFacts(CustomerCartModel):
    """Resolved customer, cart and amount used to render one invoice."""
    order_id: str
    payment_id: str
    amount_paise: Optional[int] = None
    currency: str = "INR"
    source: FactsSource = FactsSource.JOURNAL

    @property
    def subtotal(self) -> float:
        return sum(item.line_total for item in self.cart)

    @property
    def total_display(self) -> str:
        return money_from_paise(self.amount_paise) if self.amount_paise else "Paid"

    @property
    def invoice_filename(self) -> str:
        return f"invoice-{self.order_id}.pdf"


class ArchiveOutcome(BaseModel):
    attempted: bool = False
    archived: bool = False
    backend: Optional[str] = None
    reference: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None


class NotifyStatus(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    SKIPPED = "skipped"
    FAILED = "failed"


class NotifyOutcome(BaseModel):
    attempted: bool = False
    status: NotifyStatus = NotifyStatus.SKIPPED
    backend: Optional[str] = None
    recipient: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


class InvoiceSummary(BaseModel):
    filename: str
    bytes: int
    total: str
    facts_source: FactsSource


class VerifyResult(BaseModel):
    """Outcome of one verification request."""
    ok: bool
    status_code: int = 200
    error: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    state: str = "received"
    replayed: bool = False
    invoice: Optional[InvoiceSummary] = None
    archive: ArchiveOutcome = Field(default_factory=ArchiveOutcome)
    notify: NotifyOutcome = Field(default_factory=NotifyOutcome)

    def to_response(self) -> dict:
        if not self.ok:
            return {"ok": False, "error": self.error}
        body = {
            "ok": True,
            "orderId": self.order_id,
            "paymentId": self.payment_id,
            "replayed": self.replayed,
            "invoice": self.invoice.model_dump(mode="json") if self.invoice else None,
            "archive": self.archive.model_dump(mode="json"),
            "notify": self.notify.model_dump(mode="json"),
        }
        # Flat fields kept for storefront clients of the Drive deployment
        if self.archive.archived and self.archive.backend == "drive":
            body["driveFileId"] = self.archive.reference
            body["driveViewLink"] = self.archive.url
        return body


class WebhookResult(BaseModel):
    accepted: bool
    status_code: int = 200
    verified: bool = False
    event: Optional[str] = None
    message: str = "OK"
    fulfillment_scheduled: bool = False
