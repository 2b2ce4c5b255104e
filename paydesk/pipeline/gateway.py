# paydesk/pipeline/gateway.py
# ============================================================================
# PAYDESK — PAYMENT GATEWAY CLIENT & ORDER DESK
# ============================================================================
# RazorpayClient: thin httpx wrapper over the Orders REST API.
# OrderDesk: validates the amount, creates the gateway order and journals
# the billing facts. The gateway order is the source of truth, so a journal
# failure is logged and never fails the response.
# ============================================================================

import math
import time
from typing import Any, Optional

import httpx
import structlog

from paydesk.errors import GatewayError, InvalidAmountError, JournalWriteError
from paydesk.pipeline.journal import IOrderJournal
from paydesk.schemas.billing import CreateOrderRequest, Customer, OrderRecord

logger = structlog.get_logger().bind(component="gateway")


class RazorpayClient:
    """Async client for the Razorpay Orders API."""

    def __init__(
        self,
        key_id: Optional[str],
        key_secret: Optional[str],
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id or "", key_secret or ""),
            timeout=timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def close(self):
        await self._client.aclose()

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
        payment_capture: int = 1,
    ) -> dict[str, Any]:
        if not self.configured:
            raise GatewayError("Razorpay credentials are not configured")

        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": payment_capture,
            "notes": notes,
        }
        try:
            response = await self._client.post("/orders", json=payload)
        except httpx.HTTPError as e:
            raise GatewayError(f"Razorpay request failed: {e}") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Razorpay returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()


def parse_amount(raw: Any) -> int:
    """Positive integer amount in minor units, or InvalidAmountError."""
    if raw is None or isinstance(raw, bool):
        raise InvalidAmountError("Amount (in paise) is required")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidAmountError("Amount (in paise) is required")
    if not math.isfinite(value) or value <= 0 or value != int(value):
        raise InvalidAmountError("Amount (in paise) is required")
    return int(value)


def build_gateway_notes(customer: Customer) -> dict[str, str]:
    """Gateway notes with the gateway's per-field limits and NA defaults."""
    return {
        "customer_name": (customer.name or "NA")[:100],
        "customer_phone": (customer.phone or "NA")[:20],
        "customer_email": (customer.email or "NA")[:100],
        "address_line1": (customer.address1 or "NA")[:120],
        "address_line2": (customer.address2 or "")[:120],
        "city": (customer.city or "")[:60],
        "state": (customer.state or "")[:60],
        "pincode": (customer.pincode or "")[:20],
    }


class OrderDesk:
    """Creates gateway orders and records their billing facts."""

    def __init__(self, client: RazorpayClient, journal: IOrderJournal, currency: str = "INR"):
        self.client = client
        self.journal = journal
        self.currency = currency

    async def create_order(self, request: CreateOrderRequest) -> dict[str, Any]:
        amount = parse_amount(request.amount)

        order = await self.client.create_order(
            amount=amount,
            currency=self.currency,
            receipt=f"receipt_{int(time.time() * 1000)}",
            notes=build_gateway_notes(request.customer),
            payment_capture=1,
        )
        order_id = order.get("id")
        if not order_id:
            raise GatewayError("Razorpay order response has no id")

        record = OrderRecord(
            order_id=order_id,
            amount_paise=amount,
            currency=self.currency,
            customer=request.customer,
            cart=request.cart,
        )
        try:
            await self.journal.append(record)
        except JournalWriteError as e:
            logger.error("order_journal_failed", order_id=order_id, error=str(e))

        logger.info("order_created",
                    order_id=order_id,
                    amount=order.get("amount", amount),
                    currency=order.get("currency", self.currency))
        return order
