"""
Payment Signature Verification
==============================
HMAC-SHA256 checks for checkout confirmations and raw webhook bodies.

A missing secret is a configuration error and raises; it is never read as
"verified".
"""

import hashlib
import hmac
from typing import Optional

from paydesk.errors import MissingSecretError


def _require_secret(secret: Optional[str], purpose: str) -> bytes:
    if not secret:
        raise MissingSecretError(f"No shared secret configured for {purpose}")
    return secret.encode("utf-8")


def sign_payload(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of raw bytes."""
    key = _require_secret(secret, "webhook signatures")
    return hmac.new(key, raw_body, hashlib.sha256).hexdigest()


def sign_payment(order_id: str, payment_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``order_id|payment_id``."""
    key = _require_secret(secret, "payment signatures")
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: str,
    secret: Optional[str],
) -> bool:
    expected = sign_payment(order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode("ascii"), (signature or "").encode("utf-8"))


def verify_webhook_signature(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """Verify a webhook against the bytes as received, not re-serialized JSON."""
    expected = sign_payload(raw_body, secret)
    if not signature:
        return False
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
