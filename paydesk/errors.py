# paydesk/errors.py
# ============================================================================
# PAYDESK — ERROR TAXONOMY
# ============================================================================
# Client input, configuration, upstream and sink failures. The API layer maps
# these to status codes; sink errors never leave the orchestrator.
# ============================================================================

from typing import Optional


class PaydeskError(Exception):
    """Base class for all paydesk errors."""


class MissingSecretError(PaydeskError):
    """A shared secret needed for signature checks is not configured."""


class InvalidAmountError(PaydeskError):
    """Order amount is missing, non-numeric or not positive."""


class GatewayError(PaydeskError):
    """The payment gateway rejected or failed an order-creation call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JournalWriteError(PaydeskError):
    """Appending to a durable journal file failed."""


class RenderError(PaydeskError):
    """The invoice could not be rendered or materialized."""


class SinkError(PaydeskError):
    """An archival or notification transport failed."""


class TransientSinkError(SinkError):
    """A sink failure worth retrying (network error, 5xx, rate limit).

    ``may_have_applied`` is False when the remote side is known not to have
    acted on the request (rate limited, refused before sending). Only such
    failures are retried against sinks that are not idempotent.
    """

    def __init__(self, message: str = "", may_have_applied: bool = True):
        super().__init__(message)
        self.may_have_applied = may_have_applied

