"""
Bounded Retry
=============
Timeout plus a small number of backoff retries for outbound sink calls.
Only transient failures are retried; everything else propagates at once.

A sink that is not idempotent is retried only when the failed attempt is
known not to have reached the remote side. A timeout or a 5xx on such a
sink may already have stored a file or delivered a mail, so it propagates.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from paydesk.errors import TransientSinkError

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientSinkError,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)

# Failures raised before any request bytes left this process
NOT_SENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    ConnectionRefusedError,
)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float = 15.0
    backoff_seconds: float = 0.5

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


def safe_to_repeat(error: BaseException, idempotent: bool) -> bool:
    """Whether a transient ``error`` may be retried for this kind of sink."""
    if idempotent:
        return True
    if isinstance(error, TransientSinkError):
        return not error.may_have_applied
    return isinstance(error, NOT_SENT_ERRORS)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    name: str = "sink",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    idempotent: bool = True,
) -> T:
    """Run ``operation`` under a per-attempt timeout, retrying transient errors."""
    sleep = sleep or asyncio.sleep
    log = structlog.get_logger().bind(component="retry", operation=name)
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
        except TRANSIENT_ERRORS as e:
            if not safe_to_repeat(e, idempotent):
                log.warning("retry_unsafe",
                            attempts=attempt,
                            error=str(e) or type(e).__name__)
                raise
            if attempt >= attempts:
                log.warning("retry_exhausted", attempts=attempt, error=str(e) or type(e).__name__)
                raise
            delay = policy.delay_for(attempt)
            log.info("retry_scheduled",
                     attempt=attempt,
                     delay_seconds=delay,
                     error=str(e) or type(e).__name__)
            await sleep(delay)

    raise RuntimeError("unreachable")


def raise_for_transient_status(response: httpx.Response, service: str) -> None:
    """Map 429/5xx to TransientSinkError; leave other statuses to the caller."""
    status = response.status_code
    if status == 429 or status >= 500:
        raise TransientSinkError(
            f"{service} returned {status}: {response.text[:200]}",
            may_have_applied=status != 429,
        )
