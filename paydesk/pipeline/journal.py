"""
Order Journal
=============
Append-only durable logs plus the in-memory index derived from them.

- orders log: one OrderRecord JSON line per created order
- verification log: one VerificationEvent JSON line per verified payment

The index is rebuilt once at startup by replaying the orders log; the same
class owns both the log writes and the index so they cannot diverge.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional

import structlog
from pydantic import ValidationError

from paydesk.errors import JournalWriteError
from paydesk.schemas.billing import OrderRecord, VerificationEvent


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderJournal(ABC):
    """Journal interface the orchestrator and order desk depend on."""

    @abstractmethod
    async def append(self, record: OrderRecord) -> None:
        """Persist one record; raises JournalWriteError on I/O failure."""
        pass

    @abstractmethod
    def lookup(self, order_id: str) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def record_verification(self, event: VerificationEvent) -> bool:
        """Best-effort ledger write. Returns False instead of raising."""
        pass

    @abstractmethod
    def verified_payments(self, order_id: str) -> set[str]:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


# =============================================================================
# IN-MEMORY (tests / ephemeral deployments)
# =============================================================================

class InMemoryOrderJournal(IOrderJournal):

    def __init__(self):
        self._orders: dict[str, OrderRecord] = {}
        self._verified: dict[str, set[str]] = defaultdict(set)
        self.events: list[VerificationEvent] = []

    async def append(self, record: OrderRecord) -> None:
        self._orders[record.order_id] = record

    def lookup(self, order_id: str) -> Optional[OrderRecord]:
        return self._orders.get(order_id)

    async def record_verification(self, event: VerificationEvent) -> bool:
        self.events.append(event)
        self._verified[event.order_id].add(event.payment_id)
        return True

    def verified_payments(self, order_id: str) -> set[str]:
        return set(self._verified.get(order_id, ()))

    def __len__(self) -> int:
        return len(self._orders)


# =============================================================================
# FILE-BACKED JOURNAL
# =============================================================================

def _append_line(path: str, line: str) -> None:
    # One write call per line; the OS append guarantee covers concurrent writers
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)


class FileOrderJournal(IOrderJournal):
    """JSONL-backed journal with an in-process index keyed by order id."""

    def __init__(self, orders_path: str, verified_path: str):
        self.orders_path = orders_path
        self.verified_path = verified_path
        self._orders: dict[str, OrderRecord] = {}
        self._verified: dict[str, set[str]] = defaultdict(set)
        self._logger = structlog.get_logger().bind(component="order_journal")

        self._ensure_files()
        self.rebuild()

    def _ensure_files(self) -> None:
        for path in (self.orders_path, self.verified_path):
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            if not os.path.exists(path):
                open(path, "a", encoding="utf-8").close()

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def rebuild(self) -> int:
        """Replay both logs into memory. Malformed lines are skipped."""
        self._orders.clear()
        self._verified.clear()

        skipped = 0
        for line in self._read_lines(self.orders_path):
            try:
                record = OrderRecord.model_validate_json(line.decode("utf-8"))
            except (UnicodeDecodeError, ValidationError):
                skipped += 1
                continue
            self._orders[record.order_id] = record

        for line in self._read_lines(self.verified_path):
            try:
                event = VerificationEvent.model_validate(json.loads(line.decode("utf-8")))
            except (ValueError, ValidationError):
                skipped += 1
                continue
            self._verified[event.order_id].add(event.payment_id)

        self._logger.info("journal_rebuilt",
                          orders=len(self._orders),
                          verified_orders=len(self._verified),
                          skipped_lines=skipped)
        return len(self._orders)

    def _read_lines(self, path: str):
        """Non-blank lines as raw bytes; callers decode per line."""
        try:
            with open(path, "rb") as fh:
                for raw in fh:
                    line = raw.strip()
                    if line:
                        yield line
        except OSError as e:
            self._logger.warning("journal_read_failed", path=path, error=str(e))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def append(self, record: OrderRecord) -> None:
        try:
            await asyncio.to_thread(_append_line, self.orders_path, record.to_json_line())
        except OSError as e:
            self._logger.error("order_append_failed", order_id=record.order_id, error=str(e))
            raise JournalWriteError(f"Could not append order {record.order_id}: {e}") from e
        self._orders[record.order_id] = record

    async def record_verification(self, event: VerificationEvent) -> bool:
        try:
            await asyncio.to_thread(_append_line, self.verified_path, event.to_json_line())
        except OSError as e:
            self._logger.error("verification_append_failed",
                               order_id=event.order_id,
                               payment_id=event.payment_id,
                               error=str(e))
            return False
        self._verified[event.order_id].add(event.payment_id)
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def lookup(self, order_id: str) -> Optional[OrderRecord]:
        return self._orders.get(order_id)

    def verified_payments(self, order_id: str) -> set[str]:
        return set(self._verified.get(order_id, ()))

    def __len__(self) -> int:
        return len(self._orders)
