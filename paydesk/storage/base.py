# paydesk/storage/base.py
# ============================================================================
# PAYDESK — ARCHIVAL SINK INTERFACE
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

PDF_MIME = "application/pdf"


@dataclass
class ArchiveReceipt:
    """Durable reference returned by an archival sink."""
    reference: str
    url: Optional[str] = None
    name: Optional[str] = None


class IArchiveSink(ABC):
    """Stores a rendered invoice and returns a retrievable reference."""

    name: str = "archive"
    # Safe to repeat after an attempt that may have landed
    idempotent: bool = False

    @abstractmethod
    async def archive(self, filename: str, content: bytes) -> ArchiveReceipt:
        pass

    async def close(self) -> None:
        pass
