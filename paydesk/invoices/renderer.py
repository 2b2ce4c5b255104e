# paydesk/invoices/renderer.py
# ============================================================================
# PAYDESK — INVOICE RENDERER
# ============================================================================
# Billing facts -> PDF bytes. Layout is computed first as plain text lines
# (InvoiceLayout) and then drawn with reportlab, so the content is testable
# without parsing PDF streams.
# ============================================================================

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from paydesk.config import StoreProfile
from paydesk.errors import RenderError
from paydesk.schemas.billing import BillingFacts

logger = logging.getLogger("Paydesk.InvoiceRenderer")

RUPEE = "₹"
TAX_NOTE = "Note: GST not registered. This is a computer-generated invoice."


@dataclass
class InvoiceRow:
    name: str
    qty: str
    price: str
    amount: str


@dataclass
class InvoiceLayout:
    store_lines: list[str]
    meta_lines: list[str]
    bill_to: list[str]
    rows: list[InvoiceRow] = field(default_factory=list)
    totals: list[str] = field(default_factory=list)
    note: str = TAX_NOTE

    def text(self) -> str:
        parts = self.store_lines + ["INVOICE"] + self.meta_lines + ["Bill To"] + self.bill_to
        parts += [f"{r.name} {r.qty} {r.price} {r.amount}" for r in self.rows]
        parts += self.totals + [self.note]
        return "\n".join(parts)


def build_layout(
    facts: BillingFacts,
    store: StoreProfile,
    issued_at: Optional[datetime] = None,
) -> InvoiceLayout:
    issued_at = issued_at or datetime.now()
    c = facts.customer

    rows = []
    for item in facts.cart:
        rows.append(InvoiceRow(
            name=item.name,
            qty=str(item.qty),
            price=f"{RUPEE}{item.price:.2f}",
            amount=f"{RUPEE}{item.line_total:.2f}",
        ))

    return InvoiceLayout(
        store_lines=[
            store.name,
            store.address,
            f"Phone: {store.phone}",
            f"Email: {store.email}",
        ],
        meta_lines=[
            f"Date: {issued_at.strftime('%d %b %Y, %H:%M')}",
            f"Order ID: {facts.order_id}",
            f"Payment ID: {facts.payment_id}",
        ],
        bill_to=[
            c.name or "",
            c.address1 or "",
            c.address2 or "",
            f"{c.city or ''}, {c.state or ''} - {c.pincode or ''}",
            f"Phone: {c.phone or ''}",
            f"Email: {c.email or ''}",
        ],
        rows=rows,
        totals=[
            f"Subtotal: {RUPEE}{facts.subtotal:.2f}",
            f"Tax (GST not registered): {RUPEE}0.00",
            f"Total Paid: {facts.total_display}",
        ],
    )


class InvoiceRenderer:
    """Draws an InvoiceLayout onto a single A4 page."""

    MARGIN = 40
    COLUMNS = (40, 260, 360, 430)

    def __init__(self, store: StoreProfile, font_path: Optional[str] = None):
        self.store = store
        self.font = "Helvetica"
        self._unicode_font = False
        if font_path:
            try:
                pdfmetrics.registerFont(TTFont("InvoiceFont", font_path))
                self.font = "InvoiceFont"
                self._unicode_font = True
            except Exception as e:
                logger.warning(f"Could not load invoice font {font_path}: {e}")

    def _safe(self, text: str) -> str:
        # Built-in Type1 fonts have no rupee glyph
        return text if self._unicode_font else text.replace(RUPEE, "Rs.")

    def render(self, facts: BillingFacts, issued_at: Optional[datetime] = None) -> bytes:
        try:
            layout = build_layout(facts, self.store, issued_at)
            return self._draw(layout)
        except Exception as e:
            raise RenderError(f"Invoice render failed for {facts.order_id}: {e}") from e

    def _draw(self, layout: InvoiceLayout) -> bytes:
        buffer = io.BytesIO()
        width, height = A4
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle("Invoice")
        right = width - self.MARGIN
        y = height - self.MARGIN

        def line(text: str, size: int = 10, x: float = self.MARGIN, align: str = "left", gap: float = 14):
            nonlocal y
            pdf.setFont(self.font, size)
            text = self._safe(text)
            if align == "right":
                pdf.drawRightString(right, y, text)
            else:
                pdf.drawString(x, y, text)
            y -= gap

        line(layout.store_lines[0], size=20, gap=24)
        for text in layout.store_lines[1:]:
            line(text)
        y -= 8

        line("INVOICE", size=16, align="right", gap=20)
        for text in layout.meta_lines:
            line(text, align="right")
        y -= 8

        line("Bill To", size=12, gap=16)
        for text in layout.bill_to:
            line(text)
        y -= 8

        line("Items:", size=11, gap=16)
        pdf.setFont(self.font, 10)
        for x, title in zip(self.COLUMNS, ("Item", "Qty", "Price", "Amount")):
            pdf.drawString(x, y, title)
        y -= 6
        pdf.line(self.MARGIN, y, right, y)
        y -= 14

        for row in layout.rows:
            for x, text in zip(self.COLUMNS, (row.name, row.qty, row.price, row.amount)):
                pdf.drawString(x, y, self._safe(text))
            y -= 14
            if y < self.MARGIN * 3:
                pdf.showPage()
                pdf.setFont(self.font, 10)
                y = height - self.MARGIN

        pdf.line(self.MARGIN, y + 6, right, y + 6)
        y -= 8
        for text in layout.totals:
            line(text, align="right")

        y -= 14
        line(layout.note, size=9)

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
