from paydesk.invoices.renderer import InvoiceLayout, InvoiceRenderer, build_layout

__all__ = ["InvoiceLayout", "InvoiceRenderer", "build_layout"]
