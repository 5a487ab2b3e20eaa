"""Invoice delivery and rendering adapters."""

from billing_engine.providers.base import (
    DeliveryResult,
    InvoiceDeliveryProvider,
    InvoiceDocument,
    InvoiceDocumentLine,
    InvoiceRenderer,
    RenderedDocument,
)
from billing_engine.providers.email_stub import LoggingDeliveryProvider
from billing_engine.providers.text_renderer import PlainTextInvoiceRenderer

__all__ = [
    "DeliveryResult",
    "InvoiceDeliveryProvider",
    "InvoiceDocument",
    "InvoiceDocumentLine",
    "InvoiceRenderer",
    "LoggingDeliveryProvider",
    "PlainTextInvoiceRenderer",
    "RenderedDocument",
]
