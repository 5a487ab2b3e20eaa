"""Protocols and types for invoice delivery and rendering collaborators.

Delivery (e-mail) and document rendering are external concerns; the engine
talks to them only through these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID


@dataclass(frozen=True)
class InvoiceDocumentLine:
    description: str
    hours: Decimal
    rate: Decimal
    amount: Decimal
    kind: str = "time"


@dataclass(frozen=True)
class InvoiceDocument:
    """Render/delivery view of an invoice, detached from the ORM session."""

    invoice_id: UUID
    number: str
    status: str
    currency: str
    issue_date: date
    due_date: date | None
    project_name: str | None
    client_name: str | None
    client_email: str | None
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    total_hours: Decimal
    note: str | None = None
    lines: tuple[InvoiceDocumentLine, ...] = ()


@dataclass(frozen=True)
class RenderedDocument:
    """Output of a renderer."""

    content: bytes
    content_type: str
    filename: str


@dataclass(frozen=True)
class DeliveryResult:
    """Result of handing an invoice to the delivery provider."""

    accepted: bool
    message: str = ""
    provider_message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class InvoiceRenderer(Protocol):
    """Turns an invoice into a downloadable document."""

    def render(self, document: InvoiceDocument) -> RenderedDocument:
        ...


class InvoiceDeliveryProvider(Protocol):
    """Delivers a rendered invoice to a recipient.

    Implementations return ``DeliveryResult(accepted=False, ...)`` or raise on
    failure; either way the invoice stays in its previous status.
    """

    provider_name: str

    async def deliver(
        self,
        document: InvoiceDocument,
        to_email: str,
        attachment: RenderedDocument,
    ) -> DeliveryResult:
        ...
