"""Plain-text invoice renderer used when no document service is configured."""

from __future__ import annotations

from billing_engine.providers.base import InvoiceDocument, RenderedDocument


class PlainTextInvoiceRenderer:
    """Renders an invoice as a fixed-width text document."""

    content_type = "text/plain; charset=utf-8"

    def render(self, document: InvoiceDocument) -> RenderedDocument:
        out = [
            f"INVOICE {document.number}",
            f"Status: {document.status}",
            f"Issued: {document.issue_date.isoformat()}",
        ]
        if document.due_date is not None:
            out.append(f"Due: {document.due_date.isoformat()}")
        if document.project_name:
            out.append(f"Project: {document.project_name}")
        if document.client_name or document.client_email:
            out.append(f"Bill to: {document.client_name or ''} {document.client_email or ''}".rstrip())
        out.append("")
        out.append(f"{'Description':<48}{'Hours':>10}{'Rate':>12}{'Amount':>14}")
        for line in document.lines:
            hours = f"{line.hours:.2f}" if line.kind == "time" else ""
            out.append(
                f"{line.description[:47]:<48}{hours:>10}{line.rate:>12.2f}{line.amount:>14.2f}"
            )
        out.append("")
        out.append(f"{'Subtotal':<70}{document.subtotal:>14.2f}")
        out.append(f"{'Tax':<70}{document.tax_total:>14.2f}")
        out.append(f"{'Total (' + document.currency + ')':<70}{document.total:>14.2f}")
        if document.note:
            out.extend(["", document.note])

        return RenderedDocument(
            content=("\n".join(out) + "\n").encode("utf-8"),
            content_type=self.content_type,
            filename=f"{document.number}.txt",
        )
