"""Invoice endpoints: drafting, listing, rendering, delivery and lifecycle."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from billing_engine.api.dependencies import FinanceReader, FinanceWriter, Invoices
from billing_engine.api.schemas import (
    ErrorResponse,
    InvoiceDraftRequest,
    InvoiceResponse,
    MarkPaidRequest,
    StatusResponse,
)

router = APIRouter(tags=["invoices"])


@router.post(
    "/projects/{project_id}/invoices/draft",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def draft_invoice(
    actor: FinanceWriter,
    invoices: Invoices,
    payload: InvoiceDraftRequest,
    project_id: Annotated[UUID, Path()],
) -> InvoiceResponse:
    """Draft an invoice from unbilled work; ``send_now`` also delivers it.

    A failed delivery keeps the draft and reports the reason in
    ``delivery_error``.
    """
    outcome = await invoices.draft_invoice(
        actor,
        project_id,
        start=payload.start,
        end=payload.end,
        to_email=payload.to_email,
        note=payload.note,
        client_name=payload.client_name,
        client_email=payload.client_email,
        due_date=payload.due_date,
        send_now=payload.send_now,
    )
    response = InvoiceResponse.model_validate(outcome.invoice)
    response.delivery_error = outcome.delivery_error
    return response


@router.get("/projects/{project_id}/invoices", response_model=list[InvoiceResponse])
async def list_project_invoices(
    actor: FinanceReader,
    invoices: Invoices,
    project_id: Annotated[UUID, Path()],
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[InvoiceResponse]:
    result = await invoices.list_invoices(actor.organization_id, project_id, status_filter)
    return [InvoiceResponse.model_validate(i) for i in result]


@router.get("/finance/invoices", response_model=list[InvoiceResponse])
async def list_invoices(
    actor: FinanceReader,
    invoices: Invoices,
    project_id: UUID | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[InvoiceResponse]:
    result = await invoices.list_invoices(actor.organization_id, project_id, status_filter)
    return [InvoiceResponse.model_validate(i) for i in result]


@router.get(
    "/finance/invoices/{invoice_id}",
    response_model=InvoiceResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_invoice(
    actor: FinanceReader,
    invoices: Invoices,
    invoice_id: Annotated[UUID, Path()],
) -> InvoiceResponse:
    invoice = await invoices.get_invoice(actor.organization_id, invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.get("/finance/invoices/{invoice_id}/pdf", responses={404: {"model": ErrorResponse}})
async def get_invoice_pdf(
    actor: FinanceReader,
    invoices: Invoices,
    invoice_id: Annotated[UUID, Path()],
) -> Response:
    """Download the rendered invoice document."""
    document = await invoices.render_invoice_pdf(actor.organization_id, invoice_id)
    return Response(
        content=document.content,
        media_type=document.content_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


@router.post(
    "/finance/invoices/{invoice_id}/send",
    response_model=StatusResponse,
    responses={409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def send_invoice(
    actor: FinanceWriter,
    invoices: Invoices,
    invoice_id: Annotated[UUID, Path()],
    to_email: str | None = None,
) -> StatusResponse:
    invoice = await invoices.send_invoice(actor, invoice_id, to_email)
    return StatusResponse(status=invoice.status)


@router.post(
    "/finance/invoices/{invoice_id}/cancel",
    response_model=InvoiceResponse,
    responses={409: {"model": ErrorResponse}},
)
async def cancel_invoice(
    actor: FinanceWriter,
    invoices: Invoices,
    invoice_id: Annotated[UUID, Path()],
) -> InvoiceResponse:
    """Cancel the invoice; its entries and expenses become billable again."""
    invoice = await invoices.cancel_invoice(actor, invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/finance/invoices/{invoice_id}/mark-paid",
    response_model=InvoiceResponse,
    responses={409: {"model": ErrorResponse}},
)
async def mark_invoice_paid(
    actor: FinanceWriter,
    invoices: Invoices,
    invoice_id: Annotated[UUID, Path()],
    payload: MarkPaidRequest | None = None,
) -> InvoiceResponse:
    invoice = await invoices.mark_paid(actor, invoice_id, payload.paid_at if payload else None)
    return InvoiceResponse.model_validate(invoice)
