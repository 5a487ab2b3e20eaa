"""Payout ledger endpoints and the freelancer finance summary."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from billing_engine.api.dependencies import CurrentActor, FinanceReader, FinanceWriter, Payouts
from billing_engine.api.schemas import (
    ErrorResponse,
    FreelancerFinanceSummaryResponse,
    PayoutCreate,
    PayoutMarkCompletedRequest,
    PayoutMarkFailedRequest,
    PayoutResponse,
)
from billing_engine.errors import ValidationError
from billing_engine.services import FINANCE_READ

router = APIRouter(prefix="/finance", tags=["payouts"])


@router.post(
    "/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_payout(actor: FinanceWriter, payouts: Payouts, payload: PayoutCreate) -> PayoutResponse:
    payout = await payouts.create_payout(
        actor,
        freelancer_user_id=payload.freelancer_user_id,
        amount=payload.amount,
        currency=payload.currency,
        payout_method=payload.payout_method,
        project_id=payload.project_id,
        scheduled_for=payload.scheduled_for,
        metadata=payload.metadata,
    )
    return PayoutResponse.model_validate(payout)


@router.get("/payouts", response_model=list[PayoutResponse])
async def list_payouts(
    actor: FinanceReader,
    payouts: Payouts,
    freelancer_email: str | None = None,
    freelancer_id: UUID | None = None,
    created_from: Annotated[datetime | None, Query(alias="from")] = None,
) -> list[PayoutResponse]:
    """Payouts, newest first; ``freelancer_email`` wins over ``freelancer_id``."""
    result = await payouts.list_payouts(
        actor.organization_id,
        freelancer_id=freelancer_id,
        freelancer_email=freelancer_email,
        created_from=created_from,
    )
    return [PayoutResponse.model_validate(p) for p in result]


@router.get("/payouts/export", responses={422: {"model": ErrorResponse}})
async def export_payouts(
    actor: FinanceReader,
    payouts: Payouts,
    export_format: Annotated[str, Query(alias="format")] = "csv",
    created_from: Annotated[datetime | None, Query(alias="from")] = None,
) -> Response:
    """CSV export of the payout ledger."""
    if export_format.lower() != "csv":
        raise ValidationError(f"Unsupported export format '{export_format}'", field="format")
    content = await payouts.export_payouts_csv(actor.organization_id, created_from=created_from)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payouts.csv"'},
    )


@router.post(
    "/payouts/{payout_id}/mark-completed",
    response_model=PayoutResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def mark_payout_completed(
    actor: FinanceWriter,
    payouts: Payouts,
    payload: PayoutMarkCompletedRequest,
    payout_id: Annotated[UUID, Path()],
) -> PayoutResponse:
    payout = await payouts.mark_completed(
        actor, payout_id, payload.payout_reference, payload.paid_at
    )
    return PayoutResponse.model_validate(payout)


@router.post(
    "/payouts/{payout_id}/mark-failed",
    response_model=PayoutResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def mark_payout_failed(
    actor: FinanceWriter,
    payouts: Payouts,
    payload: PayoutMarkFailedRequest,
    payout_id: Annotated[UUID, Path()],
) -> PayoutResponse:
    payout = await payouts.mark_failed(actor, payout_id, payload.reason)
    return PayoutResponse.model_validate(payout)


@router.get(
    "/freelancers/{user_id}/summary",
    response_model=FreelancerFinanceSummaryResponse,
    responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def freelancer_finance_summary(
    actor: CurrentActor,
    payouts: Payouts,
    user_id: Annotated[UUID, Path()],
    from_ts: Annotated[datetime | None, Query(alias="from")] = None,
    to_ts: Annotated[datetime | None, Query(alias="to")] = None,
) -> FreelancerFinanceSummaryResponse:
    """Tracked cost against paid and pending payouts; freelancers may read their own."""
    if user_id != actor.user_id:
        actor.require(FINANCE_READ)
    summary = await payouts.freelancer_finance_summary(
        actor.organization_id, user_id, from_ts, to_ts
    )
    return FreelancerFinanceSummaryResponse.model_validate(summary)
