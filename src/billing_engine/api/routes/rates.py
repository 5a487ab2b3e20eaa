"""Rate endpoints: creation, listing, supersession and resolution."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Path, status

from billing_engine.api.dependencies import DbSession, FinanceReader, FinanceWriter, Rates
from billing_engine.api.schemas import (
    ErrorResponse,
    RateCreate,
    RateResolveResponse,
    RateResponse,
    RateSupersede,
)
from billing_engine.calculators.rate_resolver import RateResolver
from billing_engine.calculators.types import RateType
from billing_engine.errors import ValidationError
from billing_engine.services.base import get_project_in_org

router = APIRouter(tags=["rates"])


def parse_rate_type(rate_type: str = "billable") -> RateType:
    try:
        return RateType.parse(rate_type)
    except ValueError:
        raise ValidationError(f"Unknown rate type '{rate_type}'", field="rate_type") from None


@router.post(
    "/finance/rates",
    response_model=RateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_rate(actor: FinanceWriter, rates: Rates, payload: RateCreate) -> RateResponse:
    """Create a rate; overlapping windows for the same key are rejected."""
    rate = await rates.create_rate(
        actor,
        scope=payload.scope,
        rate_type=payload.rate_type,
        currency=payload.currency,
        hourly_rate=payload.hourly_rate,
        scope_id=payload.scope_id,
        effective_from=payload.effective_from,
        effective_to=payload.effective_to,
    )
    return RateResponse.model_validate(rate)


@router.get("/finance/rates", response_model=list[RateResponse])
async def list_rates(
    actor: FinanceReader,
    rates: Rates,
    scope: str | None = None,
    scope_id: UUID | None = None,
    rate_type: str | None = None,
) -> list[RateResponse]:
    result = await rates.list_rates(actor.organization_id, scope, scope_id, rate_type)
    return [RateResponse.model_validate(r) for r in result]


@router.post(
    "/finance/rates/{rate_id}/supersede",
    response_model=RateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def supersede_rate(
    actor: FinanceWriter,
    rates: Rates,
    payload: RateSupersede,
    rate_id: Annotated[UUID, Path()],
) -> RateResponse:
    """Close the rate at ``effective_from`` and return its successor."""
    successor = await rates.supersede_rate(
        actor, rate_id, payload.hourly_rate, payload.effective_from
    )
    return RateResponse.model_validate(successor)


@router.get(
    "/projects/{project_id}/rate-resolve",
    response_model=RateResolveResponse,
    responses={404: {"model": ErrorResponse}},
)
async def resolve_rate(
    db: DbSession,
    actor: FinanceReader,
    project_id: Annotated[UUID, Path()],
    rate_type: Annotated[RateType, Depends(parse_rate_type)],
    for_user_id: UUID | None = None,
    at_ts: datetime | None = None,
    currency: str | None = None,
) -> RateResolveResponse:
    """Resolve the effective hourly rate (user > project > client > default)."""
    project = await get_project_in_org(db, actor.organization_id, project_id)
    resolved = await RateResolver(db).resolve_for_project(
        project,
        rate_type,
        for_user_id=for_user_id or actor.user_id,
        at_ts=at_ts,
        currency=currency.upper() if currency else None,
    )
    return RateResolveResponse(
        currency=resolved.currency,
        rate_type=resolved.rate_type.value,
        hourly_rate=resolved.hourly_rate,
        source=resolved.source,
        resolved_scope=resolved.resolved_scope.value,
        resolved_scope_id=resolved.resolved_scope_id,
    )
