"""Project financials, cost summaries and the profitability leaderboard."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from billing_engine.api.dependencies import CurrentActor, FinanceReader, FinanceWriter, Financials
from billing_engine.api.schemas import (
    ErrorResponse,
    LeaderboardRowResponse,
    MyProjectCostResponse,
    ProjectFinancialsResponse,
    ProjectUserCostsResponse,
    StatusResponse,
)

router = APIRouter(tags=["financials"])


@router.get(
    "/projects/{project_id}/financials",
    response_model=ProjectFinancialsResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def get_project_financials(
    actor: FinanceReader,
    financials: Financials,
    project_id: Annotated[UUID, Path()],
) -> ProjectFinancialsResponse:
    """Current snapshot; recomputed first when stale."""
    snapshot = await financials.get_financials(project_id, actor.organization_id)
    return ProjectFinancialsResponse.model_validate(snapshot)


@router.post(
    "/projects/{project_id}/financials/recompute",
    response_model=StatusResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def recompute_project_financials(
    actor: FinanceWriter,
    financials: Financials,
    project_id: Annotated[UUID, Path()],
) -> StatusResponse:
    await financials.recompute(project_id, actor.organization_id)
    return StatusResponse(status="recomputed")


@router.get(
    "/projects/{project_id}/my-cost",
    response_model=MyProjectCostResponse,
    responses={404: {"model": ErrorResponse}},
)
async def my_project_cost(
    actor: CurrentActor,
    financials: Financials,
    project_id: Annotated[UUID, Path()],
    start: datetime | None = None,
    end: datetime | None = None,
) -> MyProjectCostResponse:
    """The caller's own hours and cost on a project."""
    summary = await financials.my_project_cost(
        actor.organization_id, actor.user_id, project_id, start, end
    )
    return MyProjectCostResponse.model_validate(summary)


@router.get(
    "/projects/{project_id}/user-costs",
    response_model=ProjectUserCostsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def project_user_costs(
    actor: FinanceReader,
    financials: Financials,
    project_id: Annotated[UUID, Path()],
    start: datetime | None = None,
    end: datetime | None = None,
) -> ProjectUserCostsResponse:
    summary = await financials.project_user_costs(actor.organization_id, project_id, start, end)
    return ProjectUserCostsResponse.model_validate(summary)


@router.get("/reports/leaderboard", response_model=list[LeaderboardRowResponse])
async def leaderboard(
    actor: FinanceReader,
    financials: Financials,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[LeaderboardRowResponse]:
    rows = await financials.leaderboard(actor.organization_id, limit=limit)
    return [LeaderboardRowResponse.model_validate(r) for r in rows]
