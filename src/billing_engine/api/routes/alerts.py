"""Finance alert endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from billing_engine.api.dependencies import Alerts, FinanceReader, FinanceWriter
from billing_engine.api.schemas import ErrorResponse, FinanceAlertAckRequest, FinanceAlertResponse

router = APIRouter(prefix="/finance/alerts", tags=["alerts"])


@router.get("", response_model=list[FinanceAlertResponse])
async def list_alerts(
    actor: FinanceReader,
    alerts: Alerts,
    project_id: UUID | None = None,
    acknowledged: bool | None = None,
) -> list[FinanceAlertResponse]:
    result = await alerts.list_alerts(actor.organization_id, project_id, acknowledged)
    return [FinanceAlertResponse.model_validate(a) for a in result]


@router.post(
    "/{alert_id}/acknowledge",
    response_model=FinanceAlertResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def acknowledge_alert(
    actor: FinanceWriter,
    alerts: Alerts,
    alert_id: Annotated[UUID, Path()],
    payload: FinanceAlertAckRequest | None = None,
) -> FinanceAlertResponse:
    alert = await alerts.acknowledge(actor, alert_id, payload.notes if payload else None)
    return FinanceAlertResponse.model_validate(alert)
