"""Time entry endpoints: manual entries, listing, edits and bulk adjustment."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from billing_engine.api.dependencies import CurrentActor, DbSession, Timers
from billing_engine.api.routes.timers import entry_response
from billing_engine.api.schemas import (
    BulkAdjustRequest,
    BulkAdjustResponse,
    CreateManualEntryRequest,
    ErrorResponse,
    ListEntriesResponse,
    TimeEntryResponse,
    UpdateTimeEntryRequest,
)

router = APIRouter(prefix="/time/entries", tags=["time-entries"])


@router.get("", response_model=ListEntriesResponse)
async def list_entries(
    db: DbSession,
    actor: CurrentActor,
    timers: Timers,
    start: datetime | None = None,
    end: datetime | None = None,
    project_id: UUID | None = None,
    task_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ListEntriesResponse:
    """List the caller's entries, newest first."""
    entries, total = await timers.list_entries(
        actor,
        start=start,
        end=end,
        project_id=project_id,
        task_id=task_id,
        limit=limit,
        offset=offset,
    )
    return ListEntriesResponse(
        entries=[await entry_response(db, e) for e in entries],
        total=total,
    )


@router.post(
    "",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_manual_entry(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: CreateManualEntryRequest
) -> TimeEntryResponse:
    entry = await timers.create_manual_entry(
        actor,
        project_id=payload.project_id,
        start_ts=payload.start_ts,
        end_ts=payload.end_ts,
        task_id=payload.task_id,
        billable=payload.billable,
        notes=payload.notes,
        source=payload.source,
        allow_overlap=payload.allow_overlap,
    )
    return await entry_response(db, entry)


@router.post(
    "/bulk-adjust",
    response_model=BulkAdjustResponse,
    responses={409: {"model": ErrorResponse}},
)
async def bulk_adjust(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: BulkAdjustRequest
) -> BulkAdjustResponse:
    """Adjust several stopped entries at once; any rejected entry aborts the batch."""
    entries = await timers.bulk_adjust(
        actor,
        payload.entry_ids,
        payload.adjustment.type,
        payload.adjustment.value,
        reason=payload.reason,
    )
    return BulkAdjustResponse(
        updated=len(entries),
        entries=[await entry_response(db, e) for e in entries],
    )


@router.get(
    "/{entry_id}",
    response_model=TimeEntryResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_entry(
    db: DbSession,
    actor: CurrentActor,
    timers: Timers,
    entry_id: Annotated[UUID, Path()],
) -> TimeEntryResponse:
    entry = await timers.get_entry(actor, entry_id)
    return await entry_response(db, entry)


@router.patch(
    "/{entry_id}",
    response_model=TimeEntryResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_entry(
    db: DbSession,
    actor: CurrentActor,
    timers: Timers,
    payload: UpdateTimeEntryRequest,
    entry_id: Annotated[UUID, Path()],
) -> TimeEntryResponse:
    entry = await timers.update_entry(actor, entry_id, payload.model_dump(exclude_unset=True))
    return await entry_response(db, entry)


@router.delete(
    "/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_entry(
    actor: CurrentActor,
    timers: Timers,
    entry_id: Annotated[UUID, Path()],
) -> Response:
    await timers.delete_entry(actor, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
