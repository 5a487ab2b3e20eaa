"""Timer endpoints: start, pause, resume, stop, idle trim and heartbeats."""

from fastapi import APIRouter, status

from billing_engine.api.dependencies import CurrentActor, DbSession, Timers
from billing_engine.api.schemas import (
    ApplyIdleTrimRequest,
    ErrorResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    ProjectRef,
    StartTimerRequest,
    StopTimerRequest,
    TimeEntryResponse,
    TimerActionRequest,
)
from billing_engine.calculators.types import Interval
from billing_engine.errors import NotFoundError
from billing_engine.models import Project, TimeEntry

router = APIRouter(prefix="/time/timers", tags=["timers"])


async def entry_response(db: DbSession, entry: TimeEntry) -> TimeEntryResponse:
    """Serialize an entry together with its project reference."""
    response = TimeEntryResponse.model_validate(entry)
    project = await db.get(Project, entry.project_id)
    if project is not None:
        response.project = ProjectRef.model_validate(project)
    return response


@router.get(
    "/active",
    response_model=TimeEntryResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_active_timer(db: DbSession, actor: CurrentActor, timers: Timers) -> TimeEntryResponse:
    """The caller's running or paused timer; 404 when there is none."""
    entry = await timers.get_active(actor)
    if entry is None:
        raise NotFoundError("No active timer")
    return await entry_response(db, entry)


@router.post(
    "/start",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
async def start_timer(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: StartTimerRequest
) -> TimeEntryResponse:
    entry = await timers.start(
        actor,
        project_id=payload.project_id,
        task_id=payload.task_id,
        billable=payload.billable,
        notes=payload.notes,
        source=payload.source,
        idempotency_key=payload.idempotency_key,
    )
    return await entry_response(db, entry)


@router.post("/pause", response_model=TimeEntryResponse, responses={409: {"model": ErrorResponse}})
async def pause_timer(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: TimerActionRequest
) -> TimeEntryResponse:
    entry = await timers.pause(actor, payload.time_entry_id)
    return await entry_response(db, entry)


@router.post("/resume", response_model=TimeEntryResponse, responses={409: {"model": ErrorResponse}})
async def resume_timer(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: TimerActionRequest
) -> TimeEntryResponse:
    entry = await timers.resume(actor, payload.time_entry_id)
    return await entry_response(db, entry)


@router.post("/stop", response_model=TimeEntryResponse, responses={409: {"model": ErrorResponse}})
async def stop_timer(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: StopTimerRequest
) -> TimeEntryResponse:
    """Stop the timer; idle time is only trimmed with explicit acceptance."""
    client_intervals = [
        Interval.from_dict(i.model_dump()) for i in payload.client_idle_intervals or []
    ]
    entry = await timers.stop(
        actor,
        payload.time_entry_id,
        client_idle_intervals=client_intervals,
        accept_server_idle_trim=payload.accept_server_idle_trim,
    )
    return await entry_response(db, entry)


@router.post(
    "/apply-idle-trim",
    response_model=TimeEntryResponse,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def apply_idle_trim(
    db: DbSession, actor: CurrentActor, timers: Timers, payload: ApplyIdleTrimRequest
) -> TimeEntryResponse:
    entry = await timers.apply_idle_trim(actor, payload.time_entry_id, payload.trim_seconds)
    return await entry_response(db, entry)


@router.post(
    "/heartbeat",
    response_model=HeartbeatResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
async def record_heartbeat(
    actor: CurrentActor, timers: Timers, payload: HeartbeatRequest
) -> HeartbeatResponse:
    heartbeat = await timers.record_heartbeat(actor, payload.time_entry_id, payload.ts)
    return HeartbeatResponse.model_validate(heartbeat)
