"""Timer and time-entry service.

Owns the Idle → Running ⇄ Paused → Stopped lifecycle, manual entries,
idle-trim suggestions and their acceptance, and bulk duration adjustments.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.durations import (
    compute_duration_seconds,
    end_for_duration,
    raw_duration_seconds,
    suggest_idle_trim,
    validate_paused_intervals,
)
from billing_engine.calculators.types import AdjustmentType, Interval, TimeEntrySource
from billing_engine.config import Settings, get_settings
from billing_engine.errors import (
    BatchItemFailure,
    BatchOperationError,
    ConflictError,
    EngineError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing_engine.events import (
    EventEmitter,
    EventMetadata,
    IdleTrimApplied,
    TimerStarted,
    TimerStopped,
    default_emitter,
)
from billing_engine.models import ActivityHeartbeat, TimeEntry, utcnow
from billing_engine.models.base import ensure_utc
from billing_engine.services.base import (
    Actor,
    Clock,
    get_project_in_org,
    mark_financials_stale,
)
from billing_engine.services.state_machine import TimerAction, TimerState, TimerStateMachine

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"start_ts", "end_ts", "project_id", "task_id", "billable", "notes", "description"}


def _intervals(entry: TimeEntry) -> list[Interval]:
    return [Interval.from_dict(raw) for raw in entry.paused_intervals or []]


def _store_intervals(entry: TimeEntry, intervals: Sequence[Interval]) -> None:
    # JSON columns are not mutation-tracked; always assign a new list
    entry.paused_intervals = [interval.to_dict() for interval in intervals]


def _parse_source(source: str | None, default: TimeEntrySource) -> str:
    if source is None:
        return default.value
    try:
        return TimeEntrySource(source).value
    except ValueError:
        raise ValidationError(f"Unknown time entry source '{source}'", field="source") from None


class TimerService:
    """Service for timers and time entries.

    Every operation acts on behalf of an ``Actor``; entries of other users
    are Forbidden, entries outside the actor's organization are NotFound.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock
        self.emitter = emitter or default_emitter

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _metadata(self, actor: Actor) -> EventMetadata:
        return EventMetadata.create(actor.organization_id, actor.user_id, timestamp=self._now())

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_entry(self, actor: Actor, entry_id: UUID) -> TimeEntry:
        """Load an entry owned by the actor.

        Raises:
            NotFoundError: no such entry in the actor's organization
            ForbiddenError: the entry belongs to another user
        """
        entry = await self.session.get(TimeEntry, entry_id)
        if entry is None or entry.organization_id != actor.organization_id:
            raise NotFoundError(f"Time entry {entry_id} not found", time_entry_id=entry_id)
        if entry.user_id != actor.user_id:
            raise ForbiddenError(
                "Time entry belongs to another user", time_entry_id=entry_id
            )
        return entry

    async def get_active(self, actor: Actor) -> TimeEntry | None:
        """The actor's open (running or paused) entry, if any."""
        return await self._find_open_entry(actor.user_id)

    async def _find_open_entry(self, user_id: UUID) -> TimeEntry | None:
        result = await self.session.execute(
            select(TimeEntry).where(TimeEntry.user_id == user_id, TimeEntry.end_ts.is_(None))
        )
        return result.scalars().first()

    async def _find_replay(self, user_id: UUID, idempotency_key: str) -> TimeEntry | None:
        window_start = self._now() - timedelta(seconds=self.settings.idempotency_window_seconds)
        result = await self.session.execute(
            select(TimeEntry)
            .where(
                TimeEntry.user_id == user_id,
                TimeEntry.idempotency_key == idempotency_key,
                TimeEntry.created_at >= window_start,
            )
            .order_by(TimeEntry.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _find_overlap(
        self,
        user_id: UUID,
        start_ts: datetime,
        end_ts: datetime,
        exclude_id: UUID | None = None,
    ) -> TimeEntry | None:
        """First entry of the user overlapping [start_ts, end_ts).

        An open entry is treated as covering [start_ts, now).
        """
        now = self._now()
        ends_after_start = [TimeEntry.end_ts > start_ts]
        if now > start_ts:
            ends_after_start.append(TimeEntry.end_ts.is_(None))
        query = select(TimeEntry).where(
            TimeEntry.user_id == user_id,
            TimeEntry.start_ts < end_ts,
            or_(*ends_after_start),
        )
        if exclude_id is not None:
            query = query.where(TimeEntry.id != exclude_id)
        result = await self.session.execute(query.order_by(TimeEntry.start_ts).limit(1))
        return result.scalars().first()

    async def list_entries(
        self,
        actor: Actor,
        start: datetime | None = None,
        end: datetime | None = None,
        project_id: UUID | None = None,
        task_id: UUID | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[TimeEntry], int]:
        """The actor's entries starting in [start, end), newest first, with the total count."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        conditions = [
            TimeEntry.organization_id == actor.organization_id,
            TimeEntry.user_id == actor.user_id,
        ]
        if start is not None:
            conditions.append(TimeEntry.start_ts >= ensure_utc(start))
        if end is not None:
            conditions.append(TimeEntry.start_ts < ensure_utc(end))
        if project_id is not None:
            conditions.append(TimeEntry.project_id == project_id)
        if task_id is not None:
            conditions.append(TimeEntry.task_id == task_id)

        total = await self.session.scalar(select(func.count()).select_from(TimeEntry).where(*conditions))
        result = await self.session.execute(
            select(TimeEntry)
            .where(*conditions)
            .order_by(TimeEntry.start_ts.desc(), TimeEntry.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    # ------------------------------------------------------------------
    # Timer transitions
    # ------------------------------------------------------------------

    async def start(
        self,
        actor: Actor,
        project_id: UUID,
        task_id: UUID | None = None,
        billable: bool = True,
        notes: str | None = None,
        source: str | None = None,
        idempotency_key: str | None = None,
    ) -> TimeEntry:
        """Start a timer for the actor.

        A repeated start carrying the same idempotency key within the
        idempotency window returns the original entry.

        Raises:
            ConflictError: the actor already has an open entry
        """
        await get_project_in_org(self.session, actor.organization_id, project_id)

        if idempotency_key:
            replay = await self._find_replay(actor.user_id, idempotency_key)
            if replay is not None:
                logger.info("Replaying start %s for user %s", idempotency_key, actor.user_id)
                return replay

        open_entry = await self._find_open_entry(actor.user_id)
        if open_entry is not None:
            logger.warning("User %s tried to start a second timer", actor.user_id)
            raise ConflictError(
                "A timer is already running; stop it before starting another",
                time_entry_id=open_entry.id,
            )

        TimerStateMachine.next_state(TimerState.IDLE, TimerAction.START)
        now = self._now()
        entry = TimeEntry(
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            project_id=project_id,
            task_id=task_id,
            description=notes,
            start_ts=now,
            billable=billable,
            source=_parse_source(source, TimeEntrySource.TIMER),
            paused_intervals=[],
            idle_trim_applied_seconds=0,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(entry)
                await self.session.flush()
        except IntegrityError:
            # Lost the race against a concurrent start for the same user
            if idempotency_key:
                replay = await self._find_replay(actor.user_id, idempotency_key)
                if replay is not None:
                    return replay
            raise ConflictError(
                "A timer is already running; stop it before starting another"
            ) from None

        logger.info("Timer %s started by user %s on project %s", entry.id, actor.user_id, project_id)
        self.emitter.emit(
            TimerStarted(
                metadata=self._metadata(actor),
                time_entry_id=entry.id,
                user_id=actor.user_id,
                project_id=project_id,
                start_ts=now,
            )
        )
        return entry

    async def pause(self, actor: Actor, entry_id: UUID) -> TimeEntry:
        """Pause a running timer."""
        entry = await self.get_entry(actor, entry_id)
        TimerStateMachine.next_state(entry.state, TimerAction.PAUSE)

        intervals = _intervals(entry)
        intervals.append(Interval(start=self._now()))
        _store_intervals(entry, intervals)
        await self.session.flush()
        logger.info("Timer %s paused", entry.id)
        return entry

    async def resume(self, actor: Actor, entry_id: UUID) -> TimeEntry:
        """Resume a paused timer by closing its open pause."""
        entry = await self.get_entry(actor, entry_id)
        TimerStateMachine.next_state(entry.state, TimerAction.RESUME)

        _store_intervals(entry, self._close_open_pause(_intervals(entry)))
        await self.session.flush()
        logger.info("Timer %s resumed", entry.id)
        return entry

    def _close_open_pause(self, intervals: list[Interval]) -> list[Interval]:
        now = self._now()
        return [
            Interval(i.start, max(now, i.start)) if i.is_open else i for i in intervals
        ]

    async def stop(
        self,
        actor: Actor,
        entry_id: UUID,
        client_idle_intervals: Iterable[Interval] | None = None,
        accept_server_idle_trim: bool = False,
    ) -> TimeEntry:
        """Stop a running or paused timer.

        Computes the idle suggestion; the suggested trim is committed only
        when ``accept_server_idle_trim`` is set.
        """
        entry = await self.get_entry(actor, entry_id)
        TimerStateMachine.next_state(entry.state, TimerAction.STOP)

        intervals = self._close_open_pause(_intervals(entry))
        end_ts = max(self._now(), entry.start_ts)

        heartbeats = (
            await self.session.execute(
                select(ActivityHeartbeat.ts).where(ActivityHeartbeat.time_entry_id == entry.id)
            )
        ).scalars().all()

        suggestion = suggest_idle_trim(
            start_ts=entry.start_ts,
            end_ts=end_ts,
            paused=intervals,
            heartbeats=heartbeats,
            client_idle_intervals=client_idle_intervals or (),
            threshold_seconds=self.settings.idle_threshold_seconds,
            min_trim_seconds=self.settings.idle_min_trim_seconds,
        )
        trim = suggestion.suggested_trim_seconds if accept_server_idle_trim else 0

        _store_intervals(entry, intervals)
        entry.end_ts = end_ts
        entry.idle_suggestion = suggestion.to_dict()
        entry.idle_trim_applied_seconds = trim
        entry.duration_seconds = compute_duration_seconds(entry.start_ts, end_ts, intervals, trim)
        await self.session.flush()
        await mark_financials_stale(self.session, entry.project_id)

        logger.info(
            "Timer %s stopped: %ss (suggested trim %ss, applied %ss)",
            entry.id,
            entry.duration_seconds,
            suggestion.suggested_trim_seconds,
            trim,
        )
        self.emitter.emit(
            TimerStopped(
                metadata=self._metadata(actor),
                time_entry_id=entry.id,
                user_id=entry.user_id,
                project_id=entry.project_id,
                duration_seconds=entry.duration_seconds,
                suggested_trim_seconds=suggestion.suggested_trim_seconds,
                trim_applied=bool(trim),
            )
        )
        return entry

    async def record_heartbeat(
        self, actor: Actor, entry_id: UUID, ts: datetime | None = None
    ) -> ActivityHeartbeat:
        """Record client activity for a running timer."""
        entry = await self.get_entry(actor, entry_id)
        if entry.state != TimerState.RUNNING:
            raise InvalidStateError(
                "Heartbeats are only accepted while the timer runs",
                current_state=entry.state,
            )
        beat_ts = ensure_utc(ts) if ts is not None else self._now()
        if beat_ts < entry.start_ts:
            raise ValidationError("Heartbeat precedes the start of the entry", field="ts")

        heartbeat = ActivityHeartbeat(user_id=actor.user_id, time_entry_id=entry.id, ts=beat_ts)
        self.session.add(heartbeat)
        await self.session.flush()
        return heartbeat

    # ------------------------------------------------------------------
    # Stopped-entry operations
    # ------------------------------------------------------------------

    def _ensure_editable(self, entry: TimeEntry) -> None:
        if entry.is_billed or entry.locked_at is not None:
            raise InvalidStateError(
                "Time entry is on an invoice and can no longer be changed",
                current_state="invoiced",
                time_entry_id=entry.id,
            )

    async def apply_idle_trim(self, actor: Actor, entry_id: UUID, trim_seconds: int) -> TimeEntry:
        """Commit an idle trim on a stopped entry, replacing any earlier trim."""
        entry = await self.get_entry(actor, entry_id)
        TimerStateMachine.next_state(entry.state, TimerAction.TRIM)
        self._ensure_editable(entry)

        intervals = _intervals(entry)
        untrimmed = raw_duration_seconds(entry.start_ts, entry.end_ts, intervals)  # type: ignore[arg-type]
        if trim_seconds < 0 or trim_seconds > untrimmed:
            raise ValidationError(
                f"trim_seconds must be between 0 and {untrimmed}", field="trim_seconds"
            )

        entry.idle_trim_applied_seconds = trim_seconds
        entry.duration_seconds = untrimmed - trim_seconds
        await self.session.flush()
        await mark_financials_stale(self.session, entry.project_id)

        logger.info("Idle trim of %ss applied to %s", trim_seconds, entry.id)
        self.emitter.emit(
            IdleTrimApplied(
                metadata=self._metadata(actor),
                time_entry_id=entry.id,
                user_id=entry.user_id,
                trim_seconds=trim_seconds,
                duration_seconds=entry.duration_seconds,
            )
        )
        return entry

    async def create_manual_entry(
        self,
        actor: Actor,
        project_id: UUID,
        start_ts: datetime,
        end_ts: datetime,
        task_id: UUID | None = None,
        billable: bool = True,
        notes: str | None = None,
        source: str | None = None,
        allow_overlap: bool = False,
    ) -> TimeEntry:
        """Create a finalized entry directly in the Stopped state."""
        start_ts = ensure_utc(start_ts)
        end_ts = ensure_utc(end_ts)
        if end_ts <= start_ts:
            raise ValidationError("end_ts must be after start_ts", field="end_ts")
        await get_project_in_org(self.session, actor.organization_id, project_id)

        if not allow_overlap:
            await self._check_overlap(actor.user_id, start_ts, end_ts)

        now = self._now()
        entry = TimeEntry(
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            project_id=project_id,
            task_id=task_id,
            description=notes,
            start_ts=start_ts,
            end_ts=end_ts,
            duration_seconds=compute_duration_seconds(start_ts, end_ts, []),
            billable=billable,
            source=_parse_source(source, TimeEntrySource.MANUAL),
            paused_intervals=[],
            idle_trim_applied_seconds=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        await self.session.flush()
        await mark_financials_stale(self.session, project_id)
        logger.info("Manual entry %s created for user %s", entry.id, actor.user_id)
        return entry

    async def _check_overlap(
        self,
        user_id: UUID,
        start_ts: datetime,
        end_ts: datetime,
        exclude_id: UUID | None = None,
    ) -> None:
        other = await self._find_overlap(user_id, start_ts, end_ts, exclude_id)
        if other is not None:
            raise ConflictError(
                "Time entry overlaps an existing entry",
                conflicting_entry_id=other.id,
            )

    async def update_entry(self, actor: Actor, entry_id: UUID, changes: dict[str, Any]) -> TimeEntry:
        """Apply a partial update.

        Time bounds may only change on stopped entries. Pauses outside the new
        bounds are clipped away; the committed trim must still fit.
        """
        entry = await self.get_entry(actor, entry_id)
        self._ensure_editable(entry)
        changes = dict(changes)
        allow_overlap = bool(changes.pop("allow_overlap", False))
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        old_project_id = entry.project_id
        if changes.get("project_id") is not None and changes["project_id"] != entry.project_id:
            await get_project_in_org(self.session, actor.organization_id, changes["project_id"])
            entry.project_id = changes["project_id"]
        if "task_id" in changes:
            entry.task_id = changes["task_id"]
        if changes.get("billable") is not None:
            entry.billable = changes["billable"]
        for text_field in ("notes", "description"):
            if text_field in changes:
                entry.description = changes[text_field]

        if changes.get("start_ts") is not None or changes.get("end_ts") is not None:
            if entry.is_open:
                raise InvalidStateError(
                    "Stop the timer before changing its time bounds",
                    current_state=entry.state,
                )
            new_start = ensure_utc(changes.get("start_ts") or entry.start_ts)
            new_end = ensure_utc(changes.get("end_ts") or entry.end_ts)
            if new_end <= new_start:
                raise ValidationError("end_ts must be after start_ts", field="end_ts")
            if not allow_overlap:
                await self._check_overlap(entry.user_id, new_start, new_end, exclude_id=entry.id)

            intervals = [
                Interval(max(i.start, new_start), min(i.end, new_end))  # type: ignore[type-var]
                for i in _intervals(entry)
                if i.end is not None and i.end > new_start and i.start < new_end
            ]
            untrimmed = raw_duration_seconds(new_start, new_end, intervals)
            if entry.idle_trim_applied_seconds > untrimmed:
                raise ValidationError(
                    "The applied idle trim exceeds the new duration; reduce the trim first",
                    field="end_ts",
                )
            entry.start_ts = new_start
            entry.end_ts = new_end
            _store_intervals(entry, intervals)

        if not entry.is_open:
            entry.duration_seconds = compute_duration_seconds(
                entry.start_ts, entry.end_ts, _intervals(entry), entry.idle_trim_applied_seconds  # type: ignore[arg-type]
            )
        await self.session.flush()
        await mark_financials_stale(self.session, old_project_id, entry.project_id)
        return entry

    async def delete_entry(self, actor: Actor, entry_id: UUID) -> None:
        """Delete an entry that is not on an invoice."""
        entry = await self.get_entry(actor, entry_id)
        self._ensure_editable(entry)
        project_id = entry.project_id

        await self.session.execute(
            delete(ActivityHeartbeat).where(ActivityHeartbeat.time_entry_id == entry.id)
        )
        await self.session.delete(entry)
        await self.session.flush()
        await mark_financials_stale(self.session, project_id)
        logger.info("Time entry %s deleted by user %s", entry_id, actor.user_id)

    # ------------------------------------------------------------------
    # Bulk adjust
    # ------------------------------------------------------------------

    @staticmethod
    def adjusted_duration(current: int, adjustment: AdjustmentType | str, value: Decimal) -> int:
        """Duration after applying a uniform adjustment (may be negative)."""
        kind = AdjustmentType(adjustment)
        if kind == AdjustmentType.SET_DURATION:
            result = value
        elif kind == AdjustmentType.MULTIPLY:
            result = Decimal(current) * value
        else:
            result = Decimal(current) + value
        return int(result.to_integral_value(rounding=ROUND_HALF_UP))

    async def bulk_adjust(
        self,
        actor: Actor,
        entry_ids: Sequence[UUID],
        adjustment_type: AdjustmentType | str,
        value: Decimal | float | int,
        reason: str | None = None,
    ) -> list[TimeEntry]:
        """Adjust the durations of several stopped entries, all or nothing.

        Raises:
            ValidationError: empty batch or unknown adjustment type
            BatchOperationError: at least one entry was rejected; nothing changed
        """
        if not entry_ids:
            raise ValidationError("entry_ids must not be empty", field="entry_ids")
        try:
            kind = AdjustmentType(adjustment_type)
        except ValueError:
            raise ValidationError(
                f"Unknown adjustment type '{adjustment_type}'", field="adjustment.type"
            ) from None
        amount = Decimal(str(value))

        ordered_ids = list(dict.fromkeys(entry_ids))
        failures: list[BatchItemFailure] = []
        planned: list[tuple[TimeEntry, int]] = []

        for entry_id in ordered_ids:
            try:
                entry = await self.get_entry(actor, entry_id)
                TimerStateMachine.next_state(entry.state, TimerAction.ADJUST)
                self._ensure_editable(entry)
                new_duration = self.adjusted_duration(entry.duration_seconds or 0, kind, amount)
                if new_duration < 0:
                    raise ValidationError(
                        f"Adjustment would make the duration negative ({new_duration}s)",
                        field="adjustment.value",
                    )
            except EngineError as e:
                failures.append(BatchItemFailure(entry_id, e.code, e.message))
                continue
            planned.append((entry, new_duration))

        if failures:
            logger.warning(
                "Bulk adjust by user %s rejected: %d of %d entries failed",
                actor.user_id,
                len(failures),
                len(ordered_ids),
            )
            raise BatchOperationError(failures)

        project_ids = set()
        for entry, new_duration in planned:
            intervals = _intervals(entry)
            new_end, kept = end_for_duration(
                entry.start_ts,
                entry.end_ts,  # type: ignore[arg-type]
                intervals,
                entry.idle_trim_applied_seconds,
                new_duration,
            )
            validate_paused_intervals(kept)
            entry.end_ts = new_end
            _store_intervals(entry, kept)
            entry.duration_seconds = compute_duration_seconds(
                entry.start_ts, new_end, kept, entry.idle_trim_applied_seconds
            )
            project_ids.add(entry.project_id)

        await self.session.flush()
        await mark_financials_stale(self.session, *project_ids)
        logger.info(
            "Bulk adjust (%s %s) applied to %d entries by user %s: %s",
            kind.value,
            amount,
            len(planned),
            actor.user_id,
            reason or "no reason given",
        )
        return [entry for entry, _ in planned]
