"""Duration arithmetic and idle-time detection for time entries.

Pure functions over intervals; nothing here touches the database.

Idle heuristic (heartbeat gaps): inside the entry's active spans the entry
start, every heartbeat and the entry end form a timeline. A gap longer than
``threshold_seconds`` contributes ``[previous + threshold, next)`` as idle.
Without any heartbeat there is no server evidence and no server idle.
Client-reported idle intervals are clipped to the active spans and merged
with the server's.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from billing_engine.calculators.types import ONE_SECOND, IdleSuggestion, Interval


def total_length(intervals: Iterable[Interval], until: datetime | None = None) -> timedelta:
    """Exact summed length; an open interval is measured up to ``until``."""
    return sum((interval.length(until) for interval in intervals), timedelta(0))


def raw_duration_seconds(
    start_ts: datetime, end_ts: datetime, paused: Sequence[Interval]
) -> int:
    """Wall span minus paused time, before any idle trim.

    Sub-second parts are kept until the final floor to whole seconds.
    """
    active = (end_ts - start_ts) - total_length(paused, end_ts)
    return max(0, active // ONE_SECOND)


def compute_duration_seconds(
    start_ts: datetime,
    end_ts: datetime,
    paused: Sequence[Interval],
    idle_trim_seconds: int = 0,
) -> int:
    """duration = (end - start) - paused - idle trim, floored at zero."""
    return max(0, raw_duration_seconds(start_ts, end_ts, paused) - idle_trim_seconds)


def end_for_duration(
    start_ts: datetime,
    end_ts: datetime,
    paused: Sequence[Interval],
    idle_trim_seconds: int,
    duration_seconds: int,
) -> tuple[datetime, list[Interval]]:
    """Move the end of a stopped entry so it yields ``duration_seconds``.

    Active time is consumed span by span; pauses that would start after the
    new end are dropped. Returns the new end and the pauses that remain.
    """
    remaining = timedelta(seconds=duration_seconds + idle_trim_seconds)
    spans = active_spans(start_ts, end_ts, paused)
    new_end: datetime | None = None
    for span in spans:
        length = span.length()
        if remaining <= length:
            new_end = span.start + remaining
            break
        remaining -= length
    if new_end is None:
        # every pause ends by end_ts, so growth past it is all active time
        new_end = end_ts + remaining

    kept = [p for p in paused if p.end is not None and p.end <= new_end]
    return new_end, kept


def validate_paused_intervals(intervals: Sequence[Interval]) -> None:
    """Raise ValueError unless intervals are ordered, disjoint, with one open at most (last)."""
    for index, interval in enumerate(intervals):
        if interval.end is not None and interval.end < interval.start:
            raise ValueError("Paused interval ends before it starts")
        if interval.is_open and index != len(intervals) - 1:
            raise ValueError("Only the last paused interval may be open")
        if index > 0:
            previous = intervals[index - 1]
            if previous.end is None or interval.start < previous.end:
                raise ValueError("Paused intervals overlap or are out of order")


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Union of closed intervals as a sorted, disjoint list."""
    closed = sorted(
        (i for i in intervals if i.end is not None and i.end > i.start),
        key=lambda i: i.start,
    )
    merged: list[Interval] = []
    for interval in closed:
        if merged and interval.start <= merged[-1].end:  # type: ignore[operator]
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))  # type: ignore[type-var]
        else:
            merged.append(interval)
    return merged


def active_spans(
    start_ts: datetime, end_ts: datetime, paused: Sequence[Interval]
) -> list[Interval]:
    """Complement of the paused intervals within [start_ts, end_ts)."""
    spans: list[Interval] = []
    cursor = start_ts
    for pause in merge_intervals(
        Interval(p.start, p.end if p.end is not None else end_ts) for p in paused
    ):
        pause_start = max(pause.start, start_ts)
        pause_end = min(pause.end, end_ts)  # type: ignore[type-var]
        if pause_start > cursor:
            spans.append(Interval(cursor, pause_start))
        cursor = max(cursor, pause_end)
    if end_ts > cursor:
        spans.append(Interval(cursor, end_ts))
    return spans


def clip_to_spans(intervals: Iterable[Interval], spans: Sequence[Interval]) -> list[Interval]:
    """Intersect each interval with the active spans."""
    clipped: list[Interval] = []
    for interval in intervals:
        if interval.end is None:
            continue
        for span in spans:
            start = max(interval.start, span.start)
            end = min(interval.end, span.end)  # type: ignore[type-var]
            if end > start:
                clipped.append(Interval(start, end))
    return clipped


def heartbeat_idle_intervals(
    spans: Sequence[Interval],
    heartbeats: Iterable[datetime],
    threshold_seconds: int,
) -> list[Interval]:
    """Idle intervals implied by heartbeat gaps longer than the threshold."""
    beats = sorted(heartbeats)
    if not beats:
        return []

    threshold = timedelta(seconds=threshold_seconds)
    idle: list[Interval] = []
    for span in spans:
        points = [span.start]
        points.extend(b for b in beats if span.start < b < span.end)  # type: ignore[operator]
        points.append(span.end)  # type: ignore[arg-type]
        for previous, current in zip(points, points[1:]):
            if current - previous > threshold:
                idle.append(Interval(previous + threshold, current))
    return idle


def suggest_idle_trim(
    start_ts: datetime,
    end_ts: datetime,
    paused: Sequence[Interval],
    heartbeats: Iterable[datetime],
    client_idle_intervals: Iterable[Interval],
    threshold_seconds: int,
    min_trim_seconds: int,
) -> IdleSuggestion:
    """Combine client-reported and heartbeat-detected idle time into a suggestion."""
    spans = active_spans(start_ts, end_ts, paused)
    active_seconds = total_length(spans) // ONE_SECOND

    candidates = clip_to_spans(client_idle_intervals, spans)
    candidates.extend(heartbeat_idle_intervals(spans, heartbeats, threshold_seconds))
    idle_seconds = total_length(merge_intervals(candidates)) // ONE_SECOND
    idle_seconds = min(idle_seconds, active_seconds)

    if active_seconds > 0:
        percent = (Decimal(idle_seconds) * 100 / Decimal(active_seconds)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    else:
        percent = Decimal("0")

    return IdleSuggestion(
        idle_seconds=idle_seconds,
        idle_percent=float(percent),
        suggested_trim_seconds=idle_seconds if idle_seconds >= min_trim_seconds else 0,
    )


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test."""
    return a_start < b_end and b_start < a_end
