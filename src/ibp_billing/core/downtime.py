"""Downtime interval merging.

Site-level and service-level outages frequently fire together, so raw event
durations must never be summed directly: events are clamped to the period,
sorted, and folded into non-overlapping intervals first.

Overlap predicate for a period [period_start, period_end):
    start < period_end and (end is None or end > period_start)
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from ibp_billing.core.models import ZERO, DowntimeEvent, DowntimeInterval, MergeResult


def overlaps(event: DowntimeEvent, period_start: datetime, period_end: datetime) -> bool:
    """True when the event intersects [period_start, period_end)."""
    return event.start < period_end and (event.end is None or event.end > period_start)


def clamp(
    event: DowntimeEvent,
    period_start: datetime,
    period_end: datetime,
    now: datetime | None = None,
) -> DowntimeInterval | None:
    """Clamp an event to the period.

    Open events end at the period end or at now, whichever is earlier.
    Returns None when nothing of positive length remains.
    """
    if not overlaps(event, period_start, period_end):
        return None

    start = max(event.start, period_start)
    if event.end is None:
        end = period_end if now is None else min(period_end, now)
    else:
        end = min(event.end, period_end)

    if end <= start:
        return None
    return DowntimeInterval(start=start, end=end)


def merge_intervals(intervals: Iterable[DowntimeInterval]) -> list[DowntimeInterval]:
    """Fold intervals into a sorted, non-overlapping list.

    Touching intervals ([a, b) and [b, c)) are merged into [a, c).
    """
    merged: list[DowntimeInterval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = DowntimeInterval(start=last.start, end=interval.end)
        else:
            merged.append(interval)
    return merged


def merge_downtime(
    events: Iterable[DowntimeEvent],
    period_start: datetime,
    period_end: datetime,
    now: datetime | None = None,
) -> MergeResult:
    """Clamp, merge and total the given events over a period.

    Args:
        events: Site and service events relevant to one (member, service) pair.
        period_start: Inclusive period start.
        period_end: Exclusive period end.
        now: Evaluation time used to close ongoing events.

    Returns:
        MergeResult with merged intervals and total downtime hours.
    """
    clamped = [
        interval
        for interval in (clamp(e, period_start, period_end, now) for e in events)
        if interval is not None
    ]
    merged = merge_intervals(clamped)
    total = sum((interval.hours for interval in merged), ZERO)
    return MergeResult(intervals=merged, total_down_hours=total)


def select_service_events(events: Iterable[DowntimeEvent], domains: Iterable[str]) -> list[DowntimeEvent]:
    """Events that affect a service: all site events plus its domain/endpoint events."""
    wanted = {d.lower() for d in domains}
    return [
        event
        for event in events
        if event.check_type.is_site or (event.domain is not None and event.domain.lower() in wanted)
    ]
