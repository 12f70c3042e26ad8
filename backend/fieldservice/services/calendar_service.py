"""Unified calendar view: persisted occurrences merged with virtual projections.

Nothing here writes to the database. For each active series the part of the
requested range at or after its watermark is expanded on the fly; everything
before the watermark comes from ``job_occurrences``.
"""

import logging
from datetime import datetime, timedelta
from itertools import islice

from icalendar import Alarm, Calendar, Event
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from fieldservice.config import settings
from fieldservice.exceptions import InvalidRangeError
from fieldservice.models.occurrence import JobOccurrence
from fieldservice.models.series import JobSeries
from fieldservice.schemas.calendar import CalendarEvent
from fieldservice.services.materializer import series_anchor, series_until
from fieldservice.services.recurrence import expand
from fieldservice.utils.timezone import (
    add_minutes,
    ensure_utc,
    format_instant,
    from_absolute,
    parse_instant,
)

logger = logging.getLogger(__name__)


def virtual_event_id(series_id: str, start: datetime) -> str:
    # Real ids are UUID4 strings and can never take this shape.
    return f"virtual-{series_id}-{int(start.timestamp())}"


def _local_start(start: str, display_timezone: str | None) -> str | None:
    if not display_timezone:
        return None
    local_date, local_time = from_absolute(parse_instant(start), display_timezone)
    return f"{local_date}T{local_time}"


def _occurrence_to_event(occ: JobOccurrence, display_timezone: str | None) -> CalendarEvent:
    series = occ.series
    return CalendarEvent(
        id=occ.id,
        title=occ.display_title,
        start=occ.start_at,
        end=occ.end_at,
        status=occ.status,
        priority=occ.priority,
        customer_name=series.customer_name,
        is_virtual=False,
        series_id=occ.series_id,
        occurrence_id=occ.id,
        service_type=series.service_type,
        estimated_cost=occ.display_estimated_cost,
        actual_cost=occ.actual_cost,
        assigned_to=occ.assigned_to,
        local_start=_local_start(occ.start_at, display_timezone),
    )


def _virtual_events(series: JobSeries, range_start: datetime, range_end: datetime,
                    limit: int, display_timezone: str | None) -> list[CalendarEvent]:
    watermark = parse_instant(series.last_generated_until) if series.last_generated_until else None
    gap_start = max(watermark, range_start) if watermark else range_start
    gap_end = range_end
    until = series_until(series)
    if until is not None and until < gap_end:
        gap_end = until
    if gap_end <= gap_start:
        return []

    anchor = series_anchor(series)
    events = []
    instants = expand(series.rrule, anchor, gap_start, gap_end, series.timezone)
    for instant in islice(instants, limit):
        start = format_instant(instant)
        events.append(CalendarEvent(
            id=virtual_event_id(series.id, instant),
            title=series.title,
            start=start,
            end=format_instant(add_minutes(instant, series.duration_minutes)),
            status="scheduled",
            priority=series.priority,
            customer_name=series.customer_name,
            is_virtual=True,
            series_id=series.id,
            service_type=series.service_type,
            estimated_cost=series.estimated_cost,
            assigned_to=series.assigned_to,
            local_start=_local_start(start, display_timezone),
        ))
    return events


def get_calendar(db: Session, tenant_id: str, range_start: datetime, range_end: datetime,
                 display_timezone: str | None = None) -> list[CalendarEvent]:
    """Every real or virtual occurrence of the tenant starting in ``[range_start, range_end)``."""
    start = ensure_utc(range_start)
    end = ensure_utc(range_end)
    if end <= start:
        raise InvalidRangeError("Calendar range end must be after its start")
    if end - start > timedelta(days=settings.max_calendar_range_days):
        raise InvalidRangeError(
            f"Calendar range may span at most {settings.max_calendar_range_days} days"
        )
    start_str, end_str = format_instant(start), format_instant(end)

    # Series before occurrences: a materialization committing in between can
    # only add real rows the virtual pass already covers, and those are
    # deduplicated below.
    candidates = (
        db.query(JobSeries)
        .filter(JobSeries.tenant_id == tenant_id)
        .filter(JobSeries.active.is_(True))
        .filter(or_(JobSeries.last_generated_until.is_(None), JobSeries.last_generated_until < end_str))
        .all()
    )
    rows = (
        db.query(JobOccurrence)
        .options(joinedload(JobOccurrence.series))
        .filter(JobOccurrence.tenant_id == tenant_id)
        .filter(JobOccurrence.start_at >= start_str)
        .filter(JobOccurrence.start_at < end_str)
        .order_by(JobOccurrence.start_at.asc())
        .all()
    )

    real = [_occurrence_to_event(occ, display_timezone) for occ in rows]
    taken = {(event.series_id, event.start) for event in real}

    virtual = []
    for series in candidates:
        for event in _virtual_events(series, start, end, settings.max_virtual_per_series, display_timezone):
            if (event.series_id, event.start) not in taken:
                virtual.append(event)

    logger.debug(
        "Calendar for tenant %s %s..%s: %d materialized, %d virtual",
        tenant_id, start_str, end_str, len(real), len(virtual),
    )
    return sorted(real + virtual, key=lambda e: (e.start, e.is_virtual, e.id))


def generate_calendar_ics(events: list[CalendarEvent]) -> bytes:
    cal = Calendar()
    cal.add("prodid", "-//FieldService Scheduler//EN")
    cal.add("version", "2.0")

    for item in events:
        event = Event()
        summary = item.title
        if item.customer_name:
            summary += f" for {item.customer_name}"
        event.add("uid", f"{item.id}@fieldservice")
        event.add("summary", summary)
        event.add("dtstart", parse_instant(item.start))
        event.add("dtend", parse_instant(item.end))
        event.add("status", "CANCELLED" if item.status == "cancelled" else "CONFIRMED")

        description_parts = [f"Status: {item.status}", f"Priority: {item.priority}"]
        if item.service_type:
            description_parts.append(f"Service: {item.service_type}")
        if item.estimated_cost is not None:
            description_parts.append(f"Estimated cost: {item.estimated_cost:.2f}")
        event.add("description", "\n".join(description_parts))
        if item.is_virtual:
            event.add("x-fieldservice-virtual", "TRUE")

        if item.status == "scheduled":
            alarm = Alarm()
            alarm.add("action", "DISPLAY")
            alarm.add("trigger", -timedelta(hours=1))
            alarm.add("description", f"Upcoming job: {item.title}")
            event.add_component(alarm)

        cal.add_component(event)
    return cal.to_ical()
