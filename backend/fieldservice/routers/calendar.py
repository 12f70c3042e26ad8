from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from fieldservice.config import settings
from fieldservice.database import get_db
from fieldservice.dependencies import http_error, require_tenant
from fieldservice.exceptions import SchedulingError
from fieldservice.schemas.calendar import CalendarResponse, CalendarSummary
from fieldservice.services.calendar_service import generate_calendar_ics, get_calendar
from fieldservice.utils.timezone import format_instant, get_zone, parse_instant

router = APIRouter(tags=["calendar"])


@router.get("/calendar", response_model=CalendarResponse)
async def calendar_view(start: str, end: str, tz: str | None = None,
                        tenant_id: str = Depends(require_tenant), db: Session = Depends(get_db)):
    display_timezone = tz or settings.display_timezone
    try:
        get_zone(display_timezone)
        range_start, range_end = parse_instant(start), parse_instant(end)
        events = get_calendar(db, tenant_id, range_start, range_end, display_timezone)
    except SchedulingError as exc:
        raise http_error(exc)

    virtual = sum(1 for e in events if e.is_virtual)
    return CalendarResponse(
        events=events,
        summary=CalendarSummary(
            total=len(events),
            materialized=len(events) - virtual,
            virtual=virtual,
            start=format_instant(range_start),
            end=format_instant(range_end),
        ),
    )


@router.get("/calendar.ics")
async def calendar_feed(start: str, end: str, tenant_id: str = Depends(require_tenant),
                        db: Session = Depends(get_db)):
    try:
        events = get_calendar(db, tenant_id, parse_instant(start), parse_instant(end))
    except SchedulingError as exc:
        raise http_error(exc)

    return Response(
        content=generate_calendar_ics(events),
        media_type="text/calendar",
        headers={"Content-Disposition": 'attachment; filename="jobs_calendar.ics"'},
    )
