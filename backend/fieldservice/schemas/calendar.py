from pydantic import BaseModel


class CalendarEvent(BaseModel):
    """One calendar entry, either a persisted occurrence or a virtual projection.

    ``is_virtual`` is the tag: real events carry ``occurrence_id``, virtual
    events have ``occurrence_id = None`` and a synthetic ``id``.
    """

    id: str
    title: str
    start: str
    end: str
    status: str
    priority: str
    customer_name: str | None
    is_virtual: bool
    series_id: str
    occurrence_id: str | None = None
    service_type: str | None = None
    estimated_cost: float | None = None
    actual_cost: float | None = None
    assigned_to: str | None = None
    local_start: str | None = None


class CalendarSummary(BaseModel):
    total: int
    materialized: int
    virtual: int
    start: str
    end: str


class CalendarResponse(BaseModel):
    events: list[CalendarEvent]
    summary: CalendarSummary
