from pydantic import BaseModel


class OccurrenceUpdate(BaseModel):
    status: str | None = None
    priority: str | None = None
    assigned_to: str | None = None
    actual_cost: float | None = None
    completion_notes: str | None = None
    override_title: str | None = None
    override_description: str | None = None
    override_estimated_cost: float | None = None
    # Manual reschedule of this one occurrence; both or neither.
    start_at: str | None = None
    end_at: str | None = None


class OccurrenceResponse(BaseModel):
    id: str
    series_id: str
    title: str
    description: str | None
    start_at: str
    end_at: str
    status: str
    priority: str
    assigned_to: str | None
    customer_name: str | None
    estimated_cost: float | None
    actual_cost: float | None
    completion_notes: str | None
    override_title: str | None
    override_description: str | None
    override_estimated_cost: float | None
    created_at: str
    updated_at: str


class OccurrenceListResponse(BaseModel):
    occurrences: list[OccurrenceResponse]
    total: int
