from pydantic import BaseModel, Field


class SeriesCreate(BaseModel):
    title: str
    description: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    priority: str = "medium"
    estimated_cost: float | None = None
    assigned_to: str | None = None
    service_type: str | None = None
    # None means a one-off job
    rrule: str | None = None
    start_date: str
    local_start_time: str
    duration_minutes: int = Field(60, gt=0)
    timezone: str
    until_date: str | None = None


class SeriesUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    priority: str | None = None
    estimated_cost: float | None = None
    assigned_to: str | None = None
    service_type: str | None = None
    active: bool | None = None


class SeriesReschedule(BaseModel):
    rrule: str | None = None
    start_date: str
    local_start_time: str
    duration_minutes: int = Field(..., gt=0)
    timezone: str
    until_date: str | None = None


class HorizonExtendRequest(BaseModel):
    horizon: str | None = None
    horizon_days: int | None = Field(None, ge=1)
    max_occurrences: int | None = Field(None, ge=1)


class ExtendAllRequest(BaseModel):
    horizon_days: int = Field(90, ge=1)
    max_occurrences: int | None = Field(None, ge=1)


class MaterializationReport(BaseModel):
    created_count: int
    skipped_count: int = 0
    last_generated_until: str | None
    truncated: bool = False
    warning: str | None = None


class SeriesResponse(BaseModel):
    id: str
    title: str
    description: str | None
    customer_id: str | None
    customer_name: str | None
    priority: str
    estimated_cost: float | None
    assigned_to: str | None
    service_type: str | None
    is_recurring: bool
    rrule: str
    start_date: str
    local_start_time: str
    duration_minutes: int
    timezone: str
    until_date: str | None
    last_generated_until: str | None
    active: bool
    created_at: str
    updated_at: str
    total_occurrences: int = 0
    completed_occurrences: int = 0
    next_occurrence_at: str | None = None


class SeriesCreateResponse(SeriesResponse):
    materialization: MaterializationReport


class SeriesUpdateResponse(SeriesResponse):
    propagated_count: int = 0
    cancelled_count: int = 0
    materialization: MaterializationReport | None = None


class SeriesListResponse(BaseModel):
    series: list[SeriesResponse]
    total: int


class RescheduleResponse(BaseModel):
    deleted_count: int
    created_count: int
    skipped_count: int = 0
    last_generated_until: str | None
    truncated: bool = False


class ExtendAllItem(BaseModel):
    series_id: str
    created_count: int = 0
    error: str | None = None


class ExtendAllResponse(BaseModel):
    succeeded: int
    failed: int
    results: list[ExtendAllItem]
