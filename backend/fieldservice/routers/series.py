from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from fieldservice.database import get_db
from fieldservice.dependencies import http_error, require_tenant
from fieldservice.exceptions import SchedulingError
from fieldservice.models.occurrence import JobOccurrence
from fieldservice.models.series import JobSeries
from fieldservice.schemas.series import (
    ExtendAllItem,
    ExtendAllRequest,
    ExtendAllResponse,
    HorizonExtendRequest,
    MaterializationReport,
    RescheduleResponse,
    SeriesCreate,
    SeriesCreateResponse,
    SeriesListResponse,
    SeriesReschedule,
    SeriesResponse,
    SeriesUpdate,
    SeriesUpdateResponse,
)
from fieldservice.services import materializer
from fieldservice.utils.timezone import format_instant, parse_instant, utc_now

router = APIRouter(prefix="/series", tags=["series"])


def _report(result: materializer.MaterializeResult) -> MaterializationReport:
    return MaterializationReport(
        created_count=result.created_count,
        skipped_count=result.skipped_count,
        last_generated_until=result.last_generated_until,
        truncated=result.truncated,
        warning=result.warning,
    )


def _series_fields(series: JobSeries, db: Session) -> dict:
    total = db.query(func.count(JobOccurrence.id)).filter(JobOccurrence.series_id == series.id).scalar()
    completed = (
        db.query(func.count(JobOccurrence.id))
        .filter(JobOccurrence.series_id == series.id, JobOccurrence.status == "completed")
        .scalar()
    )
    next_start = (
        db.query(func.min(JobOccurrence.start_at))
        .filter(JobOccurrence.series_id == series.id)
        .filter(JobOccurrence.status == "scheduled")
        .filter(JobOccurrence.start_at >= format_instant(utc_now()))
        .scalar()
    )
    return dict(
        id=series.id,
        title=series.title,
        description=series.description,
        customer_id=series.customer_id,
        customer_name=series.customer_name,
        priority=series.priority,
        estimated_cost=series.estimated_cost,
        assigned_to=series.assigned_to,
        service_type=series.service_type,
        is_recurring=series.is_recurring,
        rrule=series.rrule,
        start_date=series.start_date,
        local_start_time=series.local_start_time,
        duration_minutes=series.duration_minutes,
        timezone=series.timezone,
        until_date=series.until_date,
        last_generated_until=series.last_generated_until,
        active=series.active,
        created_at=series.created_at,
        updated_at=series.updated_at,
        total_occurrences=total,
        completed_occurrences=completed,
        next_occurrence_at=next_start,
    )


def _series_to_response(series: JobSeries, db: Session) -> SeriesResponse:
    return SeriesResponse(**_series_fields(series, db))


@router.post("", response_model=SeriesCreateResponse, status_code=201)
async def create_series(req: SeriesCreate, tenant_id: str = Depends(require_tenant),
                        db: Session = Depends(get_db)):
    try:
        series, result = materializer.create_series(db, tenant_id, req)
    except SchedulingError as exc:
        raise http_error(exc)
    return SeriesCreateResponse(**_series_fields(series, db), materialization=_report(result))


@router.get("", response_model=SeriesListResponse)
async def list_series(active: bool | None = None, tenant_id: str = Depends(require_tenant),
                      db: Session = Depends(get_db)):
    query = db.query(JobSeries).filter(JobSeries.tenant_id == tenant_id)
    if active is not None:
        query = query.filter(JobSeries.active.is_(active))
    series = query.order_by(JobSeries.created_at.desc()).all()
    return SeriesListResponse(
        series=[_series_to_response(s, db) for s in series],
        total=len(series),
    )


@router.post("/extend-all", response_model=ExtendAllResponse)
async def extend_all(req: ExtendAllRequest, tenant_id: str = Depends(require_tenant),
                     db: Session = Depends(get_db)):
    horizon = utc_now() + timedelta(days=req.horizon_days)
    outcomes = materializer.extend_all(db, tenant_id, horizon, req.max_occurrences)
    results = [
        ExtendAllItem(
            series_id=series_id,
            created_count=result.created_count if result else 0,
            error=error,
        )
        for series_id, result, error in outcomes
    ]
    failed = sum(1 for item in results if item.error)
    return ExtendAllResponse(succeeded=len(results) - failed, failed=failed, results=results)


@router.get("/{series_id}", response_model=SeriesResponse)
async def get_series(series_id: str, tenant_id: str = Depends(require_tenant),
                     db: Session = Depends(get_db)):
    try:
        series = materializer.get_series(db, tenant_id, series_id)
    except SchedulingError as exc:
        raise http_error(exc)
    return _series_to_response(series, db)


@router.patch("/{series_id}", response_model=SeriesUpdateResponse)
async def update_series(series_id: str, req: SeriesUpdate, tenant_id: str = Depends(require_tenant),
                        db: Session = Depends(get_db)):
    try:
        series, propagated, cancelled, result = materializer.update_series(db, tenant_id, series_id, req)
    except SchedulingError as exc:
        raise http_error(exc)
    return SeriesUpdateResponse(
        **_series_fields(series, db),
        propagated_count=propagated,
        cancelled_count=cancelled,
        materialization=_report(result) if result else None,
    )


@router.post("/{series_id}/reschedule", response_model=RescheduleResponse)
async def reschedule_series(series_id: str, req: SeriesReschedule,
                            tenant_id: str = Depends(require_tenant), db: Session = Depends(get_db)):
    try:
        deleted, result = materializer.reschedule_series(db, tenant_id, series_id, req)
    except SchedulingError as exc:
        raise http_error(exc)
    return RescheduleResponse(
        deleted_count=deleted,
        created_count=result.created_count,
        skipped_count=result.skipped_count,
        last_generated_until=result.last_generated_until,
        truncated=result.truncated,
    )


@router.post("/{series_id}/extend", response_model=MaterializationReport)
async def extend_horizon(series_id: str, req: HorizonExtendRequest,
                         tenant_id: str = Depends(require_tenant), db: Session = Depends(get_db)):
    if (req.horizon is None) == (req.horizon_days is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of horizon or horizon_days")
    try:
        if req.horizon is not None:
            horizon = parse_instant(req.horizon)
        else:
            horizon = utc_now() + timedelta(days=req.horizon_days)
        result = materializer.extend_horizon(db, tenant_id, series_id, horizon, req.max_occurrences)
    except SchedulingError as exc:
        raise http_error(exc)
    return _report(result)


@router.delete("/{series_id}")
async def delete_series(series_id: str, tenant_id: str = Depends(require_tenant),
                        db: Session = Depends(get_db)):
    try:
        materializer.delete_series(db, tenant_id, series_id)
    except SchedulingError as exc:
        raise http_error(exc)
    return {"message": "Job series deleted"}
