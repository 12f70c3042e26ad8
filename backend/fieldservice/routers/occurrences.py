from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, joinedload

from fieldservice.database import get_db
from fieldservice.dependencies import http_error, require_tenant
from fieldservice.exceptions import OccurrenceNotFound, SchedulingError
from fieldservice.models.occurrence import JobOccurrence
from fieldservice.schemas.occurrence import (
    OccurrenceListResponse,
    OccurrenceResponse,
    OccurrenceUpdate,
)
from fieldservice.services.materializer import VALID_PRIORITIES
from fieldservice.utils.timezone import format_instant, parse_instant, utc_now

router = APIRouter(prefix="/occurrences", tags=["occurrences"])

VALID_STATUSES = {"scheduled", "in_progress", "completed", "cancelled"}


def _occurrence_to_response(occ: JobOccurrence) -> OccurrenceResponse:
    return OccurrenceResponse(
        id=occ.id,
        series_id=occ.series_id,
        title=occ.display_title,
        description=occ.display_description,
        start_at=occ.start_at,
        end_at=occ.end_at,
        status=occ.status,
        priority=occ.priority,
        assigned_to=occ.assigned_to,
        customer_name=occ.series.customer_name,
        estimated_cost=occ.display_estimated_cost,
        actual_cost=occ.actual_cost,
        completion_notes=occ.completion_notes,
        override_title=occ.override_title,
        override_description=occ.override_description,
        override_estimated_cost=occ.override_estimated_cost,
        created_at=occ.created_at,
        updated_at=occ.updated_at,
    )


def _get_occurrence(db: Session, tenant_id: str, occurrence_id: str) -> JobOccurrence:
    occ = (
        db.query(JobOccurrence)
        .filter(JobOccurrence.id == occurrence_id, JobOccurrence.tenant_id == tenant_id)
        .first()
    )
    if not occ:
        raise http_error(OccurrenceNotFound(occurrence_id))
    return occ


@router.get("", response_model=OccurrenceListResponse)
async def list_occurrences(
    start: str,
    end: str,
    status: str | None = None,
    series_id: str | None = None,
    limit: int = Query(500, ge=1, le=2000),
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    try:
        start_at, end_at = format_instant(parse_instant(start)), format_instant(parse_instant(end))
    except SchedulingError as exc:
        raise http_error(exc)

    query = (
        db.query(JobOccurrence)
        .options(joinedload(JobOccurrence.series))
        .filter(JobOccurrence.tenant_id == tenant_id)
        .filter(JobOccurrence.start_at >= start_at)
        .filter(JobOccurrence.start_at < end_at)
    )
    if status:
        query = query.filter(JobOccurrence.status == status)
    if series_id:
        query = query.filter(JobOccurrence.series_id == series_id)

    occurrences = query.order_by(JobOccurrence.start_at.asc()).limit(limit).all()
    return OccurrenceListResponse(
        occurrences=[_occurrence_to_response(o) for o in occurrences],
        total=len(occurrences),
    )


@router.get("/{occurrence_id}", response_model=OccurrenceResponse)
async def get_occurrence(occurrence_id: str, tenant_id: str = Depends(require_tenant),
                         db: Session = Depends(get_db)):
    return _occurrence_to_response(_get_occurrence(db, tenant_id, occurrence_id))


@router.patch("/{occurrence_id}", response_model=OccurrenceResponse)
async def update_occurrence(occurrence_id: str, req: OccurrenceUpdate,
                            tenant_id: str = Depends(require_tenant), db: Session = Depends(get_db)):
    occ = _get_occurrence(db, tenant_id, occurrence_id)
    update_data = req.model_dump(exclude_unset=True)

    if update_data.get("status") is not None and update_data["status"] not in VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Must be one of: {VALID_STATUSES}")
    if update_data.get("priority") is not None and update_data["priority"] not in VALID_PRIORITIES:
        raise HTTPException(status_code=400, detail=f"Invalid priority. Must be one of: {VALID_PRIORITIES}")
    for key in ("status", "priority"):
        if key in update_data and update_data[key] is None:
            del update_data[key]

    # Manual reschedule decouples this one occurrence from the rule.
    if "start_at" in update_data or "end_at" in update_data:
        if not update_data.get("start_at") or not update_data.get("end_at"):
            raise HTTPException(status_code=400, detail="start_at and end_at must be changed together")
        try:
            start = parse_instant(update_data["start_at"])
            end = parse_instant(update_data["end_at"])
        except SchedulingError as exc:
            raise http_error(exc)
        if end <= start:
            raise HTTPException(status_code=400, detail="end_at must be after start_at")
        clash = (
            db.query(JobOccurrence.id)
            .filter(JobOccurrence.series_id == occ.series_id)
            .filter(JobOccurrence.start_at == format_instant(start))
            .filter(JobOccurrence.id != occ.id)
            .first()
        )
        if clash:
            raise HTTPException(status_code=409, detail="Another occurrence of this series starts at that time")
        update_data["start_at"] = format_instant(start)
        update_data["end_at"] = format_instant(end)

    for key, value in update_data.items():
        setattr(occ, key, value)
    occ.updated_at = format_instant(utc_now())

    db.commit()
    db.refresh(occ)
    return _occurrence_to_response(occ)


@router.delete("/{occurrence_id}")
async def delete_occurrence(occurrence_id: str, tenant_id: str = Depends(require_tenant),
                            db: Session = Depends(get_db)):
    occ = _get_occurrence(db, tenant_id, occurrence_id)
    db.delete(occ)
    db.commit()
    return {"message": "Occurrence deleted"}
