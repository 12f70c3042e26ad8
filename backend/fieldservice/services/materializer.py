"""Persisting job occurrences for a series up to a horizon.

The series watermark ``last_generated_until`` is an exclusive bound: every
rule instant before it exists as a ``job_occurrences`` row and none after it
does. A materialization call fills ``[max(watermark, anchor), gap_end)`` and
moves the watermark to ``gap_end`` in the same transaction as the inserts.

The watermark write is an optimistic ``UPDATE ... WHERE version = ?`` through
SQLAlchemy's ``version_id_col``; a concurrent writer makes it fail with
``StaleDataError``, which is retried once before surfacing as
``ConcurrentMaterializationConflict``.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import islice

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from fieldservice.config import settings
from fieldservice.exceptions import (
    ConcurrentMaterializationConflict,
    InvalidRangeError,
    SchedulingError,
    SeriesNotFound,
)
from fieldservice.models.occurrence import JobOccurrence
from fieldservice.models.series import JobSeries
from fieldservice.schemas.series import SeriesCreate, SeriesReschedule, SeriesUpdate
from fieldservice.services.recurrence import (
    SINGLE_OCCURRENCE_RULE,
    expand,
    is_single_occurrence,
    normalize_rule,
    parse_rule,
)
from fieldservice.utils.timezone import (
    add_minutes,
    ensure_utc,
    format_instant,
    get_zone,
    normalize_civil_time,
    parse_civil_date,
    parse_instant,
    start_of_local_day,
    to_absolute,
    utc_now,
)

logger = logging.getLogger(__name__)

VALID_PRIORITIES = {"low", "medium", "high", "urgent"}
PROPAGATED_FIELDS = {"assigned_to", "priority", "estimated_cost"}


@dataclass
class MaterializeResult:
    series_id: str
    created_count: int = 0
    skipped_count: int = 0
    last_generated_until: str | None = None
    # The requested horizon was not reached (max occurrences or range ceiling).
    truncated: bool = False

    @property
    def warning(self) -> str | None:
        return "horizon_exceeded" if self.truncated else None


def series_anchor(series: JobSeries) -> datetime:
    return to_absolute(series.start_date, series.local_start_time, series.timezone)


def series_until(series: JobSeries) -> datetime | None:
    if not series.until_date:
        return None
    return start_of_local_day(series.until_date, series.timezone)


def default_horizon(anchor: datetime, now: datetime) -> datetime:
    return max(anchor, now) + relativedelta(months=settings.default_horizon_months)


def get_series(db: Session, tenant_id: str, series_id: str, for_update: bool = False) -> JobSeries:
    query = db.query(JobSeries).filter(JobSeries.id == series_id, JobSeries.tenant_id == tenant_id)
    if for_update:
        query = query.with_for_update()
    series = query.first()
    if not series:
        raise SeriesNotFound(series_id)
    return series


def _validate_timing(rrule_text: str | None, start_date: str, local_start_time: str,
                     timezone_name: str, until_date: str | None) -> tuple[str, str, datetime]:
    """Check a series definition and return (normalized rule, HH:MM:SS time, anchor)."""
    get_zone(timezone_name)
    local_time = normalize_civil_time(local_start_time)
    anchor = to_absolute(start_date, local_time, timezone_name)
    rule_text = normalize_rule(rrule_text or SINGLE_OCCURRENCE_RULE, timezone_name)
    parse_rule(rule_text, anchor, timezone_name)
    if until_date is not None and parse_civil_date(until_date) <= parse_civil_date(start_date):
        raise InvalidRangeError("until_date must be after start_date")
    return rule_text, local_time, anchor


def _build_occurrence(series: JobSeries, start: datetime, now_str: str) -> JobOccurrence:
    return JobOccurrence(
        id=str(uuid.uuid4()),
        series_id=series.id,
        tenant_id=series.tenant_id,
        start_at=format_instant(start),
        end_at=format_instant(add_minutes(start, series.duration_minutes)),
        status="scheduled",
        priority=series.priority or "medium",
        assigned_to=series.assigned_to,
        created_at=now_str,
        updated_at=now_str,
    )


def _materialize_in_session(db: Session, series: JobSeries, horizon: datetime,
                            max_occurrences: int, now: datetime) -> MaterializeResult:
    """Fill the series gap up to ``horizon``. Flushes but never commits."""
    result = MaterializeResult(series_id=series.id, last_generated_until=series.last_generated_until)
    if not series.active:
        logger.info("Series %s is inactive, skipping materialization", series.id)
        return result

    anchor = series_anchor(series)
    watermark = parse_instant(series.last_generated_until) if series.last_generated_until else None
    gap_start = max(watermark, anchor) if watermark else anchor

    requested_end = ensure_utc(horizon)
    until = series_until(series)
    if until is not None and until < requested_end:
        requested_end = until
    gap_end = min(requested_end, gap_start + timedelta(days=settings.max_horizon_days))
    if gap_end <= gap_start:
        return result
    result.truncated = gap_end < requested_end

    instants = list(islice(
        expand(series.rrule, anchor, gap_start, gap_end, series.timezone),
        max_occurrences + 1,
    ))
    if len(instants) > max_occurrences:
        # Watermark stops at the first instant left out, keeping it exclusive.
        new_watermark = instants[max_occurrences]
        instants = instants[:max_occurrences]
        result.truncated = True
    else:
        new_watermark = gap_end

    occupied = {
        row.start_at
        for row in db.query(JobOccurrence.start_at)
        .filter(JobOccurrence.series_id == series.id)
        .filter(JobOccurrence.start_at >= format_instant(gap_start))
        .filter(JobOccurrence.start_at < format_instant(new_watermark))
    }

    now_str = format_instant(now)
    series.last_generated_until = format_instant(new_watermark)
    series.updated_at = now_str
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrentMaterializationConflict(series.id) from exc

    for instant in instants:
        if format_instant(instant) in occupied:
            result.skipped_count += 1
            continue
        db.add(_build_occurrence(series, instant, now_str))
        result.created_count += 1
    db.flush()

    result.last_generated_until = series.last_generated_until
    if result.truncated:
        logger.warning(
            "Materialization of series %s stopped at %s before requested horizon %s",
            series.id, result.last_generated_until, format_instant(horizon),
        )
    return result


def _run_serialized(db: Session, series_id: str, operation):
    """Run ``operation()`` in a transaction, retrying once on a watermark conflict."""
    for attempt in (1, 2):
        try:
            outcome = operation()
            db.commit()
            return outcome
        except ConcurrentMaterializationConflict:
            db.rollback()
            if attempt == 2:
                logger.error("Series %s still conflicting after retry", series_id)
                raise
            logger.warning("Watermark conflict on series %s, retrying", series_id)
        except Exception:
            db.rollback()
            raise


def materialize(db: Session, tenant_id: str, series_id: str, horizon: datetime,
                max_occurrences: int | None = None, now: datetime | None = None) -> MaterializeResult:
    cap = settings.max_occurrences_per_run if max_occurrences is None else max_occurrences
    now = ensure_utc(now) if now else utc_now()

    def operation():
        series = get_series(db, tenant_id, series_id, for_update=True)
        return _materialize_in_session(db, series, horizon, cap, now)

    result = _run_serialized(db, series_id, operation)
    logger.info(
        "Materialized series %s: created=%d skipped=%d watermark=%s",
        series_id, result.created_count, result.skipped_count, result.last_generated_until,
    )
    return result


def create_series(db: Session, tenant_id: str, req: SeriesCreate,
                  now: datetime | None = None) -> tuple[JobSeries, MaterializeResult]:
    """Insert one series row and materialize its first occurrences in one transaction."""
    if req.priority not in VALID_PRIORITIES:
        raise InvalidRangeError(f"Invalid priority {req.priority!r}")
    now = ensure_utc(now) if now else utc_now()
    now_str = format_instant(now)
    rule_text, local_time, anchor = _validate_timing(
        req.rrule, req.start_date, req.local_start_time, req.timezone, req.until_date,
    )
    recurring = not is_single_occurrence(rule_text)

    series = JobSeries(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        title=req.title,
        description=req.description,
        customer_id=req.customer_id,
        customer_name=req.customer_name,
        priority=req.priority,
        estimated_cost=req.estimated_cost,
        assigned_to=req.assigned_to,
        service_type=req.service_type,
        is_recurring=recurring,
        rrule=rule_text,
        start_date=req.start_date,
        local_start_time=local_time,
        duration_minutes=req.duration_minutes,
        timezone=req.timezone,
        until_date=req.until_date,
        last_generated_until=None,
        active=True,
        created_at=now_str,
        updated_at=now_str,
    )
    if recurring:
        horizon = default_horizon(anchor, now)
    else:
        horizon = add_minutes(anchor, req.duration_minutes)

    def operation():
        db.add(series)
        db.flush()
        return _materialize_in_session(db, series, horizon, settings.max_occurrences_per_run, now)

    result = _run_serialized(db, series.id, operation)
    db.refresh(series)
    logger.info("Created series %s (recurring=%s) with %d occurrences",
                series.id, recurring, result.created_count)
    return series, result


def extend_horizon(db: Session, tenant_id: str, series_id: str, horizon: datetime,
                   max_occurrences: int | None = None, now: datetime | None = None) -> MaterializeResult:
    return materialize(db, tenant_id, series_id, horizon, max_occurrences, now)


def extend_all(db: Session, tenant_id: str, horizon: datetime,
               max_occurrences: int | None = None,
               now: datetime | None = None) -> list[tuple[str, MaterializeResult | None, str | None]]:
    """Extend every active series of the tenant; one failing series does not stop the batch."""
    series_ids = [
        row.id for row in db.query(JobSeries.id)
        .filter(JobSeries.tenant_id == tenant_id, JobSeries.active.is_(True))
        .order_by(JobSeries.created_at)
    ]
    outcomes = []
    for series_id in series_ids:
        try:
            result = materialize(db, tenant_id, series_id, horizon, max_occurrences, now)
            outcomes.append((series_id, result, None))
        except SchedulingError as exc:
            logger.error("Horizon extension failed for series %s: %s", series_id, exc)
            outcomes.append((series_id, None, str(exc)))
    return outcomes


def reschedule_series(db: Session, tenant_id: str, series_id: str, req: SeriesReschedule,
                      now: datetime | None = None) -> tuple[int, MaterializeResult]:
    """Replace the series timing and regenerate its future occurrences.

    Future (``start_at >= now``) non-completed occurrences are deleted, the
    watermark is reset, and the new rule is materialized, all in a single
    transaction so readers see either the old or the new schedule.
    """
    now = ensure_utc(now) if now else utc_now()
    cutoff = format_instant(now)
    rule_text, local_time, anchor = _validate_timing(
        req.rrule, req.start_date, req.local_start_time, req.timezone, req.until_date,
    )
    deleted = {"count": 0}

    def operation():
        series = get_series(db, tenant_id, series_id, for_update=True)
        deleted["count"] = (
            db.query(JobOccurrence)
            .filter(JobOccurrence.series_id == series.id)
            .filter(JobOccurrence.start_at >= cutoff)
            .filter(JobOccurrence.status != "completed")
            .delete(synchronize_session=False)
        )
        series.rrule = rule_text
        series.is_recurring = not is_single_occurrence(rule_text)
        series.start_date = req.start_date
        series.local_start_time = local_time
        series.duration_minutes = req.duration_minutes
        series.timezone = req.timezone
        series.until_date = req.until_date
        # Past instants of the new rule are not back-filled.
        series.last_generated_until = cutoff if anchor < now else None
        series.updated_at = cutoff
        try:
            db.flush()
        except StaleDataError as exc:
            raise ConcurrentMaterializationConflict(series.id) from exc

        if series.is_recurring:
            horizon = default_horizon(anchor, now)
        else:
            horizon = add_minutes(anchor, req.duration_minutes)
        return _materialize_in_session(db, series, horizon, settings.max_occurrences_per_run, now)

    result = _run_serialized(db, series_id, operation)
    logger.info("Rescheduled series %s: deleted=%d created=%d",
                series_id, deleted["count"], result.created_count)
    return deleted["count"], result


def deactivate_series(db: Session, series: JobSeries, now: datetime) -> int:
    """Mark the series inactive and cancel, not delete, its future open occurrences."""
    series.active = False
    return (
        db.query(JobOccurrence)
        .filter(JobOccurrence.series_id == series.id)
        .filter(JobOccurrence.start_at >= format_instant(now))
        .filter(JobOccurrence.status.notin_(["completed", "cancelled"]))
        .update(
            {JobOccurrence.status: "cancelled", JobOccurrence.updated_at: format_instant(now)},
            synchronize_session=False,
        )
    )


def propagate_fields(db: Session, series: JobSeries, changes: dict, now: datetime) -> int:
    """Copy assignment, priority and cost edits onto future scheduled occurrences."""
    values = {}
    if "assigned_to" in changes:
        values[JobOccurrence.assigned_to] = changes["assigned_to"]
    if "priority" in changes:
        values[JobOccurrence.priority] = changes["priority"]
    if "estimated_cost" in changes:
        values[JobOccurrence.override_estimated_cost] = changes["estimated_cost"]
    if not values:
        return 0
    values[JobOccurrence.updated_at] = format_instant(now)
    return (
        db.query(JobOccurrence)
        .filter(JobOccurrence.series_id == series.id)
        .filter(JobOccurrence.start_at >= format_instant(now))
        .filter(JobOccurrence.status == "scheduled")
        .update(values, synchronize_session=False)
    )


def update_series(db: Session, tenant_id: str, series_id: str, req: SeriesUpdate,
                  now: datetime | None = None) -> tuple[JobSeries, int, int, MaterializeResult | None]:
    """Edit template fields; returns (series, propagated, cancelled, materialization)."""
    now = ensure_utc(now) if now else utc_now()
    changes = req.model_dump(exclude_unset=True)
    if changes.get("priority") is not None and changes["priority"] not in VALID_PRIORITIES:
        raise InvalidRangeError(f"Invalid priority {changes['priority']!r}")
    if "priority" in changes and changes["priority"] is None:
        del changes["priority"]
    if "title" in changes and not changes["title"]:
        raise InvalidRangeError("title cannot be empty")

    series = get_series(db, tenant_id, series_id, for_update=True)
    active = changes.pop("active", None)
    try:
        for key, value in changes.items():
            setattr(series, key, value)
        series.updated_at = format_instant(now)

        propagated = propagate_fields(
            db, series, {k: v for k, v in changes.items() if k in PROPAGATED_FIELDS}, now,
        )
        cancelled = 0
        reactivated = False
        if active is False and series.active:
            cancelled = deactivate_series(db, series, now)
        elif active is True and not series.active:
            series.active = True
            # Instants missed while inactive are not back-filled.
            if not series.last_generated_until or parse_instant(series.last_generated_until) < now:
                series.last_generated_until = format_instant(now)
            reactivated = True
        db.flush()
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentMaterializationConflict(series_id) from exc
    except Exception:
        db.rollback()
        raise

    result = None
    if reactivated:
        result = materialize(db, tenant_id, series_id, default_horizon(series_anchor(series), now), now=now)
    db.refresh(series)
    return series, propagated, cancelled, result


def delete_series(db: Session, tenant_id: str, series_id: str) -> None:
    series = get_series(db, tenant_id, series_id)
    db.delete(series)
    db.commit()
    logger.info("Deleted series %s and its occurrences", series_id)
