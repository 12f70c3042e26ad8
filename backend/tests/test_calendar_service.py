from datetime import timedelta

import pytest

from conftest import OTHER_TENANT, TENANT, utc
from fieldservice.config import settings
from fieldservice.exceptions import InvalidRangeError
from fieldservice.models.occurrence import JobOccurrence
from fieldservice.models.series import JobSeries
from fieldservice.services import materializer
from fieldservice.services.calendar_service import generate_calendar_ics, get_calendar, virtual_event_id

NOW = utc(2025, 1, 1)
ANCHOR = utc(2025, 1, 6, 14)
RANGE = (utc(2025, 1, 6), utc(2025, 1, 16))


def _materialized(db, make_series, days=5, **overrides):
    series = make_series(**overrides)
    materializer.materialize(db, TENANT, series.id, ANCHOR + timedelta(days=days), now=NOW)
    return series


class TestGetCalendar:
    def test_virtual_events_continue_after_watermark(self, db, make_series):
        series = _materialized(db, make_series)
        events = get_calendar(db, TENANT, *RANGE)

        assert len(events) == 10
        real = [e for e in events if not e.is_virtual]
        virtual = [e for e in events if e.is_virtual]
        assert [e.start for e in real] == [f"2025-01-{d:02d}T14:00:00Z" for d in range(6, 11)]
        assert [e.start for e in virtual] == [f"2025-01-{d:02d}T14:00:00Z" for d in range(11, 16)]
        assert all(e.occurrence_id == e.id for e in real)
        assert all(e.occurrence_id is None for e in virtual)
        assert virtual[0].id == virtual_event_id(series.id, utc(2025, 1, 11, 14))
        assert virtual[0].id == f"virtual-{series.id}-{int(utc(2025, 1, 11, 14).timestamp())}"

    def test_each_rule_instant_appears_once(self, db, make_series):
        _materialized(db, make_series, days=7, rrule="FREQ=WEEKLY;BYDAY=MO,WE,FR")
        events = get_calendar(db, TENANT, utc(2025, 1, 1), utc(2025, 3, 1))

        starts = [e.start for e in events]
        assert len(starts) == len(set(starts))
        assert starts == sorted(starts)
        # Mon/Wed/Fri from 6 Jan through 28 Feb
        assert len(starts) == 24

    def test_hourly_spring_forward_has_no_duplicate_virtuals(self, db, make_series):
        make_series(rrule="FREQ=HOURLY", start_date="2025-03-09", local_start_time="00:00:00")
        events = get_calendar(db, TENANT, utc(2025, 3, 9, 5), utc(2025, 3, 9, 10))

        keys = [(e.series_id, e.start) for e in events]
        assert len(keys) == len(set(keys)) == 5

    def test_never_materialized_series_is_all_virtual(self, db, make_series):
        make_series()
        events = get_calendar(db, TENANT, *RANGE)

        assert len(events) == 10
        assert all(e.is_virtual for e in events)
        assert events[0].start == "2025-01-06T14:00:00Z"
        assert events[0].end == "2025-01-06T15:00:00Z"

    def test_virtual_events_carry_template_fields(self, db, make_series):
        make_series(priority="high", assigned_to="tech-1", service_type="pool", estimated_cost=45.0)
        event = get_calendar(db, TENANT, *RANGE)[0]

        assert (event.title, event.customer_name, event.status) == ("Pool cleaning", "Acme Pools", "scheduled")
        assert (event.priority, event.assigned_to, event.service_type) == ("high", "tech-1", "pool")
        assert event.estimated_cost == 45.0

    def test_inactive_series_has_no_virtual_events(self, db, make_series):
        series = _materialized(db, make_series)
        db.get(JobSeries, series.id).active = False
        db.commit()

        events = get_calendar(db, TENANT, *RANGE)
        assert len(events) == 5
        assert not any(e.is_virtual for e in events)

    def test_until_date_bounds_virtual_events(self, db, make_series):
        make_series(until_date="2025-01-09")
        events = get_calendar(db, TENANT, *RANGE)

        assert [e.start for e in events] == [
            "2025-01-06T14:00:00Z", "2025-01-07T14:00:00Z", "2025-01-08T14:00:00Z",
        ]

    def test_virtual_events_stop_at_rule_count(self, db, make_series):
        make_series(rrule="FREQ=DAILY;COUNT=2")
        assert len(get_calendar(db, TENANT, *RANGE)) == 2

    def test_range_end_is_exclusive(self, db, make_series):
        make_series()
        events = get_calendar(db, TENANT, ANCHOR, ANCHOR + timedelta(days=2))
        assert [e.start for e in events] == ["2025-01-06T14:00:00Z", "2025-01-07T14:00:00Z"]

    def test_range_before_anchor_is_empty(self, db, make_series):
        make_series()
        assert get_calendar(db, TENANT, utc(2024, 12, 1), utc(2025, 1, 1)) == []

    def test_other_tenants_are_invisible(self, db, make_series):
        _materialized(db, make_series, tenant_id=OTHER_TENANT)
        assert get_calendar(db, TENANT, *RANGE) == []
        assert len(get_calendar(db, OTHER_TENANT, *RANGE)) == 10

    def test_moved_occurrence_replaces_virtual_twin(self, db, make_series):
        series = _materialized(db, make_series)
        moved = (
            db.query(JobOccurrence)
            .filter(JobOccurrence.series_id == series.id, JobOccurrence.start_at == "2025-01-10T14:00:00Z")
            .one()
        )
        moved.start_at = "2025-01-13T14:00:00Z"
        moved.end_at = "2025-01-13T15:00:00Z"
        db.commit()

        events = get_calendar(db, TENANT, *RANGE)
        at_13 = [e for e in events if e.start == "2025-01-13T14:00:00Z"]
        assert len(events) == 9
        assert len(at_13) == 1
        assert not at_13[0].is_virtual

    def test_reading_writes_nothing(self, db, make_series):
        series = _materialized(db, make_series)
        get_calendar(db, TENANT, utc(2025, 1, 1), utc(2025, 6, 1))

        db.expire_all()
        assert db.query(JobOccurrence).count() == 5
        assert db.get(JobSeries, series.id).last_generated_until == "2025-01-11T14:00:00Z"

    def test_virtual_events_capped_per_series(self, db, make_series, monkeypatch):
        monkeypatch.setattr(settings, "max_virtual_per_series", 3)
        make_series()
        assert len(get_calendar(db, TENANT, *RANGE)) == 3

    def test_override_title_and_cost_win(self, db, make_series):
        series = _materialized(db, make_series, estimated_cost=45.0)
        occ = db.query(JobOccurrence).filter(JobOccurrence.series_id == series.id).first()
        occ.override_title = "Pool cleaning + filter"
        occ.override_estimated_cost = 60.0
        db.commit()

        event = next(e for e in get_calendar(db, TENANT, *RANGE) if e.id == occ.id)
        assert event.title == "Pool cleaning + filter"
        assert event.estimated_cost == 60.0

    def test_cancelled_occurrences_are_still_listed(self, db, make_series):
        series = _materialized(db, make_series)
        occ = db.query(JobOccurrence).filter(JobOccurrence.series_id == series.id).first()
        occ.status = "cancelled"
        db.commit()

        statuses = [e.status for e in get_calendar(db, TENANT, *RANGE)]
        assert statuses.count("cancelled") == 1

    def test_local_start_uses_display_timezone(self, db, make_series):
        make_series()
        events = get_calendar(db, TENANT, *RANGE, display_timezone="America/Los_Angeles")
        assert events[0].local_start == "2025-01-06T06:00:00"
        assert get_calendar(db, TENANT, *RANGE)[0].local_start is None

    @pytest.mark.parametrize("start,end", [
        (utc(2025, 1, 6), utc(2025, 1, 6)),
        (utc(2025, 2, 1), utc(2025, 1, 1)),
        (utc(2025, 1, 1), utc(2026, 6, 1)),
    ])
    def test_invalid_ranges(self, db, start, end):
        with pytest.raises(InvalidRangeError):
            get_calendar(db, TENANT, start, end)


class TestCalendarIcs:
    def test_feed_contains_real_and_virtual_events(self, db, make_series):
        series = _materialized(db, make_series, days=1)
        occ = db.query(JobOccurrence).filter(JobOccurrence.series_id == series.id).one()
        occ.status = "cancelled"
        db.commit()

        content = generate_calendar_ics(get_calendar(db, TENANT, ANCHOR, ANCHOR + timedelta(days=2))).decode()

        assert content.count("BEGIN:VEVENT") == 2
        assert "SUMMARY:Pool cleaning for Acme Pools" in content
        assert "DTSTART:20250106T140000Z" in content
        assert "DTEND:20250107T150000Z" in content
        assert "STATUS:CANCELLED" in content
        assert "STATUS:CONFIRMED" in content
        assert "X-FIELDSERVICE-VIRTUAL:TRUE" in content
        assert f"UID:{occ.id}@fieldservice" in content

    def test_alarm_only_for_scheduled_events(self, db, make_series):
        series = _materialized(db, make_series, days=1)
        occ = db.query(JobOccurrence).filter(JobOccurrence.series_id == series.id).one()
        occ.status = "completed"
        db.commit()

        content = generate_calendar_ics(get_calendar(db, TENANT, ANCHOR, ANCHOR + timedelta(days=2))).decode()
        assert content.count("BEGIN:VALARM") == 1

    def test_empty_feed(self):
        content = generate_calendar_ics([]).decode()
        assert "BEGIN:VCALENDAR" in content
        assert "BEGIN:VEVENT" not in content
