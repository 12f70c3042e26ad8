"""Conversions between civil date/time in a named zone and UTC instants.

Instants are always timezone-aware ``datetime`` objects in UTC, truncated to
whole seconds. Civil dates are ``YYYY-MM-DD`` strings and civil times are
``HH:MM:SS`` (``HH:MM`` is accepted on input).

Policy for local times that do not map to exactly one instant:

* non-existent (spring-forward gap): :func:`to_absolute` raises
  ``InvalidTimeError``.
* ambiguous (fall-back overlap): the earlier instant wins, i.e. the first
  pass through the wall-clock time, still on the pre-transition offset.
"""

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fieldservice.exceptions import InvalidTimeError

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@lru_cache(maxsize=128)
def get_zone(zone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimeError(f"Unknown timezone: {zone_name!r}") from exc


def parse_civil_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise InvalidTimeError(f"Invalid civil date {value!r}, expected YYYY-MM-DD") from exc


def parse_civil_time(value: str) -> time:
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(value, fmt).time()
        except (TypeError, ValueError):
            continue
    raise InvalidTimeError(f"Invalid civil time {value!r}, expected HH:MM:SS")


def normalize_civil_time(value: str) -> str:
    return parse_civil_time(value).strftime("%H:%M:%S")


def localize(naive: datetime, zone: ZoneInfo, strict: bool = True) -> datetime:
    """Attach ``zone`` to a naive wall-clock datetime.

    With ``strict`` a wall-clock time inside a spring-forward gap raises
    ``InvalidTimeError``; otherwise it keeps the pre-transition offset.
    Ambiguous times always resolve to the earlier instant (``fold=0``).
    """
    local = naive.replace(tzinfo=zone, fold=0)
    if strict:
        round_trip = local.astimezone(timezone.utc).astimezone(zone)
        if round_trip.replace(tzinfo=None) != naive:
            raise InvalidTimeError(
                f"{naive.isoformat()} does not exist in {zone.key} (daylight-saving gap)"
            )
    return local


def to_absolute(local_date: str, local_time: str, zone_name: str) -> datetime:
    naive = datetime.combine(parse_civil_date(local_date), parse_civil_time(local_time))
    local = localize(naive, get_zone(zone_name))
    return local.astimezone(timezone.utc)


def from_absolute(instant: datetime, zone_name: str) -> tuple[str, str]:
    local = ensure_utc(instant).astimezone(get_zone(zone_name))
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M:%S")


def start_of_local_day(local_date: str, zone_name: str) -> datetime:
    """UTC instant of local midnight; midnight inside a gap shifts forward."""
    naive = datetime.combine(parse_civil_date(local_date), time(0, 0))
    return localize(naive, get_zone(zone_name), strict=False).astimezone(timezone.utc)


def ensure_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        raise InvalidTimeError(f"Naive datetime {instant.isoformat()} is not an absolute instant")
    return instant.astimezone(timezone.utc).replace(microsecond=0)


def add_minutes(instant: datetime, minutes: int) -> datetime:
    # Instant arithmetic: a 60 minute job across a DST change is still 60 minutes.
    return ensure_utc(instant) + timedelta(minutes=minutes)


def format_instant(instant: datetime) -> str:
    return ensure_utc(instant).strftime(ISO_FORMAT)


def parse_instant(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as exc:
        raise InvalidTimeError(f"Invalid ISO-8601 instant {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return ensure_utc(parsed)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)
