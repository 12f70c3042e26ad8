"""Recurrence rule expansion on top of python-dateutil.

Rules are RFC 5545 RRULE bodies (``FREQ=WEEKLY;INTERVAL=1;COUNT=4``), with or
without the ``RRULE:`` prefix. Expansion happens on wall-clock time in the
series timezone so a 09:00 job stays at 09:00 across daylight-saving changes;
every yielded instant is converted back to UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator

from dateutil.rrule import rrule, rrulestr

from fieldservice.exceptions import InvalidRuleError, InvalidTimeError
from fieldservice.utils.timezone import ensure_utc, get_zone, localize, start_of_local_day

# One-off jobs share the series model through a rule that yields only DTSTART.
SINGLE_OCCURRENCE_RULE = "FREQ=DAILY;COUNT=1"

SUPPORTED_FREQUENCIES = {"YEARLY", "MONTHLY", "WEEKLY", "DAILY", "HOURLY"}


def _split_rule(rule_text: str) -> list[tuple[str, str]]:
    if not isinstance(rule_text, str) or not rule_text.strip():
        raise InvalidRuleError("Recurrence rule is empty")
    body = rule_text.strip()
    if "\n" in body or "\r" in body:
        raise InvalidRuleError("Recurrence rule must be a single RRULE line")
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]

    parts = []
    for chunk in body.split(";"):
        if not chunk:
            continue
        key, sep, value = chunk.partition("=")
        if not sep or not key or not value:
            raise InvalidRuleError(f"Malformed rule part {chunk!r} in {rule_text!r}")
        parts.append((key.strip().upper(), value.strip()))
    return parts


def _until_to_utc(value: str, zone_name: str) -> str:
    """Rewrite an UNTIL value as a UTC timestamp, as dateutil requires."""
    if value.upper().endswith("Z"):
        return value.upper()
    try:
        if "T" in value.upper():
            naive = datetime.strptime(value.upper(), "%Y%m%dT%H%M%S")
            instant = localize(naive, get_zone(zone_name), strict=False).astimezone(timezone.utc)
        else:
            day = datetime.strptime(value, "%Y%m%d").date()
            # A bare date covers the whole local day.
            next_day = (day + timedelta(days=1)).isoformat()
            instant = start_of_local_day(next_day, zone_name) - timedelta(seconds=1)
    except ValueError as exc:
        raise InvalidRuleError(f"Invalid UNTIL value {value!r}") from exc
    return instant.strftime("%Y%m%dT%H%M%SZ")


def normalize_rule(rule_text: str, zone_name: str = "UTC") -> str:
    """Return the canonical rule body used for storage and parsing."""
    parts = _split_rule(rule_text)
    keys = [key for key, _ in parts]
    if len(set(keys)) != len(keys):
        raise InvalidRuleError(f"Duplicate rule parts in {rule_text!r}")
    if "DTSTART" in keys:
        raise InvalidRuleError("DTSTART is set by the series, not the rule")

    values = dict(parts)
    freq = values.get("FREQ", "").upper()
    if not freq:
        raise InvalidRuleError(f"Rule {rule_text!r} has no FREQ")
    if freq not in SUPPORTED_FREQUENCIES:
        raise InvalidRuleError(f"Unsupported frequency {freq!r}")
    if "COUNT" in values and "UNTIL" in values:
        raise InvalidRuleError("COUNT and UNTIL cannot both be set")
    for key in ("COUNT", "INTERVAL"):
        if key in values and not (values[key].isdigit() and int(values[key]) > 0):
            raise InvalidRuleError(f"{key} must be a positive integer, got {values[key]!r}")

    normalized = []
    for key, value in parts:
        if key == "UNTIL":
            value = _until_to_utc(value, zone_name)
        else:
            value = value.upper()
        normalized.append(f"{key}={value}")
    return ";".join(normalized)


def parse_rule(rule_text: str, anchor: datetime, zone_name: str = "UTC") -> rrule:
    """Build a dateutil rule whose DTSTART is ``anchor`` on local wall-clock time."""
    if anchor.tzinfo is None:
        raise InvalidTimeError("Recurrence anchor must be timezone-aware")
    local_anchor = anchor.astimezone(get_zone(zone_name))
    body = normalize_rule(rule_text, zone_name)
    try:
        parsed = rrulestr(body, dtstart=local_anchor)
    except (ValueError, TypeError, KeyError) as exc:
        raise InvalidRuleError(f"Invalid recurrence rule {rule_text!r}: {exc}") from exc
    if not isinstance(parsed, rrule):
        raise InvalidRuleError(f"Rule {rule_text!r} must be a single RRULE")
    return parsed


def is_single_occurrence(rule_text: str) -> bool:
    values = dict(_split_rule(rule_text))
    return values.get("COUNT") == "1"


def _iter_window(rule: rrule, start: datetime, end: datetime, inclusive_start: bool) -> Iterator[datetime]:
    previous = None
    for occurrence in rule:
        instant = occurrence.astimezone(timezone.utc)
        if instant >= end:
            break
        # A wall-clock time inside a DST gap shifts onto the instant of the hour after it.
        if previous is not None and instant <= previous:
            continue
        previous = instant
        if instant < start or (instant == start and not inclusive_start):
            continue
        yield instant


def expand(
    rule_text: str,
    anchor: datetime,
    range_start: datetime,
    range_end: datetime,
    zone_name: str = "UTC",
    inclusive_start: bool = True,
) -> Iterator[datetime]:
    """Lazily yield UTC start instants the rule produces in ``[range_start, range_end)``.

    The rule is parsed eagerly so ``InvalidRuleError`` surfaces at call time.
    The sequence always terminates: either the rule's COUNT/UNTIL runs out or
    an instant reaches ``range_end``. An instant equal to ``range_end`` is
    excluded even when the rule's own bound lands on it.
    """
    rule = parse_rule(rule_text, anchor, zone_name)
    start = ensure_utc(range_start)
    end = ensure_utc(range_end)
    if end <= start:
        return iter(())
    return _iter_window(rule, start, end, inclusive_start)
