"""Time primitives: clock strings, minute offsets and UTC calendar helpers.

All calendar helpers use UTC so that usage recorded on different machines
aggregates to the same days and hours.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum

from ccmax.core.errors import InvalidTimeFormat

WINDOW_DURATION_MINUTES = 300  # 5 hours
WINDOW_DURATION = timedelta(minutes=WINDOW_DURATION_MINUTES)
MINUTES_PER_DAY = 24 * 60

_CLOCK_RE = re.compile(r"([0-9]{1,2}):([0-9]{2})")
_STRICT_CLOCK_RE = re.compile(r"([01][0-9]|2[0-3]):([0-5][0-9])")
_DATE_HOUR_RE = re.compile(r"([0-9]{4}-[0-9]{2}-[0-9]{2})-([0-9]{2})")


class Weekday(str, Enum):
    """The seven canonical lowercase weekday names."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def from_index(cls, index: int) -> Weekday:
        """Map a Monday=0 weekday index (``datetime.weekday()``) to a name."""
        return ALL_WEEKDAYS[index % 7]


ALL_WEEKDAYS: tuple[Weekday, ...] = tuple(Weekday)


# Clock strings

def parse_time_to_minutes(value: str) -> int:
    """Parse "H:MM" or "HH:MM" into minutes since midnight.

    Raises:
        InvalidTimeFormat: No colon, hour outside 0-23, or minute not exactly
            two digits / outside 0-59.
    """
    if not isinstance(value, str) or ":" not in value:
        raise InvalidTimeFormat(value, "expected H:MM or HH:MM")

    match = _CLOCK_RE.fullmatch(value)
    if match is None:
        raise InvalidTimeFormat(value, "expected H:MM or HH:MM")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23:
        raise InvalidTimeFormat(value, "hour must be 0-23")
    if minutes > 59:
        raise InvalidTimeFormat(value, "minute must be 00-59")

    return hours * 60 + minutes


def minutes_to_time_string(minutes: int) -> str:
    """Format minutes since midnight as zero-padded "HH:MM".

    Defined for 0..1439. Callers wrap other offsets with ``% 1440`` first.
    """
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise InvalidTimeFormat(minutes, "minutes must be within 0-1439")
    return format_time_from_hour_minute(minutes // 60, minutes % 60)


def format_time_from_hour_minute(hour: int, minute: int) -> str:
    """Zero-pad hour and minute independently. No range checks."""
    return f"{hour:02d}:{minute:02d}"


def is_valid_time_string(value: object) -> bool:
    """Check for a strict "HH:MM" string (used for stored config values)."""
    return isinstance(value, str) and _STRICT_CLOCK_RE.fullmatch(value) is not None


# Calendar helpers (UTC)

def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now() -> str:
    """Current time as an ISO 8601 UTC string."""
    return to_iso(utcnow())


def to_iso(dt: datetime) -> str:
    """ISO 8601 with millisecond precision and a ``Z`` suffix."""
    return _as_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    """Parse an ISO 8601 string; naive values are read as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(value))


def format_time(dt: datetime) -> str:
    return _as_utc(dt).strftime("%H:%M")


def format_date(dt: datetime) -> str:
    return _as_utc(dt).strftime("%Y-%m-%d")


def add_hours(dt: datetime, hours: float) -> datetime:
    return dt + timedelta(hours=hours)


def add_minutes(dt: datetime, minutes: float) -> datetime:
    return dt + timedelta(minutes=minutes)


def diff_minutes(a: datetime, b: datetime) -> float:
    """Unsigned difference between two timestamps in minutes."""
    return abs((_as_utc(a) - _as_utc(b)).total_seconds()) / 60


def start_of_day(dt: datetime) -> datetime:
    return _as_utc(dt).replace(hour=0, minute=0, second=0, microsecond=0)


def get_day_of_week(dt: datetime) -> Weekday:
    """Weekday of a timestamp, by UTC calendar day."""
    return Weekday.from_index(_as_utc(dt).weekday())


def weekday_for_date(date_str: str) -> Weekday:
    """Weekday of a "YYYY-MM-DD" calendar date."""
    return get_day_of_week(datetime.strptime(date_str, "%Y-%m-%d"))


def format_date_hour(dt: datetime) -> str:
    """Storage key for an hour slot: "YYYY-MM-DD-HH" in UTC."""
    return _as_utc(dt).strftime("%Y-%m-%d-%H")


def parse_date_hour(value: str) -> tuple[str, int]:
    """Split a "YYYY-MM-DD-HH" key into its date and hour."""
    match = _DATE_HOUR_RE.fullmatch(value) if isinstance(value, str) else None
    if match is None or int(match.group(2)) > 23:
        raise ValueError(f"Invalid date_hour key: {value!r}")
    # Rejects impossible dates such as 2025-02-30
    datetime.strptime(match.group(1), "%Y-%m-%d")
    return match.group(1), int(match.group(2))


def date_hour_to_datetime(value: str) -> datetime:
    date_part, hour = parse_date_hour(value)
    return datetime.strptime(date_part, "%Y-%m-%d").replace(hour=hour, tzinfo=timezone.utc)


def is_within_window(
    timestamp: datetime,
    window_start: datetime,
    duration: timedelta = WINDOW_DURATION,
) -> bool:
    start = _as_utc(window_start)
    return start <= _as_utc(timestamp) < start + duration


def round_to_nearest_hour(dt: datetime) -> datetime:
    """Round to the hour; 30 minutes and up rounds forward."""
    rounded = dt.replace(minute=0, second=0, microsecond=0)
    if dt.minute >= 30:
        rounded += timedelta(hours=1)
    return rounded


def get_window_end(window_start: datetime) -> datetime:
    """A quota window resets 5 hours after it starts, on the hour."""
    return round_to_nearest_hour(add_hours(window_start, 5))
