"""
Five-field cron expressions (minute hour day-of-month month day-of-week).

Supports ``*``, literals, comma lists, ranges (``1-5``), and steps on ``*`` or
on a range (``*/15``, ``0-30/10``). Day-of-week uses 0 = Sunday; 7 is
accepted as Sunday too.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Optional, Tuple

# Five years of minutes (with leap-year slack). Long enough for sparse rules
# such as "0 0 29 2 *", short enough to give up on impossible dates.
SEARCH_HORIZON_MINUTES = 5 * 366 * 24 * 60

# (label, min, max, whether 7 also means Sunday)
_FIELD_BOUNDS: Tuple[Tuple[str, int, int, bool], ...] = (
    ("minute", 0, 59, False),
    ("hour", 0, 23, False),
    ("day-of-month", 1, 31, False),
    ("month", 1, 12, False),
    ("day-of-week", 0, 7, True),
)

_STEP_RE = re.compile(r"^(?P<base>\*|\d+-\d+)/(?P<step>\d+)$")
_RANGE_RE = re.compile(r"^(?P<start>\d+)-(?P<end>\d+)$")


class MalformedScheduleError(ValueError):
    """Raised when a cron expression cannot be parsed."""


def _expand_part(part: str, label: str, min_value: int, max_value: int) -> range:
    if part == "*":
        return range(min_value, max_value + 1)

    step_match = _STEP_RE.match(part)
    if step_match:
        step = int(step_match.group("step"))
        if step < 1:
            raise MalformedScheduleError(f"Invalid {label} step: '{part}'")
        base = step_match.group("base")
        if base == "*":
            start, end = min_value, max_value
        else:
            start, end = _bounded_range(base, label, min_value, max_value)
        return range(start, end + 1, step)

    if _RANGE_RE.match(part):
        start, end = _bounded_range(part, label, min_value, max_value)
        return range(start, end + 1)

    if part.isdigit():
        value = int(part)
        if value < min_value or value > max_value:
            raise MalformedScheduleError(f"{label} value out of bounds: '{part}'")
        return range(value, value + 1)

    raise MalformedScheduleError(f"Invalid {label} field: '{part}'")


def _bounded_range(text: str, label: str, min_value: int, max_value: int) -> Tuple[int, int]:
    start_text, end_text = text.split("-", 1)
    start, end = int(start_text), int(end_text)
    if start > end:
        raise MalformedScheduleError(f"Invalid {label} range: '{text}'")
    if start < min_value or end > max_value:
        raise MalformedScheduleError(f"{label} range out of bounds: '{text}'")
    return start, end


def _parse_field(
    field: str,
    label: str,
    min_value: int,
    max_value: int,
    *,
    allow_seven: bool = False,
) -> FrozenSet[int]:
    parts = [part.strip() for part in field.split(",")]
    if not parts or any(not part for part in parts):
        raise MalformedScheduleError(f"Invalid {label} field: '{field}'")

    values: set[int] = set()
    for part in parts:
        values.update(_expand_part(part, label, min_value, max_value))
    if allow_seven and 7 in values:
        values.discard(7)
        values.add(0)
    if not values:
        raise MalformedScheduleError(f"Invalid {label} field: '{field}'")
    return frozenset(values)


def _localizer(after: datetime) -> Callable[[datetime], datetime]:
    """Map naive wall-clock candidates back into ``after``'s time zone."""
    tzinfo = after.tzinfo
    if tzinfo is None:
        return lambda wall: wall
    if (
        isinstance(tzinfo, timezone)
        and tzinfo is not timezone.utc
        and after.utcoffset() == after.astimezone().utcoffset()
    ):
        # A fixed offset taken from the system clock: apply the local zone
        # rules for each candidate date instead of the offset at ``after``.
        return lambda wall: wall.astimezone()
    return lambda wall: wall.replace(tzinfo=tzinfo)


class CronExpression:
    """
    Immutable parsed cron expression.

    Example:
        >>> expr = CronExpression("0 9 * * 1-5")
        >>> expr.matches(datetime(2026, 2, 16, 9, 0))
        True
    """

    __slots__ = ("_text", "_fields")

    def __init__(self, text: str) -> None:
        parts = str(text or "").split()
        if len(parts) != len(_FIELD_BOUNDS):
            raise MalformedScheduleError(
                f"Invalid cron expression: expected 5 fields, got {len(parts)}"
            )
        self._text = " ".join(parts)
        self._fields: Tuple[FrozenSet[int], ...] = tuple(
            _parse_field(part, label, low, high, allow_seven=allow_seven)
            for part, (label, low, high, allow_seven) in zip(parts, _FIELD_BOUNDS)
        )

    @classmethod
    def parse(cls, text: str) -> "CronExpression":
        """Parse ``text``; raises MalformedScheduleError when invalid."""
        return cls(text)

    @property
    def minutes(self) -> FrozenSet[int]:
        return self._fields[0]

    @property
    def hours(self) -> FrozenSet[int]:
        return self._fields[1]

    @property
    def days(self) -> FrozenSet[int]:
        return self._fields[2]

    @property
    def months(self) -> FrozenSet[int]:
        return self._fields[3]

    @property
    def weekdays(self) -> FrozenSet[int]:
        return self._fields[4]

    def matches(self, instant: datetime) -> bool:
        """Return whether ``instant`` falls on a minute selected by every field."""
        return (
            instant.minute in self.minutes
            and instant.hour in self.hours
            and self._date_matches(instant)
        )

    def next_occurrence(self, after: datetime) -> Optional[datetime]:
        """
        Return the first matching whole minute strictly after ``after``.

        Fields are matched against wall-clock time in ``after``'s zone and each
        match is re-localized, so a daily "0 9 * * *" stays at 09:00 across a
        daylight-saving change. Wall times skipped by a spring-forward gap
        resolve to the equivalent instant after the gap; repeated fall-back
        times fire once.

        Scans forward minute by minute for at most SEARCH_HORIZON_MINUTES and
        returns None when nothing matches (e.g. February 31st). Days and hours
        that cannot match are skipped whole.
        """
        localize = _localizer(after)
        candidate = after.replace(tzinfo=None, second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(minutes=SEARCH_HORIZON_MINUTES)
        while candidate < limit:
            if not self._date_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute in self.minutes:
                instant = localize(candidate)
                if instant > after:
                    return instant
            candidate += timedelta(minutes=1)
        return None

    def _date_matches(self, instant: datetime) -> bool:
        cron_weekday = (instant.weekday() + 1) % 7
        return (
            instant.day in self.days
            and instant.month in self.months
            and cron_weekday in self.weekdays
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CronExpression):
            return NotImplemented
        return self._fields == other._fields

    def __hash__(self) -> int:
        return hash(self._fields)

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"CronExpression({self._text!r})"
