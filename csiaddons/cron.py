"""Standard cron schedule expressions and their next activation times."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Mapping, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class CronParseError(ValueError):
    """Raised when a schedule expression cannot be parsed."""


class _Bounds(NamedTuple):
    minimum: int
    maximum: int
    names: Mapping[str, int] = {}


_MINUTES = _Bounds(0, 59)
_HOURS = _Bounds(0, 23)
_DAYS_OF_MONTH = _Bounds(1, 31)
_MONTHS = _Bounds(
    1,
    12,
    {
        name: number
        for number, name in enumerate(
            ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
            start=1,
        )
    },
)
_DAYS_OF_WEEK = _Bounds(
    0, 6, {name: number for number, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}
)

_NANOS_PER_UNIT = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s": Decimal(1_000_000_000),
    "m": Decimal(60_000_000_000),
    "h": Decimal(3_600_000_000_000),
}
_DURATION = re.compile(r"([+-]?)((?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+)")
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_NANOS_PER_SECOND = Decimal(1_000_000_000)


@dataclass(frozen=True)
class CronSchedule:
    """A parsed schedule; ``every`` is set for fixed-interval schedules."""

    minutes: frozenset[int] = frozenset()
    hours: frozenset[int] = frozenset()
    days_of_month: frozenset[int] = frozenset()
    months: frozenset[int] = frozenset()
    days_of_week: frozenset[int] = frozenset()
    dom_star: bool = False
    dow_star: bool = False
    location: tzinfo | None = None
    every: timedelta | None = None

    def _day_matches(self, wall: datetime) -> bool:
        dom_match = wall.day in self.days_of_month
        dow_match = (wall.weekday() + 1) % 7 in self.days_of_week
        if self.dom_star or self.dow_star:
            return dom_match and dow_match
        return dom_match or dow_match

    def next(self, after: datetime) -> datetime | None:
        """The first activation strictly after ``after``; None if none within five years."""
        if self.every is not None:
            return after - timedelta(microseconds=after.microsecond) + self.every

        original_tz = after.tzinfo
        t = after
        if self.location is not None:
            t = after.astimezone(self.location) if original_tz is not None else after.replace(tzinfo=self.location)
        t = t.replace(second=0, microsecond=0) + timedelta(minutes=1)
        zone = t.tzinfo
        wall = t.replace(tzinfo=None)
        year_limit = wall.year + 5

        while wall.year <= year_limit:
            if wall.month not in self.months:
                wall = _first_of_next_month(wall)
                continue
            if not self._day_matches(wall):
                wall = (wall + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if wall.hour not in self.hours:
                wall = (wall + timedelta(hours=1)).replace(minute=0)
                continue
            if wall.minute not in self.minutes:
                wall += timedelta(minutes=1)
                continue
            break
        else:
            return None

        result = wall.replace(tzinfo=zone)
        if self.location is not None:
            return result.astimezone(original_tz) if original_tz is not None else result.replace(tzinfo=None)
        return result


def _first_of_next_month(wall: datetime) -> datetime:
    start = wall.replace(day=1, hour=0, minute=0)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _parse_uint(text: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise CronParseError(f"failed to parse int from {text}")
    return int(text)


def _parse_int_or_name(text: str, bounds: _Bounds) -> int:
    named = bounds.names.get(text.lower())
    if named is not None:
        return named
    return _parse_uint(text)


def _parse_range(expr: str, bounds: _Bounds) -> tuple[set[int], bool]:
    range_part, *steps = expr.split("/")
    if len(steps) > 1:
        raise CronParseError(f"too many slashes: {expr}")
    low_high = range_part.split("-")
    single = len(low_high) == 1
    star = False
    if range_part in ("*", "?"):
        start, end, star = bounds.minimum, bounds.maximum, True
    else:
        start = _parse_int_or_name(low_high[0], bounds)
        if len(low_high) == 1:
            end = start
        elif len(low_high) == 2:
            end = _parse_int_or_name(low_high[1], bounds)
        else:
            raise CronParseError(f"too many hyphens: {expr}")

    step = 1
    if steps:
        step = _parse_uint(steps[0])
        if single:
            end = bounds.maximum
        if step > 1:
            star = False

    if start < bounds.minimum:
        raise CronParseError(f"beginning of range ({start}) below minimum ({bounds.minimum}): {expr}")
    if end > bounds.maximum:
        raise CronParseError(f"end of range ({end}) above maximum ({bounds.maximum}): {expr}")
    if start > end:
        raise CronParseError(f"beginning of range ({start}) beyond end of range ({end}): {expr}")
    if step == 0:
        raise CronParseError(f"step of range should be a positive number: {expr}")
    return set(range(start, end + 1, step)), star


def _parse_field(text: str, bounds: _Bounds) -> tuple[frozenset[int], bool]:
    values: set[int] = set()
    star = False
    for part in text.split(","):
        part_values, part_star = _parse_range(part, bounds)
        values |= part_values
        star = star or part_star
    return frozenset(values), star


def _full(bounds: _Bounds) -> frozenset[int]:
    return frozenset(range(bounds.minimum, bounds.maximum + 1))


def _parse_duration(text: str) -> Decimal:
    """Nanoseconds of a duration such as ``1h30m`` or ``90s``."""
    if text in ("0", "+0", "-0"):
        return Decimal(0)
    match = _DURATION.fullmatch(text)
    if match is None:
        raise CronParseError(f'failed to parse duration {text}: invalid duration "{text}"')
    total = sum(
        (Decimal(number) * _NANOS_PER_UNIT[unit] for number, unit in _DURATION_PART.findall(match.group(2))),
        Decimal(0),
    )
    return -total if match.group(1) == "-" else total


def _parse_descriptor(descriptor: str, location: tzinfo | None) -> CronSchedule:
    zero = frozenset({0})
    one = frozenset({1})
    minutes, hours = _full(_MINUTES), _full(_HOURS)
    dom, months, dow = _full(_DAYS_OF_MONTH), _full(_MONTHS), _full(_DAYS_OF_WEEK)
    if descriptor in ("@yearly", "@annually"):
        return CronSchedule(zero, zero, one, one, dow, False, True, location)
    if descriptor == "@monthly":
        return CronSchedule(zero, zero, one, months, dow, False, True, location)
    if descriptor == "@weekly":
        return CronSchedule(zero, zero, dom, months, zero, True, False, location)
    if descriptor in ("@daily", "@midnight"):
        return CronSchedule(zero, zero, dom, months, dow, True, True, location)
    if descriptor == "@hourly":
        return CronSchedule(zero, hours, dom, months, dow, True, True, location)
    if descriptor.startswith("@every "):
        nanos = _parse_duration(descriptor[len("@every ") :])
        if nanos < _NANOS_PER_SECOND:
            nanos = _NANOS_PER_SECOND
        seconds = int(nanos // _NANOS_PER_SECOND)
        return CronSchedule(minutes, hours, dom, months, dow, True, True, location, timedelta(seconds=seconds))
    raise CronParseError(f"unrecognized descriptor: {descriptor}")


def parse_standard(spec: str) -> CronSchedule:
    """Parse a five-field cron expression or an ``@`` descriptor."""
    if not spec:
        raise CronParseError("empty spec string")

    location: tzinfo | None = None
    if spec.startswith("TZ=") or spec.startswith("CRON_TZ="):
        space = spec.find(" ")
        if space < 0:
            raise CronParseError(f"provided bad location: {spec}")
        name = spec[spec.index("=") + 1 : space]
        try:
            location = ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as err:
            raise CronParseError(f"provided bad location {name}: {err}") from err
        spec = spec[space:].strip()

    if spec.startswith("@"):
        return _parse_descriptor(spec, location)

    fields = spec.split()
    if len(fields) != 5:
        raise CronParseError(f"expected exactly 5 fields, found {len(fields)}: {spec}")

    minutes, _ = _parse_field(fields[0], _MINUTES)
    hours, _ = _parse_field(fields[1], _HOURS)
    dom, dom_star = _parse_field(fields[2], _DAYS_OF_MONTH)
    months, _ = _parse_field(fields[3], _MONTHS)
    dow, dow_star = _parse_field(fields[4], _DAYS_OF_WEEK)
    return CronSchedule(minutes, hours, dom, months, dow, dom_star, dow_star, location)