import calendar
from datetime import datetime, timedelta, timezone

import pytest

from csiaddons.cron import CronParseError, parse_standard

UTC = timezone.utc
START = datetime(2024, 3, 10, 8, 17, 42, 500000, tzinfo=UTC)


@pytest.mark.parametrize(
    "spec",
    ["@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly", "*/5 * * * *", "? * * * ?"],
)
def test_next_is_strictly_increasing(spec):
    schedule = parse_standard(spec)
    previous = START
    for _ in range(5):
        current = schedule.next(previous)
        assert current > previous
        assert current.second == 0 and current.microsecond == 0
        previous = current


def test_weekly_fires_on_sunday_at_midnight():
    result = parse_standard("@weekly").next(START)
    assert result.weekday() == calendar.SUNDAY
    assert (result.hour, result.minute) == (0, 0)
    assert START < result <= START + timedelta(days=7)


def test_hourly_fires_on_the_hour():
    result = parse_standard("@hourly").next(START)
    assert result.minute == 0
    assert START < result <= START + timedelta(hours=1)


def test_step_minutes():
    result = parse_standard("*/15 * * * *").next(START)
    assert result.minute % 15 == 0
    assert START < result <= START + timedelta(minutes=15)


def test_day_of_week_only_is_and_semantics():
    schedule = parse_standard("0 0 * * 5")
    current = START
    for _ in range(10):
        current = schedule.next(current)
        assert current.weekday() == calendar.FRIDAY
        assert current.hour == 0


def test_day_of_month_and_week_is_or_semantics():
    schedule = parse_standard("0 0 13 * 5")
    current = START
    seen_fridays = seen_thirteenths = False
    for _ in range(60):
        current = schedule.next(current)
        is_friday = current.weekday() == calendar.FRIDAY
        assert is_friday or current.day == 13
        seen_fridays = seen_fridays or (is_friday and current.day != 13)
        seen_thirteenths = seen_thirteenths or (not is_friday and current.day == 13)
    assert seen_fridays and seen_thirteenths


def test_month_and_day_names():
    result = parse_standard("0 12 * jan mon").next(START)
    assert result.month == 1
    assert result.weekday() == calendar.MONDAY
    assert result.hour == 12


def test_range_with_step():
    schedule = parse_standard("30 4 1-3/2 * *")
    current = START
    for _ in range(6):
        current = schedule.next(current)
        assert current.day in (1, 3)
        assert (current.hour, current.minute) == (4, 30)


def test_exact_match_moves_to_following_activation():
    schedule = parse_standard("5 * * * *")
    on_time = datetime(2024, 3, 10, 8, 5, tzinfo=UTC)
    assert schedule.next(on_time) == on_time + timedelta(hours=1)


def test_every_interval():
    schedule = parse_standard("@every 90s")
    assert schedule.next(START) == START.replace(microsecond=0) + timedelta(seconds=90)


def test_every_short_interval_rounds_up_to_a_second():
    schedule = parse_standard("@every 100ms")
    assert schedule.next(START) == START.replace(microsecond=0) + timedelta(seconds=1)


def test_impossible_date_has_no_next():
    assert parse_standard("0 0 30 2 *").next(START) is None


@pytest.mark.parametrize(
    "spec",
    [
        "",
        "@daytime",
        "* * * *",
        "* * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 7",
        "5-2 * * * *",
        "*/0 * * * *",
        "1-2-3 * * * *",
        "*/2/3 * * * *",
        "x * * * *",
        "@every nonsense",
        "TZ=Nowhere/Invalid 0 0 * * *",
    ],
)
def test_invalid_specs_raise(spec):
    with pytest.raises(CronParseError):
        parse_standard(spec)