"""Tests for the Tokyo calendar-day helpers."""

from datetime import date, datetime, timezone

from shared.dates import (
    TOKYO,
    DateBoundaries,
    day_string,
    isoformat_tokyo,
    start_of_tokyo_day,
    tokyo_day,
)


def test_tokyo_day_crosses_utc_midnight():
    # 15:00 UTC is midnight in Tokyo
    assert tokyo_day(datetime(2024, 5, 1, 14, 59, tzinfo=timezone.utc)) == date(2024, 5, 1)
    assert tokyo_day(datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc)) == date(2024, 5, 2)


def test_naive_values_are_read_as_tokyo_time():
    # Same wall clock as a UTC value that already falls on May 2nd in Tokyo
    assert tokyo_day(datetime(2024, 5, 1, 20, 0)) == date(2024, 5, 1)
    assert isoformat_tokyo(datetime(2024, 5, 1, 20, 0)) == "2024-05-01T20:00:00.000+09:00"


def test_start_of_tokyo_day():
    start = start_of_tokyo_day(datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc))
    assert start == datetime(2024, 5, 2, tzinfo=TOKYO)


def test_formatting():
    instant = datetime(2024, 5, 1, 0, 30, 0, 123456, tzinfo=timezone.utc)
    assert day_string(instant) == "2024-05-01"
    assert isoformat_tokyo(instant) == "2024-05-01T09:30:00.123+09:00"


def test_boundaries_are_half_open():
    bounds = DateBoundaries.for_date(datetime(2024, 5, 1, 12, 0, tzinfo=TOKYO))

    assert bounds.contains(datetime(2024, 5, 1, tzinfo=TOKYO))
    assert bounds.contains(datetime(2024, 5, 1, 23, 59, 59, tzinfo=TOKYO))
    assert not bounds.contains(datetime(2024, 5, 2, tzinfo=TOKYO))
    assert not bounds.contains(None)
