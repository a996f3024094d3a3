from __future__ import annotations

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings  # noqa: E402
from utils.batching import chunked, unique_in_order  # noqa: E402
from utils.datetime_utils import (  # noqa: E402
    days_in_month,
    end_of_day,
    local_day_bounds,
    resolve_tz,
    start_of_day,
    to_db_utc,
    today_for_tz,
)


def test_production_security_gate_rejects_default_secret_values():
    settings = Settings(
        ENVIRONMENT="production",
        SECRET_KEY="change-me-in-production",
        DATABASE_URL="postgresql://gym:bros@db/gymbros",
    )
    with pytest.raises(RuntimeError):
        settings.validate_security_configuration()


def test_production_security_gate_rejects_sqlite():
    settings = Settings(
        ENVIRONMENT="production",
        SECRET_KEY="a-long-random-production-secret",
        DATABASE_URL="sqlite:///data/gymbros.db",
    )
    with pytest.raises(RuntimeError):
        settings.validate_security_configuration()


def test_production_security_gate_accepts_hardened_values():
    settings = Settings(
        ENVIRONMENT="production",
        SECRET_KEY="a-long-random-production-secret",
        DATABASE_URL="postgresql://gym:bros@db/gymbros",
    )
    settings.validate_security_configuration()


def test_development_allows_defaults():
    Settings(ENVIRONMENT="development").validate_security_configuration()


def test_day_bounds_cover_whole_local_day():
    as_of = datetime(2024, 3, 5, 4, 30, tzinfo=timezone.utc)
    start, end = local_day_bounds(as_of, "America/New_York")

    # 04:30 UTC is 23:30 on March 4th in New York (UTC-5).
    assert start == datetime(2024, 3, 4, 5, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 3, 5, 4, 59, 59, 999999, tzinfo=timezone.utc)


def test_day_bounds_handle_dst_transition_days():
    # US spring-forward day is 23 hours long.
    spring_start = start_of_day(date(2024, 3, 10), "America/New_York")
    spring_end = end_of_day(date(2024, 3, 10), "America/New_York")
    assert spring_end - spring_start == timedelta(hours=23) - timedelta(microseconds=1)

    fall_start = start_of_day(date(2024, 11, 3), "America/New_York")
    fall_end = end_of_day(date(2024, 11, 3), "America/New_York")
    assert fall_end - fall_start == timedelta(hours=25) - timedelta(microseconds=1)


def test_unknown_timezone_falls_back_to_utc():
    assert resolve_tz("Not/AZone") is timezone.utc
    assert resolve_tz(None) is timezone.utc
    assert today_for_tz("Not/AZone", now=datetime(2024, 1, 1, 23, tzinfo=timezone.utc)) == date(2024, 1, 1)


def test_to_db_utc_strips_zone_after_conversion():
    value = datetime(2024, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))
    assert to_db_utc(value) == datetime(2024, 1, 1, 10)


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2023, 2) == 28
    assert days_in_month(2024, 12) == 31


def test_chunked_and_unique_in_order():
    assert chunked(list(range(65)), 30) == [list(range(30)), list(range(30, 60)), list(range(60, 65))]
    assert chunked([], 30) == []
    with pytest.raises(ValueError):
        chunked([1], 0)
    assert unique_in_order(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]
