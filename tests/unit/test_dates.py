"""Day-boundary helper tests."""

from datetime import date, datetime, timezone

import pytest

from dungeon.dates import (
    day_bounds_utc,
    elapsed_minutes,
    is_valid_timezone,
    local_day,
    parse_date_only,
    resolve_timezone,
    today,
)


class TestTimezones:
    def test_valid_zone(self):
        assert is_valid_timezone("Europe/Berlin") is True

    @pytest.mark.parametrize("name", [None, "", "Mars/Olympus"])
    def test_invalid_zone(self, name):
        assert is_valid_timezone(name) is False

    def test_fallback_to_default(self):
        assert str(resolve_timezone("Not/AZone")) == "America/Chicago"


class TestLocalDay:
    def test_utc_evening_is_previous_local_day(self):
        instant = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)  # 22:00 CDT on the 9th
        assert local_day(instant, "America/Chicago") == date(2026, 3, 9)

    def test_naive_is_treated_as_utc(self):
        assert local_day(datetime(2026, 3, 10, 3, 0), "America/Chicago") == date(2026, 3, 9)

    def test_today_uses_supplied_now(self):
        now = datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc)
        assert today("Asia/Tokyo", now) == date(2026, 3, 11)

    def test_day_bounds(self):
        start, end = day_bounds_utc(date(2026, 3, 10), "America/Chicago")
        assert start == datetime(2026, 3, 10, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 11, 5, 0, tzinfo=timezone.utc)

    def test_day_bounds_across_dst_change(self):
        start, end = day_bounds_utc(date(2026, 3, 8), "America/Chicago")
        assert (end - start).total_seconds() == 23 * 3600


class TestParsing:
    def test_parse_date_only(self):
        assert parse_date_only("2026-03-10") == date(2026, 3, 10)

    @pytest.mark.parametrize("value", ["2026-3-10", "03/10/2026", "2026-03-10T00:00"])
    def test_parse_rejects_other_formats(self, value):
        with pytest.raises(ValueError):
            parse_date_only(value)

    def test_elapsed_minutes(self):
        start = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert elapsed_minutes(start, datetime(2026, 3, 10, 12, 45, 59, tzinfo=timezone.utc)) == 45

    def test_elapsed_minutes_never_negative(self):
        start = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert elapsed_minutes(start, datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc)) == 0
