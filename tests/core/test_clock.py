"""
Tests for clock helpers and calendar-day windows.
"""

from datetime import UTC, date, datetime, timedelta, timezone

from simdesk.platform.core.clock import SystemClock, day_bounds, ensure_utc, local_date


class TestClockHelpers:
    """Test timezone handling."""

    def test_system_clock_is_utc(self):
        """The wall clock returns aware UTC timestamps."""
        assert SystemClock().now().tzinfo is UTC

    def test_ensure_utc(self):
        """Naive values are read as UTC and aware values converted."""
        naive = datetime(2026, 3, 10, 12, 0)
        dubai = datetime(2026, 3, 10, 16, 0, tzinfo=timezone(timedelta(hours=4)))

        assert ensure_utc(naive) == datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        assert ensure_utc(dubai) == datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        assert ensure_utc(None) is None

    def test_utc_day_bounds(self):
        """A UTC day spans midnight to midnight."""
        start, end = day_bounds(date(2026, 3, 10))

        assert start == datetime(2026, 3, 10, tzinfo=UTC)
        assert end == datetime(2026, 3, 11, tzinfo=UTC)

    def test_business_timezone_day_bounds(self):
        """A Dubai business day starts at 20:00 UTC the evening before."""
        start, end = day_bounds(date(2026, 3, 10), "Asia/Dubai")

        assert start == datetime(2026, 3, 9, 20, 0, tzinfo=UTC)
        assert end - start == timedelta(days=1)

    def test_local_date(self):
        """Late UTC evenings already belong to the next Dubai day."""
        moment = datetime(2026, 3, 10, 21, 0, tzinfo=UTC)

        assert local_date(moment) == date(2026, 3, 10)
        assert local_date(moment, "Asia/Dubai") == date(2026, 3, 11)
