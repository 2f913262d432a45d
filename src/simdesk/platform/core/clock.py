"""Injectable time source.

Every timer-driven component asks a ``Clock`` for the current time so that
thresholds and hysteresis windows can be exercised without wall-clock waits.
"""

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Source of timezone-aware UTC timestamps."""

    def now(self) -> datetime: ...  # pragma: no cover - protocol definition


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from stores that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _zone(timezone: str) -> tzinfo:
    return UTC if timezone.upper() == "UTC" else ZoneInfo(timezone)


def day_bounds(day: date, timezone: str = "UTC") -> tuple[datetime, datetime]:
    """Return the [start, end) UTC range of a calendar day in ``timezone``."""
    zone = _zone(timezone)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)


def local_date(moment: datetime, timezone: str = "UTC") -> date:
    """Calendar date of ``moment`` in ``timezone``."""
    return ensure_utc(moment).astimezone(_zone(timezone)).date()


__all__ = ["Clock", "SystemClock", "ensure_utc", "day_bounds", "local_date"]
