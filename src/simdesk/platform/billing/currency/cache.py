"""
Exchange rate snapshot cache.

The whole rate table is small, so it is cached as a single snapshot that
expires as a unit after the freshness window.
"""

from datetime import datetime
from decimal import Decimal

from cachetools import TTLCache  # noqa: PGH003

from simdesk.platform.core.clock import Clock, SystemClock

RatePair = tuple[str, str]
RateSnapshot = dict[RatePair, Decimal]

_SNAPSHOT_KEY = "rates"


class RateSnapshotCache:
    """TTL-bounded holder for the current rate snapshot."""

    def __init__(self, ttl_seconds: int = 300, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self._cache: TTLCache[str, RateSnapshot] = TTLCache(
            maxsize=1, ttl=ttl_seconds, timer=lambda: self.clock.now().timestamp()
        )
        self.loaded_at: datetime | None = None

    def get(self) -> RateSnapshot | None:
        return self._cache.get(_SNAPSHOT_KEY)

    def put(self, snapshot: RateSnapshot) -> None:
        self._cache[_SNAPSHOT_KEY] = dict(snapshot)
        self.loaded_at = self.clock.now()

    def clear(self) -> None:
        self._cache.clear()
        self.loaded_at = None

    @property
    def is_fresh(self) -> bool:
        return self.get() is not None

    @property
    def age_seconds(self) -> float | None:
        if self.loaded_at is None:
            return None
        return (self.clock.now() - self.loaded_at).total_seconds()
