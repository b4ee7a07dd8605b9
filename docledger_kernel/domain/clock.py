"""
Injectable time source.

Approval due dates, duplicate-cache expiry, period close stamps and the
"today" used for date anomalies all read from a Clock handed to the
service, never from ``datetime.now()`` directly.  All times are UTC.
"""

import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware UTC datetime."""

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Starts at 2024-01-01 12:00 UTC unless given another instant.  Safe to
    share between worker threads in the concurrency tests.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 1) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)

    def advance_hours(self, hours: float) -> None:
        self.advance(hours * 3600)
