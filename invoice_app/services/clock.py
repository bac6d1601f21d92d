"""Injectable time source for the invoice services.

Services never call ``datetime.now()`` directly; they receive a ``Clock`` so
tests can pin "today" and step it forward.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


def utc_date(value: datetime) -> date:
    """Calendar date of ``value`` in UTC; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware UTC time."""

    def today(self) -> date:
        return utc_date(self.now())


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None) -> None:
        self._time = fixed_time or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._time.tzinfo is None:
            self._time = self._time.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._time

    def set_time(self, value: datetime) -> None:
        self._time = value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def advance(self, *, days: int = 0, seconds: int = 0) -> None:
        self._time = self._time + timedelta(days=days, seconds=seconds)
