"""
Time source used by every scheduling decision.

Timestamps are naive UTC throughout the service, matching the DateTime
columns of the models.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock(Clock):
    """Clock pinned to an instant; advance() simulates elapsed time."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = instant


system_clock = SystemClock()
