"""
Injectable clocks.

Every time-dependent decision in TimeCapsule takes "now" from a Clock, so
tests can pin time and move it forward explicitly.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

from timecapsule.schema import ensure_utc


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock(Clock):
    """Reads wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock(Clock):
    """
    A clock that only moves when told to.

    Usage:
        clock = FixedClock(datetime(2030, 1, 1, tzinfo=UTC))
        clock.advance(hours=2)
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start) if start is not None else datetime.now(UTC)

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = ensure_utc(when)

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move forward by a timedelta or timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            msg = "FixedClock cannot move backwards"
            raise ValueError(msg)
        self._now = self._now + step
        return self._now
