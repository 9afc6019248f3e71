"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock so that services never call
    ``datetime.now()`` directly.  Expiry checks in the material selector,
    decision timestamps in the transfer coordinator and stage timestamps in
    the state machine all read time through a Clock.

Architecture position:
    Kernel > Domain -- pure, zero I/O (except SystemClock, the one
    sanctioned I/O boundary for time).
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
        - ``today()`` is the date part of ``now()`` in UTC.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def today(self) -> date:
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    """Production clock that returns actual system time (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value on repeated calls until ``advance()``
    or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self.now()
