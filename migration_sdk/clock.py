"""
Migration SDK - Clock.

============================================================
RESPONSIBILITY
============================================================
Time source for phase computation, migration-window checks and cache
expiry. Injected everywhere time matters so tests can pin it.

- UTC only
- Unix seconds as the unit shared with the ledger
============================================================
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional
import time


class ClockProtocol(ABC):
    """Abstract interface for the SDK clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        pass

    def unix_seconds(self) -> int:
        """Whole Unix seconds, the resolution of on-chain timestamps."""
        return int(self.timestamp())


class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return time.time()


class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = initial_time or datetime.now(timezone.utc)
        if self._time.tzinfo is None:
            self._time = self._time.replace(tzinfo=timezone.utc)

    @classmethod
    def at(cls, unix_seconds: float) -> "MockClock":
        """Create a clock pinned to a Unix timestamp."""
        return cls(datetime.fromtimestamp(unix_seconds, tz=timezone.utc))

    def now(self) -> datetime:
        return self._time

    def timestamp(self) -> float:
        return self._time.timestamp()

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        if new_time.tzinfo is None:
            new_time = new_time.replace(tzinfo=timezone.utc)
        self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        self._time = self._time + timedelta(seconds=seconds, **kwargs)

    @contextmanager
    def freeze(self, at_time: Optional[datetime] = None) -> Generator[None, None, None]:
        """
        Context manager to temporarily pin time.

        Args:
            at_time: Time to freeze at (defaults to current)
        """
        original_time = self._time
        if at_time:
            self.set_time(at_time)
        try:
            yield
        finally:
            self._time = original_time


_default_clock: ClockProtocol = SystemClock()


def get_clock() -> ClockProtocol:
    """Get the process default clock."""
    return _default_clock
