"""Injectable wall clock.

Every wake-up comparison in the engines goes through a Clock so tests can
move time forward deterministically.

Usage:
    from nexus.core.clock import SystemClock

    clock = SystemClock()
    wake_at = clock.now() + timedelta(days=1)
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional


class Clock(ABC):
    """Source of the current time (naive UTC)."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time."""


class SystemClock(Clock):
    """Real wall clock."""

    def now(self) -> datetime:
        return datetime.utcnow().replace(microsecond=0)


class ManualClock(Clock):
    """Clock that only moves when told to.

    Attributes:
        current: The time returned by now()
    """

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 1, 5, 9, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward and return the new time."""
        self.current = self.current + delta
        return self.current

    def set(self, when: datetime) -> None:
        self.current = when
