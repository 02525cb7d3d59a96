"""
Clock capability

Order creation and the expiration sweeper read "now" through a Clock so
time can be driven explicitly in tests instead of sleeping.
"""
from datetime import datetime
from typing import Protocol

from marketplace.core.utils import utcnow


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


system_clock = SystemClock()
