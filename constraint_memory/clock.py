"""
Injectable Clock
================

Every time read in the core goes through a clock object so that
dedup windows, cooldowns, lock TTLs and dormancy are computed from
explicit timestamps and can be replayed deterministically.

GUARANTEES:
- Components never call datetime.now() directly
- ManualClock only moves when told to
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

from .contracts.base import ensure_utc


class Clock:
    """Clock interface."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return "SystemClock()"


@dataclass
class ManualClock(Clock):
    """
    Clock that only advances explicitly.

    Records every read so a test can assert how many time reads an
    operation performed.
    """
    current: datetime = field(default_factory=lambda: datetime(2026, 1, 1, tzinfo=timezone.utc))
    _reads: List[datetime] = field(default_factory=list)

    def __post_init__(self):
        self.current = ensure_utc(self.current)

    def now(self) -> datetime:
        self._reads.append(self.current)
        return self.current

    def advance(self, delta: timedelta = timedelta(0), **kwargs) -> datetime:
        """Move forward by a timedelta or timedelta keyword arguments."""
        step = delta + timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self.current = self.current + step
        return self.current

    def set(self, value: datetime) -> datetime:
        self.current = ensure_utc(value)
        return self.current

    def read_count(self) -> int:
        return len(self._reads)

    def __repr__(self) -> str:
        return f"ManualClock({self.current.isoformat()}, reads={len(self._reads)})"
