"""Injected time source.

Every component that stamps or compares times takes a ``Clock`` so tests can
pin "now" and step it forward deterministically.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


class Clock:
    """Source of the current time."""

    def now(self) -> datetime:
        raise NotImplementedError

    def elapsed_since(self, start: datetime) -> float:
        return (self.now() - start).total_seconds()


class SystemClock(Clock):
    """Local system time (UTC)."""

    def now(self) -> datetime:
        return _now_utc()


class FixedClock(Clock):
    """Manually driven clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: Union[timedelta, float, int]) -> datetime:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=float(delta))
        with self._lock:
            self._now = self._now + delta
            return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = when
