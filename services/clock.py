"""Injectable time sources for trial and migration bookkeeping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to (tests and support tooling)."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = _ensure_aware(start or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = _ensure_aware(value)

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        self._now = self._now + (delta or timedelta(**kwargs))
        return self._now


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime (naive values are UTC)."""

    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return _ensure_aware(parsed)


def format_timestamp(value: datetime) -> str:
    return _ensure_aware(value).isoformat()


__all__ = ["Clock", "ManualClock", "SystemClock", "format_timestamp", "parse_timestamp"]
