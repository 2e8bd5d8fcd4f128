from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def timestamp(self) -> float: ...


class SystemClock:
    """Wall clock, always timezone-aware (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return self.now().timestamp()


class FixedClock:
    """
    Manually driven clock for deterministic window and rate-limit arithmetic.
    Naive datetimes are interpreted as UTC.
    """

    def __init__(self, now: datetime) -> None:
        self._now = ensure_aware(now)

    def now(self) -> datetime:
        return self._now

    def timestamp(self) -> float:
        return self._now.timestamp()

    def set(self, now: datetime) -> None:
        self._now = ensure_aware(now)

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_instant(value: object) -> datetime | None:
    """
    Best-effort ISO-8601 / unix timestamp decode. Returns None for anything unusable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts <= 0:
            return None
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(s))
    except ValueError:
        return None
