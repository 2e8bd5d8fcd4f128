"""Maintenance windows: parsing, containment and the cached in-maintenance flag.

Windows arrive as a loosely typed JSON list. They are parsed once, at the
boundary, into `OneTimeWindow` / `RecurringWindow`; malformed entries are
dropped with a warning so the evaluator never branches on optional fields.

Recurring windows use 0=Sunday .. 6=Saturday. A window whose end time is before
its start time crosses midnight: it opens on `day_of_week` at `start_time` and
closes on the following day at `end_time`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from monitor_guard.clock import Clock, SystemClock, ensure_aware, parse_instant

if TYPE_CHECKING:
    from monitor_guard.models import Monitor, MonitorRepository


logger = structlog.get_logger(__name__)


def load_timezone(name: str | None) -> tzinfo | None:
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_hhmm(value: Any) -> dt_time:
    s = str(value or "").strip()
    if not s or ":" not in s:
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}")
    hh_str, mm_str = s.split(":", 1)
    # Tolerate "HH:MM:SS"; seconds are ignored.
    mm_str = mm_str.split(":", 1)[0]
    hour = int(hh_str)
    minute = int(mm_str)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}")
    return dt_time(hour=hour, minute=minute)


def sunday_based_weekday(d: date) -> int:
    return (d.weekday() + 1) % 7


@dataclass(frozen=True)
class OneTimeWindow:
    kind: ClassVar[str] = "one_time"

    start: datetime
    end: datetime

    def contains(self, now: datetime) -> bool:
        return self.start <= now <= self.end

    def span_at(self, now: datetime) -> tuple[datetime, datetime] | None:
        return (self.start, self.end) if self.contains(now) else None

    def next_start(self, now: datetime) -> datetime | None:
        return self.start if self.start > now else None

    def end_for(self, start: datetime) -> datetime:
        return self.end

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class RecurringWindow:
    kind: ClassVar[str] = "recurring"

    day_of_week: int
    start_time: dt_time
    end_time: dt_time
    timezone: str = "UTC"

    @property
    def tz(self) -> tzinfo:
        return load_timezone(self.timezone) or timezone.utc

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time < self.start_time

    def _at(self, day: date, t: dt_time) -> datetime:
        return datetime.combine(day, t, tzinfo=self.tz)

    def span_at(self, now: datetime) -> tuple[datetime, datetime] | None:
        local = now.astimezone(self.tz)
        today = local.date()
        dow = sunday_based_weekday(today)

        if not self.crosses_midnight:
            if dow != self.day_of_week:
                return None
            start = self._at(today, self.start_time)
            end = self._at(today, self.end_time)
            return (start, end) if start <= local <= end else None

        if dow == self.day_of_week:
            start = self._at(today, self.start_time)
            if local >= start:
                return start, self._at(today + timedelta(days=1), self.end_time)
        if dow == (self.day_of_week + 1) % 7:
            end = self._at(today, self.end_time)
            if local <= end:
                return self._at(today - timedelta(days=1), self.start_time), end
        return None

    def contains(self, now: datetime) -> bool:
        return self.span_at(now) is not None

    def next_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        today = local.date()
        dow = sunday_based_weekday(today)
        if dow == self.day_of_week:
            todays_start = self._at(today, self.start_time)
            if todays_start > local:
                return todays_start
        days_ahead = (self.day_of_week - dow) % 7 or 7
        return self._at(today + timedelta(days=days_ahead), self.start_time)

    def end_for(self, start: datetime) -> datetime:
        local_start = start.astimezone(self.tz)
        end = self._at(local_start.date(), self.end_time)
        if end < local_start:
            end = self._at(local_start.date() + timedelta(days=1), self.end_time)
        return end

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "day_of_week": self.day_of_week,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "timezone": self.timezone,
        }


MaintenanceWindow = Union[OneTimeWindow, RecurringWindow]


def _parse_one_time(raw: dict[str, Any]) -> OneTimeWindow | None:
    start = parse_instant(raw.get("start"))
    end = parse_instant(raw.get("end"))
    if start is None or end is None or end < start:
        return None
    return OneTimeWindow(start=start, end=end)


def _parse_recurring(raw: dict[str, Any], default_timezone: str) -> RecurringWindow | None:
    day = raw.get("day_of_week")
    if day is None or isinstance(day, bool):
        return None
    try:
        day_of_week = int(day)
        start_time = parse_hhmm(raw.get("start_time"))
        end_time = parse_hhmm(raw.get("end_time"))
    except (TypeError, ValueError):
        return None
    if not 0 <= day_of_week <= 6:
        return None
    tz_name = str(raw.get("timezone") or default_timezone or "UTC").strip()
    if load_timezone(tz_name) is None:
        return None
    return RecurringWindow(day_of_week=day_of_week, start_time=start_time, end_time=end_time, timezone=tz_name)


def parse_maintenance_window(raw: Any, *, default_timezone: str = "UTC") -> MaintenanceWindow | None:
    if isinstance(raw, (OneTimeWindow, RecurringWindow)):
        return raw
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == OneTimeWindow.kind:
        return _parse_one_time(raw)
    if kind == RecurringWindow.kind:
        return _parse_recurring(raw, default_timezone)
    return None


def parse_maintenance_windows(raw: Any, *, default_timezone: str = "UTC") -> list[MaintenanceWindow]:
    if not isinstance(raw, (list, tuple)):
        return []
    windows: list[MaintenanceWindow] = []
    for idx, item in enumerate(raw):
        window = parse_maintenance_window(item, default_timezone=default_timezone)
        if window is None:
            logger.warning("Ignoring malformed maintenance window", index=idx, window=item)
            continue
        windows.append(window)
    return windows


@dataclass(frozen=True)
class UpcomingWindow:
    window: MaintenanceWindow
    starts_at: datetime
    ends_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.window.to_dict(),
            "next_start": self.starts_at.isoformat(),
            "next_end": self.ends_at.isoformat(),
        }


class MaintenanceWindowEvaluator:
    """Decides whether a monitor is inside a declared maintenance window."""

    def __init__(
        self,
        clock: Clock | None = None,
        repository: MonitorRepository | None = None,
        *,
        reference_timezone: str = "UTC",
    ) -> None:
        self.clock = clock or SystemClock()
        self.repository = repository
        self.reference_tz = load_timezone(reference_timezone) or timezone.utc

    def _now(self, now: datetime | None) -> datetime:
        return ensure_aware(now) if now is not None else self.clock.now()

    def is_in_maintenance(self, monitor: Monitor, now: datetime | None = None) -> bool:
        now = self._now(now)
        if monitor.is_in_maintenance and monitor.maintenance_ends_at is not None:
            if ensure_aware(monitor.maintenance_ends_at) > now:
                return True
        return any(window.contains(now) for window in monitor.maintenance_windows)

    def active_window(self, monitor: Monitor, now: datetime | None = None) -> tuple[datetime, datetime] | None:
        now = self._now(now)
        for window in monitor.maintenance_windows:
            span = window.span_at(now)
            if span is not None:
                start, end = span
                return start.astimezone(self.reference_tz), end.astimezone(self.reference_tz)
        return None

    def update_status(self, monitor: Monitor, now: datetime | None = None) -> bool:
        """
        Re-evaluate the cached flag. Persists (quietly) only when it flips.
        """
        now = self._now(now)
        in_maintenance = self.is_in_maintenance(monitor, now)
        if in_maintenance == bool(monitor.is_in_maintenance):
            return False

        monitor.is_in_maintenance = in_maintenance
        if in_maintenance:
            span = self.active_window(monitor, now)
            if span is not None:
                monitor.maintenance_starts_at, monitor.maintenance_ends_at = span
            logger.info(
                "Monitor entered maintenance",
                monitor_id=monitor.id,
                url=monitor.url,
                ends_at=monitor.maintenance_ends_at.isoformat() if monitor.maintenance_ends_at else None,
            )
        else:
            monitor.maintenance_starts_at = None
            monitor.maintenance_ends_at = None
            logger.info("Monitor exited maintenance", monitor_id=monitor.id, url=monitor.url)

        if self.repository is not None:
            self.repository.save(monitor, quiet=True)
        return True

    def update_all(self, monitors: Iterable[Monitor], now: datetime | None = None) -> int:
        now = self._now(now)
        updated = 0
        for monitor in monitors:
            if not monitor.maintenance_windows and not monitor.is_in_maintenance:
                continue
            if self.update_status(monitor, now):
                updated += 1
        return updated

    def next_window(self, monitor: Monitor, now: datetime | None = None) -> UpcomingWindow | None:
        now = self._now(now)
        best: UpcomingWindow | None = None
        for window in monitor.maintenance_windows:
            start = window.next_start(now)
            if start is None:
                continue
            if best is None or start < best.starts_at:
                best = UpcomingWindow(
                    window=window,
                    starts_at=start.astimezone(self.reference_tz),
                    ends_at=window.end_for(start).astimezone(self.reference_tz),
                )
        return best

    def prune_expired(self, monitors: Iterable[Monitor], now: datetime | None = None) -> int:
        """Drop one-time windows that have already ended. Recurring windows are kept."""
        now = self._now(now)
        cleaned = 0
        for monitor in monitors:
            windows = list(monitor.maintenance_windows)
            kept = [w for w in windows if not isinstance(w, OneTimeWindow) or w.end >= now]
            if len(kept) == len(windows):
                continue
            monitor.maintenance_windows = kept
            if self.repository is not None:
                self.repository.save(monitor, quiet=True)
            logger.info(
                "Pruned expired maintenance windows",
                monitor_id=monitor.id,
                removed=len(windows) - len(kept),
            )
            cleaned += 1
        return cleaned
