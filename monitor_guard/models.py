from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

import structlog
import yaml

from monitor_guard.clock import parse_instant
from monitor_guard.maintenance import MaintenanceWindow, parse_maintenance_windows


logger = structlog.get_logger(__name__)


@dataclass
class Monitor:
    id: int | str
    url: str
    expected_status_code: int = 200
    additional_headers: dict[str, str] = field(default_factory=dict)
    payload: str | None = None
    look_for_string: str | None = None
    timeout_seconds: float = 5.0
    times_failed_in_a_row: int = 0
    notification_settings: dict[str, Any] | None = None
    maintenance_windows: list[MaintenanceWindow] = field(default_factory=list)
    is_in_maintenance: bool = False
    maintenance_starts_at: datetime | None = None
    maintenance_ends_at: datetime | None = None
    sensitivity: str = "medium"
    confirmation_retries: int | None = None
    enabled: bool = True
    uptime_status: str = "unknown"
    failure_reason: str | None = None
    transient_failures_count: int = 0

    def __post_init__(self) -> None:
        # Accept raw JSON-shaped windows for convenience; they are parsed once here.
        if any(isinstance(w, dict) for w in self.maintenance_windows):
            self.maintenance_windows = parse_maintenance_windows(self.maintenance_windows)


@dataclass
class Incident:
    id: int | str
    monitor_id: int | str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    down_alert_sent: bool = False
    last_alert_at_failure_count: int | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass(frozen=True)
class NotificationChannel:
    kind: str
    destination: str
    id: int | str | None = None
    enabled: bool = True

    @property
    def key(self) -> str:
        return str(self.destination if self.destination else self.id)


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_str_dict(value: Any) -> dict[str, str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if k}


def monitor_from_dict(raw: dict[str, Any], *, default_timezone: str = "UTC") -> Monitor:
    if not isinstance(raw, dict):
        raise ValueError(f"Monitor entry must be a mapping, got {type(raw).__name__}")
    url = str(raw.get("url") or "").strip()
    if not url:
        raise ValueError("Monitor entry requires a url")

    settings = raw.get("notification_settings")
    retries = raw.get("confirmation_retries") or 0
    return Monitor(
        id=raw.get("id") if raw.get("id") is not None else url,
        url=url,
        expected_status_code=_coerce_int(raw.get("expected_status_code"), default=200),
        additional_headers=_coerce_str_dict(raw.get("additional_headers")),
        payload=raw.get("payload") or None,
        look_for_string=raw.get("look_for_string") or None,
        timeout_seconds=_coerce_float(raw.get("timeout_seconds"), default=5.0),
        times_failed_in_a_row=_coerce_int(raw.get("times_failed_in_a_row"), default=0),
        notification_settings=settings if isinstance(settings, dict) else None,
        maintenance_windows=parse_maintenance_windows(
            raw.get("maintenance_windows"), default_timezone=default_timezone
        ),
        is_in_maintenance=bool(raw.get("is_in_maintenance", False)),
        maintenance_starts_at=parse_instant(raw.get("maintenance_starts_at")),
        maintenance_ends_at=parse_instant(raw.get("maintenance_ends_at")),
        sensitivity=str(raw.get("sensitivity") or "medium"),
        confirmation_retries=_coerce_int(retries, default=0) or None,
        enabled=raw.get("enabled") is not False,
        uptime_status=str(raw.get("uptime_status") or "unknown"),
        failure_reason=raw.get("failure_reason") or None,
        transient_failures_count=_coerce_int(raw.get("transient_failures_count"), default=0),
    )


def monitor_to_dict(monitor: Monitor) -> dict[str, Any]:
    def _iso(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt is not None else None

    return {
        "id": monitor.id,
        "url": monitor.url,
        "expected_status_code": monitor.expected_status_code,
        "additional_headers": dict(monitor.additional_headers),
        "payload": monitor.payload,
        "look_for_string": monitor.look_for_string,
        "timeout_seconds": monitor.timeout_seconds,
        "times_failed_in_a_row": monitor.times_failed_in_a_row,
        "notification_settings": monitor.notification_settings,
        "maintenance_windows": [w.to_dict() for w in monitor.maintenance_windows],
        "is_in_maintenance": monitor.is_in_maintenance,
        "maintenance_starts_at": _iso(monitor.maintenance_starts_at),
        "maintenance_ends_at": _iso(monitor.maintenance_ends_at),
        "sensitivity": monitor.sensitivity,
        "confirmation_retries": monitor.confirmation_retries,
        "enabled": monitor.enabled,
        "uptime_status": monitor.uptime_status,
        "failure_reason": monitor.failure_reason,
        "transient_failures_count": monitor.transient_failures_count,
    }


class MonitorRepository(Protocol):
    def save(self, monitor: Monitor, *, quiet: bool = False) -> None: ...

    def all(self) -> list[Monitor]: ...


MonitorObserver = Callable[[Monitor], None]


class InMemoryMonitorRepository:
    """
    Keeps monitors in a dict. Non-quiet saves notify observers (the hook that
    status-change alerting hangs off); quiet saves never do.
    """

    def __init__(self, monitors: Iterable[Monitor] = ()) -> None:
        self._monitors: dict[str, Monitor] = {str(m.id): m for m in monitors}
        self.observers: list[MonitorObserver] = []
        self.save_count = 0

    def save(self, monitor: Monitor, *, quiet: bool = False) -> None:
        self._monitors[str(monitor.id)] = monitor
        self.save_count += 1
        if quiet:
            return
        for observer in list(self.observers):
            observer(monitor)

    def all(self) -> list[Monitor]:
        return list(self._monitors.values())

    def get(self, monitor_id: int | str) -> Monitor | None:
        return self._monitors.get(str(monitor_id))


def _write_yaml_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
    tmp.replace(path)


class YamlMonitorRepository(InMemoryMonitorRepository):
    """Monitors backed by a YAML file with a top-level `monitors:` list."""

    def __init__(self, path: Path, *, default_timezone: str = "UTC") -> None:
        self.path = Path(path)
        super().__init__(load_monitors(self.path, default_timezone=default_timezone))

    def save(self, monitor: Monitor, *, quiet: bool = False) -> None:
        super().save(monitor, quiet=quiet)
        self.flush()

    def flush(self) -> None:
        _write_yaml_atomic(self.path, {"monitors": [monitor_to_dict(m) for m in self.all()]})


def load_monitors(path: Path, *, default_timezone: str = "UTC") -> list[Monitor]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Monitors YAML must be a mapping")
    entries = data.get("monitors") or []
    if not isinstance(entries, list):
        raise ValueError("monitors must be a list")

    monitors: list[Monitor] = []
    seen: set[str] = set()
    for idx, entry in enumerate(entries):
        try:
            monitor = monitor_from_dict(entry, default_timezone=default_timezone)
        except ValueError as exc:
            raise ValueError(f"monitors[{idx}]: {exc}") from exc
        if str(monitor.id) in seen:
            raise ValueError(f"Duplicate monitor id: {monitor.id}")
        seen.add(str(monitor.id))
        monitors.append(monitor)
    logger.debug("Loaded monitors", path=str(path), count=len(monitors))
    return monitors
