from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from monitor_guard.clock import FixedClock, parse_instant
from monitor_guard.maintenance import OneTimeWindow, RecurringWindow
from monitor_guard.models import (
    InMemoryMonitorRepository,
    Monitor,
    NotificationChannel,
    YamlMonitorRepository,
    load_monitors,
    monitor_from_dict,
    monitor_to_dict,
)
from monitor_guard.store import MemoryStore


def _clock() -> FixedClock:
    return FixedClock(datetime(2025, 12, 15, 12, 0, tzinfo=timezone.utc))


def test_memory_store_expiry() -> None:
    clock = _clock()
    store = MemoryStore(clock)
    store.set("a", {"x": 1}, ttl_seconds=60)
    store.set("forever", 1)

    assert store.get("a") == {"x": 1}
    assert store.ttl("a") == 60
    assert store.ttl("forever") is None

    clock.advance(seconds=61)
    assert store.get("a") is None
    assert store.get("a", "missing") == "missing"
    assert store.get("forever") == 1


def test_incr_sets_ttl_only_on_create() -> None:
    clock = _clock()
    store = MemoryStore(clock)
    assert store.incr("c", ttl_seconds=60) == 1
    clock.advance(seconds=30)
    assert store.incr("c", ttl_seconds=60) == 2
    assert store.ttl("c") == 30

    clock.advance(seconds=31)
    assert store.get("c") is None
    assert store.incr("c", ttl_seconds=60) == 1

    store.delete("c")
    assert store.get("c") is None


def test_incr_is_atomic_across_threads() -> None:
    store = MemoryStore(_clock())

    def worker() -> None:
        for _ in range(500):
            store.incr("hits", ttl_seconds=3600)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get("hits") == 4000


def test_per_key_lock_serializes_read_modify_write() -> None:
    store = MemoryStore(_clock())
    store.set("state", {"n": 0})

    def worker() -> None:
        for _ in range(200):
            with store.lock("state"):
                state = dict(store.get("state"))
                state["n"] += 1
                store.set("state", state)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get("state") == {"n": 1200}


def test_parse_instant() -> None:
    assert parse_instant("2025-12-15T02:00:00Z") == datetime(2025, 12, 15, 2, tzinfo=timezone.utc)
    assert parse_instant(datetime(2025, 12, 15, 2)) == datetime(2025, 12, 15, 2, tzinfo=timezone.utc)
    assert parse_instant(0) is None
    assert parse_instant(True) is None
    assert parse_instant("") is None
    assert parse_instant("yesterday") is None


def test_monitor_from_dict_coerces_loose_values() -> None:
    monitor = monitor_from_dict(
        {
            "id": 12,
            "url": " https://service.test/health ",
            "expected_status_code": "204",
            "additional_headers": '{"Authorization": "Bearer x"}',
            "timeout_seconds": "bad",
            "confirmation_retries": 0,
            "enabled": None,
            "maintenance_windows": [
                {"type": "recurring", "day_of_week": 0, "start_time": "23:00", "end_time": "02:00"},
                {"type": "bogus"},
            ],
        },
        default_timezone="Europe/Amsterdam",
    )
    assert monitor.url == "https://service.test/health"
    assert monitor.expected_status_code == 204
    assert monitor.additional_headers == {"Authorization": "Bearer x"}
    assert monitor.timeout_seconds == 5.0
    assert monitor.confirmation_retries is None
    assert monitor.enabled is True
    assert len(monitor.maintenance_windows) == 1
    assert monitor.maintenance_windows[0].timezone == "Europe/Amsterdam"

    with pytest.raises(ValueError):
        monitor_from_dict({"id": 1})


def test_monitor_parses_raw_windows_on_construction() -> None:
    monitor = Monitor(
        id=1,
        url="https://service.test/",
        maintenance_windows=[{"type": "one_time", "start": "2025-12-15T02:00:00Z", "end": "2025-12-15T04:00:00Z"}],
    )
    assert isinstance(monitor.maintenance_windows[0], OneTimeWindow)


def test_channel_key_prefers_destination() -> None:
    assert NotificationChannel(kind="telegram", destination="-100", id=3).key == "-100"
    assert NotificationChannel(kind="twitter", destination="", id=3).key == "3"


def test_repository_observers_skip_quiet_saves() -> None:
    monitor = Monitor(id=1, url="https://service.test/")
    repository = InMemoryMonitorRepository([monitor])
    seen: list[Monitor] = []
    repository.observers.append(seen.append)

    repository.save(monitor, quiet=True)
    assert seen == []
    repository.save(monitor)
    assert seen == [monitor]
    assert repository.save_count == 2
    assert repository.get(1) is monitor


def test_yaml_repository_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "monitors.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "monitors": [
                    {
                        "id": 1,
                        "url": "https://service.test/",
                        "notification_settings": {"alert_pattern": "fibonacci"},
                        "maintenance_windows": [
                            {"type": "recurring", "day_of_week": 6, "start_time": "01:00", "end_time": "03:00"}
                        ],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    repository = YamlMonitorRepository(path)
    monitor = repository.get(1)
    assert isinstance(monitor.maintenance_windows[0], RecurringWindow)

    monitor.is_in_maintenance = True
    monitor.maintenance_ends_at = datetime(2025, 12, 20, 3, tzinfo=timezone.utc)
    repository.save(monitor, quiet=True)
    assert not (tmp_path / "monitors.yaml.tmp").exists()

    reloaded = load_monitors(path)
    assert reloaded[0].is_in_maintenance is True
    assert reloaded[0].maintenance_ends_at == datetime(2025, 12, 20, 3, tzinfo=timezone.utc)
    assert reloaded[0].notification_settings == {"alert_pattern": "fibonacci"}
    assert monitor_to_dict(reloaded[0])["maintenance_windows"] == [
        {"type": "recurring", "day_of_week": 6, "start_time": "01:00", "end_time": "03:00", "timezone": "UTC"}
    ]


def test_load_monitors_rejects_bad_shapes(tmp_path: Path) -> None:
    path = tmp_path / "monitors.yaml"
    path.write_text("- just a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_monitors(path)

    path.write_text(
        yaml.safe_dump({"monitors": [{"id": 1, "url": "https://a.test"}, {"id": 1, "url": "https://b.test"}]}),
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="Duplicate monitor id"):
        load_monitors(path)
