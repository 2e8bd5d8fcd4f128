from __future__ import annotations

from pathlib import Path

import pytest

from monitor_guard.config import GuardConfig, load_config


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MONITOR_GUARD_CONFIG",
        "LOG_LEVEL",
        "APP_TIMEZONE",
        "MONITOR_GUARD_MONITORS",
        "CONFIRMATION_CHECK_ENABLED",
        "CONFIRMATION_CHECK_TIMEOUT",
        "UPTIME_ADDITIONAL_STATUS_CODES",
        "EMAIL_DAILY_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    cfg = load_config(str(tmp_path / "missing.yaml"))
    assert cfg == GuardConfig()
    assert cfg.confirmation_check.enabled is True
    assert cfg.rate_limits.email_daily_limit == 10
    assert cfg.rate_limits.twitter_hourly_limit == 30
    assert cfg.rate_limits.telegram_minute_limit == 20
    assert cfg.uptime_check.additional_status_codes == []


def test_yaml_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    path = tmp_path / "guard.yaml"
    path.write_text(
        "\n".join(
            [
                "app_timezone: Europe/Amsterdam",
                "confirmation_check:",
                "  enabled: true",
                "rate_limits:",
                "  email_daily_limit: 25",
                "  telegram_hour_limit: 50",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("MONITOR_GUARD_CONFIG", str(path))
    monkeypatch.setenv("CONFIRMATION_CHECK_ENABLED", "false")
    monkeypatch.setenv("UPTIME_ADDITIONAL_STATUS_CODES", "401, 403")
    monkeypatch.setenv("EMAIL_DAILY_LIMIT", "0")

    cfg = load_config()
    assert cfg.app_timezone == "Europe/Amsterdam"
    assert cfg.confirmation_check.enabled is False
    assert cfg.uptime_check.additional_status_codes == [401, 403]
    assert cfg.rate_limits.email_daily_limit == 0
    assert cfg.rate_limits.telegram_hour_limit == 50


def test_bad_config_raises_value_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    path = tmp_path / "guard.yaml"
    path.write_text("- not\n- a mapping\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))

    path.write_text("rate_limits:\n  email_daily_limit: -1\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))

    monkeypatch.setenv("CONFIRMATION_CHECK_TIMEOUT", "soon")
    with pytest.raises(ValueError, match="CONFIRMATION_CHECK_TIMEOUT"):
        load_config(str(tmp_path / "missing.yaml"))
