"""Configuration management for the monitor guard."""

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_CONFIG_PATH = "config/monitor_guard.yaml"


class ConfirmationCheckConfig(BaseModel):
    """Re-verification of a first failure before it counts as an outage."""
    enabled: bool = Field(default=True, description="Run a confirmation cycle on the first failure of an incident")
    timeout_seconds: Optional[float] = Field(default=None, description="Probe timeout override (defaults to the monitor's)")


class UptimeCheckConfig(BaseModel):
    """Probe acceptance settings."""
    additional_status_codes: list[int] = Field(default_factory=list, description="Extra status codes treated as up")
    default_sensitivity: str = Field(default="medium", description="Preset used when a monitor sets none")


class RateLimitConfig(BaseModel):
    """Per-channel notification caps."""
    email_daily_limit: int = Field(default=10, ge=0, description="Emails per identity per day (0 = unlimited)")
    twitter_hourly_limit: int = Field(default=30, ge=0, description="Posts per identity+channel per hour")
    twitter_daily_limit: int = Field(default=200, ge=0, description="Posts per identity+channel per day")
    telegram_minute_limit: int = Field(default=20, ge=0, description="Messages per identity+chat per minute")
    telegram_hour_limit: int = Field(default=100, ge=0, description="Messages per identity+chat per hour")
    telegram_max_backoff_minutes: int = Field(default=60, ge=1, description="Upper bound for the backoff period")


class GuardConfig(BaseModel):
    """Main configuration for the monitor guard."""

    log_level: str = Field(default="INFO", description="Logging level")
    app_timezone: str = Field(default="UTC", description="Reference timezone for windows and daily counters")
    monitors_file: str = Field(default="config/monitors.yaml", description="YAML file with the monitors list")

    confirmation_check: ConfirmationCheckConfig = Field(default_factory=ConfirmationCheckConfig)
    uptime_check: UptimeCheckConfig = Field(default_factory=UptimeCheckConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_int_list(value: str) -> list[int]:
    return [int(part) for part in value.replace(" ", "").split(",") if part]


def load_config(config_path: Optional[str] = None) -> GuardConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("MONITOR_GUARD_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError(f"Config root must be a mapping: {config_path}")

    env_overrides = {
        "log_level": os.getenv("LOG_LEVEL"),
        "app_timezone": os.getenv("APP_TIMEZONE"),
        "monitors_file": os.getenv("MONITOR_GUARD_MONITORS"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            config_data[key] = value

    # Nested sections: (section, field, env var, converter)
    nested_overrides = [
        ("confirmation_check", "enabled", "CONFIRMATION_CHECK_ENABLED", _parse_bool),
        ("confirmation_check", "timeout_seconds", "CONFIRMATION_CHECK_TIMEOUT", float),
        ("uptime_check", "additional_status_codes", "UPTIME_ADDITIONAL_STATUS_CODES", _parse_int_list),
        ("rate_limits", "email_daily_limit", "EMAIL_DAILY_LIMIT", int),
    ]
    for section, field, env_name, convert in nested_overrides:
        raw = os.getenv(env_name)
        if raw is None:
            continue
        target = config_data.get(section)
        if not isinstance(target, dict):
            target = {}
            config_data[section] = target
        try:
            target[field] = convert(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc

    return GuardConfig(**config_data)


def get_config() -> GuardConfig:
    """Get the global configuration instance."""
    return load_config()
