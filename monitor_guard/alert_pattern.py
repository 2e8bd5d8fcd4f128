from __future__ import annotations

import math
from enum import Enum
from typing import Any

import structlog

from monitor_guard.models import Incident, Monitor


logger = structlog.get_logger(__name__)

FIBONACCI_TABLE = frozenset({1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 144, 233, 377, 610, 987})
_TABLE_MAX = 987


class AlertPattern(str, Enum):
    EVERY = "every"
    FIBONACCI = "fibonacci"


PATTERN_LABELS: dict[AlertPattern, str] = {
    AlertPattern.EVERY: "Every failure",
    AlertPattern.FIBONACCI: "Fibonacci (1, 2, 3, 5, 8, 13...)",
}


def _is_perfect_square(value: int) -> bool:
    if value < 0:
        return False
    root = math.isqrt(value)
    return root * root == value


def is_fibonacci_number(n: int) -> bool:
    if n < 1:
        return False
    if n <= _TABLE_MAX:
        return n in FIBONACCI_TABLE
    square = 5 * n * n
    return _is_perfect_square(square + 4) or _is_perfect_square(square - 4)


class AlertPatternEvaluator:
    """
    Decides which consecutive-failure counts produce a down alert.

    A monitor without an `alert_pattern` setting (null settings, empty map, empty
    string) alerts on every failure; monitors created before patterns existed
    depend on that.
    """

    def resolve_pattern(self, monitor: Monitor) -> AlertPattern:
        settings: Any = monitor.notification_settings or {}
        raw = settings.get("alert_pattern") if isinstance(settings, dict) else None
        if not raw:
            return AlertPattern.EVERY
        try:
            return AlertPattern(str(raw).strip().lower())
        except ValueError:
            logger.warning("Unknown alert pattern; alerting on every failure", monitor_id=monitor.id, pattern=raw)
            return AlertPattern.EVERY

    def fires_at(self, pattern: AlertPattern, failures: int) -> bool:
        if pattern is AlertPattern.FIBONACCI:
            return is_fibonacci_number(failures)
        return True

    def should_send_down_alert(self, monitor: Monitor) -> bool:
        pattern = self.resolve_pattern(monitor)
        failures = int(monitor.times_failed_in_a_row or 0)
        send = self.fires_at(pattern, failures)
        logger.debug(
            "Alert pattern evaluated",
            monitor_id=monitor.id,
            pattern=pattern.value,
            failures=failures,
            send=send,
        )
        return send

    def should_send_recovery_alert(self, incident: Incident | None) -> bool:
        return incident is not None and bool(incident.down_alert_sent)

    def is_fibonacci_number(self, n: int) -> bool:
        return is_fibonacci_number(n)

    def next_alert_at(self, monitor: Monitor) -> int:
        """The next failure count (after the current one) at which a down alert would fire."""
        pattern = self.resolve_pattern(monitor)
        current = int(monitor.times_failed_in_a_row or 0)
        if pattern is AlertPattern.EVERY:
            return current + 1
        a, b = 1, 2
        while a <= current:
            a, b = b, a + b
        return a

    def pattern_options(self) -> dict[str, str]:
        return {pattern.value: label for pattern, label in PATTERN_LABELS.items()}

    def mark_down_alert_sent(self, incident: Incident, monitor: Monitor) -> None:
        failures = int(monitor.times_failed_in_a_row or 0)
        if not self.fires_at(self.resolve_pattern(monitor), failures):
            raise ValueError(f"Alert pattern does not fire at failure count {failures}")
        incident.down_alert_sent = True
        incident.last_alert_at_failure_count = failures
