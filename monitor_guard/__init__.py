"""Downtime confirmation, maintenance suppression and alert throttling for uptime monitors."""

from .alert_pattern import AlertPattern, AlertPatternEvaluator
from .errors import ErrorKind, classify_error
from .guard import DeliveryOutcome, DowntimeGuard, GuardDecision
from .maintenance import MaintenanceWindowEvaluator
from .rate_limits import RateLimiterRegistry
from .retry import ConfirmationRetryEngine, RetryAttempt, RetryResult, SensitivityPreset, get_preset

__all__ = [
    "AlertPattern",
    "AlertPatternEvaluator",
    "ConfirmationRetryEngine",
    "DeliveryOutcome",
    "DowntimeGuard",
    "ErrorKind",
    "GuardDecision",
    "MaintenanceWindowEvaluator",
    "RateLimiterRegistry",
    "RetryAttempt",
    "RetryResult",
    "SensitivityPreset",
    "classify_error",
    "get_preset",
]
