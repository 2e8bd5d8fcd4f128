"""Failed-check pipeline.

failed check -> maintenance short-circuit -> confirmation (first failure only)
-> alert pattern -> per-channel rate limiter -> send -> track outcome
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Union

import structlog

from monitor_guard.alert_pattern import AlertPatternEvaluator
from monitor_guard.clock import Clock, SystemClock
from monitor_guard.config import GuardConfig
from monitor_guard.maintenance import MaintenanceWindowEvaluator
from monitor_guard.models import Incident, Monitor, MonitorRepository, NotificationChannel
from monitor_guard.rate_limits import Identity, RateLimiterRegistry
from monitor_guard.retry import ConfirmationRetryEngine, RetryResult, get_preset


logger = structlog.get_logger(__name__)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    # The provider answered "too many requests".
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    # Blocked locally by the channel's limiter; never attempted.
    THROTTLED = "throttled"


class GuardAction(str, Enum):
    DISABLED = "disabled"
    MAINTENANCE = "maintenance"
    TRANSIENT = "transient"
    SUPPRESSED = "suppressed"
    NOTIFIED = "notified"
    UNDELIVERED = "undelivered"


@dataclass(frozen=True)
class Notification:
    event: str
    monitor_id: int | str
    url: str
    failure_count: int
    message: str | None = None


@dataclass(frozen=True)
class Delivery:
    channel: NotificationChannel
    outcome: DeliveryOutcome

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.channel.kind, "destination": self.channel.destination, "outcome": self.outcome.value}


@dataclass
class GuardDecision:
    action: GuardAction
    result: RetryResult | None = None
    deliveries: list[Delivery] = field(default_factory=list)

    @property
    def sent(self) -> bool:
        return any(d.outcome is DeliveryOutcome.SENT for d in self.deliveries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "result": self.result.to_dict() if self.result is not None else None,
            "deliveries": [d.to_dict() for d in self.deliveries],
        }


SenderReturn = Union[DeliveryOutcome, str, None]
Sender = Callable[[NotificationChannel, Notification], Union[SenderReturn, Awaitable[SenderReturn]]]


class DowntimeGuard:
    def __init__(
        self,
        sender: Sender,
        *,
        config: GuardConfig | None = None,
        clock: Clock | None = None,
        repository: MonitorRepository | None = None,
        engine: ConfirmationRetryEngine | None = None,
        maintenance: MaintenanceWindowEvaluator | None = None,
        alert_patterns: AlertPatternEvaluator | None = None,
        rate_limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self.sender = sender
        self.config = config or GuardConfig()
        self.clock = clock or SystemClock()
        self.repository = repository
        self.engine = engine or ConfirmationRetryEngine(
            additional_status_codes=self.config.uptime_check.additional_status_codes,
            timeout_seconds=self.config.confirmation_check.timeout_seconds,
        )
        self.maintenance = maintenance or MaintenanceWindowEvaluator(
            self.clock, repository, reference_timezone=self.config.app_timezone
        )
        self.alert_patterns = alert_patterns or AlertPatternEvaluator()
        self.rate_limiters = rate_limiters or RateLimiterRegistry(
            clock=self.clock,
            config=self.config.rate_limits,
            reference_timezone=self.config.app_timezone,
        )

    def _in_maintenance(self, monitor: Monitor) -> bool:
        self.maintenance.update_status(monitor)
        if self.maintenance.is_in_maintenance(monitor):
            logger.info("Monitor in maintenance; skipping", monitor_id=monitor.id, url=monitor.url)
            return True
        return False

    def _save_quietly(self, monitor: Monitor) -> None:
        if self.repository is not None:
            self.repository.save(monitor, quiet=True)

    def needs_confirmation(self, monitor: Monitor) -> bool:
        return bool(self.config.confirmation_check.enabled) and int(monitor.times_failed_in_a_row or 0) == 1

    async def confirm(self, monitor: Monitor) -> RetryResult:
        preset = get_preset(monitor.sensitivity or self.config.uptime_check.default_sensitivity)
        result = await self.engine.confirm(monitor, preset)
        if result.success:
            monitor.times_failed_in_a_row = 0
            monitor.uptime_status = "up"
            monitor.failure_reason = None
            monitor.transient_failures_count = int(monitor.transient_failures_count or 0) + 1
            logger.info(
                "Failure not confirmed; marked transient",
                monitor_id=monitor.id,
                url=monitor.url,
                transient_failures=monitor.transient_failures_count,
            )
        else:
            monitor.uptime_status = "down"
            monitor.failure_reason = result.message
            logger.warning("Downtime confirmed", monitor_id=monitor.id, url=monitor.url, reason=result.message)
        self._save_quietly(monitor)
        return result

    async def handle_failed_check(
        self,
        monitor: Monitor,
        incident: Incident | None,
        channels: Iterable[NotificationChannel],
        identity: Identity,
    ) -> GuardDecision:
        if not monitor.enabled:
            return GuardDecision(GuardAction.DISABLED)
        if self._in_maintenance(monitor):
            return GuardDecision(GuardAction.MAINTENANCE)

        result: RetryResult | None = None
        if self.needs_confirmation(monitor):
            result = await self.confirm(monitor)
            if result.success:
                return GuardDecision(GuardAction.TRANSIENT, result=result)

        if not self.alert_patterns.should_send_down_alert(monitor):
            return GuardDecision(GuardAction.SUPPRESSED, result=result)

        notification = Notification(
            event="down",
            monitor_id=monitor.id,
            url=monitor.url,
            failure_count=int(monitor.times_failed_in_a_row or 0),
            message=monitor.failure_reason,
        )
        decision = GuardDecision(GuardAction.UNDELIVERED, result=result)
        decision.deliveries = await self._fan_out(channels, notification, identity)
        if decision.sent:
            decision.action = GuardAction.NOTIFIED
            if incident is not None:
                self.alert_patterns.mark_down_alert_sent(incident, monitor)
        return decision

    async def handle_recovery(
        self,
        monitor: Monitor,
        incident: Incident | None,
        channels: Iterable[NotificationChannel],
        identity: Identity,
    ) -> GuardDecision:
        if not monitor.enabled:
            return GuardDecision(GuardAction.DISABLED)
        if self._in_maintenance(monitor):
            return GuardDecision(GuardAction.MAINTENANCE)
        if not self.alert_patterns.should_send_recovery_alert(incident):
            logger.info("Recovery alert suppressed; no down alert was sent", monitor_id=monitor.id)
            return GuardDecision(GuardAction.SUPPRESSED)

        notification = Notification(
            event="recovery",
            monitor_id=monitor.id,
            url=monitor.url,
            failure_count=int(monitor.times_failed_in_a_row or 0),
        )
        decision = GuardDecision(GuardAction.UNDELIVERED)
        decision.deliveries = await self._fan_out(channels, notification, identity)
        if decision.sent:
            decision.action = GuardAction.NOTIFIED
        return decision

    async def _send(self, channel: NotificationChannel, notification: Notification) -> DeliveryOutcome:
        try:
            outcome = self.sender(channel, notification)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception:
            logger.exception(
                "Notification sender raised",
                kind=channel.kind,
                destination=channel.destination,
                monitor_id=notification.monitor_id,
            )
            return DeliveryOutcome.FAILED
        if outcome is None:
            return DeliveryOutcome.SENT
        try:
            return DeliveryOutcome(outcome)
        except ValueError:
            logger.warning("Sender returned an unknown outcome", kind=channel.kind, outcome=outcome)
            return DeliveryOutcome.FAILED

    @staticmethod
    def _track(
        record: Callable[[Identity, NotificationChannel], None], identity: Identity, channel: NotificationChannel
    ) -> None:
        # The message is already out; a tracking failure must not undo that.
        try:
            record(identity, channel)
        except Exception:
            logger.exception(
                "Rate limit tracking failed",
                kind=channel.kind,
                destination=channel.destination,
                identity=identity,
            )

    async def _fan_out(
        self, channels: Iterable[NotificationChannel], notification: Notification, identity: Identity
    ) -> list[Delivery]:
        deliveries: list[Delivery] = []
        for channel in channels:
            if not channel.enabled:
                continue
            limiter = self.rate_limiters.for_channel(channel)
            if not limiter.should_send(identity, channel):
                deliveries.append(Delivery(channel, DeliveryOutcome.THROTTLED))
                continue

            outcome = await self._send(channel, notification)
            if outcome is DeliveryOutcome.SENT:
                self._track(limiter.track_success, identity, channel)
            elif outcome is DeliveryOutcome.RATE_LIMITED:
                self._track(limiter.track_failure, identity, channel)
            else:
                logger.warning(
                    "Notification delivery failed",
                    kind=channel.kind,
                    destination=channel.destination,
                    monitor_id=notification.monitor_id,
                )
            deliveries.append(Delivery(channel, outcome))
        return deliveries
