from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from monitor_guard.clock import FixedClock
from monitor_guard.config import ConfirmationCheckConfig, GuardConfig
from monitor_guard.guard import DeliveryOutcome, DowntimeGuard, GuardAction
from monitor_guard.models import Incident, InMemoryMonitorRepository, Monitor, NotificationChannel
from monitor_guard.rate_limits import RateLimiterRegistry
from monitor_guard.retry import ConfirmationRetryEngine
from monitor_guard.store import MemoryStore


EMAIL = NotificationChannel(kind="email", destination="ops@example.com")
TELEGRAM = NotificationChannel(kind="telegram", destination="-100123")
WEBHOOK = NotificationChannel(kind="webhook", destination="https://hooks.test/")


class _Sender:
    def __init__(self, outcomes: dict | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.outcomes = outcomes or {}

    async def __call__(self, channel: NotificationChannel, notification) -> DeliveryOutcome:
        self.calls.append((channel.kind, notification.event))
        outcome = self.outcomes.get(channel.kind, DeliveryOutcome.SENT)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _no_sleep(seconds: float) -> None:
    return None


async def _tcp_refused(host: str, port: int, timeout: float) -> None:
    raise ConnectionRefusedError(111, "Connection refused")


def _up(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="ok")


def _down(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, text="unavailable")


def _guard(sender, handler=_down, *, config: GuardConfig | None = None, repository=None, clock=None) -> DowntimeGuard:
    engine = ConfirmationRetryEngine(
        transport=httpx.MockTransport(handler), sleep=_no_sleep, tcp_connect=_tcp_refused
    )
    return DowntimeGuard(
        sender,
        config=config,
        clock=clock or FixedClock(datetime(2025, 12, 15, 12, 0, tzinfo=timezone.utc)),
        repository=repository,
        engine=engine,
    )


def _monitor(failures: int = 1, **kwargs) -> Monitor:
    return Monitor(id=1, url="https://service.test/", times_failed_in_a_row=failures, sensitivity="high", **kwargs)


@pytest.mark.asyncio
async def test_disabled_monitor_is_skipped() -> None:
    sender = _Sender()
    decision = await _guard(sender).handle_failed_check(_monitor(enabled=False), None, [EMAIL], identity=1)
    assert decision.action is GuardAction.DISABLED
    assert sender.calls == []


@pytest.mark.asyncio
async def test_maintenance_short_circuits_before_confirmation() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        return httpx.Response(503)

    monitor = _monitor(
        maintenance_windows=[{"type": "one_time", "start": "2025-12-15T11:00:00Z", "end": "2025-12-15T13:00:00Z"}]
    )
    repository = InMemoryMonitorRepository([monitor])
    observed: list[Monitor] = []
    repository.observers.append(observed.append)
    sender = _Sender()

    decision = await _guard(sender, handler, repository=repository).handle_failed_check(
        monitor, Incident(id=1, monitor_id=1), [EMAIL], identity=1
    )

    assert decision.action is GuardAction.MAINTENANCE
    assert monitor.is_in_maintenance is True
    assert seen == []
    assert sender.calls == []
    assert observed == []


@pytest.mark.asyncio
async def test_unconfirmed_first_failure_is_transient() -> None:
    monitor = _monitor()
    repository = InMemoryMonitorRepository([monitor])
    sender = _Sender()

    decision = await _guard(sender, _up, repository=repository).handle_failed_check(
        monitor, Incident(id=1, monitor_id=1), [EMAIL], identity=1
    )

    assert decision.action is GuardAction.TRANSIENT
    assert decision.result is not None and decision.result.success is True
    assert monitor.times_failed_in_a_row == 0
    assert monitor.uptime_status == "up"
    assert monitor.transient_failures_count == 1
    assert repository.save_count == 1
    assert sender.calls == []


@pytest.mark.asyncio
async def test_confirmed_failure_alerts_and_marks_incident() -> None:
    monitor = _monitor()
    incident = Incident(id=1, monitor_id=1)
    sender = _Sender()

    decision = await _guard(sender).handle_failed_check(monitor, incident, [EMAIL, WEBHOOK], identity=1)

    assert decision.action is GuardAction.NOTIFIED
    assert decision.result is not None and decision.result.success is False
    assert monitor.uptime_status == "down"
    assert monitor.failure_reason == "[Errno 111] Connection refused"
    assert sender.calls == [("email", "down"), ("webhook", "down")]
    assert [d.outcome for d in decision.deliveries] == [DeliveryOutcome.SENT, DeliveryOutcome.SENT]
    assert incident.down_alert_sent is True
    assert incident.last_alert_at_failure_count == 1

    payload = decision.to_dict()
    assert payload["action"] == "notified"
    assert payload["deliveries"][0] == {"kind": "email", "destination": "ops@example.com", "outcome": "sent"}


@pytest.mark.asyncio
async def test_confirmation_only_runs_on_first_failure() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        return httpx.Response(200)

    sender = _Sender()
    decision = await _guard(sender, handler).handle_failed_check(_monitor(failures=2), None, [EMAIL], identity=1)

    assert seen == []
    assert decision.result is None
    assert decision.action is GuardAction.NOTIFIED


@pytest.mark.asyncio
async def test_confirmation_can_be_disabled() -> None:
    config = GuardConfig(confirmation_check=ConfirmationCheckConfig(enabled=False))
    sender = _Sender()
    decision = await _guard(sender, _up, config=config).handle_failed_check(_monitor(), None, [EMAIL], identity=1)
    assert decision.result is None
    assert decision.action is GuardAction.NOTIFIED


@pytest.mark.asyncio
async def test_fibonacci_pattern_suppresses_non_firing_counts() -> None:
    sender = _Sender()
    guard = _guard(sender)
    incident = Incident(id=1, monitor_id=1, down_alert_sent=True, last_alert_at_failure_count=3)
    monitor = _monitor(failures=4, notification_settings={"alert_pattern": "fibonacci"})

    decision = await guard.handle_failed_check(monitor, incident, [EMAIL], identity=1)
    assert decision.action is GuardAction.SUPPRESSED
    assert sender.calls == []

    monitor.times_failed_in_a_row = 5
    decision = await guard.handle_failed_check(monitor, incident, [EMAIL], identity=1)
    assert decision.action is GuardAction.NOTIFIED
    assert incident.last_alert_at_failure_count == 5


@pytest.mark.asyncio
async def test_provider_rate_limit_starts_backoff() -> None:
    sender = _Sender({"telegram": DeliveryOutcome.RATE_LIMITED})
    guard = _guard(sender)
    incident = Incident(id=1, monitor_id=1)

    first = await guard.handle_failed_check(_monitor(failures=2), incident, [TELEGRAM], identity=1)
    assert [d.outcome for d in first.deliveries] == [DeliveryOutcome.RATE_LIMITED]
    assert first.action is GuardAction.UNDELIVERED
    assert incident.down_alert_sent is False
    assert guard.rate_limiters.telegram.stats(1, TELEGRAM)["is_in_backoff"] is True

    second = await guard.handle_failed_check(_monitor(failures=3), incident, [TELEGRAM], identity=1)
    assert [d.outcome for d in second.deliveries] == [DeliveryOutcome.THROTTLED]
    assert len(sender.calls) == 1


@pytest.mark.asyncio
async def test_sender_errors_do_not_abort_fan_out() -> None:
    sender = _Sender({"email": RuntimeError("smtp down")})
    disabled = NotificationChannel(kind="webhook", destination="https://off.test/", enabled=False)
    decision = await _guard(sender).handle_failed_check(
        _monitor(failures=2), None, [EMAIL, disabled, WEBHOOK], identity=1
    )

    assert [(d.channel.kind, d.outcome) for d in decision.deliveries] == [
        ("email", DeliveryOutcome.FAILED),
        ("webhook", DeliveryOutcome.SENT),
    ]
    assert decision.action is GuardAction.NOTIFIED


@pytest.mark.asyncio
async def test_sync_sender_and_email_tracking() -> None:
    calls: list[str] = []

    def sender(channel: NotificationChannel, notification) -> None:
        calls.append(notification.event)

    guard = _guard(sender)
    decision = await guard.handle_failed_check(_monitor(failures=2), None, [EMAIL], identity=9)

    assert decision.sent is True
    assert calls == ["down"]
    assert guard.rate_limiters.email.count(9) == 1


@pytest.mark.asyncio
async def test_recovery_requires_prior_down_alert() -> None:
    sender = _Sender()
    guard = _guard(sender)
    monitor = _monitor(failures=0)

    silent = await guard.handle_recovery(monitor, Incident(id=1, monitor_id=1), [EMAIL], identity=1)
    assert silent.action is GuardAction.SUPPRESSED
    assert (await guard.handle_recovery(monitor, None, [EMAIL], identity=1)).action is GuardAction.SUPPRESSED
    assert sender.calls == []

    announced = await guard.handle_recovery(
        monitor, Incident(id=2, monitor_id=1, down_alert_sent=True), [EMAIL], identity=1
    )
    assert announced.action is GuardAction.NOTIFIED
    assert sender.calls == [("email", "recovery")]


class _CounterOutage(MemoryStore):
    def incr(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int:
        raise ConnectionError("store unavailable")


@pytest.mark.asyncio
async def test_tracking_failure_keeps_delivered_alert() -> None:
    clock = FixedClock(datetime(2025, 12, 15, 12, 0, tzinfo=timezone.utc))
    sender = _Sender()
    guard = DowntimeGuard(
        sender,
        clock=clock,
        engine=ConfirmationRetryEngine(transport=httpx.MockTransport(_down), sleep=_no_sleep, tcp_connect=_tcp_refused),
        rate_limiters=RateLimiterRegistry(_CounterOutage(clock), clock),
    )
    incident = Incident(id=1, monitor_id=1)

    decision = await guard.handle_failed_check(_monitor(failures=2), incident, [EMAIL, TELEGRAM], identity=1)

    assert sender.calls == [("email", "down"), ("telegram", "down")]
    assert [d.outcome for d in decision.deliveries] == [DeliveryOutcome.SENT, DeliveryOutcome.SENT]
    assert decision.action is GuardAction.NOTIFIED
    assert incident.down_alert_sent is True
