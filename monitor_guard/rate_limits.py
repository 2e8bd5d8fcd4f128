"""Per-channel notification rate limiting.

Three strategies share one contract (`should_send`, `track_success`,
`track_failure`, `stats`), each keyed by identity + channel:

- email: fixed daily cap per identity (calendar day in the reference timezone)
- twitter / x: independent hourly and daily counters
- telegram: minute and hour windows plus an exponential backoff that only an
  explicit success clears

All state lives in a `KeyValueStore` with TTLs. Decisions never raise: a store
failure is logged and the send is allowed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping

import structlog

from monitor_guard.clock import Clock, SystemClock
from monitor_guard.config import RateLimitConfig
from monitor_guard.maintenance import load_timezone
from monitor_guard.models import NotificationChannel
from monitor_guard.store import KeyValueStore, MemoryStore


logger = structlog.get_logger(__name__)

Identity = int | str
EmailLogSink = Callable[[Mapping[str, Any]], None]

APPROACHING_LIMIT_RATIO = 0.8


class ChannelRateLimiter:
    kind = "unlimited"

    def __init__(self, store: KeyValueStore | None = None, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.store = store if store is not None else MemoryStore(self.clock)

    def should_send(self, identity: Identity, channel: NotificationChannel) -> bool:
        try:
            return self._should_send(identity, channel)
        except Exception:
            logger.exception(
                "Rate limit check failed; allowing send",
                limiter=self.kind,
                identity=identity,
                destination=channel.destination,
            )
            return True

    def _should_send(self, identity: Identity, channel: NotificationChannel) -> bool:
        return True

    def track_success(self, identity: Identity, channel: NotificationChannel) -> None:
        return None

    def track_failure(self, identity: Identity, channel: NotificationChannel) -> None:
        return None

    def stats(self, identity: Identity, channel: NotificationChannel) -> dict[str, Any]:
        return {}


class UnlimitedRateLimiter(ChannelRateLimiter):
    """For channel kinds without a cap (webhooks, chat integrations)."""


class EmailRateLimiter(ChannelRateLimiter):
    kind = "email"

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        *,
        daily_limit: int = 10,
        reference_timezone: str = "UTC",
        log_sink: EmailLogSink | None = None,
    ) -> None:
        super().__init__(store, clock)
        self.daily_limit = max(0, int(daily_limit))
        self.reference_timezone = reference_timezone
        self.log_sink = log_sink

    @property
    def unlimited(self) -> bool:
        return self.daily_limit == 0

    def _today(self) -> str:
        tz = load_timezone(self.reference_timezone)
        now: datetime = self.clock.now()
        return (now.astimezone(tz) if tz is not None else now).date().isoformat()

    def _key(self, identity: Identity) -> str:
        return f"email_rate_limit:{identity}:{self._today()}"

    def count(self, identity: Identity) -> int:
        return int(self.store.get(self._key(identity), 0) or 0)

    def _should_send(self, identity: Identity, channel: NotificationChannel) -> bool:
        if self.unlimited:
            return True
        count = self.count(identity)
        if count >= self.daily_limit:
            logger.warning(
                "Daily email limit reached",
                identity=identity,
                destination=channel.destination,
                count=count,
                limit=self.daily_limit,
            )
            return False
        return True

    def track_success(self, identity: Identity, channel: NotificationChannel) -> None:
        # Two days covers any offset between the reference day and the store's clock.
        count = self.store.incr(self._key(identity), 1, ttl_seconds=2 * 86400)
        logger.info("Email notification tracked", identity=identity, destination=channel.destination, count=count)
        if self.log_sink is None:
            return
        record = {
            "identity": identity,
            "destination": channel.destination,
            "sent_date": self._today(),
            "sent_at": self.clock.now().isoformat(),
        }
        try:
            self.log_sink(record)
        except Exception as exc:
            logger.warning("Email log sink failed", identity=identity, error=str(exc))

    def remaining(self, identity: Identity) -> int:
        if self.unlimited:
            return -1
        return max(0, self.daily_limit - self.count(identity))

    def is_approaching_limit(self, identity: Identity) -> bool:
        if self.unlimited:
            return False
        return self.count(identity) >= self.daily_limit * APPROACHING_LIMIT_RATIO

    def stats(self, identity: Identity, channel: NotificationChannel | None = None) -> dict[str, Any]:
        return {
            "count": self.count(identity),
            "limit": self.daily_limit,
            "remaining": self.remaining(identity),
            "is_approaching_limit": self.is_approaching_limit(identity),
        }


class TwitterRateLimiter(ChannelRateLimiter):
    kind = "twitter"

    HOUR_SECONDS = 3600
    DAY_SECONDS = 86400

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        *,
        hourly_limit: int = 30,
        daily_limit: int = 200,
    ) -> None:
        super().__init__(store, clock)
        self.hourly_limit = int(hourly_limit)
        self.daily_limit = int(daily_limit)

    def _keys(self, identity: Identity, channel: NotificationChannel) -> tuple[str, str]:
        suffix = f"{identity}:{channel.key}"
        return f"twitter_rate_limit:hourly:{suffix}", f"twitter_rate_limit:daily:{suffix}"

    def _counts(self, identity: Identity, channel: NotificationChannel) -> tuple[int, int]:
        hourly_key, daily_key = self._keys(identity, channel)
        return int(self.store.get(hourly_key, 0) or 0), int(self.store.get(daily_key, 0) or 0)

    def _should_send(self, identity: Identity, channel: NotificationChannel) -> bool:
        hourly, daily = self._counts(identity, channel)
        if hourly >= self.hourly_limit:
            logger.warning("Twitter hourly rate limit reached", identity=identity, channel=channel.key, hourly_count=hourly)
            return False
        if daily >= self.daily_limit:
            logger.warning("Twitter daily rate limit reached", identity=identity, channel=channel.key, daily_count=daily)
            return False
        return True

    def track_success(self, identity: Identity, channel: NotificationChannel) -> None:
        hourly_key, daily_key = self._keys(identity, channel)
        self.store.incr(hourly_key, 1, ttl_seconds=self.HOUR_SECONDS)
        self.store.incr(daily_key, 1, ttl_seconds=self.DAY_SECONDS)

    def stats(self, identity: Identity, channel: NotificationChannel) -> dict[str, Any]:
        hourly, daily = self._counts(identity, channel)
        return {
            "hourly_count": hourly,
            "daily_count": daily,
            "hourly_remaining": max(0, self.hourly_limit - hourly),
            "daily_remaining": max(0, self.daily_limit - daily),
        }


class TelegramRateLimiter(ChannelRateLimiter):
    kind = "telegram"

    MINUTE_SECONDS = 60
    HOUR_SECONDS = 3600
    STATE_TTL_SECONDS = 120
    BACKOFF_MULTIPLIER = 2
    MAX_BACKOFF_EXPONENT = 6

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        *,
        minute_limit: int = 20,
        hour_limit: int = 100,
        max_backoff_minutes: int = 60,
    ) -> None:
        super().__init__(store, clock)
        self.minute_limit = int(minute_limit)
        self.hour_limit = int(hour_limit)
        self.max_backoff_minutes = int(max_backoff_minutes)

    def _key(self, identity: Identity, channel: NotificationChannel) -> str:
        return f"telegram_rate_limit:{identity}:{channel.key}"

    def _load(self, key: str, now: float) -> dict[str, Any]:
        state = self.store.get(key)
        if not isinstance(state, dict):
            return {
                "minute_count": 0,
                "minute_window_start": now,
                "hour_count": 0,
                "hour_window_start": now,
                "backoff_count": 0,
            }
        return dict(state)

    def _save(self, key: str, state: dict[str, Any], now: float) -> None:
        # Keep the state alive as long as any window or backoff still matters.
        ttl = max(
            self.STATE_TTL_SECONDS,
            state["hour_window_start"] + self.HOUR_SECONDS - now,
            (state.get("backoff_until") or now) - now,
        )
        self.store.set(key, state, ttl_seconds=ttl)

    @staticmethod
    def _in_backoff(state: Mapping[str, Any], now: float) -> bool:
        until = state.get("backoff_until")
        return until is not None and now < until

    def _window_open(self, state: Mapping[str, Any], prefix: str, span: int, limit: int, now: float) -> bool:
        start = state.get(f"{prefix}_window_start", now)
        if now - start >= span:
            return True
        return int(state.get(f"{prefix}_count", 0)) < limit

    def _should_send(self, identity: Identity, channel: NotificationChannel) -> bool:
        now = self.clock.timestamp()
        state = self._load(self._key(identity, channel), now)

        if self._in_backoff(state, now):
            logger.info(
                "Telegram notification blocked by backoff",
                identity=identity,
                destination=channel.destination,
                backoff_until=state.get("backoff_until"),
            )
            return False
        if not self._window_open(state, "minute", self.MINUTE_SECONDS, self.minute_limit, now):
            logger.info(
                "Telegram notification blocked by minute limit",
                identity=identity,
                destination=channel.destination,
                minute_count=state.get("minute_count", 0),
            )
            return False
        if not self._window_open(state, "hour", self.HOUR_SECONDS, self.hour_limit, now):
            logger.info(
                "Telegram notification blocked by hour limit",
                identity=identity,
                destination=channel.destination,
                hour_count=state.get("hour_count", 0),
            )
            return False
        return True

    def _bump(self, state: dict[str, Any], prefix: str, span: int, now: float) -> None:
        if now - state.get(f"{prefix}_window_start", now) >= span:
            state[f"{prefix}_count"] = 1
            state[f"{prefix}_window_start"] = now
        else:
            state[f"{prefix}_count"] = int(state.get(f"{prefix}_count", 0)) + 1

    def track_success(self, identity: Identity, channel: NotificationChannel) -> None:
        key = self._key(identity, channel)
        with self.store.lock(key):
            now = self.clock.timestamp()
            state = self._load(key, now)
            self._bump(state, "minute", self.MINUTE_SECONDS, now)
            self._bump(state, "hour", self.HOUR_SECONDS, now)
            state.pop("backoff_until", None)
            state["backoff_count"] = 0
            self._save(key, state, now)

        logger.info(
            "Telegram notification tracked",
            identity=identity,
            destination=channel.destination,
            minute_count=state["minute_count"],
            hour_count=state["hour_count"],
        )

    def backoff_minutes(self, backoff_count: int) -> int:
        exponent = min(int(backoff_count), self.MAX_BACKOFF_EXPONENT)
        return min(self.BACKOFF_MULTIPLIER**exponent, self.max_backoff_minutes)

    def track_failure(self, identity: Identity, channel: NotificationChannel) -> None:
        key = self._key(identity, channel)
        with self.store.lock(key):
            now = self.clock.timestamp()
            state = self._load(key, now)
            backoff_count = int(state.get("backoff_count", 0)) + 1
            minutes = self.backoff_minutes(backoff_count)
            state["backoff_count"] = backoff_count
            state["backoff_until"] = now + minutes * 60
            self._save(key, state, now)

        logger.warning(
            "Telegram rate limited by provider; backing off",
            identity=identity,
            destination=channel.destination,
            backoff_count=backoff_count,
            backoff_minutes=minutes,
        )

    def stats(self, identity: Identity, channel: NotificationChannel) -> dict[str, Any]:
        now = self.clock.timestamp()
        state = self._load(self._key(identity, channel), now)
        return {
            "minute_count": int(state.get("minute_count", 0)),
            "hour_count": int(state.get("hour_count", 0)),
            "backoff_count": int(state.get("backoff_count", 0)),
            "backoff_until": state.get("backoff_until"),
            "is_in_backoff": self._in_backoff(state, now),
            "minute_limit": self.minute_limit,
            "hour_limit": self.hour_limit,
        }


class RateLimiterRegistry:
    """Picks the limiter for a channel kind. Unknown kinds are not limited."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        config: RateLimitConfig | None = None,
        *,
        reference_timezone: str = "UTC",
        email_log_sink: EmailLogSink | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.store = store if store is not None else MemoryStore(self.clock)
        config = config or RateLimitConfig()

        self.email = EmailRateLimiter(
            self.store,
            self.clock,
            daily_limit=config.email_daily_limit,
            reference_timezone=reference_timezone,
            log_sink=email_log_sink,
        )
        self.twitter = TwitterRateLimiter(
            self.store,
            self.clock,
            hourly_limit=config.twitter_hourly_limit,
            daily_limit=config.twitter_daily_limit,
        )
        self.telegram = TelegramRateLimiter(
            self.store,
            self.clock,
            minute_limit=config.telegram_minute_limit,
            hour_limit=config.telegram_hour_limit,
            max_backoff_minutes=config.telegram_max_backoff_minutes,
        )
        self.unlimited = UnlimitedRateLimiter(self.store, self.clock)
        self._by_kind: dict[str, ChannelRateLimiter] = {
            "email": self.email,
            "twitter": self.twitter,
            "x": self.twitter,
            "telegram": self.telegram,
        }

    def for_channel(self, channel: NotificationChannel) -> ChannelRateLimiter:
        return self._by_kind.get(str(channel.kind or "").strip().lower(), self.unlimited)
