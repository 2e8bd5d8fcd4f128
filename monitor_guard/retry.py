"""Confirmation cycle: re-verify a failing endpoint before it is declared down.

Each round issues a lightweight HEAD; a HEAD that times out is followed by a GET
(plenty of servers mishandle HEAD). Rounds are separated by exponentially
growing sleeps. When HTTP never succeeds, a raw TCP connect tells a dead host
apart from a live host with a broken application.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from monitor_guard.errors import ErrorKind, classify_connect_error, classify_error
from monitor_guard.models import Monitor


logger = structlog.get_logger(__name__)

DEFAULT_ACCEPTABLE_STATUS_CODES = (200, 201, 204, 301, 302)
MAX_REDIRECTS = 5
TCP_RESPONSIVE_MESSAGE = "HTTP failure but TCP responsive — likely application issue"
ALL_ATTEMPTS_FAILED_MESSAGE = "All retry attempts failed"


class ProbeType(str, Enum):
    HTTP = "http"
    TCP = "tcp"


@dataclass(frozen=True)
class RetryAttempt:
    success: bool
    probe_type: ProbeType = ProbeType.HTTP
    method: str | None = None
    status_code: int | None = None
    response_time_ms: float | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    attempt_number: int = 1

    def __post_init__(self) -> None:
        if self.attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {self.attempt_number}")

    @property
    def is_timeout(self) -> bool:
        return self.error_kind is ErrorKind.TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "probe_type": self.probe_type.value,
            "method": self.method,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "error_message": self.error_message,
            "attempt_number": self.attempt_number,
        }


@dataclass(frozen=True)
class RetryResult:
    success: bool
    attempts: tuple[RetryAttempt, ...] = field(default_factory=tuple)
    message: str | None = None
    status_code: int | None = None
    response_time_ms: float | None = None

    def __post_init__(self) -> None:
        attempts = tuple(self.attempts)
        object.__setattr__(self, "attempts", attempts)
        if self.success and not any(a.success for a in attempts):
            raise ValueError("A successful RetryResult needs at least one successful attempt")
        numbers = [a.attempt_number for a in attempts]
        if any(b <= a for a, b in zip(numbers, numbers[1:])):
            raise ValueError(f"attempt numbers must be strictly increasing: {numbers}")

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def successful_attempt(self) -> RetryAttempt | None:
        return next((a for a in self.attempts if a.success), None)

    @property
    def last_attempt(self) -> RetryAttempt | None:
        return self.attempts[-1] if self.attempts else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempts": [a.to_dict() for a in self.attempts],
            "message": self.message,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
        }


@dataclass(frozen=True)
class SensitivityPreset:
    retries: int
    initial_delay_ms: int
    backoff_multiplier: float
    confirmation_delay_seconds: int


SENSITIVITY_PRESETS: dict[str, SensitivityPreset] = {
    "low": SensitivityPreset(retries=5, initial_delay_ms=200, backoff_multiplier=2, confirmation_delay_seconds=60),
    "medium": SensitivityPreset(retries=3, initial_delay_ms=100, backoff_multiplier=2, confirmation_delay_seconds=30),
    "high": SensitivityPreset(retries=2, initial_delay_ms=50, backoff_multiplier=1.5, confirmation_delay_seconds=15),
}
DEFAULT_SENSITIVITY = "medium"


def get_preset(sensitivity: str | None) -> SensitivityPreset:
    key = str(sensitivity or "").strip().lower()
    return SENSITIVITY_PRESETS.get(key, SENSITIVITY_PRESETS[DEFAULT_SENSITIVITY])


def effective_preset(monitor: Monitor, preset: SensitivityPreset | None = None) -> SensitivityPreset:
    """The monitor's preset, with its own confirmation_retries taking precedence."""
    base = preset or get_preset(monitor.sensitivity)
    if monitor.confirmation_retries:
        return replace(base, retries=int(monitor.confirmation_retries))
    return base


def next_delay_ms(current_ms: int, multiplier: float) -> int:
    delay = int(current_ms * float(multiplier))
    if float(multiplier) >= 1:
        return max(1, delay, int(current_ms))
    return max(0, delay)


def _safe_url(url: str) -> str:
    s = (url or "").strip()
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def _tcp_target(url: str) -> tuple[str, int] | None:
    try:
        parts = urlsplit(str(url or "").strip())
        port = parts.port
    except ValueError:
        return None
    host = (parts.hostname or "").strip()
    if not host:
        return None
    if port is None:
        port = 443 if (parts.scheme or "").lower() == "https" else 80
    return host, int(port)


async def open_tcp_connection(host: str, port: int, timeout_seconds: float) -> None:
    """Connect and immediately close. Raises OSError or asyncio.TimeoutError on failure."""
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host=host, port=port),
        timeout=max(0.1, float(timeout_seconds)),
    )
    try:
        writer.close()
        await writer.wait_closed()
    except OSError:
        pass


TcpConnector = Callable[[str, int, float], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[Any]]


class ConfirmationRetryEngine:
    """
    Runs confirmation cycles. `confirm` never raises: every failure mode is
    captured as a RetryAttempt carrying an ErrorKind.
    """

    def __init__(
        self,
        *,
        additional_status_codes: Iterable[int] = (),
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleeper = asyncio.sleep,
        tcp_connect: TcpConnector = open_tcp_connection,
    ) -> None:
        self.additional_status_codes = tuple(int(c) for c in additional_status_codes)
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._sleep = sleep
        self._tcp_connect = tcp_connect

    def acceptable_status_codes(self, monitor: Monitor) -> set[int]:
        expected = int(monitor.expected_status_code or 200)
        return {expected, *self.additional_status_codes, *DEFAULT_ACCEPTABLE_STATUS_CODES}

    def _timeout_for(self, monitor: Monitor) -> float:
        if self.timeout_seconds is not None:
            return float(self.timeout_seconds)
        return max(0.1, float(monitor.timeout_seconds or 5.0))

    def _build_client(self, monitor: Monitor) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            timeout=self._timeout_for(monitor),
            transport=self._transport,
        )

    async def confirm(self, monitor: Monitor, preset: SensitivityPreset | None = None) -> RetryResult:
        preset = effective_preset(monitor, preset)
        attempts: list[RetryAttempt] = []
        started = time.perf_counter()
        try:
            result = await self._run_cycle(monitor, preset, attempts)
        except Exception as exc:
            logger.exception("Confirmation cycle crashed", monitor_id=monitor.id, url=_safe_url(monitor.url))
            result = self._failure_result(attempts, fallback_message=f"{type(exc).__name__}: {exc}")

        logger.info(
            "Confirmation cycle finished",
            monitor_id=monitor.id,
            url=_safe_url(monitor.url),
            success=result.success,
            attempts=result.attempt_count,
            message=result.message,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        return result

    async def _run_cycle(
        self, monitor: Monitor, preset: SensitivityPreset, attempts: list[RetryAttempt]
    ) -> RetryResult:
        retries = max(1, int(preset.retries))
        delay_ms = int(preset.initial_delay_ms)

        async with self._build_client(monitor) as client:
            for round_idx in range(retries):
                attempt = await self._http_probe(client, monitor, "HEAD", len(attempts) + 1)
                attempts.append(attempt)
                if attempt.success:
                    return self._success_result(attempts, attempt)

                if attempt.is_timeout:
                    attempt = await self._http_probe(client, monitor, "GET", len(attempts) + 1)
                    attempts.append(attempt)
                    if attempt.success:
                        return self._success_result(attempts, attempt)

                if round_idx < retries - 1:
                    await self._sleep(delay_ms / 1000.0)
                    delay_ms = next_delay_ms(delay_ms, preset.backoff_multiplier)

        target = _tcp_target(monitor.url)
        if target is not None:
            tcp_attempt = await self._tcp_probe(monitor, target, len(attempts) + 1)
            attempts.append(tcp_attempt)
            if tcp_attempt.success:
                return self._failure_result(attempts, message=TCP_RESPONSIVE_MESSAGE)

        return self._failure_result(attempts)

    async def _http_probe(
        self, client: httpx.AsyncClient, monitor: Monitor, method: str, attempt_number: int
    ) -> RetryAttempt:
        url = monitor.url
        try:
            scheme = (urlsplit(url or "").scheme or "").lower()
        except ValueError:
            scheme = ""
        if scheme not in ("http", "https"):
            return RetryAttempt(
                success=False,
                method=method,
                error_kind=ErrorKind.UNKNOWN,
                error_message=f"Unsupported URL scheme: {scheme or 'none'}",
                attempt_number=attempt_number,
            )

        kwargs: dict[str, Any] = {"timeout": self._timeout_for(monitor)}
        if monitor.additional_headers:
            kwargs["headers"] = dict(monitor.additional_headers)
        if method != "HEAD" and monitor.payload:
            kwargs["content"] = monitor.payload

        started = time.perf_counter()
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            kind = classify_error(exc)
            logger.debug(
                "Confirmation probe failed",
                url=_safe_url(url),
                method=method,
                attempt=attempt_number,
                error_kind=kind.value,
            )
            return RetryAttempt(
                success=False,
                method=method,
                response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error_kind=kind,
                error_message=str(exc) or type(exc).__name__,
                attempt_number=attempt_number,
            )
        except Exception as exc:
            logger.exception("Unexpected error during confirmation probe", url=_safe_url(url), method=method)
            return RetryAttempt(
                success=False,
                method=method,
                response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error_kind=ErrorKind.UNKNOWN,
                error_message=f"{type(exc).__name__}: {exc}",
                attempt_number=attempt_number,
            )

        response_time_ms = self._response_time_ms(resp, started)
        status = resp.status_code

        if status not in self.acceptable_status_codes(monitor):
            return RetryAttempt(
                success=False,
                method=method,
                status_code=status,
                response_time_ms=response_time_ms,
                error_kind=ErrorKind.HTTP_STATUS,
                error_message=f"Unexpected status code: {status}",
                attempt_number=attempt_number,
            )

        needle = (monitor.look_for_string or "").strip()
        if method == "GET" and needle and needle.lower() not in (resp.text or "").lower():
            return RetryAttempt(
                success=False,
                method=method,
                status_code=status,
                response_time_ms=response_time_ms,
                error_kind=ErrorKind.STRING_NOT_FOUND,
                error_message=f"String not found: {needle}",
                attempt_number=attempt_number,
            )

        return RetryAttempt(
            success=True,
            method=method,
            status_code=status,
            response_time_ms=response_time_ms,
            attempt_number=attempt_number,
        )

    @staticmethod
    def _response_time_ms(resp: httpx.Response, started: float) -> float:
        # httpx measures the exchange itself; wall clock is only the fallback.
        try:
            return round(resp.elapsed.total_seconds() * 1000.0, 3)
        except RuntimeError:
            return round((time.perf_counter() - started) * 1000.0, 3)

    async def _tcp_probe(self, monitor: Monitor, target: tuple[str, int], attempt_number: int) -> RetryAttempt:
        host, port = target
        started = time.perf_counter()
        try:
            await self._tcp_connect(host, port, self._timeout_for(monitor))
        except (OSError, asyncio.TimeoutError) as exc:
            return RetryAttempt(
                success=False,
                probe_type=ProbeType.TCP,
                response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error_kind=classify_connect_error(exc),
                error_message=str(exc) or f"TCP connect to {host}:{port} timed out",
                attempt_number=attempt_number,
            )
        except Exception as exc:
            logger.exception("Unexpected error during TCP probe", host=host, port=port)
            return RetryAttempt(
                success=False,
                probe_type=ProbeType.TCP,
                response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
                error_kind=ErrorKind.UNKNOWN,
                error_message=f"{type(exc).__name__}: {exc}",
                attempt_number=attempt_number,
            )

        return RetryAttempt(
            success=True,
            probe_type=ProbeType.TCP,
            response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
            attempt_number=attempt_number,
        )

    @staticmethod
    def _success_result(attempts: list[RetryAttempt], successful: RetryAttempt) -> RetryResult:
        return RetryResult(
            success=True,
            attempts=tuple(attempts),
            status_code=successful.status_code,
            response_time_ms=successful.response_time_ms,
        )

    @staticmethod
    def _failure_result(
        attempts: list[RetryAttempt], *, message: str | None = None, fallback_message: str | None = None
    ) -> RetryResult:
        last = attempts[-1] if attempts else None
        last_http = next((a for a in reversed(attempts) if a.probe_type is ProbeType.HTTP), None)
        if message is None:
            message = (last.error_message if last else None) or fallback_message or ALL_ATTEMPTS_FAILED_MESSAGE
        return RetryResult(
            success=False,
            attempts=tuple(attempts),
            message=message,
            status_code=last_http.status_code if last_http else None,
        )
