from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog

from monitor_guard.alert_pattern import is_fibonacci_number
from monitor_guard.config import GuardConfig, load_config
from monitor_guard.maintenance import MaintenanceWindowEvaluator
from monitor_guard.models import Monitor, YamlMonitorRepository
from monitor_guard.retry import ConfirmationRetryEngine, SENSITIVITY_PRESETS, get_preset


LOGGER = logging.getLogger("monitor-guard")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False, default=str))


async def _run_confirm(args: argparse.Namespace, config: GuardConfig) -> int:
    monitor = Monitor(
        id=args.url,
        url=args.url,
        expected_status_code=int(args.expected_status),
        look_for_string=args.look_for or None,
        timeout_seconds=float(args.timeout),
        sensitivity=args.sensitivity,
        confirmation_retries=int(args.retries) if args.retries else None,
    )
    engine = ConfirmationRetryEngine(
        additional_status_codes=config.uptime_check.additional_status_codes,
        timeout_seconds=config.confirmation_check.timeout_seconds,
    )
    result = await engine.confirm(monitor, get_preset(args.sensitivity))
    _print_json(result.to_dict())
    return 0 if result.success else 1


def _open_repository(args: argparse.Namespace, config: GuardConfig) -> YamlMonitorRepository:
    path = Path(args.monitors or config.monitors_file)
    return YamlMonitorRepository(path, default_timezone=config.app_timezone)


def _run_maintenance(args: argparse.Namespace, config: GuardConfig) -> int:
    repository = _open_repository(args, config)
    evaluator = MaintenanceWindowEvaluator(repository=repository, reference_timezone=config.app_timezone)
    monitors = repository.all()

    updated = evaluator.update_all(monitors)
    pruned = evaluator.prune_expired(monitors) if args.cleanup else 0
    LOGGER.info("maintenance refresh monitors=%s updated=%s pruned=%s", len(monitors), updated, pruned)
    _print_json(
        {
            "monitors": len(monitors),
            "updated": updated,
            "pruned": pruned,
            "in_maintenance": [m.id for m in monitors if m.is_in_maintenance],
        }
    )
    return 0


def _run_next_window(args: argparse.Namespace, config: GuardConfig) -> int:
    repository = _open_repository(args, config)
    evaluator = MaintenanceWindowEvaluator(reference_timezone=config.app_timezone)
    upcoming: dict[str, Any] = {}
    for monitor in repository.all():
        window = evaluator.next_window(monitor)
        upcoming[str(monitor.id)] = window.to_dict() if window is not None else None
    _print_json(upcoming)
    return 0


def _run_fibonacci(args: argparse.Namespace, config: GuardConfig) -> int:
    limit = max(0, int(args.n))
    _print_json([n for n in range(1, limit + 1) if is_fibonacci_number(n)])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Downtime confirmation and alert throttling")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $MONITOR_GUARD_CONFIG)")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    confirm = sub.add_parser("confirm", help="Run one confirmation cycle against a URL")
    confirm.add_argument("url")
    confirm.add_argument("--sensitivity", default="medium", choices=sorted(SENSITIVITY_PRESETS))
    confirm.add_argument("--retries", type=int, default=None, help="Override the preset's retry count")
    confirm.add_argument("--expected-status", type=int, default=200)
    confirm.add_argument("--look-for", default=None, help="Substring the GET body must contain")
    confirm.add_argument("--timeout", type=float, default=5.0, help="Per-probe timeout in seconds")
    confirm.set_defaults(handler=_run_confirm, is_async=True)

    maintenance = sub.add_parser("maintenance", help="Refresh cached maintenance status")
    maintenance.add_argument("--monitors", default=None, help="Monitors YAML (default from config)")
    maintenance.add_argument("--cleanup", action="store_true", help="Also drop expired one-time windows")
    maintenance.set_defaults(handler=_run_maintenance, is_async=False)

    next_window = sub.add_parser("next-window", help="Show each monitor's next maintenance window")
    next_window.add_argument("--monitors", default=None, help="Monitors YAML (default from config)")
    next_window.set_defaults(handler=_run_next_window, is_async=False)

    fibonacci = sub.add_parser("fibonacci", help="List failure counts that alert under the fibonacci pattern")
    fibonacci.add_argument("n", type=int)
    fibonacci.set_defaults(handler=_run_fibonacci, is_async=False)

    return parser


def configure_structlog() -> None:
    # Library modules log through structlog into stdlib logging; stdout is reserved for command output.
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(log_level: str) -> None:
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    configure_structlog()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging(args.log_level)

    try:
        config = load_config(args.config)
    except ValueError as exc:
        LOGGER.error("config load failed err=%s", exc)
        return 2

    try:
        if args.is_async:
            return asyncio.run(args.handler(args, config))
        return args.handler(args, config)
    except (OSError, ValueError) as exc:
        LOGGER.error("command failed command=%s err=%s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
