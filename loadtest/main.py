from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import signal
import sys
import threading
from contextlib import ExitStack
from pathlib import Path

from .charts import render_report_charts
from .engine.collector import VERDICT_POOR
from .engine.config import PROFILES, LoadTestConfig, build_profile, load_plan, resolve_url
from .engine.errors import ConfigurationError, TargetUnavailable
from .engine.executor import RequestExecutor
from .engine.load import PhaseController
from .monitor import MemoryMonitor
from .probe import check_services, format_service_statuses, wait_until_healthy
from .report import CompositeSink, ConsoleSink, CsvSamplesSink, JsonFileSink, format_plan

LOGGER = logging.getLogger("loadtest")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HTTP load, performance and stress harness")
    parser.add_argument(
        "--base-url",
        default=os.environ.get("LOADTEST_BASE_URL", "http://localhost:8080"),
        help="Base URL that relative scenario paths are resolved against",
    )
    parser.add_argument(
        "--profile",
        default=os.environ.get("LOADTEST_PROFILE", "performance"),
        choices=sorted(PROFILES),
        help="Built-in load profile to run",
    )
    parser.add_argument(
        "--plan-path",
        default=os.environ.get("LOADTEST_PLAN_PATH"),
        help="Optional JSON file describing a custom plan (overrides --profile)",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADTEST_OUTPUT_DIR", "results"),
        help="Directory for the JSON report, samples CSV and charts",
    )
    parser.add_argument("--seed", type=int, help="Seed for scenario selection")
    parser.add_argument("--pacing-ms", type=float, help="Delay between a user's requests")
    parser.add_argument("--phase-pause", type=float, help="Seconds to pause between phases")
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Do not probe the health path before the first phase",
    )
    parser.add_argument(
        "--wait-timeout",
        type=float,
        default=0.0,
        help="Seconds to wait for the health path to come up before starting",
    )
    parser.add_argument(
        "--check-services",
        action="store_true",
        help="Only report the status of the known services and exit",
    )
    parser.add_argument("--charts", action="store_true", help="Render PNG charts")
    parser.add_argument(
        "--no-files",
        action="store_true",
        help="Print the report only; do not write JSON/CSV files",
    )
    parser.add_argument(
        "--fail-on-poor",
        action="store_true",
        help="Exit non-zero when the verdict is POOR",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned phases without sending traffic",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADTEST_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace) -> LoadTestConfig:
    if args.plan_path:
        config = load_plan(args.plan_path, base_url=args.base_url)
    else:
        config = build_profile(args.profile, args.base_url)

    overrides = {}
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.pacing_ms is not None:
        overrides["pacing_ms"] = args.pacing_ms
    if args.phase_pause is not None:
        overrides["phase_pause_s"] = args.phase_pause
    if args.skip_preflight:
        overrides["health_path"] = None
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(args)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG

    if args.dry_run:
        print(format_plan(config))
        return EXIT_OK

    output_dir = Path(args.output_dir)

    with ExitStack() as stack:
        executor = stack.enter_context(
            RequestExecutor(
                base_url=config.base_url,
                timeouts=config.request_timeouts,
                health_timeouts=config.health_timeouts,
            )
        )

        if args.check_services:
            statuses = check_services(executor, timeouts=config.health_timeouts)
            print(format_service_statuses(statuses))
            return EXIT_OK if any(status.running for status in statuses) else EXIT_FAILED

        if args.wait_timeout > 0 and config.health_path:
            health_url = resolve_url(config.base_url, config.health_path)
            LOGGER.info("Waiting up to %.0fs for %s", args.wait_timeout, health_url)
            wait_until_healthy(executor, health_url, args.wait_timeout, config.health_timeouts)

        sinks = [ConsoleSink()]
        if not args.no_files:
            output_dir.mkdir(parents=True, exist_ok=True)
            LOGGER.info("Output directory: %s", output_dir)
            sinks.append(JsonFileSink(output_dir / f"{config.name}-test-results.json", config))
            sinks.append(CsvSamplesSink(output_dir / f"{config.name}-samples.csv"))

        controller = PhaseController(config, executor=executor)
        LOGGER.info(
            "Starting %s test against %s: %d phase(s), peak %d users, ~%.0fs",
            config.name,
            config.base_url,
            len(config.phases),
            config.peak_concurrency,
            config.total_duration_s,
        )

        restore = _install_interrupt_handler(controller)
        try:
            with MemoryMonitor():
                report = controller.run_all_phases(sink=CompositeSink(*sinks))
        except TargetUnavailable as exc:
            LOGGER.error("Test aborted: %s", exc)
            print("Please ensure the services are running before starting a load test.", file=sys.stderr)
            return EXIT_FAILED
        finally:
            restore()

    if controller.user_errors:
        LOGGER.error(
            "%d virtual user(s) stopped early on an unexpected error; counts are incomplete",
            len(controller.user_errors),
        )

    if args.charts and report.total_requests:
        render_report_charts(report, output_dir, prefix=f"{config.name}-")

    if args.fail_on_poor and report.stability_verdict == VERDICT_POOR:
        return EXIT_FAILED
    return EXIT_OK


def _install_interrupt_handler(controller: PhaseController):
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def handler(signum, frame) -> None:
        print("\nTest interrupted; finishing in-flight requests", file=sys.stderr)
        controller.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    return lambda: signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
