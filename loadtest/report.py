from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Callable, Sequence

import pandas as pd

from .engine.catalog import ScenarioCatalog
from .engine.collector import (
    SAMPLE_COLUMNS,
    VERDICT_EXCELLENT,
    VERDICT_FAIR,
    VERDICT_GOOD,
    AggregateReport,
    PhaseResult,
    build_dataframe,
)
from .engine.config import LoadTestConfig

LOGGER = logging.getLogger("loadtest.report")

VERDICT_DESCRIPTIONS = {
    VERDICT_EXCELLENT: "High success rate and fast response times",
    VERDICT_GOOD: "Acceptable performance for production use",
    VERDICT_FAIR: "Performance issues detected, optimization recommended",
}
POOR_DESCRIPTION = "Significant performance issues, immediate attention required"

PHASE_COLUMNS = ["phase", *SAMPLE_COLUMNS]


def recommendations(report: AggregateReport) -> list[str]:
    if report.system_stable and report.peak_latency_ms < 5000:
        return [
            "System performs well under stress",
            "Ready for production deployment",
        ]
    if report.peak_latency_ms > 10000:
        return [
            "High response times detected",
            "Consider optimizing database queries and adding caching",
        ]
    if report.error_rate > 5:
        return [
            "High error rate detected",
            "Review error logs and increase resource allocation",
        ]
    return []


def format_plan(config: LoadTestConfig) -> str:
    lines = [f"Profile: {config.name}" + (f" ({config.description})" if config.description else "")]
    lines.append(f"  base_url={config.base_url} pacing={config.pacing_ms:.0f}ms pause={config.phase_pause_s:.0f}s")
    lines.append(
        f"  timeouts: request={config.request_timeouts.connect_s:g}s/{config.request_timeouts.total_s:g}s "
        f"health={config.health_timeouts.connect_s:g}s/{config.health_timeouts.total_s:g}s"
    )
    lines.append("  scenarios:")
    shares = ScenarioCatalog(config.scenarios).expected_shares()
    for scenario in config.scenarios:
        share = shares[scenario.name] * 100
        lines.append(f"    - {scenario.name}: {scenario.method} {scenario.path} ({share:.0f}%)")
    lines.append("  phases:")
    for phase in config.phases:
        lines.append(f"    - {phase.name}: {phase.concurrency} users for {phase.duration_seconds:g}s")
    if config.advisory_paths:
        lines.append(f"  advisory checks: {', '.join(config.advisory_paths)}")
    return "\n".join(lines)


def format_report(report: AggregateReport) -> str:
    stats = report.latency_stats
    title = "Partial Results" if report.cancelled else "Test Results"
    lines = [title, "=" * len(title), "", "Overall Metrics:"]
    lines.append(f"  Total Requests: {report.total_requests}")
    lines.append(f"  Successful Requests: {report.total_success}")
    lines.append(f"  Failed Requests: {report.total_errors}")
    lines.append(f"  Success Rate: {report.success_rate:.2f}%")
    lines.append(f"  Requests/Second: {report.requests_per_second:.2f}")
    lines.append(f"  Test Duration: {report.duration_s:.2f} seconds")

    lines.append("")
    lines.append("Response Time Statistics:")
    lines.append(f"  Average: {stats.avg:.0f}ms")
    lines.append(f"  Minimum: {stats.min:.0f}ms")
    lines.append(f"  Maximum: {stats.max:.0f}ms")
    lines.append(f"  95th Percentile: {stats.p95:.0f}ms")
    lines.append(f"  99th Percentile: {stats.p99:.0f}ms")

    if report.per_phase:
        lines.append("")
        lines.extend(_format_phases(report.per_phase))

    if report.error_summary:
        lines.append("")
        lines.append(f"Errors ({report.total_errors}):")
        for message, count in report.error_summary.items():
            lines.append(f"  {message}: {count} occurrences")

    lines.append("")
    lines.append(f"System Stability: {'STABLE' if report.system_stable else 'UNSTABLE'}")
    description = VERDICT_DESCRIPTIONS.get(report.stability_verdict, POOR_DESCRIPTION)
    lines.append(f"Performance Assessment: {report.stability_verdict}: {description}")

    advice = recommendations(report)
    if advice:
        lines.append("Recommendations:")
        lines.extend(f"  - {item}" for item in advice)

    return "\n".join(lines)


def _format_phases(phases: Sequence[PhaseResult]) -> list[str]:
    lines = ["Phase-by-Phase Results:"]
    for phase in phases:
        marker = " [UNSTABLE]" if phase.unstable else ""
        lines.append(f"  {phase.spec.name}{marker}:")
        lines.append(
            f"    Users: {phase.spec.concurrency}, Requests: {phase.request_count}, "
            f"Errors: {phase.error_count} ({phase.error_rate * 100:.2f}%)"
        )
        lines.append(
            f"    Avg Response: {phase.avg_latency_ms:.0f}ms, Max Response: {phase.max_latency_ms:.0f}ms"
        )
        if phase.user_request_counts:
            counts = ", ".join(str(count) for count in phase.user_request_counts)
            lines.append(f"    Per-user requests: {counts}")
    return lines


def report_payload(report: AggregateReport, config: LoadTestConfig | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    if config is not None:
        payload["config"] = {
            "name": config.name,
            "base_url": config.base_url,
            "pacing_ms": config.pacing_ms,
            "phase_pause_s": config.phase_pause_s,
            "phases": [
                {
                    "name": phase.name,
                    "concurrency": phase.concurrency,
                    "duration_seconds": phase.duration_seconds,
                }
                for phase in config.phases
            ],
        }
    payload["report"] = report.to_dict()
    return payload


def phase_dataframe(phases: Sequence[PhaseResult]) -> pd.DataFrame:
    df = build_dataframe(sample for phase in phases for sample in phase.samples)
    df.insert(0, "phase", [phase.spec.name for phase in phases for _ in phase.samples])
    return df


class ConsoleSink:
    """Prints the formatted report through ``echo`` (``print`` by default)."""

    def __init__(self, echo: Callable[[str], None] = print) -> None:
        self._echo = echo

    def __call__(self, report: AggregateReport) -> None:
        self._echo(format_report(report))


class JsonFileSink:
    """Writes the report, plus the run configuration, as a JSON document."""

    def __init__(self, path: Path, config: LoadTestConfig | None = None) -> None:
        self.path = Path(path)
        self._config = config

    def __call__(self, report: AggregateReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(report_payload(report, self._config), f, indent=2)
        LOGGER.info("Results saved to %s", self.path)


class CsvSamplesSink:
    """Writes every recorded sample, tagged with its phase, as CSV."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def __call__(self, report: AggregateReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        df = phase_dataframe(report.per_phase)
        df.to_csv(self.path, index=False)
        LOGGER.info("Saved %d samples to %s", len(df), self.path)


class CompositeSink:
    def __init__(self, *sinks: Callable[[AggregateReport], None]) -> None:
        self._sinks = sinks

    def __call__(self, report: AggregateReport) -> None:
        for sink in self._sinks:
            sink(report)
