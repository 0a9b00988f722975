from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .engine.collector import AggregateReport, PhaseResult, nearest_rank
from .report import phase_dataframe

LOGGER = logging.getLogger("loadtest.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

OUTCOME_COLORS = {
    "success": "#2E86AB",  # Blue
    "failure": "#C73E1D",  # Red
}
STABLE_COLOR = "#6A994E"
UNSTABLE_COLOR = "#F18F01"

LATENCY_CHART = "phase_latency_boxplot.png"
THROUGHPUT_CHART = "phase_throughput.png"
PERCENTILE_CHART = "phase_percentiles.png"


def render_report_charts(report: AggregateReport, output_dir: Path, prefix: str = "") -> list[Path]:
    """Render every chart the report has data for; returns the written paths."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    if not report.per_phase:
        LOGGER.warning("No phase results available for charts")
        return written

    df = phase_dataframe(report.per_phase)
    if not df.empty:
        path = output_dir / f"{prefix}{LATENCY_CHART}"
        _render_latency_boxplot(df, [p.spec.name for p in report.per_phase], path)
        written.append(path)

    path = output_dir / f"{prefix}{THROUGHPUT_CHART}"
    _render_throughput_bars(report.per_phase, path)
    written.append(path)

    path = output_dir / f"{prefix}{PERCENTILE_CHART}"
    _render_percentile_lines(report.per_phase, path)
    written.append(path)

    for chart_path in written:
        LOGGER.info("Rendering chart %s", chart_path)
    return written


def _render_latency_boxplot(df: pd.DataFrame, phase_order: list[str], chart_path: Path) -> None:
    df = df[df["latency_ms"].notna() & (df["latency_ms"] >= 0)].copy()
    df["outcome"] = df["success"].map(lambda ok: "success" if ok else "failure")
    hue_order = [outcome for outcome in ("success", "failure") if outcome in set(df["outcome"])]

    fig, ax = plt.subplots(figsize=(12, 6))
    sns.boxplot(
        data=df,
        x="phase",
        y="latency_ms",
        hue="outcome",
        order=phase_order,
        hue_order=hue_order,
        palette=[OUTCOME_COLORS[outcome] for outcome in hue_order],
        ax=ax,
        linewidth=1.5,
        width=0.7,
    )
    ax.set_xlabel("Phase", fontweight="semibold", labelpad=10)
    ax.set_ylabel("Latency (ms)", fontweight="semibold", labelpad=10)
    ax.set_ylim(bottom=0)
    ax.set_title("Request Latency by Phase", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)


def _render_throughput_bars(phases: list[PhaseResult] | tuple[PhaseResult, ...], chart_path: Path) -> None:
    labels = [f"{phase.spec.name}\n({phase.spec.concurrency} users)" for phase in phases]
    values = np.array([phase.requests_per_second for phase in phases])
    colors = [UNSTABLE_COLOR if phase.unstable else STABLE_COLOR for phase in phases]

    fig, ax = plt.subplots(figsize=(10, 6))
    bars = ax.bar(labels, values, color=colors, alpha=0.8, edgecolor="white", linewidth=2)
    ax.set_ylabel("Throughput (requests/s)", fontweight="semibold")
    ax.set_title("Throughput per Phase", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")

    for bar, phase in zip(bars, phases):
        height = bar.get_height()
        ax.text(
            bar.get_x() + bar.get_width() / 2.0,
            height,
            f"{height:.1f}\n{phase.error_rate * 100:.1f}% err",
            ha="center",
            va="bottom",
            fontweight="semibold",
            fontsize=9,
        )

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)


def _render_percentile_lines(phases: list[PhaseResult] | tuple[PhaseResult, ...], chart_path: Path) -> None:
    x_values = np.arange(len(phases))
    series = {"avg": [], "p95": [], "p99": []}
    for phase in phases:
        ordered = sorted(sample.latency_ms for sample in phase.samples)
        series["avg"].append(phase.avg_latency_ms)
        series["p95"].append(nearest_rank(ordered, 95))
        series["p99"].append(nearest_rank(ordered, 99))

    fig, ax = plt.subplots(figsize=(10, 6))
    for label, color in (("avg", "#2E86AB"), ("p95", "#A23B72"), ("p99", "#C73E1D")):
        ax.plot(x_values, series[label], marker="o", linewidth=2.5, markersize=8, color=color, label=label)
    ax.set_xticks(x_values)
    ax.set_xticklabels([phase.spec.name for phase in phases])
    ax.set_ylabel("Latency (ms)", fontweight="semibold")
    ax.set_title("Latency Percentiles per Phase", fontweight="bold", pad=15)
    ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
