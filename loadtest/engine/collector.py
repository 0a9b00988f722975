from __future__ import annotations

import collections
import dataclasses
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import pandas as pd

from .config import PhaseSpec
from .executor import RequestSample

VERDICT_EXCELLENT = "EXCELLENT"
VERDICT_GOOD = "GOOD"
VERDICT_FAIR = "FAIR"
VERDICT_POOR = "POOR"

# Phase-level advisory thresholds, independent of the verdict bands.
INSTABILITY_ERROR_RATE = 0.10
INSTABILITY_AVG_LATENCY_MS = 10_000.0

ERROR_KEY_LENGTH = 50

SAMPLE_COLUMNS = [
    "scenario",
    "success",
    "status_code",
    "latency_ms",
    "error",
    "timestamp",
]


@dataclass(frozen=True)
class LatencyStats:
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


def compute_latency_stats(latencies: Iterable[float]) -> LatencyStats:
    """Mean, extremes and nearest-rank percentiles of ``latencies``.

    Percentiles index the sorted sequence at ``floor(n * p)`` without
    interpolation. An empty input yields all zeros.
    """
    ordered = sorted(latencies)
    if not ordered:
        return LatencyStats()
    return LatencyStats(
        avg=sum(ordered) / len(ordered),
        min=ordered[0],
        max=ordered[-1],
        p95=nearest_rank(ordered, 95),
        p99=nearest_rank(ordered, 99),
    )


def nearest_rank(ordered: Sequence[float], percent: int) -> float:
    if not ordered:
        return 0.0
    index = min(len(ordered) * percent // 100, len(ordered) - 1)
    return ordered[index]


def classify_verdict(success_rate: float, avg_latency_ms: float) -> str:
    """Overall run verdict; ``success_rate`` is a percentage."""
    if success_rate >= 95 and avg_latency_ms <= 2000:
        return VERDICT_EXCELLENT
    if success_rate >= 90 and avg_latency_ms <= 5000:
        return VERDICT_GOOD
    if success_rate >= 80:
        return VERDICT_FAIR
    return VERDICT_POOR


def error_key(sample: RequestSample) -> str:
    if sample.error:
        return sample.error[:ERROR_KEY_LENGTH]
    if sample.status_code is not None:
        return f"HTTP {sample.status_code}"
    return "unknown error"


def summarise_errors(samples: Iterable[RequestSample]) -> dict[str, int]:
    counter = collections.Counter(error_key(sample) for sample in samples if not sample.success)
    return dict(counter.most_common())


@dataclass(frozen=True)
class PhaseInstability:
    """Advisory marker attached to a phase that breached the stability limits."""

    error_rate: float
    avg_latency_ms: float
    reasons: tuple[str, ...]


def detect_instability(error_rate: float, avg_latency_ms: float) -> PhaseInstability | None:
    reasons = []
    if error_rate > INSTABILITY_ERROR_RATE:
        reasons.append(
            f"error rate {error_rate * 100:.2f}% above {INSTABILITY_ERROR_RATE * 100:.0f}%"
        )
    if avg_latency_ms > INSTABILITY_AVG_LATENCY_MS:
        reasons.append(
            f"average latency {avg_latency_ms:.0f}ms above {INSTABILITY_AVG_LATENCY_MS:.0f}ms"
        )
    if not reasons:
        return None
    return PhaseInstability(
        error_rate=error_rate,
        avg_latency_ms=avg_latency_ms,
        reasons=tuple(reasons),
    )


@dataclass(frozen=True)
class PhaseResult:
    spec: PhaseSpec
    request_count: int
    error_count: int
    avg_latency_ms: float
    max_latency_ms: float
    samples: tuple[RequestSample, ...] = ()
    user_request_counts: tuple[int, ...] = ()
    started_at: float = 0.0
    finished_at: float = 0.0
    instability: PhaseInstability | None = None

    @classmethod
    def from_samples(
        cls,
        spec: PhaseSpec,
        samples: Sequence[RequestSample],
        user_request_counts: Sequence[int] = (),
        started_at: float = 0.0,
        finished_at: float = 0.0,
    ) -> "PhaseResult":
        request_count = len(samples)
        error_count = sum(1 for sample in samples if not sample.success)
        latencies = [sample.latency_ms for sample in samples]
        avg_latency = sum(latencies) / request_count if request_count else 0.0
        max_latency = max(latencies) if latencies else 0.0
        error_rate = error_count / request_count if request_count else 0.0
        return cls(
            spec=spec,
            request_count=request_count,
            error_count=error_count,
            avg_latency_ms=avg_latency,
            max_latency_ms=max_latency,
            samples=tuple(samples),
            user_request_counts=tuple(user_request_counts),
            started_at=started_at,
            finished_at=finished_at,
            instability=detect_instability(error_rate, avg_latency),
        )

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.error_count / self.request_count

    @property
    def unstable(self) -> bool:
        return self.instability is not None

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def requests_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.request_count / self.duration_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.spec.name,
            "concurrency": self.spec.concurrency,
            "duration_seconds": self.spec.duration_seconds,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "error_rate": self.error_rate,
            "avg_latency_ms": self.avg_latency_ms,
            "max_latency_ms": self.max_latency_ms,
            "requests_per_second": self.requests_per_second,
            "user_request_counts": list(self.user_request_counts),
            "unstable": self.unstable,
            "instability_reasons": list(self.instability.reasons) if self.instability else [],
        }


@dataclass(frozen=True)
class AggregateReport:
    total_requests: int
    total_success: int
    total_errors: int
    latency_stats: LatencyStats
    per_phase: tuple[PhaseResult, ...]
    stability_verdict: str
    start_time: float
    end_time: float
    system_stable: bool = True
    cancelled: bool = False
    error_summary: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_success / self.total_requests * 100.0

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_errors / self.total_requests * 100.0

    @property
    def duration_s(self) -> float:
        return max(self.end_time - self.start_time, 0.0)

    @property
    def requests_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.total_requests / self.duration_s

    @property
    def peak_latency_ms(self) -> float:
        return self.latency_stats.max

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_success": self.total_success,
            "total_errors": self.total_errors,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "requests_per_second": self.requests_per_second,
            "duration_s": self.duration_s,
            "latency_stats": dataclasses.asdict(self.latency_stats),
            "per_phase": [phase.to_dict() for phase in self.per_phase],
            "stability_verdict": self.stability_verdict,
            "system_stable": self.system_stable,
            "cancelled": self.cancelled,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error_summary": dict(self.error_summary),
        }


class MetricsAggregator:
    """Append-only sample store shared by every virtual user of a run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: list[RequestSample] = []
        self._started_at: float | None = None
        self._finished_at: float | None = None

    def record(self, sample: RequestSample) -> None:
        with self._lock:
            self._samples.append(sample)

    def count(self) -> int:
        with self._lock:
            return len(self._samples)

    def samples(self, start: int = 0) -> list[RequestSample]:
        with self._lock:
            return self._samples[start:]

    def mark_started(self, ts: float) -> None:
        with self._lock:
            self._started_at = ts
            self._finished_at = None

    def mark_finished(self, ts: float) -> None:
        with self._lock:
            self._finished_at = ts

    def summaries(self) -> dict[str, int]:
        with self._lock:
            counter = collections.Counter(
                sample.scenario_name or "<direct>" for sample in self._samples
            )
        return dict(counter)

    def snapshot(
        self,
        phases: Sequence[PhaseResult] = (),
        cancelled: bool = False,
    ) -> AggregateReport:
        with self._lock:
            samples = list(self._samples)
            started_at = self._started_at
            finished_at = self._finished_at

        total = len(samples)
        successes = sum(1 for sample in samples if sample.success)
        stats = compute_latency_stats(sample.latency_ms for sample in samples)
        success_rate = successes / total * 100.0 if total else 0.0

        if started_at is None:
            started_at = min((sample.timestamp for sample in samples), default=0.0)
        if finished_at is None:
            finished_at = max(
                (sample.timestamp + sample.latency_ms / 1000.0 for sample in samples),
                default=started_at,
            )

        return AggregateReport(
            total_requests=total,
            total_success=successes,
            total_errors=total - successes,
            latency_stats=stats,
            per_phase=tuple(phases),
            stability_verdict=classify_verdict(success_rate, stats.avg),
            start_time=started_at,
            end_time=finished_at,
            system_stable=all(not phase.unstable for phase in phases),
            cancelled=cancelled,
            error_summary=summarise_errors(samples),
        )


def build_dataframe(samples: Iterable[RequestSample]) -> pd.DataFrame:
    """One row per sample, in recording order."""
    rows = [
        {
            "scenario": sample.scenario_name,
            "success": sample.success,
            "status_code": sample.status_code,
            "latency_ms": sample.latency_ms,
            "error": sample.error,
            "timestamp": sample.timestamp,
        }
        for sample in samples
    ]
    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)
