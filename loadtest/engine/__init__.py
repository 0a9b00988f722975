"""
Load generation and measurement engine.

Virtual users draw weighted scenarios from a catalog, issue timed HTTP
requests and append every outcome to a shared aggregator; the phase
controller runs the configured phases in order and hands the final
report to a caller-supplied sink.
"""

from .catalog import ScenarioCatalog
from .collector import (
    VERDICT_EXCELLENT,
    VERDICT_FAIR,
    VERDICT_GOOD,
    VERDICT_POOR,
    AggregateReport,
    LatencyStats,
    MetricsAggregator,
    PhaseInstability,
    PhaseResult,
    classify_verdict,
    compute_latency_stats,
)
from .config import (
    HEALTH_TIMEOUTS,
    LOAD_TIMEOUTS,
    LoadTestConfig,
    PhaseSpec,
    Scenario,
    Timeouts,
    build_profile,
    load_plan,
    performance_profile,
    stress_profile,
)
from .errors import ConfigurationError, LoadTestError, RequestFailure, TargetUnavailable
from .executor import RequestExecutor, RequestSample
from .load import PhaseController, VirtualUser

__all__ = [
    "AggregateReport",
    "ConfigurationError",
    "HEALTH_TIMEOUTS",
    "LOAD_TIMEOUTS",
    "LatencyStats",
    "LoadTestConfig",
    "LoadTestError",
    "MetricsAggregator",
    "PhaseController",
    "PhaseInstability",
    "PhaseResult",
    "PhaseSpec",
    "RequestExecutor",
    "RequestFailure",
    "RequestSample",
    "Scenario",
    "ScenarioCatalog",
    "TargetUnavailable",
    "Timeouts",
    "VERDICT_EXCELLENT",
    "VERDICT_FAIR",
    "VERDICT_GOOD",
    "VERDICT_POOR",
    "VirtualUser",
    "build_profile",
    "classify_verdict",
    "compute_latency_stats",
    "load_plan",
    "performance_profile",
    "stress_profile",
]
