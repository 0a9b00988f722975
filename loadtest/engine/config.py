from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from urllib3.util import Timeout as SocketTimeout

from .errors import ConfigurationError

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_HEALTH_PATH = "/actuator/health"


def resolve_url(base_url: str, target: str) -> str:
    """Join a relative path onto ``base_url``; absolute URLs pass through."""
    if target.startswith(("http://", "https://")):
        return target
    if not target:
        return base_url
    return f"{base_url.rstrip('/')}/{target.lstrip('/')}"


def _positive(value: float) -> bool:
    return math.isfinite(value) and value > 0


def _non_negative(value: float) -> bool:
    return math.isfinite(value) and value >= 0


@dataclass(frozen=True)
class Timeouts:
    """Connect and total budget for a single request, in seconds."""

    connect_s: float
    total_s: float

    def __post_init__(self) -> None:
        if not (_positive(self.connect_s) and _positive(self.total_s)):
            raise ConfigurationError(
                f"timeouts must be finite and > 0 (connect={self.connect_s}, total={self.total_s})"
            )

    def as_requests_timeout(self) -> SocketTimeout:
        return SocketTimeout(connect=self.connect_s, read=self.total_s, total=self.total_s)


LOAD_TIMEOUTS = Timeouts(connect_s=5.0, total_s=10.0)
HEALTH_TIMEOUTS = Timeouts(connect_s=3.0, total_s=5.0)


@dataclass(frozen=True)
class Scenario:
    """Weighted request template used to synthesise traffic."""

    name: str
    method: str
    path: str
    headers: dict[str, str] | None = None
    body: Any = None
    weight: int = 1

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("scenario name must not be empty")
        if not self.method:
            raise ConfigurationError(f"scenario {self.name!r} has no HTTP method")
        if not self.path:
            raise ConfigurationError(f"scenario {self.name!r} has no path or URL")
        if isinstance(self.weight, bool) or not isinstance(self.weight, int) or self.weight <= 0:
            raise ConfigurationError(
                f"scenario {self.name!r} weight must be a positive integer, got {self.weight!r}"
            )

    def url(self, base_url: str) -> str:
        return resolve_url(base_url, self.path)


@dataclass(frozen=True)
class PhaseSpec:
    """Time-boxed load segment with a fixed number of virtual users."""

    name: str
    concurrency: int
    duration_seconds: float

    def __post_init__(self) -> None:
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigurationError(
                f"phase {self.name!r} concurrency must be >= 1, got {self.concurrency!r}"
            )
        if not _positive(self.duration_seconds):
            raise ConfigurationError(
                f"phase {self.name!r} duration must be finite and > 0, got {self.duration_seconds!r}"
            )


@dataclass(frozen=True)
class LoadTestConfig:
    """Complete description of one run: target, traffic mix and phases."""

    name: str
    base_url: str
    scenarios: Sequence[Scenario]
    phases: Sequence[PhaseSpec]
    request_timeouts: Timeouts = LOAD_TIMEOUTS
    health_timeouts: Timeouts = HEALTH_TIMEOUTS
    pacing_ms: float = 100.0
    phase_pause_s: float = 0.0
    health_path: str | None = DEFAULT_HEALTH_PATH
    advisory_paths: Sequence[str] = ()
    seed: int | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        # Freeze the sequences so the catalog cannot change mid-run.
        object.__setattr__(self, "scenarios", tuple(self.scenarios))
        object.__setattr__(self, "phases", tuple(self.phases))
        object.__setattr__(self, "advisory_paths", tuple(self.advisory_paths))
        self.validate()

    def validate(self) -> None:
        if not self.base_url or not self.base_url.strip():
            raise ConfigurationError("base URL must not be empty")
        if not self.scenarios:
            raise ConfigurationError("scenario catalog must not be empty")
        if sum(scenario.weight for scenario in self.scenarios) <= 0:
            raise ConfigurationError("scenario weights must sum to > 0")
        if not self.phases:
            raise ConfigurationError("phase list must not be empty")
        if not _non_negative(self.pacing_ms):
            raise ConfigurationError(f"pacing must be finite and >= 0 ms, got {self.pacing_ms}")
        if not _non_negative(self.phase_pause_s):
            raise ConfigurationError(f"phase pause must be finite and >= 0 s, got {self.phase_pause_s}")

    @property
    def total_duration_s(self) -> float:
        pauses = self.phase_pause_s * max(len(self.phases) - 1, 0)
        return sum(phase.duration_seconds for phase in self.phases) + pauses

    @property
    def peak_concurrency(self) -> int:
        return max(phase.concurrency for phase in self.phases)


def performance_profile(base_url: str = DEFAULT_BASE_URL) -> LoadTestConfig:
    """Steady mixed traffic from a fixed pool of users."""

    scenarios = [
        Scenario(
            name="Health Check Load Test",
            method="GET",
            path="/actuator/health",
            weight=30,
        ),
        Scenario(
            name="Public Tracking Load Test",
            method="GET",
            path="/api/transport/shipments/tracking/TRK123456789",
            weight=25,
        ),
        Scenario(
            name="Gateway Routes Load Test",
            method="GET",
            path="/actuator/gateway/routes",
            weight=20,
        ),
        Scenario(
            name="Service Discovery Load Test",
            method="GET",
            path="http://localhost:8761/eureka/apps",
            weight=15,
        ),
        Scenario(
            name="Auth Login Load Test",
            method="POST",
            path="/api/auth/login",
            headers={"Content-Type": "application/json"},
            body={"username": "admin", "password": "admin123"},
            weight=10,
        ),
    ]
    return LoadTestConfig(
        name="performance",
        base_url=base_url,
        description="Weighted endpoint mix, 10 users for 30 seconds.",
        scenarios=scenarios,
        phases=[PhaseSpec(name="Sustained Load", concurrency=10, duration_seconds=30)],
        pacing_ms=100.0,
        advisory_paths=(
            "/actuator/gateway/routes",
            "/api/transport/shipments/tracking/TEST123",
        ),
    )


def stress_profile(base_url: str = DEFAULT_BASE_URL) -> LoadTestConfig:
    """Ramp the health endpoint from 5 to 100 users and back down."""

    return LoadTestConfig(
        name="stress",
        base_url=base_url,
        description="Five-phase ramp against the gateway health endpoint.",
        scenarios=[Scenario(name="Gateway Health", method="GET", path="/actuator/health")],
        phases=[
            PhaseSpec(name="Warm-up", concurrency=5, duration_seconds=10),
            PhaseSpec(name="Ramp-up", concurrency=20, duration_seconds=20),
            PhaseSpec(name="Peak Load", concurrency=50, duration_seconds=30),
            PhaseSpec(name="Stress Test", concurrency=100, duration_seconds=20),
            PhaseSpec(name="Cool-down", concurrency=10, duration_seconds=10),
        ],
        pacing_ms=50.0,
        phase_pause_s=5.0,
    )


PROFILES: dict[str, Callable[[str], LoadTestConfig]] = {
    "performance": performance_profile,
    "stress": stress_profile,
}


def build_profile(name: str, base_url: str = DEFAULT_BASE_URL) -> LoadTestConfig:
    try:
        factory = PROFILES[name]
    except KeyError as exc:
        known = ", ".join(sorted(PROFILES))
        raise ConfigurationError(f"unknown profile {name!r} (known: {known})") from exc
    return factory(base_url)


def load_plan(path: str | Path, base_url: str | None = None) -> LoadTestConfig:
    """Load a custom run description from a JSON file.

    ``base_url`` overrides the value stored in the file when given.
    """
    plan_path = Path(path)
    try:
        raw = json.loads(plan_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"plan file not found: {plan_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to parse plan {plan_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError("plan JSON must be an object at top level")
    return plan_from_dict(raw, base_url=base_url, default_name=plan_path.stem)


def plan_from_dict(
    raw: Mapping[str, Any],
    base_url: str | None = None,
    default_name: str = "custom",
) -> LoadTestConfig:
    try:
        scenarios = [_scenario_from_dict(item) for item in raw.get("scenarios", [])]
        phases = [_phase_from_dict(item) for item in raw.get("phases", [])]
        kwargs: dict[str, Any] = {
            "name": str(raw.get("name") or default_name),
            "base_url": base_url or raw.get("base_url") or DEFAULT_BASE_URL,
            "scenarios": scenarios,
            "phases": phases,
            "description": raw.get("description"),
        }
        if "request_timeouts" in raw:
            kwargs["request_timeouts"] = Timeouts(**raw["request_timeouts"])
        if "health_timeouts" in raw:
            kwargs["health_timeouts"] = Timeouts(**raw["health_timeouts"])
        if "pacing_ms" in raw:
            kwargs["pacing_ms"] = float(raw["pacing_ms"])
        if "phase_pause_s" in raw:
            kwargs["phase_pause_s"] = float(raw["phase_pause_s"])
        if "health_path" in raw:
            kwargs["health_path"] = raw["health_path"] or None
        if "advisory_paths" in raw:
            kwargs["advisory_paths"] = [str(path) for path in raw["advisory_paths"]]
        if "seed" in raw:
            kwargs["seed"] = raw["seed"]
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid plan: {exc}") from exc
    return LoadTestConfig(**kwargs)


def _scenario_from_dict(item: Mapping[str, Any]) -> Scenario:
    return Scenario(
        name=item["name"],
        method=str(item.get("method", "GET")).upper(),
        path=item.get("path") or item["url"],
        headers=dict(item["headers"]) if item.get("headers") else None,
        body=item.get("body"),
        weight=item.get("weight", 1),
    )


def _phase_from_dict(item: Mapping[str, Any]) -> PhaseSpec:
    return PhaseSpec(
        name=item["name"],
        concurrency=item["concurrency"],
        duration_seconds=float(item["duration_seconds"]),
    )
