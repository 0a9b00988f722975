from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .engine.config import HEALTH_TIMEOUTS, Timeouts
from .engine.load import Executor

LOGGER = logging.getLogger("loadtest.probe")

_STATUS_UP = re.compile(r'"status"\s*:\s*"UP"')


@dataclass(frozen=True)
class ServiceEndpoint:
    name: str
    url: str


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    url: str
    running: bool
    healthy: bool
    status_code: int | None
    latency_ms: float
    error: str | None = None

    @property
    def label(self) -> str:
        if self.running and self.healthy:
            return "UP"
        if self.running:
            return "RUNNING (not healthy)"
        return "DOWN"


DEFAULT_SERVICES: tuple[ServiceEndpoint, ...] = (
    ServiceEndpoint("Config Server", "http://localhost:8888/actuator/health"),
    ServiceEndpoint("Discovery Server", "http://localhost:8761/actuator/health"),
    ServiceEndpoint("Gateway Service", "http://localhost:8080/actuator/health"),
    ServiceEndpoint("Auth Service", "http://localhost:8081/actuator/health"),
    ServiceEndpoint("User Service", "http://localhost:8082/actuator/health"),
    ServiceEndpoint("Transport Service", "http://localhost:8083/actuator/health"),
)


def reports_up(body: str) -> bool:
    return bool(_STATUS_UP.search(body or ""))


def check_service(
    executor: Executor,
    endpoint: ServiceEndpoint,
    timeouts: Timeouts = HEALTH_TIMEOUTS,
) -> ServiceStatus:
    sample = executor.probe(endpoint.url, timeouts)
    running = sample.status_code is not None
    return ServiceStatus(
        name=endpoint.name,
        url=endpoint.url,
        running=running,
        healthy=sample.success and reports_up(sample.body_preview),
        status_code=sample.status_code,
        latency_ms=sample.latency_ms,
        error=sample.error,
    )


def check_services(
    executor: Executor,
    endpoints: Iterable[ServiceEndpoint] | None = None,
    timeouts: Timeouts = HEALTH_TIMEOUTS,
) -> list[ServiceStatus]:
    statuses = []
    for endpoint in endpoints if endpoints is not None else DEFAULT_SERVICES:
        status = check_service(executor, endpoint, timeouts)
        LOGGER.info(
            "%s: %s (%s, %.0fms)",
            status.name,
            status.label,
            status.status_code if status.status_code is not None else "N/A",
            status.latency_ms,
        )
        statuses.append(status)
    return statuses


def format_service_statuses(statuses: Sequence[ServiceStatus]) -> str:
    lines = ["Service Status:"]
    for status in statuses:
        code = status.status_code if status.status_code is not None else "N/A"
        lines.append(f"  {status.name}: {status.label} ({code})")
    available = sum(1 for status in statuses if status.running)
    lines.append(f"Services Available: {available}/{len(statuses)}")
    return "\n".join(lines)


def wait_until_healthy(
    executor: Executor,
    url: str,
    timeout_s: float = 60.0,
    timeouts: Timeouts = HEALTH_TIMEOUTS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``url`` with growing back-off until it answers successfully."""
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + timeout_s

    while True:
        sample = executor.probe(url, timeouts)
        if sample.success:
            return True

        now = time.time()
        if now >= deadline:
            LOGGER.warning("%s did not become healthy within %.0f seconds", url, timeout_s)
            return False

        LOGGER.debug(
            "waiting for %s (%s); retrying in %.1fs",
            url,
            sample.error or f"HTTP {sample.status_code}",
            backoff,
        )
        sleep(min(backoff, max(deadline - now, 0.05)))
        backoff = min(backoff * 1.5, max_backoff)
