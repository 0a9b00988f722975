"""Tests for service health checks and readiness polling."""

import pytest

from conftest import StubExecutor
from loadtest.engine.executor import RequestExecutor
from loadtest.probe import (
    DEFAULT_SERVICES,
    ServiceEndpoint,
    ServiceStatus,
    check_service,
    check_services,
    format_service_statuses,
    reports_up,
    wait_until_healthy,
)


@pytest.fixture
def executor(http_server):
    with RequestExecutor(http_server) as executor:
        yield executor


class TestReportsUp:
    @pytest.mark.parametrize(
        "body,expected",
        [
            ('{"status":"UP"}', True),
            ('{"status" : "UP", "components": {}}', True),
            ('{"status":"DOWN"}', False),
            ("", False),
            (None, False),
        ],
    )
    def test_body_matching(self, body, expected):
        assert reports_up(body) is expected


class TestCheckService:
    def test_healthy_service(self, executor, http_server):
        status = check_service(executor, ServiceEndpoint("Gateway", f"{http_server}/actuator/health"))
        assert status.running
        assert status.healthy
        assert status.status_code == 200
        assert status.label == "UP"

    def test_running_but_not_up(self, executor, http_server):
        status = check_service(executor, ServiceEndpoint("Degraded", f"{http_server}/degraded-health"))
        assert status.running
        assert not status.healthy
        assert status.label == "RUNNING (not healthy)"

    def test_error_status_is_running(self, executor, http_server):
        status = check_service(executor, ServiceEndpoint("Down", f"{http_server}/down-health"))
        assert status.running
        assert not status.healthy
        assert status.status_code == 503

    def test_unreachable_service(self, executor, refused_url):
        status = check_service(executor, ServiceEndpoint("Gone", f"{refused_url}/actuator/health"))
        assert not status.running
        assert not status.healthy
        assert status.status_code is None
        assert status.error
        assert status.label == "DOWN"

    def test_check_services_and_summary(self, executor, http_server, refused_url):
        statuses = check_services(
            executor,
            [
                ServiceEndpoint("Gateway", f"{http_server}/actuator/health"),
                ServiceEndpoint("Auth", f"{refused_url}/actuator/health"),
            ],
        )
        assert [s.name for s in statuses] == ["Gateway", "Auth"]
        text = format_service_statuses(statuses)
        assert "Gateway: UP (200)" in text
        assert "Auth: DOWN (N/A)" in text
        assert text.endswith("Services Available: 1/2")

    def test_default_services(self):
        assert len(DEFAULT_SERVICES) == 6
        assert all(s.url.endswith("/actuator/health") for s in DEFAULT_SERVICES)


class TestWaitUntilHealthy:
    def test_returns_immediately_when_healthy(self, executor):
        sleeps = []
        assert wait_until_healthy(executor, "/actuator/health", sleep=sleeps.append)
        assert sleeps == []

    def test_backs_off_until_healthy(self):
        executor = StubExecutor(health_ok=False)
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                executor.health_ok = True

        assert wait_until_healthy(executor, "/actuator/health", timeout_s=60, sleep=sleep)
        assert sleeps == [1.0, 1.5]
        assert executor.probes == 3

    def test_gives_up_at_deadline(self):
        executor = StubExecutor(health_ok=False)
        sleeps = []
        assert not wait_until_healthy(executor, "/actuator/health", timeout_s=0, sleep=sleeps.append)
        assert sleeps == []
        assert executor.probes == 1

    def test_status_label_for_unhealthy_running(self):
        status = ServiceStatus("x", "http://x", running=False, healthy=False, status_code=None, latency_ms=1.0)
        assert status.label == "DOWN"
