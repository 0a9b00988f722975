"""Tests for the single-request executor against a local HTTP server."""

import json
import threading
import time

import pytest

from loadtest.engine.config import Scenario, Timeouts
from loadtest.engine.executor import (
    BODY_CAPTURE_BYTES,
    DEFAULT_USER_AGENT,
    TIMEOUT_ERROR,
    RequestExecutor,
    is_success_status,
)


@pytest.fixture
def executor(http_server):
    with RequestExecutor(http_server) as executor:
        yield executor


class TestClassification:
    @pytest.mark.parametrize(
        "status,expected",
        [(None, False), (199, False), (200, True), (302, True), (399, True), (400, False), (503, False)],
    )
    def test_success_range(self, status, expected):
        assert is_success_status(status) is expected


class TestExecute:
    def test_successful_scenario(self, executor):
        sample = executor.execute(Scenario(name="home", method="GET", path="/"))
        assert sample.success
        assert sample.status_code == 200
        assert sample.scenario_name == "home"
        assert sample.error is None
        assert sample.latency_ms > 0
        assert sample.timestamp > 0
        assert sample.body_preview == "ok"

    def test_body_is_truncated(self, executor):
        sample = executor.execute("/big")
        assert sample.success
        assert len(sample.body_preview) == BODY_CAPTURE_BYTES

    def test_server_error_is_failed_sample(self, executor):
        sample = executor.execute(Scenario(name="fail", method="GET", path="/fail"))
        assert not sample.success
        assert sample.status_code == 500
        assert sample.error is None

    def test_client_error_is_failed_sample(self, executor):
        sample = executor.execute("/not-found")
        assert not sample.success
        assert sample.status_code == 404

    def test_redirect_not_followed(self, executor):
        sample = executor.execute("/redirect")
        assert sample.success
        assert sample.status_code == 302

    def test_post_sends_json_body(self, executor):
        scenario = Scenario(
            name="login",
            method="post",
            path="/api/auth/login",
            headers={"Content-Type": "application/json"},
            body={"username": "admin", "password": "admin123"},
        )
        sample = executor.execute(scenario)
        assert sample.success
        assert sample.status_code == 201
        assert '"content_type": "application/json"' in sample.body_preview
        assert "admin" in sample.body_preview

    def test_user_agent_header(self, executor):
        sample = executor.execute("/agent")
        assert sample.body_preview == DEFAULT_USER_AGENT

    def test_absolute_url_used_verbatim(self, http_server, refused_url):
        with RequestExecutor(refused_url) as executor:
            sample = executor.execute(Scenario(name="abs", method="GET", path=f"{http_server}/"))
        assert sample.success

    def test_probe_uses_health_path(self, executor):
        sample = executor.probe("/actuator/health")
        assert sample.success
        assert json.loads(sample.body_preview) == {"status": "UP"}


class TestTransportFailures:
    def test_connection_refused(self, refused_url):
        with RequestExecutor(refused_url) as executor:
            sample = executor.execute(Scenario(name="down", method="GET", path="/"))
        assert not sample.success
        assert sample.status_code is None
        assert sample.error
        assert sample.scenario_name == "down"

    def test_total_timeout(self, executor):
        sample = executor.execute("/slow", Timeouts(connect_s=1.0, total_s=0.2))
        assert not sample.success
        assert sample.status_code is None
        assert sample.error == TIMEOUT_ERROR
        assert sample.latency_ms < 600

    def test_invalid_url_does_not_raise(self):
        with RequestExecutor("not-a-url") as executor:
            sample = executor.execute("/x")
        assert not sample.success
        assert sample.status_code is None
        assert sample.error


class TestSessions:
    def test_one_session_per_thread(self, executor):
        results = []

        def worker():
            results.append(executor.execute("/").success)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results == [True] * 4
        assert len(executor._sessions) == 4
        executor.close()
        assert executor._sessions == []


class TestTotalDeadline:
    def test_trickled_response_is_cut_at_total_timeout(self, trickle_url):
        with RequestExecutor(trickle_url) as executor:
            started = time.perf_counter()
            sample = executor.execute("/", Timeouts(connect_s=1.0, total_s=0.5))
            elapsed = time.perf_counter() - started
        assert elapsed < 1.5
        assert not sample.success
        assert sample.status_code is None
        assert sample.error == TIMEOUT_ERROR

    def test_connection_reusable_after_deadline(self, http_server, trickle_url):
        with RequestExecutor(http_server) as executor:
            assert executor.execute(f"{trickle_url}/", Timeouts(connect_s=1.0, total_s=0.3)).error == TIMEOUT_ERROR
            for _ in range(3):
                assert executor.execute("/").success
