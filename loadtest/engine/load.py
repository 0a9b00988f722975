from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Protocol, Sequence

from .catalog import ScenarioCatalog
from .collector import AggregateReport, MetricsAggregator, PhaseResult
from .config import LoadTestConfig, PhaseSpec, Scenario, Timeouts, resolve_url
from .errors import TargetUnavailable
from .executor import RequestExecutor, RequestSample

LOGGER = logging.getLogger("loadtest.engine.load")

PROGRESS_EVERY_DEFAULT = 10
JOIN_INTERVAL_S = 0.5

ReportSink = Callable[[AggregateReport], None]


class Executor(Protocol):
    def execute(
        self,
        target: Scenario | str,
        timeouts: Timeouts | None = None,
    ) -> RequestSample: ...

    def probe(self, path: str, timeouts: Timeouts | None = None) -> RequestSample: ...


class VirtualUser:
    """One simulated client issuing paced requests until its stop time.

    The deadline and the cancellation event are checked only between
    iterations, so a request already in flight always completes and is
    recorded.
    """

    def __init__(
        self,
        user_id: int,
        catalog: ScenarioCatalog,
        executor: Executor,
        aggregator: MetricsAggregator,
        pacing_ms: float,
        stop_event: threading.Event | None = None,
        progress_every: int = PROGRESS_EVERY_DEFAULT,
    ) -> None:
        self.user_id = user_id
        self.request_count = 0
        self._catalog = catalog
        self._executor = executor
        self._aggregator = aggregator
        self._pacing_s = max(pacing_ms, 0.0) / 1000.0
        self._stop_event = stop_event or threading.Event()
        self._progress_every = progress_every

    def run(self, stop_time: float) -> int:
        while time.time() < stop_time and not self._stop_event.is_set():
            scenario = self._catalog.select()
            sample = self._executor.execute(scenario)
            self._aggregator.record(sample)
            self.request_count += 1

            if self._progress_every and self.request_count % self._progress_every == 0:
                LOGGER.debug("user %d: %d requests completed", self.user_id, self.request_count)

            if self._pacing_s > 0 and self._stop_event.wait(timeout=self._pacing_s):
                break

        LOGGER.debug("user %d completed %d requests", self.user_id, self.request_count)
        return self.request_count


class PhaseController:
    """Runs the configured phases in order and builds the aggregate report."""

    def __init__(
        self,
        config: LoadTestConfig,
        executor: Executor | None = None,
        aggregator: MetricsAggregator | None = None,
        catalog: ScenarioCatalog | None = None,
        progress_every: int = PROGRESS_EVERY_DEFAULT,
    ) -> None:
        config.validate()
        self._config = config
        self._owned_executor: RequestExecutor | None = None
        if executor is None:
            self._owned_executor = RequestExecutor(
                base_url=config.base_url,
                timeouts=config.request_timeouts,
                health_timeouts=config.health_timeouts,
            )
            executor = self._owned_executor
        self._executor = executor
        self._aggregator = aggregator or MetricsAggregator()
        self._catalog = catalog or ScenarioCatalog(config.scenarios, seed=config.seed)
        self._progress_every = progress_every
        self._stop_event = threading.Event()
        self._phases: list[PhaseResult] = []
        self._user_errors: list[BaseException] = []

    @property
    def config(self) -> LoadTestConfig:
        return self._config

    @property
    def aggregator(self) -> MetricsAggregator:
        return self._aggregator

    @property
    def phases(self) -> list[PhaseResult]:
        return list(self._phases)

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    @property
    def user_errors(self) -> list[BaseException]:
        return list(self._user_errors)

    def cancel(self) -> None:
        if not self._stop_event.is_set():
            LOGGER.warning("cancellation requested; letting in-flight requests finish")
        self._stop_event.set()

    def preflight(self) -> RequestSample | None:
        """Probe the health path once; raise ``TargetUnavailable`` on failure."""
        health_path = self._config.health_path
        if not health_path:
            return None
        url = resolve_url(self._config.base_url, health_path)
        LOGGER.info("Checking target availability at %s", url)
        sample = self._executor.probe(health_path, self._config.health_timeouts)
        if not sample.success:
            reason = sample.error or f"HTTP {sample.status_code}"
            raise TargetUnavailable(url, reason)
        LOGGER.info("Target is available (%.0fms)", sample.latency_ms)

        for path in self._config.advisory_paths:
            advisory = self._executor.probe(path, self._config.health_timeouts)
            LOGGER.info(
                "  %s: %s (%.0fms)",
                path,
                "OK" if advisory.success else advisory.error or f"HTTP {advisory.status_code}",
                advisory.latency_ms,
            )
        return sample

    def run_phase(self, spec: PhaseSpec) -> PhaseResult:
        start_index = self._aggregator.count()
        started_at = time.time()
        stop_time = started_at + spec.duration_seconds
        counts = [0] * spec.concurrency

        def runner(index: int) -> None:
            user = VirtualUser(
                user_id=index + 1,
                catalog=self._catalog,
                executor=self._executor,
                aggregator=self._aggregator,
                pacing_ms=self._config.pacing_ms,
                stop_event=self._stop_event,
                progress_every=self._progress_every,
            )
            try:
                user.run(stop_time)
            except Exception as exc:  # noqa: BLE001
                self._user_errors.append(exc)
                LOGGER.exception("virtual user %d failed", user.user_id)
            finally:
                counts[index] = user.request_count

        threads = [
            threading.Thread(
                target=runner,
                args=(index,),
                name=f"vu-{spec.name}-{index + 1}",
                daemon=True,
            )
            for index in range(spec.concurrency)
        ]
        for thread in threads:
            thread.start()

        try:
            _join_all(threads)
        except KeyboardInterrupt:
            self.cancel()
            _join_after_cancel(threads)

        finished_at = time.time()
        result = PhaseResult.from_samples(
            spec,
            self._aggregator.samples(start_index),
            user_request_counts=counts,
            started_at=started_at,
            finished_at=finished_at,
        )
        self._phases.append(result)

        LOGGER.info(
            "%s completed: %d requests, %d errors, %.0fms avg",
            spec.name,
            result.request_count,
            result.error_count,
            result.avg_latency_ms,
        )
        if result.instability is not None:
            LOGGER.warning(
                "System instability detected in %s phase: %s",
                spec.name,
                "; ".join(result.instability.reasons),
            )
        return result

    def run_all_phases(self, sink: ReportSink | None = None) -> AggregateReport:
        phases: Sequence[PhaseSpec] = self._config.phases
        self.preflight()

        self._aggregator.mark_started(time.time())
        try:
            for index, spec in enumerate(phases):
                if self._stop_event.is_set():
                    break
                LOGGER.info(
                    "Running %s phase: %d users for %ss",
                    spec.name,
                    spec.concurrency,
                    spec.duration_seconds,
                )
                self.run_phase(spec)

                is_last = index == len(phases) - 1
                pause = self._config.phase_pause_s
                if not is_last and pause > 0 and not self._stop_event.is_set():
                    LOGGER.info("Pausing %.1f seconds between phases", pause)
                    try:
                        if self._stop_event.wait(timeout=pause):
                            break
                    except KeyboardInterrupt:
                        self.cancel()
                        break
        finally:
            self._aggregator.mark_finished(time.time())

        if self._stop_event.is_set():
            LOGGER.warning(
                "Run cancelled after %d of %d phase(s); reporting partial results",
                len(self._phases),
                len(phases),
            )
        LOGGER.info("Requests per scenario: %s", self._aggregator.summaries())
        report = self._aggregator.snapshot(self._phases, cancelled=self._stop_event.is_set())
        if sink is not None:
            sink(report)
        return report

    def close(self) -> None:
        if self._owned_executor is not None:
            self._owned_executor.close()

    def __enter__(self) -> "PhaseController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _join_all(threads: Sequence[threading.Thread]) -> None:
    # Short join slices keep the main thread responsive to signals.
    for thread in threads:
        while thread.is_alive():
            thread.join(timeout=JOIN_INTERVAL_S)


def _join_after_cancel(threads: Sequence[threading.Thread]) -> None:
    # Users stop after their in-flight request; further interrupts only log.
    while True:
        try:
            _join_all(threads)
            return
        except KeyboardInterrupt:
            alive = sum(1 for thread in threads if thread.is_alive())
            LOGGER.warning("already cancelling; waiting for %d virtual user(s)", alive)
