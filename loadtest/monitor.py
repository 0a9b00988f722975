from __future__ import annotations

import logging
import threading

import psutil

LOGGER = logging.getLogger("loadtest.monitor")

MEMORY_INTERVAL_S = 10.0


class MemoryMonitor:
    """Logs this process's resident memory at a fixed interval while a run is active."""

    def __init__(self, interval_s: float = MEMORY_INTERVAL_S) -> None:
        self._interval_s = interval_s
        self._process = psutil.Process()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.peak_rss_bytes = 0

    def sample(self) -> int:
        rss = self._process.memory_info().rss
        self.peak_rss_bytes = max(self.peak_rss_bytes, rss)
        return rss

    def start(self) -> None:
        def runner() -> None:
            while not self._stop_event.wait(timeout=self._interval_s):
                rss = self.sample()
                LOGGER.info(
                    "Memory: %dMB resident, %d threads",
                    round(rss / 1024 / 1024),
                    self._process.num_threads(),
                )

        self.sample()
        thread = threading.Thread(target=runner, name="memory-monitor", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)

    def __enter__(self) -> "MemoryMonitor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
