from __future__ import annotations

import heapq
import itertools
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from .config import HEALTH_TIMEOUTS, LOAD_TIMEOUTS, Scenario, Timeouts, resolve_url
from .errors import ConfigurationError, RequestFailure

LOGGER = logging.getLogger("loadtest.engine.executor")

BODY_CAPTURE_BYTES = 100
DEFAULT_USER_AGENT = "loadtest-harness/1.0"
TIMEOUT_ERROR = "Request timeout"

_CURRENT = threading.local()


@dataclass(frozen=True)
class RequestSample:
    """Outcome of exactly one executed request."""

    scenario_name: str | None
    success: bool
    status_code: int | None
    latency_ms: float
    error: str | None
    timestamp: float
    body_preview: str = ""


def is_success_status(status_code: int | None) -> bool:
    return status_code is not None and 200 <= status_code < 400


class _RequestDeadline:
    """Total time budget of one request.

    Socket timeouts restart on every received byte, so a peer that trickles
    its response could hold a request indefinitely. When the deadline
    expires the socket carrying the request is shut down, which makes the
    blocked read return at once.
    """

    def __init__(self, total_s: float) -> None:
        self.due = time.monotonic() + total_s
        self.expired = False
        self._done = False
        self._conn: HTTPConnection | None = None
        self._lock = threading.Lock()

    def attach(self, conn: HTTPConnection) -> None:
        with self._lock:
            if self._done:
                return
            self._conn = conn
            if self.expired:
                _shutdown(conn)

    def expire(self) -> None:
        with self._lock:
            if self._done:
                return
            self.expired = True
            if self._conn is not None:
                _shutdown(self._conn)

    def finish(self) -> None:
        with self._lock:
            self._done = True
            self._conn = None


def _shutdown(conn: HTTPConnection) -> None:
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class _DeadlineWatchdog:
    """One daemon thread expiring request deadlines in due order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, _RequestDeadline]] = []
        self._seq = itertools.count()
        self._thread: threading.Thread | None = None
        self._closed = False

    def schedule(self, deadline: _RequestDeadline) -> None:
        with self._cond:
            if self._thread is None:
                self._closed = False
                self._thread = threading.Thread(
                    target=self._run, name="request-deadlines", daemon=True
                )
                self._thread.start()
            heapq.heappush(self._heap, (deadline.due, next(self._seq), deadline))
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            thread = self._thread
            self._closed = True
            self._cond.notify()
        if thread is not None:
            thread.join(timeout=5.0)
        with self._cond:
            self._thread = None
            self._heap.clear()

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._closed:
                    return
                if not self._heap:
                    self._cond.wait()
                    continue
                due, _, deadline = self._heap[0]
                delay = due - time.monotonic()
                if delay > 0:
                    self._cond.wait(timeout=delay)
                    continue
                heapq.heappop(self._heap)
            deadline.expire()


class _DeadlineConnectionMixin:
    """Registers the connection with the calling thread's request deadline."""

    def connect(self) -> None:
        super().connect()  # type: ignore[misc]
        _attach_current(self)

    def request(self, *args: Any, **kwargs: Any) -> Any:
        _attach_current(self)
        return super().request(*args, **kwargs)  # type: ignore[misc]


def _attach_current(conn: Any) -> None:
    deadline = getattr(_CURRENT, "deadline", None)
    if deadline is not None:
        deadline.attach(conn)


class _DeadlineHTTPConnection(_DeadlineConnectionMixin, HTTPConnection):
    pass


class _DeadlineHTTPSConnection(_DeadlineConnectionMixin, HTTPSConnection):
    pass


class _DeadlineHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _DeadlineHTTPConnection


class _DeadlineHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _DeadlineHTTPSConnection


class DeadlineHTTPAdapter(HTTPAdapter):
    """HTTPAdapter whose connections can be aborted by a request deadline."""

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _DeadlineHTTPConnectionPool,
            "https": _DeadlineHTTPSConnectionPool,
        }


class RequestExecutor:
    """Issues single timed HTTP requests and turns every outcome into a sample.

    Each worker thread gets its own ``requests.Session``. Nothing raised by
    the transport escapes :meth:`execute`, and no request outlives its
    total timeout.
    """

    def __init__(
        self,
        base_url: str,
        timeouts: Timeouts = LOAD_TIMEOUTS,
        health_timeouts: Timeouts = HEALTH_TIMEOUTS,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        if not base_url:
            raise ConfigurationError("base URL must not be empty")
        self._base_url = base_url
        self._timeouts = timeouts
        self._health_timeouts = health_timeouts
        self._user_agent = user_agent
        self._local = threading.local()
        self._sessions_lock = threading.Lock()
        self._sessions: list[requests.Session] = []
        self._watchdog = _DeadlineWatchdog()

    @property
    def base_url(self) -> str:
        return self._base_url

    def execute(
        self,
        target: Scenario | str,
        timeouts: Timeouts | None = None,
    ) -> RequestSample:
        if isinstance(target, Scenario):
            name: str | None = target.name
            method = target.method.upper()
            url = target.url(self._base_url)
            headers = target.headers
            body = target.body
        else:
            name = None
            method = "GET"
            url = resolve_url(self._base_url, target)
            headers = None
            body = None

        budget = timeouts or self._timeouts
        timestamp = time.time()
        started = time.perf_counter()
        try:
            status_code, preview = self._send(method, url, headers, body, budget, started)
        except RequestFailure as failure:
            return RequestSample(
                scenario_name=name,
                success=False,
                status_code=failure.status_code,
                latency_ms=_elapsed_ms(started),
                error=failure.message,
                timestamp=timestamp,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("unexpected failure requesting %s %s", method, url)
            return RequestSample(
                scenario_name=name,
                success=False,
                status_code=None,
                latency_ms=_elapsed_ms(started),
                error=f"{exc.__class__.__name__}: {exc}",
                timestamp=timestamp,
            )

        return RequestSample(
            scenario_name=name,
            success=is_success_status(status_code),
            status_code=status_code,
            latency_ms=_elapsed_ms(started),
            error=None,
            timestamp=timestamp,
            body_preview=preview,
        )

    def probe(self, path: str, timeouts: Timeouts | None = None) -> RequestSample:
        """Health-check style request using the shorter health timeouts."""
        return self.execute(path, timeouts or self._health_timeouts)

    def close(self) -> None:
        with self._sessions_lock:
            sessions = list(self._sessions)
            self._sessions.clear()
        for session in sessions:
            session.close()
        self._watchdog.close()

    def __enter__(self) -> "RequestExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = self._user_agent
            session.mount("http://", DeadlineHTTPAdapter())
            session.mount("https://", DeadlineHTTPAdapter())
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        body: Any,
        timeouts: Timeouts,
        started: float,
    ) -> tuple[int, str]:
        kwargs: dict[str, Any] = {
            "headers": headers,
            "timeout": timeouts.as_requests_timeout(),
            "allow_redirects": False,
            "stream": True,
        }
        if body is not None:
            if isinstance(body, (str, bytes)):
                kwargs["data"] = body
            else:
                kwargs["json"] = body

        deadline = _RequestDeadline(timeouts.total_s)
        self._watchdog.schedule(deadline)
        _CURRENT.deadline = deadline
        try:
            try:
                response = self._session().request(method, url, **kwargs)
            except requests.Timeout as exc:
                raise RequestFailure(TIMEOUT_ERROR) from exc
            except requests.RequestException as exc:
                if deadline.expired:
                    raise RequestFailure(TIMEOUT_ERROR) from exc
                raise RequestFailure(str(exc) or exc.__class__.__name__) from exc

            # Only the head of the body is kept; the rest is discarded unread.
            try:
                chunk = next(response.iter_content(chunk_size=BODY_CAPTURE_BYTES), b"")
            except requests.RequestException as exc:
                if deadline.expired:
                    raise RequestFailure(TIMEOUT_ERROR) from exc
                raise RequestFailure(f"failed reading response body: {exc}") from exc
            finally:
                response.close()
        finally:
            deadline.finish()
            _CURRENT.deadline = None

        if deadline.expired or time.perf_counter() - started > timeouts.total_s:
            raise RequestFailure(TIMEOUT_ERROR)

        preview = chunk[:BODY_CAPTURE_BYTES].decode("utf-8", errors="replace")
        return response.status_code, preview


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
