import http.server
import json
import os
import socket
import socketserver
import threading
import time
from socketserver import ThreadingMixIn

import pytest

os.environ.setdefault("MPLBACKEND", "Agg")

from loadtest.engine.executor import RequestSample


class ThreadingHTTPServer(ThreadingMixIn, http.server.HTTPServer):
    daemon_threads = True


class TargetHandler(http.server.BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/actuator/health":
            self._send_json(200, {"status": "UP"})
        elif self.path == "/down-health":
            self._send_json(503, {"status": "DOWN"})
        elif self.path == "/degraded-health":
            self._send_json(200, {"status": "DEGRADED"})
        elif self.path == "/big":
            self._send(200, b"x" * 10_000)
        elif self.path == "/fail":
            self._send(500, b"boom")
        elif self.path == "/not-found":
            self._send(404, b"missing")
        elif self.path == "/redirect":
            self.send_response(302)
            self.send_header("Location", "/fail")
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif self.path == "/slow":
            time.sleep(0.6)
            self._send(200, b"late")
        elif self.path == "/agent":
            self._send(200, self.headers.get("User-Agent", "").encode("utf-8"))
        else:
            self._send(200, b"ok")

    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        payload = {
            "content_type": self.headers.get("Content-Type"),
            "body": body.decode("utf-8"),
        }
        self._send_json(201, payload)

    def _send_json(self, status, payload):
        self._send(status, json.dumps(payload).encode("utf-8"), "application/json")

    def _send(self, status, data, content_type="text/plain"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), TargetHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()


class TrickleHandler(socketserver.BaseRequestHandler):
    """Answers with a valid but very slowly delivered HTTP response."""

    byte_interval_s = 0.1

    def handle(self):
        self.request.recv(65536)
        path = self.server.trickle_path
        if path == "headers":
            payload = b"HTTP/1.1 200 OK\r\nX-Slow: " + b"a" * 60 + b"\r\nContent-Length: 2\r\n\r\nok"
        else:
            head = b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\n"
            try:
                self.request.sendall(head)
            except OSError:
                return
            payload = b"x" * 1000
        for index in range(len(payload)):
            try:
                self.request.sendall(payload[index:index + 1])
            except OSError:
                return
            time.sleep(self.byte_interval_s)


class TrickleServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


@pytest.fixture(params=["headers", "body"])
def trickle_url(request):
    server = TrickleServer(("127.0.0.1", 0), TrickleHandler)
    server.trickle_path = request.param
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def refused_url():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}"


class StubExecutor:
    """In-memory executor: health probes succeed, scenarios follow ``success``."""

    def __init__(self, success=True, delay_s=0.0, latency_ms=5.0, health_ok=True):
        self.success = success
        self.delay_s = delay_s
        self.latency_ms = latency_ms
        self.health_ok = health_ok
        self.calls = 0
        self.probes = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.started_at = []
        self.probed_paths = []
        self._lock = threading.Lock()

    def execute(self, target, timeouts=None):
        if isinstance(target, str):
            with self._lock:
                self.probes += 1
                self.probed_paths.append(target)
            return RequestSample(
                scenario_name=None,
                success=self.health_ok,
                status_code=200 if self.health_ok else None,
                latency_ms=1.0,
                error=None if self.health_ok else "Connection refused",
                timestamp=time.time(),
            )

        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.started_at.append(time.time())
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
        finally:
            with self._lock:
                self.in_flight -= 1

        return RequestSample(
            scenario_name=target.name,
            success=self.success,
            status_code=200 if self.success else 500,
            latency_ms=self.latency_ms,
            error=None,
            timestamp=time.time(),
        )

    def probe(self, path, timeouts=None):
        return self.execute(path, timeouts)


@pytest.fixture
def stub_executor():
    return StubExecutor()


def make_sample(latency_ms, success=True, status_code=200, error=None, name="scenario", timestamp=1000.0):
    return RequestSample(
        scenario_name=name,
        success=success,
        status_code=status_code,
        latency_ms=latency_ms,
        error=error,
        timestamp=timestamp,
    )
