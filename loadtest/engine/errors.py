from __future__ import annotations


class LoadTestError(Exception):
    """Base class for fatal load test failures."""


class ConfigurationError(LoadTestError):
    """Raised when the catalog, phase list or timeouts are invalid."""


class TargetUnavailable(LoadTestError):
    """Raised when the pre-flight health probe cannot reach the target."""

    def __init__(self, url: str, reason: str | None = None) -> None:
        self.url = url
        self.reason = reason
        message = f"target {url} is not available"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RequestFailure(Exception):
    """A single request failed in transport or timed out.

    Only raised inside the request executor; it is always converted into a
    failed ``RequestSample`` before leaving ``RequestExecutor.execute``.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


__all__ = [
    "LoadTestError",
    "ConfigurationError",
    "TargetUnavailable",
    "RequestFailure",
]
