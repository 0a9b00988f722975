"""
HTTP load, performance and stress harness.

Drives weighted synthetic traffic against a service topology in timed
phases and reports latency percentiles, throughput and a stability verdict.
"""

from .main import main

__all__ = ["main"]
