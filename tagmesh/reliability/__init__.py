"""
Reliability module: retry and backoff.
"""

from tagmesh.reliability.retry import (
    RetryPolicy,
    calculate_backoff,
    retry_result,
)

__all__ = [
    "RetryPolicy",
    "calculate_backoff",
    "retry_result",
]
