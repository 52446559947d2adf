"""Retry and timeout policy for model and tool calls.

Quick Start:
    >>> from volcano.runtime.retry import RetryPolicy, execute_with_retry
    >>> policy = RetryPolicy(attempts=3, backoff=2.0)
    >>> result = await execute_with_retry(call, policy, label="llm")
"""

from .backoff import Backoff, ConstantBackoff, ExponentialBackoff, NoBackoff
from .policy import NO_RETRY, RetryPolicy, execute_with_retry
from .timeout import TimeoutSpec, with_timeout

__all__ = [
    # Backoff strategies
    "Backoff", "NoBackoff", "ConstantBackoff", "ExponentialBackoff",
    # Policy
    "RetryPolicy", "NO_RETRY", "execute_with_retry",
    # Timeout
    "TimeoutSpec", "with_timeout",
]
