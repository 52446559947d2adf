"""Runtime layer: retry/timeout policy and observability."""

from .observability import NoOpTelemetry, RecordingTelemetry, TelemetrySink, configure_logging, get_logger
from .retry import NO_RETRY, RetryPolicy, TimeoutSpec, execute_with_retry, with_timeout

__all__ = [
    "RetryPolicy", "NO_RETRY", "TimeoutSpec", "execute_with_retry", "with_timeout",
    "TelemetrySink", "NoOpTelemetry", "RecordingTelemetry", "configure_logging", "get_logger",
]
