"""Observability: structured logging and the telemetry sink.

Quick Start:
    >>> from volcano.runtime.observability import configure_logging, get_logger, RecordingTelemetry
    >>> configure_logging(format="json", level="DEBUG")
    >>> log = get_logger("my-app")
    >>> sink = RecordingTelemetry()  # pass as Workflow(telemetry=sink)
"""

from .logging import (
    BoundLogger,
    ConsoleRenderer,
    JsonRenderer,
    LogEntry,
    LogRenderer,
    MemoryRenderer,
    NoOpRenderer,
    configure_from_settings,
    configure_logging,
    get_logger,
    log_context,
    set_renderer,
)
from .telemetry import (
    MetricPoint,
    NoOpTelemetry,
    OTelTelemetry,
    RecordingTelemetry,
    SafeTelemetry,
    Span,
    SpanKind,
    SpanStatus,
    TelemetrySink,
    telemetry_from_settings,
)

__all__ = [
    # Logging
    "BoundLogger", "ConsoleRenderer", "JsonRenderer", "LogEntry", "LogRenderer", "MemoryRenderer",
    "NoOpRenderer", "configure_from_settings", "configure_logging", "get_logger", "log_context", "set_renderer",
    # Telemetry
    "Span", "SpanKind", "SpanStatus", "MetricPoint", "TelemetrySink",
    "NoOpTelemetry", "RecordingTelemetry", "OTelTelemetry", "SafeTelemetry", "telemetry_from_settings",
]
