"""Telemetry sink: spans and metrics emitted by the workflow engine.

The engine never talks to a tracing backend directly. It emits span and metric
events to an injected TelemetrySink:

- NoOpTelemetry: default, discards everything
- RecordingTelemetry: keeps spans/metrics in memory (tests, debugging)
- OTelTelemetry: forwards to OpenTelemetry (requires the `otel` extra)

Span hierarchy per run: agent -> step -> llm | tool.

Example:
    >>> sink = RecordingTelemetry()
    >>> results = await Workflow(llm=llm, telemetry=sink).then(Generate("hi")).run()
    >>> [s.kind for s in sink.spans]
    ['llm', 'step', 'agent']
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .logging import get_logger

if TYPE_CHECKING:
    from volcano.foundation.config import TelemetrySettings

JsonDict = dict[str, Any]

log = get_logger("volcano.telemetry")


class SpanKind(StrEnum):
    """Span type classification."""

    AGENT = "agent"  # One workflow run
    STEP = "step"    # One declared step
    LLM = "llm"      # One model call
    TOOL = "tool"    # One tool call


class SpanStatus(StrEnum):
    """Span completion status."""

    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


@dataclass(slots=True)
class Span:
    """A unit of work with timing, attributes and completion status.

    `native` holds the backend's own span object when one exists.
    """

    name: str
    kind: SpanKind
    attributes: JsonDict = field(default_factory=dict)
    parent: Span | None = field(default=None, repr=False)
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    status: SpanStatus = SpanStatus.UNSET
    error: str | None = None
    native: object | None = field(default=None, repr=False)

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def set_attribute(self, key: str, value: Any) -> Span:
        self.attributes[key] = value
        return self

    def finish(self, error: BaseException | None = None) -> Span:
        self.end_time = time.time()
        if error is None:
            self.status = SpanStatus.OK
        else:
            self.status, self.error = SpanStatus.ERROR, str(error) or type(error).__name__
        return self

    def to_dict(self) -> JsonDict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "parent": self.parent.name if self.parent else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "error": self.error,
            "attributes": self.attributes,
        }


@dataclass(frozen=True, slots=True)
class MetricPoint:
    """One recorded metric value."""

    name: str
    value: float
    attributes: JsonDict = field(default_factory=dict)


@runtime_checkable
class TelemetrySink(Protocol):
    """Injected recorder for spans and metrics."""

    def start_span(self, kind: SpanKind, name: str, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span: ...

    def end_span(self, span: Span, error: BaseException | None = None) -> None: ...

    def record_metric(self, name: str, value: float, attributes: JsonDict | None = None) -> None: ...

    def flush(self) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class NoOpTelemetry:
    """Silent sink for disabled telemetry."""

    def start_span(self, kind: SpanKind, name: str, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span:
        return Span(name=name, kind=kind, attributes=attributes or {}, parent=parent)

    def end_span(self, span: Span, error: BaseException | None = None) -> None:
        span.finish(error)

    def record_metric(self, name: str, value: float, attributes: JsonDict | None = None) -> None:
        pass

    def flush(self) -> None:
        pass


@dataclass(slots=True)
class RecordingTelemetry:
    """Keeps finished spans and metric points in memory."""

    spans: list[Span] = field(default_factory=list)
    metrics: list[MetricPoint] = field(default_factory=list)
    flushes: int = 0

    def start_span(self, kind: SpanKind, name: str, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span:
        return Span(name=name, kind=kind, attributes=dict(attributes or {}), parent=parent)

    def end_span(self, span: Span, error: BaseException | None = None) -> None:
        self.spans.append(span.finish(error))

    def record_metric(self, name: str, value: float, attributes: JsonDict | None = None) -> None:
        self.metrics.append(MetricPoint(name, float(value), dict(attributes or {})))

    def flush(self) -> None:
        self.flushes += 1

    def spans_of(self, kind: SpanKind) -> list[Span]:
        return [s for s in self.spans if s.kind == kind]

    def metric_total(self, name: str) -> float:
        return sum(m.value for m in self.metrics if m.name == name)


@dataclass
class OTelTelemetry:
    """Bridge to the OpenTelemetry API. Requires: pip install volcano-agents[otel]

    Uses the globally configured tracer/meter providers unless explicit ones are
    given. Durations are recorded as histograms, everything else as counters.
    """

    service_name: str = "volcano"
    version: str = "0.1.0"
    tracer: Any = None
    meter: Any = None
    _instruments: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        try:
            from opentelemetry import metrics, trace
        except ImportError as e:
            raise ImportError("OpenTelemetry telemetry requires: pip install volcano-agents[otel]") from e
        self.tracer = self.tracer or trace.get_tracer(self.service_name, self.version)
        self.meter = self.meter or metrics.get_meter(self.service_name, self.version)

    def start_span(self, kind: SpanKind, name: str, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span:
        from opentelemetry import trace

        attrs = {"volcano.kind": kind.value, **(attributes or {})}
        ctx = trace.set_span_in_context(parent.native) if parent is not None and parent.native is not None else None
        native = self.tracer.start_span(name, context=ctx, attributes=_otel_attributes(attrs))
        return Span(name=name, kind=kind, attributes=attrs, parent=parent, native=native)

    def end_span(self, span: Span, error: BaseException | None = None) -> None:
        from opentelemetry.trace import Status, StatusCode

        span.finish(error)
        if (native := span.native) is None:
            return
        if error is not None:
            native.record_exception(error)
            native.set_status(Status(StatusCode.ERROR, span.error))
        else:
            native.set_status(Status(StatusCode.OK))
        native.set_attributes(_otel_attributes(span.attributes))
        native.end()

    def record_metric(self, name: str, value: float, attributes: JsonDict | None = None) -> None:
        if (instrument := self._instruments.get(name)) is None:
            if name.endswith("duration"):
                instrument = self.meter.create_histogram(name, unit="ms")
            else:
                instrument = self.meter.create_counter(name)
            self._instruments[name] = instrument
        attrs = _otel_attributes(attributes or {})
        if hasattr(instrument, "record"):
            instrument.record(value, attributes=attrs)
        else:
            instrument.add(value, attributes=attrs)

    def flush(self) -> None:
        from opentelemetry import metrics, trace

        for provider in (trace.get_tracer_provider(), metrics.get_meter_provider()):
            if callable(force_flush := getattr(provider, "force_flush", None)):
                force_flush()


@dataclass(slots=True)
class SafeTelemetry:
    """Wraps a sink so a misbehaving backend cannot abort a workflow run."""

    inner: TelemetrySink

    def start_span(self, kind: SpanKind, name: str, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span:
        try:
            return self.inner.start_span(kind, name, attributes, parent)
        except Exception as e:
            log.warning("telemetry start_span failed", span=name, error=str(e))
            return Span(name=name, kind=kind, attributes=attributes or {}, parent=parent)

    def end_span(self, span: Span, error: BaseException | None = None) -> None:
        try:
            self.inner.end_span(span, error)
        except Exception as e:
            log.warning("telemetry end_span failed", span=span.name, error=str(e))

    def record_metric(self, name: str, value: float, attributes: JsonDict | None = None) -> None:
        try:
            self.inner.record_metric(name, value, attributes)
        except Exception as e:
            log.warning("telemetry record_metric failed", metric=name, error=str(e))

    def flush(self) -> None:
        try:
            self.inner.flush()
        except Exception as e:
            log.warning("telemetry flush failed", error=str(e))


def telemetry_from_settings(settings: TelemetrySettings | None = None) -> TelemetrySink:
    """OTelTelemetry when VOLCANO_TELEMETRY_ENABLED is set, otherwise NoOpTelemetry."""
    if settings is None:
        from volcano.foundation.config import get_settings
        settings = get_settings().telemetry
    return OTelTelemetry(service_name=settings.service_name) if settings.enabled else NoOpTelemetry()


def _otel_attributes(attrs: JsonDict) -> dict[str, str | bool | int | float]:
    """OTel only accepts primitives; drop None and stringify the rest."""
    out: dict[str, str | bool | int | float] = {}
    for k, v in attrs.items():
        match v:
            case None: continue
            case str() | bool() | int() | float(): out[k] = v
            case _: out[k] = str(v)
    return out
