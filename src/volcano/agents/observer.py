"""Run observers: progress callbacks with defined call points.

All methods are optional. An observer that raises is logged and ignored; it
never fails a run.

Call points:
    on_step_start(index, step, nested)   before a top-level (or composed) step
    on_step_end(index, result, nested)   after each result is recorded
    on_token(token)                      per streamed token of a Generate step
    on_tool_call(record)                 after each auto-selected tool call
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from volcano.runtime.observability import get_logger

if TYPE_CHECKING:
    from volcano.mcp import ToolCallRecord

    from .results import StepResult
    from .steps import Step

log = get_logger("volcano.observer")


@runtime_checkable
class WorkflowObserver(Protocol):
    def on_step_start(self, index: int, step: Step, nested: bool) -> None: ...

    def on_step_end(self, index: int, result: StepResult, nested: bool) -> None: ...

    def on_token(self, token: str) -> None: ...

    def on_tool_call(self, record: ToolCallRecord) -> None: ...


def wants_tokens(observer: object | None) -> bool:
    return observer is not None and callable(getattr(observer, "on_token", None))


def notify(observer: object | None, event: str, *args: Any) -> None:
    """Invoke `observer.<event>(*args)` if defined, swallowing its errors."""
    if observer is None or not callable(method := getattr(observer, event, None)):
        return
    try:
        method(*args)
    except Exception as e:
        log.warning("observer callback failed", callback=event, error=str(e))


@dataclass(slots=True)
class RecordingObserver:
    """Observer that keeps every event; handy in tests and notebooks."""

    events: list[tuple[str, Any]] = field(default_factory=list)
    tokens: list[str] = field(default_factory=list)

    def on_step_start(self, index: int, step: Step, nested: bool) -> None:
        self.events.append(("start", (index, type(step).__name__, nested)))

    def on_step_end(self, index: int, result: StepResult, nested: bool) -> None:
        self.events.append(("end", (index, result, nested)))

    def on_token(self, token: str) -> None:
        self.tokens.append(token)

    def on_tool_call(self, record: ToolCallRecord) -> None:
        self.events.append(("tool", record))

    def of(self, kind: str) -> list[Any]:
        return [payload for k, payload in self.events if k == kind]
