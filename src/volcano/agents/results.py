"""Step results and the run trace."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import orjson

from volcano.mcp import ToolCallRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

JsonDict = dict[str, Any]


@dataclass(frozen=True, slots=True)
class DelegationRecord:
    """One hand-off from a coordinator to a child agent."""

    agent: str
    task: str
    result: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    duration_ms: float = 0.0


@dataclass(slots=True)
class StepResult:
    """Outcome of one executed step.

    Leaf steps fill `llm_output` and/or `tool_calls`/`tool`; Parallel steps fill
    `parallel` (named) or `parallel_results` (array); Delegate steps fill
    `delegations`. The `total_*` rollups are cumulative over the trace up to and
    including this result.
    """

    prompt: str | None = None
    llm_output: str | None = None
    tool_calls: list[ToolCallRecord] | None = None
    tool: ToolCallRecord | None = None
    parallel: dict[str, StepResult] | None = None
    parallel_results: list[StepResult] | None = None
    delegations: list[DelegationRecord] | None = None
    duration_ms: float = 0.0
    llm_ms: float = 0.0
    tool_ms: float = 0.0
    total_duration_ms: float = 0.0
    total_llm_ms: float = 0.0
    total_tool_ms: float = 0.0
    metadata: JsonDict = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Best textual answer of this step."""
        if self.llm_output is not None:
            return self.llm_output
        if self.tool is not None:
            return as_text(self.tool.result)
        return ""

    @property
    def tool_records(self) -> list[ToolCallRecord]:
        """Tool calls made by this step (auto-selected or explicit)."""
        if self.tool_calls:
            return list(self.tool_calls)
        return [self.tool] if self.tool is not None else []

    def to_dict(self) -> JsonDict:
        def records(rs: Iterable[ToolCallRecord]) -> list[JsonDict]:
            return [{"name": r.name, "arguments": r.arguments, "result": r.result,
                     "duration_ms": r.duration_ms, "endpoint": r.endpoint} for r in rs]

        out: JsonDict = {"prompt": self.prompt, "llm_output": self.llm_output,
                         "duration_ms": self.duration_ms, "llm_ms": self.llm_ms, "tool_ms": self.tool_ms,
                         "total_duration_ms": self.total_duration_ms, "total_llm_ms": self.total_llm_ms,
                         "total_tool_ms": self.total_tool_ms}
        if self.tool_calls is not None:
            out["tool_calls"] = records(self.tool_calls)
        if self.tool is not None:
            out["tool"] = records([self.tool])[0]
        if self.parallel is not None:
            out["parallel"] = {k: v.to_dict() for k, v in self.parallel.items()}
        if self.parallel_results is not None:
            out["parallel_results"] = [r.to_dict() for r in self.parallel_results]
        if self.delegations is not None:
            out["delegations"] = [{"agent": d.agent, "task": d.task, "result": d.result,
                                   "tool_calls": records(d.tool_calls), "duration_ms": d.duration_ms}
                                  for d in self.delegations]
        return out


class Trace(list[StepResult]):
    """Ordered results of a run. Appending stamps cumulative rollups."""

    def record(self, result: StepResult) -> StepResult:
        prev = self[-1] if self else None
        result.total_duration_ms = (prev.total_duration_ms if prev else 0.0) + result.duration_ms
        result.total_llm_ms = (prev.total_llm_ms if prev else 0.0) + result.llm_ms
        result.total_tool_ms = (prev.total_tool_ms if prev else 0.0) + result.tool_ms
        self.append(result)
        return result


def last_text(results: Iterable[StepResult]) -> str:
    """Text of the last result that produced any."""
    text = ""
    for r in results:
        if r.text:
            text = r.text
    return text


def as_text(value: object) -> str:
    """Tool results as prompt text: strings verbatim, anything else as JSON."""
    if isinstance(value, str):
        return value
    return orjson.dumps(value, default=str).decode()
