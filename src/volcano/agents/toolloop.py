"""Automatic tool selection.

The model sees every tool discovered on the step's handles and may request
calls over several turns. Each turn's calls are resolved, validated as a
batch, partitioned by the concurrency classifier and executed; their outputs
are appended to the working prompt for the next turn. The loop ends when a
turn requests no calls or the iteration cap is reached.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from volcano.llm import sanitize_tool_name
from volcano.mcp import validate_arguments
from volcano.runtime.observability import get_logger

from .classifier import classify
from .context import tool_results_block
from .observer import notify
from .results import StepResult

if TYPE_CHECKING:
    from volcano.llm import LLMToolResult, ToolCallRequest
    from volcano.mcp import ToolCallRecord, ToolDefinition
    from volcano.runtime.observability import Span

    from .interpreter import Interpreter, LeafConfig
    from .steps import AutoSelect

NO_TOOLS_MESSAGE = "No tools available for this request."

log = get_logger("volcano.toolloop")


@dataclass(frozen=True, slots=True)
class ResolvedCall:
    """A requested call matched to its tool definition."""

    name: str
    arguments: dict[str, Any]
    definition: ToolDefinition = field(repr=False)
    id: str | None = None


def tool_index(tools: list[ToolDefinition]) -> dict[str, ToolDefinition]:
    """Lookup by qualified name and by provider-sanitized name."""
    index = {sanitize_tool_name(t.name): t for t in tools}
    index.update({t.name: t for t in tools})
    return index


def resolve_calls(requests: tuple[ToolCallRequest, ...], index: dict[str, ToolDefinition]) -> list[ResolvedCall]:
    """Match requests to definitions; unknown names are logged and dropped."""
    resolved: list[ResolvedCall] = []
    for request in requests:
        if (definition := index.get(request.name)) is None:
            log.warning("model requested unknown tool, skipping", tool=request.name)
            continue
        resolved.append(ResolvedCall(definition.name, dict(request.arguments), definition, request.id))
    return resolved


async def run_tool_loop(interp: Interpreter, step: AutoSelect, cfg: LeafConfig, span: Span) -> StepResult:
    llm = cfg.require_llm()
    base_prompt = interp.prompt_for(step.prompt, cfg)
    result = StepResult(prompt=step.prompt, tool_calls=[])

    tools = await interp.runtime.discover(step.handles)
    if not tools:
        result.llm_output = NO_TOOLS_MESSAGE
        return result

    index = tool_index(tools)
    max_iterations = step.max_iterations or interp.config.max_tool_iterations
    records: list[ToolCallRecord] = []
    working = base_prompt
    text: str | None = None

    async def run_one(call: ResolvedCall) -> ToolCallRecord:
        record = await interp.call_tool(call.definition.handle, call.definition.tool_name, call.arguments, cfg,
                                        parent=span, definition=call.definition)
        notify(interp.observer, "on_tool_call", record)
        return record

    for turn in range(max_iterations):
        reply: LLMToolResult
        reply, ms = await interp.call_llm(cfg, lambda: llm.generate_with_tools(working, tools), parent=span,
                                          op="generate_with_tools")
        result.llm_ms += ms
        if reply.content:
            text = reply.content
        if not reply.tool_calls:
            break

        calls = resolve_calls(reply.tool_calls, index)
        for call in calls:
            validate_arguments(call.definition.parameters, call.arguments, tool=call.name)

        for group in classify(calls, interp.config.classifier):
            if group.parallel:
                executed = await asyncio.gather(*(run_one(c) for c in group.calls))
            else:
                executed = [await run_one(c) for c in group.calls]
            records += executed
            result.tool_ms += sum(r.duration_ms for r in executed)

        working = base_prompt + tool_results_block(records)
        log.debug("tool turn finished", turn=turn + 1, calls=len(calls), total=len(records))

    result.llm_output = text
    result.tool_calls = records
    return result
