"""Prompt synthesis: instructions, the context block and injected context.

Every prompt-bearing step sees the last entry of the context history as:

    [Context from previous steps]
    Previous LLM answer:
    <text>
    Previous tool results:
    - <name> -> <result>

The block is assembled chunk by chunk and stops at the first chunk that would
push it past `max_chars`, so it never exceeds the limit.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .results import as_text

if TYPE_CHECKING:
    from collections.abc import Sequence

    from volcano.mcp import ToolCallRecord

    from .results import StepResult

CONTEXT_HEADER = "\n\n[Context from previous steps]\n"
TOOL_RESULTS_HEADER = "\n\n[Tool results]\n"


def build_history_context(history: Sequence[StepResult], *, max_tool_results: int, max_chars: int) -> str:
    """Context block for the next prompt ('' when there is nothing to carry over)."""
    if not history:
        return ""
    last = history[-1]
    chunks: list[str] = []
    if last.llm_output:
        chunks += ["Previous LLM answer:\n", last.llm_output, "\n"]
    if (records := last.tool_records) and max_tool_results > 0:
        chunks.append("Previous tool results:\n")
        for record in records[-max_tool_results:]:
            chunks += ["- ", record.name, " -> ", as_text(record.result), "\n"]
    if not chunks:
        return ""

    out = ""
    for chunk in (CONTEXT_HEADER, *chunks):
        if len(out) + len(chunk) > max_chars:
            break
        out += chunk
    return out


def compose_prompt(prompt: str, *, instructions: str | None = None, context: str = "", injected: str = "") -> str:
    """instructions + blank line, then prompt, injected context and history context."""
    head = f"{instructions}\n\n" if instructions else ""
    return f"{head}{prompt}{injected}{context}"


def tool_results_block(records: Sequence[ToolCallRecord]) -> str:
    """Tool outputs appended to the working prompt of the tool loop."""
    if not records:
        return ""
    return TOOL_RESULTS_HEADER + "".join(f"- {r.name} -> {as_text(r.result)}\n" for r in records)


def render_injected(label: str, payload: str | Mapping[str, Any]) -> str:
    """Extra context handed to a nested workflow's first prompt."""
    if isinstance(payload, Mapping):
        body = "".join(f"- {key}: {as_text(value)}\n" for key, value in payload.items())
    else:
        body = f"{payload}\n"
    return f"\n\n[{label}]\n{body}"
