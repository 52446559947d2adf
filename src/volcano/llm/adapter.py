"""Model adapter contract.

Vendor SDKs live outside this package. Anything that satisfies LLMAdapter can
drive a workflow: plain generation, generation with tool definitions, and
optionally token streaming.

Tool names handed to providers are the qualified `<handle id>.<tool>` names;
providers that reject dots receive `sanitize_tool_name(name)` instead, and the
tool loop resolves either form back to the definition.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import orjson

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from volcano.mcp import ToolDefinition
    from volcano.runtime.observability import TelemetrySink

JsonDict = dict[str, Any]

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Provider-neutral token counts."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(self.input_tokens + other.input_tokens, self.output_tokens + other.output_tokens,
                          self.total_tokens + other.total_tokens)


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    """A tool call the model asked for. `name` is qualified or provider-sanitized."""

    name: str
    arguments: JsonDict = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True, slots=True)
class LLMToolResult:
    """Reply to generate_with_tools: optional text plus zero or more tool calls."""

    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


@runtime_checkable
class LLMAdapter(Protocol):
    """What the engine needs from a model backend.

    `stream_tokens` is optional; adapters without it fall back to generate().
    """

    id: str
    model: str

    async def generate(self, prompt: str) -> str: ...

    async def generate_with_tools(self, prompt: str, tools: Sequence[ToolDefinition]) -> LLMToolResult: ...


@runtime_checkable
class StreamingLLMAdapter(LLMAdapter, Protocol):
    def stream_tokens(self, prompt: str) -> AsyncIterator[str]: ...


def supports_streaming(llm: object) -> bool:
    return callable(getattr(llm, "stream_tokens", None))


def provider_id(llm: object) -> str:
    """Provider identity for errors and telemetry: llm:<id or model>."""
    return f"llm:{getattr(llm, 'id', None) or getattr(llm, 'model', None) or 'unknown'}"


def sanitize_tool_name(name: str) -> str:
    """Provider-safe tool name: anything outside [a-zA-Z0-9_-] becomes '_'."""
    return _UNSAFE_NAME.sub("_", name)


def parse_tool_arguments(raw: str | bytes | Mapping[str, Any] | None) -> JsonDict:
    """Tool-call arguments as a dict. Unparseable JSON yields {}."""
    match raw:
        case None: return {}
        case Mapping(): return dict(raw)
        case str() | bytes():
            try:
                parsed = orjson.loads(raw or b"{}")
            except orjson.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        case _: return {}


def function_tools(tools: Sequence[ToolDefinition]) -> tuple[list[JsonDict], dict[str, str]]:
    """OpenAI-style function declarations plus a sanitized -> qualified name map."""
    names = {sanitize_tool_name(t.name): t.name for t in tools}
    declared = [
        {"type": "function",
         "function": {"name": sanitize_tool_name(t.name), "description": t.description, "parameters": t.parameters}}
        for t in tools
    ]
    return declared, names


# ─────────────────────────────────────────────────────────────────────────────
# Token usage
# ─────────────────────────────────────────────────────────────────────────────


def normalize_token_usage(raw: Mapping[str, Any] | TokenUsage | None) -> TokenUsage | None:
    """Map provider usage payloads to TokenUsage.

    Handles Vertex (promptTokenCount/candidatesTokenCount), Anthropic
    (input_tokens/output_tokens), OpenAI (prompt_tokens/completion_tokens) and
    Bedrock (inputTokens/outputTokens). Missing totals are summed.
    """
    if raw is None or isinstance(raw, TokenUsage):
        return raw
    if not raw:
        return None

    def first(*keys: str) -> int:
        for key in keys:
            if value := raw.get(key):
                return int(value)
        return 0

    if "promptTokenCount" in raw or "candidatesTokenCount" in raw:
        inp, out = first("promptTokenCount"), first("candidatesTokenCount")
        return TokenUsage(inp, out, first("totalTokenCount") or inp + out)

    inp = first("inputTokens", "input_tokens", "prompt_tokens")
    out = first("outputTokens", "output_tokens", "completion_tokens")
    return TokenUsage(inp, out, first("totalTokens", "total_tokens") or inp + out)


def record_token_usage(
    sink: TelemetrySink,
    usage: TokenUsage | None,
    *,
    provider: str,
    model: str,
    agent_name: str | None = None,
) -> None:
    """Emit llm.tokens.* and agent.tokens metrics. Zero counts are not recorded."""
    if usage is None:
        return
    attrs = {"provider": provider, "model": model, "agent_name": agent_name or "anonymous"}
    if usage.input_tokens:
        sink.record_metric("llm.tokens.input", usage.input_tokens, attrs)
    if usage.output_tokens:
        sink.record_metric("llm.tokens.output", usage.output_tokens, attrs)
    if usage.total_tokens:
        sink.record_metric("llm.tokens.total", usage.total_tokens, attrs)
        sink.record_metric("agent.tokens", usage.total_tokens, {"agent_name": attrs["agent_name"]})
