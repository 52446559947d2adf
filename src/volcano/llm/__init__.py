"""Model adapter contract and token-usage helpers."""

from .adapter import (
    LLMAdapter,
    LLMToolResult,
    StreamingLLMAdapter,
    TokenUsage,
    ToolCallRequest,
    function_tools,
    normalize_token_usage,
    parse_tool_arguments,
    provider_id,
    record_token_usage,
    sanitize_tool_name,
    supports_streaming,
)

__all__ = [
    "LLMAdapter", "StreamingLLMAdapter", "LLMToolResult", "ToolCallRequest", "TokenUsage",
    "normalize_token_usage", "record_token_usage", "provider_id", "sanitize_tool_name",
    "parse_tool_arguments", "function_tools", "supports_streaming",
]
