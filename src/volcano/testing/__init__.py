"""Test doubles for workflows: scripted models and in-memory tool servers."""

from .mock import (
    MockLLM,
    MockSession,
    MockSessionFactory,
    MockTool,
    MockToolServer,
    ToolInvocation,
    mock_runtime,
    tool_call,
)

__all__ = [
    "MockLLM", "MockToolServer", "MockTool", "ToolInvocation", "MockSession", "MockSessionFactory",
    "mock_runtime", "tool_call",
]
