"""Volcano - Agent workflows over LLMs and MCP tool servers.

Declare a workflow as a chain of steps, run it against any model adapter, and
let the engine handle tool discovery, argument validation, session pooling,
retries, timeouts and telemetry.

Quick Start:
    >>> from volcano import Workflow, AutoSelect, mcp
    >>>
    >>> weather = mcp("http://localhost:3000/mcp")
    >>> results = await (
    ...     Workflow(llm=llm, instructions="Answer briefly")
    ...     .then("Which city should I visit in October?")
    ...     .then(AutoSelect("What is the weather there?", (weather,)))
    ...     .run()
    ... )
    >>> results[-1].llm_output

Control Flow:
    >>> wf = (
    ...     Workflow(llm=llm)
    ...     .parallel({"pro": Generate("Argue for"), "con": Generate("Argue against")})
    ...     .while_(lambda rs: "DRAFT" in rs[-1].text, lambda w: w.then("Revise the text"), max_iterations=3)
    ...     .retry_until(lambda w: w.then("Reply in JSON"), lambda r: r.text.startswith("{"))
    ... )

Multi-Agent:
    >>> researcher = Workflow(llm=llm, name="researcher", description="Finds facts")
    >>> writer = Workflow(llm=llm, name="writer", description="Writes prose")
    >>> await Workflow(llm=llm).then(Delegate("Report on Etna", (researcher, writer))).run()

Streaming:
    >>> async for result in wf.stream():
    ...     print(result.text)
"""

from __future__ import annotations

__version__ = "0.1.0"

# Workflows
from .agents import (
    AutoSelect,
    Branch,
    Compose,
    Deferred,
    DelegationRecord,
    Delegate,
    ForEach,
    Generate,
    InvokeTool,
    Parallel,
    RecordingObserver,
    ResetHistory,
    RetryUntil,
    Step,
    StepResult,
    Switch,
    While,
    Workflow,
    WorkflowConfig,
    WorkflowObserver,
    classify,
)

# Errors
from .foundation.errors import (
    AuthenticationError,
    ConcurrencyGuardError,
    ConfigurationError,
    ErrorCode,
    ModelError,
    RetryExhaustedError,
    StepTimeoutError,
    ToolConnectionError,
    ToolInvocationError,
    ValidationError,
    WorkflowError,
)

# Settings
from .foundation.config import VolcanoSettings, clear_settings_cache, get_settings

# Models
from .llm import LLMAdapter, LLMToolResult, TokenUsage, ToolCallRequest

# Tool servers
from .mcp import (
    BearerAuth,
    OAuthAuth,
    ServerHandle,
    ServerRegistry,
    ToolCallRecord,
    ToolDefinition,
    ToolRuntime,
    get_runtime,
    mcp,
    mcp_stdio,
    reset_runtime,
    set_runtime,
)

# Runtime
from .runtime.observability import (
    NoOpTelemetry,
    OTelTelemetry,
    RecordingTelemetry,
    TelemetrySink,
    configure_logging,
    get_logger,
)
from .runtime.retry import RetryPolicy

__all__ = [
    "__version__",
    # Workflows
    "Workflow", "WorkflowConfig", "Step", "StepResult", "DelegationRecord",
    "Generate", "InvokeTool", "AutoSelect", "Delegate",
    "Branch", "Switch", "While", "ForEach", "RetryUntil", "Parallel", "Compose", "ResetHistory", "Deferred",
    "WorkflowObserver", "RecordingObserver", "classify",
    # Errors
    "ErrorCode", "WorkflowError", "ValidationError", "ConcurrencyGuardError", "StepTimeoutError",
    "RetryExhaustedError", "ModelError", "ToolInvocationError", "ToolConnectionError", "AuthenticationError",
    "ConfigurationError",
    # Settings
    "VolcanoSettings", "get_settings", "clear_settings_cache",
    # Models
    "LLMAdapter", "LLMToolResult", "ToolCallRequest", "TokenUsage",
    # Tool servers
    "mcp", "mcp_stdio", "ServerHandle", "BearerAuth", "OAuthAuth", "ToolDefinition", "ToolCallRecord",
    "ToolRuntime", "get_runtime", "set_runtime", "reset_runtime", "ServerRegistry",
    # Runtime
    "RetryPolicy", "TelemetrySink", "NoOpTelemetry", "RecordingTelemetry", "OTelTelemetry",
    "configure_logging", "get_logger",
]
