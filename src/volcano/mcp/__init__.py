"""Tool-server layer: handles, sessions, pool, caches, invocation and registry.

Quick Start:
    >>> from volcano.mcp import mcp, get_runtime
    >>> weather = mcp("http://localhost:3000/mcp")
    >>> tools = await get_runtime().list_tools(weather)
    >>> record = await get_runtime().call(weather, "get_weather", {"city": "Paris"})
"""

from .auth import CachedToken, TokenCache
from .discovery import DiscoveryCache, ToolDefinition
from .handle import Auth, BearerAuth, OAuthAuth, ServerHandle, StdioSpec, Transport, handle_id, mcp, mcp_stdio
from .invoke import ToolCallRecord, ToolRuntime, get_runtime, reset_runtime, set_runtime, validate_arguments
from .pool import PooledSession, SessionPool
from .registry import (
    AuthConfig,
    RegisteredServer,
    ServerConfig,
    ServerRegistry,
    StdioConfig,
    create_registry,
    default_registry,
    load_config,
)
from .session import McpSession, McpSessionFactory, SessionFactory, ToolSession, raw_tool_fields

__all__ = [
    # Handles
    "ServerHandle", "Transport", "StdioSpec", "Auth", "BearerAuth", "OAuthAuth", "handle_id", "mcp", "mcp_stdio",
    # Sessions
    "ToolSession", "SessionFactory", "McpSession", "McpSessionFactory", "raw_tool_fields",
    # Resource managers
    "SessionPool", "PooledSession", "DiscoveryCache", "ToolDefinition", "TokenCache", "CachedToken",
    # Invocation
    "ToolRuntime", "ToolCallRecord", "validate_arguments", "get_runtime", "set_runtime", "reset_runtime",
    # Registry
    "ServerRegistry", "ServerConfig", "StdioConfig", "AuthConfig", "RegisteredServer",
    "create_registry", "default_registry", "load_config",
]
