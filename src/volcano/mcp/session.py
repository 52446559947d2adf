"""Tool-server sessions.

The engine speaks to tool servers only through the ToolSession protocol,
opened by a SessionFactory. McpSessionFactory is the production factory: MCP
over streamable HTTP (with auth headers) or over stdio.

The mcp client transports are async context managers bound to the task that
entered them, so each McpSession owns a runner task that enters the transport
and the ClientSession, then parks until close(). Calls from any task go
through the shared ClientSession.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from volcano.foundation.errors import ConfigurationError, ToolConnectionError, ToolInvocationError, classify_exception
from volcano.runtime.observability import get_logger

from .handle import Transport

if TYPE_CHECKING:
    from .auth import TokenCache
    from .handle import ServerHandle

JsonDict = dict[str, Any]

log = get_logger("volcano.session")


@runtime_checkable
class ToolSession(Protocol):
    """A live connection to one tool server."""

    async def list_tools(self) -> list[JsonDict]: ...

    async def call_tool(self, name: str, arguments: JsonDict) -> Any: ...

    async def close(self) -> None: ...


@runtime_checkable
class SessionFactory(Protocol):
    """Opens sessions for the pool."""

    async def open(self, handle: ServerHandle) -> ToolSession: ...


def raw_tool_fields(tool: Any) -> JsonDict:
    """Normalize an mcp Tool object or a plain dict to {name, description, inputSchema}."""
    if isinstance(tool, dict):
        return {
            "name": tool["name"],
            "description": tool.get("description"),
            "inputSchema": tool.get("inputSchema") or tool.get("input_schema") or tool.get("parameters"),
        }
    return {
        "name": tool.name,
        "description": getattr(tool, "description", None),
        "inputSchema": getattr(tool, "inputSchema", None),
    }


def tool_result_value(result: Any) -> Any:
    """Collapse a CallToolResult into a plain value.

    Structured content wins; otherwise text parts are joined by newlines.
    A result flagged isError raises ToolInvocationError with that text.
    """
    parts = [getattr(item, "text", None) or str(item) for item in (getattr(result, "content", None) or [])]
    text = "\n".join(parts)
    if getattr(result, "isError", False):
        raise ToolInvocationError(text or "tool reported an error")
    if (structured := getattr(result, "structuredContent", None)) is not None:
        return structured
    return text


class McpSession:
    """One MCP ClientSession kept alive by a dedicated runner task."""

    __slots__ = ("handle", "_headers", "_init_timeout", "_session", "_runner", "_ready", "_closing")

    def __init__(self, handle: ServerHandle, *, headers: dict[str, str] | None = None,
                 init_timeout: float = 30.0) -> None:
        self.handle = handle
        self._headers = headers or {}
        self._init_timeout = init_timeout
        self._session: Any = None
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()

    async def start(self) -> McpSession:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._runner = asyncio.create_task(self._run(), name=f"volcano-mcp-{self.handle.id}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._init_timeout)
        except BaseException:
            await self.close()
            raise
        return self

    async def _run(self) -> None:
        from mcp import ClientSession

        if self._ready is None:
            raise ToolConnectionError(f"Session for {self.handle.id} was not opened", provider=self.handle.provider)
        try:
            async with AsyncExitStack() as stack:
                read, write = await self._open_transport(stack)
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                self._session = session
                log.debug("session opened", server=self.handle.id, transport=self.handle.transport.value)
                self._ready.set_result(None)
                await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(classify_exception(e, kind="tool", provider=self.handle.provider))
            else:
                log.warning("session transport failed", server=self.handle.id, error=str(e))
        finally:
            self._session = None

    async def _open_transport(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        if self.handle.transport is Transport.STDIO:
            from mcp.client.stdio import StdioServerParameters, stdio_client

            spec = self.handle.stdio
            if spec is None:
                raise ConfigurationError(f"stdio server {self.handle.id} has no launch command")
            params = StdioServerParameters(
                command=spec.command,
                args=list(spec.args),
                env={**os.environ, **spec.env} if spec.env else None,
                cwd=spec.cwd,
            )
            read, write = await stack.enter_async_context(stdio_client(params))
            return read, write

        from mcp.client.streamable_http import streamablehttp_client

        read, write, _ = await stack.enter_async_context(streamablehttp_client(self.handle.address, headers=self._headers))
        return read, write

    @property
    def alive(self) -> bool:
        return self._session is not None and self._runner is not None and not self._runner.done()

    def _live(self) -> Any:
        if not self.alive:
            raise classify_exception(ConnectionError(f"session to {self.handle.id} is closed"),
                                     kind="tool", provider=self.handle.provider)
        return self._session

    async def list_tools(self) -> list[JsonDict]:
        result = await self._live().list_tools()
        return [raw_tool_fields(t) for t in result.tools]

    async def call_tool(self, name: str, arguments: JsonDict) -> Any:
        return tool_result_value(await self._live().call_tool(name, arguments))

    async def close(self) -> None:
        self._closing.set()
        if self._runner is not None and not self._runner.done():
            if self._session is None:  # still connecting
                self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
        log.debug("session closed", server=self.handle.id)


class McpSessionFactory:
    """Production SessionFactory: resolves credentials, then opens an McpSession.

    Args:
        tokens: TokenCache used for OAuth credentials
        init_timeout: Seconds allowed for transport setup and MCP initialize
    """

    __slots__ = ("tokens", "init_timeout")

    def __init__(self, tokens: TokenCache, *, init_timeout: float = 30.0) -> None:
        self.tokens = tokens
        self.init_timeout = init_timeout

    async def open(self, handle: ServerHandle) -> ToolSession:
        headers: dict[str, str] = {}
        if handle.auth is not None:
            headers["Authorization"] = f"Bearer {await self.tokens.get_token(handle.auth)}"
        return await McpSession(handle, headers=headers, init_timeout=self.init_timeout).start()
