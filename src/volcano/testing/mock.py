"""Mock model and tool-server doubles for workflow testing.

Provides:
- MockLLM: scripted model replies with prompt recording
- MockToolServer: in-memory tools with handlers, schemas and call recording
- MockSessionFactory: SessionFactory serving MockToolServers by address
- mock_runtime: a ToolRuntime wired to mock servers

Example:
    >>> server = MockToolServer().add("get_weather", lambda a: f"sunny in {a['city']}",
    ...                                schema={"type": "object", "required": ["city"]})
    >>> handle = mcp("http://weather.test/mcp")
    >>> runtime = mock_runtime({handle: server})
    >>> llm = MockLLM(["It is sunny"])
    >>> await Workflow(llm=llm, runtime=runtime).then(InvokeTool(handle, "get_weather", {"city": "Oslo"})).run()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeAlias

from volcano.foundation.errors import ToolConnectionError, ToolInvocationError
from volcano.llm import LLMToolResult, TokenUsage, ToolCallRequest
from volcano.mcp import DiscoveryCache, SessionPool, TokenCache, ToolRuntime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from volcano.mcp import ServerHandle, ToolDefinition

JsonDict = dict[str, Any]
Reply: TypeAlias = "str | LLMToolResult | BaseException"
Script: TypeAlias = "Sequence[Reply] | Callable[[str], Any]"


def tool_call(name: str, id: str | None = None, **arguments: Any) -> ToolCallRequest:
    """Shorthand for a model-requested tool call."""
    return ToolCallRequest(name=name, arguments=arguments, id=id)


# ═════════════════════════════════════════════════════════════════════════════
# Model
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class MockLLM:
    """Scripted LLMAdapter.

    `replies` is consumed in order by generate/generate_with_tools/stream_tokens;
    once exhausted every call answers `default`. A callable script receives the
    prompt and returns (or awaits to) a reply. Exceptions in the script are raised.
    """

    replies: Script = field(default_factory=list)
    default: str = "mock reply"
    id: str = "mock"
    model: str = "mock-model"
    delay: float = 0.0
    usage: TokenUsage | None = None
    prompts: list[str] = field(default_factory=list)
    tool_offers: list[list[str]] = field(default_factory=list)
    last_usage: TokenUsage | None = field(default=None, init=False)
    _cursor: int = field(default=0, init=False, repr=False)

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    @property
    def last_prompt(self) -> str | None:
        return self.prompts[-1] if self.prompts else None

    async def _next(self, prompt: str) -> Reply:
        self.prompts.append(prompt)
        self.last_usage = self.usage
        if self.delay:
            await asyncio.sleep(self.delay)
        if callable(self.replies):
            reply = self.replies(prompt)
            if inspect.isawaitable(reply):
                reply = await reply
        elif self._cursor < len(self.replies):
            reply = self.replies[self._cursor]
            self._cursor += 1
        else:
            reply = self.default
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def generate(self, prompt: str) -> str:
        reply = await self._next(prompt)
        if isinstance(reply, LLMToolResult):
            return reply.content or ""
        return str(reply)

    async def generate_with_tools(self, prompt: str, tools: Sequence[ToolDefinition]) -> LLMToolResult:
        self.tool_offers.append([t.name for t in tools])
        reply = await self._next(prompt)
        return reply if isinstance(reply, LLMToolResult) else LLMToolResult(content=str(reply), usage=self.usage)

    async def stream_tokens(self, prompt: str) -> AsyncIterator[str]:
        text = await self.generate(prompt)
        for i, word in enumerate(text.split(" ")):
            yield word if i == 0 else " " + word

    def assert_called(self, times: int | None = None) -> None:
        if times is None and not self.prompts:
            raise AssertionError("Expected model to be called")
        if times is not None and self.call_count != times:
            raise AssertionError(f"Expected {times} model calls, got {self.call_count}")


# ═════════════════════════════════════════════════════════════════════════════
# Tool servers
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True)
class MockTool:
    name: str
    handler: Callable[[JsonDict], Any] | None = None
    result: Any = None
    schema: JsonDict | None = None
    description: str | None = None


@dataclass(slots=True)
class ToolInvocation:
    """Record of a single tool call served by a MockToolServer."""

    tool: str
    arguments: JsonDict


@dataclass
class MockToolServer:
    """In-memory tool server.

    Handlers receive the argument dict and may be sync or async. A handler that
    raises surfaces as a tool failure. `delay` is awaited inside every call,
    which makes overlapping calls observable through `max_active`.
    """

    tools: dict[str, MockTool] = field(default_factory=dict)
    delay: float = 0.0
    calls: list[ToolInvocation] = field(default_factory=list)
    list_count: int = 0
    active: int = 0
    max_active: int = 0

    def add(self, name: str, handler: Callable[[JsonDict], Any] | None = None, *, result: Any = None,
            schema: JsonDict | None = None, description: str | None = None) -> MockToolServer:
        self.tools[name] = MockTool(name, handler, result, schema, description)
        return self

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_to(self, tool: str) -> list[JsonDict]:
        return [c.arguments for c in self.calls if c.tool == tool]

    def describe(self) -> list[JsonDict]:
        self.list_count += 1
        return [{"name": t.name, "description": t.description, "inputSchema": t.schema} for t in self.tools.values()]

    async def serve(self, name: str, arguments: JsonDict) -> Any:
        if (tool := self.tools.get(name)) is None:
            raise ToolInvocationError(f"Unknown tool: {name}")
        self.calls.append(ToolInvocation(name, dict(arguments)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if tool.handler is None:
                return tool.result if tool.result is not None else f"{name} ok"
            value = tool.handler(arguments)
            return await value if inspect.isawaitable(value) else value
        finally:
            self.active -= 1


class MockSession:
    """ToolSession over a MockToolServer."""

    def __init__(self, server: MockToolServer, factory: MockSessionFactory) -> None:
        self.server = server
        self._factory = factory
        self.closed = False

    async def list_tools(self) -> list[JsonDict]:
        return self.server.describe()

    async def call_tool(self, name: str, arguments: JsonDict) -> Any:
        self._factory._enter()
        try:
            return await self.server.serve(name, arguments)
        finally:
            self._factory._exit()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._factory.closes += 1


class MockSessionFactory:
    """SessionFactory serving mock servers keyed by handle or address.

    Unknown addresses fail like an unreachable server. `fail_opens` makes the
    next N opens fail with a connection error.
    """

    def __init__(self, servers: Mapping[ServerHandle | str, MockToolServer] | None = None, *,
                 fail_opens: int = 0) -> None:
        self.servers: dict[str, MockToolServer] = {
            key if isinstance(key, str) else key.address: server for key, server in (servers or {}).items()
        }
        self.fail_opens = fail_opens
        self.opens = 0
        self.closes = 0
        self.active_calls = 0
        self.max_active_calls = 0

    def serve(self, handle: ServerHandle, server: MockToolServer) -> MockSessionFactory:
        self.servers[handle.address] = server
        return self

    async def open(self, handle: ServerHandle) -> MockSession:
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ToolConnectionError(f"connection refused: {handle.address}")
        if (server := self.servers.get(handle.address)) is None:
            raise ToolConnectionError(f"connection refused: {handle.address}")
        self.opens += 1
        return MockSession(server, self)

    def _enter(self) -> None:
        self.active_calls += 1
        self.max_active_calls = max(self.max_active_calls, self.active_calls)

    def _exit(self) -> None:
        self.active_calls -= 1


def mock_runtime(
    servers: Mapping[ServerHandle | str, MockToolServer] | MockSessionFactory | None = None,
    *,
    max_size: int = 16,
    idle_timeout: float = 30.0,
    ttl: float = 60.0,
    clock: Callable[[], float] | None = None,
) -> ToolRuntime:
    """ToolRuntime backed by mock servers, with its own pool and caches."""
    factory = servers if isinstance(servers, MockSessionFactory) else MockSessionFactory(servers)
    extra = {"clock": clock} if clock is not None else {}
    return ToolRuntime(
        factory,
        pool=SessionPool(factory, max_size=max_size, idle_timeout=idle_timeout, **extra),
        discovery=DiscoveryCache(ttl=ttl, **extra),
        tokens=TokenCache(),
    )
