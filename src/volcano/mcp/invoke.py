"""Tool invocation layer and the process-wide ToolRuntime.

ToolRuntime bundles the shared resources every workflow uses: the session
pool, the discovery cache and the token cache. A tool call goes:

    resolve schema -> validate arguments -> lease session -> call (timed) -> release

Argument validation happens before any session is leased, so a rejected call
produces no tool traffic. Failures are normalized into the error taxonomy:
transport problems become retryable ToolConnectionError, tool-side rejections
become ToolInvocationError. When an OAuth-protected server rejects the token,
the token is invalidated, the session discarded and the call retried once.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from jsonschema import Draft202012Validator, validators
from jsonschema.exceptions import SchemaError

from volcano.foundation.errors import AuthenticationError, ValidationError, WorkflowError, classify_exception
from volcano.runtime.observability import get_logger
from volcano.runtime.retry import with_timeout

from .auth import TokenCache
from .discovery import DiscoveryCache, ToolDefinition
from .handle import OAuthAuth
from .pool import SessionPool
from .session import McpSessionFactory

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from volcano.foundation.config import VolcanoSettings

    from .handle import ServerHandle
    from .session import SessionFactory, ToolSession

JsonDict = dict[str, Any]
T = TypeVar("T")

log = get_logger("volcano.invoke")


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    """One executed tool call."""

    name: str
    arguments: JsonDict
    result: Any
    duration_ms: float
    endpoint: str = field(default="")


def validate_arguments(schema: JsonDict | None, arguments: JsonDict, *, tool: str) -> None:
    """Check `arguments` against a JSON schema, raising ValidationError with every violation.

    A schema that is itself invalid is logged and treated as permissive.
    """
    if not schema:
        return
    cls = validators.validator_for(schema, default=Draft202012Validator)
    try:
        cls.check_schema(schema)
    except SchemaError as e:
        log.warning("tool schema is invalid, skipping validation", tool=tool, error=e.message)
        return
    errors = sorted(cls(schema).iter_errors(arguments), key=lambda e: list(e.path))
    if errors:
        details = [f"{'/'.join(map(str, e.path)) or '<root>'}: {e.message}" for e in errors]
        raise ValidationError(f"Invalid arguments for tool '{tool}': {'; '.join(details)}", errors=details)


class ToolRuntime:
    """Shared pool + caches with the tool call path on top.

    Args:
        factory: SessionFactory for new sessions (McpSessionFactory by default)
        pool: Session pool (built from settings when omitted)
        discovery: Discovery cache (built from settings when omitted)
        tokens: Token cache (built from settings when omitted)

    Example:
        >>> runtime = ToolRuntime(factory=MockSessionFactory({...}))
        >>> record = await runtime.call(handle, "get_weather", {"city": "Paris"})
        >>> record.result
    """

    __slots__ = ("tokens", "factory", "pool", "discovery")

    def __init__(
        self,
        factory: SessionFactory | None = None,
        *,
        pool: SessionPool | None = None,
        discovery: DiscoveryCache | None = None,
        tokens: TokenCache | None = None,
        settings: VolcanoSettings | None = None,
    ) -> None:
        if settings is None:
            from volcano.foundation.config import get_settings
            settings = get_settings()
        self.tokens = tokens or TokenCache.from_settings(settings.auth)
        self.factory = factory or McpSessionFactory(self.tokens)
        self.pool = pool or SessionPool.from_settings(self.factory, settings.pool)
        self.discovery = discovery or DiscoveryCache.from_settings(settings.discovery)

    # ─────────────────────────────────────────────────────────────────
    # Discovery
    # ─────────────────────────────────────────────────────────────────

    async def list_tools(self, handle: ServerHandle) -> list[ToolDefinition]:
        return await self.discovery.discover(handle, lambda: self.fetch_tools(handle))

    async def discover(self, handles: Iterable[ServerHandle]) -> list[ToolDefinition]:
        """Tools across every reachable handle; unreachable ones are skipped."""
        return await self.discovery.discover_all(handles, self.fetch_tools)

    async def fetch_tools(self, handle: ServerHandle, *, timeout: float | None = None) -> list[JsonDict]:
        """Uncached list_tools against the server."""
        return await self._with_session(handle, lambda s: s.list_tools(), timeout=timeout,
                                        label=f"Discovery {handle.id}")

    # ─────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────

    async def call(
        self,
        handle: ServerHandle,
        tool: str,
        arguments: JsonDict | None = None,
        *,
        timeout: float | None = None,
        validate: bool = True,
    ) -> ToolCallRecord:
        """Explicit call: resolve the schema, validate, then invoke.

        A failed tool listing means no schema is known; the call goes ahead unvalidated.
        """
        args = dict(arguments or {})
        if validate:
            try:
                schema = await self.discovery.schema_for(handle, tool,
                                                         lambda: self.fetch_tools(handle, timeout=timeout))
            except Exception as e:
                log.warning("tool listing failed, calling without validation", server=handle.id, tool=tool,
                            error=str(e))
                schema = None
            validate_arguments(schema, args, tool=tool)
        return await self.invoke(handle, tool, args, timeout=timeout, name=tool)

    async def invoke(
        self,
        handle: ServerHandle,
        tool: str,
        arguments: JsonDict,
        *,
        timeout: float | None = None,
        name: str | None = None,
    ) -> ToolCallRecord:
        """Call without validation (arguments already checked). Times the call."""
        start = time.perf_counter()
        result = await self._with_session(handle, lambda s: s.call_tool(tool, arguments), timeout=timeout,
                                          label=f"Tool {handle.qualify(tool)}")
        elapsed = (time.perf_counter() - start) * 1000
        log.debug("tool call finished", server=handle.id, tool=tool, duration_ms=round(elapsed, 2))
        return ToolCallRecord(name=name or handle.qualify(tool), arguments=arguments, result=result,
                              duration_ms=elapsed, endpoint=handle.address)

    async def invoke_definition(self, definition: ToolDefinition, arguments: JsonDict, *,
                                timeout: float | None = None) -> ToolCallRecord:
        return await self.invoke(definition.handle, definition.tool_name, arguments, timeout=timeout,
                                 name=definition.name)

    async def _with_session(
        self,
        handle: ServerHandle,
        operation: Callable[[ToolSession], Awaitable[T]],
        *,
        timeout: float | None,
        label: str,
    ) -> T:
        reauthorized = False
        while True:
            try:
                return await self._once(handle, operation, timeout=timeout, label=label)
            except AuthenticationError:
                if reauthorized or not isinstance(handle.auth, OAuthAuth):
                    raise
                log.info("server rejected token, refreshing", server=handle.id)
                self.tokens.invalidate(handle.auth)
                reauthorized = True

    async def _once(
        self,
        handle: ServerHandle,
        operation: Callable[[ToolSession], Awaitable[T]],
        *,
        timeout: float | None,
        label: str,
    ) -> T:
        try:
            async with self.pool.lease(handle) as pooled:
                try:
                    return await with_timeout(operation(pooled.session), timeout, label=label,
                                              provider=handle.provider)
                except WorkflowError as e:
                    raise e.with_provider(handle.provider)
                except Exception as e:
                    raise classify_exception(e, kind="tool", provider=handle.provider) from e
        except WorkflowError:
            raise
        except Exception as e:
            # session open failures surface from acquire()
            raise classify_exception(e, kind="tool", provider=handle.provider) from e

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {"pool": self.pool.stats(), "discovery": self.discovery.stats(), "tokens": self.tokens.size}

    async def forget(self, handle: ServerHandle) -> None:
        """Drop cached tools and idle sessions for one server."""
        self.discovery.invalidate(handle)
        await self.pool.close_idle(handle)

    async def close(self) -> None:
        await self.pool.close()
        self.discovery.clear()
        self.tokens.clear()


# ═════════════════════════════════════════════════════════════════════════════
# Process-wide runtime
# ═════════════════════════════════════════════════════════════════════════════

_runtime: ToolRuntime | None = None


def get_runtime() -> ToolRuntime:
    """The shared ToolRuntime, created from settings on first use."""
    global _runtime
    if _runtime is None:
        _runtime = ToolRuntime()
    return _runtime


def set_runtime(runtime: ToolRuntime | None) -> ToolRuntime | None:
    """Install a runtime (e.g. one backed by fakes). Returns the previous one."""
    global _runtime
    previous, _runtime = _runtime, runtime
    return previous


def reset_runtime() -> None:
    """Forget the shared runtime. Callers owning live sessions should `await runtime.close()` first."""
    set_runtime(None)
