"""Tool discovery cache.

Tool lists are cached per server address for `ttl` seconds. A refresh builds a
new immutable entry and swaps it in with a single assignment, so concurrent
readers see either the old list or the new one, never a partial list.
Concurrent refreshes of one server share a single fetch.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from volcano.runtime.observability import get_logger

from .session import raw_tool_fields

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from volcano.foundation.config import DiscoverySettings

    from .handle import ServerHandle

JsonDict = dict[str, Any]
RawTools = list[Any]
Fetch = Callable[[], "Awaitable[RawTools]"]

log = get_logger("volcano.discovery")

DEFAULT_TTL = 60.0
EMPTY_SCHEMA: JsonDict = {"type": "object", "properties": {}}


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """A discovered tool, named `<handle id>.<tool>`."""

    name: str
    description: str
    parameters: JsonDict
    handle: ServerHandle = field(repr=False, compare=False)

    @property
    def tool_name(self) -> str:
        """Name as the server knows it."""
        return self.name.partition(".")[2]

    @classmethod
    def from_raw(cls, handle: ServerHandle, raw: Any) -> ToolDefinition:
        fields = raw_tool_fields(raw)
        return cls(
            name=handle.qualify(fields["name"]),
            description=fields["description"] or f"Tool: {fields['name']}",
            parameters=dict(fields["inputSchema"] or EMPTY_SCHEMA),
            handle=handle,
        )


@dataclass(frozen=True, slots=True)
class _Entry:
    tools: tuple[ToolDefinition, ...]
    fetched_at: float


class DiscoveryCache:
    """TTL cache of tool definitions keyed by server address.

    Example:
        >>> cache = DiscoveryCache(ttl=60)
        >>> tools = await cache.discover(handle, session.list_tools)
    """

    __slots__ = ("ttl", "_clock", "_entries", "_inflight", "_hits", "_misses")

    def __init__(self, *, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Future[_Entry]] = {}
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_settings(cls, settings: DiscoverySettings | None = None) -> DiscoveryCache:
        if settings is None:
            from volcano.foundation.config import get_settings
            settings = get_settings().discovery
        return cls(ttl=settings.ttl)

    def _fresh(self, handle: ServerHandle) -> _Entry | None:
        entry = self._entries.get(handle.address)
        if entry is not None and self._clock() - entry.fetched_at < self.ttl:
            return entry
        return None

    async def discover(self, handle: ServerHandle, fetch: Fetch) -> list[ToolDefinition]:
        """Cached tools for `handle`, calling `fetch` when the entry is missing or stale."""
        if (entry := self._fresh(handle)) is not None:
            self._hits += 1
            return list(entry.tools)

        self._misses += 1
        if (pending := self._inflight.get(handle.address)) is not None:
            return list((await asyncio.shield(pending)).tools)

        future: asyncio.Future[_Entry] = asyncio.get_running_loop().create_future()
        self._inflight[handle.address] = future
        try:
            entry = self._build(handle, await fetch())
        except Exception as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody else is waiting
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            self._entries[handle.address] = entry
            future.set_result(entry)
        finally:
            self._inflight.pop(handle.address, None)
        return list(entry.tools)

    async def discover_all(
        self,
        handles: Iterable[ServerHandle],
        fetch_for: Callable[[ServerHandle], Awaitable[RawTools]],
    ) -> list[ToolDefinition]:
        """Discover across handles. A handle whose discovery fails is invalidated, logged and skipped."""
        unique = list({h.address: h for h in handles}.values())

        async def one(handle: ServerHandle) -> list[ToolDefinition]:
            try:
                return await self.discover(handle, lambda: fetch_for(handle))
            except Exception as e:
                self.invalidate(handle)
                log.warning("tool discovery failed, skipping server", server=handle.id,
                            address=handle.address, error=str(e))
                return []

        batches = await asyncio.gather(*(one(h) for h in unique))
        return [tool for batch in batches for tool in batch]

    def prime(self, handle: ServerHandle, raw_tools: RawTools) -> list[ToolDefinition]:
        """Seed the cache with an already-fetched tool list."""
        entry = self._build(handle, raw_tools)
        self._entries[handle.address] = entry
        return list(entry.tools)

    async def schema_for(self, handle: ServerHandle, tool: str, fetch: Fetch) -> JsonDict | None:
        """Input schema of one tool, or None when the server does not list it."""
        qualified = handle.qualify(tool)
        for definition in await self.discover(handle, fetch):
            if definition.name == qualified:
                return definition.parameters
        return None

    def invalidate(self, handle: ServerHandle) -> bool:
        return self._entries.pop(handle.address, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, int | float]:
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "tools": sum(len(e.tools) for e in self._entries.values()),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
        }

    def _build(self, handle: ServerHandle, raw_tools: RawTools) -> _Entry:
        # Last definition wins if a server lists one name twice
        by_name = {d.name: d for d in (ToolDefinition.from_raw(handle, raw) for raw in raw_tools)}
        return _Entry(tools=tuple(by_name.values()), fetched_at=self._clock())
