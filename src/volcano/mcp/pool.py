"""Bounded pool of tool-server sessions.

Sessions are keyed by server address and created lazily through a
SessionFactory. The pool never holds more than `max_size` live sessions. When
it is full, acquire() first evicts the least-recently-used idle session of a
*different* server; when every session is checked out it waits for a release.
A session is checked out by at most one caller at a time.

A background sweeper (started on first acquire) closes sessions idle for
longer than `idle_timeout`.

Example:
    >>> pool = SessionPool(McpSessionFactory(TokenCache()), max_size=4)
    >>> async with pool.lease(handle) as session:
    ...     tools = await session.list_tools()
    >>> await pool.close()
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from volcano.foundation.errors import ToolConnectionError
from volcano.runtime.observability import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from volcano.foundation.config import PoolSettings

    from .handle import ServerHandle
    from .session import SessionFactory, ToolSession

__all__ = ["PooledSession", "SessionPool", "DEFAULT_MAX_SIZE", "DEFAULT_IDLE_TIMEOUT", "DEFAULT_SWEEP_INTERVAL"]

DEFAULT_MAX_SIZE = 16
DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 5.0

log = get_logger("volcano.pool")


@dataclass(slots=True, eq=False)
class PooledSession:
    """A live session plus its pool bookkeeping."""

    session: ToolSession
    handle: ServerHandle
    created_at: float
    last_used: float
    in_use: bool = True

    @property
    def key(self) -> str:
        return self.handle.address


@dataclass(slots=True)
class _Counters:
    created: int = 0
    evicted: int = 0
    swept: int = 0
    discarded: int = 0


class SessionPool:
    """LRU-evicting session pool with an idle sweeper.

    Args:
        factory: Opens a new session for a handle
        max_size: Ceiling on live sessions across all servers
        idle_timeout: Seconds an idle session may stay open
        sweep_interval: Seconds between idle sweeps
        clock: Monotonic time source, injectable for tests
    """

    __slots__ = ("factory", "max_size", "idle_timeout", "sweep_interval", "_clock", "_idle", "_size",
                 "_in_use", "_waiting", "_cond", "_sweeper", "_closed", "_counters")

    def __init__(
        self,
        factory: SessionFactory,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.factory = factory
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._idle: dict[str, list[PooledSession]] = {}
        self._size = 0  # live sessions, including ones being opened
        self._in_use = 0
        self._waiting = 0
        self._cond = asyncio.Condition()
        self._sweeper: asyncio.Task[None] | None = None
        self._closed = False
        self._counters = _Counters()

    @classmethod
    def from_settings(cls, factory: SessionFactory, settings: PoolSettings | None = None) -> SessionPool:
        if settings is None:
            from volcano.foundation.config import get_settings
            settings = get_settings().pool
        return cls(factory, max_size=settings.max_size, idle_timeout=settings.idle_timeout,
                   sweep_interval=settings.sweep_interval)

    # ─────────────────────────────────────────────────────────────────
    # Checkout
    # ─────────────────────────────────────────────────────────────────

    async def acquire(self, handle: ServerHandle) -> PooledSession:
        """Check out a session for `handle`, opening one if none is idle."""
        self._ensure_sweeper()
        victim: PooledSession | None = None
        async with self._cond:
            while True:
                if self._closed:
                    raise ToolConnectionError("session pool is closed", provider=handle.provider, retryable=False)
                if idle := self._idle.get(handle.address):
                    pooled = idle.pop()
                    if not idle:
                        del self._idle[handle.address]
                    pooled.in_use, pooled.last_used = True, self._clock()
                    self._in_use += 1
                    return pooled
                if self._size < self.max_size:
                    break
                if (victim := self._take_lru_idle(exclude=handle.address)) is not None:
                    self._counters.evicted += 1
                    break
                self._waiting += 1
                try:
                    await self._cond.wait()
                finally:
                    self._waiting -= 1
            if victim is None:
                self._size += 1
            self._in_use += 1

        if victim is not None:
            log.debug("evicting idle session", server=victim.handle.id, for_server=handle.id)
            await self._close_session(victim)
        try:
            session = await self.factory.open(handle)
        except BaseException:
            async with self._cond:
                self._size -= 1
                self._in_use -= 1
                self._cond.notify()
            raise
        now = self._clock()
        self._counters.created += 1
        log.debug("session created", server=handle.id, size=self._size)
        return PooledSession(session=session, handle=handle, created_at=now, last_used=now)

    async def release(self, pooled: PooledSession) -> None:
        """Return a session to the idle set. Releasing twice is a no-op."""
        if not pooled.in_use:
            return
        async with self._cond:
            pooled.in_use, pooled.last_used = False, self._clock()
            self._in_use -= 1
            if not self._closed:
                self._idle.setdefault(pooled.key, []).append(pooled)
                self._cond.notify()
                return
            self._size -= 1
        await self._close_session(pooled)

    async def discard(self, pooled: PooledSession) -> None:
        """Close a broken session instead of returning it to the pool."""
        async with self._cond:
            if pooled.in_use:
                pooled.in_use = False
                self._in_use -= 1
            else:
                idle = self._idle.get(pooled.key, [])
                if pooled not in idle:
                    return
                idle.remove(pooled)
            self._size -= 1
            self._counters.discarded += 1
            self._cond.notify()
        log.debug("session discarded", server=pooled.handle.id)
        await self._close_session(pooled)

    @asynccontextmanager
    async def lease(self, handle: ServerHandle) -> AsyncIterator[PooledSession]:
        """acquire() + release(); connection failures discard the session instead."""
        pooled = await self.acquire(handle)
        try:
            yield pooled
        except ToolConnectionError:
            await self.discard(pooled)
            raise
        except BaseException:
            await self.release(pooled)
            raise
        else:
            await self.release(pooled)

    # ─────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Close sessions idle longer than idle_timeout. Returns how many were closed."""
        cutoff = self._clock() - self.idle_timeout
        stale: list[PooledSession] = []
        async with self._cond:
            for key in list(self._idle):
                keep = [p for p in self._idle[key] if p.last_used > cutoff]
                stale += [p for p in self._idle[key] if p.last_used <= cutoff]
                if keep:
                    self._idle[key] = keep
                else:
                    del self._idle[key]
            self._size -= len(stale)
            self._counters.swept += len(stale)
            if stale:
                self._cond.notify(len(stale))
        for pooled in stale:
            await self._close_session(pooled)
        if stale:
            log.debug("swept idle sessions", count=len(stale))
        return len(stale)

    async def close_idle(self, handle: ServerHandle) -> int:
        """Close every idle session for one server. Returns how many were closed."""
        async with self._cond:
            idle = self._idle.pop(handle.address, [])
            self._size -= len(idle)
            if idle:
                self._cond.notify(len(idle))
        for pooled in idle:
            await self._close_session(pooled)
        return len(idle)

    async def close(self) -> None:
        """Close every idle session and stop the sweeper. Checked-out sessions close on release."""
        self._closed = True
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
        self._sweeper = None
        async with self._cond:
            idle = [p for ps in self._idle.values() for p in ps]
            self._idle.clear()
            self._size -= len(idle)
            self._cond.notify_all()
        for pooled in idle:
            await self._close_session(pooled)

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> dict[str, int]:
        return {
            "size": self._size,
            "idle": sum(len(ps) for ps in self._idle.values()),
            "in_use": self._in_use,
            "waiting": self._waiting,
            "max_size": self.max_size,
            "created": self._counters.created,
            "evicted": self._counters.evicted,
            "swept": self._counters.swept,
            "discarded": self._counters.discarded,
        }

    def _take_lru_idle(self, *, exclude: str) -> PooledSession | None:
        candidates = [p for key, ps in self._idle.items() if key != exclude for p in ps]
        if not candidates:
            return None
        victim = min(candidates, key=lambda p: p.last_used)
        bucket = self._idle[victim.key]
        bucket.remove(victim)
        if not bucket:
            del self._idle[victim.key]
        return victim

    def _ensure_sweeper(self) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        if self._sweeper is None or self._sweeper.done() or self._sweeper.get_loop() is not loop:
            self._sweeper = loop.create_task(self._sweep_loop(), name="volcano-pool-sweeper")

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()

    async def _close_session(self, pooled: PooledSession) -> None:
        try:
            await pooled.session.close()
        except Exception as e:
            log.warning("error closing session", server=pooled.handle.id, error=str(e))

    async def __aenter__(self) -> SessionPool:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None,
                        exc_tb: TracebackType | None) -> None:
        await self.close()
