"""Registry of named tool servers.

A ServerRegistry is a plain value: create as many as you need with
create_registry(). `default_registry` is just the instance the module-level
helpers use.

Example:
    >>> registry = create_registry()
    >>> weather = registry.register({"id": "weather", "name": "Weather", "url": "http://localhost:3000/mcp"})
    >>> registry.get_handles()
    [ServerHandle(address='http://localhost:3000/mcp', ...)]
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from volcano.foundation.errors import ConfigurationError
from volcano.runtime.observability import get_logger

from .handle import Auth, BearerAuth, OAuthAuth, ServerHandle, Transport, mcp, mcp_stdio

log = get_logger("volcano.registry")

Cleanup = Callable[[ServerHandle], Awaitable[None]]


class StdioConfig(BaseModel):
    """Local process launch configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None


class AuthConfig(BaseModel):
    """Credential declaration: a static bearer token or OAuth client credentials."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["bearer", "oauth"]
    token: str | None = None
    client_id: str | None = None
    client_secret: str | None = Field(default=None, repr=False)
    token_endpoint: str | None = None
    refresh_token: str | None = Field(default=None, repr=False)
    scope: str | None = None

    def to_auth(self) -> Auth:
        if self.type == "bearer":
            return BearerAuth(self.token or "")
        return OAuthAuth(
            client_id=self.client_id or "",
            client_secret=self.client_secret or "",
            token_endpoint=self.token_endpoint or "",
            refresh_token=self.refresh_token,
            scope=self.scope,
        )


class ServerConfig(BaseModel):
    """Declaration of one tool server."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    description: str | None = None
    transport: Transport = Transport.HTTP
    url: str | None = None
    stdio: StdioConfig | None = None
    auth: AuthConfig | None = None
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and "name" not in data and "id" in data:
            return {**data, "name": data["id"]}
        return data

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        return list(dict.fromkeys(t.strip() for t in tags if t.strip()))

    def to_handle(self) -> ServerHandle:
        match self.transport:
            case Transport.HTTP:
                if not self.url:
                    raise ConfigurationError(f"HTTP tool server '{self.id}' requires a 'url'")
                return mcp(self.url, auth=self.auth.to_auth() if self.auth else None)
            case Transport.STDIO:
                if self.stdio is None:
                    raise ConfigurationError(f"stdio tool server '{self.id}' requires a 'stdio' configuration")
                return mcp_stdio(self.stdio.command, self.stdio.args, env=self.stdio.env, cwd=self.stdio.cwd)


class RegisteredServer(BaseModel):
    """A registered server: its handle plus the declaration it came from."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: ServerConfig
    handle: ServerHandle

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def description(self) -> str | None:
        return self.config.description


class ServerRegistry:
    """Named tool servers with tags and an enabled flag.

    Args:
        cleanup: Awaited for a server's handle when it is unregistered
            (defaults to releasing its pooled sessions and cached tools)
    """

    __slots__ = ("_servers", "_cleanup")

    def __init__(self, *, cleanup: Cleanup | None = None) -> None:
        self._servers: dict[str, RegisteredServer] = {}
        self._cleanup = cleanup or _release_runtime_resources

    def register(self, config: ServerConfig | Mapping[str, Any]) -> ServerHandle:
        """Register a server and return its handle. Raises ConfigurationError on duplicate ids."""
        if not isinstance(config, ServerConfig):
            config = ServerConfig.model_validate(dict(config))
        if config.id in self._servers:
            raise ConfigurationError(f"tool server '{config.id}' is already registered")
        handle = config.to_handle()
        if not config.enabled:
            log.warning("tool server registered but disabled", server=config.id)
        self._servers[config.id] = RegisteredServer(config=config, handle=handle)
        return handle

    def register_many(self, configs: Sequence[ServerConfig | Mapping[str, Any]]) -> dict[str, ServerHandle]:
        """Register each config; failures are logged and skipped."""
        handles: dict[str, ServerHandle] = {}
        for config in configs:
            try:
                handle = self.register(config)
            except (ConfigurationError, ValueError) as e:
                ident = config.id if isinstance(config, ServerConfig) else config.get("id")
                log.error("failed to register tool server", server=ident, error=str(e))
                continue
            handles[handle_key(config)] = handle
        return handles

    def load_config(self, config: Mapping[str, Any]) -> dict[str, ServerHandle]:
        """Register every entry under `servers` (e.g. a parsed JSON file)."""
        return self.register_many(config.get("servers", []))

    def get(self, server_id: str) -> RegisteredServer | None:
        return self._servers.get(server_id)

    def get_handle(self, server_id: str) -> ServerHandle | None:
        return server.handle if (server := self._servers.get(server_id)) else None

    def get_handles(self) -> list[ServerHandle]:
        """Handles of enabled servers, in registration order."""
        return [s.handle for s in self._servers.values() if s.config.enabled]

    def list(
        self,
        *,
        enabled_only: bool = False,
        tags: Sequence[str] | None = None,
        transport: Transport | str | None = None,
    ) -> list[RegisteredServer]:
        servers = list(self._servers.values())
        if enabled_only:
            servers = [s for s in servers if s.config.enabled]
        if tags:
            servers = [s for s in servers if set(s.config.tags) & set(tags)]
        if transport is not None:
            servers = [s for s in servers if s.config.transport == Transport(transport)]
        return servers

    def has(self, server_id: str) -> bool:
        return server_id in self._servers

    def update(self, server_id: str, *, enabled: bool | None = None, description: str | None = None,
               tags: Sequence[str] | None = None) -> bool:
        """Change metadata; the handle is kept. Returns False for unknown ids."""
        if (server := self._servers.get(server_id)) is None:
            return False
        changes: dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if description is not None:
            changes["description"] = description
        if tags is not None:
            changes["tags"] = list(tags)
        server.config = server.config.model_copy(update=changes)
        return True

    async def unregister(self, server_id: str) -> bool:
        """Remove a server after running the cleanup hook. Cleanup failures are logged."""
        if (server := self._servers.get(server_id)) is None:
            return False
        await self._run_cleanup(server)
        del self._servers[server_id]
        return True

    async def unregister_all(self) -> None:
        for server in list(self._servers.values()):
            await self._run_cleanup(server)
        self._servers.clear()

    def clear(self) -> None:
        """Forget every server without cleanup."""
        self._servers.clear()

    def stats(self) -> dict[str, int]:
        servers = list(self._servers.values())
        return {
            "total": len(servers),
            "enabled": sum(1 for s in servers if s.config.enabled),
            "disabled": sum(1 for s in servers if not s.config.enabled),
            "http": sum(1 for s in servers if s.config.transport is Transport.HTTP),
            "stdio": sum(1 for s in servers if s.config.transport is Transport.STDIO),
        }

    async def _run_cleanup(self, server: RegisteredServer) -> None:
        try:
            await self._cleanup(server.handle)
        except Exception as e:
            log.error("tool server cleanup failed", server=server.id, error=str(e))

    def __contains__(self, server_id: str) -> bool:
        return server_id in self._servers

    def __len__(self) -> int:
        return len(self._servers)

    def __iter__(self) -> Iterator[RegisteredServer]:
        return iter(self._servers.values())


def handle_key(config: ServerConfig | Mapping[str, Any]) -> str:
    return config.id if isinstance(config, ServerConfig) else str(config["id"])


async def _release_runtime_resources(handle: ServerHandle) -> None:
    from .invoke import get_runtime

    await get_runtime().forget(handle)


def create_registry(*, cleanup: Cleanup | None = None) -> ServerRegistry:
    """A new, independent registry."""
    return ServerRegistry(cleanup=cleanup)


default_registry = create_registry()


def load_config(config: Mapping[str, Any], registry: ServerRegistry | None = None) -> dict[str, ServerHandle]:
    """Register servers from a config mapping into `registry` (the default registry if omitted)."""
    return (registry or default_registry).load_config(config)
