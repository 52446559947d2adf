"""Server handles: how to reach one tool-protocol endpoint.

A handle is a value. Handles built from the same address are the same logical
server: the session pool and the discovery cache key on `address`, so
constructing `mcp(url)` twice never opens a second connection by itself.

Handle ids are short (`mcp_` + 8 hex chars of md5(address)) so qualified tool
names like `mcp_1a2b3c4d.get_weather` stay within provider name limits.
"""

from __future__ import annotations

import hashlib
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from urllib.parse import urlsplit

from volcano.foundation.errors import ConfigurationError


class Transport(StrEnum):
    HTTP = "http"
    STDIO = "stdio"


@dataclass(frozen=True, slots=True)
class BearerAuth:
    """Static bearer token sent as `Authorization: Bearer <token>`."""

    token: str

    def __post_init__(self) -> None:
        if not self.token:
            raise ConfigurationError("bearer auth requires a token")

    def __repr__(self) -> str:
        return "BearerAuth(token='***')"


@dataclass(frozen=True, slots=True)
class OAuthAuth:
    """OAuth 2.0 client credentials (optionally seeded with a refresh token).

    Tokens are fetched from `token_endpoint` and cached by the TokenCache.
    """

    client_id: str
    client_secret: str
    token_endpoint: str
    refresh_token: str | None = field(default=None, repr=False)
    scope: str | None = None

    def __post_init__(self) -> None:
        missing = [name for name in ("client_id", "client_secret", "token_endpoint") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"OAuth auth requires {', '.join(missing)}")

    @property
    def cache_key(self) -> str:
        return f"{self.token_endpoint}|{self.client_id}"

    def __repr__(self) -> str:
        return f"OAuthAuth(client_id={self.client_id!r}, token_endpoint={self.token_endpoint!r})"


Auth = BearerAuth | OAuthAuth


@dataclass(frozen=True, slots=True)
class StdioSpec:
    """Launch spec for a tool server spoken to over stdin/stdout."""

    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    cwd: str | None = None

    @property
    def address(self) -> str:
        return "stdio:" + shlex.join((self.command, *self.args))


@dataclass(frozen=True, slots=True)
class ServerHandle:
    """Identifier plus optional credential for one tool server.

    Equality and hashing use the address only.
    """

    address: str
    transport: Transport = Transport.HTTP
    stdio: StdioSpec | None = field(default=None, compare=False)
    auth: Auth | None = field(default=None, compare=False)

    @property
    def id(self) -> str:
        return handle_id(self.address)

    @property
    def url(self) -> str | None:
        return self.address if self.transport is Transport.HTTP else None

    @property
    def provider(self) -> str:
        """Provider identity used in errors and telemetry: mcp:<host:port> or mcp:<id>."""
        if self.transport is Transport.HTTP and (netloc := urlsplit(self.address).netloc):
            return f"mcp:{netloc}"
        return f"mcp:{self.id}"

    def qualify(self, tool: str) -> str:
        return f"{self.id}.{tool}"

    def __str__(self) -> str:
        return f"{self.id} ({self.address})"


def handle_id(address: str) -> str:
    digest = hashlib.md5(address.encode(), usedforsecurity=False).hexdigest()[:8]
    return f"mcp_{digest}"


def mcp(url: str, *, auth: Auth | None = None) -> ServerHandle:
    """Handle for a tool server reachable over streamable HTTP.

    Example:
        >>> h = mcp("http://localhost:3000/mcp")
        >>> h.id
        'mcp_...'
        >>> h.qualify("get_weather")
        'mcp_....get_weather'
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(f"invalid tool server URL: {url!r}")
    return ServerHandle(address=url, transport=Transport.HTTP, auth=auth)


def mcp_stdio(
    command: str,
    args: list[str] | tuple[str, ...] = (),
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> ServerHandle:
    """Handle for a tool server launched as a local process speaking over stdio."""
    if not command:
        raise ConfigurationError("stdio tool server requires a command")
    spec = StdioSpec(command=command, args=tuple(args), env=dict(env) if env else None, cwd=cwd)
    return ServerHandle(address=spec.address, transport=Transport.STDIO, stdio=spec)
