"""Bearer/OAuth token cache.

Tokens are cached per credential endpoint and client id. A cached token is
reused until it is within `expiry_buffer` seconds of expiry; the next request
after that refreshes it (with the refresh_token grant when the endpoint issued
one). Concurrent requests for the same credential share a single refresh.

A refresh token the endpoint rejects with a 4xx is forgotten and the request
is repeated once with the client_credentials grant. Any other failure raises
AuthenticationError.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import httpx

from volcano.foundation.errors import AuthenticationError
from volcano.runtime.observability import get_logger

from .handle import BearerAuth, OAuthAuth

if TYPE_CHECKING:
    from volcano.foundation.config import AuthSettings

    from .handle import Auth

log = get_logger("volcano.auth")

DEFAULT_EXPIRY_BUFFER: float = 60.0
DEFAULT_TOKEN_LIFETIME: float = 3600.0


@dataclass(frozen=True, slots=True)
class CachedToken:
    """Access token plus absolute expiry (epoch seconds)."""

    access_token: str
    expires_at: float
    token_type: str = "Bearer"
    refresh_token: str | None = None

    def fresh(self, now: float, buffer: float) -> bool:
        return now < self.expires_at - buffer


class TokenCache:
    """Expiry-aware cache of OAuth access tokens.

    Args:
        expiry_buffer: Refresh this many seconds before the token expires
        client: Shared httpx.AsyncClient (one is created per request if omitted)
        timeout: Token endpoint request timeout
        clock: Time source, injectable for tests

    Example:
        >>> cache = TokenCache()
        >>> token = await cache.get_token(OAuthAuth("id", "secret", "https://auth.example.com/token"))
    """

    __slots__ = ("_tokens", "_locks", "_revoked", "_buffer", "_client", "_timeout", "_clock")

    def __init__(
        self,
        *,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tokens: dict[str, CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._revoked: set[str] = set()
        self._buffer = expiry_buffer
        self._client = client
        self._timeout = timeout
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: AuthSettings | None = None, **kw: object) -> TokenCache:
        if settings is None:
            from volcano.foundation.config import get_settings
            settings = get_settings().auth
        return cls(expiry_buffer=settings.token_expiry_buffer, timeout=settings.http_timeout, **kw)  # type: ignore[arg-type]

    async def get_token(self, auth: Auth) -> str:
        """Bearer token for `auth`, refreshing ahead of expiry when needed."""
        if isinstance(auth, BearerAuth):
            return auth.token

        key = auth.cache_key
        if (cached := self._tokens.get(key)) is not None and cached.fresh(self._clock(), self._buffer):
            return cached.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another waiter may have refreshed while we queued
            if (cached := self._tokens.get(key)) is not None and cached.fresh(self._clock(), self._buffer):
                return cached.access_token
            if cached is not None:
                refresh = cached.refresh_token
            else:
                refresh = None if key in self._revoked else auth.refresh_token
            try:
                token = await self._fetch(auth, refresh)
            except AuthenticationError as e:
                if not refresh or e.status is None or not 400 <= e.status < 500:
                    raise
                # Rejected refresh token; the client credentials may still be good
                log.warning("refresh token rejected, falling back to client credentials",
                            endpoint=auth.token_endpoint, status=e.status)
                self._tokens.pop(key, None)
                self._revoked.add(key)
                token = await self._fetch(auth, None)
            self._tokens[key] = token
            return token.access_token

    def peek(self, auth: OAuthAuth) -> CachedToken | None:
        return self._tokens.get(auth.cache_key)

    def invalidate(self, auth: Auth) -> bool:
        """Drop the cached token (after the server rejected it). Keeps nothing but the refresh token."""
        if not isinstance(auth, OAuthAuth):
            return False
        cached = self._tokens.pop(auth.cache_key, None)
        if cached is not None and cached.refresh_token:
            self._tokens[auth.cache_key] = CachedToken(access_token="", expires_at=0.0,
                                                       token_type=cached.token_type,
                                                       refresh_token=cached.refresh_token)
        return cached is not None

    def clear(self) -> None:
        self._tokens.clear()
        self._locks.clear()
        self._revoked.clear()

    @property
    def size(self) -> int:
        return len(self._tokens)

    async def _fetch(self, auth: OAuthAuth, refresh_token: str | None) -> CachedToken:
        form = {"client_id": auth.client_id, "client_secret": auth.client_secret}
        if refresh_token:
            form |= {"grant_type": "refresh_token", "refresh_token": refresh_token}
        else:
            form["grant_type"] = "client_credentials"
        if auth.scope:
            form["scope"] = auth.scope

        log.debug("requesting token", endpoint=auth.token_endpoint, grant_type=form["grant_type"])
        try:
            if self._client is not None:
                response = await self._client.post(auth.token_endpoint, data=form, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(auth.token_endpoint, data=form)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token endpoint unreachable: {e}",
                                      provider=f"auth:{auth.token_endpoint}") from e

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Token request failed with HTTP {response.status_code}: {response.text[:200]}",
                provider=f"auth:{auth.token_endpoint}", status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise AuthenticationError("Token endpoint returned invalid JSON",
                                      provider=f"auth:{auth.token_endpoint}") from e
        if not isinstance(payload, dict) or not (access := payload.get("access_token")):
            raise AuthenticationError("Token response missing access_token",
                                      provider=f"auth:{auth.token_endpoint}")

        lifetime = float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        return CachedToken(
            access_token=str(access),
            expires_at=self._clock() + lifetime,
            token_type=str(payload.get("token_type") or "Bearer"),
            refresh_token=payload.get("refresh_token") or refresh_token,
        )
