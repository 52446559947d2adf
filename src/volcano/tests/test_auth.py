"""Tests for server handles, the token cache and session result helpers."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from volcano.foundation.errors import AuthenticationError, ConfigurationError, ToolConnectionError, ToolInvocationError
from volcano.mcp import (
    BearerAuth,
    McpSession,
    OAuthAuth,
    ServerHandle,
    TokenCache,
    Transport,
    handle_id,
    mcp,
    mcp_stdio,
    raw_tool_fields,
)
from volcano.mcp.session import tool_result_value

OAUTH = OAuthAuth(client_id="volcano", client_secret="s3cret", token_endpoint="https://auth.test/token",
                  scope="tools:read")


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TokenEndpoint:
    """Scripted token endpoint recording every form it receives."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.forms: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.forms.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def token(access: str, expires_in: int = 3600, refresh: str | None = None) -> httpx.Response:
    body: dict[str, object] = {"access_token": access, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh:
        body["refresh_token"] = refresh
    return httpx.Response(200, json=body)


# ═════════════════════════════════════════════════════════════════════════════
# Handles
# ═════════════════════════════════════════════════════════════════════════════


def test_handles_for_one_address_are_equal() -> None:
    a, b = mcp("http://weather.test/mcp"), mcp("http://weather.test/mcp", auth=BearerAuth("t"))
    assert a == b
    assert hash(a) == hash(b)
    assert a.id == b.id == handle_id("http://weather.test/mcp")
    assert a.id.startswith("mcp_") and len(a.id) == 12


def test_handle_naming() -> None:
    h = mcp("http://weather.test:8080/mcp")
    assert h.transport is Transport.HTTP
    assert h.url == "http://weather.test:8080/mcp"
    assert h.provider == "mcp:weather.test:8080"
    assert h.qualify("get_weather") == f"{h.id}.get_weather"


def test_invalid_url_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        mcp("weather.test/mcp")
    with pytest.raises(ConfigurationError):
        mcp("ftp://weather.test")


def test_stdio_handle() -> None:
    h = mcp_stdio("python", ["-m", "weather_server"], env={"DEBUG": "1"})
    assert h.transport is Transport.STDIO
    assert h.address == "stdio:python -m weather_server"
    assert h.url is None
    assert h.provider == f"mcp:{h.id}"
    assert h.stdio is not None and h.stdio.args == ("-m", "weather_server")
    with pytest.raises(ConfigurationError):
        mcp_stdio("")


def test_credentials_are_masked_and_validated() -> None:
    assert "abc" not in repr(BearerAuth("abc"))
    assert "s3cret" not in repr(OAUTH)
    assert OAUTH.cache_key == "https://auth.test/token|volcano"
    with pytest.raises(ConfigurationError):
        BearerAuth("")
    with pytest.raises(ConfigurationError, match="client_secret"):
        OAuthAuth(client_id="x", client_secret="", token_endpoint="https://auth.test/token")


# ═════════════════════════════════════════════════════════════════════════════
# Token cache
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_bearer_tokens_pass_through() -> None:
    assert await TokenCache().get_token(BearerAuth("static")) == "static"


@pytest.mark.asyncio
async def test_oauth_token_is_fetched_once_and_cached() -> None:
    endpoint = TokenEndpoint(token("t1"))
    cache = TokenCache(client=endpoint.client(), clock=Clock())
    assert await cache.get_token(OAUTH) == "t1"
    assert await cache.get_token(OAUTH) == "t1"
    assert len(endpoint.forms) == 1
    assert endpoint.forms[0] == {"client_id": "volcano", "client_secret": "s3cret",
                                 "grant_type": "client_credentials", "scope": "tools:read"}
    assert cache.size == 1


@pytest.mark.asyncio
async def test_token_refreshes_within_expiry_buffer() -> None:
    """A token is replaced once it is within the buffer of its expiry, using the refresh grant."""
    clock = Clock()
    endpoint = TokenEndpoint(token("t1", expires_in=120, refresh="r1"), token("t2", expires_in=120))
    cache = TokenCache(client=endpoint.client(), clock=clock, expiry_buffer=60)

    assert await cache.get_token(OAUTH) == "t1"
    clock.now += 59
    assert await cache.get_token(OAUTH) == "t1"
    clock.now += 2
    assert await cache.get_token(OAUTH) == "t2"

    assert endpoint.forms[1]["grant_type"] == "refresh_token"
    assert endpoint.forms[1]["refresh_token"] == "r1"
    peeked = cache.peek(OAUTH)
    assert peeked is not None and peeked.refresh_token == "r1"


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_refresh() -> None:
    endpoint = TokenEndpoint(token("t1"))
    cache = TokenCache(client=endpoint.client(), clock=Clock())
    tokens = await asyncio.gather(*(cache.get_token(OAUTH) for _ in range(5)))
    assert tokens == ["t1"] * 5
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refresh_with_refresh_token() -> None:
    endpoint = TokenEndpoint(token("t1", refresh="r1"), token("t2"))
    cache = TokenCache(client=endpoint.client(), clock=Clock())
    await cache.get_token(OAUTH)
    assert cache.invalidate(OAUTH)
    assert await cache.get_token(OAUTH) == "t2"
    assert endpoint.forms[1]["grant_type"] == "refresh_token"
    assert not cache.invalidate(BearerAuth("x"))


@pytest.mark.asyncio
async def test_rejected_refresh_token_falls_back_to_client_credentials() -> None:
    clock = Clock()
    endpoint = TokenEndpoint(
        token("a1", expires_in=100, refresh="r1"),
        httpx.Response(400, json={"error": "invalid_grant"}),
        token("a2", expires_in=100),
    )
    cache = TokenCache(client=endpoint.client(), clock=clock)
    assert await cache.get_token(OAUTH) == "a1"

    clock.now += 100
    assert await cache.get_token(OAUTH) == "a2"
    clock.now += 100
    assert await cache.get_token(OAUTH) == "a2"
    cache.invalidate(OAUTH)
    assert await cache.get_token(OAUTH) == "a2"

    assert [f["grant_type"] for f in endpoint.forms] == [
        "client_credentials", "refresh_token", "client_credentials", "client_credentials", "client_credentials",
    ]


@pytest.mark.asyncio
async def test_configured_refresh_token_is_dropped_once_rejected() -> None:
    auth = OAuthAuth(client_id="volcano", client_secret="s3cret", token_endpoint="https://auth.test/token",
                     refresh_token="stale")
    endpoint = TokenEndpoint(httpx.Response(400, json={"error": "invalid_grant"}), token("a1"))
    cache = TokenCache(client=endpoint.client(), clock=Clock())
    assert await cache.get_token(auth) == "a1"
    cache.invalidate(auth)
    assert await cache.get_token(auth) == "a1"
    assert [f["grant_type"] for f in endpoint.forms] == ["refresh_token", "client_credentials", "client_credentials"]


@pytest.mark.asyncio
async def test_refresh_server_errors_are_not_masked() -> None:
    clock = Clock()
    endpoint = TokenEndpoint(token("a1", expires_in=100, refresh="r1"), httpx.Response(503, text="down"))
    cache = TokenCache(client=endpoint.client(), clock=clock)
    await cache.get_token(OAUTH)
    clock.now += 100
    with pytest.raises(AuthenticationError) as exc_info:
        await cache.get_token(OAUTH)
    assert exc_info.value.status == 503
    assert len(endpoint.forms) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, text="invalid_client"),
        httpx.Response(200, json={"token_type": "Bearer"}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_token_failures_raise_authentication_error(response: httpx.Response) -> None:
    cache = TokenCache(client=TokenEndpoint(response).client())
    with pytest.raises(AuthenticationError) as exc_info:
        await cache.get_token(OAUTH)
    assert exc_info.value.provider == "auth:https://auth.test/token"
    assert not exc_info.value.retryable
    assert cache.size == 0


@pytest.mark.asyncio
async def test_unreachable_endpoint_raises_authentication_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    cache = TokenCache(client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
    with pytest.raises(AuthenticationError, match="unreachable"):
        await cache.get_token(OAUTH)


# ═════════════════════════════════════════════════════════════════════════════
# Session helpers
# ═════════════════════════════════════════════════════════════════════════════


def test_raw_tool_fields_accepts_dicts_and_objects() -> None:
    schema = {"type": "object"}
    assert raw_tool_fields({"name": "a", "input_schema": schema}) == {"name": "a", "description": None,
                                                                      "inputSchema": schema}
    obj = SimpleNamespace(name="b", description="B", inputSchema=schema)
    assert raw_tool_fields(obj) == {"name": "b", "description": "B", "inputSchema": schema}


def test_tool_result_value() -> None:
    text = SimpleNamespace(content=[SimpleNamespace(text="line 1"), SimpleNamespace(text="line 2")],
                           isError=False, structuredContent=None)
    assert tool_result_value(text) == "line 1\nline 2"

    structured = SimpleNamespace(content=[SimpleNamespace(text="{}")], isError=False,
                                 structuredContent={"temp": 21})
    assert tool_result_value(structured) == {"temp": 21}

    failed = SimpleNamespace(content=[SimpleNamespace(text="city not found")], isError=True)
    with pytest.raises(ToolInvocationError, match="city not found"):
        tool_result_value(failed)


@pytest.mark.asyncio
async def test_stdio_session_without_launch_command() -> None:
    handle = ServerHandle("stdio:ghost", transport=Transport.STDIO)
    with pytest.raises(ConfigurationError, match="no launch command"):
        await McpSession(handle, init_timeout=1.0).start()


@pytest.mark.asyncio
async def test_session_runner_requires_start() -> None:
    with pytest.raises(ToolConnectionError, match="not opened"):
        await McpSession(mcp("http://weather.test/mcp"))._run()
