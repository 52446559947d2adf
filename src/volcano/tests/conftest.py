"""Shared fixtures: isolated global state, a mock weather server and its runtime."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio

from volcano.foundation.config import clear_settings_cache
from volcano.mcp import ServerHandle, ToolRuntime, mcp, reset_runtime
from volcano.runtime.observability import configure_logging, set_renderer
from volcano.testing import MockToolServer, mock_runtime

WEATHER_SCHEMA = {
    "type": "object",
    "properties": {"city": {"type": "string"}, "units": {"enum": ["C", "F"]}},
    "required": ["city"],
}


@pytest.fixture(autouse=True)
def clean_state() -> Iterator[None]:
    """Fresh settings and runtime, silent logs."""
    clear_settings_cache()
    reset_runtime()
    configure_logging(format="none", level="INFO")
    yield
    clear_settings_cache()
    reset_runtime()
    set_renderer(None)


@pytest.fixture
def weather() -> ServerHandle:
    return mcp("http://weather.test/mcp")


@pytest.fixture
def weather_server() -> MockToolServer:
    return (
        MockToolServer()
        .add("get_weather", lambda a: f"Sunny in {a['city']}", schema=WEATHER_SCHEMA, description="Current weather")
        .add("get_forecast", lambda a: {"city": a["city"], "days": a.get("days", 3)}, description="Forecast")
    )


@pytest_asyncio.fixture
async def runtime(weather: ServerHandle, weather_server: MockToolServer) -> AsyncIterator[ToolRuntime]:
    rt = mock_runtime({weather: weather_server})
    yield rt
    await rt.close()
