"""Tests for the workflow error taxonomy and exception classification."""

from __future__ import annotations

import asyncio

from volcano.foundation.errors import (
    AuthenticationError,
    ConcurrencyGuardError,
    ErrorCode,
    ModelError,
    RetryExhaustedError,
    StepTimeoutError,
    ToolConnectionError,
    ToolInvocationError,
    ValidationError,
    classify_exception,
    is_retryable_status,
)


class HTTPFailure(Exception):
    """Client exception shaped like httpx/openai errors."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


# ═════════════════════════════════════════════════════════════════════════════
# Metadata
# ═════════════════════════════════════════════════════════════════════════════


def test_default_retryability() -> None:
    """Transient kinds retry by default, declaration and guard errors never do."""
    assert ModelError("x").retryable
    assert StepTimeoutError("x").retryable
    assert ToolConnectionError("x").retryable
    assert not ToolInvocationError("x").retryable
    assert not AuthenticationError("x").retryable
    assert not ValidationError("x", retryable=True).retryable
    assert not ConcurrencyGuardError().retryable


def test_with_step_keeps_innermost() -> None:
    """The first recorded step id wins."""
    error = ModelError("boom", step_id=1)
    assert error.with_step(3).step_id == 1
    assert ModelError("boom").with_step(3).step_id == 3
    assert ModelError("boom").with_step(None).step_id is None


def test_with_provider_fills_missing() -> None:
    assert ModelError("x").with_provider("llm:a").provider == "llm:a"
    assert ModelError("x", provider="llm:a").with_provider("llm:b").provider == "llm:a"


def test_retry_exhausted_inherits_correlation() -> None:
    last = ToolConnectionError("down", provider="mcp:host:1", step_id=2)
    error = RetryExhaustedError("gave up", last_error=last, attempts=3)
    assert error.provider == "mcp:host:1"
    assert error.step_id == 2
    assert error.attempts == 3
    assert error.last_error is last
    assert not error.retryable


def test_to_dict_and_render() -> None:
    error = ModelError("rate limited", step_id=0, provider="llm:mock", status=429)
    data = error.to_dict()
    assert data["code"] == ErrorCode.MODEL_ERROR
    assert data["step_id"] == 0
    assert data["status"] == 429
    assert error.meta.status_class == "4xx"
    rendered = error.render()
    assert "[MODEL_ERROR]" in rendered and "step=0" in rendered and "(retryable)" in rendered


def test_validation_error_keeps_details() -> None:
    error = ValidationError("bad args", errors=["city: required"])
    assert error.errors == ["city: required"]
    assert error.code is ErrorCode.VALIDATION


# ═════════════════════════════════════════════════════════════════════════════
# Classification
# ═════════════════════════════════════════════════════════════════════════════


def test_retryable_status_classes() -> None:
    assert is_retryable_status(500)
    assert is_retryable_status(503)
    assert is_retryable_status(429)
    assert is_retryable_status(408)
    assert not is_retryable_status(400)
    assert not is_retryable_status(404)
    assert not is_retryable_status(None)


def test_classify_model_failures_by_status() -> None:
    server = classify_exception(HTTPFailure(503), kind="llm", provider="llm:mock", step_id=1)
    assert isinstance(server, ModelError)
    assert server.retryable
    assert server.meta.status == 503
    assert server.provider == "llm:mock"
    assert server.step_id == 1

    client = classify_exception(HTTPFailure(400), kind="llm")
    assert isinstance(client, ModelError)
    assert not client.retryable


def test_classify_model_connection_failure_is_retryable() -> None:
    assert classify_exception(ConnectionResetError("reset by peer"), kind="llm").retryable


def test_classify_tool_failures() -> None:
    assert isinstance(classify_exception(HTTPFailure(401), kind="tool"), AuthenticationError)
    refused = classify_exception(ConnectionRefusedError("refused"), kind="tool")
    assert type(refused) is ToolConnectionError and refused.retryable
    assert type(classify_exception(HTTPFailure(502), kind="tool")) is ToolConnectionError
    failed = classify_exception(RuntimeError("tool exploded"), kind="tool", provider="mcp:x")
    assert type(failed) is ToolInvocationError
    assert not failed.retryable
    assert failed.provider == "mcp:x"


def test_classify_timeouts() -> None:
    error = classify_exception(asyncio.TimeoutError(), kind="llm")
    assert isinstance(error, StepTimeoutError)
    assert error.retryable


def test_classify_passes_workflow_errors_through() -> None:
    original = ValidationError("bad")
    assert classify_exception(original, kind="tool", step_id=4) is original
    assert original.step_id == 4
