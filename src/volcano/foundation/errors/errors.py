"""Typed failure taxonomy for workflow execution.

Every failure raised by the engine is a WorkflowError carrying an ErrorMeta:
the step it happened in, the provider that produced it, and whether a retry
might succeed. Retry decisions are made from `retryable`, never from the
exception message.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any, ClassVar, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field

JsonDict = dict[str, Any]


class ErrorCode(StrEnum):
    """Machine-readable classification of workflow failures."""

    VALIDATION = "VALIDATION"
    CONCURRENCY_GUARD = "CONCURRENCY_GUARD"
    TIMEOUT = "TIMEOUT"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    MODEL_ERROR = "MODEL_ERROR"
    TOOL_INVOCATION = "TOOL_INVOCATION"
    TOOL_CONNECTION = "TOOL_CONNECTION"
    AUTHENTICATION = "AUTHENTICATION"
    CONFIGURATION = "CONFIGURATION"
    UNKNOWN = "UNKNOWN"


class ErrorMeta(BaseModel):
    """Correlation metadata attached to every workflow error."""

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")

    step_id: int | None = Field(default=None, description="Top-level step index (0-based)")
    provider: str | None = Field(default=None, description="llm:<id> or mcp:<host>")
    request_id: str | None = None
    status: int | None = Field(default=None, description="HTTP-style status, when known")
    retryable: bool = False

    @computed_field
    @property
    def status_class(self) -> str | None:
        """Status family, e.g. '5xx'."""
        return f"{self.status // 100}xx" if self.status is not None else None


def is_retryable_status(status: int | None) -> bool:
    """Server errors, rate limits and request timeouts are worth another attempt."""
    if status is None:
        return False
    return status >= 500 or status in (429, 408)


class WorkflowError(Exception):
    """Base for all engine failures.

    Attributes:
        meta: ErrorMeta with step/provider/retryable information
    """

    code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN
    default_retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        step_id: int | None = None,
        provider: str | None = None,
        request_id: str | None = None,
        status: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.meta = ErrorMeta.model_construct(
            step_id=step_id,
            provider=provider,
            request_id=request_id,
            status=status,
            retryable=self.default_retryable if retryable is None else retryable,
        )

    @property
    def step_id(self) -> int | None:
        return self.meta.step_id

    @property
    def provider(self) -> str | None:
        return self.meta.provider

    @property
    def status(self) -> int | None:
        return self.meta.status

    @property
    def retryable(self) -> bool:
        return self.meta.retryable

    def with_step(self, step_id: int | None) -> Self:
        """Stamp the step index unless one is already recorded (innermost wins)."""
        if step_id is not None and self.meta.step_id is None:
            self.meta = self.meta.model_copy(update={"step_id": step_id})
        return self

    def with_provider(self, provider: str | None) -> Self:
        if provider and self.meta.provider is None:
            self.meta = self.meta.model_copy(update={"provider": provider})
        return self

    def to_dict(self) -> JsonDict:
        return {"type": type(self).__name__, "code": self.code.value, "message": self.message,
                **self.meta.model_dump(exclude_none=True)}

    def render(self) -> str:
        """Human-readable one-liner with correlation info."""
        parts = [f"[{self.code}] {self.message}"]
        if self.meta.step_id is not None:
            parts.append(f"step={self.meta.step_id}")
        if self.meta.provider:
            parts.append(f"provider={self.meta.provider}")
        if self.meta.retryable:
            parts.append("(retryable)")
        return " ".join(parts)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, meta={self.meta!r})"


class ValidationError(WorkflowError):
    """Tool arguments do not satisfy the tool's declared schema."""

    code = ErrorCode.VALIDATION

    def __init__(self, message: str, *, errors: list[str] | None = None, **kw: Any) -> None:
        kw["retryable"] = False
        super().__init__(message, **kw)
        self.errors = errors or []


class ConcurrencyGuardError(WorkflowError):
    """run() was invoked on a workflow that is already running."""

    code = ErrorCode.CONCURRENCY_GUARD

    def __init__(self, message: str = "Workflow is already running", **kw: Any) -> None:
        kw["retryable"] = False
        super().__init__(message, **kw)


class StepTimeoutError(WorkflowError):
    """A single model or tool call exceeded its wall-clock budget."""

    code = ErrorCode.TIMEOUT
    default_retryable = True

    def __init__(self, message: str, *, timeout: float | None = None, **kw: Any) -> None:
        super().__init__(message, **kw)
        self.timeout = timeout


class RetryExhaustedError(WorkflowError):
    """All attempts failed. `last_error` holds the final underlying failure."""

    code = ErrorCode.RETRY_EXHAUSTED

    def __init__(self, message: str, *, last_error: BaseException | None = None, attempts: int = 0, **kw: Any) -> None:
        kw["retryable"] = False
        if isinstance(last_error, WorkflowError):
            if kw.get("provider") is None:
                kw["provider"] = last_error.provider
            if kw.get("step_id") is None:
                kw["step_id"] = last_error.step_id
        super().__init__(message, **kw)
        self.last_error = last_error
        self.attempts = attempts


class ModelError(WorkflowError):
    """Vendor model adapter failure."""

    code = ErrorCode.MODEL_ERROR
    default_retryable = True


class ToolInvocationError(WorkflowError):
    """Tool server rejected or failed the call."""

    code = ErrorCode.TOOL_INVOCATION


class ToolConnectionError(ToolInvocationError):
    """Could not reach or keep a session with the tool server."""

    code = ErrorCode.TOOL_CONNECTION
    default_retryable = True


class AuthenticationError(ToolConnectionError):
    """Credential could not be obtained or was rejected."""

    code = ErrorCode.AUTHENTICATION
    default_retryable = False


class ConfigurationError(WorkflowError):
    """Declaration-time mistake (conflicting options, incomplete credentials, ...)."""

    code = ErrorCode.CONFIGURATION


# ─────────────────────────────────────────────────────────────────────────────
# Normalization
# ─────────────────────────────────────────────────────────────────────────────

ErrorKind = Literal["llm", "tool"]

_CONNECTION_HINTS = ("econn", "connect", "connection", "unreachable", "refused", "reset by peer", "broken pipe")


def status_of(exc: BaseException) -> int | None:
    """Dig an HTTP-style status out of common client exception shapes."""
    for attr in ("status", "status_code"):
        if isinstance(value := getattr(exc, attr, None), int):
            return value
    if (response := getattr(exc, "response", None)) is not None:
        for attr in ("status_code", "status"):
            if isinstance(value := getattr(response, attr, None), int):
                return value
    return None


def _request_id_of(exc: BaseException) -> str | None:
    if (response := getattr(exc, "response", None)) is not None:
        headers = getattr(response, "headers", None)
        if headers is not None and hasattr(headers, "get"):
            if rid := headers.get("x-request-id"):
                return str(rid)
    rid = getattr(exc, "request_id", None)
    return str(rid) if rid else None


def _looks_like_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, OSError, EOFError)):
        return True
    haystack = f"{type(exc).__name__} {exc}".lower()
    return any(hint in haystack for hint in _CONNECTION_HINTS)


def classify_exception(
    exc: BaseException,
    *,
    kind: ErrorKind,
    step_id: int | None = None,
    provider: str | None = None,
) -> WorkflowError:
    """Map an arbitrary exception onto the typed taxonomy.

    Existing WorkflowErrors pass through with step/provider filled in when missing.
    """
    if isinstance(exc, WorkflowError):
        return exc.with_step(step_id).with_provider(provider)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return StepTimeoutError(str(exc) or "Operation timed out", step_id=step_id, provider=provider)

    status = status_of(exc)
    message = str(exc) or type(exc).__name__
    match kind:
        case "llm":
            retryable = True if status is None else is_retryable_status(status)
            if _looks_like_connection_failure(exc):
                retryable = True
            return ModelError(message, step_id=step_id, provider=provider, status=status,
                              request_id=_request_id_of(exc), retryable=retryable)
        case _:
            if status == 401:
                return AuthenticationError(message, step_id=step_id, provider=provider, status=status)
            if _looks_like_connection_failure(exc) or is_retryable_status(status):
                return ToolConnectionError(message, step_id=step_id, provider=provider, status=status)
            return ToolInvocationError(message, step_id=step_id, provider=provider, status=status)
