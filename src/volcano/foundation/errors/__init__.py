"""Typed error handling for volcano.

- ErrorCode: Machine-readable failure classification
- ErrorMeta: Step/provider/retryable correlation attached to every error
- WorkflowError and subclasses: the failure taxonomy raised by the engine
- classify_exception: Normalize arbitrary exceptions into the taxonomy
"""

from .errors import (
    AuthenticationError,
    ConcurrencyGuardError,
    ConfigurationError,
    ErrorCode,
    ErrorKind,
    ErrorMeta,
    JsonDict,
    ModelError,
    RetryExhaustedError,
    StepTimeoutError,
    ToolConnectionError,
    ToolInvocationError,
    ValidationError,
    WorkflowError,
    classify_exception,
    is_retryable_status,
    status_of,
)

__all__ = [
    # Core
    "ErrorCode", "ErrorMeta", "ErrorKind", "JsonDict", "WorkflowError",
    # Taxonomy
    "ValidationError", "ConcurrencyGuardError", "StepTimeoutError", "RetryExhaustedError",
    "ModelError", "ToolInvocationError", "ToolConnectionError", "AuthenticationError", "ConfigurationError",
    # Normalization
    "classify_exception", "is_retryable_status", "status_of",
]
