"""Retry policy for model and tool calls.

Attempts count the first try: attempts=3 means one call plus two retries.
Waiting is either a fixed delay or exponential backoff, never both; declaring
both is rejected when the policy is constructed, before any step runs.

Only errors flagged `retryable` are retried. Validation failures, guard
violations and tool-side rejections abort on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Annotated, Any, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, PositiveFloat, computed_field, model_validator

from volcano.foundation.errors import ConfigurationError, RetryExhaustedError, WorkflowError

from .backoff import Backoff, ConstantBackoff, ExponentialBackoff, NoBackoff

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from volcano.foundation.config import RetrySettings

T = TypeVar("T")

logger = logging.getLogger("volcano.retry")


class RetryPolicy(BaseModel):
    """Declarative retry behavior attached to a workflow or a single step.

    Attributes:
        attempts: Total attempts including the first one
        delay: Fixed seconds to wait before each retry
        backoff: Exponential factor; waits backoff_base * backoff^n
        backoff_base: First wait when backoff is used
        max_delay: Cap for exponential waits

    Example:
        >>> RetryPolicy(attempts=3, backoff=2.0).get_delay(1)
        2.0
        >>> RetryPolicy(delay=1, backoff=2)
        Traceback (most recent call last):
        ...
        ConfigurationError: retry delay and backoff are mutually exclusive
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        revalidate_instances="never",
        json_schema_extra={"title": "Retry Policy", "examples": [{"attempts": 3, "backoff": 2.0}]},
    )

    attempts: Annotated[int, Field(ge=1, le=20)] = 3
    delay: NonNegativeFloat | None = None
    backoff: PositiveFloat | None = None
    backoff_base: PositiveFloat = 1.0
    max_delay: PositiveFloat = 60.0

    @model_validator(mode="before")
    @classmethod
    def _exclusive(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("delay") is not None and data.get("backoff") is not None:
            raise ConfigurationError("retry delay and backoff are mutually exclusive")
        return data

    @computed_field
    @property
    def mode(self) -> str:
        """Wait strategy name: none, delay or backoff."""
        if self.backoff is not None:
            return "backoff"
        return "delay" if self.delay else "none"

    @property
    def strategy(self) -> Backoff:
        if self.backoff is not None:
            return ExponentialBackoff(base=self.backoff_base, multiplier=self.backoff, max_delay=self.max_delay)
        if self.delay:
            return ConstantBackoff(self.delay)
        return NoBackoff()

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait after the failed attempt `attempt` (0-indexed)."""
        return self.strategy.delay(attempt)

    def should_retry(self, error: WorkflowError, attempt: int) -> bool:
        """Whether another attempt follows the failed attempt `attempt` (0-indexed)."""
        return error.retryable and attempt + 1 < self.attempts

    @classmethod
    def from_settings(cls, settings: RetrySettings | None = None) -> RetryPolicy:
        if settings is None:
            from volcano.foundation.config import get_settings
            settings = get_settings().retry
        return cls(attempts=settings.attempts, delay=settings.delay, backoff=settings.backoff,
                   backoff_base=settings.backoff_base)

    def __hash__(self) -> int:
        return hash((self.attempts, self.delay, self.backoff, self.backoff_base, self.max_delay))


NO_RETRY = RetryPolicy(attempts=1)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    step_id: int | None = None,
    on_retry: Callable[[int, WorkflowError, float], None] | None = None,
) -> T:
    """Run `operation` under `policy`.

    The operation must raise WorkflowError subclasses; anything else propagates
    untouched. Non-retryable errors are re-raised immediately. When retryable
    failures use up every attempt, RetryExhaustedError wraps the last one; a
    single-attempt policy re-raises the underlying error as-is.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except WorkflowError as e:
            e.with_step(step_id)
            if not e.retryable or policy.attempts == 1:
                raise
            if not policy.should_retry(e, attempt):
                raise RetryExhaustedError(
                    f"{label} failed after {policy.attempts} attempts: {e.message}",
                    last_error=e,
                    attempts=policy.attempts,
                    step_id=step_id,
                ) from e
            wait = policy.get_delay(attempt)
            logger.info(f"[{label}] Retry {attempt + 1}/{policy.attempts - 1} after {wait:.1f}s ({e.code}: {e.message})")
            if on_retry:
                on_retry(attempt, e, wait)
            if wait > 0:
                await asyncio.sleep(wait)
        attempt += 1
