"""Per-call wall-clock limits.

A timeout bounds one model call or one tool call, not a whole step. On expiry
the awaited operation is abandoned and StepTimeoutError (retryable) is raised.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ConfigDict, PositiveFloat

from volcano.foundation.errors import StepTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class TimeoutSpec(BaseModel):
    """Wall-clock budget for a single call.

    Example:
        >>> spec = TimeoutSpec(seconds=5)
        >>> await spec.run(llm.generate("hi"), label="llm")
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    seconds: PositiveFloat = 60.0

    async def run(self, awaitable: Awaitable[T], *, label: str = "Step", step_id: int | None = None,
                  provider: str | None = None) -> T:
        return await with_timeout(awaitable, self.seconds, label=label, step_id=step_id, provider=provider)


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float | None,
    *,
    label: str = "Step",
    step_id: int | None = None,
    provider: str | None = None,
) -> T:
    """Await with a deadline, converting expiry into StepTimeoutError. None means no limit."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise StepTimeoutError(
            f"{label} timed out after {seconds}s",
            timeout=seconds,
            step_id=step_id,
            provider=provider,
        ) from None
