"""Wait strategies between retry attempts.

- NoBackoff: retry immediately
- ConstantBackoff: fixed delay
- ExponentialBackoff: base * factor^attempt, capped, optional jitter
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class Backoff(Protocol):
    """Protocol for backoff delay calculation.

    Attempt numbers are 0-indexed (wait before the first retry = attempt 0).
    """

    def delay(self, attempt: int) -> float: ...


@dataclass(frozen=True, slots=True)
class NoBackoff:
    """Retry without waiting."""

    def delay(self, attempt: int) -> float:
        return 0.0


@dataclass(frozen=True, slots=True)
class ConstantBackoff:
    """Fixed delay between attempts.

    Attributes:
        delay_seconds: Seconds to wait before each retry
    """

    delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.delay_seconds


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Exponential backoff.

    Delay = min(base * (multiplier ^ attempt), max_delay), times a 0.5-1.5
    factor when jitter is on. With base=1 and multiplier=2 the waits are
    1s, 2s, 4s...

    Attributes:
        base: First wait in seconds (default: 1.0)
        multiplier: Growth factor (default: 2.0)
        max_delay: Cap in seconds (default: 60.0)
        jitter: Randomize delays to avoid synchronized retries (default: False)
    """

    base: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False

    def delay(self, attempt: int) -> float:
        d = min(self.base * (self.multiplier ** attempt), self.max_delay)
        return d * (0.5 + random.random()) if self.jitter else d
