"""RetryPolicy — one retry model shared by immediate and background retries.

The batch coordinator uses a policy to space its immediate retry passes;
the durable retry queue uses another instance to decide when a job is due
and when it must be abandoned.  Both paths therefore agree on the backoff
formula and on which outcomes are terminal:

    delay(n) = min(base * multiplier ** (n - 1), max_delay) + uniform(0, max_jitter)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, backoff curve and optional give-up horizon.

    Args:
        max_attempts:  Retries allowed after the first try.
        base_delay:    Delay before the first retry, in seconds.
        multiplier:    Growth factor per retry.
        max_delay:     Cap on the exponential part of the delay.
        max_jitter:    Upper bound of the uniform random jitter added on top.
        give_up_after: Wall-clock horizon in seconds, or ``None`` for no horizon.
    """

    max_attempts: int = 5
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_jitter: float = 1.0
    give_up_after: float | None = None
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0 or self.max_jitter < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def base_delay_for(self, attempt: int) -> float:
        """Deterministic part of the delay before retry number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delay(self, attempt: int) -> float:
        """Delay before retry *attempt*, jitter included."""
        jitter = self.rng.uniform(0.0, self.max_jitter) if self.max_jitter else 0.0
        return self.base_delay_for(attempt) + jitter

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def is_expired(self, created_at: datetime, now: datetime) -> bool:
        if self.give_up_after is None:
            return False
        return (now - created_at).total_seconds() >= self.give_up_after

    def should_give_up(self, attempts: int, created_at: datetime, now: datetime) -> bool:
        """``True`` once either the attempt budget or the horizon is spent."""
        return self.is_exhausted(attempts) or self.is_expired(created_at, now)

    @staticmethod
    def is_retryable(outcome) -> bool:
        """Whether an attempt outcome may be retried on a later pass."""
        return bool(getattr(outcome, "retryable", False))
