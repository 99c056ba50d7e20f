"""Shared retry/backoff policy.

One policy object drives ledger submission retries, confirmation and
convergence polling, and cache refresh retries.
"""

import random
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a ceiling and symmetric jitter.

    ``delay(attempt)`` is 1-based: the first retry waits roughly
    ``base_delay``, the n-th ``base_delay * multiplier ** (n - 1)``, never
    more than ``max_delay``.
    """

    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2
    max_attempts: Optional[int] = 5

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("Backoff jitter must be in [0, 1)")

    def raw_delay(self, attempt: int) -> float:
        """Delay for ``attempt`` without jitter, capped at ``max_delay``."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Jittered delay for ``attempt``, within ±jitter and never above the cap."""
        raw = self.raw_delay(attempt)
        if not self.jitter or not raw:
            return raw
        spread = raw * self.jitter
        sample = (rng or random).uniform(-spread, spread)
        return max(0.0, min(self.max_delay, raw + sample))

    def exhausted(self, attempt: int) -> bool:
        """True once ``attempt`` attempts have been made and no more are allowed."""
        return self.max_attempts is not None and attempt >= self.max_attempts

    def with_attempts(self, max_attempts: Optional[int]) -> "BackoffPolicy":
        return replace(self, max_attempts=max_attempts)


def policy_from_settings(settings, max_attempts: Optional[int] = None) -> BackoffPolicy:
    """Build the default retry policy from ``EduverseSettings``."""
    return BackoffPolicy(
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_jitter,
        max_attempts=max_attempts if max_attempts is not None else settings.submit_max_retries,
    )
