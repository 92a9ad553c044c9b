"""Exponential backoff with jitter for apply retries."""

import random
from dataclasses import dataclass
from typing import Optional

from converge_kernel.models.scheduler import SchedulerConfig


@dataclass
class ExponentialBackoff:
    """
    Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter

    Jitter spreads retries of many units that failed together.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter_range: float = 0.2
    rng: Optional[random.Random] = None

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> "ExponentialBackoff":
        return cls(
            max_attempts=config.max_apply_attempts,
            base_delay=config.base_backoff_seconds,
            max_delay=config.max_backoff_seconds,
            jitter_range=config.backoff_jitter,
        )

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter_range:
            rng = self.rng or random
            jitter = delay * self.jitter_range
            delay += rng.uniform(-jitter, jitter)
        return max(0.0, delay)

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts
