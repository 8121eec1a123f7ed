"""
Retry backoff for queued actions.

Delays grow exponentially per failed attempt and carry random jitter so a
fleet of tablets coming back online does not hit the API in lockstep.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Final


# Default jitter range: ±25% of calculated delay
DEFAULT_JITTER_FACTOR: Final[float] = 0.25

DEFAULT_BACKOFF_BASE: Final[float] = 2.0

DEFAULT_INITIAL_DELAY: Final[float] = 1.0


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        initial_delay: Delay after the first failed attempt, in seconds.
        max_delay: Maximum delay cap in seconds.
        backoff_base: Exponential backoff multiplier.
        jitter_factor: Random jitter range as fraction (0.25 = ±25%).
    """

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = 60.0
    backoff_base: float = DEFAULT_BACKOFF_BASE
    jitter_factor: float = DEFAULT_JITTER_FACTOR

    def __post_init__(self) -> None:
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")


def calculate_delay_with_jitter(
    attempt: int,
    config: RetryConfig | None = None,
) -> float:
    """
    Delay before the next attempt, after `attempt` failures (1-indexed).

        base_delay = initial_delay * (backoff_base ^ (attempt - 1))
        capped_delay = min(base_delay, max_delay)
        final_delay = capped_delay * (1 ± jitter_factor)

    Example:
        >>> config = RetryConfig(initial_delay=1.0, jitter_factor=0.0)
        >>> calculate_delay_with_jitter(1, config)
        1.0
        >>> calculate_delay_with_jitter(3, config)
        4.0
    """
    if config is None:
        config = RetryConfig()

    exponent = max(attempt - 1, 0)
    capped_delay = min(config.initial_delay * (config.backoff_base ** exponent), config.max_delay)

    jitter_range = capped_delay * config.jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range) if jitter_range else 0.0

    return max(0.0, capped_delay + jitter)


def should_retry(attempt: int, max_attempts: int) -> bool:
    """True while fewer than max_attempts attempts have failed."""
    return attempt < max_attempts
