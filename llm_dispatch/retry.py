"""Exponential backoff with jitter for same-provider retries."""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 1  # Retries after the first try on the same provider
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.5  # Random jitter factor (0-1)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    @property
    def max_tries(self) -> int:
        return self.max_retries + 1


class RetryState:
    """Tracks retry state across attempts on one provider."""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0
        self.last_exception: Optional[BaseException] = None
        self.total_delay = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.config.max_retries

    def skip_remaining(self) -> None:
        """Give up on this provider without consuming delay."""
        self.attempt = self.config.max_retries

    def get_delay(self, retry_after: Optional[float] = None) -> float:
        """Calculate delay with exponential backoff and jitter.

        Args:
            retry_after: Server-suggested wait; used as a lower bound

        Returns:
            Delay in seconds before the next try
        """
        # Exponential backoff
        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)

        # Cap at max delay
        delay = min(delay, self.config.max_delay)

        # Add jitter: random value between (1 - jitter) and (1 + jitter) of delay
        jitter_range = delay * self.config.jitter
        delay = delay + random.uniform(-jitter_range, jitter_range)

        # Ensure delay is positive
        delay = max(0.01, delay)

        if retry_after is not None and retry_after > delay:
            delay = retry_after

        self.total_delay += delay
        return delay

    def increment(self, exception: BaseException) -> None:
        """Increment attempt counter and store exception."""
        self.attempt += 1
        self.last_exception = exception
