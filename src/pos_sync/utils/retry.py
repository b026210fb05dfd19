"""
Retry policy with exponential backoff.

``RetryPolicy`` is a plain value object consumed by the batch processor; it
knows how many retries are allowed, how long to wait before each one and
which errors qualify, but nothing about how the waiting is scheduled.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type

import httpx

from pos_sync.utils.config import BatchSettings
from pos_sync.utils.exceptions import ProviderError, RateLimited
from pos_sync.utils.logger import get_logger


logger = get_logger(__name__)


def proportional_jitter(ratio: float = 0.25) -> Callable[[float], float]:
    """Jitter function adding ``uniform(0, ratio * delay)`` on top of the delay."""
    def _jitter(delay: float) -> float:
        return delay + random.uniform(0, delay * ratio)
    return _jitter


def no_jitter(delay: float) -> float:
    return delay


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: Callable[[float], float] = field(default_factory=proportional_jitter)

    # Retry-After from a 429 is honoured up to this bound
    max_retry_after: float = 300.0

    retry_on_exceptions: Tuple[Type[BaseException], ...] = (
        asyncio.TimeoutError,
        ConnectionError,
        httpx.TimeoutException,
        httpx.TransportError,
    )

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=proportional_jitter(settings.jitter_ratio),
        )

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, ProviderError):
            return exc.retryable
        return isinstance(exc, self.retry_on_exceptions)


class ExponentialBackoff:
    """
    Exponential backoff calculator for one retried unit of work.

    The n-th retry waits ``base_delay * exponential_base ** (n - 1)`` plus
    jitter, capped at ``max_delay``. Jitter only ever lengthens the wait.
    """

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.attempt = 0

    def reset(self) -> None:
        """Reset attempt counter."""
        self.attempt = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_retries

    def calculate_delay(self, error: Optional[BaseException] = None) -> float:
        """
        Delay before the next retry; advances the attempt counter.

        Args:
            error: The failure being retried. A ``RateLimited`` carrying
                ``retry_after`` stretches the delay to at least that value.

        Returns:
            Delay in seconds
        """
        delay = self.policy.base_delay * (self.policy.exponential_base ** self.attempt)
        delay = self.policy.jitter(delay)
        delay = min(delay, self.policy.max_delay)

        if isinstance(error, RateLimited) and error.retry_after:
            if error.retry_after <= self.policy.max_retry_after:
                delay = max(delay, error.retry_after)
            else:
                logger.warning(f"Retry-After too large ({error.retry_after}s), using exponential backoff")

        self.attempt += 1
        logger.debug(f"Calculated retry delay: {delay:.2f}s (retry {self.attempt})")
        return delay

    def should_retry(self, error: BaseException) -> bool:
        """
        Determine whether another attempt is allowed for this error.

        Args:
            error: Exception that occurred

        Returns:
            True if should retry, False otherwise
        """
        if self.exhausted:
            logger.debug(f"Max retries ({self.policy.max_retries}) exceeded")
            return False
        return self.policy.is_retryable(error)
